"""
Search — rank catalog packages against a free-text query.

An empty query lists what is installed.  Otherwise the catalog is
scanned in five passes, each appending packages not already found:

    1. name contains the query
    2. description contains the query
    3. an object name equals the query
    4. author contains the query
    5. an object name contains the query

Packages with an active download are dropped from both listings; the
caller shows them separately as in-progress rows.

Matching is case-sensitive unless ``case_sensitive=False``, which
lower-cases query and fields alike in every pass.
"""

from __future__ import annotations

from collections.abc import Callable, Collection, Iterable

from deken.core.models.package import InstalledEntry, PackageRecord


def _installed_rows(
    installed: Iterable[InstalledEntry],
    active_ids: Collection[str],
) -> list[PackageRecord]:
    rows: list[PackageRecord] = []
    seen: set[str] = set()
    for entry in installed:
        record = entry.to_record()
        if record.id in active_ids or record.id in seen:
            continue
        seen.add(record.id)
        rows.append(record)
    return rows


def search_packages(
    query: str,
    catalog: Iterable[PackageRecord],
    installed: Iterable[InstalledEntry] = (),
    active_ids: Collection[str] = frozenset(),
    *,
    case_sensitive: bool = True,
) -> list[PackageRecord]:
    """Return packages matching ``query``, best matches first, no duplicates."""
    if not query:
        return _installed_rows(installed, active_ids)

    packages = list(catalog)

    if case_sensitive:
        fold: Callable[[str], str] = str
    else:
        fold = str.lower
    needle = fold(query)

    passes: list[Callable[[PackageRecord], bool]] = [
        lambda p: needle in fold(p.name),
        lambda p: needle in fold(p.description),
        lambda p: any(fold(obj) == needle for obj in p.objects),
        lambda p: needle in fold(p.author),
        lambda p: any(needle in fold(obj) for obj in p.objects),
    ]

    results: list[PackageRecord] = []
    seen: set[str] = set()
    for matches in passes:
        for package in packages:
            if package.id in seen or not matches(package):
                continue
            seen.add(package.id)
            results.append(package)

    return [p for p in results if p.id not in active_ids]
