"""
Catalog cache — the platform-filtered list of installable packages.

The catalog is rebuilt by a background worker thread:

    registry search → per-package platform filter → latest variant
    → object list for that variant → dedupe by name → publish

Readers call ``snapshot()`` at any time and get either the previous
complete catalog or the new one; the swap is a single reference
assignment under the lock.  A refresh requested while one is running
is absorbed rather than queued.

Failures never escape the worker.  The previous catalog stays in
place, ``last_error`` is set, and ``catalog:error`` is published so
observers can show a "stale" indicator.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from deken.core.errors import DekenError, MalformedResponse, NetworkUnreachable
from deken.core.models.package import PackageRecord
from deken.core.services.event_bus import EventBus
from deken.core.services.platform_match import PlatformMatcher, select_latest
from deken.core.services.registry_client import LibraryTree, RegistryClient

logger = logging.getLogger(__name__)


class RefreshCancelled(Exception):
    """Internal signal: the worker was asked to stop mid-build."""


def build_catalog(
    tree: LibraryTree,
    matcher: PlatformMatcher,
    fetch_objects: Callable[[str], list[str]],
    *,
    should_cancel: Callable[[], bool] | None = None,
) -> list[PackageRecord]:
    """Assemble catalog records from a registry tree.

    One record per logical package: the newest variant built for this
    platform.  Object lists are fetched only for selected variants; a
    failed object lookup leaves that record with no objects instead of
    dropping it.  Packages whose name was already seen are skipped.

    Raises:
        RefreshCancelled: If ``should_cancel`` returns True between packages.
    """
    records: list[PackageRecord] = []
    seen: set[str] = set()

    for versions in tree:
        if should_cancel is not None and should_cancel():
            raise RefreshCancelled()

        variants = [variant for version in versions for variant in version]
        chosen = select_latest(variants, matcher)
        if chosen is None:
            continue
        if chosen.name in seen:
            continue

        try:
            objects = fetch_objects(chosen.url)
        except (NetworkUnreachable, MalformedResponse) as e:
            logger.warning("No object list for %s: %s", chosen.name, e)
            objects = []

        seen.add(chosen.name)
        records.append(
            PackageRecord(
                name=chosen.name,
                author=chosen.author,
                timestamp=chosen.timestamp,
                url=chosen.url,
                description=chosen.description,
                version=chosen.version,
                objects=tuple(objects),
            )
        )

    return records


class CatalogCache:
    """In-memory catalog with a coalescing background refresh."""

    def __init__(
        self,
        client: RegistryClient,
        matcher: PlatformMatcher,
        *,
        bus: EventBus | None = None,
    ) -> None:
        self._client = client
        self._matcher = matcher
        self._bus = bus or EventBus()
        self._lock = threading.Lock()
        self._catalog: tuple[PackageRecord, ...] = ()
        self._thread: threading.Thread | None = None
        self._cancel = threading.Event()
        self.last_error: DekenError | None = None
        self.refreshed_at: float | None = None

    # ── Reads ───────────────────────────────────────────────────

    def snapshot(self) -> list[PackageRecord]:
        """Current catalog, never a partially built one."""
        with self._lock:
            return list(self._catalog)

    @property
    def is_refreshing(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    # ── Refresh ─────────────────────────────────────────────────

    def refresh(self) -> bool:
        """Start a background refresh.

        Returns:
            True if a worker was started, False if one was already
            running and absorbed this request.
        """
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                logger.debug("Refresh already running — request absorbed")
                return False
            self._cancel.clear()
            self._thread = threading.Thread(
                target=self._run,
                daemon=True,
                name="deken-catalog",
            )
            self._thread.start()
        return True

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the current refresh finishes.

        Returns:
            True if no refresh is running any more.
        """
        with self._lock:
            thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def cancel(self) -> None:
        """Ask a running refresh to stop; the old catalog stays."""
        self._cancel.set()

    def _run(self) -> None:
        start = time.monotonic()
        try:
            tree = self._client.fetch_catalog()
            records = build_catalog(
                tree,
                self._matcher,
                self._client.fetch_object_names,
                should_cancel=self._cancel.is_set,
            )
        except RefreshCancelled:
            logger.info("Catalog refresh cancelled")
            return
        except DekenError as e:
            self._fail(e)
            return
        except Exception as e:
            logger.exception("Catalog refresh crashed")
            self._fail(DekenError(str(e)))
            return

        with self._lock:
            self._catalog = tuple(records)
            self.last_error = None
            self.refreshed_at = time.time()

        duration = time.monotonic() - start
        logger.info("Catalog refreshed: %d packages in %.2fs", len(records), duration)
        self._bus.publish(
            "catalog:refreshed",
            data={"packages": len(records), "platform": self._matcher.tag},
            duration_s=duration,
        )

    def _fail(self, error: DekenError) -> None:
        with self._lock:
            self.last_error = error
        logger.warning("Catalog refresh failed (%s): %s", error.kind, error)
        self._bus.publish("catalog:error", data={"kind": error.kind}, error=str(error))
