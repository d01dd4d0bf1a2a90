"""
Domain models — Pydantic types for the package manager.

All models are re-exported here for convenient access:

    from deken.core.models import PackageRecord, InstalledEntry, DownloadState
"""

from deken.core.models.package import (
    DownloadState,
    InstalledEntry,
    PackageRecord,
    package_id,
)
from deken.core.models.registry import (
    InfoResponse,
    RawLibraryEntry,
    SearchResponse,
)

__all__ = [
    # package.py
    "DownloadState",
    "InstalledEntry",
    "PackageRecord",
    "package_id",
    # registry.py
    "InfoResponse",
    "RawLibraryEntry",
    "SearchResponse",
]
