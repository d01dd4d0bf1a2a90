"""
Package models — catalog records and installed entries.

``PackageRecord`` is what the registry hands us: one concrete
(package, version, platform) artifact.  ``InstalledEntry`` is what the
install-state file remembers about a record after it has been extracted
to disk.
"""

from __future__ import annotations

import base64
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


def package_id(name: str, version: str, timestamp: str, author: str) -> str:
    """Deterministic identity for a package artifact."""
    raw = f"{name}_{version}_{timestamp}_{author}"
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


class PackageRecord(BaseModel):
    """Immutable metadata for one package artifact.

    Two records are the same package-version when their ``id`` matches;
    the remaining fields take no part in equality or hashing.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    author: str = ""
    timestamp: str = ""  # yyyy:mm:dd hh:mm:ss, sorts lexicographically
    url: str = ""
    description: str = ""
    version: str = ""
    objects: tuple[str, ...] = ()

    @property
    def id(self) -> str:
        return package_id(self.name, self.version, self.timestamp, self.author)

    @property
    def filename(self) -> str:
        """Archive file name, taken from the last URL path segment."""
        return self.url.rsplit("/", 1)[-1]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PackageRecord):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)


class InstalledEntry(BaseModel):
    """Persisted record of an installed package.

    Serialized under the package name with capitalized keys
    (``ID``, ``Author``, ...).  The name itself is the document key,
    so it is excluded from the dumped payload.
    """

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(default="", exclude=True)
    id: str = Field(alias="ID")
    author: str = Field(default="", alias="Author")
    timestamp: str = Field(default="", alias="Timestamp")
    description: str = Field(default="", alias="Description")
    version: str = Field(default="", alias="Version")
    path: str = Field(default="", alias="Path")
    url: str = Field(default="", alias="URL")

    @classmethod
    def from_record(cls, record: PackageRecord, install_path: str | Path) -> InstalledEntry:
        return cls(
            name=record.name,
            id=record.id,
            author=record.author,
            timestamp=record.timestamp,
            description=record.description,
            version=record.version,
            path=str(install_path),
            url=record.url,
        )

    @property
    def is_broken(self) -> bool:
        """True when the backing directory was removed out-of-band."""
        return not self.path or not Path(self.path).exists()

    def to_record(self) -> PackageRecord:
        """Rebuild a catalog-style record (without object names)."""
        return PackageRecord(
            name=self.name,
            author=self.author,
            timestamp=self.timestamp,
            url=self.url,
            description=self.description,
            version=self.version,
        )


class DownloadState(StrEnum):
    """Lifecycle of a download task."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (DownloadState.SUCCEEDED, DownloadState.FAILED, DownloadState.CANCELLED)
