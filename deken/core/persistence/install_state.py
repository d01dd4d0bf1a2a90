"""
Install-state store — which packages are installed, and where.

State is stored as JSON next to the installed libraries
(``<library_dir>/.pkg_info.json``), one entry per package name::

    {
      "schema_version": 1,
      "updated_at": "...",
      "packages": {
        "cyclone": {"ID": "...", "Author": "...", "Timestamp": "...",
                    "Description": "...", "Version": "...",
                    "Path": "...", "URL": "..."}
      }
    }

Every mutation rewrites the whole document before returning.  Writes
are atomic (temp file in the same directory, fsync, then replace) so a
crash loses at most the mutation in flight.  If the write fails the
in-memory state is rolled back and PersistenceFailure is raised: a
mutation is never reported as committed unless it is on disk.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import threading
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field, model_validator

from deken.core.errors import PersistenceFailure
from deken.core.models.package import InstalledEntry, PackageRecord

logger = logging.getLogger(__name__)

STATE_FILE = ".pkg_info.json"


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class InstallState(BaseModel):
    """Root document of the install-state file."""

    schema_version: int = 1
    updated_at: str = Field(default_factory=_now_iso)
    packages: dict[str, InstalledEntry] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _names_from_keys(self) -> InstallState:
        for name, entry in self.packages.items():
            entry.name = name
        return self


def load_install_state(path: Path) -> InstallState:
    """Load the install-state document.

    Returns:
        The stored state. A missing or unreadable file yields an empty one.
    """
    if not path.is_file():
        logger.info("No install state at %s — starting fresh", path)
        return InstallState()

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        state = InstallState.model_validate(data)
        logger.debug("Loaded %d installed packages from %s", len(state.packages), path)
        return state
    except json.JSONDecodeError as e:
        logger.warning("Corrupt install state %s: %s — starting fresh", path, e)
        return InstallState()
    except Exception as e:
        logger.warning("Cannot load install state from %s: %s — starting fresh", path, e)
        return InstallState()


def save_install_state(state: InstallState, path: Path) -> None:
    """Write the install-state document atomically.

    Raises:
        PersistenceFailure: If the file cannot be written.
    """
    state.updated_at = _now_iso()
    content = json.dumps(state.model_dump(mode="json", by_alias=True), indent=2, ensure_ascii=False) + "\n"

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".pkg_info_", suffix=".tmp")
        tmp = Path(tmp_path)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            tmp.replace(path)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise
    except OSError as e:
        logger.error("Failed to save install state to %s: %s", path, e)
        raise PersistenceFailure(f"Cannot write {path}: {e}") from e

    logger.debug("Install state saved to %s", path)


class InstallStateStore:
    """Thread-safe, write-through store of installed packages.

    Download tasks finishing on different threads may register at the
    same time; ``_lock`` serializes every mutation together with its
    flush to disk.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._state = load_install_state(path)

    @property
    def root(self) -> Path:
        """Directory that holds installed packages."""
        return self.path.parent

    # ── Reads ───────────────────────────────────────────────────

    def contains(self, package_id: str) -> bool:
        return self.get(package_id) is not None

    def get(self, package_id: str) -> InstalledEntry | None:
        with self._lock:
            entry = self._find(package_id)
            return entry.model_copy() if entry else None

    def get_by_name(self, name: str) -> InstalledEntry | None:
        with self._lock:
            entry = self._state.packages.get(name)
            return entry.model_copy() if entry else None

    def snapshot(self) -> list[InstalledEntry]:
        """Installed entries, in installation order."""
        with self._lock:
            return [entry.model_copy() for entry in self._state.packages.values()]

    def broken(self) -> list[InstalledEntry]:
        """Entries whose install directory no longer exists."""
        return [entry for entry in self.snapshot() if entry.is_broken]

    # ── Mutations ───────────────────────────────────────────────

    def add(self, record: PackageRecord, install_path: str | Path) -> InstalledEntry:
        """Register ``record`` as installed at ``install_path``.

        Last write wins: an existing entry with the same id, or with the
        same package name, is replaced wholesale.

        Raises:
            PersistenceFailure: If the state could not be flushed.
        """
        entry = InstalledEntry.from_record(record, install_path)
        with self._lock:
            previous = dict(self._state.packages)
            existing = self._find(record.id)
            if existing is not None:
                self._state.packages.pop(existing.name, None)
            # Re-insert at the end so the document keeps installation order
            self._state.packages.pop(record.name, None)
            self._state.packages[record.name] = entry
            self._commit(previous)

        logger.info("Registered %s %s at %s", record.name, record.version, install_path)
        return entry.model_copy()

    def remove(self, package_id: str) -> bool:
        """Uninstall a package: delete its directory, then its record.

        Returns:
            True if an entry was removed, False if none had this id.

        Raises:
            PersistenceFailure: If the directory or the state file
                could not be updated.
        """
        with self._lock:
            entry = self._find(package_id)
            if entry is None:
                return False

            self._delete_directory(entry)

            previous = dict(self._state.packages)
            del self._state.packages[entry.name]
            self._commit(previous)

        logger.info("Uninstalled %s", entry.name)
        return True

    # ── Internal helpers ────────────────────────────────────────

    def _find(self, package_id: str) -> InstalledEntry | None:
        for entry in self._state.packages.values():
            if entry.id == package_id:
                return entry
        return None

    def _commit(self, previous: dict[str, InstalledEntry]) -> None:
        """Flush to disk, restoring ``previous`` if the write fails."""
        try:
            save_install_state(self._state, self.path)
        except PersistenceFailure:
            self._state.packages = previous
            raise

    def _delete_directory(self, entry: InstalledEntry) -> None:
        if not entry.path:
            return
        target = Path(entry.path)
        root = self.root.resolve()
        try:
            resolved = target.resolve()
        except OSError:
            resolved = target
        if resolved == root or root not in resolved.parents:
            logger.warning("Not deleting %s: outside library directory %s", target, root)
            return
        if not target.exists():
            logger.debug("Install path %s already gone", target)
            return
        try:
            shutil.rmtree(target)
        except OSError as e:
            raise PersistenceFailure(f"Cannot delete {target}: {e}") from e
