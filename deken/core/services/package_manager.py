"""
Package manager — the service the editor talks to.

Owns the catalog cache, the install-state store and the live download
tasks.  It is a long-lived service with an explicit lifecycle: create
one per process, ``start()`` it, pass it to whatever needs it, and
``shutdown()`` on exit.  Downloads keep running when the UI that
started them goes away.

    manager = PackageManager(load_config())
    manager.subscribe(lambda event: ui.call_soon(ui.reload))
    manager.start()
    task = manager.install(manager.search("cyclone")[0])
    task.on_progress(...)

Every state change is announced on the event bus after it is
committed; subscribers re-read ``catalog``, ``installed()``,
``downloads`` or ``search()``.
"""

from __future__ import annotations

import logging
import threading
from functools import partial
from typing import Callable

from deken.core.config.loader import DekenConfig
from deken.core.errors import DekenError
from deken.core.models.package import InstalledEntry, PackageRecord
from deken.core.persistence.install_state import InstallStateStore
from deken.core.services.catalog import CatalogCache
from deken.core.services.download_task import DownloadOutcome, DownloadTask
from deken.core.services.event_bus import EventBus
from deken.core.services.fetcher import Opener
from deken.core.services.platform_match import PlatformMatcher
from deken.core.services.registry_client import RegistryClient
from deken.core.services.search import search_packages

logger = logging.getLogger(__name__)


def _force_https(url: str) -> str:
    if url.startswith("http://"):
        return "https://" + url[len("http://"):]
    return url


class PackageManager:
    """Facade over catalog, install state and downloads."""

    def __init__(
        self,
        config: DekenConfig | None = None,
        *,
        bus: EventBus | None = None,
        client: RegistryClient | None = None,
        matcher: PlatformMatcher | None = None,
        store: InstallStateStore | None = None,
        opener: Opener | None = None,
    ) -> None:
        self.config = config or DekenConfig()
        self.bus = bus or EventBus()
        self.matcher = matcher or PlatformMatcher.local(
            float_size=self.config.float_size,
            os_name=self.config.os_name,
            arch_aliases=self.config.arch_aliases,
        )
        self._opener = opener
        self._client = client or RegistryClient(
            search_url=self.config.search_url,
            info_url=self.config.info_url,
            timeout=self.config.connect_timeout,
            opener=opener,
        )
        self.store = store or InstallStateStore(self.config.state_file)
        self._catalog = CatalogCache(self._client, self.matcher, bus=self.bus)
        self._lock = threading.RLock()
        self._downloads: list[DownloadTask] = []
        self._starting: dict[str, threading.Event] = {}

    # ── Lifecycle ───────────────────────────────────────────────

    def start(self, *, refresh: bool = True) -> None:
        """Prepare the library directory and kick off the first refresh."""
        self.config.library_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Package manager started for %s", self.matcher.tag)
        if refresh:
            self.refresh()

    def shutdown(self, timeout: float | None = 5.0) -> None:
        """Cancel the refresh and every download, then wait for them."""
        self._catalog.cancel()
        with self._lock:
            tasks = list(self._downloads)
        for task in tasks:
            task.cancel()
        self._catalog.wait(timeout)
        for task in tasks:
            task.wait(timeout)
        logger.info("Package manager stopped")

    def __enter__(self) -> PackageManager:
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.shutdown()

    # ── Notifications ───────────────────────────────────────────

    def subscribe(self, callback: Callable[[dict], None]) -> Callable[[], None]:
        """Be told about every committed state change."""
        return self.bus.subscribe(callback)

    # ── Catalog ─────────────────────────────────────────────────

    def refresh(self) -> bool:
        """Refresh the catalog in the background (coalesced)."""
        return self._catalog.refresh()

    def wait_for_refresh(self, timeout: float | None = None) -> bool:
        return self._catalog.wait(timeout)

    @property
    def catalog(self) -> list[PackageRecord]:
        return self._catalog.snapshot()

    @property
    def is_refreshing(self) -> bool:
        return self._catalog.is_refreshing

    @property
    def last_error(self) -> DekenError | None:
        """Error of the last failed refresh, None after a good one."""
        return self._catalog.last_error

    def find(self, name: str) -> PackageRecord | None:
        """Catalog record for a package name, if the catalog has one."""
        for record in self._catalog.snapshot():
            if record.name == name:
                return record
        return None

    # ── Install state ───────────────────────────────────────────

    def installed(self) -> list[InstalledEntry]:
        return self.store.snapshot()

    def is_installed(self, record: PackageRecord) -> bool:
        return self.store.contains(record.id)

    # ── Downloads ───────────────────────────────────────────────

    @property
    def downloads(self) -> list[DownloadTask]:
        """Tasks still pending or running."""
        with self._lock:
            self._downloads = [t for t in self._downloads if t.is_active]
            return list(self._downloads)

    def get_download_for_package(self, record: PackageRecord) -> DownloadTask | None:
        for task in self.downloads:
            if task.id == record.id:
                return task
        return None

    def install(self, record: PackageRecord) -> DownloadTask:
        """Start installing ``record``.

        If the same package is already downloading (or still stopping
        after a cancel), the existing task is returned instead of
        starting a second one.  The connection probe runs without the
        manager lock held; a concurrent ``install`` of the same package
        waits for it and then attaches.
        """
        if self.config.force_https:
            record = record.model_copy(update={"url": _force_https(record.url)})

        while True:
            with self._lock:
                existing = self.get_download_for_package(record)
                if existing is not None:
                    logger.info("%s is already downloading — attaching", record.name)
                    return existing
                starting = self._starting.get(record.id)
                if starting is None:
                    starting = threading.Event()
                    self._starting[record.id] = starting
                    break
            starting.wait()

        try:
            task = DownloadTask(
                record,
                self.config.library_dir / record.filename,
                self.store,
                connect_timeout=self.config.connect_timeout,
                chunk_size=self.config.chunk_size,
                opener=self._opener,
            )
            with self._lock:
                self._downloads.append(task)
        finally:
            with self._lock:
                del self._starting[record.id]
            starting.set()

        self.bus.publish("install:started", key=record.name, data={"id": record.id, "version": record.version})
        task.on_cancel(partial(self._task_cancelled, task))
        task.on_finish(partial(self._task_finished, task))
        return task

    def reinstall(self, record: PackageRecord) -> DownloadTask:
        """Install over an existing installation (same as ``install``)."""
        return self.install(record)

    def cancel_download(self, record: PackageRecord) -> bool:
        """Cancel the active download of ``record``.

        Returns:
            True if the task will stop as CANCELLED; ``install:cancelled``
            is published once it has.  False if nothing is downloading or
            the transfer is already complete.
        """
        task = self.get_download_for_package(record)
        if task is None:
            return False
        return task.cancel()

    def uninstall(self, package_id: str) -> bool:
        """Delete an installed package and its record.

        Raises:
            PersistenceFailure: If the directory or state file could
                not be updated; the package then stays registered.
        """
        entry = self.store.get(package_id)
        if not self.store.remove(package_id):
            return False
        self.bus.publish("uninstall:done", key=entry.name if entry else "", data={"id": package_id})
        return True

    def _task_cancelled(self, task: DownloadTask) -> None:
        with self._lock:
            if task in self._downloads:
                self._downloads.remove(task)
        self.bus.publish("install:cancelled", key=task.record.name, data={"id": task.id})

    def _task_finished(self, task: DownloadTask, outcome: DownloadOutcome) -> None:
        with self._lock:
            if task in self._downloads:
                self._downloads.remove(task)

        if outcome.success:
            self.bus.publish(
                "install:done",
                key=task.record.name,
                data={"id": task.id, "path": str(task.install_path)},
            )
        else:
            self.bus.publish(
                "install:failed",
                key=task.record.name,
                data={"id": task.id, "kind": outcome.error_kind},
                error=str(outcome.error),
            )

    # ── Search ──────────────────────────────────────────────────

    def search(self, query: str) -> list[PackageRecord]:
        """Ranked search; the installed list when ``query`` is empty."""
        active = {task.id for task in self.downloads}
        return search_packages(
            query,
            self._catalog.snapshot(),
            self.store.snapshot(),
            active,
            case_sensitive=self.config.case_sensitive_search,
        )
