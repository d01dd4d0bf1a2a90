"""
Download task — fetch, extract and register one package.

Lifecycle::

    PENDING ──probe ok──▶ RUNNING ──▶ SUCCEEDED
       │                     ├──────▶ FAILED
       │                     └──────▶ CANCELLED (no completion)
       └──probe failed──▶ FAILED (no thread is ever started)

The connection probe runs in the constructor, bounded by the connect
timeout.  Everything after it (the transfer, extraction and the
install-state write) runs on the task's own thread.

Observers attach with ``on_progress`` / ``on_finish`` / ``on_cancel``.
Attaching late is safe: the last known progress, or the final outcome,
is delivered immediately.  Each finish observer is called exactly once;
a cancelled task never calls them and calls its cancel observers
instead.

Cancellation is accepted only while the transfer is still running.
Once every byte is in memory, ``cancel()`` returns False and the task
goes on to extract and register.  All callbacks run on the worker
thread (or the attaching thread, for replays).
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from deken.core.errors import DekenError
from deken.core.models.package import DownloadState, InstalledEntry, PackageRecord
from deken.core.persistence.install_state import InstallStateStore
from deken.core.services.archive import extract_archive
from deken.core.services.fetcher import ArchiveFetcher, Opener

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DownloadOutcome:
    """Terminal result delivered to finish observers."""

    success: bool
    entry: InstalledEntry | None = None
    error: DekenError | None = None

    @property
    def error_kind(self) -> str | None:
        return self.error.kind if self.error else None


ProgressObserver = Callable[[float | None], None]
FinishObserver = Callable[[DownloadOutcome], None]
CancelObserver = Callable[[], None]


class DownloadTask:
    """One concurrent install of one package.

    Args:
        record: The package to install.
        destination: Where the archive would be saved; it is extracted
            into ``destination.parent`` and the package is registered at
            ``destination.parent / record.name``.
        store: Install-state store to register the package with.
        connect_timeout: Bound on the connection probe, in seconds.
        chunk_size: Bytes read per chunk (also the cancellation granularity).
        opener: ``urlopen``-compatible callable, for tests.
    """

    def __init__(
        self,
        record: PackageRecord,
        destination: Path,
        store: InstallStateStore,
        *,
        connect_timeout: float = 5.0,
        chunk_size: int = 8192,
        opener: Opener | None = None,
    ) -> None:
        self.record = record
        self.destination = destination
        self._store = store
        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._state = DownloadState.PENDING
        self._progress: float | None = 0.0
        self._outcome: DownloadOutcome | None = None
        self._progress_observers: list[ProgressObserver] = []
        self._finish_observers: list[FinishObserver] = []
        self._cancel_observers: list[CancelObserver] = []
        self._transferred = False
        self._thread: threading.Thread | None = None

        self._fetcher = ArchiveFetcher(
            record.url,
            timeout=connect_timeout,
            chunk_size=chunk_size,
            opener=opener,
        )
        try:
            self._fetcher.open()
        except DekenError as e:
            logger.warning("Cannot start download of %s: %s", record.name, e)
            self._state = DownloadState.FAILED
            self._outcome = DownloadOutcome(success=False, error=e)
            return

        if self._fetcher.total_length is None:
            self._progress = None

        self._state = DownloadState.RUNNING
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=f"deken-download-{record.name}",
        )
        self._thread.start()
        logger.info("Downloading %s %s from %s", record.name, record.version, record.url)

    # ── Properties ──────────────────────────────────────────────

    @property
    def id(self) -> str:
        return self.record.id

    @property
    def state(self) -> DownloadState:
        with self._lock:
            return self._state

    @property
    def progress(self) -> float | None:
        """Fraction in [0, 1], or None when the total size is unknown."""
        with self._lock:
            return self._progress

    @property
    def outcome(self) -> DownloadOutcome | None:
        with self._lock:
            return self._outcome

    @property
    def is_active(self) -> bool:
        return not self.state.is_terminal

    @property
    def install_path(self) -> Path:
        return self.destination.parent / self.record.name

    # ── Observers ───────────────────────────────────────────────

    def on_progress(self, callback: ProgressObserver) -> None:
        """Receive progress updates; the current value is sent right away."""
        with self._lock:
            self._progress_observers.append(callback)
            current = self._progress
            running = self._state == DownloadState.RUNNING
        if running:
            callback(current)

    def on_finish(self, callback: FinishObserver) -> None:
        """Receive the outcome once; immediately if already finished."""
        with self._lock:
            outcome = self._outcome
            if outcome is None:
                self._finish_observers.append(callback)
        if outcome is not None:
            callback(outcome)

    def on_cancel(self, callback: CancelObserver) -> None:
        """Be told when the task stops as CANCELLED; immediately if it has."""
        with self._lock:
            cancelled = self._state == DownloadState.CANCELLED
            if not cancelled and not self._state.is_terminal:
                self._cancel_observers.append(callback)
        if cancelled:
            callback()

    # ── Control ─────────────────────────────────────────────────

    def cancel(self) -> bool:
        """Stop at the next chunk boundary.

        Returns:
            True if the task will end as CANCELLED.  False once the
            transfer is complete (extraction and registration always
            run to the end) or the task already finished.
        """
        with self._lock:
            if self._transferred or self._state.is_terminal:
                return False
            self._cancel.set()
        return True

    def wait(self, timeout: float | None = None) -> bool:
        """Join the worker thread. True if it is no longer running."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    # ── Worker ──────────────────────────────────────────────────

    def _run(self) -> None:
        try:
            data = self._fetcher.read_all(
                on_progress=self._report_progress,
                should_cancel=self._cancel.is_set,
            )
            with self._lock:
                # A cancel accepted after the last chunk still wins
                if data is not None and not self._cancel.is_set():
                    self._transferred = True
            if not self._transferred:
                self._cancelled()
                return

            extract_archive(data, self.destination.parent)
            entry = self._store.add(self.record, self.install_path)
        except DekenError as e:
            if self._cancel.is_set() and not self._transferred:
                self._cancelled()
                return
            logger.warning("Install of %s failed (%s): %s", self.record.name, e.kind, e)
            self._finish(DownloadOutcome(success=False, error=e))
            return
        except Exception as e:
            logger.exception("Install of %s crashed", self.record.name)
            self._finish(DownloadOutcome(success=False, error=DekenError(str(e))))
            return

        self._finish(DownloadOutcome(success=True, entry=entry))

    def _report_progress(self, progress: float | None) -> None:
        with self._lock:
            if progress is not None and self._progress is not None:
                if progress < self._progress:
                    return
            self._progress = progress
            observers = list(self._progress_observers)
        for callback in observers:
            try:
                callback(progress)
            except Exception:
                logger.exception("Progress observer failed for %s", self.record.name)

    def _cancelled(self) -> None:
        with self._lock:
            self._state = DownloadState.CANCELLED
            self._progress_observers.clear()
            self._finish_observers.clear()
            observers = self._cancel_observers
            self._cancel_observers = []
        logger.info("Download of %s cancelled", self.record.name)

        for callback in observers:
            try:
                callback()
            except Exception:
                logger.exception("Cancel observer failed for %s", self.record.name)

    def _finish(self, outcome: DownloadOutcome) -> None:
        with self._lock:
            if self._outcome is not None:
                return
            self._outcome = outcome
            self._state = DownloadState.SUCCEEDED if outcome.success else DownloadState.FAILED
            if outcome.success:
                self._progress = 1.0
            observers = self._finish_observers
            self._finish_observers = []
            self._progress_observers.clear()
            self._cancel_observers.clear()

        for callback in observers:
            try:
                callback(outcome)
            except Exception:
                logger.exception("Finish observer failed for %s", self.record.name)

    def __repr__(self) -> str:
        return f"DownloadTask({self.record.name!r}, state={self.state.value})"
