"""
EventBus — thread-safe, in-process pub/sub for package manager state.

Every change to the catalog or the install state is announced here,
after the change is committed.  Observers (an editor sidebar, the CLI)
subscribe a callback and re-read ``snapshot()`` / ``search()`` from
the manager when notified; the payload is informational.

Delivery model
──────────────
- Only current subscribers receive an event.  A subscriber that
  attaches later must read the manager's snapshots instead.
- Callbacks run synchronously on the publishing thread — usually a
  background worker.  Redispatching to a UI thread is the
  subscriber's job.
- A failing subscriber is logged and skipped; it never prevents
  delivery to the others or breaks the publisher.
- ``recent()`` exposes a bounded ring buffer for diagnostics.

Message standard (v1)
─────────────────────
Every event is a dict with these fields::

    {
        "v": 1,                     # schema version (immutable)
        "ts": 1739648400.123,       # timestamp (immutable)
        "seq": 47,                  # monotonic sequence (immutable)
        "type": "install:done",     # <domain>:<action> (stable)
        "key": "cyclone",           # resource identifier (stable)
        "data": { ... },            # event-specific payload (varies)
    }

Optional fields: ``error``, ``duration_s``.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Any, Callable

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1

Subscriber = Callable[[dict], None]


class EventBus:
    """Thread-safe, in-process pub/sub with a bounded replay buffer.

    Parameters
    ----------
    buffer_size : int
        Maximum number of events kept for ``recent()``.
        Older events are silently discarded.
    """

    def __init__(self, *, buffer_size: int = 200) -> None:
        self._lock = threading.Lock()
        self._seq: int = 0
        self._buffer: deque[dict] = deque(maxlen=buffer_size)
        self._subscribers: list[Subscriber] = []

    # ── Properties ──────────────────────────────────────────────

    @property
    def seq(self) -> int:
        """Current sequence number (monotonically increasing)."""
        with self._lock:
            return self._seq

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    # ── Subscribing ─────────────────────────────────────────────

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback`` for future events.

        Returns
        -------
        Callable
            Zero-argument function that removes the subscription.
        """
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            self.unsubscribe(callback)

        return _unsubscribe

    def unsubscribe(self, callback: Subscriber) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    # ── Publishing ──────────────────────────────────────────────

    def publish(
        self,
        event_type: str,
        *,
        key: str = "",
        data: dict[str, Any] | None = None,
        **kw: Any,
    ) -> dict:
        """Broadcast an event to every current subscriber.

        Parameters
        ----------
        event_type : str
            Event type in ``<domain>:<action>`` format.
        key : str
            Resource identifier (package name).  Empty for catalog events.
        data : dict | None
            Event-specific payload.
        **kw :
            Additional top-level fields (``error``, ``duration_s``).

        Returns
        -------
        dict
            The full event dict with ``seq`` assigned.
        """
        with self._lock:
            self._seq += 1
            event: dict[str, Any] = {
                "v": _SCHEMA_VERSION,
                "ts": time.time(),
                "seq": self._seq,
                "type": event_type,
                "key": key,
                "data": data or {},
                **kw,
            }
            self._buffer.append(event)
            subscribers = list(self._subscribers)

        # Deliver outside the lock so callbacks may publish or re-read state
        extra = ""
        if "duration_s" in kw:
            extra = f" ({kw['duration_s']:.2f}s)"
        elif "error" in kw:
            extra = f" error={str(kw['error'])[:80]}"
        logger.debug("event %s key=%s%s", event_type, key or "-", extra)

        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Subscriber %r failed on %s", callback, event_type)

        return event

    # ── Diagnostics ─────────────────────────────────────────────

    def recent(self, since: int = 0) -> list[dict]:
        """Buffered events with ``seq > since``, oldest first."""
        with self._lock:
            return [e for e in self._buffer if e["seq"] > since]
