"""
Archive fetcher — a single HTTP GET, streamed into memory.

The fetcher is split in two steps so the caller can decide what to do
before any bytes move:

    fetcher = ArchiveFetcher(url, timeout=5.0)
    fetcher.open()                  # connection probe, may raise
    data = fetcher.read_all(on_progress=..., should_cancel=...)

``opener`` defaults to ``urllib.request.urlopen``; tests pass a fake
with the same ``(request, timeout=)`` signature.
"""

from __future__ import annotations

import io
import logging
import urllib.error
import urllib.request
from typing import Any, Callable

from deken import __version__
from deken.core.errors import NetworkUnreachable

logger = logging.getLogger(__name__)

USER_AGENT = f"deken-core/{__version__}"

Opener = Callable[..., Any]
ProgressCallback = Callable[[float | None], None]


def _request(url: str) -> urllib.request.Request:
    return urllib.request.Request(url, headers={"User-Agent": USER_AGENT})


def _status(resp: Any) -> int:
    status = getattr(resp, "status", None)
    if status is None:
        status = resp.getcode()
    return int(status)


def open_url(url: str, *, timeout: float, opener: Opener | None = None) -> Any:
    """Open ``url`` and return the response, requiring HTTP 200.

    Raises:
        NetworkUnreachable: On connection errors, timeouts, or any
            status other than 200.
    """
    opener = opener or urllib.request.urlopen
    try:
        resp = opener(_request(url), timeout=timeout)
    except urllib.error.HTTPError as e:
        raise NetworkUnreachable(f"HTTP {e.code} from {url}") from e
    except (urllib.error.URLError, TimeoutError, OSError, ValueError) as e:
        raise NetworkUnreachable(f"Cannot reach {url}: {e}") from e

    status = _status(resp)
    if status != 200:
        resp.close()
        raise NetworkUnreachable(f"HTTP {status} from {url}")
    return resp


def http_get(url: str, *, timeout: float, opener: Opener | None = None) -> bytes:
    """GET ``url`` and return the whole body."""
    resp = open_url(url, timeout=timeout, opener=opener)
    try:
        return resp.read()
    except (urllib.error.URLError, TimeoutError, OSError) as e:
        raise NetworkUnreachable(f"Transfer from {url} failed: {e}") from e
    finally:
        resp.close()


class ArchiveFetcher:
    """Streams one artifact into memory with progress and cancellation."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 5.0,
        chunk_size: int = 8192,
        opener: Opener | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self.chunk_size = chunk_size
        self._opener = opener
        self._resp: Any = None
        self.total_length: int | None = None
        self.bytes_read = 0

    def open(self) -> None:
        """Connect and read the advertised length.

        Raises:
            NetworkUnreachable: If the connection probe fails.
        """
        self._resp = open_url(self.url, timeout=self.timeout, opener=self._opener)
        length = self._resp.headers.get("Content-Length")
        try:
            self.total_length = int(length) if length else None
        except ValueError:
            self.total_length = None
        if not self.total_length:
            # Zero or missing: progress is unknown rather than a division by zero
            self.total_length = None
        logger.debug("Opened %s (length=%s)", self.url, self.total_length)

    def read_all(
        self,
        *,
        on_progress: ProgressCallback | None = None,
        should_cancel: Callable[[], bool] | None = None,
    ) -> bytes | None:
        """Copy the body into memory chunk by chunk.

        ``should_cancel`` is consulted before every chunk; when it returns
        True the transfer stops and None is returned.

        Raises:
            NetworkUnreachable: If the stream breaks mid-transfer.
        """
        if self._resp is None:
            self.open()

        buffer = io.BytesIO()
        try:
            while True:
                if should_cancel is not None and should_cancel():
                    logger.info("Transfer of %s cancelled after %d bytes", self.url, self.bytes_read)
                    return None

                try:
                    chunk = self._resp.read(self.chunk_size)
                except (urllib.error.URLError, TimeoutError, OSError) as e:
                    raise NetworkUnreachable(f"Transfer from {self.url} failed: {e}") from e
                if not chunk:
                    break

                buffer.write(chunk)
                self.bytes_read += len(chunk)

                if on_progress is not None:
                    on_progress(self.progress)
        finally:
            self.close()

        return buffer.getvalue()

    @property
    def progress(self) -> float | None:
        """Fraction transferred, or None when the length is unknown."""
        if self.total_length is None:
            return None
        return min(1.0, self.bytes_read / self.total_length)

    def close(self) -> None:
        if self._resp is not None:
            try:
                self._resp.close()
            finally:
                self._resp = None
