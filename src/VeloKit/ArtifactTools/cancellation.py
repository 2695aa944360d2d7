"""Cooperative cancellation for the tool download worker pool.

Workers never get interrupted mid-write: they poll a shared
:class:`CancellationToken` between chunks and before each attempt, then
discard their staging file and exit.  Tools already promoted into the cache
stay valid.  Backoff sleeps use :meth:`CancellationToken.wait` so that a
cancelled run does not sit out a 30 second retry delay.
"""

from __future__ import annotations

import threading
from typing import Optional

from .errors import DownloadCancelled


class CancellationToken:
    """Thread-safe cancellation flag shared by every worker of a download run.

    Examples:
        >>> token = CancellationToken()
        >>> token.is_cancelled()
        False
        >>> token.cancel("operator abort")
        >>> token.is_cancelled(), token.reason
        (True, 'operator abort')
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[str] = None

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        """Signal cancellation; the first reason recorded wins."""
        with self._lock:
            if not self._event.is_set():
                self._reason = reason
                self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        """Raise :class:`DownloadCancelled` when cancellation has been requested."""
        if self._event.is_set():
            raise DownloadCancelled(self._reason or "cancelled")

    def wait(self, timeout: float) -> bool:
        """Sleep for up to ``timeout`` seconds, waking early on cancellation.

        Returns:
            True if the token was cancelled while waiting.
        """
        return self._event.wait(max(timeout, 0.0))

    def sleep(self, delay: float) -> None:
        """Backoff-compatible sleep that raises once the token is cancelled."""
        if self.wait(delay):
            raise DownloadCancelled(self._reason or "cancelled")


__all__ = ["CancellationToken"]
