"""HTTP client factory and Tenacity-based retry helpers.

Failures are classified into :class:`~VeloKit.ArtifactTools.errors.NetworkError`
instances carrying a ``retryable`` flag:

- timeouts, connection resets and other transport errors: retryable
- HTTP 5xx: retryable
- HTTP 4xx, unsupported schemes, malformed URLs: permanent

:func:`retry_with_backoff` then applies exponential backoff (base delay
doubling per attempt, capped) to retryable failures only.

Example:
    >>> import httpx
    >>> from VeloKit.ArtifactTools.settings import DownloadConfiguration
    >>> client = create_http_client(DownloadConfiguration())
    >>> isinstance(client, httpx.Client)
    True
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

import httpx
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .errors import NetworkError
from .settings import LOGGER_NAME, DownloadConfiguration

logger = logging.getLogger(LOGGER_NAME)

T = TypeVar("T")


def create_http_client(config: DownloadConfiguration) -> httpx.Client:
    """Create the HTTPX client owned by one pipeline run.

    The timeout applies per request (connect, read, write, pool), never to a
    whole run.  Redirects are followed because tool hosts routinely bounce
    through CDNs and GitHub release storage.
    """
    return httpx.Client(
        timeout=httpx.Timeout(config.timeout_sec),
        follow_redirects=True,
        headers={"User-Agent": config.user_agent},
        limits=httpx.Limits(
            max_connections=max(config.max_concurrent_downloads * 2, 10),
            max_keepalive_connections=config.max_concurrent_downloads,
        ),
    )


def classify_http_error(exc: Exception, url: str) -> NetworkError:
    """Translate an HTTPX exception into a :class:`NetworkError`."""

    if isinstance(exc, NetworkError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return NetworkError(
            f"HTTP {status} fetching {url}",
            status_code=status,
            retryable=status >= 500,
        )
    if isinstance(exc, (httpx.UnsupportedProtocol, httpx.InvalidURL)):
        return NetworkError(f"Cannot fetch {url}: {exc}", retryable=False)
    if isinstance(exc, httpx.TimeoutException):
        return NetworkError(f"Timed out fetching {url}: {exc}", retryable=True)
    if isinstance(exc, httpx.TransportError):
        return NetworkError(f"Connection error fetching {url}: {exc}", retryable=True)
    return NetworkError(f"Unexpected error fetching {url}: {exc}", retryable=False)


def is_retryable_error(exc: BaseException) -> bool:
    return isinstance(exc, NetworkError) and exc.retryable


def retry_with_backoff(
    func: Callable[[], T],
    *,
    retryable: Callable[[BaseException], bool] = is_retryable_error,
    max_attempts: int = 3,
    backoff_base: float = 1.0,
    backoff_max: float = 30.0,
    callback: Optional[Callable[[int, BaseException, float], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Execute ``func`` until it succeeds, retrying retryable failures.

    The delay before attempt ``n + 1`` is ``backoff_base * 2 ** (n - 1)``
    capped at ``backoff_max``.  Non-retryable exceptions and the final
    retryable one propagate unchanged.

    Args:
        func: Zero-argument callable performing one attempt.
        retryable: Predicate deciding whether an exception is transient.
        max_attempts: Total attempts including the first.
        backoff_base: Delay in seconds after the first failure.
        backoff_max: Upper bound for any single delay.
        callback: Invoked as ``callback(attempt, exc, delay)`` before sleeping.
        sleep: Sleep function; tests and cancellation hooks replace it.
    """

    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    def _before_sleep(retry_state: RetryCallState) -> None:
        if callback is None or retry_state.outcome is None:
            return
        exc = retry_state.outcome.exception()
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        if exc is not None:
            callback(retry_state.attempt_number, exc, delay)

    retrying = Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=backoff_base, min=0, max=backoff_max),
        retry=retry_if_exception(retryable),
        before_sleep=_before_sleep,
        sleep=sleep,
        reraise=True,
    )
    return retrying(func)


__all__ = [
    "classify_http_error",
    "create_http_client",
    "is_retryable_error",
    "retry_with_backoff",
]
