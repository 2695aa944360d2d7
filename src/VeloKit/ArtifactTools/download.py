"""
Tool Download Orchestration

Fetches every tool in a :class:`~VeloKit.ArtifactTools.graph.DependencyGraph`
exactly once into the :class:`~VeloKit.ArtifactTools.cache.ToolCache`:

- a fixed-size thread pool (``max_concurrent_downloads``) drains the queue of
  pending tools in canonical-URL order;
- each tool is resolved under its canonical-URL lock, cache first, so a racing
  worker for the same URL observes a cache hit instead of fetching again;
- transient failures are retried with exponential backoff, while 4xx
  responses and hash mismatches fail the tool immediately;
- bytes are streamed into a staging file, hashed on the fly, and promoted into
  the content-addressed store only after verification;
- one tool's permanent failure never aborts the run (continue-on-error).
"""

from __future__ import annotations

import contextlib
import hashlib
import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Optional
from urllib.parse import urlsplit

import httpx

from .cache import CacheEntry, ToolCache
from .cancellation import CancellationToken
from .errors import DownloadCancelled, IntegrityError, NetworkError
from .graph import DependencyGraph
from .models import DownloadReport, DownloadStatus, ResolvedTool, ToolFailure
from .network import (
    classify_http_error,
    create_http_client,
    is_retryable_error,
    retry_with_backoff,
)
from .settings import LOGGER_NAME, DownloadConfiguration

logger = logging.getLogger(LOGGER_NAME)


class InFlightGauge:
    """Counts concurrent HTTP fetches and remembers the peak."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.current = 0
        self.peak = 0

    @contextlib.contextmanager
    def track(self) -> Iterator[None]:
        with self._lock:
            self.current += 1
            self.peak = max(self.peak, self.current)
        try:
            yield
        finally:
            with self._lock:
                self.current -= 1


@dataclass
class _ToolOutcome:
    tool: ResolvedTool
    cache_hit: bool = False
    failure: Optional[ToolFailure] = None
    warnings: List[str] = field(default_factory=list)


class DownloadOrchestrator:
    """Bounded-concurrency tool fetcher filling a :class:`ToolCache`.

    Args:
        cache: Destination cache; also consulted before any network call.
        config: Download settings (pool size, retries, timeouts, limits).
        client: Optional preconfigured ``httpx.Client``.  When omitted the
            orchestrator creates one and closes it in :meth:`close`.
        cancellation_token: Token observed between chunks and during backoff.
        sleep: Backoff sleep override; defaults to the token's interruptible
            sleep.

    Examples:
        >>> with DownloadOrchestrator(cache, config) as orchestrator:  # doctest: +SKIP
        ...     report = orchestrator.run(graph)
    """

    def __init__(
        self,
        cache: ToolCache,
        config: Optional[DownloadConfiguration] = None,
        *,
        client: Optional[httpx.Client] = None,
        cancellation_token: Optional[CancellationToken] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.cache = cache
        self.config = config or DownloadConfiguration()
        self._owns_client = client is None
        self.client = client or create_http_client(self.config)
        self.token = cancellation_token or CancellationToken()
        self._sleep = sleep or self.token.sleep
        self.gauge = InFlightGauge()
        self._count_lock = threading.Lock()
        self.fetch_count = 0

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def __enter__(self) -> "DownloadOrchestrator":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ----------------------------------------------------------------- fetching

    def _stream_into(self, tool: ResolvedTool, handle, hasher) -> int:
        url = tool.canonical_url
        limit = self.config.max_download_bytes()
        received = 0
        with self.gauge.track():
            with self._count_lock:
                self.fetch_count += 1
            try:
                with self.client.stream("GET", url) as response:
                    response.raise_for_status()
                    for chunk in response.iter_bytes(self.config.chunk_size):
                        self.token.raise_if_cancelled()
                        if not chunk:
                            continue
                        received += len(chunk)
                        if received > limit:
                            raise NetworkError(
                                f"{url} exceeds the {self.config.max_download_size_mb} MB "
                                "download limit",
                                retryable=False,
                            )
                        hasher.update(chunk)
                        handle.write(chunk)
            except (httpx.HTTPError, httpx.InvalidURL) as exc:
                raise classify_http_error(exc, url) from exc
        return received

    def _fetch_once(self, tool: ResolvedTool) -> CacheEntry:
        """One attempt: stream, hash, verify, promote."""
        self.token.raise_if_cancelled()
        url = tool.canonical_url
        scheme = urlsplit(url).scheme.lower()
        if scheme not in self.config.allowed_schemes:
            raise NetworkError(f"Unsupported URL scheme for {url!r}", retryable=False)

        with self.cache.staging_file() as (handle, staged):
            hasher = hashlib.sha256()
            size = self._stream_into(tool, handle, hasher)
            handle.flush()
            try:
                os.fsync(handle.fileno())
            except OSError:
                pass
            handle.close()
            digest = hasher.hexdigest()
            if tool.expected_hash and digest != tool.expected_hash:
                raise IntegrityError(
                    f"SHA-256 mismatch for {url}: expected {tool.expected_hash}, got {digest}",
                    expected=tool.expected_hash,
                    actual=digest,
                )
            self.token.raise_if_cancelled()
            entry = self.cache.promote(staged, sha256=digest, url=url, name=tool.name)
        logger.info(
            "tool downloaded",
            extra={"stage": "download", "tool_url": url, "sha256": digest, "size": size},
        )
        return entry

    # ---------------------------------------------------------------- resolving

    @staticmethod
    def _mark_verified(tool: ResolvedTool, entry: CacheEntry, *, from_cache: bool) -> None:
        tool.content_hash = entry.sha256
        tool.local_cache_path = entry.path
        tool.size_bytes = entry.size
        tool.download_status = DownloadStatus.VERIFIED
        tool.failure_reason = None
        tool.from_cache = from_cache

    @staticmethod
    def _fail(tool: ResolvedTool, reason: str, kind: str, attempts: int) -> ToolFailure:
        tool.download_status = DownloadStatus.FAILED
        tool.failure_reason = reason
        logger.error(
            "tool resolution failed",
            extra={
                "stage": "download",
                "tool_url": tool.canonical_url,
                "kind": kind,
                "attempts": attempts,
                "error": reason,
            },
        )
        return ToolFailure(
            url=tool.canonical_url, name=tool.name, reason=reason, kind=kind, attempts=attempts
        )

    def _undeclared_hash_warning(self, tool: ResolvedTool) -> str:
        message = (
            f"No expected hash pre-declared for {tool.canonical_url}; "
            f"recording {tool.content_hash} as its identity"
        )
        logger.warning(message, extra={"stage": "download", "tool_url": tool.canonical_url})
        return message

    def resolve_tool(self, tool: ResolvedTool, *, offline: bool = False) -> _ToolOutcome:
        """Resolve one tool from cache or network; never raises for tool failures."""
        outcome = _ToolOutcome(tool=tool)
        if self.token.is_cancelled():
            outcome.failure = self._fail(tool, "cancelled before start", "cancelled", 0)
            return outcome

        with self.cache.key_lock(tool.canonical_url):
            entry = self.cache.lookup(tool.canonical_url, tool.expected_hash)
            if entry is not None:
                self._mark_verified(tool, entry, from_cache=True)
                outcome.cache_hit = True
                if tool.expected_hash is None:
                    outcome.warnings.append(self._undeclared_hash_warning(tool))
                logger.debug(
                    "cache hit",
                    extra={"stage": "download", "tool_url": tool.canonical_url},
                )
                return outcome

            if offline:
                outcome.failure = self._fail(tool, "not cached (offline mode)", "offline", 0)
                return outcome

            tool.download_status = DownloadStatus.IN_FLIGHT
            attempts = 0

            def _attempt() -> CacheEntry:
                nonlocal attempts
                attempts += 1
                return self._fetch_once(tool)

            def _on_retry(attempt: int, exc: BaseException, delay: float) -> None:
                logger.warning(
                    "tool fetch retry",
                    extra={
                        "stage": "download",
                        "tool_url": tool.canonical_url,
                        "attempt": attempt,
                        "sleep_sec": round(delay, 2),
                        "error": str(exc),
                    },
                )

            try:
                entry = retry_with_backoff(
                    _attempt,
                    retryable=is_retryable_error,
                    max_attempts=self.config.max_attempts,
                    backoff_base=self.config.backoff_base_sec,
                    backoff_max=self.config.backoff_max_sec,
                    callback=_on_retry,
                    sleep=self._sleep,
                )
            except IntegrityError as exc:
                outcome.failure = self._fail(tool, str(exc), "integrity", attempts)
                return outcome
            except DownloadCancelled as exc:
                outcome.failure = self._fail(tool, f"cancelled: {exc}", "cancelled", attempts)
                return outcome
            except NetworkError as exc:
                outcome.failure = self._fail(tool, str(exc), "network", attempts)
                return outcome
            except OSError as exc:
                outcome.failure = self._fail(tool, f"cache write failed: {exc}", "io", attempts)
                return outcome

            self._mark_verified(tool, entry, from_cache=False)
            if tool.expected_hash is None:
                outcome.warnings.append(self._undeclared_hash_warning(tool))
            return outcome

    def run(
        self,
        graph: DependencyGraph,
        *,
        max_concurrent: Optional[int] = None,
        offline: bool = False,
        record_generation: bool = True,
    ) -> DownloadReport:
        """Resolve every tool in ``graph`` and return the aggregated report.

        The call returns only after the worker pool has fully drained, so the
        report (and every :class:`ResolvedTool` in the graph) is final.
        """
        workers = max_concurrent or self.config.max_concurrent_downloads
        if workers < 1:
            raise ValueError("max_concurrent must be at least 1")
        report = DownloadReport()
        tools = [graph.tools[key] for key in graph.tool_keys]
        for tool in tools:
            report.tools[tool.key] = tool
        logger.info(
            "download run starting",
            extra={
                "stage": "download",
                "tools": len(tools),
                "workers": workers,
                "offline": offline,
            },
        )

        outcomes: List[_ToolOutcome] = []
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tool-fetch") as executor:
            futures = [
                executor.submit(self.resolve_tool, tool, offline=offline) for tool in tools
            ]
            for future in as_completed(futures):
                outcomes.append(future.result())

        for outcome in sorted(outcomes, key=lambda item: item.tool.key):
            if outcome.cache_hit:
                report.cache_hits += 1
            elif not (outcome.failure and outcome.failure.kind in {"offline", "cancelled"}):
                report.cache_misses += 1
            if outcome.failure is not None:
                report.failures.append(outcome.failure)
            report.warnings.extend(outcome.warnings)

        report.fetch_count = self.fetch_count
        report.max_in_flight = self.gauge.peak
        report.cancelled = self.token.is_cancelled()

        if record_generation and not report.cancelled:
            self.cache.record_generation(
                graph.fingerprint(),
                [tool.content_hash for tool in report.verified if tool.content_hash],
            )

        logger.info(
            "download run finished",
            extra={
                "stage": "download",
                "verified": len(report.verified),
                "failed": len(report.failures),
                "cache_hits": report.cache_hits,
                "cache_misses": report.cache_misses,
                "fetches": report.fetch_count,
                "max_in_flight": report.max_in_flight,
            },
        )
        return report


__all__ = ["DownloadOrchestrator", "InFlightGauge"]
