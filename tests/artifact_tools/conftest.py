"""Shared fixtures for the artifact tool resolver tests.

HTTP is mocked with ``httpx.MockTransport``: :class:`ToolServer` serves a
table of URL -> response specs, records every request, and tracks the peak
number of concurrent requests it observed.
"""

from __future__ import annotations

import hashlib
import logging
import textwrap
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import httpx
import pytest

from VeloKit.ArtifactTools.cache import ToolCache
from VeloKit.ArtifactTools.settings import LOGGER_NAME, ResolvedConfig, build_resolved_config


def sha256_bytes(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


ToolSpec = Tuple[str, Optional[str], Optional[str]]


def artifact_yaml(
    name: str,
    tools: Sequence[ToolSpec] = (),
    *,
    body: str = "",
    artifact_type: str = "CLIENT",
) -> str:
    """Render a minimal Velociraptor artifact with a ``tools:`` section."""
    lines = [f"name: {name}", f"description: Test artifact {name}", f"type: {artifact_type}"]
    if tools:
        lines.append("tools:")
        for tool_name, url, expected in tools:
            lines.append(f"  - name: {tool_name}")
            if url is not None:
                lines.append(f"    url: {url}")
            if expected is not None:
                lines.append(f"    expected_hash: \"{expected}\"")
    lines.append("sources:")
    lines.append("  - query: |")
    query = body or "SELECT * FROM info()"
    for query_line in textwrap.dedent(query).splitlines():
        lines.append(f"      {query_line}")
    return "\n".join(lines) + "\n"


@pytest.fixture
def corpus(tmp_path: Path) -> Path:
    root = tmp_path / "artifacts"
    root.mkdir()
    return root


@pytest.fixture
def write_artifact(corpus: Path) -> Callable[..., Path]:
    """Write an artifact into the corpus; returns its path."""

    def _write(name: str, tools: Sequence[ToolSpec] = (), *, body: str = "", filename=None):
        path = corpus / (filename or f"{name}.yaml")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(artifact_yaml(name, tools, body=body), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def config(tmp_path: Path) -> ResolvedConfig:
    """Configuration with an isolated cache and zero backoff."""
    return build_resolved_config(
        {
            "cache": {"directory": str(tmp_path / "cache")},
            "download": {"backoff_base_sec": 0.0, "backoff_max_sec": 0.0, "timeout_sec": 5},
        },
        apply_env=False,
    )


@pytest.fixture
def cache(config: ResolvedConfig) -> ToolCache:
    return ToolCache(config.cache.directory)


Responder = Union[
    Tuple[int, bytes],
    Callable[[httpx.Request], httpx.Response],
    List[Tuple[int, bytes]],
]


@dataclass
class ToolServer:
    """In-memory tool host backing an ``httpx.MockTransport``."""

    routes: Dict[str, Responder] = field(default_factory=dict)
    delay: float = 0.0
    requests: List[str] = field(default_factory=list)
    active: int = 0
    peak: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def serve(self, url: str, payload: bytes, status: int = 200) -> str:
        self.routes[url] = (status, payload)
        return sha256_bytes(payload)

    def sequence(self, url: str, responses: Iterable[Tuple[int, bytes]]) -> None:
        """Serve ``responses`` in order; the last one repeats."""
        self.routes[url] = list(responses)

    def count(self, url: str) -> int:
        with self._lock:
            return self.requests.count(url)

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        with self._lock:
            self.requests.append(url)
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            route = self.routes.get(url)
            if route is None:
                return httpx.Response(404, content=b"not found")
            if callable(route):
                return route(request)
            if isinstance(route, list):
                with self._lock:
                    status, payload = route.pop(0) if len(route) > 1 else route[0]
                return httpx.Response(status, content=payload)
            status, payload = route
            return httpx.Response(status, content=payload)
        finally:
            with self._lock:
                self.active -= 1

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler), follow_redirects=True)


@pytest.fixture
def tool_server() -> ToolServer:
    return ToolServer()


@pytest.fixture
def http_client(tool_server: ToolServer):
    client = tool_server.client()
    yield client
    client.close()


@pytest.fixture(autouse=True)
def _reset_package_logger():
    """Drop handlers installed by ``setup_logging`` so streams never leak between tests."""
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        if getattr(handler, "_velotools_managed", False):
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(logging.NOTSET)
