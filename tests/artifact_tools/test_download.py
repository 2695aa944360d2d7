"""Download orchestration against an ``httpx.MockTransport`` tool host."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import List

import httpx

from VeloKit.ArtifactTools.cache import ToolCache
from VeloKit.ArtifactTools.cancellation import CancellationToken
from VeloKit.ArtifactTools.download import DownloadOrchestrator
from VeloKit.ArtifactTools.graph import build_dependency_graph
from VeloKit.ArtifactTools.models import DownloadStatus
from VeloKit.ArtifactTools.scanner import scan_artifacts

from .conftest import ToolServer


def _graph(corpus: Path):
    graph, _ = build_dependency_graph(scan_artifacts(corpus).artifacts)
    return graph


def _orchestrator(cache, config, client, **kwargs) -> DownloadOrchestrator:
    kwargs.setdefault("sleep", lambda delay: None)
    return DownloadOrchestrator(cache, config.download, client=client, **kwargs)


def test_shared_tool_is_fetched_once(
    write_artifact, corpus, tool_server: ToolServer, http_client, cache, config
) -> None:
    digest = tool_server.serve("https://tools.example/A.exe", b"tool A")
    for name in ("Windows.One", "Windows.Two", "Windows.Three"):
        write_artifact(name, [("A", "https://tools.example/A.exe", digest)])

    report = _orchestrator(cache, config, http_client).run(_graph(corpus))

    assert tool_server.count("https://tools.example/A.exe") == 1
    assert report.fetch_count == 1
    (tool,) = report.verified
    assert tool.content_hash == digest
    assert tool.referenced_by == {"Windows.One", "Windows.Two", "Windows.Three"}
    assert tool.local_cache_path.read_bytes() == b"tool A"


def test_second_run_is_served_entirely_from_cache(
    write_artifact, corpus, tool_server: ToolServer, http_client, cache, config
) -> None:
    tool_server.serve("https://h/a.exe", b"a")
    tool_server.serve("https://h/b.exe", b"b")
    write_artifact("Generic.A", [("a", "https://h/a.exe", None), ("b", "https://h/b.exe", None)])

    first = _orchestrator(cache, config, http_client).run(_graph(corpus))
    second = _orchestrator(cache, config, http_client).run(_graph(corpus))

    assert first.fetch_count == 2 and first.cache_misses == 2
    assert second.fetch_count == 0
    assert second.cache_hits == 2
    assert [tool.from_cache for tool in second.verified] == [True, True]


def test_missing_expected_hash_warns(
    write_artifact, corpus, tool_server: ToolServer, http_client, cache, config
) -> None:
    tool_server.serve("https://h/a.exe", b"a")
    write_artifact("Generic.A", [("a", "https://h/a.exe", None)])

    report = _orchestrator(cache, config, http_client).run(_graph(corpus))

    assert report.success
    assert any("No expected hash pre-declared" in warning for warning in report.warnings)


def test_retryable_failures_back_off_then_succeed(
    write_artifact, corpus, tool_server: ToolServer, http_client, cache, config
) -> None:
    tool_server.sequence("https://h/flaky.exe", [(503, b""), (502, b""), (200, b"ok")])
    write_artifact("Generic.Flaky", [("flaky", "https://h/flaky.exe", None)])
    config.download.backoff_base_sec = 1.0
    config.download.backoff_max_sec = 30.0
    delays: List[float] = []

    report = _orchestrator(cache, config, http_client, sleep=delays.append).run(_graph(corpus))

    assert report.success
    assert tool_server.count("https://h/flaky.exe") == 3
    assert delays == [1.0, 2.0]


def test_exhausted_retries_record_failure(
    write_artifact, corpus, tool_server: ToolServer, http_client, cache, config
) -> None:
    tool_server.serve("https://h/down.exe", b"", status=500)
    write_artifact("Generic.Down", [("down", "https://h/down.exe", None)])

    report = _orchestrator(cache, config, http_client).run(_graph(corpus))

    (failure,) = report.failures
    assert failure.kind == "network"
    assert failure.attempts == 3
    assert "HTTP 500" in failure.reason
    assert tool_server.count("https://h/down.exe") == 3


def test_client_errors_are_not_retried(
    write_artifact, corpus, tool_server: ToolServer, http_client, cache, config
) -> None:
    tool_server.serve("https://h/gone.exe", b"", status=404)
    tool_server.serve("https://h/ok.exe", b"ok")
    write_artifact("Generic.Mixed", [("gone", "https://h/gone.exe", None), ("ok", "https://h/ok.exe", None)])

    report = _orchestrator(cache, config, http_client).run(_graph(corpus))

    assert tool_server.count("https://h/gone.exe") == 1
    (failure,) = report.failures
    assert failure.attempts == 1
    assert report.tools["https://h/gone.exe"].download_status is DownloadStatus.FAILED
    assert report.tools["https://h/ok.exe"].download_status is DownloadStatus.VERIFIED


def test_hash_mismatch_fails_without_retry_or_cache_entry(
    write_artifact, corpus, tool_server: ToolServer, http_client, cache: ToolCache, config
) -> None:
    tool_server.serve("https://h/a.exe", b"unexpected bytes")
    write_artifact("Generic.A", [("a", "https://h/a.exe", "0" * 64)])

    report = _orchestrator(cache, config, http_client).run(_graph(corpus))

    (failure,) = report.failures
    assert failure.kind == "integrity"
    assert tool_server.count("https://h/a.exe") == 1
    assert cache.stats()["objects"] == 0
    assert list(cache.staging_dir.iterdir()) == []


def test_corrupted_cache_object_triggers_redownload(
    write_artifact, corpus, tool_server: ToolServer, http_client, cache: ToolCache, config
) -> None:
    digest = tool_server.serve("https://h/a.exe", b"genuine")
    write_artifact("Generic.A", [("a", "https://h/a.exe", digest)])
    _orchestrator(cache, config, http_client).run(_graph(corpus))
    cache.object_path(digest).write_bytes(b"bit rot")

    report = _orchestrator(cache, config, http_client).run(_graph(corpus))

    assert report.fetch_count == 1
    assert report.success
    assert cache.object_path(digest).read_bytes() == b"genuine"


def test_declared_hash_hits_cache_for_new_url(
    write_artifact, corpus, tool_server: ToolServer, http_client, cache, config
) -> None:
    digest = tool_server.serve("https://primary/a.exe", b"payload")
    write_artifact("Generic.A", [("a", "https://primary/a.exe", digest)])
    _orchestrator(cache, config, http_client).run(_graph(corpus))

    (corpus / "Generic.A.yaml").unlink()
    write_artifact("Generic.B", [("a", "https://mirror/a.exe", digest)])
    report = _orchestrator(cache, config, http_client).run(_graph(corpus))

    assert report.fetch_count == 0
    assert report.cache_hits == 1
    assert tool_server.count("https://mirror/a.exe") == 0


def test_offline_mode_uses_cache_only(
    write_artifact, corpus, tool_server: ToolServer, http_client, cache, config
) -> None:
    tool_server.serve("https://h/a.exe", b"a")
    write_artifact("Generic.A", [("a", "https://h/a.exe", None)])

    report = _orchestrator(cache, config, http_client).run(_graph(corpus), offline=True)

    assert tool_server.requests == []
    (failure,) = report.failures
    assert failure.reason == "not cached (offline mode)"
    assert report.cache_misses == 0


def test_concurrency_never_exceeds_pool_size(
    write_artifact, corpus, tool_server: ToolServer, http_client, cache, config
) -> None:
    tool_server.delay = 0.05
    tools = []
    for index in range(8):
        url = f"https://h/tool{index}.exe"
        tool_server.serve(url, f"payload-{index}".encode())
        tools.append((f"tool{index}", url, None))
    write_artifact("Generic.Many", tools)

    report = _orchestrator(cache, config, http_client).run(_graph(corpus), max_concurrent=2)

    assert report.success
    assert report.fetch_count == 8
    assert 1 <= report.max_in_flight <= 2
    assert tool_server.peak <= 2


def test_racing_runs_on_shared_cache_fetch_each_url_once(
    write_artifact, corpus, tool_server: ToolServer, http_client, cache: ToolCache, config
) -> None:
    tool_server.delay = 0.02
    tools = []
    for index in range(4):
        url = f"https://h/shared{index}.exe"
        tool_server.serve(url, f"shared-{index}".encode())
        tools.append((f"shared{index}", url, None))
    write_artifact("Generic.Shared", tools)
    reports = []
    barrier = threading.Barrier(2)

    def _run() -> None:
        graph = _graph(corpus)
        barrier.wait()
        reports.append(_orchestrator(cache, config, http_client).run(graph))

    threads = [threading.Thread(target=_run) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(tool_server.requests) == 4
    assert sum(report.fetch_count for report in reports) == 4
    assert all(report.success for report in reports)


def test_cancellation_abandons_download_and_cleans_staging(
    write_artifact, corpus, cache: ToolCache, config
) -> None:
    token = CancellationToken()

    def _cancel_mid_transfer(request: httpx.Request) -> httpx.Response:
        token.cancel("operator abort")
        return httpx.Response(200, content=b"partial payload")

    server = ToolServer(routes={"https://h/big.exe": _cancel_mid_transfer})
    write_artifact("Generic.Big", [("big", "https://h/big.exe", None)])

    with server.client() as client:
        report = _orchestrator(cache, config, client, cancellation_token=token).run(_graph(corpus))

    assert report.cancelled
    (failure,) = report.failures
    assert failure.kind == "cancelled"
    assert cache.stats()["objects"] == 0
    assert list(cache.staging_dir.iterdir()) == []
    assert cache.generations == []


def test_successful_run_records_generation(
    write_artifact, corpus, tool_server: ToolServer, http_client, cache: ToolCache, config
) -> None:
    digest = tool_server.serve("https://h/a.exe", b"a")
    write_artifact("Generic.A", [("a", "https://h/a.exe", None)])
    graph = _graph(corpus)

    _orchestrator(cache, config, http_client).run(graph)

    (generation,) = cache.generations
    assert generation["id"] == graph.fingerprint()
    assert generation["hashes"] == [digest]


def test_unsupported_scheme_fails_permanently(
    write_artifact, corpus, http_client, cache, config
) -> None:
    config.download.allowed_schemes = ["https"]
    write_artifact("Generic.Plain", [("plain", "http://h/plain.exe", None)])

    report = _orchestrator(cache, config, http_client).run(_graph(corpus))

    (failure,) = report.failures
    assert failure.kind == "network"
    assert report.fetch_count == 0
