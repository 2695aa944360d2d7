"""End-to-end pipeline runs through :func:`execute`."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from VeloKit.ArtifactTools.models import PackageMode, Platform
from VeloKit.ArtifactTools.pipeline import (
    EXIT_FATAL,
    EXIT_PARTIAL,
    EXIT_SUCCESS,
    AllCommand,
    DownloadCommand,
    PackageCommand,
    PipelineContext,
    ResolveCommand,
    ScanCommand,
    execute,
)

from .conftest import ToolServer


@pytest.fixture
def context(config, http_client, cache) -> PipelineContext:
    return PipelineContext(config=config, client=http_client, cache=cache)


def test_two_artifacts_sharing_a_tool(
    write_artifact, corpus: Path, tool_server: ToolServer, context: PipelineContext, tmp_path: Path
) -> None:
    hash_a = tool_server.serve("https://tools.example/A", b"tool A")
    tool_server.serve("https://tools.example/B", b"tool B")
    write_artifact("Linux.Collect.One", [("A", "https://tools.example/A", hash_a)])
    write_artifact("Linux.Collect.Two", [("A", "https://tools.example/A", None)])
    write_artifact("Linux.Collect.Three", [("B", "https://tools.example/B", None)])

    result = execute(
        AllCommand(
            artifact_path=corpus,
            output_path=tmp_path / "out",
            platform=Platform.LINUX,
            mode=PackageMode.OFFLINE,
            max_concurrent=1,
        ),
        context,
    )

    assert result.exit_code == EXIT_SUCCESS, result.errors
    graph = result.payload["graph"]
    assert graph.tool_keys == ["https://tools.example/A", "https://tools.example/B"]
    assert tool_server.requests == ["https://tools.example/A", "https://tools.example/B"]
    package_path = result.payload["package_path"]
    assert sorted(p.name for p in (package_path / "tools").iterdir()) == ["A", "B"]
    assert len(list((package_path / "artifacts").iterdir())) == 3
    manifest = json.loads(result.payload["manifest_path"].read_text(encoding="utf-8"))
    assert manifest["cache"] == {"fetches": 2, "hits": 0, "misses": 2}


def test_one_failing_tool_is_partial_success(
    write_artifact, corpus: Path, tool_server: ToolServer, context: PipelineContext, tmp_path: Path
) -> None:
    tools = []
    for index in range(5):
        url = f"https://h/tool{index}"
        if index == 3:
            tool_server.serve(url, b"", status=404)
        else:
            tool_server.serve(url, f"tool {index}".encode())
        tools.append((f"tool{index}", url, None))
    write_artifact("Generic.Bundle", tools)

    result = execute(AllCommand(artifact_path=corpus, output_path=tmp_path / "out"), context)

    assert result.exit_code == EXIT_PARTIAL
    assert not result.success
    assert len(result.payload["resolved_tools"]) == 4
    (failure,) = result.payload["failures"]
    assert failure.url == "https://h/tool3"
    assert any("HTTP 404" in error for error in result.errors)
    manifest = json.loads(result.payload["manifest_path"].read_text(encoding="utf-8"))
    statuses = {entry["url"]: entry["status"] for entry in manifest["tools"]}
    assert statuses["https://h/tool3"] == "Failed"
    assert sorted(statuses.values()).count("Verified") == 4


def test_require_all_tools_turns_failure_fatal(
    write_artifact, corpus: Path, tool_server: ToolServer, context: PipelineContext, tmp_path: Path
) -> None:
    tool_server.serve("https://h/ok", b"ok")
    tool_server.serve("https://h/missing", b"", status=404)
    write_artifact("Generic.Bundle", [("ok", "https://h/ok", None), ("missing", "https://h/missing", None)])

    result = execute(
        AllCommand(artifact_path=corpus, output_path=tmp_path / "out", require_all_tools=True),
        context,
    )

    assert result.exit_code == EXIT_FATAL
    assert "all tools are required" in result.errors[0]
    assert not (tmp_path / "out").exists()


def test_missing_artifact_root_is_fatal(context: PipelineContext, tmp_path: Path) -> None:
    result = execute(
        AllCommand(artifact_path=tmp_path / "nowhere", output_path=tmp_path / "out"), context
    )

    assert result.exit_code == EXIT_FATAL
    assert not (tmp_path / "out").exists()


def test_cancelled_run_builds_no_package(
    write_artifact, corpus: Path, tool_server: ToolServer, context: PipelineContext, tmp_path: Path
) -> None:
    tool_server.serve("https://h/a", b"a")
    write_artifact("Generic.A", [("a", "https://h/a", None)])
    context.cancellation_token.cancel("operator abort")

    result = execute(AllCommand(artifact_path=corpus, output_path=tmp_path / "out"), context)

    assert result.exit_code == EXIT_FATAL
    assert "operator abort" in result.errors[0]
    assert not (tmp_path / "out" / "velociraptor-artifacts-generic-offline").exists()


def test_pinned_manifest_reproduces_selection(
    write_artifact, corpus: Path, tool_server: ToolServer, context: PipelineContext, tmp_path: Path
) -> None:
    tool_server.serve("https://h/a", b"a")
    tool_server.serve("https://h/b", b"b")
    write_artifact("Generic.A", [("a", "https://h/a", None), ("b", "https://h/b", None)])
    first = execute(AllCommand(artifact_path=corpus, output_path=tmp_path / "first"), context)

    second = execute(
        AllCommand(
            artifact_path=corpus,
            output_path=tmp_path / "second",
            pinned_manifest=first.payload["manifest_path"],
        ),
        context,
    )

    assert second.exit_code == EXIT_SUCCESS
    assert second.payload["drift"]["identical_selection"] is True
    assert second.payload["report"].fetch_count == 0
    pinned = second.payload["graph"].tools["https://h/a"].expected_hash
    assert pinned == first.payload["graph"].tools["https://h/a"].content_hash


def test_stages_compose_individually(
    write_artifact, corpus: Path, tool_server: ToolServer, context: PipelineContext, tmp_path: Path
) -> None:
    tool_server.serve("https://h/w.exe", b"w")
    write_artifact("Windows.W", [("w", "https://h/w.exe", None)])
    write_artifact("Linux.L", [("l", "https://h/l", None)])

    scanned = execute(ScanCommand(corpus, include=["Windows.*"]), context)
    resolved = execute(ResolveCommand(scanned.payload["artifacts"]), context)
    downloaded = execute(DownloadCommand(resolved.payload["graph"]), context)
    packaged = execute(
        PackageCommand(
            resolved.payload["graph"],
            downloaded.payload["report"],
            tmp_path / "out",
            platform=Platform.WINDOWS,
            mode=PackageMode.ONLINE,
        ),
        context,
    )

    assert [artifact.name for artifact in scanned.payload["artifacts"]] == ["Windows.W"]
    assert downloaded.exit_code == EXIT_SUCCESS
    assert packaged.exit_code == EXIT_SUCCESS
    assert packaged.payload["package_path"].name == "velociraptor-artifacts-windows-online"
    assert tool_server.count("https://h/l") == 0


def test_unknown_command_type_is_rejected(context: PipelineContext) -> None:
    with pytest.raises(TypeError):
        execute(object(), context)
