from __future__ import annotations

from pathlib import Path

import pytest

from VeloKit.ArtifactTools.errors import FatalError
from VeloKit.ArtifactTools.models import (
    ArtifactDefinition,
    ArtifactType,
    ReferenceOrigin,
    ToolReference,
)
from VeloKit.ArtifactTools.normalizer import (
    canonicalize_url,
    is_remote_url,
    normalize_hash,
    normalize_references,
)
from VeloKit.ArtifactTools.settings import ConflictPolicy

HASH_A = "a" * 64
HASH_B = "b" * 64


def _artifact(name: str, *refs: tuple) -> ArtifactDefinition:
    references = tuple(
        ToolReference(
            declared_name=tool_name,
            url=url,
            expected_hash=expected,
            source_artifact=name,
            origin=origin,
        )
        for tool_name, url, expected, origin in (
            ref if len(ref) == 4 else (*ref, ReferenceOrigin.DECLARED) for ref in refs
        )
    )
    return ArtifactDefinition(
        name=name,
        description="",
        type=ArtifactType.CLIENT,
        tool_references=references,
        source_path=Path(f"{name}.yaml"),
    )


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("HTTPS://Live.Sysinternals.COM/tools/Autoruns.exe", "https://live.sysinternals.com/tools/Autoruns.exe"),
        ("https://example.com:443/a.exe", "https://example.com/a.exe"),
        ("http://example.com:80/a.exe", "http://example.com/a.exe"),
        ("https://example.com:8443/a.exe", "https://example.com:8443/a.exe"),
        ("https://example.com/a.exe#section", "https://example.com/a.exe"),
        ("https://example.com/", "https://example.com"),
        ("https://example.com/dl?file=A.exe&v=2", "https://example.com/dl?file=A.exe&v=2"),
        ("https://bücher.example/tool.exe", "https://xn--bcher-kva.example/tool.exe"),
        ("tools/Autoruns.exe", "tools/Autoruns.exe"),
    ],
)
def test_canonicalize_url(raw: str, expected: str) -> None:
    assert canonicalize_url(raw) == expected


def test_canonicalize_url_preserves_path_case_and_rejects_missing_host() -> None:
    assert canonicalize_url("https://h/Tools/A.EXE") != canonicalize_url("https://h/tools/a.exe")
    with pytest.raises(ValueError):
        canonicalize_url("https:///no-host.exe")


def test_is_remote_url() -> None:
    assert is_remote_url("https://example.com/a")
    assert not is_remote_url("tools/a.exe")


def test_normalize_hash_accepts_prefix_and_case() -> None:
    assert normalize_hash(f"SHA256:{HASH_A.upper()}") == HASH_A
    assert normalize_hash(None) is None
    assert normalize_hash("  ") is None
    with pytest.raises(ValueError):
        normalize_hash("deadbeef")


def test_same_canonical_url_collapses_into_one_tool() -> None:
    artifacts = [
        _artifact("Windows.A", ("Autoruns", "https://H.example/autoruns.exe", None)),
        _artifact("Windows.B", ("Autoruns", "https://h.example:443/autoruns.exe#x", HASH_A)),
    ]

    result = normalize_references(artifacts)

    assert list(result.tools) == ["https://h.example/autoruns.exe"]
    tool = result.tools["https://h.example/autoruns.exe"]
    assert tool.expected_hash == HASH_A
    assert tool.referenced_by == {"Windows.A", "Windows.B"}
    assert tool.raw_urls == {"https://H.example/autoruns.exe", "https://h.example:443/autoruns.exe#x"}
    assert result.edges == [
        ("Windows.A", "https://h.example/autoruns.exe"),
        ("Windows.B", "https://h.example/autoruns.exe"),
    ]
    assert result.conflicts == []


def test_conflicting_hashes_first_wins_with_warning() -> None:
    artifacts = [
        _artifact("B.Second", ("tool", "https://h/tool.exe", HASH_B)),
        _artifact("A.First", ("tool", "https://h/tool.exe", HASH_A)),
    ]

    result = normalize_references(artifacts, ConflictPolicy.FIRST_WINS)

    assert result.tools["https://h/tool.exe"].expected_hash == HASH_A
    (conflict,) = result.conflicts
    assert conflict.kept_hash == HASH_A
    assert conflict.rejected_hash == HASH_B
    assert conflict.artifact == "B.Second"
    assert any("Conflicting expected hashes" in warning for warning in result.warnings)


def test_conflicting_hashes_last_wins_and_strict() -> None:
    artifacts = [
        _artifact("A.First", ("tool", "https://h/tool.exe", HASH_A)),
        _artifact("B.Second", ("tool", "https://h/tool.exe", HASH_B)),
    ]

    last = normalize_references(artifacts, ConflictPolicy.LAST_WINS)
    assert last.tools["https://h/tool.exe"].expected_hash == HASH_B
    assert len(last.warnings) == 1

    with pytest.raises(FatalError):
        normalize_references(artifacts, ConflictPolicy.STRICT)


def test_declared_name_overrides_inferred_segment() -> None:
    artifacts = [
        _artifact(
            "A.Inferred",
            ("autorunsc64.exe", "https://h/autorunsc64.exe", None, ReferenceOrigin.INFERRED),
        ),
        _artifact("B.Declared", ("Autoruns_amd64", "https://h/autorunsc64.exe", None)),
    ]

    result = normalize_references(artifacts)

    assert result.tools["https://h/autorunsc64.exe"].name == "Autoruns_amd64"


def test_name_collision_across_urls_is_warned_and_both_kept() -> None:
    artifacts = [
        _artifact("A", ("winpmem", "https://h/v1/winpmem.exe", None)),
        _artifact("B", ("winpmem", "https://h/v2/winpmem.exe", None)),
    ]

    result = normalize_references(artifacts)

    assert len(result.tools) == 2
    assert any("maps to 2 different URLs" in warning for warning in result.warnings)


def test_repeated_reference_in_one_artifact_yields_single_edge() -> None:
    artifacts = [
        _artifact("A", ("t", "https://h/t.exe", None), ("t", "HTTPS://h/t.exe", None)),
    ]

    result = normalize_references(artifacts)

    assert result.edges == [("A", "https://h/t.exe")]
