from __future__ import annotations

import copy
import json
from pathlib import Path

import pytest

from VeloKit.ArtifactTools.errors import ConfigError
from VeloKit.ArtifactTools.manifests import (
    compare_manifests,
    load_manifest,
    pinned_hashes,
    validate_manifest,
    write_manifest,
)

HASH_A = "a" * 64
HASH_B = "b" * 64


def _manifest() -> dict:
    return {
        "schema_version": "1.0",
        "artifacts": ["Linux.One", "Linux.Two"],
        "tools": [
            {
                "url": "https://h/a.exe",
                "name": "a",
                "hash": HASH_A,
                "status": "Verified",
                "referencedBy": ["Linux.One"],
            },
            {
                "url": "https://h/b.exe",
                "name": "b",
                "hash": None,
                "status": "Failed",
                "reason": "HTTP 404 fetching https://h/b.exe",
                "referencedBy": ["Linux.Two"],
            },
        ],
        "package": {"mode": "Offline", "platform": "Linux", "files": []},
    }


def test_valid_manifest_round_trips_through_disk(tmp_path: Path) -> None:
    path = write_manifest(tmp_path / "pkg" / "manifest.json", _manifest())

    assert load_manifest(path) == _manifest()
    assert load_manifest(tmp_path / "pkg") == _manifest()
    assert not list((tmp_path / "pkg").glob("*.tmp"))


def test_schema_violations_are_all_reported() -> None:
    payload = _manifest()
    payload["tools"][0]["hash"] = "not-a-hash"
    payload["package"]["mode"] = "Sideways"

    with pytest.raises(ConfigError) as excinfo:
        validate_manifest(payload)

    message = str(excinfo.value)
    assert "tools/0/hash" in message
    assert "package/mode" in message


def test_load_manifest_rejects_missing_and_malformed(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        load_manifest(tmp_path / "manifest.json")

    broken = tmp_path / "broken.json"
    broken.write_text("{", encoding="utf-8")
    with pytest.raises(ConfigError, match="not valid JSON"):
        load_manifest(broken)

    listing = tmp_path / "list.json"
    listing.write_text(json.dumps([1, 2]), encoding="utf-8")
    with pytest.raises(ConfigError, match="JSON object"):
        load_manifest(listing)


def test_pinned_hashes_only_include_verified_tools() -> None:
    assert pinned_hashes(_manifest()) == {"https://h/a.exe": HASH_A}


def test_compare_identical_manifests() -> None:
    diff = compare_manifests(_manifest(), _manifest())

    assert diff["identical_selection"] is True
    assert diff["hash_changed"] == []


def test_compare_reports_selection_status_and_hash_drift() -> None:
    before = _manifest()
    after = copy.deepcopy(before)
    after["artifacts"] = ["Linux.One", "Linux.Three"]
    after["tools"][0]["hash"] = HASH_B
    after["tools"][1]["status"] = "Verified"
    after["tools"].append(
        {"url": "https://h/c.exe", "hash": None, "status": "Pending", "referencedBy": []}
    )

    diff = compare_manifests(before, after)

    assert diff["artifacts_added"] == ["Linux.Three"]
    assert diff["artifacts_removed"] == ["Linux.Two"]
    assert diff["tools_added"] == ["https://h/c.exe"]
    assert diff["status_changed"] == [
        {"url": "https://h/b.exe", "before": "Failed", "after": "Verified"}
    ]
    assert diff["hash_changed"] == [{"url": "https://h/a.exe", "before": HASH_A, "after": HASH_B}]
    assert diff["identical_selection"] is False


def test_hash_drift_alone_keeps_selection_identical() -> None:
    after = _manifest()
    after["tools"][0]["hash"] = HASH_B

    diff = compare_manifests(_manifest(), after)

    assert diff["identical_selection"] is True
    assert len(diff["hash_changed"]) == 1
