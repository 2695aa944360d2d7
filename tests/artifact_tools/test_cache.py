from __future__ import annotations

import json
import os
import time
from pathlib import Path

import pytest
from filelock import FileLock

from VeloKit.ArtifactTools.cache import KeyedLocks, ToolCache
from VeloKit.ArtifactTools.errors import FatalError

from .conftest import sha256_bytes


def _store(cache: ToolCache, url: str, payload: bytes, name: str = "tool"):
    with cache.staging_file() as (handle, staged):
        handle.write(payload)
        handle.close()
        return cache.promote(staged, sha256=sha256_bytes(payload), url=url, name=name)


def test_promote_writes_content_addressed_object_and_index(cache: ToolCache) -> None:
    entry = _store(cache, "https://h/a.exe", b"alpha", name="A")

    digest = sha256_bytes(b"alpha")
    assert entry.path == cache.root / "objects" / digest[:2] / digest
    assert entry.path.read_bytes() == b"alpha"
    index = json.loads((cache.root / "index.json").read_text(encoding="utf-8"))
    assert index == {"https://h/a.exe": {"hash": digest, "name": "A", "size": 5}}
    assert list((cache.root / "tmp").iterdir()) == []


def test_lookup_by_url_and_by_declared_hash(cache: ToolCache) -> None:
    _store(cache, "https://h/a.exe", b"alpha")
    digest = sha256_bytes(b"alpha")

    assert cache.lookup("https://h/a.exe").sha256 == digest
    mirror = cache.lookup("https://mirror/a.exe", expected_hash=digest)
    assert mirror is not None and mirror.sha256 == digest
    assert cache.indexed_hash("https://mirror/a.exe") == digest
    assert cache.lookup("https://h/unknown.exe") is None


def test_declared_hash_wins_over_stale_index(cache: ToolCache) -> None:
    _store(cache, "https://h/a.exe", b"old build")

    assert cache.lookup("https://h/a.exe", expected_hash="f" * 64) is None


def test_corrupted_object_is_evicted(cache: ToolCache) -> None:
    entry = _store(cache, "https://h/a.exe", b"alpha")
    entry.path.write_bytes(b"tampered")

    assert cache.lookup("https://h/a.exe") is None
    assert not entry.path.exists()


def test_index_survives_reopen(cache: ToolCache) -> None:
    _store(cache, "https://h/a.exe", b"alpha")

    reopened = ToolCache(cache.root)

    assert reopened.lookup("https://h/a.exe") is not None


def test_two_handles_on_one_root_merge_metadata(cache: ToolCache) -> None:
    other = ToolCache(cache.root)

    first = _store(cache, "https://h/a.exe", b"alpha")
    cache.record_generation("g1", [first.sha256])
    second = _store(other, "https://h/b.exe", b"bravo")
    other.record_generation("g2", [second.sha256])

    assert cache.indexed_hash("https://h/b.exe") == second.sha256
    reopened = ToolCache(cache.root)
    assert [entry["id"] for entry in reopened.generations] == ["g1", "g2"]
    index = json.loads((cache.root / "index.json").read_text(encoding="utf-8"))
    assert sorted(index) == ["https://h/a.exe", "https://h/b.exe"]

    stats = reopened.prune(keep_generations=5)

    assert stats.removed_objects == []
    assert first.path.exists()
    assert second.path.exists()


def test_metadata_lock_timeout_is_fatal(cache: ToolCache) -> None:
    holder = FileLock(str(cache.root / ".lock"))
    blocked = ToolCache(cache.root, lock_timeout=0.05)

    with holder:
        with pytest.raises(FatalError, match="metadata lock"):
            blocked.record_generation("g1", [])


def test_staging_file_removed_when_abandoned(cache: ToolCache) -> None:
    with pytest.raises(RuntimeError):
        with cache.staging_file() as (handle, staged):
            handle.write(b"partial")
            raise RuntimeError("abort")
    assert not staged.exists()


def test_prune_keeps_last_generations(cache: ToolCache) -> None:
    old = _store(cache, "https://h/old.exe", b"old")
    kept = _store(cache, "https://h/kept.exe", b"kept")
    cache.record_generation("g1", [old.sha256])
    cache.record_generation("g2", [kept.sha256])
    stale = cache.root / "tmp" / "stale.part"
    stale.write_bytes(b"x")
    two_hours_ago = time.time() - 7200
    os.utime(stale, (two_hours_ago, two_hours_ago))
    live = cache.root / "tmp" / "live.part"
    live.write_bytes(b"in flight")

    dry = cache.prune(keep_generations=1, dry_run=True)
    assert dry.removed_objects == [old.sha256]
    assert old.path.exists()

    stats = cache.prune(keep_generations=1)

    assert stats.removed_objects == [old.sha256]
    assert stats.removed_index_entries == ["https://h/old.exe"]
    assert stats.removed_staging_files == 1
    assert not stale.exists()
    assert live.exists()
    assert stats.reclaimed_bytes == 3
    assert not old.path.exists()
    assert kept.path.exists()
    assert [entry["id"] for entry in cache.generations] == ["g2"]


def test_prune_without_generations_keeps_objects(cache: ToolCache) -> None:
    entry = _store(cache, "https://h/a.exe", b"alpha")

    stats = cache.prune(keep_generations=3)

    assert stats.removed_objects == []
    assert entry.path.exists()
    with pytest.raises(ValueError):
        cache.prune(keep_generations=0)


def test_stats_reports_objects_and_bytes(cache: ToolCache) -> None:
    _store(cache, "https://h/a.exe", b"alpha")
    _store(cache, "https://h/b.exe", b"bravo!")

    stats = cache.stats()

    assert stats["objects"] == 2
    assert stats["bytes"] == 11
    assert stats["indexed_urls"] == 2


def test_unwritable_cache_root_is_fatal(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("file", encoding="utf-8")

    with pytest.raises(FatalError):
        ToolCache(blocker / "cache")


def test_keyed_locks_hand_out_one_lock_per_key() -> None:
    locks = KeyedLocks()

    assert locks.get("url:a") is locks.get("url:a")
    assert locks.get("url:a") is not locks.get("url:b")
    with locks.hold("url:a"):
        with locks.hold("url:a"):
            pass
    assert len(locks) == 2
