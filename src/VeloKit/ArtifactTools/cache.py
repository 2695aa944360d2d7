# === NAVMAP v1 ===
# {
#   "module": "VeloKit.ArtifactTools.cache",
#   "purpose": "Content-addressed tool cache with URL index, per-key locking, and generation pruning",
#   "sections": [
#     {"id": "locks", "name": "Keyed Locks", "anchor": "LCK", "kind": "infra"},
#     {"id": "entries", "name": "Cache Entries", "anchor": "ENT", "kind": "api"},
#     {"id": "cache", "name": "ToolCache", "anchor": "TCH", "kind": "api"},
#     {"id": "prune", "name": "Generation Pruning", "anchor": "PRN", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Content-addressed tool cache.

Layout under the cache root::

    objects/<sha[0:2]>/<sha256>   verified tool bytes
    tmp/                          staging files for in-flight downloads
    index.json                    canonical URL -> {hash, size, name}
    generations.json              hashes referenced by each recorded graph build
    .lock                         cross-process guard for the two metadata files

Objects only ever appear through :meth:`ToolCache.promote`, which renames a
fully verified staging file into place, so readers never observe partial
bytes.  The cache grows monotonically; :meth:`ToolCache.prune` is the only
destructive operation and is never triggered by a build.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from filelock import FileLock, Timeout

from .errors import FatalError
from .io_safe import sha256_file, write_json_atomic
from .settings import LOGGER_NAME

logger = logging.getLogger(LOGGER_NAME)
logging.getLogger("filelock").setLevel(logging.INFO)

INDEX_FILENAME = "index.json"
GENERATIONS_FILENAME = "generations.json"
LOCK_FILENAME = ".lock"
DEFAULT_LOCK_TIMEOUT = 30.0
# Staging files untouched for this long belong to no live download.
STALE_STAGING_SEC = 3600.0


class KeyedLocks:
    """Registry handing out one re-entrant lock per key.

    Workers resolving different tools never contend; two workers resolving the
    same canonical URL (or landing on the same content hash) serialise.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    def get(self, key: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextlib.contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self.get(key)
        with lock:
            yield

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)


@dataclass(slots=True, frozen=True)
class CacheEntry:
    url: str
    sha256: str
    path: Path
    size: int
    name: Optional[str] = None


@dataclass(slots=True)
class PruneStats:
    """Outcome of a prune pass."""

    kept_generations: int = 0
    removed_objects: List[str] = field(default_factory=list)
    removed_index_entries: List[str] = field(default_factory=list)
    removed_staging_files: int = 0
    reclaimed_bytes: int = 0

    def to_dict(self) -> dict:
        return {
            "kept_generations": self.kept_generations,
            "removed_objects": sorted(self.removed_objects),
            "removed_index_entries": sorted(self.removed_index_entries),
            "removed_staging_files": self.removed_staging_files,
            "reclaimed_bytes": self.reclaimed_bytes,
        }


class ToolCache:
    """Content-addressed store for verified tool binaries.

    ``index.json`` and ``generations.json`` may be shared by several
    processes pointing at the same root.  Every read-modify-write of either
    file happens under ``<root>/.lock`` and starts by re-reading the file from
    disk, so concurrent builds merge their entries instead of overwriting one
    another.

    Args:
        root: Cache directory; created on first use.
        lock_timeout: Seconds to wait for the metadata lock before failing.

    Raises:
        FatalError: If the cache directory cannot be created.
    """

    def __init__(self, root: Path, *, lock_timeout: float = DEFAULT_LOCK_TIMEOUT) -> None:
        self.root = Path(root).expanduser()
        self.objects_dir = self.root / "objects"
        self.staging_dir = self.root / "tmp"
        try:
            self.objects_dir.mkdir(parents=True, exist_ok=True)
            self.staging_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise FatalError(f"Cannot create tool cache at {self.root}: {exc}") from exc
        self.locks = KeyedLocks()
        self._index_lock = threading.Lock()
        self._file_lock = FileLock(str(self.root / LOCK_FILENAME), timeout=lock_timeout)
        self._index: Dict[str, dict] = {}
        self._generations: List[dict] = []
        self._reload()

    # ------------------------------------------------------------------ helpers

    def _load_json(self, path: Path, default):
        if not path.exists():
            return default
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning(
                "cache metadata unreadable; starting empty",
                extra={"stage": "cache", "file": str(path), "error": str(exc)},
            )
            return default
        if not isinstance(payload, type(default)):
            logger.warning(
                "cache metadata has unexpected shape; starting empty",
                extra={"stage": "cache", "file": str(path)},
            )
            return default
        return payload

    def _reload(self) -> None:
        self._index = self._load_json(self.root / INDEX_FILENAME, {})
        self._generations = self._load_json(self.root / GENERATIONS_FILENAME, [])

    @contextlib.contextmanager
    def _metadata(self) -> Iterator[None]:
        """Hold the in-process and cross-process metadata locks with fresh state."""
        with self._index_lock:
            try:
                self._file_lock.acquire()
            except Timeout as exc:
                raise FatalError(
                    f"Timed out waiting for cache metadata lock {self._file_lock.lock_file}"
                ) from exc
            try:
                self._reload()
                yield
            finally:
                self._file_lock.release()

    def _flush_index(self) -> None:
        write_json_atomic(self.root / INDEX_FILENAME, self._index)

    def _flush_generations(self) -> None:
        write_json_atomic(self.root / GENERATIONS_FILENAME, self._generations)

    def object_path(self, sha256: str) -> Path:
        return self.objects_dir / sha256[:2] / sha256

    def indexed_hash(self, url: str) -> Optional[str]:
        with self._index_lock:
            entry = self._index.get(url)
        if entry is None:
            # Another process may have indexed the URL since the last reload.
            with self._metadata():
                entry = self._index.get(url)
        return entry.get("hash") if entry else None

    @contextlib.contextmanager
    def key_lock(self, key: str) -> Iterator[None]:
        """Hold the lock for one canonical URL while resolving it."""
        with self.locks.hold(f"url:{key}"):
            yield

    # ------------------------------------------------------------------- lookup

    def verify_object(self, sha256: str) -> bool:
        """Re-hash the stored object; evict it when the bytes no longer match."""
        path = self.object_path(sha256)
        with self.locks.hold(f"sha:{sha256}"):
            if not path.is_file():
                return False
            actual = sha256_file(path)
            if actual == sha256:
                return True
            logger.warning(
                "cached tool failed re-verification; evicting",
                extra={"stage": "cache", "expected": sha256, "actual": actual},
            )
            path.unlink(missing_ok=True)
            return False

    def lookup(self, url: str, expected_hash: Optional[str] = None) -> Optional[CacheEntry]:
        """Return a verified entry for ``url`` without touching the network.

        The declared ``expected_hash`` takes precedence over the URL index, so
        content already cached under that hash is a hit even for a new URL.
        Corrupted objects are evicted and reported as misses.
        """
        candidates: List[str] = []
        if expected_hash:
            candidates.append(expected_hash)
        indexed = self.indexed_hash(url)
        if indexed and indexed not in candidates:
            if expected_hash:
                logger.info(
                    "indexed hash differs from declared hash; declared hash wins",
                    extra={
                        "stage": "cache",
                        "tool_url": url,
                        "indexed": indexed,
                        "declared": expected_hash,
                    },
                )
            else:
                candidates.append(indexed)

        for sha256 in candidates:
            if not self.verify_object(sha256):
                continue
            path = self.object_path(sha256)
            with self._index_lock:
                entry = self._index.get(url)
            if entry is None or entry.get("hash") != sha256:
                with self._metadata():
                    entry = self._index.get(url)
                    if entry is None or entry.get("hash") != sha256:
                        entry = {
                            "hash": sha256,
                            "size": path.stat().st_size,
                            "name": entry.get("name") if entry else None,
                        }
                        self._index[url] = entry
                        self._flush_index()
            name = entry.get("name")
            return CacheEntry(
                url=url, sha256=sha256, path=path, size=path.stat().st_size, name=name
            )
        return None

    # ------------------------------------------------------------------ staging

    @contextlib.contextmanager
    def staging_file(self, prefix: str = "download-") -> Iterator[Tuple[object, Path]]:
        """Yield ``(handle, path)`` for a staging file that is removed on exit.

        A file that was promoted no longer exists at ``path`` by the time the
        context exits, so cleanup only ever discards abandoned downloads.
        """
        fd, name = tempfile.mkstemp(prefix=prefix, suffix=".part", dir=str(self.staging_dir))
        path = Path(name)
        handle = os.fdopen(fd, "wb")
        try:
            yield handle, path
        finally:
            if not handle.closed:
                handle.close()
            path.unlink(missing_ok=True)

    def promote(
        self,
        staged: Path,
        *,
        sha256: str,
        url: str,
        name: Optional[str] = None,
    ) -> CacheEntry:
        """Atomically move verified ``staged`` bytes into the object store."""
        target = self.object_path(sha256)
        with self.locks.hold(f"sha:{sha256}"):
            target.parent.mkdir(parents=True, exist_ok=True)
            if target.is_file() and sha256_file(target) == sha256:
                staged.unlink(missing_ok=True)
            else:
                os.replace(staged, target)
        size = target.stat().st_size
        with self._metadata():
            self._index[url] = {"hash": sha256, "size": size, "name": name}
            self._flush_index()
        logger.debug(
            "tool promoted into cache",
            extra={"stage": "cache", "tool_url": url, "sha256": sha256, "size": size},
        )
        return CacheEntry(url=url, sha256=sha256, path=target, size=size, name=name)

    # -------------------------------------------------------------- generations

    @property
    def generations(self) -> List[dict]:
        with self._metadata():
            return [dict(entry) for entry in self._generations]

    def record_generation(self, graph_id: str, hashes: Iterable[str]) -> None:
        """Append one graph build's referenced hashes to the generations log."""
        entry = {
            "id": graph_id,
            "recorded_at": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "hashes": sorted(set(hashes)),
        }
        with self._metadata():
            self._generations.append(entry)
            self._flush_generations()

    def _iter_objects(self) -> Iterator[Path]:
        if not self.objects_dir.exists():
            return
        for shard in sorted(self.objects_dir.iterdir()):
            if shard.is_dir():
                yield from sorted(path for path in shard.iterdir() if path.is_file())

    def prune(
        self,
        keep_generations: int,
        *,
        dry_run: bool = False,
        stale_after_sec: float = STALE_STAGING_SEC,
    ) -> PruneStats:
        """Remove objects not referenced by the last ``keep_generations`` builds.

        Without any recorded generation nothing is known to be unused, so the
        prune is a no-op apart from clearing stale staging files.  A staging
        file is stale once it has not been written for ``stale_after_sec``
        seconds; younger ones may belong to a download in another process.
        """
        if keep_generations < 1:
            raise ValueError("keep_generations must be at least 1")
        stats = PruneStats()
        with self._metadata():
            recent = self._generations[-keep_generations:]
            stats.kept_generations = len(recent)
            live = {sha for entry in recent for sha in entry.get("hashes", ())}

            if recent:
                for path in list(self._iter_objects()):
                    if path.name in live:
                        continue
                    stats.removed_objects.append(path.name)
                    stats.reclaimed_bytes += path.stat().st_size
                    if not dry_run:
                        path.unlink(missing_ok=True)
                removed = set(stats.removed_objects)
                for url, entry in sorted(self._index.items()):
                    if entry.get("hash") in removed or (
                        entry.get("hash") not in live
                        and not self.object_path(str(entry.get("hash"))).exists()
                    ):
                        stats.removed_index_entries.append(url)
                if not dry_run:
                    for url in stats.removed_index_entries:
                        self._index.pop(url, None)
                    self._generations = recent
                    self._flush_index()
                    self._flush_generations()

            cutoff = time.time() - stale_after_sec
            for staged in sorted(self.staging_dir.glob("*.part")):
                try:
                    if staged.stat().st_mtime > cutoff:
                        continue
                except FileNotFoundError:
                    continue
                stats.removed_staging_files += 1
                if not dry_run:
                    staged.unlink(missing_ok=True)

        logger.info(
            "cache pruned" if not dry_run else "cache prune (dry run)",
            extra={"stage": "cache", **stats.to_dict()},
        )
        return stats

    def stats(self) -> dict:
        objects = list(self._iter_objects())
        with self._metadata():
            indexed = len(self._index)
            generations = len(self._generations)
        return {
            "root": str(self.root),
            "objects": len(objects),
            "bytes": sum(path.stat().st_size for path in objects),
            "indexed_urls": indexed,
            "generations": generations,
        }


__all__ = ["CacheEntry", "KeyedLocks", "PruneStats", "ToolCache"]
