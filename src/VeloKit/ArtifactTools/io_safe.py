"""Filesystem helpers: hashing, atomic JSON writes, and safe file names."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import tempfile
from pathlib import Path

from .settings import LOGGER_NAME

_HASH_CHUNK = 1 << 20


def sha256_file(path: Path) -> str:
    """Compute the SHA-256 digest for ``path`` without loading it whole."""
    hasher = hashlib.sha256()
    with Path(path).open("rb") as stream:
        for chunk in iter(lambda: stream.read(_HASH_CHUNK), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def write_json_atomic(path: Path, payload: object) -> Path:
    """Atomically persist ``payload`` as sorted, indented JSON to ``path``."""

    resolved = Path(path).expanduser()
    resolved.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        "w", encoding="utf-8", dir=str(resolved.parent), delete=False, suffix=".tmp"
    ) as handle:
        json.dump(payload, handle, indent=2, sort_keys=True)
        handle.write("\n")
        handle.flush()
        try:
            os.fsync(handle.fileno())
        except (AttributeError, OSError):
            pass
        temp_name = handle.name
    Path(temp_name).replace(resolved)
    return resolved


def sanitize_filename(filename: str, *, default: str = "tool") -> str:
    """Sanitize a tool name into a safe single path component.

    Examples:
        >>> sanitize_filename("../Autoruns 64.exe")
        'Autoruns_64.exe'
    """
    original = filename
    safe = filename.replace(os.sep, "_").replace("/", "_").replace("\\", "_")
    safe = re.sub(r"[^A-Za-z0-9._-]", "_", safe)
    safe = safe.strip("._") or default
    if len(safe) > 200:
        safe = safe[:200]
    if safe != original:
        logging.getLogger(LOGGER_NAME).debug(
            "sanitized unsafe filename",
            extra={"stage": "sanitize", "original": original, "sanitized": safe},
        )
    return safe


__all__ = ["sanitize_filename", "sha256_file", "write_json_atomic"]
