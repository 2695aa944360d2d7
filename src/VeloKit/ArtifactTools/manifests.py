"""Manifest export, validation, pinning, and comparison.

The manifest is the audit and reproducibility record of a build: the full
dependency graph, each required tool's resolution status (with the failure
reason when it failed), cache hit/miss counts, every warning, and the exact
file list plus SHA-256 hashes of the package directory.

Feeding :func:`pinned_hashes` of a manifest back into a resolve over the same
corpus reproduces the same tool selection and status, which
:func:`compare_manifests` checks.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

from jsonschema import Draft202012Validator

from . import __version__
from .errors import ConfigError
from .graph import DependencyGraph
from .io_safe import write_json_atomic
from .models import DownloadReport, DownloadStatus, Package
from .settings import LOGGER_NAME

logger = logging.getLogger(LOGGER_NAME)

MANIFEST_FILENAME = "manifest.json"
MANIFEST_SCHEMA_VERSION = "1.0"

_SHA256 = {"type": "string", "pattern": "^[0-9a-f]{64}$"}
_NULLABLE_SHA256 = {"anyOf": [_SHA256, {"type": "null"}]}

MANIFEST_SCHEMA: Dict[str, object] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["schema_version", "artifacts", "tools", "package"],
    "properties": {
        "schema_version": {"type": "string"},
        "generated_at": {"type": "string"},
        "generator": {"type": "object"},
        "artifacts": {"type": "array", "items": {"type": "string"}},
        "tools": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["url", "hash", "status", "referencedBy"],
                "properties": {
                    "url": {"type": "string"},
                    "name": {"type": "string"},
                    "hash": _NULLABLE_SHA256,
                    "expected_hash": _NULLABLE_SHA256,
                    "size": {"type": ["integer", "null"]},
                    "status": {"enum": [status.value for status in DownloadStatus]},
                    "reason": {"type": ["string", "null"]},
                    "path": {"type": ["string", "null"]},
                    "referencedBy": {"type": "array", "items": {"type": "string"}},
                },
            },
        },
        "graph": {"type": "object"},
        "cache": {
            "type": "object",
            "properties": {
                "hits": {"type": "integer", "minimum": 0},
                "misses": {"type": "integer", "minimum": 0},
            },
        },
        "warnings": {"type": "array", "items": {"type": "string"}},
        "errors": {"type": "array", "items": {"type": "string"}},
        "package": {
            "type": "object",
            "required": ["mode", "platform", "files"],
            "properties": {
                "mode": {"enum": ["Online", "Offline"]},
                "platform": {"enum": ["Windows", "Linux", "macOS", "Generic"]},
                "name": {"type": "string"},
                "files": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "required": ["path", "hash"],
                        "properties": {"path": {"type": "string"}, "hash": _SHA256},
                    },
                },
            },
        },
    },
}

_VALIDATOR = Draft202012Validator(MANIFEST_SCHEMA)


def validate_manifest(payload: Mapping[str, object]) -> None:
    """Raise :class:`ConfigError` listing every schema violation in ``payload``."""
    errors = sorted(_VALIDATOR.iter_errors(payload), key=lambda error: list(error.path))
    if errors:
        details = "\n  ".join(
            f"{'/'.join(str(part) for part in error.path) or '<root>'}: {error.message}"
            for error in errors
        )
        raise ConfigError(f"Manifest failed schema validation:\n  {details}")


def build_manifest(
    graph: DependencyGraph,
    report: Optional[DownloadReport],
    package: Package,
    *,
    warnings: Sequence[str] = (),
    errors: Sequence[str] = (),
) -> Dict[str, object]:
    """Serialise ``graph``, tool statuses, and ``package`` contents.

    ``graph`` should be the graph restricted to the package's selection, so
    ``referencedBy`` and the tool list describe exactly what was packaged.
    """
    tools: List[dict] = []
    for key in graph.tool_keys:
        tool = graph.tools[key]
        tools.append(
            {
                "url": tool.canonical_url,
                "name": tool.name,
                "hash": tool.content_hash,
                "expected_hash": tool.expected_hash,
                "size": tool.size_bytes,
                "status": tool.download_status.value,
                "reason": tool.failure_reason,
                "path": package.tool_paths.get(key),
                "referencedBy": sorted(graph.tool_artifacts.get(key, ())),
            }
        )
    payload: Dict[str, object] = {
        "schema_version": MANIFEST_SCHEMA_VERSION,
        "generated_at": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "generator": {"name": "velotools", "version": __version__},
        "artifacts": sorted(package.selected_artifacts),
        "tools": tools,
        "graph": graph.to_dict(),
        "cache": {
            "hits": report.cache_hits if report else 0,
            "misses": report.cache_misses if report else 0,
            "fetches": report.fetch_count if report else 0,
        },
        "warnings": list(warnings),
        "errors": list(errors),
        "package": {
            "mode": package.mode.value,
            "platform": package.platform.value,
            "name": package.path.name,
            "files": [entry.to_dict() for entry in sorted(package.files, key=lambda f: f.path)],
        },
    }
    validate_manifest(payload)
    return payload


def write_manifest(path: Path, payload: Mapping[str, object]) -> Path:
    written = write_json_atomic(path, payload)
    logger.info(
        "manifest written",
        extra={
            "stage": "manifest",
            "manifest_path": str(written),
            "tools": len(payload.get("tools", [])),  # type: ignore[arg-type]
        },
    )
    return written


def load_manifest(path: Path) -> Dict[str, object]:
    """Load and schema-validate a manifest file.

    Raises:
        ConfigError: If the file is missing, not JSON, or fails validation.
    """
    resolved = Path(path).expanduser()
    if resolved.is_dir():
        resolved = resolved / MANIFEST_FILENAME
    try:
        payload = json.loads(resolved.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigError(f"Manifest not found: {resolved}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Manifest {resolved} is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise ConfigError("Manifest must contain a JSON object")
    validate_manifest(payload)
    return payload


def pinned_hashes(manifest: Mapping[str, object]) -> Dict[str, str]:
    """Return ``{canonical_url: sha256}`` for every verified tool in ``manifest``."""
    pins: Dict[str, str] = {}
    for entry in manifest.get("tools", []):  # type: ignore[union-attr]
        if entry.get("status") == DownloadStatus.VERIFIED.value and entry.get("hash"):
            pins[entry["url"]] = entry["hash"]
    return pins


def _selection(manifest: Mapping[str, object]) -> Dict[str, dict]:
    return {
        entry["url"]: {"status": entry.get("status"), "hash": entry.get("hash")}
        for entry in manifest.get("tools", [])  # type: ignore[union-attr]
    }


def compare_manifests(
    before: Mapping[str, object], after: Mapping[str, object]
) -> Dict[str, object]:
    """Report selection and status drift between two manifests.

    ``identical_selection`` is True when both manifests select the same
    artifacts and tools with the same statuses; content hashes may differ when
    upstream tools changed, which is reported separately under ``hash_changed``.
    """
    artifacts_before = set(before.get("artifacts", []))  # type: ignore[arg-type]
    artifacts_after = set(after.get("artifacts", []))  # type: ignore[arg-type]
    tools_before = _selection(before)
    tools_after = _selection(after)

    status_changed = []
    hash_changed = []
    for url in sorted(set(tools_before) & set(tools_after)):
        if tools_before[url]["status"] != tools_after[url]["status"]:
            status_changed.append(
                {
                    "url": url,
                    "before": tools_before[url]["status"],
                    "after": tools_after[url]["status"],
                }
            )
        if tools_before[url]["hash"] != tools_after[url]["hash"]:
            hash_changed.append(
                {"url": url, "before": tools_before[url]["hash"], "after": tools_after[url]["hash"]}
            )

    diff = {
        "artifacts_added": sorted(artifacts_after - artifacts_before),
        "artifacts_removed": sorted(artifacts_before - artifacts_after),
        "tools_added": sorted(set(tools_after) - set(tools_before)),
        "tools_removed": sorted(set(tools_before) - set(tools_after)),
        "status_changed": status_changed,
        "hash_changed": hash_changed,
    }
    diff["identical_selection"] = not any(
        diff[key]
        for key in (
            "artifacts_added",
            "artifacts_removed",
            "tools_added",
            "tools_removed",
            "status_changed",
        )
    )
    return diff


__all__ = [
    "MANIFEST_FILENAME",
    "MANIFEST_SCHEMA",
    "MANIFEST_SCHEMA_VERSION",
    "build_manifest",
    "compare_manifests",
    "load_manifest",
    "pinned_hashes",
    "validate_manifest",
    "write_manifest",
]
