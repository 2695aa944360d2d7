# === NAVMAP v1 ===
# {
#   "module": "VeloKit.ArtifactTools",
#   "purpose": "Package initialization for VeloKit.ArtifactTools",
#   "sections": [
#     {"id": "getattr", "name": "__getattr__", "anchor": "function-getattr", "kind": "function"},
#     {"id": "dir", "name": "__dir__", "anchor": "function-dir", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Public API for the Velociraptor artifact tool resolver and package builder.

This facade exposes the pipeline entry points used by external callers to
scan an artifact corpus, build the artifact/tool dependency graph, fetch every
referenced tool exactly once into the content-addressed cache, and assemble
Online or Offline package directories with a verifiable manifest.
"""

from __future__ import annotations

from importlib import import_module
from typing import Any, Dict, Tuple

__version__ = "0.4.0"

_EXPORT_MAP: Dict[str, Tuple[str, str]] = {
    "ActionResult": ("pipeline", "ActionResult"),
    "AllCommand": ("pipeline", "AllCommand"),
    "DownloadCommand": ("pipeline", "DownloadCommand"),
    "PackageCommand": ("pipeline", "PackageCommand"),
    "PipelineContext": ("pipeline", "PipelineContext"),
    "ResolveCommand": ("pipeline", "ResolveCommand"),
    "ScanCommand": ("pipeline", "ScanCommand"),
    "execute": ("pipeline", "execute"),
    "scan_artifacts": ("scanner", "scan_artifacts"),
    "build_dependency_graph": ("graph", "build_dependency_graph"),
    "DependencyGraph": ("graph", "DependencyGraph"),
    "DownloadOrchestrator": ("download", "DownloadOrchestrator"),
    "ToolCache": ("cache", "ToolCache"),
    "build_package": ("packaging", "build_package"),
    "verify_package": ("packaging", "verify_package"),
    "load_manifest": ("manifests", "load_manifest"),
    "compare_manifests": ("manifests", "compare_manifests"),
    "CancellationToken": ("cancellation", "CancellationToken"),
    "ArtifactToolsError": ("errors", "ArtifactToolsError"),
    "FatalError": ("errors", "FatalError"),
    "load_config": ("settings", "load_config"),
    "Platform": ("models", "Platform"),
    "PackageMode": ("models", "PackageMode"),
}

__all__ = ["__version__", *sorted(_EXPORT_MAP)]


def __getattr__(name: str) -> Any:
    """Lazily import exports so ``import VeloKit.ArtifactTools`` stays cheap."""

    target = _EXPORT_MAP.get(name)
    if target is None:
        raise AttributeError(f"module '{__name__}' has no attribute '{name}'")
    module = import_module(f"{__name__}.{target[0]}")
    value = getattr(module, target[1])
    globals()[name] = value
    return value


def __dir__() -> list[str]:
    """Expose lazily-populated attributes in ``dir()`` results."""

    return sorted(set(globals()) | set(__all__))
