# === NAVMAP v1 ===
# {
#   "module": "VeloKit.ArtifactTools.packaging",
#   "purpose": "Assemble Online/Offline package directories atomically and verify them",
#   "sections": [
#     {"id": "naming", "name": "Tool Naming & URL Rewriting", "anchor": "NAM", "kind": "helpers"},
#     {"id": "staging", "name": "Staging Directory Lifecycle", "anchor": "STG", "kind": "infra"},
#     {"id": "build", "name": "Package Builder", "anchor": "BLD", "kind": "api"},
#     {"id": "verify", "name": "Package Verification", "anchor": "VRF", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Package assembly for Velociraptor artifact bundles.

A package directory looks like::

    velociraptor-artifacts-<platform>-<mode>/
        artifacts/<ArtifactName>.yaml
        tools/<toolName>              Offline packages only
        manifest.json

Packages are assembled in a sibling ``.staging-*`` directory and renamed into
place only after every file has been written and hashed, so a failed build
leaves either the previous package or nothing at all.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
import shutil
import stat
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from .cache import ToolCache
from .errors import ConfigError, FatalError
from .graph import DependencyGraph
from .io_safe import sanitize_filename, sha256_file
from .manifests import MANIFEST_FILENAME, build_manifest, load_manifest, write_manifest
from .models import (
    DownloadReport,
    Package,
    PackageFile,
    PackageMode,
    Platform,
    ResolvedTool,
)
from .normalizer import is_remote_url
from .scanner import scan_artifacts
from .settings import LOGGER_NAME, PackageConfiguration, ScanConfiguration

logger = logging.getLogger(LOGGER_NAME)

ARTIFACTS_DIR = "artifacts"
TOOLS_DIR = "tools"

# URL characters that may continue a longer URL sharing the same prefix.  A
# dot only ends the URL when nothing URL-like follows it (sentence punctuation).
_URL_CONTINUATION = r"(?![\w/%?#&=+~-]|\.[\w/%?#&=+~-])"

# Package-local tool path as written into rewritten artifacts.
_LOCAL_TOOL_TOKEN = re.compile(rf"(?<![\w/.-]){TOOLS_DIR}/[A-Za-z0-9._-]*[A-Za-z0-9_-]")


def package_name(config: PackageConfiguration, platform: Platform, mode: PackageMode) -> str:
    return config.name_template.format(
        platform=platform.value.lower(), mode=mode.value.lower()
    )


def assign_tool_names(tools: Iterable[ResolvedTool]) -> Dict[str, str]:
    """Map tool keys to unique package file names.

    Names are the sanitised declared names; when two tools share one, every
    member of the collision gets ``-<hash[:8]>`` appended.
    """
    tools = sorted(tools, key=lambda tool: tool.key)
    by_name: Dict[str, List[ResolvedTool]] = {}
    for tool in tools:
        by_name.setdefault(sanitize_filename(tool.name).lower(), []).append(tool)

    assigned: Dict[str, str] = {}
    for members in by_name.values():
        for tool in members:
            safe = sanitize_filename(tool.name)
            if len(members) > 1:
                digest = (tool.content_hash or tool.expected_hash or uuid.uuid4().hex)[:8]
                safe = f"{safe}-{digest}"
            assigned[tool.key] = safe
    return assigned


def assign_artifact_file_names(names: Iterable[str]) -> Dict[str, str]:
    """Map artifact names to unique ``.yaml`` file names.

    Distinct names can sanitise to one file name (``Custom.A:B`` and
    ``Custom.A_B``); every member of such a collision, compared
    case-insensitively, gets ``-<sha256(name)[:8]>`` appended.
    """
    by_file: Dict[str, List[str]] = {}
    for name in sorted(set(names)):
        by_file.setdefault(sanitize_filename(name, default="artifact").lower(), []).append(name)

    assigned: Dict[str, str] = {}
    for members in by_file.values():
        for name in members:
            safe = sanitize_filename(name, default="artifact")
            if len(members) > 1:
                safe = f"{safe}-{hashlib.sha256(name.encode('utf-8')).hexdigest()[:8]}"
            assigned[name] = f"{safe}.yaml"
    return assigned


def rewrite_tool_urls(text: str, replacements: Mapping[str, str]) -> str:
    """Replace each raw URL in ``text`` with its local package path.

    Longer URLs are substituted first so a URL that prefixes another one never
    clobbers the longer reference.
    """
    for raw in sorted(replacements, key=len, reverse=True):
        pattern = re.compile(re.escape(raw) + _URL_CONTINUATION)
        text = pattern.sub(lambda _match, target=replacements[raw]: target, text)
    return text


def _mark_executable(path: Path) -> None:
    mode = path.stat().st_mode
    path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def _hash_tree(root: Path) -> List[PackageFile]:
    files = []
    for path in sorted(root.rglob("*")):
        if not path.is_file():
            continue
        relative = path.relative_to(root).as_posix()
        if relative == MANIFEST_FILENAME:
            continue
        files.append(PackageFile(path=relative, sha256=sha256_file(path)))
    return files


def _prepare_staging_directory(output_path: Path, name: str) -> Path:
    try:
        output_path.mkdir(parents=True, exist_ok=True)
        staging = output_path / f".staging-{name}-{uuid.uuid4().hex}"
        staging.mkdir()
    except OSError as exc:
        raise FatalError(f"Output directory {output_path} is not writable: {exc}") from exc
    return staging


def _swap_into_place(staging: Path, target: Path) -> None:
    """Rename ``staging`` to ``target``, replacing any previous package."""
    backup: Optional[Path] = None
    if target.exists():
        backup = target.with_name(f".previous-{target.name}-{uuid.uuid4().hex}")
        os.replace(target, backup)
    try:
        os.replace(staging, target)
    except OSError:
        if backup is not None:
            os.replace(backup, target)
        raise
    if backup is not None:
        shutil.rmtree(backup, ignore_errors=True)


def _copy_tool(tool: ResolvedTool, destination: Path, cache: Optional[ToolCache]) -> None:
    source = tool.local_cache_path
    if (source is None or not source.is_file()) and cache is not None and tool.content_hash:
        source = cache.object_path(tool.content_hash)
    if source is None or not source.is_file():
        raise FatalError(f"Verified tool {tool.canonical_url} is missing from the cache")
    shutil.copyfile(source, destination)
    actual = sha256_file(destination)
    if actual != tool.content_hash:
        raise FatalError(
            f"Cached copy of {tool.canonical_url} changed while packaging "
            f"(expected {tool.content_hash}, got {actual})"
        )
    _mark_executable(destination)


def build_package(
    graph: DependencyGraph,
    report: Optional[DownloadReport],
    output_path: Path,
    platform: Platform,
    mode: PackageMode,
    include: Sequence[str] = (),
    exclude: Sequence[str] = (),
    cache: Optional[ToolCache] = None,
    config: Optional[PackageConfiguration] = None,
    *,
    warnings: Sequence[str] = (),
    errors: Sequence[str] = (),
) -> Package:
    """Materialise the package directory for ``platform`` and ``mode``.

    Args:
        graph: Dependency graph; its tools carry the download results.
        report: Download report feeding the manifest's cache counters.
        output_path: Parent directory receiving the package directory.
        platform: Target platform; Generic artifacts are always included.
        mode: ``Online`` copies artifacts verbatim; ``Offline`` embeds tools.
        include: Artifact name globs to keep (empty keeps all).
        exclude: Artifact name globs to drop.
        cache: Tool cache used to locate tool bytes for Offline packages.
        config: Package naming configuration.
        warnings: Warnings from earlier stages, copied into the manifest.
        errors: Errors from earlier stages, copied into the manifest.

    Returns:
        The written :class:`Package`.

    Raises:
        FatalError: If the output is not writable, an artifact source is
            unavailable, or a cached tool no longer matches its hash.
    """
    config = config or PackageConfiguration()
    output_path = Path(output_path).expanduser()
    selected = graph.select(include, exclude, platform)
    subgraph = graph.subgraph(selected)
    name = package_name(config, platform, mode)
    target = output_path / name
    package_warnings = list(warnings)
    if not selected:
        message = f"No artifacts selected for platform {platform.value}; package will be empty"
        package_warnings.append(message)
        logger.warning(message, extra={"stage": "package"})

    verified = [tool for tool in (subgraph.tools[key] for key in subgraph.tool_keys) if tool.verified]
    tool_names = assign_tool_names(verified) if mode is PackageMode.OFFLINE else {}
    tool_paths = {key: f"{TOOLS_DIR}/{value}" for key, value in tool_names.items()}
    artifact_files = assign_artifact_file_names(subgraph.artifact_names)
    for artifact_name, file_name in sorted(artifact_files.items()):
        if file_name != f"{sanitize_filename(artifact_name, default='artifact')}.yaml":
            message = (
                f"Artifact {artifact_name} shares a file name with another artifact; "
                f"written as {ARTIFACTS_DIR}/{file_name}"
            )
            package_warnings.append(message)
            logger.warning(message, extra={"stage": "package", "artifact": artifact_name})

    staging = _prepare_staging_directory(output_path, name)
    try:
        artifacts_dir = staging / ARTIFACTS_DIR
        artifacts_dir.mkdir()
        for artifact_name in subgraph.artifact_names:
            artifact = subgraph.artifacts.get(artifact_name)
            if artifact is None:
                raise FatalError(f"Artifact definition for {artifact_name} is unavailable")
            try:
                text = artifact.source_path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                raise FatalError(
                    f"Cannot read artifact source {artifact.source_path}: {exc}"
                ) from exc
            if mode is PackageMode.OFFLINE:
                replacements: Dict[str, str] = {}
                for tool in subgraph.tools_for(artifact_name):
                    if tool.key not in tool_paths:
                        continue
                    for raw in tool.raw_urls | {tool.canonical_url}:
                        replacements[raw] = tool_paths[tool.key]
                text = rewrite_tool_urls(text, replacements)
            (artifacts_dir / artifact_files[artifact_name]).write_text(text, encoding="utf-8")

        if tool_names:
            tools_dir = staging / TOOLS_DIR
            tools_dir.mkdir()
            for key, file_name in sorted(tool_names.items()):
                _copy_tool(subgraph.tools[key], tools_dir / file_name, cache)

        files = _hash_tree(staging)
        package = Package(
            platform=platform,
            mode=mode,
            path=target,
            manifest_path=target / MANIFEST_FILENAME,
            selected_artifacts=list(subgraph.artifact_names),
            included_tools=[subgraph.tools[key] for key in sorted(tool_names)]
            if mode is PackageMode.OFFLINE
            else verified,
            files=files,
            tool_paths=tool_paths,
        )
        manifest = build_manifest(
            subgraph, report, package, warnings=package_warnings, errors=errors
        )
        write_manifest(staging / MANIFEST_FILENAME, manifest)
        _swap_into_place(staging, target)
    except OSError as exc:
        shutil.rmtree(staging, ignore_errors=True)
        raise FatalError(f"Failed to write package {target}: {exc}") from exc
    except BaseException:
        shutil.rmtree(staging, ignore_errors=True)
        raise

    logger.info(
        "package built",
        extra={
            "stage": "package",
            "package_path": str(target),
            "platform": platform.value,
            "mode": mode.value,
            "artifacts": len(package.selected_artifacts),
            "tools": len(package.included_tools),
            "files": len(files),
        },
    )
    return package


@dataclass(slots=True)
class VerificationReport:
    """Result of :func:`verify_package`."""

    path: Path
    mismatched: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    extra: List[str] = field(default_factory=list)
    unreferenced_tools: List[str] = field(default_factory=list)
    tool_hashes: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not (self.mismatched or self.missing or self.extra or self.unreferenced_tools)

    def to_dict(self) -> dict:
        return {
            "path": str(self.path),
            "ok": self.ok,
            "mismatched": sorted(self.mismatched),
            "missing": sorted(self.missing),
            "extra": sorted(self.extra),
            "unreferenced_tools": sorted(self.unreferenced_tools),
            "tool_hashes": dict(sorted(self.tool_hashes.items())),
        }


def verify_package(path: Path) -> VerificationReport:
    """Re-scan a package and recompute its file hashes against ``manifest.json``.

    Local ``tools/...`` references found in the packaged artifacts, whether
    declared in a ``tools:`` section or rewritten inside a query body, are
    resolved inside the package and their hashes recorded in ``tool_hashes``;
    for a sound Offline package these equal the manifest's tool hashes.  A
    packaged tool that no artifact references makes the package unsound.

    Raises:
        FatalError: If the package directory or its manifest cannot be read.
    """
    root = Path(path).expanduser()
    try:
        manifest = load_manifest(root / MANIFEST_FILENAME)
    except ConfigError as exc:
        raise FatalError(f"Cannot verify {root}: {exc}") from exc

    report = VerificationReport(path=root)
    expected = {entry["path"]: entry["hash"] for entry in manifest["package"]["files"]}
    actual = {entry.path: entry.sha256 for entry in _hash_tree(root)}
    for relative, digest in sorted(expected.items()):
        if relative not in actual:
            report.missing.append(relative)
        elif actual[relative] != digest:
            report.mismatched.append(relative)
    report.extra.extend(sorted(set(actual) - set(expected)))

    manifest_tools = {
        entry["path"]: entry["hash"] for entry in manifest["tools"] if entry.get("path")
    }
    artifacts_root = root / ARTIFACTS_DIR
    referenced: Dict[str, bool] = {}
    if artifacts_root.is_dir():
        scanned = scan_artifacts(artifacts_root, config=ScanConfiguration(textual_pass=False))
        for reference in scanned.tool_references:
            if reference.url and not is_remote_url(reference.url):
                # Declared local paths must exist even when the manifest omits them.
                referenced[reference.url.strip()] = True
        for artifact_file in sorted(artifacts_root.rglob("*")):
            if not artifact_file.is_file():
                continue
            try:
                text = artifact_file.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                raise FatalError(f"Cannot read packaged artifact {artifact_file}: {exc}") from exc
            for token in _LOCAL_TOOL_TOKEN.findall(text):
                referenced.setdefault(token, False)

    for local, declared in sorted(referenced.items()):
        candidate = root / local
        if not candidate.is_file():
            # A bare ``tools/...`` string naming nothing in the package is prose.
            if (declared or local in manifest_tools) and local not in report.missing:
                report.missing.append(local)
            continue
        digest = sha256_file(candidate)
        report.tool_hashes[local] = digest
        if manifest_tools.get(local) != digest and local not in report.mismatched:
            report.mismatched.append(local)
    report.unreferenced_tools.extend(sorted(set(manifest_tools) - set(report.tool_hashes)))

    logger.info(
        "package verified" if report.ok else "package verification failed",
        extra={"stage": "verify", **report.to_dict()},
    )
    return report


__all__ = [
    "ARTIFACTS_DIR",
    "TOOLS_DIR",
    "VerificationReport",
    "assign_tool_names",
    "build_package",
    "package_name",
    "rewrite_tool_urls",
    "verify_package",
]
