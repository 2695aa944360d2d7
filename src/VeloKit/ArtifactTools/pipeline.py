# === NAVMAP v1 ===
# {
#   "module": "VeloKit.ArtifactTools.pipeline",
#   "purpose": "Typed pipeline commands, explicit run context, and singledispatch execution",
#   "sections": [
#     {"id": "context", "name": "Pipeline Context", "anchor": "CTX", "kind": "api"},
#     {"id": "commands", "name": "Command Records", "anchor": "CMD", "kind": "api"},
#     {"id": "results", "name": "Action Results", "anchor": "RES", "kind": "api"},
#     {"id": "handlers", "name": "Command Handlers", "anchor": "HND", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Pipeline orchestration for scan, resolve, download, and package stages.

Each stage is a typed command record executed through :func:`execute` against
an explicit :class:`PipelineContext`; nothing is read from process-wide state.
Every command returns an :class:`ActionResult` whose ``exit_code`` follows the
CLI contract:

- ``0``: full success
- ``1``: partial success (some tool failed but a package or report exists)
- ``2``: fatal (nothing was produced)
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx

from .cache import ToolCache
from .cancellation import CancellationToken
from .download import DownloadOrchestrator
from .errors import ArtifactToolsError, FatalError
from .graph import DependencyGraph, build_dependency_graph
from .logging_config import generate_correlation_id
from .manifests import compare_manifests, load_manifest, pinned_hashes
from .models import (
    ArtifactDefinition,
    DownloadReport,
    DownloadStatus,
    PackageMode,
    Platform,
)
from .packaging import build_package
from .scanner import scan_artifacts
from .settings import LOGGER_NAME, ResolvedConfig, get_default_config

EXIT_SUCCESS = 0
EXIT_PARTIAL = 1
EXIT_FATAL = 2


@dataclass
class PipelineContext:
    """Everything a command needs, passed explicitly.

    Attributes:
        config: Effective configuration for the run.
        logger: Logger receiving stage events.
        cache: Tool cache; created from ``config.cache.directory`` on first use.
        cancellation_token: Token shared with the download worker pool.
        client: Optional ``httpx.Client`` shared by download commands.
        correlation_id: Identifier attached to every log record of the run.
    """

    config: ResolvedConfig = field(default_factory=get_default_config)
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger(LOGGER_NAME))
    cache: Optional[ToolCache] = None
    cancellation_token: CancellationToken = field(default_factory=CancellationToken)
    client: Optional[httpx.Client] = None
    correlation_id: str = field(default_factory=generate_correlation_id)

    def get_cache(self) -> ToolCache:
        if self.cache is None:
            self.cache = ToolCache(self.config.cache.directory)
        return self.cache

    def log_extra(self, stage: str, **fields: Any) -> Dict[str, Any]:
        return {"stage": stage, "correlation_id": self.correlation_id, **fields}


@dataclass(frozen=True)
class ScanCommand:
    artifact_path: Path
    include: Sequence[str] = ()
    exclude: Sequence[str] = ()


@dataclass(frozen=True)
class ResolveCommand:
    artifacts: Sequence[ArtifactDefinition]
    pinned_hashes: Optional[Mapping[str, str]] = None


@dataclass(frozen=True)
class DownloadCommand:
    graph: DependencyGraph
    max_concurrent: Optional[int] = None
    offline: bool = False


@dataclass(frozen=True)
class PackageCommand:
    graph: DependencyGraph
    report: Optional[DownloadReport]
    output_path: Path
    platform: Platform = Platform.GENERIC
    mode: PackageMode = PackageMode.OFFLINE
    include: Sequence[str] = ()
    exclude: Sequence[str] = ()
    warnings: Sequence[str] = ()


@dataclass(frozen=True)
class AllCommand:
    """Scan, resolve, download, and package in one run.

    ``require_all_tools`` of ``None`` defers to ``package.require_all_tools``
    in the configuration.  ``pinned_manifest`` points at a previous manifest
    whose verified hashes are pinned and whose selection is compared against
    the new one.
    """

    artifact_path: Path
    output_path: Path
    platform: Platform = Platform.GENERIC
    mode: PackageMode = PackageMode.OFFLINE
    include: Sequence[str] = ()
    exclude: Sequence[str] = ()
    max_concurrent: Optional[int] = None
    offline: bool = False
    require_all_tools: Optional[bool] = None
    pinned_manifest: Optional[Path] = None


@dataclass
class ActionResult:
    """Outcome of one command."""

    success: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    payload: Dict[str, Any] = field(default_factory=dict)
    exit_code: int = EXIT_SUCCESS

    @classmethod
    def fatal(cls, message: str, warnings: Sequence[str] = ()) -> "ActionResult":
        return cls(success=False, errors=[message], warnings=list(warnings), exit_code=EXIT_FATAL)


def execute(command: Any, context: Optional[PipelineContext] = None) -> ActionResult:
    """Run ``command`` and convert fatal errors into an exit-code-2 result."""
    context = context or PipelineContext()
    try:
        return _dispatch(command, context)
    except ArtifactToolsError as exc:
        context.logger.error(
            "command failed",
            extra=context.log_extra("pipeline", command=type(command).__name__, error=str(exc)),
        )
        return ActionResult.fatal(str(exc))


@functools.singledispatch
def _dispatch(command: Any, context: PipelineContext) -> ActionResult:
    raise TypeError(f"unsupported pipeline command: {type(command).__name__}")


@_dispatch.register
def _scan(command: ScanCommand, context: PipelineContext) -> ActionResult:
    result = scan_artifacts(
        command.artifact_path, command.include, command.exclude, context.config.scan
    )
    context.logger.info(
        "scan complete",
        extra=context.log_extra(
            "scan",
            artifacts=len(result.artifacts),
            references=len(result.tool_references),
            skipped=len(result.skipped),
        ),
    )
    return ActionResult(
        success=True,
        warnings=list(result.warnings),
        payload={
            "artifacts": result.artifacts,
            "tool_references": result.tool_references,
            "unresolved": result.unresolved,
            "skipped": result.skipped,
        },
    )


@_dispatch.register
def _resolve(command: ResolveCommand, context: PipelineContext) -> ActionResult:
    graph, warnings = build_dependency_graph(
        command.artifacts,
        conflict_policy=context.config.package.conflict_policy,
        pinned_hashes=command.pinned_hashes,
    )
    return ActionResult(success=True, warnings=warnings, payload={"graph": graph})


def _failure_messages(report: DownloadReport) -> List[str]:
    return [f"{failure.name} ({failure.url}): {failure.reason}" for failure in report.failures]


@_dispatch.register
def _download(command: DownloadCommand, context: PipelineContext) -> ActionResult:
    with DownloadOrchestrator(
        context.get_cache(),
        context.config.download,
        client=context.client,
        cancellation_token=context.cancellation_token,
    ) as orchestrator:
        report = orchestrator.run(
            command.graph, max_concurrent=command.max_concurrent, offline=command.offline
        )
    errors = _failure_messages(report)
    if report.cancelled:
        errors.append(f"download cancelled: {context.cancellation_token.reason}")
    return ActionResult(
        success=report.success,
        errors=errors,
        warnings=list(report.warnings),
        payload={
            "resolved_tools": report.verified,
            "failures": report.failures,
            "report": report,
        },
        exit_code=EXIT_SUCCESS if report.success else EXIT_PARTIAL,
    )


@_dispatch.register
def _package(command: PackageCommand, context: PipelineContext) -> ActionResult:
    warnings = list(command.warnings)
    if command.report:
        warnings.extend(w for w in command.report.warnings if w not in warnings)
    errors = _failure_messages(command.report) if command.report else []
    package = build_package(
        command.graph,
        command.report,
        command.output_path,
        command.platform,
        command.mode,
        command.include,
        command.exclude,
        cache=context.get_cache() if command.mode is PackageMode.OFFLINE else context.cache,
        config=context.config.package,
        warnings=warnings,
        errors=errors,
    )
    subgraph = command.graph.subgraph(package.selected_artifacts)
    tools = [subgraph.tools[key] for key in subgraph.tool_keys]
    if command.mode is PackageMode.OFFLINE:
        missing = [tool for tool in tools if not tool.verified]
    else:
        # Online packages leave fetching to the clients; only known failures count.
        missing = [tool for tool in tools if tool.download_status is DownloadStatus.FAILED]
    partial = bool(missing)
    return ActionResult(
        success=not partial,
        errors=errors,
        warnings=warnings,
        payload={
            "package": package,
            "package_path": package.path,
            "manifest_path": package.manifest_path,
        },
        exit_code=EXIT_PARTIAL if partial else EXIT_SUCCESS,
    )


@_dispatch.register
def _all(command: AllCommand, context: PipelineContext) -> ActionResult:
    warnings: List[str] = []
    previous_manifest = None
    pins: Optional[Dict[str, str]] = None
    if command.pinned_manifest is not None:
        previous_manifest = load_manifest(command.pinned_manifest)
        pins = pinned_hashes(previous_manifest)

    scanned = _scan(ScanCommand(command.artifact_path, command.include, command.exclude), context)
    warnings.extend(scanned.warnings)

    resolved = _resolve(ResolveCommand(scanned.payload["artifacts"], pins), context)
    warnings.extend(resolved.warnings)
    graph: DependencyGraph = resolved.payload["graph"]

    selection = graph.subgraph(graph.select(command.include, command.exclude, command.platform))
    downloaded = _download(
        DownloadCommand(selection, command.max_concurrent, command.offline), context
    )
    report: DownloadReport = downloaded.payload["report"]

    if report.cancelled:
        raise FatalError(
            f"Run cancelled ({context.cancellation_token.reason}); no package was built"
        )
    require_all = (
        context.config.package.require_all_tools
        if command.require_all_tools is None
        else command.require_all_tools
    )
    if require_all and report.failures:
        raise FatalError(
            f"{len(report.failures)} tool(s) failed and all tools are required: "
            + "; ".join(_failure_messages(report))
        )

    packaged = _package(
        PackageCommand(
            graph,
            report,
            command.output_path,
            command.platform,
            command.mode,
            command.include,
            command.exclude,
            warnings=tuple(warnings),
        ),
        context,
    )

    payload: Dict[str, Any] = {
        "artifacts": scanned.payload["artifacts"],
        "unresolved": scanned.payload["unresolved"],
        "graph": graph,
        "resolved_tools": report.verified,
        "failures": report.failures,
        "report": report,
        "package_path": packaged.payload["package_path"],
        "manifest_path": packaged.payload["manifest_path"],
    }
    if previous_manifest is not None:
        drift = compare_manifests(previous_manifest, load_manifest(packaged.payload["manifest_path"]))
        payload["drift"] = drift
        if not drift["identical_selection"]:
            warnings.append(
                f"Selection differs from pinned manifest {command.pinned_manifest}"
            )

    context.logger.info(
        "pipeline finished",
        extra=context.log_extra(
            "pipeline",
            exit_code=packaged.exit_code,
            package_path=str(packaged.payload["package_path"]),
        ),
    )
    all_warnings = list(dict.fromkeys(warnings + list(report.warnings)))
    return ActionResult(
        success=packaged.success,
        errors=packaged.errors,
        warnings=all_warnings,
        payload=payload,
        exit_code=packaged.exit_code,
    )


__all__ = [
    "EXIT_FATAL",
    "EXIT_PARTIAL",
    "EXIT_SUCCESS",
    "ActionResult",
    "AllCommand",
    "DownloadCommand",
    "PackageCommand",
    "PipelineContext",
    "ResolveCommand",
    "ScanCommand",
    "execute",
]
