# === NAVMAP v1 ===
# {
#   "module": "VeloKit.ArtifactTools.cli",
#   "purpose": "Typer CLI (velotools) for scanning, resolving, downloading, and packaging artifact tools",
#   "sections": [
#     {"id": "context", "name": "CLI Context", "anchor": "CTX", "kind": "infra"},
#     {"id": "rendering", "name": "Output Rendering", "anchor": "RND", "kind": "helpers"},
#     {"id": "pipeline", "name": "Pipeline Commands", "anchor": "PIP", "kind": "api"},
#     {"id": "maintenance", "name": "Verify, Cache & Diff Commands", "anchor": "MNT", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Command line interface for the artifact tool resolver.

Global options apply to all subcommands and go before the subcommand::

    velotools --config velotools.yaml -v all ./artifacts --output ./dist --platform Linux
    velotools --format json scan ./artifacts --include 'Windows.*'
    velotools cache prune --keep 3

Exit codes: ``0`` success, ``1`` partial (some tools failed, package built),
``2`` fatal (nothing produced).
"""

import contextlib
import json
import signal
import threading
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .cache import ToolCache
from .cancellation import CancellationToken
from .errors import ArtifactToolsError, ConfigError
from .graph import DependencyGraph
from .logging_config import setup_logging
from .manifests import compare_manifests, load_manifest, pinned_hashes
from .models import DownloadReport, PackageMode, Platform
from .packaging import verify_package
from .pipeline import (
    EXIT_FATAL,
    ActionResult,
    AllCommand,
    DownloadCommand,
    PackageCommand,
    PipelineContext,
    ResolveCommand,
    ScanCommand,
    execute,
)
from .settings import ResolvedConfig, load_config

_console = Console()
_err_console = Console(stderr=True)

_FORMATS = {"table", "json"}


class CliContext:
    """Per-invocation state shared by every subcommand."""

    def __init__(
        self,
        config: ResolvedConfig,
        *,
        verbosity: int = 0,
        format_output: str = "table",
    ) -> None:
        self.config = config
        self.verbosity = verbosity
        self.format_output = format_output
        self.console = _console

    def pipeline_context(self) -> PipelineContext:
        return PipelineContext(config=self.config)

    @property
    def json_output(self) -> bool:
        return self.format_output == "json"


app = typer.Typer(
    name="velotools",
    help="Resolve, fetch, and package the third-party tools Velociraptor artifacts depend on",
    no_args_is_help=True,
)
cache_app = typer.Typer(help="Tool cache maintenance (stats, prune)", no_args_is_help=True)
app.add_typer(cache_app, name="cache")

_context: Optional[CliContext] = None


def get_context() -> CliContext:
    if _context is None:
        raise RuntimeError("CLI context not initialized")
    return _context


@app.callback(invoke_without_command=True)
def main(
    typer_ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        envvar="VELOTOOLS_CONFIG",
        help="Path to a YAML configuration file",
    ),
    verbosity: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase verbosity (-v for INFO, -vv for DEBUG)",
    ),
    format_output: str = typer.Option(
        "table",
        "--format",
        "-f",
        help="Output format: table or json",
    ),
    version: bool = typer.Option(False, "--version", "-V", help="Show version and exit"),
) -> None:
    """velotools - Velociraptor artifact tool resolver and package builder."""
    global _context

    if version:
        typer.echo(f"velotools {__version__}")
        raise typer.Exit(0)
    if typer_ctx.invoked_subcommand is None:
        typer.echo(typer_ctx.get_help())
        raise typer.Exit(0)
    if format_output not in _FORMATS:
        _err_console.print(f"[red]Unknown format '{format_output}' (use table or json)[/red]")
        raise typer.Exit(EXIT_FATAL)
    try:
        resolved = load_config(config)
    except ConfigError as exc:
        _err_console.print(f"[red]Error loading configuration: {exc}[/red]")
        raise typer.Exit(EXIT_FATAL) from exc

    level = {0: None, 1: "INFO"}.get(verbosity, "DEBUG")
    setup_logging(resolved.logging, level=level)
    _context = CliContext(resolved, verbosity=verbosity, format_output=format_output)


# --------------------------------------------------------------------- helpers


def _patterns(values: Optional[Sequence[str]]) -> Tuple[str, ...]:
    return tuple(values or ())


def _parse_platform(value: str) -> Platform:
    try:
        return Platform.parse(value)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _parse_mode(value: str) -> PackageMode:
    try:
        return PackageMode.parse(value)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc


@contextlib.contextmanager
def _cancel_on_interrupt(token: CancellationToken) -> Iterator[None]:
    """Turn Ctrl-C into cooperative cancellation of the download pool."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum, frame) -> None:
        token.cancel("interrupted by user")

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _tool_rows(report: Optional[DownloadReport], graph: DependencyGraph) -> List[Dict[str, Any]]:
    tools = report.tools if report is not None else graph.tools
    return [tools[key].to_dict() for key in sorted(tools)]


def _emit(ctx: CliContext, result: ActionResult, payload: Dict[str, Any]) -> None:
    if ctx.json_output:
        document = {
            "success": result.success,
            "exit_code": result.exit_code,
            "errors": result.errors,
            "warnings": result.warnings,
            **payload,
        }
        typer.echo(json.dumps(document, indent=2, sort_keys=True, default=str))
    else:
        for warning in result.warnings:
            _err_console.print(f"[yellow]warning:[/yellow] {warning}", highlight=False)
        for error in result.errors:
            _err_console.print(f"[red]error:[/red] {error}", highlight=False)


def _finish(result: ActionResult) -> None:
    if result.exit_code:
        raise typer.Exit(result.exit_code)


def _fatal(ctx: CliContext, result: ActionResult) -> None:
    _emit(ctx, result, {})
    raise typer.Exit(result.exit_code)


def _tools_table(title: str, rows: List[Dict[str, Any]]) -> Table:
    table = Table(title=title)
    table.add_column("Tool", style="cyan")
    table.add_column("Status")
    table.add_column("SHA-256")
    table.add_column("Referenced by")
    table.add_column("URL", overflow="fold")
    for row in rows:
        status = row["status"]
        style = "green" if status == "Verified" else "red" if status == "Failed" else "yellow"
        table.add_row(
            row["name"],
            f"[{style}]{status}[/{style}]",
            (row.get("hash") or "")[:16],
            ", ".join(row["referencedBy"]),
            row["url"],
        )
    return table


def _scan_and_resolve(
    ctx: CliContext,
    pipeline: PipelineContext,
    artifact_path: Path,
    include: Sequence[str],
    exclude: Sequence[str],
    pins: Optional[Dict[str, str]] = None,
) -> Tuple[ActionResult, DependencyGraph, List[str]]:
    scanned = execute(ScanCommand(artifact_path, tuple(include), tuple(exclude)), pipeline)
    if scanned.exit_code == EXIT_FATAL:
        _fatal(ctx, scanned)
    resolved = execute(ResolveCommand(scanned.payload["artifacts"], pins), pipeline)
    if resolved.exit_code == EXIT_FATAL:
        resolved.warnings[:0] = scanned.warnings
        _fatal(ctx, resolved)
    return resolved, resolved.payload["graph"], scanned.warnings + resolved.warnings


# -------------------------------------------------------------------- commands

_INCLUDE = typer.Option(None, "--include", "-i", help="Glob on artifact names to keep (repeatable)")
_EXCLUDE = typer.Option(None, "--exclude", "-e", help="Glob on artifact names to drop (repeatable)")


@app.command()
def scan(
    artifact_path: Path = typer.Argument(..., help="Directory of artifact definitions"),
    include: Optional[List[str]] = _INCLUDE,
    exclude: Optional[List[str]] = _EXCLUDE,
) -> None:
    """List artifacts and the tool references found in them."""
    ctx = get_context()
    include, exclude = _patterns(include), _patterns(exclude)
    result = execute(ScanCommand(artifact_path, tuple(include), tuple(exclude)), ctx.pipeline_context())
    if result.exit_code == EXIT_FATAL:
        _fatal(ctx, result)

    artifacts = result.payload["artifacts"]
    payload = {
        "artifacts": [artifact.to_dict() for artifact in artifacts],
        "tool_references": [ref.to_dict() for ref in result.payload["tool_references"]],
        "unresolved": [ref.to_dict() for ref in result.payload["unresolved"]],
        "skipped": [str(path) for path in result.payload["skipped"]],
    }
    if not ctx.json_output:
        table = Table(title=f"Artifacts in {artifact_path}")
        table.add_column("Artifact", style="cyan")
        table.add_column("Type")
        table.add_column("Platform")
        table.add_column("Tools", justify="right")
        for artifact in artifacts:
            table.add_row(
                artifact.name,
                artifact.type.value,
                artifact.platform.value,
                str(len(artifact.tool_references)),
            )
        ctx.console.print(table)
        ctx.console.print(
            f"{len(artifacts)} artifact(s), {len(payload['tool_references'])} tool reference(s), "
            f"{len(payload['skipped'])} skipped"
        )
    _emit(ctx, result, payload)
    _finish(result)


@app.command()
def resolve(
    artifact_path: Path = typer.Argument(..., help="Directory of artifact definitions"),
    include: Optional[List[str]] = _INCLUDE,
    exclude: Optional[List[str]] = _EXCLUDE,
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write graph JSON here"),
    pin: Optional[Path] = typer.Option(
        None, "--pin", help="Pin tool hashes from a previous manifest"
    ),
) -> None:
    """Build the deduplicated artifact/tool dependency graph."""
    ctx = get_context()
    include, exclude = _patterns(include), _patterns(exclude)
    pipeline = ctx.pipeline_context()
    try:
        pins = pinned_hashes(load_manifest(pin)) if pin else None
    except ArtifactToolsError as exc:
        _fatal(ctx, ActionResult.fatal(str(exc)))
    result, graph, _ = _scan_and_resolve(ctx, pipeline, artifact_path, include, exclude, pins)
    if output is not None:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(graph.to_json(), encoding="utf-8")
    if ctx.json_output:
        _emit(ctx, result, {"graph": graph.to_dict(), "fingerprint": graph.fingerprint()})
    else:
        ctx.console.print(_tools_table("Resolved tools", _tool_rows(None, graph)))
        ctx.console.print(
            f"{len(graph.artifact_names)} artifact(s), {len(graph.tools)} unique tool(s); "
            f"graph {graph.fingerprint()[:16]}"
        )
        _emit(ctx, result, {})
    _finish(result)


@app.command()
def download(
    artifact_path: Path = typer.Argument(..., help="Directory of artifact definitions"),
    include: Optional[List[str]] = _INCLUDE,
    exclude: Optional[List[str]] = _EXCLUDE,
    platform: str = typer.Option("Generic", "--platform", "-p", help="Windows, Linux, macOS or Generic"),
    max_concurrent: Optional[int] = typer.Option(
        None, "--max-concurrent", "-j", min=1, help="Parallel downloads"
    ),
    offline: bool = typer.Option(False, "--offline", help="Resolve from the cache only"),
) -> None:
    """Fetch every referenced tool once into the content-addressed cache."""
    ctx = get_context()
    include, exclude = _patterns(include), _patterns(exclude)
    target = _parse_platform(platform)
    pipeline = ctx.pipeline_context()
    _, graph, warnings = _scan_and_resolve(ctx, pipeline, artifact_path, include, exclude)
    selection = graph.subgraph(graph.select(include, exclude, target))
    with _cancel_on_interrupt(pipeline.cancellation_token):
        result = execute(DownloadCommand(selection, max_concurrent, offline), pipeline)
    if result.exit_code == EXIT_FATAL:
        _fatal(ctx, result)
    result.warnings[:0] = warnings
    report: DownloadReport = result.payload["report"]
    payload = {
        "tools": _tool_rows(report, selection),
        "failures": [failure.to_dict() for failure in report.failures],
        "cache": {
            "hits": report.cache_hits,
            "misses": report.cache_misses,
            "fetches": report.fetch_count,
            "max_in_flight": report.max_in_flight,
        },
    }
    if not ctx.json_output:
        ctx.console.print(_tools_table("Downloaded tools", payload["tools"]))
        ctx.console.print(
            f"{len(report.verified)} verified, {len(report.failures)} failed; "
            f"cache hits {report.cache_hits}, misses {report.cache_misses}"
        )
    _emit(ctx, result, payload)
    _finish(result)


@app.command()
def package(
    artifact_path: Path = typer.Argument(..., help="Directory of artifact definitions"),
    output: Path = typer.Option(..., "--output", "-o", help="Directory receiving the package"),
    platform: str = typer.Option("Generic", "--platform", "-p", help="Windows, Linux, macOS or Generic"),
    mode: str = typer.Option("Offline", "--mode", "-m", help="Online or Offline"),
    include: Optional[List[str]] = _INCLUDE,
    exclude: Optional[List[str]] = _EXCLUDE,
) -> None:
    """Build a package from tools already present in the cache.

    Offline packages embed cached tools; Online packages only reference the
    tool URLs, so the cache is not consulted for them.
    """
    ctx = get_context()
    include, exclude = _patterns(include), _patterns(exclude)
    target = _parse_platform(platform)
    package_mode = _parse_mode(mode)
    pipeline = ctx.pipeline_context()
    _, graph, warnings = _scan_and_resolve(ctx, pipeline, artifact_path, include, exclude)
    selection = graph.subgraph(graph.select(include, exclude, target))
    report: Optional[DownloadReport] = None
    if package_mode is PackageMode.OFFLINE:
        resolved = execute(DownloadCommand(selection, offline=True), pipeline)
        if resolved.exit_code == EXIT_FATAL:
            _fatal(ctx, resolved)
        report = resolved.payload["report"]
    result = execute(
        PackageCommand(
            graph,
            report,
            output,
            target,
            package_mode,
            tuple(include),
            tuple(exclude),
            warnings=tuple(warnings),
        ),
        pipeline,
    )
    if result.exit_code == EXIT_FATAL:
        _fatal(ctx, result)
    _report_package(ctx, result, report, selection)


def _report_package(
    ctx: CliContext,
    result: ActionResult,
    report: Optional[DownloadReport],
    graph: DependencyGraph,
) -> None:
    payload = {
        "package_path": str(result.payload["package_path"]),
        "manifest_path": str(result.payload["manifest_path"]),
        "failures": [failure.to_dict() for failure in report.failures] if report is not None else [],
    }
    if not ctx.json_output:
        ctx.console.print(_tools_table("Packaged tools", _tool_rows(report, graph)))
        colour = "green" if result.exit_code == 0 else "yellow"
        ctx.console.print(f"[{colour}]Package written to {payload['package_path']}[/{colour}]")
    _emit(ctx, result, payload)
    _finish(result)


@app.command("all")
def run_all(
    artifact_path: Path = typer.Argument(..., help="Directory of artifact definitions"),
    output: Path = typer.Option(..., "--output", "-o", help="Directory receiving the package"),
    platform: str = typer.Option("Generic", "--platform", "-p", help="Windows, Linux, macOS or Generic"),
    mode: str = typer.Option("Offline", "--mode", "-m", help="Online or Offline"),
    include: Optional[List[str]] = _INCLUDE,
    exclude: Optional[List[str]] = _EXCLUDE,
    max_concurrent: Optional[int] = typer.Option(
        None, "--max-concurrent", "-j", min=1, help="Parallel downloads"
    ),
    offline: bool = typer.Option(False, "--offline", help="Resolve tools from the cache only"),
    require_all: Optional[bool] = typer.Option(
        None,
        "--require-all/--allow-partial",
        help="Abort without a package when any tool fails",
    ),
    pin: Optional[Path] = typer.Option(
        None, "--pin", help="Pin hashes from, and compare against, a previous manifest"
    ),
) -> None:
    """Scan, resolve, download, and package in one pass."""
    ctx = get_context()
    include, exclude = _patterns(include), _patterns(exclude)
    pipeline = ctx.pipeline_context()
    command = AllCommand(
        artifact_path=artifact_path,
        output_path=output,
        platform=_parse_platform(platform),
        mode=_parse_mode(mode),
        include=tuple(include),
        exclude=tuple(exclude),
        max_concurrent=max_concurrent,
        offline=offline,
        require_all_tools=require_all,
        pinned_manifest=pin,
    )
    with _cancel_on_interrupt(pipeline.cancellation_token):
        result = execute(command, pipeline)
    if result.exit_code == EXIT_FATAL:
        _fatal(ctx, result)
    if "drift" in result.payload and not ctx.json_output:
        drift = result.payload["drift"]
        if not drift["identical_selection"]:
            ctx.console.print("[yellow]Selection drifted from the pinned manifest[/yellow]")
    _report_package(ctx, result, result.payload["report"], result.payload["graph"])


@app.command()
def verify(
    package_path: Path = typer.Argument(..., help="Package directory containing manifest.json"),
) -> None:
    """Recompute package hashes and compare them with the manifest."""
    ctx = get_context()
    try:
        report = verify_package(package_path)
    except ArtifactToolsError as exc:
        _fatal(ctx, ActionResult.fatal(str(exc)))
    result = ActionResult(
        success=report.ok,
        errors=[f"hash mismatch: {path}" for path in report.mismatched]
        + [f"missing: {path}" for path in report.missing]
        + [f"unexpected file: {path}" for path in report.extra]
        + [f"unreferenced tool: {path}" for path in report.unreferenced_tools],
        exit_code=0 if report.ok else 1,
    )
    if not ctx.json_output:
        colour = "green" if report.ok else "red"
        verdict = "OK" if report.ok else "FAILED"
        ctx.console.print(
            f"[{colour}]{verdict}[/{colour}] {package_path}: "
            f"{len(report.tool_hashes)} tool reference(s) verified"
        )
    _emit(ctx, result, report.to_dict())
    _finish(result)


@cache_app.command("stats")
def cache_stats() -> None:
    """Show cache size and bookkeeping counts."""
    ctx = get_context()
    try:
        stats = ToolCache(ctx.config.cache.directory).stats()
    except ArtifactToolsError as exc:
        _fatal(ctx, ActionResult.fatal(str(exc)))
    if ctx.json_output:
        typer.echo(json.dumps(stats, indent=2, sort_keys=True))
        return
    table = Table(title="Tool cache")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for key, value in stats.items():
        table.add_row(key, str(value))
    ctx.console.print(table)


@cache_app.command("prune")
def cache_prune(
    keep: Optional[int] = typer.Option(
        None, "--keep", "-k", min=1, help="Generations to keep (default from config)"
    ),
    dry_run: bool = typer.Option(False, "--dry-run", "-n", help="Report without deleting"),
) -> None:
    """Delete cached tools not referenced by the last N graph generations."""
    ctx = get_context()
    try:
        cache = ToolCache(ctx.config.cache.directory)
    except ArtifactToolsError as exc:
        _fatal(ctx, ActionResult.fatal(str(exc)))
    stats = cache.prune(keep or ctx.config.cache.keep_generations, dry_run=dry_run)
    if ctx.json_output:
        typer.echo(json.dumps({"dry_run": dry_run, **stats.to_dict()}, indent=2, sort_keys=True))
        return
    prefix = "[yellow]DRY-RUN[/yellow] would remove" if dry_run else "Removed"
    ctx.console.print(
        f"{prefix} {len(stats.removed_objects)} object(s), "
        f"{stats.reclaimed_bytes} bytes; kept {stats.kept_generations} generation(s)"
    )


@app.command()
def diff(
    before: Path = typer.Argument(..., help="Earlier manifest (file or package directory)"),
    after: Path = typer.Argument(..., help="Later manifest (file or package directory)"),
) -> None:
    """Report selection and status drift between two manifests."""
    ctx = get_context()
    try:
        changes = compare_manifests(load_manifest(before), load_manifest(after))
    except ArtifactToolsError as exc:
        _fatal(ctx, ActionResult.fatal(str(exc)))
    if ctx.json_output:
        typer.echo(json.dumps(changes, indent=2, sort_keys=True))
    else:
        for key in ("artifacts_added", "artifacts_removed", "tools_added", "tools_removed"):
            for item in changes[key]:
                sign = "+" if key.endswith("added") else "-"
                ctx.console.print(f"{sign} {key.split('_')[0][:-1]} {item}", highlight=False)
        for item in changes["status_changed"]:
            ctx.console.print(f"~ status {item['url']}: {item['before']} -> {item['after']}")
        for item in changes["hash_changed"]:
            ctx.console.print(f"~ hash {item['url']}")
        if changes["identical_selection"]:
            ctx.console.print("[green]Selection identical[/green]")
    if not changes["identical_selection"]:
        raise typer.Exit(1)


__all__ = ["CliContext", "app", "get_context", "main"]
