# === NAVMAP v1 ===
# {
#   "module": "VeloKit.ArtifactTools.scanner",
#   "purpose": "Discover artifact files and extract tool references from them",
#   "sections": [
#     {"id": "discovery", "name": "File Discovery & Filtering", "anchor": "DSC", "kind": "helpers"},
#     {"id": "structural", "name": "Structural Parsing", "anchor": "STR", "kind": "api"},
#     {"id": "textual", "name": "Textual URL Pass", "anchor": "TXT", "kind": "helpers"},
#     {"id": "legacy", "name": "Legacy Best-Effort Mode", "anchor": "LEG", "kind": "helpers"},
#     {"id": "scan", "name": "Corpus Scan", "anchor": "SCN", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Artifact discovery and tool reference extraction.

Scanning is a pure read of the artifact corpus.  Each file is parsed with
PyYAML into :class:`~VeloKit.ArtifactTools.schema.ArtifactDocument`; the
``tools:`` section is authoritative, and a second textual pass picks up
``http(s)://`` links in the body that the structural pass did not already
produce.  Third-party artifact packs churn constantly, so a malformed file is
never fatal: it is skipped with a warning or, when
``scan.legacy_fallback`` is enabled, mined by an explicitly logged regex mode.
"""

from __future__ import annotations

import fnmatch
import logging
import re
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Set, Tuple
from urllib.parse import unquote, urlsplit

import yaml
from pydantic import ValidationError

from .errors import ArtifactParseError, FatalError
from .models import (
    ArtifactDefinition,
    ArtifactType,
    ReferenceOrigin,
    ScanResult,
    ToolReference,
)
from .normalizer import canonicalize_url, normalize_hash
from .schema import ArtifactDocument
from .settings import LOGGER_NAME, ScanConfiguration

logger = logging.getLogger(LOGGER_NAME)

_URL_PATTERN = re.compile(r"https?://[^\s'\"<>`(){}\[\]|\\^]+", re.IGNORECASE)
_TRAILING_PUNCTUATION = ".,;:!?"
_LEGACY_NAME_PATTERN = re.compile(r"^name:\s*['\"]?([^\s'\"#]+)", re.MULTILINE)


def matches_filters(
    name: str, include: Sequence[str] = (), exclude: Sequence[str] = ()
) -> bool:
    """Return True when ``name`` passes the include/exclude glob filters.

    Matching is case-insensitive; an empty include list admits everything and
    exclusion always wins.

    Examples:
        >>> matches_filters("Windows.Sysinternals.Autoruns", ["windows.*"], ["*.Hayabusa"])
        True
    """
    lowered = name.lower()
    if any(fnmatch.fnmatchcase(lowered, pattern.lower()) for pattern in exclude):
        return False
    if not include:
        return True
    return any(fnmatch.fnmatchcase(lowered, pattern.lower()) for pattern in include)


def discover_artifact_files(root: Path, extensions: Iterable[str]) -> List[Path]:
    """Return artifact files under ``root`` in a stable, sorted order.

    Raises:
        FatalError: If ``root`` is missing, not a directory, or unreadable.
    """
    if not root.exists():
        raise FatalError(f"Artifact root does not exist: {root}")
    if not root.is_dir():
        raise FatalError(f"Artifact root is not a directory: {root}")
    suffixes = {suffix.lower() for suffix in extensions}
    try:
        candidates = [
            path
            for path in root.rglob("*")
            if path.is_file() and path.suffix.lower() in suffixes
        ]
    except OSError as exc:
        raise FatalError(f"Cannot read artifact root {root}: {exc}") from exc
    return sorted(candidates, key=lambda path: path.relative_to(root).as_posix())


def _name_from_url(url: str) -> Optional[str]:
    segment = urlsplit(url).path.rstrip("/").rsplit("/", 1)[-1]
    name = unquote(segment).strip()
    return name or None


def _strip_url_token(token: str) -> str:
    return token.rstrip(_TRAILING_PUNCTUATION)


def extract_text_urls(text: str) -> List[str]:
    """Return URL-like tokens found in ``text`` in order of appearance."""
    return [_strip_url_token(match.group(0)) for match in _URL_PATTERN.finditer(text)]


def _textual_references(
    text: str, artifact_name: str, known_keys: Set[str]
) -> List[ToolReference]:
    references: List[ToolReference] = []
    for token in extract_text_urls(text):
        try:
            key = canonicalize_url(token)
        except ValueError:
            logger.debug(
                "ignoring malformed URL token",
                extra={"stage": "scan", "artifact": artifact_name, "token": token},
            )
            continue
        if key in known_keys:
            continue
        name = _name_from_url(key)
        if name is None:
            continue
        known_keys.add(key)
        references.append(
            ToolReference(
                declared_name=name,
                url=token,
                expected_hash=None,
                source_artifact=artifact_name,
                origin=ReferenceOrigin.INFERRED,
            )
        )
    return references


def _declared_references(
    document: ArtifactDocument, warnings: List[str], path: Path
) -> Tuple[List[ToolReference], List[ToolReference]]:
    declared: List[ToolReference] = []
    unresolved: List[ToolReference] = []
    for tool in document.tools:
        try:
            expected = normalize_hash(tool.expected_hash)
        except ValueError as exc:
            message = (
                f"{path}: tool {tool.name} in {document.name} has an invalid expected_hash "
                f"({exc}); treating it as undeclared"
            )
            warnings.append(message)
            logger.warning(message, extra={"stage": "scan", "artifact": document.name})
            expected = None

        if tool.url is None:
            if tool.github_project:
                message = (
                    f"{path}: tool {tool.name} in {document.name} is published through GitHub "
                    f"releases ({tool.github_project}) and has no direct URL; not resolved"
                )
                unresolved.append(
                    ToolReference(
                        declared_name=tool.name,
                        url=None,
                        expected_hash=expected,
                        source_artifact=document.name,
                        github_project=tool.github_project,
                    )
                )
            else:
                message = f"{path}: tool {tool.name} in {document.name} declares no URL; skipped"
            warnings.append(message)
            logger.warning(message, extra={"stage": "scan", "artifact": document.name})
            continue

        declared.append(
            ToolReference(
                declared_name=tool.name,
                url=tool.url,
                expected_hash=expected,
                source_artifact=document.name,
                origin=ReferenceOrigin.DECLARED,
            )
        )
    return declared, unresolved


def parse_artifact_text(
    text: str,
    path: Path,
    *,
    textual_pass: bool = True,
    warnings: Optional[List[str]] = None,
    unresolved: Optional[List[ToolReference]] = None,
) -> ArtifactDefinition:
    """Parse one artifact document into an :class:`ArtifactDefinition`.

    Args:
        text: Full artifact file contents.
        path: Source path, recorded on the definition and used in messages.
        textual_pass: Whether to add references for undeclared body URLs.
        warnings: Optional list receiving recoverable per-tool warnings.
        unresolved: Optional list receiving GitHub-release tool references.

    Raises:
        ArtifactParseError: If the text is not valid YAML or violates the schema.
    """
    warnings = warnings if warnings is not None else []
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ArtifactParseError(f"{path}: invalid YAML ({exc})", path=str(path)) from exc
    if not isinstance(raw, dict):
        raise ArtifactParseError(f"{path}: artifact root must be a mapping", path=str(path))
    try:
        document = ArtifactDocument.model_validate(raw)
        artifact_type = ArtifactType.parse(document.type)
    except ValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        )
        raise ArtifactParseError(f"{path}: schema violation ({details})", path=str(path)) from exc
    except ValueError as exc:
        raise ArtifactParseError(
            f"{path}: unsupported artifact type {document.type!r}", path=str(path)
        ) from exc

    declared, github_refs = _declared_references(document, warnings, path)
    if unresolved is not None:
        unresolved.extend(github_refs)

    references = list(declared)
    if textual_pass:
        known: Set[str] = set()
        for reference in declared:
            try:
                known.add(canonicalize_url(reference.url or ""))
            except ValueError:
                continue
        references.extend(_textual_references(text, document.name, known))

    return ArtifactDefinition(
        name=document.name,
        description=document.description,
        type=artifact_type,
        tool_references=tuple(references),
        source_path=path,
        precondition=document.precondition,
    )


def parse_legacy_artifact(text: str, path: Path) -> ArtifactDefinition:
    """Best-effort regex extraction for artifacts the structured parser rejects.

    Raises:
        ArtifactParseError: If not even an artifact name can be recovered.
    """
    match = _LEGACY_NAME_PATTERN.search(text)
    if match is None:
        raise ArtifactParseError(f"{path}: no artifact name found in legacy mode", path=str(path))
    name = match.group(1)
    references = _textual_references(text, name, set())
    return ArtifactDefinition(
        name=name,
        description="",
        type=ArtifactType.CLIENT,
        tool_references=tuple(references),
        source_path=path,
        legacy=True,
    )


def scan_artifacts(
    root: Path,
    include: Sequence[str] = (),
    exclude: Sequence[str] = (),
    config: Optional[ScanConfiguration] = None,
) -> ScanResult:
    """Scan ``root`` recursively and return every matching artifact definition.

    Args:
        root: Directory holding artifact definitions.
        include: Glob patterns on artifact names to keep (empty keeps all).
        exclude: Glob patterns on artifact names to drop.
        config: Scan configuration; defaults are used when omitted.

    Returns:
        :class:`ScanResult` with artifacts sorted by name, plus every warning
        and skipped path encountered.

    Raises:
        FatalError: If the artifact root cannot be read.
    """
    config = config or ScanConfiguration()
    root = Path(root)
    result = ScanResult()
    seen: dict = {}
    max_bytes = int(config.max_file_size_mb * 1024 * 1024)

    files = discover_artifact_files(root, config.extensions)
    logger.info(
        "scanning artifact corpus",
        extra={"stage": "scan", "root": str(root), "files": len(files)},
    )

    for path in files:
        try:
            if path.stat().st_size > max_bytes:
                message = f"{path}: exceeds {config.max_file_size_mb} MB; skipped"
                result.warnings.append(message)
                result.skipped.append(path)
                logger.warning(message, extra={"stage": "scan"})
                continue
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            message = f"{path}: unreadable artifact file ({exc}); skipped"
            result.warnings.append(message)
            result.skipped.append(path)
            logger.warning(message, extra={"stage": "scan"})
            continue

        file_warnings: List[str] = []
        file_unresolved: List[ToolReference] = []
        try:
            artifact = parse_artifact_text(
                text,
                path,
                textual_pass=config.textual_pass,
                warnings=file_warnings,
                unresolved=file_unresolved,
            )
        except ArtifactParseError as exc:
            if not config.legacy_fallback:
                message = f"{exc}; skipped"
                result.warnings.append(message)
                result.skipped.append(path)
                logger.warning(message, extra={"stage": "scan", "path": str(path)})
                continue
            try:
                artifact = parse_legacy_artifact(text, path)
            except ArtifactParseError as legacy_exc:
                message = f"{legacy_exc}; skipped"
                result.warnings.append(message)
                result.skipped.append(path)
                logger.warning(message, extra={"stage": "scan", "path": str(path)})
                continue
            message = (
                f"{path}: parsed in legacy best-effort mode after structural failure ({exc}); "
                f"{len(artifact.tool_references)} URL reference(s) recovered"
            )
            file_warnings.append(message)
            logger.warning(
                message, extra={"stage": "scan", "path": str(path), "mode": "legacy"}
            )

        if not matches_filters(artifact.name, include, exclude):
            logger.debug(
                "artifact filtered out",
                extra={"stage": "scan", "artifact": artifact.name},
            )
            continue
        if artifact.name in seen:
            message = (
                f"{path}: duplicate artifact name {artifact.name} "
                f"(first defined in {seen[artifact.name]}); skipped"
            )
            result.warnings.append(message)
            result.skipped.append(path)
            logger.warning(message, extra={"stage": "scan", "artifact": artifact.name})
            continue

        seen[artifact.name] = path
        result.warnings.extend(file_warnings)
        result.unresolved.extend(file_unresolved)
        result.artifacts.append(artifact)

    result.artifacts.sort(key=lambda item: item.name)
    logger.info(
        "scan complete",
        extra={
            "stage": "scan",
            "artifacts": len(result.artifacts),
            "references": len(result.tool_references),
            "skipped": len(result.skipped),
        },
    )
    return result


__all__ = [
    "discover_artifact_files",
    "extract_text_urls",
    "matches_filters",
    "parse_artifact_text",
    "parse_legacy_artifact",
    "scan_artifacts",
]
