"""Canonicalisation and deduplication of raw tool references.

Artifacts mention the same binary in slightly different spellings: an
upper-case host, an explicit ``:443``, a ``#readme`` fragment.  This module
turns every raw :class:`~VeloKit.ArtifactTools.models.ToolReference` into a
canonical URL key so those spellings collapse into a single
:class:`~VeloKit.ArtifactTools.models.ResolvedTool`.  Spellings that differ in
path or query remain distinct here; if they turn out to serve identical bytes
the content-addressed cache stores them once.

Hash declarations are reconciled per canonical URL.  Disagreement is a
:class:`~VeloKit.ArtifactTools.errors.ReferenceConflictError` resolved by the
configured :class:`~VeloKit.ArtifactTools.settings.ConflictPolicy`; it is
always reported, never silently overwritten.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple
from urllib.parse import urlsplit, urlunsplit

from .errors import FatalError, ReferenceConflictError
from .models import ArtifactDefinition, ReferenceOrigin, ResolvedTool, ToolReference
from .settings import LOGGER_NAME, ConflictPolicy

_HEX_DIGEST = re.compile(r"[0-9a-f]{64}")
_DEFAULT_PORTS = {"http": 80, "https": 443}

logger = logging.getLogger(LOGGER_NAME)


def is_remote_url(value: str) -> bool:
    return urlsplit(value.strip()).scheme.lower() in _DEFAULT_PORTS


def canonicalize_url(url: str) -> str:
    """Return the canonical form of ``url`` used as the tool key.

    Scheme and host are lower-cased (hosts are IDNA-encoded), default ports and
    fragments are dropped, and path plus query are preserved verbatim.  A path
    consisting of a lone ``/`` collapses to the bare host.  Non-HTTP references
    such as package-relative ``tools/<name>`` paths are returned unchanged.

    Raises:
        ValueError: If an HTTP(S) URL has no host or an invalid port.

    Examples:
        >>> canonicalize_url("HTTPS://Live.Sysinternals.COM:443/tools/Autorunsc64.exe#x")
        'https://live.sysinternals.com/tools/Autorunsc64.exe'
    """

    candidate = url.strip()
    parts = urlsplit(candidate)
    scheme = parts.scheme.lower()
    if scheme not in _DEFAULT_PORTS:
        return candidate

    host = parts.hostname
    if not host:
        raise ValueError(f"URL has no host: {url!r}")
    try:
        ascii_host = host.encode("idna").decode("ascii").lower()
    except UnicodeError as exc:
        raise ValueError(f"invalid internationalised host in {url!r}") from exc
    if ":" in ascii_host:
        ascii_host = f"[{ascii_host}]"

    port = parts.port  # raises ValueError for malformed ports
    netloc = ascii_host
    if port is not None and port != _DEFAULT_PORTS[scheme]:
        netloc = f"{netloc}:{port}"
    if parts.username:
        auth = parts.username
        if parts.password:
            auth = f"{auth}:{parts.password}"
        netloc = f"{auth}@{netloc}"

    path = parts.path
    if path == "/" and not parts.query:
        path = ""
    return urlunsplit((scheme, netloc, path, parts.query, ""))


def normalize_hash(value: Optional[str]) -> Optional[str]:
    """Normalise a declared SHA-256 digest.

    Accepts bare hex or ``sha256:``-prefixed values in any case.

    Raises:
        ValueError: If the value is not a 64 character hexadecimal digest.
    """

    if value is None:
        return None
    candidate = str(value).strip().lower()
    if not candidate:
        return None
    if candidate.startswith("sha256:"):
        candidate = candidate[len("sha256:") :].strip()
    if not _HEX_DIGEST.fullmatch(candidate):
        raise ValueError(f"expected a SHA-256 hex digest, got {value!r}")
    return candidate


@dataclass
class NormalizedReferences:
    """Deduplicated tools plus the (artifact, tool key) edges that reference them."""

    tools: Dict[str, ResolvedTool] = field(default_factory=dict)
    edges: List[Tuple[str, str]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    conflicts: List[ReferenceConflictError] = field(default_factory=list)


def _resolve_conflict(
    tool: ResolvedTool,
    reference: ToolReference,
    declared: str,
    policy: ConflictPolicy,
    result: NormalizedReferences,
) -> None:
    message = (
        f"Conflicting expected hashes for {tool.canonical_url}: "
        f"{tool.expected_hash} (kept) vs {declared} from artifact {reference.source_artifact}"
    )
    kept, rejected = tool.expected_hash, declared
    if policy is ConflictPolicy.LAST_WINS:
        message = (
            f"Conflicting expected hashes for {tool.canonical_url}: "
            f"{declared} from artifact {reference.source_artifact} replaces {tool.expected_hash}"
        )
        kept, rejected = declared, tool.expected_hash
        tool.expected_hash = declared
    conflict = ReferenceConflictError(
        message,
        url=tool.canonical_url,
        kept_hash=kept,
        rejected_hash=rejected,
        artifact=reference.source_artifact,
    )
    if policy is ConflictPolicy.STRICT:
        raise FatalError(str(conflict)) from conflict
    result.conflicts.append(conflict)
    result.warnings.append(message)
    logger.warning(
        "tool hash conflict",
        extra={
            "stage": "normalize",
            "tool_url": tool.canonical_url,
            "kept_hash": kept,
            "rejected_hash": rejected,
            "artifact": reference.source_artifact,
        },
    )


def normalize_references(
    artifacts: Iterable[ArtifactDefinition],
    policy: ConflictPolicy = ConflictPolicy.FIRST_WINS,
) -> NormalizedReferences:
    """Collapse references from ``artifacts`` into one record per canonical URL.

    Artifacts are visited in name order and references in declaration order,
    which makes "first declared" well defined and the output deterministic.

    Raises:
        FatalError: When ``policy`` is ``STRICT`` and a hash conflict is found.
    """

    result = NormalizedReferences()
    names_to_urls: Dict[str, Set[str]] = {}
    declared_names: Set[str] = set()
    seen_edges: Set[Tuple[str, str]] = set()

    for artifact in sorted(artifacts, key=lambda item: item.name):
        for reference in artifact.tool_references:
            if reference.url is None:
                continue
            try:
                key = canonicalize_url(reference.url)
            except ValueError as exc:
                message = (
                    f"Artifact {artifact.name}: ignoring unusable tool URL "
                    f"{reference.url!r} ({exc})"
                )
                result.warnings.append(message)
                logger.warning(message, extra={"stage": "normalize", "artifact": artifact.name})
                continue

            declared = reference.expected_hash
            tool = result.tools.get(key)
            if tool is None:
                tool = ResolvedTool(
                    canonical_url=key,
                    name=reference.declared_name,
                    expected_hash=declared,
                )
                result.tools[key] = tool
            elif declared is not None:
                if tool.expected_hash is None:
                    tool.expected_hash = declared
                elif tool.expected_hash != declared:
                    _resolve_conflict(tool, reference, declared, policy, result)

            tool.referenced_by.add(artifact.name)
            tool.raw_urls.add(reference.url)
            if reference.origin is ReferenceOrigin.DECLARED and key not in declared_names:
                # Structural names take precedence over inferred URL segments.
                tool.name = reference.declared_name
                declared_names.add(key)
            names_to_urls.setdefault(reference.declared_name, set()).add(key)
            edge = (artifact.name, key)
            if edge not in seen_edges:
                seen_edges.add(edge)
                result.edges.append(edge)

    for name, urls in sorted(names_to_urls.items()):
        if len(urls) > 1:
            message = (
                f"Tool name {name!r} maps to {len(urls)} different URLs: "
                + ", ".join(sorted(urls))
            )
            result.warnings.append(message)
            logger.warning(message, extra={"stage": "normalize", "tool_name": name})

    return result


__all__ = [
    "NormalizedReferences",
    "canonicalize_url",
    "is_remote_url",
    "normalize_hash",
    "normalize_references",
]
