"""Artifact ↔ tool dependency graph.

The graph is the hinge of the pipeline: downloads, packaging, and manifests
all consume it rather than raw artifact files.  Its serialisation is fully
deterministic (sorted artifacts, sorted tool keys, no timestamps), so two
resolves over an unchanged corpus produce byte-identical JSON.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from .models import ArtifactDefinition, DownloadStatus, Platform, ResolvedTool
from .normalizer import normalize_references
from .scanner import matches_filters
from .settings import LOGGER_NAME, ConflictPolicy

logger = logging.getLogger(LOGGER_NAME)

GRAPH_SCHEMA_VERSION = "1"


@dataclass
class DependencyGraph:
    """Bipartite mapping between artifact names and canonical tool keys.

    Attributes:
        artifacts: Artifact definitions keyed by name.
        tools: One :class:`ResolvedTool` per canonical URL (the dedup invariant).
        artifact_tools: Artifact name to the set of tool keys it references.
        tool_artifacts: Tool key to the set of artifact names referencing it.
    """

    artifacts: Dict[str, ArtifactDefinition] = field(default_factory=dict)
    tools: Dict[str, ResolvedTool] = field(default_factory=dict)
    artifact_tools: Dict[str, Set[str]] = field(default_factory=dict)
    tool_artifacts: Dict[str, Set[str]] = field(default_factory=dict)

    def add_artifact(self, artifact: ArtifactDefinition) -> None:
        self.artifacts[artifact.name] = artifact
        self.artifact_tools.setdefault(artifact.name, set())

    def add_edge(self, artifact_name: str, tool: ResolvedTool) -> None:
        existing = self.tools.setdefault(tool.key, tool)
        if existing is not tool:
            raise ValueError(f"duplicate ResolvedTool record for {tool.key}")
        self.artifact_tools.setdefault(artifact_name, set()).add(tool.key)
        self.tool_artifacts.setdefault(tool.key, set()).add(artifact_name)
        tool.referenced_by.add(artifact_name)

    @property
    def artifact_names(self) -> List[str]:
        return sorted(self.artifact_tools)

    @property
    def tool_keys(self) -> List[str]:
        return sorted(self.tools)

    def tools_for(self, artifact_name: str) -> List[ResolvedTool]:
        return [self.tools[key] for key in sorted(self.artifact_tools.get(artifact_name, ()))]

    def closure(self, artifact_names: Iterable[str]) -> List[str]:
        """Return the sorted set of tool keys required by ``artifact_names``."""
        required: Set[str] = set()
        for name in artifact_names:
            if name not in self.artifact_tools:
                raise KeyError(f"unknown artifact {name!r}")
            required.update(self.artifact_tools[name])
        return sorted(required)

    def select(
        self,
        include: Sequence[str] = (),
        exclude: Sequence[str] = (),
        platform: Platform = Platform.GENERIC,
    ) -> List[str]:
        """Return artifact names passing the filters for ``platform``.

        A concrete platform keeps its own artifacts plus platform-neutral
        (``Generic``) ones; ``Generic`` keeps everything.
        """
        selected = []
        for name in self.artifact_names:
            if not matches_filters(name, include, exclude):
                continue
            artifact_platform = Platform.infer_from_artifact(name)
            if platform is not Platform.GENERIC and artifact_platform not in (
                platform,
                Platform.GENERIC,
            ):
                continue
            selected.append(name)
        return selected

    def subgraph(self, artifact_names: Iterable[str]) -> "DependencyGraph":
        """Return a graph restricted to ``artifact_names`` sharing tool records."""
        graph = DependencyGraph()
        for name in sorted(set(artifact_names)):
            if name in self.artifacts:
                graph.artifacts[name] = self.artifacts[name]
            graph.artifact_tools[name] = set(self.artifact_tools.get(name, ()))
            for key in graph.artifact_tools[name]:
                graph.tools[key] = self.tools[key]
                graph.tool_artifacts.setdefault(key, set()).add(name)
        return graph

    def to_dict(self) -> dict:
        return {
            "schema_version": GRAPH_SCHEMA_VERSION,
            "artifacts": {
                name: sorted(self.artifact_tools[name]) for name in self.artifact_names
            },
            "tools": {
                key: {
                    "name": self.tools[key].name,
                    "expected_hash": self.tools[key].expected_hash,
                    "referencedBy": sorted(self.tool_artifacts.get(key, ())),
                }
                for key in self.tool_keys
            },
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True) + "\n"

    def fingerprint(self) -> str:
        """SHA-256 of the canonical serialisation; identifies a graph generation."""
        return hashlib.sha256(self.to_json().encode("utf-8")).hexdigest()

    @classmethod
    def from_dict(
        cls,
        payload: Mapping[str, object],
        artifacts: Optional[Mapping[str, ArtifactDefinition]] = None,
    ) -> "DependencyGraph":
        """Rebuild a graph from :meth:`to_dict` output.

        Artifact definitions are attached when supplied (needed for packaging);
        a graph rebuilt without them still supports closure and download.
        """
        graph = cls()
        tools_payload = payload.get("tools") or {}
        artifacts_payload = payload.get("artifacts") or {}
        if not isinstance(tools_payload, Mapping) or not isinstance(artifacts_payload, Mapping):
            raise ValueError("graph payload must contain 'tools' and 'artifacts' mappings")
        for key, entry in tools_payload.items():
            entry = entry or {}
            graph.tools[key] = ResolvedTool(
                canonical_url=key,
                name=str(entry.get("name") or key.rsplit("/", 1)[-1]),
                expected_hash=entry.get("expected_hash"),
            )
        for name, keys in artifacts_payload.items():
            if artifacts and name in artifacts:
                graph.artifacts[name] = artifacts[name]
            graph.artifact_tools[name] = set()
            for key in keys:
                if key not in graph.tools:
                    raise ValueError(f"artifact {name} references unknown tool {key}")
                graph.add_edge(name, graph.tools[key])
        return graph


def build_dependency_graph(
    artifacts: Iterable[ArtifactDefinition],
    *,
    conflict_policy: ConflictPolicy = ConflictPolicy.FIRST_WINS,
    pinned_hashes: Optional[Mapping[str, str]] = None,
) -> Tuple[DependencyGraph, List[str]]:
    """Normalise references and build the dependency graph.

    Args:
        artifacts: Parsed artifact definitions.
        conflict_policy: How conflicting hash declarations are reconciled.
        pinned_hashes: Canonical URL to SHA-256 pins (usually from a previous
            manifest); they fill in undeclared hashes and flag drift in
            declared ones.

    Returns:
        The graph and the warnings raised while building it.
    """
    artifacts = list(artifacts)
    normalized = normalize_references(artifacts, conflict_policy)
    warnings = list(normalized.warnings)

    graph = DependencyGraph()
    for artifact in sorted(artifacts, key=lambda item: item.name):
        graph.add_artifact(artifact)
    for key in sorted(normalized.tools):
        tool = normalized.tools[key]
        tool.referenced_by.clear()
        tool.download_status = DownloadStatus.PENDING
    for artifact_name, key in normalized.edges:
        graph.add_edge(artifact_name, normalized.tools[key])

    for key, pinned in sorted((pinned_hashes or {}).items()):
        tool = graph.tools.get(key)
        if tool is None:
            continue
        if tool.expected_hash is None:
            tool.expected_hash = pinned
        elif tool.expected_hash != pinned:
            message = (
                f"Pinned hash for {key} ({pinned}) differs from the declared hash "
                f"({tool.expected_hash}); keeping the declared hash"
            )
            warnings.append(message)
            logger.warning(message, extra={"stage": "resolve", "tool_url": key})

    logger.info(
        "dependency graph built",
        extra={
            "stage": "resolve",
            "artifacts": len(graph.artifact_tools),
            "tools": len(graph.tools),
            "edges": len(normalized.edges),
        },
    )
    return graph, warnings


def load_graph(path: Path) -> DependencyGraph:
    return DependencyGraph.from_dict(json.loads(Path(path).read_text(encoding="utf-8")))


__all__ = ["DependencyGraph", "GRAPH_SCHEMA_VERSION", "build_dependency_graph", "load_graph"]
