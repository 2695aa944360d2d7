# === NAVMAP v1 ===
# {
#   "module": "VeloKit.ArtifactTools.models",
#   "purpose": "Core records flowing through the scan, resolve, download, and package stages",
#   "sections": [
#     {"id": "enums", "name": "Enumerations", "anchor": "ENM", "kind": "api"},
#     {"id": "artifacts", "name": "Artifact Records", "anchor": "ART", "kind": "api"},
#     {"id": "tools", "name": "Tool Records", "anchor": "TOL", "kind": "api"},
#     {"id": "results", "name": "Stage Results", "anchor": "RES", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Core records flowing through the scan, resolve, download, and package stages.

Artifact definitions and tool references are immutable parse products.  The
only mutable record is :class:`ResolvedTool`, whose download status, hash, and
cache location are filled in by the download orchestrator.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple


class ArtifactType(str, Enum):
    CLIENT = "CLIENT"
    SERVER = "SERVER"
    CLIENT_EVENT = "CLIENT_EVENT"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ArtifactType":
        """Map a Velociraptor ``type:`` value onto the supported enumeration.

        Missing values default to ``CLIENT`` (Velociraptor's own default) and
        ``SERVER_EVENT`` folds into ``SERVER``.
        """
        if not value:
            return cls.CLIENT
        candidate = str(value).strip().upper().replace("-", "_")
        if candidate == "SERVER_EVENT":
            return cls.SERVER
        return cls(candidate)


class Platform(str, Enum):
    WINDOWS = "Windows"
    LINUX = "Linux"
    MACOS = "macOS"
    GENERIC = "Generic"

    @classmethod
    def parse(cls, value: str) -> "Platform":
        lowered = value.strip().lower()
        for member in cls:
            if member.value.lower() == lowered:
                return member
        if lowered in {"darwin", "mac", "osx"}:
            return cls.MACOS
        raise ValueError(f"unknown platform '{value}'")

    @classmethod
    def infer_from_artifact(cls, artifact_name: str) -> "Platform":
        """Infer the target platform from the artifact's dotted name prefix."""
        prefix = artifact_name.split(".", 1)[0].lower()
        return {
            "windows": cls.WINDOWS,
            "linux": cls.LINUX,
            "macos": cls.MACOS,
        }.get(prefix, cls.GENERIC)


class PackageMode(str, Enum):
    ONLINE = "Online"
    OFFLINE = "Offline"

    @classmethod
    def parse(cls, value: str) -> "PackageMode":
        lowered = value.strip().lower()
        for member in cls:
            if member.value.lower() == lowered:
                return member
        raise ValueError(f"unknown package mode '{value}'")


class DownloadStatus(str, Enum):
    PENDING = "Pending"
    IN_FLIGHT = "InFlight"
    VERIFIED = "Verified"
    FAILED = "Failed"


class ReferenceOrigin(str, Enum):
    DECLARED = "declared"
    INFERRED = "inferred"


@dataclass(slots=True, frozen=True)
class ToolReference:
    """A single mention of a tool inside one artifact.

    Attributes:
        declared_name: Tool name from the ``tools:`` section, or the final URL
            path segment for references found by the textual pass.
        url: Raw URL exactly as written in the artifact (``None`` for
            GitHub-release tools that only declare a project).
        expected_hash: Normalised SHA-256 declared by the artifact, if any.
        source_artifact: Name of the artifact that mentions the tool.
        origin: Whether the reference came from the structural or textual pass.
        github_project: Release project for tools without a direct URL.
    """

    declared_name: str
    url: Optional[str]
    expected_hash: Optional[str]
    source_artifact: str
    origin: ReferenceOrigin = ReferenceOrigin.DECLARED
    github_project: Optional[str] = None

    def to_dict(self) -> dict:
        payload = {
            "name": self.declared_name,
            "url": self.url,
            "expected_hash": self.expected_hash,
            "artifact": self.source_artifact,
            "origin": self.origin.value,
        }
        if self.github_project:
            payload["github_project"] = self.github_project
        return payload


@dataclass(slots=True, frozen=True)
class ArtifactDefinition:
    """Parsed Velociraptor artifact; read-only once constructed."""

    name: str
    description: str
    type: ArtifactType
    tool_references: Tuple[ToolReference, ...]
    source_path: Path
    precondition: Optional[str] = None
    legacy: bool = False

    @property
    def platform(self) -> Platform:
        return Platform.infer_from_artifact(self.name)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "type": self.type.value,
            "platform": self.platform.value,
            "source_path": str(self.source_path),
            "legacy": self.legacy,
            "tools": [reference.to_dict() for reference in self.tool_references],
        }


@dataclass(slots=True)
class ResolvedTool:
    """Deduplicated tool shared by every artifact that references it."""

    canonical_url: str
    name: str
    expected_hash: Optional[str] = None
    content_hash: Optional[str] = None
    local_cache_path: Optional[Path] = None
    size_bytes: Optional[int] = None
    download_status: DownloadStatus = DownloadStatus.PENDING
    referenced_by: Set[str] = field(default_factory=set)
    raw_urls: Set[str] = field(default_factory=set)
    failure_reason: Optional[str] = None
    from_cache: bool = False

    @property
    def key(self) -> str:
        return self.canonical_url

    @property
    def verified(self) -> bool:
        return self.download_status is DownloadStatus.VERIFIED

    def to_dict(self) -> dict:
        return {
            "url": self.canonical_url,
            "name": self.name,
            "expected_hash": self.expected_hash,
            "hash": self.content_hash,
            "size": self.size_bytes,
            "status": self.download_status.value,
            "reason": self.failure_reason,
            "referencedBy": sorted(self.referenced_by),
        }


@dataclass(slots=True, frozen=True)
class ToolFailure:
    """Permanent failure for one tool; surfaced, never raised."""

    url: str
    name: str
    reason: str
    kind: str
    attempts: int = 0

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "name": self.name,
            "reason": self.reason,
            "kind": self.kind,
            "attempts": self.attempts,
        }


@dataclass(slots=True)
class ScanResult:
    """Output of the artifact scanner."""

    artifacts: List[ArtifactDefinition] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    skipped: List[Path] = field(default_factory=list)
    unresolved: List[ToolReference] = field(default_factory=list)

    @property
    def tool_references(self) -> List[ToolReference]:
        return [ref for artifact in self.artifacts for ref in artifact.tool_references]


@dataclass(slots=True)
class DownloadReport:
    """Outcome of a download run, including instrumentation counters."""

    tools: Dict[str, ResolvedTool] = field(default_factory=dict)
    failures: List[ToolFailure] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    cache_hits: int = 0
    cache_misses: int = 0
    fetch_count: int = 0
    max_in_flight: int = 0
    cancelled: bool = False

    @property
    def verified(self) -> List[ResolvedTool]:
        return [tool for _, tool in sorted(self.tools.items()) if tool.verified]

    @property
    def success(self) -> bool:
        return not self.failures and not self.cancelled


@dataclass(slots=True, frozen=True)
class PackageFile:
    path: str
    sha256: str

    def to_dict(self) -> dict:
        return {"path": self.path, "hash": self.sha256}


@dataclass(slots=True)
class Package:
    """Materialised package directory and the manifest describing it."""

    platform: Platform
    mode: PackageMode
    path: Path
    manifest_path: Path
    selected_artifacts: List[str] = field(default_factory=list)
    included_tools: List[ResolvedTool] = field(default_factory=list)
    files: List[PackageFile] = field(default_factory=list)
    tool_paths: Dict[str, str] = field(default_factory=dict)


__all__ = [
    "ArtifactDefinition",
    "ArtifactType",
    "DownloadReport",
    "DownloadStatus",
    "Package",
    "PackageFile",
    "PackageMode",
    "Platform",
    "ReferenceOrigin",
    "ResolvedTool",
    "ScanResult",
    "ToolFailure",
    "ToolReference",
]
