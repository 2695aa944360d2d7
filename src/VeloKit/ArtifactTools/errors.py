"""Exception hierarchy shared across artifact scanning, tool download, and packaging.

The pipeline spans artifact parsing, reference normalisation, HTTP retrieval,
content-addressed caching, and package assembly.  Most failure modes are
*recoverable*: a malformed artifact is skipped, a conflicting hash declaration
is resolved by policy, and a tool that cannot be fetched is recorded as a
:class:`~VeloKit.ArtifactTools.models.ToolFailure` while the run carries on.
Only :class:`FatalError` (and :class:`ConfigError`) abort a run outright.
"""

from __future__ import annotations

from typing import Optional

__all__ = [
    "ArtifactToolsError",
    "ConfigError",
    "ArtifactParseError",
    "ReferenceConflictError",
    "NetworkError",
    "IntegrityError",
    "DownloadCancelled",
    "FatalError",
]


class ArtifactToolsError(RuntimeError):
    """Base exception for artifact scanning, tool resolution, and packaging failures."""


class ConfigError(ArtifactToolsError):
    """Raised when configuration files or CLI options are invalid."""


class ArtifactParseError(ArtifactToolsError):
    """Raised when an artifact definition cannot be parsed into the typed schema."""

    def __init__(self, message: str, *, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path


class ReferenceConflictError(ArtifactToolsError):
    """Raised when one canonical URL is declared with different expected hashes."""

    def __init__(
        self,
        message: str,
        *,
        url: str,
        kept_hash: Optional[str],
        rejected_hash: Optional[str],
        artifact: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.url = url
        self.kept_hash = kept_hash
        self.rejected_hash = rejected_hash
        self.artifact = artifact


class NetworkError(ArtifactToolsError):
    """Raised when an HTTP fetch attempt fails.

    ``retryable`` distinguishes transient conditions (timeouts, connection
    resets, 5xx responses) from permanent ones such as 4xx responses.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class IntegrityError(ArtifactToolsError):
    """Raised when downloaded or cached bytes do not match the expected SHA-256."""

    def __init__(self, message: str, *, expected: str, actual: str) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class DownloadCancelled(ArtifactToolsError):
    """Raised inside a worker when the run's cancellation token fires."""


class FatalError(ArtifactToolsError):
    """Raised when the run cannot continue and no package may be produced."""
# === NAVMAP v1 ===
# {
#   "module": "VeloKit.ArtifactTools.errors",
#   "purpose": "Define the exception hierarchy used across scanning, downloading, and packaging",
#   "sections": [
#     {"id": "base", "name": "Base Exceptions", "anchor": "BAS", "kind": "api"},
#     {"id": "recoverable", "name": "Recoverable Errors", "anchor": "REC", "kind": "api"},
#     {"id": "fatal", "name": "Fatal Errors", "anchor": "FAT", "kind": "api"}
#   ]
# }
# === /NAVMAP ===
