# === NAVMAP v1 ===
# {
#   "module": "VeloKit.ArtifactTools.settings",
#   "purpose": "Configuration models, YAML loading, and environment overrides",
#   "sections": [
#     {"id": "models", "name": "Configuration Models", "anchor": "MDL", "kind": "api"},
#     {"id": "env", "name": "Environment Overrides", "anchor": "ENV", "kind": "api"},
#     {"id": "loading", "name": "Loading Helpers", "anchor": "LOD", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Configuration models, YAML loading, and environment overrides.

Every pipeline stage reads its knobs from one :class:`ResolvedConfig` carried
on the pipeline context, so a run never consults process-wide state.  Values
come from (lowest to highest precedence) model defaults, an optional YAML file,
``VELOTOOLS_*`` environment variables, and finally explicit CLI options.
"""

from __future__ import annotations

import hashlib
import json
import logging
from enum import Enum
from pathlib import Path
from typing import List, Mapping, Optional

import platformdirs
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError

DEFAULT_USER_AGENT = "VeloKit-ArtifactTools/0.4 (+https://docs.velociraptor.app/)"
LOGGER_NAME = "VeloKit.ArtifactTools"


def default_cache_dir() -> Path:
    return Path(platformdirs.user_cache_dir("VeloKit")) / "tools"


class ConflictPolicy(str, Enum):
    FIRST_WINS = "first_wins"
    LAST_WINS = "last_wins"
    STRICT = "strict"


class ScanConfiguration(BaseModel):
    extensions: List[str] = Field(default_factory=lambda: [".yaml", ".yml"])
    textual_pass: bool = Field(default=True, description="Scan body text for undeclared URLs")
    legacy_fallback: bool = Field(
        default=False,
        description="Extract references from malformed files with the regex best-effort mode",
    )
    max_file_size_mb: float = Field(default=8.0, gt=0, le=512)

    @field_validator("extensions")
    @classmethod
    def validate_extensions(cls, value: List[str]) -> List[str]:
        normalized = []
        for entry in value:
            candidate = entry.strip().lower()
            if not candidate:
                continue
            if not candidate.startswith("."):
                candidate = f".{candidate}"
            normalized.append(candidate)
        if not normalized:
            raise ValueError("at least one artifact file extension is required")
        return normalized

    model_config = {"validate_assignment": True, "extra": "forbid"}


class DownloadConfiguration(BaseModel):
    max_concurrent_downloads: int = Field(default=5, ge=1, le=64)
    max_attempts: int = Field(default=3, ge=1, le=10)
    backoff_base_sec: float = Field(default=1.0, ge=0.0, le=60.0)
    backoff_max_sec: float = Field(default=30.0, ge=0.0, le=600.0)
    timeout_sec: float = Field(default=60.0, gt=0, le=3600)
    chunk_size: int = Field(default=1 << 20, ge=1024)
    max_download_size_mb: float = Field(default=2048.0, gt=0)
    user_agent: str = Field(default=DEFAULT_USER_AGENT)
    allowed_schemes: List[str] = Field(default_factory=lambda: ["https", "http"])

    @field_validator("allowed_schemes")
    @classmethod
    def validate_schemes(cls, value: List[str]) -> List[str]:
        lowered = [scheme.strip().lower() for scheme in value if scheme.strip()]
        unknown = sorted(set(lowered) - {"http", "https"})
        if unknown:
            raise ValueError(f"unsupported URL scheme(s): {', '.join(unknown)}")
        return lowered

    def max_download_bytes(self) -> int:
        return int(self.max_download_size_mb * 1024 * 1024)

    model_config = {"validate_assignment": True, "extra": "forbid"}


class CacheConfiguration(BaseModel):
    directory: Path = Field(default_factory=default_cache_dir)
    keep_generations: int = Field(default=5, ge=1, le=1000)

    model_config = {"validate_assignment": True, "extra": "forbid"}


class PackageConfiguration(BaseModel):
    name_template: str = Field(default="velociraptor-artifacts-{platform}-{mode}")
    conflict_policy: ConflictPolicy = Field(default=ConflictPolicy.FIRST_WINS)
    require_all_tools: bool = Field(default=False)

    @field_validator("name_template")
    @classmethod
    def validate_template(cls, value: str) -> str:
        try:
            rendered = value.format(platform="linux", mode="offline")
        except (KeyError, IndexError) as exc:
            raise ValueError(f"name_template may only use {{platform}} and {{mode}}: {exc}")
        if not rendered or "/" in rendered or "\\" in rendered:
            raise ValueError("name_template must render to a single directory name")
        return value

    model_config = {"validate_assignment": True, "extra": "forbid"}


class LoggingConfiguration(BaseModel):
    level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)")
    directory: Optional[Path] = Field(default=None, description="Directory for JSONL log files")
    max_log_size_mb: int = Field(default=50, gt=0)
    retention_days: int = Field(default=30, ge=1)

    @field_validator("level")
    @classmethod
    def validate_level(cls, value: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR"}
        upper = value.upper()
        if upper not in valid_levels:
            raise ValueError(f"level must be one of {sorted(valid_levels)}")
        return upper

    model_config = {"validate_assignment": True, "extra": "forbid"}


class ResolvedConfig(BaseModel):
    scan: ScanConfiguration = Field(default_factory=ScanConfiguration)
    download: DownloadConfiguration = Field(default_factory=DownloadConfiguration)
    cache: CacheConfiguration = Field(default_factory=CacheConfiguration)
    package: PackageConfiguration = Field(default_factory=PackageConfiguration)
    logging: LoggingConfiguration = Field(default_factory=LoggingConfiguration)

    def config_hash(self) -> str:
        """Return a stable fingerprint of the effective configuration."""
        payload = json.dumps(self.model_dump(mode="json"), sort_keys=True)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]

    model_config = {"validate_assignment": True, "extra": "forbid"}


class EnvironmentOverrides(BaseSettings):
    max_concurrent_downloads: Optional[int] = Field(
        default=None, alias="VELOTOOLS_MAX_CONCURRENT_DOWNLOADS"
    )
    timeout_sec: Optional[float] = Field(default=None, alias="VELOTOOLS_TIMEOUT_SEC")
    cache_dir: Optional[Path] = Field(default=None, alias="VELOTOOLS_CACHE_DIR")
    log_level: Optional[str] = Field(default=None, alias="VELOTOOLS_LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_prefix="VELOTOOLS_", case_sensitive=False, extra="ignore", populate_by_name=True
    )


def _format_validation_error(exc: ValidationError) -> str:
    messages = []
    for error in exc.errors():
        location = " -> ".join(str(part) for part in error["loc"])
        messages.append(f"{location}: {error['msg']}")
    return "Configuration validation failed:\n  " + "\n  ".join(messages)


def _apply_env_overrides(config: ResolvedConfig) -> None:
    env = EnvironmentOverrides()
    logger = logging.getLogger(LOGGER_NAME)

    try:
        if env.max_concurrent_downloads is not None:
            config.download.max_concurrent_downloads = env.max_concurrent_downloads
            logger.info(
                "Config overridden: max_concurrent_downloads=%s",
                env.max_concurrent_downloads,
                extra={"stage": "config"},
            )
        if env.timeout_sec is not None:
            config.download.timeout_sec = env.timeout_sec
            logger.info(
                "Config overridden: timeout_sec=%s", env.timeout_sec, extra={"stage": "config"}
            )
        if env.cache_dir is not None:
            config.cache.directory = env.cache_dir
            logger.info(
                "Config overridden: cache_dir=%s", env.cache_dir, extra={"stage": "config"}
            )
        if env.log_level is not None:
            config.logging.level = env.log_level
            logger.info("Config overridden: log_level=%s", env.log_level, extra={"stage": "config"})
    except ValidationError as exc:
        raise ConfigError(_format_validation_error(exc)) from exc


def build_resolved_config(raw: Mapping[str, object], *, apply_env: bool = True) -> ResolvedConfig:
    """Validate a raw mapping (usually parsed YAML) into a :class:`ResolvedConfig`."""

    try:
        config = ResolvedConfig.model_validate(dict(raw))
    except ValidationError as exc:
        raise ConfigError(_format_validation_error(exc)) from exc
    if apply_env:
        _apply_env_overrides(config)
    return config


def load_raw_yaml(config_path: Path) -> Mapping[str, object]:
    if not config_path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Configuration file '{config_path}' contains invalid YAML") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError("Configuration file must contain a mapping at the root")
    return data


def load_config(config_path: Optional[Path] = None) -> ResolvedConfig:
    """Load configuration from ``config_path`` (or defaults) plus environment overrides."""

    raw = load_raw_yaml(config_path) if config_path is not None else {}
    return build_resolved_config(raw)


def get_default_config() -> ResolvedConfig:
    return build_resolved_config({})


__all__ = [
    "CacheConfiguration",
    "ConflictPolicy",
    "DownloadConfiguration",
    "EnvironmentOverrides",
    "LOGGER_NAME",
    "LoggingConfiguration",
    "PackageConfiguration",
    "ResolvedConfig",
    "ScanConfiguration",
    "build_resolved_config",
    "default_cache_dir",
    "get_default_config",
    "load_config",
    "load_raw_yaml",
]
