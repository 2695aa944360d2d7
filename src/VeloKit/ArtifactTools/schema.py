"""Typed schema for Velociraptor artifact definitions.

Only the fields this pipeline consumes are modelled; everything else an
artifact may carry (``sources``, ``parameters``, ``reports``, ``export`` …) is
accepted and ignored so that upstream schema growth never breaks scanning.
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ToolDeclaration(BaseModel):
    """One entry of an artifact's ``tools:`` section."""

    name: str
    url: Optional[str] = None
    expected_hash: Optional[str] = None
    serve_locally: bool = False
    version: Optional[str] = None
    github_project: Optional[str] = None
    github_asset_regex: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("tool name must not be empty")
        return stripped

    @field_validator("url", "version", "github_project", mode="before")
    @classmethod
    def blank_to_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value.strip() if isinstance(value, str) else value

    @field_validator("expected_hash", mode="before")
    @classmethod
    def validate_hash_type(cls, value: object) -> object:
        if value is None:
            return None
        # YAML reads an unquoted all-digit or exponent-shaped digest as a number.
        if not isinstance(value, str):
            raise ValueError(
                "expected_hash must be a quoted string, got "
                f"{type(value).__name__}; quote the digest in the artifact YAML"
            )
        return value.strip() or None


class ArtifactDocument(BaseModel):
    """Top-level artifact document as written in ``<name>.yaml``."""

    name: str
    description: str = ""
    type: Optional[str] = None
    author: Optional[str] = None
    precondition: Optional[str] = None
    tools: List[ToolDeclaration] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("artifact name must not be empty")
        if any(char.isspace() for char in stripped):
            raise ValueError("artifact name must not contain whitespace")
        return stripped

    @field_validator("description", mode="before")
    @classmethod
    def coerce_description(cls, value: object) -> object:
        return "" if value is None else value

    @field_validator("tools", mode="before")
    @classmethod
    def coerce_tools(cls, value: object) -> object:
        return [] if value is None else value


__all__ = ["ArtifactDocument", "ToolDeclaration"]
