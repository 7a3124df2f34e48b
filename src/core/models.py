# src/core/models.py — v1
"""Shared Pydantic domain models used across modules.

No module redefines these types; all imports come from core.models.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Literal

from pydantic import AliasChoices, BaseModel, Field

Architecture = Literal["x86_64", "aarch64"]

# Receives one line of progress output at a time.
LogSink = Callable[[str], None]


class ImageDefinition(BaseModel):
    """A buildable image, as declared in the [[images]] config table."""

    model_config = {"frozen": True}

    name: str = Field(min_length=1)
    # flake_target / terraform_var keep older config files loading
    build_target: str = Field(
        min_length=1, validation_alias=AliasChoices("build_target", "flake_target")
    )
    arch: Architecture = "x86_64"
    output_var: str = Field(
        default="", validation_alias=AliasChoices("output_var", "terraform_var")
    )

    @property
    def output_link(self) -> str:
        """Out-link name the build capability writes to."""
        return f"result-{self.name}"

    def variable_name(self) -> str:
        """Downstream variable the registered image id is exported as."""
        return self.output_var or f"{self.name}_image_ocid"


class BuildResult(BaseModel):
    """Artifact produced by one image build."""

    image_name: str
    output_path: str
    size_bytes: int = 0


class UploadResult(BaseModel):
    """Object produced by one image upload."""

    image_name: str
    object_name: str
    size_bytes: int
    parts: int
    multipart: bool


class RegisteredImage(BaseModel):
    """A custom image known to the compute service."""

    id: str
    display_name: str
    lifecycle_state: str
    time_created: datetime | None = None
