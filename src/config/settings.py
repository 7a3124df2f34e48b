# src/config/settings.py — v2
"""Typed configuration loaded from a TOML file, .env and IMAGEBUILDER_* env vars.

Single source of truth for all deployment-specific settings. The TOML file
carries the [oci], [remote_builder] and [[images]] tables; environment
variables override individual fields (nested with "__", e.g.
IMAGEBUILDER_OCI__REGION).
"""

from __future__ import annotations

import contextvars
import logging
import tomllib
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, ValidationError, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from imagebuilder.core.errors import ConfigurationError
from imagebuilder.core.models import Architecture, ImageDefinition

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "oci-image-builder.toml"
USER_CONFIG_PATH = Path("~/.config/oci-image-builder/config.toml")

MiB = 1024 * 1024

# Config file read by the Settings being constructed in load_settings().
_config_file: contextvars.ContextVar[Path | None] = contextvars.ContextVar(
    "config_file", default=None
)


class OCIConfig(BaseModel):
    """Object storage and compute image settings."""

    compartment_ocid: str = ""
    bucket_name: str = ""
    region: str = ""
    profile: str = "DEFAULT"
    config_file: Path = Path("~/.oci/config")
    key_passphrase: str = ""

    # Import status polling
    poll_interval_secs: int = Field(default=30, ge=0)
    max_wait_secs: int = Field(default=1800, ge=0)
    initial_delay_secs: int = Field(default=30, ge=0)

    # Registered image metadata
    source_image_type: str = "QCOW2"
    operating_system: str = "NixOS"
    operating_system_version: str = "24.11"
    launch_mode: str = "PARAVIRTUALIZED"


class RemoteBuilderConfig(BaseModel):
    """Remote host used for foreign-architecture builds."""

    host: str
    user: str
    ssh_key: str = ""
    repo_path: str
    is_macos: bool = False

    # Nested linux-builder VM (macOS hosts only)
    vm_port: int = 31022
    vm_user: str = "builder"
    vm_key_path: str = "/etc/nix/builder_ed25519"

    @property
    def ssh_target(self) -> str:
        return f"{self.user}@{self.host}"


def default_images() -> list[ImageDefinition]:
    return [
        ImageDefinition(
            name="headscale", build_target="oci-headscale-image",
            arch="x86_64", output_var="headscale_image_ocid",
        ),
        ImageDefinition(
            name="keycloak", build_target="oci-keycloak-image",
            arch="aarch64", output_var="keycloak_image_ocid",
        ),
        ImageDefinition(
            name="derp", build_target="oci-derp-east-image",
            arch="aarch64", output_var="derp_image_ocid",
        ),
    ]


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="IMAGEBUILDER_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # === Cloud ===
    oci: OCIConfig = Field(default_factory=OCIConfig)
    object_store: Literal["oci", "s3"] = "oci"
    s3_endpoint_url: str = ""
    s3_region: str = ""

    # === Build ===
    remote_builder: RemoteBuilderConfig | None = None
    native_arch: Architecture = "x86_64"
    workdir: Path = Path(".")
    artifact_filename: str = "nixos.qcow2"
    images: list[ImageDefinition] = Field(default_factory=default_images)

    # === Transfer ===
    upload_part_size: int = Field(default=64 * MiB, gt=0)
    retry_max_attempts: int = Field(default=5, ge=1)
    retry_backoff_secs: float = Field(default=10.0, ge=0)

    # === State ===
    state_dir: Path = Path("~/.cache/oci-image-builder")

    # === Logging ===
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "text"] = "text"
    log_file: Path | None = None
    log_rotation: str = "10MB"
    log_retention: int = 5

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init kwargs, env vars, .env, TOML config file, secrets."""
        sources = [init_settings, env_settings, dotenv_settings]
        config_file = _config_file.get()
        if config_file is not None:
            sources.append(TomlConfigSettingsSource(settings_cls, toml_file=config_file))
        return (*sources, file_secret_settings)

    # --- Validators ---

    @model_validator(mode="after")
    def validate_config_consistency(self) -> Settings:
        """Validate cross-field consistency rules."""
        errors: list[str] = []

        seen: set[str] = set()
        for image in self.images:
            if image.name in seen:
                errors.append(f"duplicate image name: {image.name}")
            seen.add(image.name)

        if self.object_store == "s3" and not self.s3_endpoint_url:
            errors.append("object_store = 's3' requires s3_endpoint_url")

        if errors:
            raise ConfigurationError("; ".join(errors))

        if self.remote_builder is None and any(self.is_foreign(i) for i in self.images):
            logger.warning(
                "Foreign-architecture images defined but [remote_builder] not "
                "configured. Use --local-only for local builds."
            )
        return self

    def require_cloud(self) -> None:
        """Check the fields needed to talk to the object store and compute API."""
        missing = [
            f"oci.{name}"
            for name in ("compartment_ocid", "bucket_name", "region")
            if not getattr(self.oci, name)
        ]
        if missing:
            raise ConfigurationError(f"{', '.join(missing)} required")

    # --- Helpers ---

    def get_image(self, name: str) -> ImageDefinition | None:
        for image in self.images:
            if image.name == name:
                return image
        return None

    def image_names(self) -> list[str]:
        return [image.name for image in self.images]

    def is_foreign(self, image: ImageDefinition) -> bool:
        """True when the image targets an architecture other than this host's."""
        return image.arch != self.native_arch

    @property
    def state_path(self) -> Path:
        return self.state_dir.expanduser() / "state.json"


def find_config_file() -> Path | None:
    """Return the first existing config file from the default locations."""
    candidates = [
        Path(CONFIG_FILENAME),
        Path("scripts") / CONFIG_FILENAME,
        USER_CONFIG_PATH.expanduser(),
    ]
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


def load_settings(config_path: Path | str | None = None, **overrides: object) -> Settings:
    """Load settings from a TOML config file with optional overrides.

    Args:
        config_path: Explicit config file. Searched in default locations if None.
        **overrides: Field-level overrides (for testing or CLI flags). These
            win over IMAGEBUILDER_* env vars, which win over the file.

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If no config file is found, or it cannot be
            parsed or validated.
    """
    path = Path(config_path).expanduser() if config_path else find_config_file()
    if path is None:
        raise ConfigurationError(
            "config file not found. Run 'oci-image-builder init' to create one"
        )
    if not path.is_file():
        raise ConfigurationError(f"config file not found: {path}")

    try:
        tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"failed to parse config file {path}: {e}") from e

    token = _config_file.set(path)
    try:
        return Settings(**overrides)  # type: ignore[arg-type]
    except ValidationError as e:
        raise ConfigurationError(f"invalid config file {path}: {e}") from e
    finally:
        _config_file.reset(token)
