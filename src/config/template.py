# src/config/template.py — v1
"""Default config file written by `oci-image-builder init`."""

from __future__ import annotations

from pathlib import Path

from imagebuilder.config.settings import USER_CONFIG_PATH
from imagebuilder.core.errors import ConfigurationError

DEFAULT_CONFIG_TEMPLATE = """\
# OCI Image Builder configuration

# Upload through the S3 compatibility endpoint instead of the native API
# object_store = "s3"
# s3_endpoint_url = "https://<namespace>.compat.objectstorage.us-ashburn-1.oraclecloud.com"

[oci]
# Required: compartment that will own the registered images
compartment_ocid = "ocid1.compartment.oc1..example"

# Object Storage bucket for image uploads
bucket_name = "nixos-images"

# OCI region (e.g. us-ashburn-1, us-phoenix-1)
region = "us-ashburn-1"

# Optional: profile name from ~/.oci/config
# profile = "DEFAULT"

# Import status polling
poll_interval_secs = 30
max_wait_secs = 1800
initial_delay_secs = 30

# Remote builder for aarch64 images (required unless using --local-only)
# [remote_builder]
# host = "192.168.1.100"
# user = "builder"
# ssh_key = "~/.ssh/id_ed25519"
# repo_path = "~/headscale-deployment"
# is_macos = false

[[images]]
name = "headscale"
build_target = "oci-headscale-image"
arch = "x86_64"
output_var = "headscale_image_ocid"

[[images]]
name = "keycloak"
build_target = "oci-keycloak-image"
arch = "aarch64"
output_var = "keycloak_image_ocid"

[[images]]
name = "derp"
build_target = "oci-derp-east-image"
arch = "aarch64"
output_var = "derp_image_ocid"
"""


def init_config_file(path: Path | None = None) -> Path:
    """Write the default config template, never overwriting an existing file.

    Raises:
        ConfigurationError: If the file already exists.
    """
    target = (path or USER_CONFIG_PATH).expanduser()
    if target.exists():
        raise ConfigurationError(f"config file already exists at {target}")
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(DEFAULT_CONFIG_TEMPLATE, encoding="utf-8")
    return target
