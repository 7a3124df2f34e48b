# src/transfer/client_factory.py — v1
"""Factory: build a TransferClient from settings.

Loads the OCI SDK profile, creates the Object Storage and Compute clients
with SDK-internal retries disabled, and wires the configured object store.
Requires the 'oci' package: pip install oci.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from imagebuilder.config.settings import Settings
from imagebuilder.core.errors import ConfigurationError
from imagebuilder.core.models import LogSink
from imagebuilder.transfer.client import TransferClient
from imagebuilder.transfer.image_registry import OCIImageRegistry
from imagebuilder.transfer.retry import RetryPolicy, Sleep
from imagebuilder.transfer.store_factory import create_object_store

logger = logging.getLogger(__name__)

# (connect, read) seconds; a 64 MiB part can take minutes on a slow link.
OBJECT_STORAGE_TIMEOUT = (10.0, 600.0)

# Called with the profile name; returns the API key passphrase.
PassphrasePrompt = Callable[[str], str]


def _import_oci() -> Any:
    try:
        import oci
    except ImportError as e:
        raise ImportError("oci package required for transfers: pip install oci") from e
    return oci


def load_oci_config(settings: Settings, passphrase: str = "") -> dict:
    """Read and validate the SDK profile named in [oci].

    Raises:
        ConfigurationError: Missing or invalid SDK config file.
    """
    oci = _import_oci()
    path = settings.oci.config_file.expanduser()
    if not path.is_file():
        raise ConfigurationError(
            f"OCI config not found at {path}. Run 'oci setup config' to configure"
        )
    try:
        config = oci.config.from_file(str(path), settings.oci.profile)
    except (oci.exceptions.ConfigFileNotFound, oci.exceptions.ProfileNotFound,
            oci.exceptions.InvalidConfig) as e:
        raise ConfigurationError(f"invalid OCI config {path}: {e}") from e
    if settings.oci.region:
        config["region"] = settings.oci.region
    if passphrase:
        config["pass_phrase"] = passphrase
    return config


def create_sdk_clients(
    settings: Settings,
    prompt: PassphrasePrompt | None = None,
) -> tuple[Any, Any]:
    """Create the Object Storage and Compute clients.

    When the API key is encrypted and no passphrase is configured, prompt
    is asked for one and client creation is retried once.

    Returns:
        (ObjectStorageClient, ComputeClient)
    """
    oci = _import_oci()

    def build(passphrase: str) -> tuple[Any, Any]:
        config = load_oci_config(settings, passphrase)
        no_retry = oci.retry.NoneRetryStrategy()
        object_storage = oci.object_storage.ObjectStorageClient(
            config, retry_strategy=no_retry, timeout=OBJECT_STORAGE_TIMEOUT
        )
        compute = oci.core.ComputeClient(config, retry_strategy=no_retry)
        return object_storage, compute

    try:
        return build(settings.oci.key_passphrase)
    except oci.exceptions.MissingPrivateKeyPassphrase as e:
        if prompt is None:
            raise ConfigurationError(
                "OCI API key is encrypted; set oci.key_passphrase or run interactively"
            ) from e
        logger.info("OCI API key for profile %s is encrypted", settings.oci.profile)
        passphrase = prompt(settings.oci.profile)

    try:
        return build(passphrase)
    except oci.exceptions.InvalidPrivateKey as e:
        raise ConfigurationError(f"failed to decrypt OCI API key: {e}") from e


def create_transfer_client(
    settings: Settings,
    sink: LogSink | None = None,
    prompt: PassphrasePrompt | None = None,
    sleep: Sleep = asyncio.sleep,
) -> TransferClient:
    """Instantiate a TransferClient for the configured cloud account.

    Raises:
        ConfigurationError: Missing cloud settings or SDK profile.
    """
    settings.require_cloud()
    object_storage, compute = create_sdk_clients(settings, prompt)
    store = create_object_store(settings, object_storage, sleep=sleep)
    registry = OCIImageRegistry(
        compute, object_storage, settings.oci,
        retry=RetryPolicy.from_settings(settings), sleep=sleep,
    )
    logger.debug("Transfer client ready (object store: %s)", store.backend)
    return TransferClient(settings, store, registry, sink=sink, sleep=sleep)
