# src/main.py — v2
"""CLI entry point: build, upload, import and resume machine images.

Usage:
    oci-image-builder init
    oci-image-builder build [IMAGE...] [--local-only] [--build-only]
    oci-image-builder upload [IMAGE...]
    oci-image-builder import OBJECT...
    oci-image-builder all [IMAGE...] [--local-only]
    oci-image-builder resume
    oci-image-builder state [--clear]
    oci-image-builder stats
    oci-image-builder list [--prefix P]
    oci-image-builder status OCID...
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import sys
from pathlib import Path

from imagebuilder.config.settings import Settings, load_settings
from imagebuilder.core.errors import ConfigurationError, ImageBuilderError
from imagebuilder.logging.logger import setup_logging
from imagebuilder.state.statistics import format_duration
from imagebuilder.state.store import RunStateStore
from imagebuilder.version import __version__

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    setup_logging(
        level="DEBUG" if args.verbose else "INFO",
        log_file=args.log_file,
    )

    try:
        return asyncio.run(args.func(args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except ImageBuilderError as exc:
        logger.error("%s", exc, exc_info=args.verbose)
        return 1
    except Exception as exc:
        logger.error("Fatal error: %s", exc, exc_info=args.verbose)
        return 1


def _build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="oci-image-builder",
        description=f"oci-image-builder v{__version__}: build, upload and import machine images",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-c", "--config", type=Path, default=None,
        help="Config file (default: search standard locations)",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "-l", "--log-file", type=Path, default=None,
        help="Also write logs to this file",
    )

    subparsers = parser.add_subparsers(dest="command")

    # --- init ---
    p_init = subparsers.add_parser("init", help="Write a default config file")
    p_init.set_defaults(func=_cmd_init)

    # --- build ---
    p_build = subparsers.add_parser("build", help="Build images, then upload them")
    p_build.add_argument("images", nargs="*", help="Images to build (default: all)")
    p_build.add_argument(
        "--local-only", action="store_true",
        help="Build every image on this machine",
    )
    p_build.add_argument(
        "--build-only", action="store_true",
        help="Skip the upload after building",
    )
    p_build.set_defaults(func=_cmd_build)

    # --- upload ---
    p_upload = subparsers.add_parser("upload", help="Upload built images")
    p_upload.add_argument("images", nargs="*", help="Images to upload (default: all)")
    p_upload.set_defaults(func=_cmd_upload)

    # --- import ---
    p_import = subparsers.add_parser("import", help="Import uploaded objects as custom images")
    p_import.add_argument("objects", nargs="+", help="Object names in the bucket")
    p_import.set_defaults(func=_cmd_import)

    # --- all ---
    p_all = subparsers.add_parser("all", help="Run the full pipeline as a new run")
    p_all.add_argument("images", nargs="*", help="Images to process (default: all)")
    p_all.add_argument(
        "--local-only", action="store_true",
        help="Build every image on this machine",
    )
    p_all.set_defaults(func=_cmd_all)

    # --- resume ---
    p_resume = subparsers.add_parser("resume", help="Resume an interrupted pipeline from saved state")
    p_resume.set_defaults(func=_cmd_resume)

    # --- state ---
    p_state = subparsers.add_parser("state", help="Show current pipeline state")
    p_state.add_argument(
        "--clear", action="store_true",
        help="Delete the saved state",
    )
    p_state.set_defaults(func=_cmd_state)

    # --- stats ---
    p_stats = subparsers.add_parser("stats", help="Show statistics of the last run")
    p_stats.set_defaults(func=_cmd_stats)

    # --- list ---
    p_list = subparsers.add_parser("list", help="List custom images in the compartment")
    p_list.add_argument("--prefix", default="", help="Filter by display name prefix")
    p_list.set_defaults(func=_cmd_list)

    # --- status ---
    p_status = subparsers.add_parser("status", help="Show the lifecycle state of images")
    p_status.add_argument("ids", nargs="+", metavar="OCID", help="Image ids")
    p_status.set_defaults(func=_cmd_status)

    return parser


# --- Wiring ---


def _load(args: argparse.Namespace) -> Settings:
    settings = load_settings(args.config)
    if args.log_file is None and settings.log_file is not None:
        setup_logging(
            level="DEBUG" if args.verbose else settings.log_level,
            log_format=settings.log_format,
            log_file=settings.log_file,
            rotation=settings.log_rotation,
            retention=settings.log_retention,
        )
    return settings


def _load_for_state(args: argparse.Namespace) -> Settings:
    """Settings for read-only state commands; defaults when no config exists."""
    try:
        return _load(args)
    except ConfigurationError:
        if args.config is not None:
            raise
        return Settings()


def _prompt_passphrase(profile: str) -> str:
    return getpass.getpass(f"Enter passphrase for OCI API key (profile: {profile}): ")


def _sink(line: str) -> None:
    print(line, flush=True)


def _transfer(settings: Settings):
    from imagebuilder.transfer.client_factory import create_transfer_client

    return create_transfer_client(settings, sink=_sink, prompt=_prompt_passphrase)


def _orchestrator(settings: Settings, local_only: bool = False):
    from imagebuilder.build.backend import BuildBackend
    from imagebuilder.pipeline.orchestrator import PipelineOrchestrator

    return PipelineOrchestrator(
        settings,
        RunStateStore(settings.state_path),
        BuildBackend(settings, sink=_sink, local_only=local_only),
        lambda: _transfer(settings),
    )


# --- Commands ---


async def _cmd_init(args: argparse.Namespace) -> int:
    from imagebuilder.config.template import init_config_file

    path = init_config_file(args.config)
    print(f"Created config file: {path}")
    print("Edit it to set oci.compartment_ocid, oci.bucket_name and oci.region.")
    return 0


async def _cmd_build(args: argparse.Namespace) -> int:
    settings = _load(args)
    produced = await _orchestrator(settings, args.local_only).build(
        args.images, upload=not args.build_only
    )
    if args.build_only:
        print("\nBuilt images:")
    else:
        print("\nUploaded objects:")
    for name, value in produced.items():
        print(f"  {name}: {value}")
    return 0


async def _cmd_upload(args: argparse.Namespace) -> int:
    settings = _load(args)
    settings.require_cloud()
    objects = await _orchestrator(settings).upload(args.images)
    print("\nUploaded objects:")
    for object_name in objects.values():
        print(f"  {object_name}")
    return 0


async def _cmd_import(args: argparse.Namespace) -> int:
    settings = _load(args)
    settings.require_cloud()
    image_ids = await _orchestrator(settings).import_objects(args.objects)
    _print_outputs(settings, image_ids)
    return 0


async def _cmd_all(args: argparse.Namespace) -> int:
    settings = _load(args)
    settings.require_cloud()
    store = RunStateStore(settings.state_path)
    image_ids = await _orchestrator(settings, args.local_only).run_all(args.images)
    _finish(settings, store, image_ids)
    return 0


async def _cmd_resume(args: argparse.Namespace) -> int:
    settings = _load(args)
    image_ids = await _orchestrator(settings).resume()
    if image_ids is None:
        print("Previous run completed successfully. Nothing to resume.")
        print("Run 'state' to see details or start a new run with 'all'.")
        return 0
    _finish(settings, RunStateStore(settings.state_path), image_ids)
    return 0


async def _cmd_state(args: argparse.Namespace) -> int:
    settings = _load_for_state(args)
    store = RunStateStore(settings.state_path)

    if args.clear:
        store.clear()
        print(f"State cleared: {store.state_path}")
        return 0

    run = store.load()
    if run is None:
        print("No saved state found.")
        return 0

    print(f"Run ID:    {run.run_id}")
    print(f"Started:   {run.started_at:%Y-%m-%d %H:%M:%S}")
    print(f"Updated:   {run.updated_at:%Y-%m-%d %H:%M:%S}")
    print(f"Stage:     {run.stage}")
    print(f"Complete:  {run.complete}")
    print("\nImages:")
    for image in run.images:
        print(f"  {image.name}:")
        print(f"    Stage:      {image.stage}")
        if image.local_path:
            print(f"    LocalPath:  {image.local_path}")
        if image.object_name:
            print(f"    ObjectName: {image.object_name}")
        if image.image_id:
            print(f"    ImageID:    {image.image_id}")
        if image.error:
            print(f"    Error:      {image.error}")
    print(f"\nState file: {store.state_path}")
    return 0


async def _cmd_stats(args: argparse.Namespace) -> int:
    settings = _load_for_state(args)
    store = RunStateStore(settings.state_path)
    if store.load() is None:
        print("No saved state found. Run a build first.")
        return 0
    _print_statistics(store)
    print(f"\nState file: {store.state_path}")
    return 0


async def _cmd_list(args: argparse.Namespace) -> int:
    settings = _load(args)
    images = await _transfer(settings).list_images(args.prefix)
    if not images:
        print("No images found.")
        return 0
    print(f"{'NAME':<40} {'STATE':<12} {'CREATED':<20} ID")
    for image in images:
        created = f"{image.time_created:%Y-%m-%d %H:%M:%S}" if image.time_created else "-"
        print(f"{image.display_name:<40} {image.lifecycle_state:<12} {created:<20} {image.id}")
    return 0


async def _cmd_status(args: argparse.Namespace) -> int:
    settings = _load(args)
    client = _transfer(settings)
    failed = False
    for image_id in args.ids:
        try:
            print(f"{image_id}: {await client.get_image_status(image_id)}")
        except Exception as exc:
            failed = True
            print(f"{image_id}: error - {exc}")
    return 1 if failed else 0


# --- Output ---


def _finish(settings: Settings, store: RunStateStore, image_ids: dict[str, str]) -> None:
    print("\n=== Pipeline Complete ===")
    store.load()
    _print_statistics(store)
    _print_outputs(settings, image_ids)


def _print_statistics(store: RunStateStore) -> None:
    stats = store.compute_statistics()
    if stats is None:
        print("No statistics available.")
        return

    print(f"\n=== Pipeline Statistics (Run: {stats.run_id}) ===\n")
    print(f"Total Duration:     {format_duration(stats.total_seconds)}\n")
    print("Stage Durations:")
    print(f"  Build:            {format_duration(stats.build_seconds)}")
    print(f"  Upload:           {format_duration(stats.upload_seconds)}")
    print(f"  Import:           {format_duration(stats.import_seconds)}\n")

    if stats.total_bytes_uploaded > 0:
        print("Upload Statistics:")
        print(f"  Total Uploaded:   {stats.total_bytes_uploaded / (1024 ** 3):.2f} GB")
        print(f"  Throughput:       {stats.upload_throughput_mbps:.2f} MB/s\n")

    if stats.images:
        print("Per-Image Breakdown:")
        print(f"  {'Image':<12} {'Build':>10} {'Upload':>10} {'Import':>10} {'Total':>10} {'MB/s':>10}")
        print("  " + "-" * 64)
        for image in stats.images:
            throughput = f"{image.upload_throughput_mbps:.2f}" if image.upload_throughput_mbps > 0 else "-"
            print(
                f"  {image.name:<12} {format_duration(image.build_seconds):>10} "
                f"{format_duration(image.upload_seconds):>10} "
                f"{format_duration(image.import_seconds):>10} "
                f"{format_duration(image.total_seconds):>10} {throughput:>10}"
            )


def _print_outputs(settings: Settings, image_ids: dict[str, str]) -> None:
    """One `<variable> = "<id>"` line per image, ready to paste downstream."""
    print("\n=== Image ids ===")
    for name, image_id in image_ids.items():
        image = settings.get_image(name)
        variable = image.variable_name() if image else f"{name}_image_ocid"
        print(f'{variable} = "{image_id}"')


if __name__ == "__main__":
    sys.exit(main())
