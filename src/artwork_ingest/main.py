"""Main module for the artwork ingestion CLI."""

import argparse
import asyncio
import json
import mimetypes
import os
import sys
from typing import Any, Dict

from PIL import Image, ImageOps

from . import __version__
from .core.exceptions import IngestionPipelineError
from .core.factories import IngestionPipelineFactory, LoggerFactory, StorageFactory
from .core.image_utils import flatten_to_rgb, normalize_content_type
from .core.logging_config import quiet_library_loggers, setup_logger
from .core.models import IngestionConfig, Rejected
from .core.orchestrator import complete_with_retries
from .core.placeholder import encode_image

COMMANDS = ("request-upload", "ingest-file", "placeholder")


def _print_json(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _guess_content_type(path: str) -> str:
    content_type, _ = mimetypes.guess_type(path)
    return normalize_content_type(content_type or "application/octet-stream")


async def _request_upload(args: argparse.Namespace, config: IngestionConfig) -> int:
    async with StorageFactory.create_storage(config) as storage:
        orchestrator = IngestionPipelineFactory.create_pipeline(storage, config=config)
        try:
            target = await orchestrator.request_upload(
                args.owner_id, args.file_name, args.content_type, args.byte_size
            )
        finally:
            orchestrator.close()

    if isinstance(target, Rejected):
        _print_json({"rejected": target.to_payload()})
        return 1
    _print_json(target.model_dump(mode="json"))
    return 0


async def _ingest_file(args: argparse.Namespace, config: IngestionConfig) -> int:
    with open(args.path, "rb") as f:
        data = f.read()
    content_type = args.content_type or _guess_content_type(args.path)

    async with StorageFactory.create_storage(config) as storage:
        orchestrator = IngestionPipelineFactory.create_pipeline(storage, config=config)
        try:
            target = await orchestrator.request_upload(
                args.owner_id, os.path.basename(args.path), content_type, len(data)
            )
            if isinstance(target, Rejected):
                _print_json({"rejected": target.to_payload()})
                return 1

            # Stands in for the client's direct upload against the grant
            await storage.put(target.object_key, data, content_type)
            result = await complete_with_retries(orchestrator, target.object_key)
            await orchestrator.drain_cleanup()
        finally:
            orchestrator.close()

    payload = result.to_payload()
    payload["objectKey"] = result.object_key
    payload["success"] = result.success
    _print_json(payload)
    return 0 if result.success else 1


def _placeholder(args: argparse.Namespace, config: IngestionConfig) -> int:
    with Image.open(args.path) as img:
        img.load()
        oriented = ImageOps.exif_transpose(img)
    print(
        encode_image(
            flatten_to_rgb(oriented, config.background_color),
            grid=config.placeholder_grid,
            components_x=args.components_x,
            components_y=args.components_y,
        )
    )
    return 0


def main() -> None:
    """
    Entry point for the artwork ingestion command-line interface.

    Commands: ``request-upload`` issues a ticket and prints the upload
    target, ``ingest-file`` runs the whole two-phase flow for a local file
    against the configured bucket, ``placeholder`` prints the placeholder
    string for a local image and ``version`` prints version information.
    """
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="artwork-ingest",
        description="Artwork ingestion - validated uploads with thumbnails, previews and placeholders",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Ask for an upload ticket
  artwork-ingest request-upload --bucket my-bucket --owner-id artist_42 \\
                                --file-name sunset.jpg --content-type image/jpeg --byte-size 4000000

  # Ingest a local file end to end
  artwork-ingest ingest-file ./sunset.jpg --bucket my-bucket --owner-id artist_42

  # Print the placeholder string for an image
  artwork-ingest placeholder ./sunset.jpg

  # Show version
  artwork-ingest version
        """,
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers: argparse._SubParsersAction = parser.add_subparsers(
        dest="command", help="Available commands"
    )

    request_parser: argparse.ArgumentParser = subparsers.add_parser(
        "request-upload", help="Issue an upload ticket and print the upload target"
    )
    request_parser.add_argument("--bucket", default=None, help="S3 bucket (default: INGEST_BUCKET)")
    request_parser.add_argument("--owner-id", required=True, help="Uploading owner")
    request_parser.add_argument("--file-name", required=True, help="Declared file name")
    request_parser.add_argument("--content-type", required=True, help="Declared content type")
    request_parser.add_argument("--byte-size", type=int, required=True, help="Declared size in bytes")

    ingest_parser: argparse.ArgumentParser = subparsers.add_parser(
        "ingest-file", help="Upload a local image and run ingestion on it"
    )
    ingest_parser.add_argument("path", help="Local image file")
    ingest_parser.add_argument("--bucket", default=None, help="S3 bucket (default: INGEST_BUCKET)")
    ingest_parser.add_argument("--owner-id", required=True, help="Uploading owner")
    ingest_parser.add_argument(
        "--content-type", default=None, help="Declared content type (default: from file extension)"
    )

    placeholder_parser: argparse.ArgumentParser = subparsers.add_parser(
        "placeholder", help="Print the placeholder string for a local image"
    )
    placeholder_parser.add_argument("path", help="Local image file")
    placeholder_parser.add_argument("--components-x", type=int, default=4)
    placeholder_parser.add_argument("--components-y", type=int, default=3)

    subparsers.add_parser("version", help="Show version information")

    args: argparse.Namespace = parser.parse_args()

    if args.command == "version":
        print("Artwork Ingest CLI")
        print(f"Version {__version__}")
        print("Validated image uploads with derivative generation")
        sys.exit(0)

    elif args.command in COMMANDS:
        sys.exit(_run_command(args))

    else:
        parser.print_help()
        sys.exit(1)


def _run_command(args: argparse.Namespace) -> int:
    if args.debug:
        # Component loggers read LOG_LEVEL when they are created
        os.environ["LOG_LEVEL"] = "DEBUG"
        setup_logger("artwork-ingest", level="DEBUG")
    quiet_library_loggers()
    logger = LoggerFactory.create_logger("artwork-ingest.cli")

    try:
        overrides: Dict[str, Any] = {}
        if getattr(args, "bucket", None):
            overrides["bucket"] = args.bucket
        config = IngestionConfig.from_env(**overrides)

        if args.command == "request-upload":
            return asyncio.run(_request_upload(args, config))
        if args.command == "ingest-file":
            return asyncio.run(_ingest_file(args, config))
        return _placeholder(args, config)
    except (IngestionPipelineError, OSError) as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


if __name__ == "__main__":
    main()
