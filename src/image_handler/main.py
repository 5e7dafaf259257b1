"""Main module for the image handler CLI."""

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__
from .core.exceptions import ImageHandlerPipelineError
from .core.logging_config import setup_logger
from .core.models import EditSet, ImageFormat
from .core.pipeline import EditPipeline
from .handler import handler


def build_parser() -> argparse.ArgumentParser:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="image-handler",
        description="Image Handler - on-demand image transformation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Resize a local image and convert it to WebP
  image-handler transform photo.jpg thumb.webp \\
                --edits '{"resize": {"width": 100, "height": 100}}' --format webp

  # Run the Lambda handler on a saved event
  image-handler invoke event.json

  # Show version
  image-handler version
        """,
    )

    subparsers: argparse._SubParsersAction = parser.add_subparsers(
        dest="command", help="Available commands"
    )

    transform_parser: argparse.ArgumentParser = subparsers.add_parser(
        "transform", help="Apply edits to a local image file"
    )
    transform_parser.add_argument("input", help="Source image file")
    transform_parser.add_argument("output", help="Destination file")
    transform_parser.add_argument(
        "--edits", default=None, help="Edits as a JSON object"
    )
    transform_parser.add_argument(
        "--format",
        default=None,
        choices=[image_format.value for image_format in ImageFormat],
        help="Output format (default: keep the source format)",
    )

    invoke_parser: argparse.ArgumentParser = subparsers.add_parser(
        "invoke", help="Run the Lambda handler on an event document"
    )
    invoke_parser.add_argument("event", help="Path to a JSON event file")

    for sub in (transform_parser, invoke_parser):
        sub.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers.add_parser("version", help="Show version information")
    return parser


def run_transform(args: argparse.Namespace) -> int:
    logger = setup_logger("image-handler.cli", level="DEBUG" if args.debug else None)
    pipeline = EditPipeline()
    data = Path(args.input).read_bytes()
    edits = EditSet.parse(json.loads(args.edits)) if args.edits else None
    target = ImageFormat.parse(args.format)

    if edits is not None and not edits.is_empty:
        data = pipeline.apply(data, edits)
    if target is not None:
        data = pipeline.format(data, None, target)

    Path(args.output).write_bytes(data)
    logger.info(f"Wrote {len(data)} bytes to {args.output}")
    return 0


def run_invoke(args: argparse.Namespace) -> int:
    setup_logger("image-handler", level="DEBUG" if args.debug else None)
    event = json.loads(Path(args.event).read_text())
    result = handler(event)
    if result is not None:
        print(json.dumps(result, indent=2, default=str))
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    """
    Entry point for the command-line interface (CLI) of the Image Handler.

    ``transform`` runs the edit pipeline on local files, ``invoke`` runs the
    Lambda handler on an event document read from disk.
    """
    parser = build_parser()
    args: argparse.Namespace = parser.parse_args(argv)

    if args.command == "transform":
        try:
            sys.exit(run_transform(args))
        except (ImageHandlerPipelineError, OSError, json.JSONDecodeError) as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)

    elif args.command == "invoke":
        try:
            sys.exit(run_invoke(args))
        except (OSError, json.JSONDecodeError) as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)

    elif args.command == "version":
        print("Image Handler CLI")
        print(f"Version {__version__}")
        print("On-demand image transformation for S3")
        sys.exit(0)

    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
