"""Main module for the photo-ingest CLI."""

import sys
import argparse
from typing import Callable, Dict, List, Optional

import uvicorn

from . import __version__
from .api import create_app
from .core.exceptions import PhotoIngestError
from .core.factories import IngestionPipeline, IngestionPipelineFactory
from .core.logging_config import setup_logger
from .core.models import IngestConfig, MetadataDraft, ProgressEvent, UploadMode
from .pipeline.coordinator import UploadFile

logger = setup_logger("photo-ingest.cli")


def build_parser() -> argparse.ArgumentParser:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="photo-ingest",
        description="Photo ingestion pipeline - presigned uploads, finalize and derivative processing",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the HTTP API with the processing pool and the session sweep
  photo-ingest serve --host 0.0.0.0 --port 8000

  # Sweep every 5 minutes and delete raw objects of abandoned uploads
  photo-ingest serve --sweep-interval 300 --delete-orphans

  # Upload local photos for an owner and process them right away
  photo-ingest upload a.jpg b.png --owner alice --category travel

  # Show version
  photo-ingest version
        """,
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers: argparse._SubParsersAction = parser.add_subparsers(
        dest="command", help="Available commands"
    )

    serve_parser = subparsers.add_parser(
        "serve", help="Run the HTTP API with the processing pool and the session sweep"
    )
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    serve_parser.add_argument("--port", type=int, default=8000, help="Bind port")
    serve_parser.add_argument(
        "--sweep-interval",
        type=float,
        default=None,
        help="Seconds between upload session sweeps, 0 disables (default: from config, 60)",
    )
    serve_parser.add_argument(
        "--delete-orphans",
        action="store_true",
        help="Delete raw objects of sessions that expire without being finalized",
    )

    upload_parser = subparsers.add_parser("upload", help="Upload local image files")
    upload_parser.add_argument("files", nargs="+", help="Image files to upload")
    upload_parser.add_argument("--owner", required=True, help="Owner id the images belong to")
    upload_parser.add_argument("--category", required=True, help="Category of every uploaded image")
    upload_parser.add_argument("--title", default=None, help="Title (defaults to the file name)")
    upload_parser.add_argument("--tags", default="", help="Comma separated tags")
    upload_parser.add_argument(
        "--legacy", action="store_true", help="Use the single-phase upload instead of presigned transfer"
    )
    upload_parser.add_argument(
        "--finalize-retries", type=int, default=0, help="Retries for a finalize that timed out"
    )

    subparsers.add_parser("version", help="Show version information")
    return parser


def _title_for(path: str, title: Optional[str]) -> str:
    if title:
        return title
    name = path.rsplit("/", 1)[-1]
    return name.rsplit(".", 1)[0] or name


def run_upload(pipeline: IngestionPipeline, args: argparse.Namespace) -> int:
    mode = UploadMode.LEGACY if args.legacy else UploadMode.TWO_PHASE
    coordinator = pipeline.coordinator_for(args.owner, mode=mode, finalize_retries=args.finalize_retries)

    def report(event: ProgressEvent) -> None:
        logger.debug(f"{event.upload_id or '-'} {event.phase.value} {event.percent}%")

    items = []
    for path in args.files:
        try:
            file = UploadFile.from_path(path)
        except OSError as e:
            logger.error(f"Cannot read {path}: {e}")
            return 1
        draft = MetadataDraft(title=_title_for(path, args.title), category=args.category, tags=args.tags)
        items.append((file, draft))

    try:
        outcome = coordinator.upload_batch(items, on_progress=report)
    finally:
        coordinator.close()

    processed = pipeline.drain(wait_for_delayed=True)
    for (file, _), result in zip(items, outcome.results):
        if result.success:
            record = pipeline.repository.get(result.image_id) if result.image_id else None
            status = record.processing_status.value if record else "unknown"
            print(f"{file.file_name}: {result.image_id} ({status})")
        else:
            print(f"{file.file_name}: FAILED [{result.error_type}] {result.error}")
    print(
        f"Uploaded {outcome.success_count}/{len(outcome.results)}, "
        f"processed {processed} job(s), notified={outcome.notified}"
    )
    return 0 if outcome.failed_count == 0 else 1


def run_serve(pipeline: IngestionPipeline, args: argparse.Namespace) -> int:
    interval = pipeline.config.sweep_interval_seconds if args.sweep_interval is None else args.sweep_interval
    app = create_app(
        pipeline,
        start_workers=True,
        sweep_interval=interval if interval > 0 else None,
        delete_orphans=args.delete_orphans or pipeline.config.sweep_delete_orphans,
    )
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


COMMANDS: Dict[str, Callable[[IngestionPipeline, argparse.Namespace], int]] = {
    "serve": run_serve,
    "upload": run_upload,
}


def main(argv: Optional[List[str]] = None) -> None:
    """
    Entry point for the photo-ingest command-line interface.

    Every command except `version` builds the pipeline from PHOTO_INGEST_*
    environment variables before running.
    """
    parser = build_parser()
    args: argparse.Namespace = parser.parse_args(argv)

    if args.command == "version":
        print("Photo Ingest CLI")
        print(f"Version {__version__}")
        print("Presigned uploads, finalize and asynchronous derivative processing")
        sys.exit(0)

    elif args.command in COMMANDS:
        if args.debug:
            setup_logger("photo-ingest", "DEBUG")
        try:
            pipeline = IngestionPipelineFactory.create_pipeline(IngestConfig.from_env())
            code = COMMANDS[args.command](pipeline, args)
        except PhotoIngestError as e:
            logger.error(f"{args.command} failed: {e}")
            code = 2
        sys.exit(code)

    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
