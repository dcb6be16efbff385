"""Minimal CLI entry point for running the mbox ingestor by hand."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from mbox_ingestor.config.settings import MboxIngestorSettings
from mbox_ingestor.core.models import IngestProgress
from mbox_ingestor.pipeline.ingestor import ArchiveIngestor


def setup_logging(level: str) -> None:
    """Configure logging with timestamp and module info."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def on_progress(progress: IngestProgress) -> None:
    """Print progress updates to stdout."""
    print(
        f"[{progress.current_stage}] "
        f"chunks={progress.chunks_completed}/{progress.chunks_total} "
        f"failed={progress.chunks_failed} "
        f"messages={progress.messages_processed} "
        f"skipped={progress.messages_skipped} "
        f"errored={progress.messages_errored}",
        end="\r",
        flush=True,
    )


def _add_worker_args(subparser: argparse.ArgumentParser) -> None:
    """Add --workers and --order-by flags to a subparser."""
    subparser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Number of parallel workers (default: from settings)",
    )
    subparser.add_argument(
        "--order-by",
        choices=("date", "size"),
        default=None,
        dest="order_by",
        help="Chunk selection order (default: from settings)",
    )


def _add_split_args(subparser: argparse.ArgumentParser) -> None:
    """Add archive path, --chunk-size-mb and --output-dir to a subparser."""
    subparser.add_argument("archive", type=Path, help="Path to the mbox archive")
    subparser.add_argument(
        "--chunk-size-mb",
        type=float,
        default=None,
        dest="chunk_size_mb",
        help="Target chunk size in MB; 0 means a single chunk",
    )
    subparser.add_argument(
        "--output-dir",
        type=Path,
        default=None,
        dest="output_dir",
        help="Directory for chunk files and the manifest",
    )


def _validate_args(args: argparse.Namespace) -> None:
    """Reject invalid numeric values."""
    if getattr(args, "workers", None) is not None and args.workers <= 0:
        print("Error: --workers must be positive", file=sys.stderr)
        sys.exit(1)
    if getattr(args, "chunk_size_mb", None) is not None and args.chunk_size_mb < 0:
        print("Error: --chunk-size-mb must be non-negative", file=sys.stderr)
        sys.exit(1)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Mbox Ingestor - Split mbox archives and rebuild conversation threads"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    split_parser = subparsers.add_parser("split", help="Split an archive and register chunks")
    _add_split_args(split_parser)

    validate_parser = subparsers.add_parser(
        "validate", help="Check that registered chunks reproduce the archive"
    )
    validate_parser.add_argument("archive", type=Path, help="Path to the mbox archive")

    process_parser = subparsers.add_parser("process", help="Process pending chunks")
    _add_worker_args(process_parser)

    run_parser = subparsers.add_parser("run", help="Split, process and build threads")
    _add_split_args(run_parser)
    _add_worker_args(run_parser)

    subparsers.add_parser("status", help="Show chunk counts by status")
    subparsers.add_parser("retry", help="Reset failed chunks to pending")

    reset_parser = subparsers.add_parser("reset", help="Reset one chunk to pending")
    reset_parser.add_argument("chunk_id", help="Chunk ID")

    log_parser = subparsers.add_parser("log", help="Show the processing log of a chunk")
    log_parser.add_argument("chunk_id", help="Chunk ID")

    clear_parser = subparsers.add_parser("clear", help="Delete all chunk state")
    clear_parser.add_argument("--yes", action="store_true", help="Confirm the wipe")

    return parser


def _settings_for(args: argparse.Namespace) -> MboxIngestorSettings:
    overrides: dict[str, object] = {}
    if getattr(args, "chunk_size_mb", None) is not None:
        overrides["chunk_size_mb"] = args.chunk_size_mb
    if getattr(args, "output_dir", None) is not None:
        overrides["chunk_output_dir"] = args.output_dir
    return MboxIngestorSettings(**overrides)


def main() -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    _validate_args(args)
    if args.command == "clear" and not args.yes:
        print("Error: clear deletes all chunk state; pass --yes to confirm", file=sys.stderr)
        sys.exit(1)

    settings = _settings_for(args)
    setup_logging(settings.log_level)

    ingestor = ArchiveIngestor(settings=settings, on_progress=on_progress)

    try:
        if args.command == "split":
            manifest = ingestor.run_split(args.archive)
            print(
                f"\n\nSplit into {len(manifest.chunks)} chunks "
                f"({manifest.total_messages} messages)"
            )

        elif args.command == "validate":
            valid = ingestor.validate(args.archive)
            print(f"\nSplit is {'valid' if valid else 'INVALID'}")
            if not valid:
                sys.exit(1)

        elif args.command == "process":
            summaries = ingestor.process_pending(max_workers=args.workers, order_by=args.order_by)
            print(f"\n\nProcessed {len(summaries)} chunks")
            for summary in summaries:
                print(
                    f"  {summary.chunk_id:40s} {summary.status:10s} "
                    f"processed={summary.messages_processed} "
                    f"skipped={summary.messages_skipped} "
                    f"errored={summary.messages_errored}"
                )
            print(f"Built {len(ingestor.build_threads())} threads")

        elif args.command == "run":
            threads = ingestor.run(args.archive, max_workers=args.workers, order_by=args.order_by)
            print(f"\n\nComplete: {ingestor.progress}")
            print(f"Built {len(threads)} threads")

        elif args.command == "status":
            counts = ingestor.get_status()
            print("\nChunk counts by status:")
            for status, count in sorted(counts.items()):
                print(f"  {status}: {count}")

        elif args.command == "retry":
            count = ingestor.retry_failed()
            print(f"\nReset {count} failed chunks to pending")

        elif args.command == "reset":
            if ingestor.reset_chunk(args.chunk_id):
                print(f"\nReset {args.chunk_id} to pending")
            else:
                print(f"\n{args.chunk_id} is unknown or not completed/failed", file=sys.stderr)
                sys.exit(1)

        elif args.command == "log":
            for entry in ingestor.get_log(args.chunk_id):
                error = f" error={entry.error}" if entry.error else ""
                print(f"  {entry.timestamp.isoformat()} {entry.status:10s} offset={entry.offset}{error}")

        elif args.command == "clear":
            ingestor.clear_all()
            print("\nCleared all chunk state")

    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        ingestor.close()


if __name__ == "__main__":
    main()
