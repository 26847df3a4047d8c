"""Command line entry point.

Usage:
    python -m ftp_ingest run ./jobs/orders.yaml
    python -m ftp_ingest run ./jobs/orders.yaml --dry-run
    python -m ftp_ingest state show orders
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import List, Optional

from ftp_ingest.config_loader import IngestJob, load_job
from ftp_ingest.env import load_env_file
from ftp_ingest.errors import ConfigurationError, IngestError
from ftp_ingest.logging import setup_logging
from ftp_ingest.plugin import resume, run, transaction
from ftp_ingest.sink import write_stream
from ftp_ingest.state import (
    clear_all_watermarks,
    delete_watermark,
    get_watermark,
    list_watermarks,
    save_watermark,
)

logger = logging.getLogger(__name__)

__all__ = ["main"]


def _seed_watermark(job: IngestJob) -> IngestJob:
    """Start from the persisted watermark once one exists.

    A ``last_path`` in the job file only seeds the first run; after that
    the stored watermark moves past it.
    """
    source = job.source
    if not source.incremental:
        return job
    persisted = get_watermark(job.name)
    if persisted is None:
        return job
    if source.last_path is not None and persisted != source.last_path:
        logger.info(
            "Persisted last_path %s for %s supersedes the configured %s",
            persisted,
            job.name,
            source.last_path,
        )
    logger.info("Resuming %s after persisted last_path %s", job.name, persisted)
    return IngestJob(
        name=job.name,
        source=source.with_last_path(persisted),
        target=job.target,
        parallelism=job.parallelism,
    )


def run_command(args: argparse.Namespace) -> int:
    job = _seed_watermark(load_job(args.job))
    logger.info("Job %s source: %s", job.name, job.source.to_dict())

    if args.dry_run:
        plan = transaction(job.source)
        print(f"Job: {job.name}")
        print(f"Files ({plan.task_count}):")
        for path in plan.files:
            print(f"  {path}")
        print(f"Config diff: {json.dumps(resume(plan))}")
        return 0

    target = args.target or job.target
    if not target:
        raise ConfigurationError(
            f"Job {job.name} has no target",
            field="target",
            suggestion="Set 'target' in the job file or pass --target",
        )

    result = run(
        job.source,
        lambda source: write_stream(source, target),
        parallelism=args.parallelism or job.parallelism,
    )

    if result.last_path is not None:
        save_watermark(job.name, result.last_path)

    total = sum(output.bytes_written for output in result.outputs)
    print(f"Ingested {len(result.files)} file(s), {total:,} bytes, into {target}")
    if result.config_diff:
        print(f"Config diff: {json.dumps(result.config_diff)}")
    return 0


def state_command(args: argparse.Namespace) -> int:
    if args.action == "show":
        if args.name:
            value = get_watermark(args.name)
            print(f"{args.name}: {value if value is not None else '(none)'}")
        else:
            watermarks = list_watermarks()
            if not watermarks:
                print("No watermarks stored")
            for name, data in watermarks.items():
                print(f"{name}: {data.get('last_path')} (updated {data.get('updated_at')})")
        return 0

    if args.all:
        if args.name:
            print("state clear takes a job name or --all, not both", file=sys.stderr)
            return 2
        print(f"Cleared {clear_all_watermarks()} watermark(s)")
        return 0
    if not args.name:
        print("state clear requires a job name or --all", file=sys.stderr)
        return 2
    if delete_watermark(args.name):
        print(f"Cleared watermark for {args.name}")
    else:
        print(f"No watermark stored for {args.name}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ftp-ingest",
        description="Incrementally ingest files from an FTP/FTPS server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Ingest new files into the job's target
    ftp-ingest run ./jobs/orders.yaml

    # Show what would be ingested and the next last_path
    ftp-ingest run ./jobs/orders.yaml --dry-run

    # Local development (override target)
    ftp-ingest run ./jobs/orders.yaml --target ./local_output/

    # Inspect or reset the stored watermark
    ftp-ingest state show orders
    ftp-ingest state clear orders
    ftp-ingest state clear --all
        """,
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (includes the FTP control channel)",
    )
    parser.add_argument(
        "--json-log",
        action="store_true",
        help="Output logs in JSON format (for log aggregation systems)",
    )
    parser.add_argument(
        "--log-file",
        help="Write logs to a file in addition to console",
    )
    parser.add_argument(
        "--env-file",
        help="Load environment variables from this .env file first",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run an ingestion job")
    run_parser.add_argument("job", help="Path to the job YAML file")
    run_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List the files that would be ingested without transferring them",
    )
    run_parser.add_argument(
        "--target",
        help="Override the job's target path or URL",
    )
    run_parser.add_argument(
        "--parallelism",
        type=int,
        help="Maximum number of files transferred at once",
    )
    run_parser.set_defaults(handler=run_command)

    state_parser = subparsers.add_parser("state", help="Inspect or clear stored watermarks")
    state_parser.add_argument("action", choices=["show", "clear"])
    state_parser.add_argument("name", nargs="?", help="Job name")
    state_parser.add_argument(
        "--all",
        action="store_true",
        help="With clear: remove every stored watermark",
    )
    state_parser.set_defaults(handler=state_command)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    args = build_parser().parse_args(argv)
    setup_logging(verbose=args.verbose, json_format=args.json_log, log_file=args.log_file)

    try:
        load_env_file(args.env_file)
        return args.handler(args)
    except IngestError as e:
        logger.error("%s failed: %s", args.command, e.message, extra={"error": e.to_dict()})
        print(f"ERROR: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
