"""CLI command for re-enqueueing stalled batch jobs.

A job stalls when it is pending or processing, has items left to hand out,
but has nothing queued or executing (enqueueing its next item failed).

Usage:
    python -m pixelstream.cli.recover_stalled [OPTIONS]

Examples:
    # Requeue all stalled jobs (up to 100)
    python -m pixelstream.cli.recover_stalled

    # List stalled jobs without changing anything
    python -m pixelstream.cli.recover_stalled --dry-run

    # Verbose logging
    python -m pixelstream.cli.recover_stalled -v
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog

from pixelstream.core import timezone  # noqa: F401
from pixelstream.core.config import Settings, configure_logging
from pixelstream.core.database import setup_db_session
from pixelstream.services.batch.job_store import BatchJobStore
from pixelstream.uow import create_uow_factory

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Re-enqueue batch jobs that have work left but nothing in flight",
    )

    parser.add_argument(
        "--limit",
        type=int,
        default=100,
        help="Maximum number of jobs to requeue (default: 100)",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List stalled jobs without database writes",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    return parser.parse_args(argv)


async def async_main(argv: list[str] | None = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    logger.info("cli.started", limit=args.limit, dry_run=args.dry_run)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    store = BatchJobStore(create_uow_factory(session_factory), settings.batch_item_interval_seconds)

    try:
        job_ids = await store.requeue_stalled(limit=args.limit, dry_run=args.dry_run)
    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nRecovery interrupted by user", file=sys.stderr)
        return 130
    except Exception as e:
        logger.error("cli.unexpected_error", error=str(e), error_type=type(e).__name__)
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1

    print("\n" + "=" * 60)
    print("Stalled Batch Job Recovery")
    print("=" * 60)
    print(f"Jobs {'found' if args.dry_run else 'requeued'}: {len(job_ids)}")
    for job_id in job_ids[:10]:
        print(f"  - {job_id}")
    if len(job_ids) > 10:
        print(f"  ... and {len(job_ids) - 10} more")
    if args.dry_run:
        print("\n[DRY RUN] No changes were persisted to database")
    print("=" * 60 + "\n")

    logger.info("cli.completed", job_count=len(job_ids), dry_run=args.dry_run)
    return 0


def main() -> int:
    """Synchronous entry point for CLI."""
    return asyncio.run(async_main())


if __name__ == "__main__":
    sys.exit(main())
