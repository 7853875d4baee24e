"""CLI command for reconciling generation jobs left mid-flight.

Usage:
    python -m pawmotion.cli.recover_jobs [OPTIONS]

Examples:
    # Resume polling, fail interrupted uploads, finish missed refunds
    python -m pawmotion.cli.recover_jobs

    # Dry run (no database writes)
    python -m pawmotion.cli.recover_jobs --dry-run

    # Treat every upload as interrupted regardless of age
    python -m pawmotion.cli.recover_jobs --stale-after 0
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog

from pawmotion.core.config import Settings, configure_logging
from pawmotion.core.database import setup_db_session
from pawmotion.services.notifier import JobNotifier
from pawmotion.services.video_generation.polling import PollPolicy
from pawmotion.services.video_generation.reconciler import StateReconciler
from pawmotion.uow import create_uow_factory

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Reconcile generation jobs interrupted by a crash or restart",
        epilog="Safe to run repeatedly: refunds are issued at most once per job",
    )

    parser.add_argument(
        "--stale-after",
        type=float,
        default=None,
        help="Seconds without progress before an upload counts as interrupted "
        "(default: UPLOAD_STALE_SECONDS)",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report affected jobs without database writes",
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

    stale_after = (
        args.stale_after if args.stale_after is not None else settings.upload_stale_seconds
    )
    logger.info("cli.started", dry_run=args.dry_run, stale_after=stale_after)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    reconciler = StateReconciler(
        create_uow_factory(session_factory),
        JobNotifier(),
        poll_policy=PollPolicy.from_settings(settings),
        credit_cost=settings.generation_credit_cost,
    )

    try:
        report = await reconciler.recover(
            uploading_stale_seconds=stale_after, dry_run=args.dry_run
        )

        print("\n" + "=" * 60)
        print("Job Recovery Summary")
        print("=" * 60)
        print(f"Polling resumed: {len(report.resumed)}")
        print(f"Interrupted uploads failed and refunded: {len(report.interrupted)}")
        print(f"Missed refunds issued: {len(report.refunded)}")
        print(f"Recent uploads left alone: {len(report.skipped)}")

        if args.dry_run:
            print("\n[DRY RUN] No changes were persisted to database")

        print("=" * 60 + "\n")
        return 0

    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nRecovery interrupted by user", file=sys.stderr)
        return 130  # Standard exit code for SIGINT

    except Exception as e:
        logger.error(
            "cli.unexpected_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1

    finally:
        await session_factory.kw["bind"].dispose()


def main(argv: list[str] | None = None) -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main(argv)))


if __name__ == "__main__":
    main()
