"""CLI command for creating redeem codes.

Usage:
    python -m pawmotion.cli.redeem_codes --code CODE --credits N --max-uses N [OPTIONS]

Examples:
    # 100 people can each claim 3 credits
    python -m pawmotion.cli.redeem_codes --code WELCOME3 --credits 3 --max-uses 100

    # Code valid until the end of the year
    python -m pawmotion.cli.redeem_codes --code NEWYEAR --credits 1 --max-uses 500 \\
        --expires-at 2026-12-31T23:59:59
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace
from datetime import datetime

import structlog
from sqlalchemy.exc import IntegrityError

from pawmotion.core.config import Settings, configure_logging
from pawmotion.core.database import setup_db_session
from pawmotion.services.credits.redeem import create_code
from pawmotion.services.exceptions import InvalidCode
from pawmotion.uow import create_uow_factory

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(description="Create a redeem code for video credits")

    parser.add_argument("--code", required=True, help="Code value (stored upper-case)")
    parser.add_argument("--credits", type=int, required=True, help="Credits granted per use")
    parser.add_argument("--max-uses", type=int, required=True, help="Total number of uses")
    parser.add_argument("--description", default="", help="Internal description")
    parser.add_argument(
        "--expires-at",
        type=datetime.fromisoformat,
        default=None,
        help="Expiry time in UTC, ISO 8601 (default: never)",
    )

    return parser.parse_args(argv)


async def async_main(argv: list[str] | None = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (created), 1 (error)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)

    try:
        async with await uow_factory() as uow:
            redeem = await create_code(
                uow,
                code=args.code,
                credits_granted=args.credits,
                max_uses=args.max_uses,
                description=args.description,
                expires_at=args.expires_at,
            )

        print(
            f"Created {redeem.code}: {redeem.credits_granted} credit(s), "
            f"{redeem.max_uses} use(s), expires {redeem.expires_at or 'never'}"
        )
        return 0

    except (InvalidCode, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    except IntegrityError:
        logger.error("cli.code_exists", code=args.code)
        print(f"Error: code {args.code.strip().upper()} already exists", file=sys.stderr)
        return 1

    finally:
        await session_factory.kw["bind"].dispose()


def main(argv: list[str] | None = None) -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main(argv)))


if __name__ == "__main__":
    main()
