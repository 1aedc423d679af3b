#!/usr/bin/env python3
"""
SukiStudy sync core command line.

Usage:
    python -m sukistudy --login          # Store and verify an API token
    python -m sukistudy --sync           # Incremental sync
    python -m sukistudy --sync --full    # Drop cursors and pull everything
    python -m sukistudy --status         # Show sync status
    python -m sukistudy --reviews        # List subjects due for review
    python -m sukistudy --logout         # Forget token and local data
"""

import argparse
import asyncio
import getpass
import logging
import sys
from pathlib import Path
from typing import Optional

from .config import get_settings
from .exceptions import SukiStudyError
from .session import StudySession

logger = logging.getLogger("sukistudy")


def setup_logging(
    level: int = logging.INFO,
    log_file: Optional[Path] = None,
) -> None:
    """
    Set up logging for the command line.

    Args:
        level: Logging level.
        log_file: Optional path to log file.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )


async def run(args: argparse.Namespace) -> int:
    async with StudySession(get_settings()) as session:
        if args.login:
            token = getpass.getpass("WaniKani API token: ")
            try:
                user = await session.login(token.strip())
            except SukiStudyError as e:
                print(f"Login failed: {e}")
                return 1
            print(f"Logged in as {user.username} (level {user.level})")
            if session.sync_task:
                await session.sync_task

        if args.sync:
            result = await (session.full_resync() if args.full else session.sync())
            if result.skipped:
                print("\nSync skipped (offline, not logged in, or already running)")
            else:
                print(f"\nSync result: {result.items_processed} updated in {result.duration_seconds:.2f}s")
                for name, count in result.counts.items():
                    print(f"  {name}: {count}")
                if result.errors:
                    print("Errors:")
                    for error in result.errors:
                        print(f"  - {error}")

        if args.status:
            status = session.status()
            print("\n=== Sync Status ===")
            print(f"User: {status['user']}")
            print(f"Authenticated: {status['is_authenticated']}")
            print(f"Records: {status['counts']}")
            print(f"Cursors: {status['cursors']}")
            print(f"Rate limit remaining: {status['rate_limit_remaining']}")

        if args.reviews:
            query = session.learned_subjects()
            due = [item for item in query.results if item.is_reviewable]
            query.deactivate()
            print(f"\n{len(due)} subjects available for review")
            for item in due[:args.limit]:
                subject = item.subject
                print(f"  [{subject.object}] {subject.characters or subject.slug} - {subject.primary_meaning}")

        if args.logout:
            await session.logout()
            print("Logged out, local data cleared")

    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        description="SukiStudy sync core",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--login", action="store_true", help="Store and verify an API token")
    parser.add_argument("--logout", action="store_true", help="Forget token and local data")
    parser.add_argument("--sync", action="store_true", help="Sync with the API")
    parser.add_argument("--full", action="store_true", help="With --sync: ignore cursors")
    parser.add_argument("--status", action="store_true", help="Show sync status")
    parser.add_argument("--reviews", action="store_true", help="List subjects due for review")
    parser.add_argument("--limit", type=int, default=20, help="Max reviews to list (default: 20)")
    parser.add_argument("--log-file", type=Path, default=None, help="Also log to this file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    args = parser.parse_args()

    setup_logging(
        level=logging.DEBUG if args.verbose or get_settings().debug else logging.INFO,
        log_file=args.log_file,
    )

    try:
        exit_code = asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        exit_code = 130
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
