"""
Run the WebDAV backup scheduler outside the web process.

With ``--once`` a single backup runs immediately; otherwise the schedule is
re-read from settings every ``--refresh-seconds`` so changes made through the
web UI are picked up.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from xanote.config import get_settings
from xanote.dependencies import (
    get_backup_scheduler,
    get_database,
    get_log_service,
)
from xanote.errors import ConfigurationError

logger = logging.getLogger(__name__)


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    db = get_database()
    try:
        await db.initialize()
    except ConfigurationError as exc:
        logger.error("Database configuration error: %s", exc)
        return 2

    scheduler = get_backup_scheduler()
    try:
        if args.clean_logs:
            deleted = await get_log_service().clean_old_logs(settings.log_retention_days)
            logger.info("Audit log retention removed %d entries", deleted)

        if args.once:
            try:
                outcome = await scheduler.run_now()
            except ConfigurationError as exc:
                logger.error("%s", exc)
                return 2
            return 0 if outcome.ok else 1

        while True:
            await scheduler.update_schedule()
            logger.info(
                "Backup state %s, next run %s",
                scheduler.state.value,
                scheduler.next_fire_time,
            )
            await asyncio.sleep(args.refresh_seconds)
    finally:
        scheduler.stop()
        await db.close()


def main() -> int:
    parser = argparse.ArgumentParser(description="XA Note backup daemon")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single backup now and exit",
    )
    parser.add_argument(
        "--refresh-seconds",
        type=int,
        default=300,
        help="Seconds between re-reading the backup settings",
    )
    parser.add_argument(
        "--clean-logs",
        action="store_true",
        help="Apply the audit log retention policy before starting",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=get_settings().log_level.upper(),
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )

    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
