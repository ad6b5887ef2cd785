#!/usr/bin/env python3
from __future__ import annotations

import asyncio
import logging
import sys
from argparse import ArgumentParser
from datetime import datetime

from dotenv import load_dotenv

from chainstore.config import Settings
from chainstore.errors import LifecycleFailure
from chainstore.lifecycle import LifecycleManager, LifecycleScheduler

logger = logging.getLogger(__name__)


def _parse_now(s: str) -> datetime:
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError as e:
        raise SystemExit(f"Invalid --now {s!r}; expected ISO-8601") from e
    if dt.tzinfo is None:
        dt = dt.astimezone()
    return dt


def build_parser() -> ArgumentParser:
    p = ArgumentParser(
        description=(
            "Contract lifecycle maintenance. 'now' archives expired contracts and purges stale ones "
            "immediately; 'daily' and 'weekly' run the scheduler triggers once and respect their guards."
        )
    )
    p.add_argument("--db-url", default=None, help="Overrides DATABASE_URL (default: env DATABASE_URL)")
    p.add_argument("--mode", choices=["now", "daily", "weekly"], default="now")
    p.add_argument(
        "--now",
        default=None,
        type=_parse_now,
        help="Evaluate cutoffs and windows at this ISO-8601 time instead of the current time",
    )
    p.add_argument(
        "--persist-state",
        action="store_true",
        help="Guard daily/weekly runs with the lifecycle_runs table (default: env CHAINSTORE_PERSIST_SCHEDULER_STATE)",
    )
    p.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Overrides the default logging level (default: INFO)",
    )
    return p


async def _run(args, settings: Settings) -> int:
    manager = LifecycleManager(args.db_url, settings=settings)
    if args.mode == "now":
        result = await manager.archive_expired_and_cleanup(now=args.now)
        print(
            f"✅ lifecycle complete: archived={result.archived} purged={result.purged} "
            f"remaining_rows={result.remaining_rows} distinct_symbols={result.distinct_symbols}"
        )
        return 0

    clock = (lambda: args.now) if args.now is not None else None
    scheduler = LifecycleScheduler(
        manager,
        db_url=args.db_url,
        settings=settings,
        clock=clock,
        persist_state=True if args.persist_state else None,
    )
    if args.mode == "daily":
        ran = await scheduler.run_daily_cleanup_if_due()
    else:
        ran = await scheduler.run_weekly_archival_if_due()
    print(f"{'✅' if ran else '⏭️'} lifecycle {args.mode}: ran={ran}")
    return 0


def main(argv: list[str]) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    return asyncio.run(_run(args, Settings.from_env()))


if __name__ == "__main__":
    try:
        raise SystemExit(main(sys.argv[1:]))
    except KeyboardInterrupt:
        raise SystemExit(130)
    except LifecycleFailure as e:
        print(f"❌ lifecycle failed: {e}", file=sys.stderr)
        raise SystemExit(2)
