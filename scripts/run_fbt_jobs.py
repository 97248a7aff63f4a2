#!/usr/bin/env python3
"""
Run FBT maintenance jobs from an external scheduler (cron, Cloud Scheduler).

Usage:
  python scripts/run_fbt_jobs.py backfill [--start] [--rebuild] [--time-budget 100] [--batch-size 50]
  python scripts/run_fbt_jobs.py stats-backfill [--start] [--rebuild]
  python scripts/run_fbt_jobs.py cleanup [--min-pair-count 2] [--retention-days 365]
  python scripts/run_fbt_jobs.py status

Exit codes: 0 when the job finished, 3 when a backfill should be invoked again.
"""

import argparse
import asyncio
import json
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Load .env file if it exists
from dotenv import load_dotenv
load_dotenv()

RAW_DB_URL = os.getenv("DATABASE_URL")
if RAW_DB_URL and RAW_DB_URL.startswith("postgresql://") and "+asyncpg" not in RAW_DB_URL:
    os.environ["DATABASE_URL"] = RAW_DB_URL.replace("postgresql://", "postgresql+asyncpg://", 1)

from settings import CleanupSettings
from services.fbt.service import FBTService

EXIT_COMPLETED = 0
EXIT_RESCHEDULE = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Frequently Bought Together maintenance jobs")
    commands = parser.add_subparsers(dest="command", required=True)

    for name in ("backfill", "stats-backfill"):
        job = commands.add_parser(name, help=f"run one time-budgeted {name} tick")
        job.add_argument("--start", action="store_true", help="reset the cursor and recount pending orders")
        job.add_argument("--rebuild", action="store_true", help="clear derived data first (implies --start)")
        job.add_argument("--time-budget", type=float, default=None, help="seconds before yielding")
        job.add_argument("--batch-size", type=int, default=None)

    cleanup = commands.add_parser("cleanup", help="prune low-signal, orphaned and stale pairs")
    cleanup.add_argument("--min-pair-count", type=int, default=None)
    cleanup.add_argument("--retention-days", type=int, default=None)

    commands.add_parser("status", help="print backfill job status")
    return parser


async def _run_backfill(service: FBTService, args: argparse.Namespace, stats: bool) -> int:
    job = service.stats_backfill if stats else service.backfill
    status = await job.status()
    if args.start or args.rebuild or status["state"] == "not_started":
        await job.start(rebuild=args.rebuild)

    if stats:
        result = await service.run_stats_backfill_tick(args.time_budget, args.batch_size)
    else:
        result = await service.run_backfill_tick(args.time_budget, args.batch_size)
    print(json.dumps(result))
    return EXIT_RESCHEDULE if result["reschedule"] else EXIT_COMPLETED


async def run(args: argparse.Namespace, service: FBTService) -> int:
    if args.command == "backfill":
        return await _run_backfill(service, args, stats=False)
    if args.command == "stats-backfill":
        return await _run_backfill(service, args, stats=True)
    if args.command == "cleanup":
        defaults = service.cleanup.settings
        settings = CleanupSettings(
            min_pair_count=args.min_pair_count or defaults.min_pair_count,
            retention_days=args.retention_days or defaults.retention_days,
            batch_size=defaults.batch_size,
            orphan_page_size=defaults.orphan_page_size,
        )
        print(json.dumps(await service.run_cleanup(settings)))
        return EXIT_COMPLETED

    statuses = {
        "backfill": await service.backfill_status(),
        "statsBackfill": await service.stats_backfill_status(),
    }
    print(json.dumps(statuses, default=str))
    return EXIT_COMPLETED


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    return asyncio.run(run(args, FBTService()))


if __name__ == "__main__":
    sys.exit(main())
