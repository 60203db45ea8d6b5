#!/usr/bin/env python3
"""Run one ghost-account sweep outside the daily schedule.

Usage:
    # Delete accounts unverified for longer than REAPER_GRACE_DAYS:
    DATABASE_URL=postgresql://... python scripts/reap_ghost_accounts.py

    # Override the grace period, or only report the cutoff:
    python scripts/reap_ghost_accounts.py --grace-days 7 --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    REAPER_GRACE_DAYS: Days an unverified account is kept (default 3)
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import datetime, timezone
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def reap(grace_days: int | None, dry_run: bool = False) -> dict:
    """Open the store, run a single sweep and close it again.

    Returns:
        dict with cutoff, deleted count and status ('reaped' or 'dry_run')
    """
    # Import here so .env values are loaded by Settings, not at module import
    from tokenwarden.config import Settings
    from tokenwarden.service.runtime import Runtime

    settings = Settings.from_env()
    if grace_days is not None:
        settings = settings.model_copy(update={"reaper_grace_days": grace_days})
    # The one-shot run owns the sweep; the background loop stays off
    settings = settings.model_copy(update={"reaper_enabled": False})

    now = datetime.now(timezone.utc)
    async with Runtime(settings) as runtime:
        reaper = runtime.reaper
        cutoff = now - reaper.grace_period
        if dry_run:
            print(f"[DRY RUN] Would delete unverified accounts created before {cutoff.isoformat()}")
            return {"cutoff": cutoff.isoformat(), "deleted": 0, "status": "dry_run"}
        deleted = await reaper.run_once(now)
    return {"cutoff": cutoff.isoformat(), "deleted": deleted, "status": "reaped"}


def main():
    parser = argparse.ArgumentParser(
        description="Delete accounts that never verified their email",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--grace-days",
        type=int,
        default=None,
        help="Override REAPER_GRACE_DAYS for this run",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show the cutoff without deleting anything",
    )

    args = parser.parse_args()

    if args.grace_days is not None and args.grace_days <= 0:
        print("Error: --grace-days must be a positive integer")
        sys.exit(1)

    try:
        result = asyncio.run(reap(args.grace_days, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "reaped":
        print(f"Deleted {result['deleted']} unverified account(s) created before {result['cutoff']}")


if __name__ == "__main__":
    main()
