#!/usr/bin/env python3
"""Service order sync — run, inspect or reset the incremental mirror.

Usage:
    python scripts/sync_service_orders.py [--mode incremental] [--no-details] [--max N]
    python scripts/sync_service_orders.py --status
    python scripts/sync_service_orders.py --reset

Ctrl-C asks the running sync to stop after the current page / record; the
state row is left as "paused" and a later --mode resume continues from it.

Exit code 0 on success, 1 on failure.
"""

import argparse
import asyncio
import json
import os
import signal
import sys

# Must set up path before package imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from fleetsync.database import SessionLocal
from fleetsync.logging_config import setup_logging
from fleetsync.services.sync_orchestrator import (
    get_recent_sync_history,
    get_sync_status,
    reset_sync_state,
    run_sync,
)
from fleetsync.services.sync_types import SyncMode, SyncOptions


def print_result(result) -> None:
    mark = "OK" if result.success else "FAILED"
    print(f"\n── Sync {mark} ──")
    print(f"  Entity:          {result.entity}")
    print(f"  Records synced:  {result.records_synced:,}")
    for key in ("skipped_existing", "details_synced", "details_failed", "items_synced"):
        if key in result.details:
            print(f"  {key.replace('_', ' ').capitalize() + ':':16s} {result.details[key]:,}")
    print(f"  Duration:        {result.duration:.2f}s")
    if result.error:
        print(f"  Error:           {result.error}")


async def _run(options: SyncOptions) -> int:
    stop = asyncio.Event()
    options.stop = stop
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, stop.set)
    except NotImplementedError:
        pass

    db = SessionLocal()
    try:
        result = await run_sync(db, options)
    finally:
        db.close()

    print_result(result)
    return 0 if result.success else 1


def main():
    parser = argparse.ArgumentParser(description="Incremental service order sync")
    parser.add_argument(
        "--mode",
        choices=[m.value for m in SyncMode],
        default=SyncMode.INCREMENTAL.value,
        help="full walk, incremental (new ids only), resume, or details-only",
    )
    parser.add_argument("--no-details", action="store_true", help="Skip the detail phase")
    parser.add_argument("--max", type=int, help="Max records per run")
    parser.add_argument("--status", action="store_true", help="Print sync state and exit")
    parser.add_argument("--reset", action="store_true", help="Re-initialize sync state and exit")
    args = parser.parse_args()

    setup_logging()

    if args.status or args.reset:
        db = SessionLocal()
        try:
            if args.reset:
                reset_sync_state(db)
            status = get_sync_status(db)
            status["recent_runs"] = get_recent_sync_history(db, limit=10)
        finally:
            db.close()
        print(json.dumps(status, indent=2, default=str))
        sys.exit(0)

    options = SyncOptions(
        mode=SyncMode(args.mode),
        fetch_details=not args.no_details,
        max_records=args.max,
    )
    sys.exit(asyncio.run(_run(options)))


if __name__ == "__main__":
    main()
