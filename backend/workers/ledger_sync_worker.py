#!/usr/bin/env python3
"""
Ledger sync worker.

Runs one of: the periodic auto-sync sweep (`--job auto`), the end-of-day
reconciliation for one business day (`--job eod`), or a catch-up of unsynced
sales since the last catch-up (`--job unsynced`). Once, or in a loop.

  python -m backend.workers.ledger_sync_worker --job eod --date 2024-03-09 --once
"""

import argparse
import asyncio
import sys
import traceback

from backend.app.db import close_pool, get_conn
from backend.app.ledger.auto_sync import run_auto_sync
from backend.app.ledger.context import open_sync_context
from backend.app.ledger.day_batch import batch_sync_day
from backend.app.ledger.transaction_sync import sync_unsynced
from backend.app.structured_log import json_log


async def run_job(job: str, day=None) -> dict:
    async with get_conn() as conn:
        async with open_sync_context(conn) as ctx:
            if job == "auto":
                return await run_auto_sync(ctx)
            if job == "eod":
                return await batch_sync_day(ctx, day)
            if job == "unsynced":
                return await sync_unsynced(ctx)
    raise ValueError(f"unknown job: {job}")


async def run_loop(job: str, day=None, once: bool = False, sleep: float = 1800.0) -> None:
    try:
        while True:
            try:
                summary = await run_job(job, day)
                json_log("info", "worker.ledger_sync.done", job=job, summary=summary)
            except Exception as ex:
                # Never crash the worker loop; the next pass retries.
                json_log("error", "worker.ledger_sync.error", job=job, error=str(ex))
                traceback.print_exc(file=sys.stderr)
            if once:
                break
            await asyncio.sleep(sleep)
    finally:
        await close_pool()


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--job", choices=["auto", "eod", "unsynced"], default="auto")
    parser.add_argument("--date", help="Business day for --job eod (YYYY-MM-DD); defaults to today")
    parser.add_argument("--sleep", type=float, default=1800.0, help="Seconds between passes")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = parser.parse_args()
    asyncio.run(run_loop(args.job, args.date, once=args.once, sleep=args.sleep))


if __name__ == "__main__":
    main()
