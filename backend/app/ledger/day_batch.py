"""
End-of-day catch-all: make sure every completed sale of a business day
reaches the ledger, even if the per-sale hook never fired or failed.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo

from ..structured_log import json_log
from .context import SyncContext
from .customer_sync import sync_customer_batch
from .transaction_sync import sync_transaction_safely

OUTCOME_BUCKETS = {
    "created": "synced",
    "updated": "synced",
    "linked": "synced",
    "already_synced": "already_synced",
    "in_progress": "in_progress",
    "not_found": "failed",
    "skipped": "skipped",
    "failed": "failed",
}


def empty_result() -> dict:
    return {
        "total": 0,
        "synced": 0,
        "failed": 0,
        "already_synced": 0,
        # Claimed by another runner right now; not known to have reached the ledger.
        "in_progress": 0,
        "skipped": 0,
        "customers_synced": 0,
        "customers_failed": 0,
    }


def day_window(day: Union[str, date], tz_name: str) -> tuple[datetime, datetime]:
    """
    [start, end) of a local calendar day, as UTC instants.

    Each bound gets the UTC offset in force at that bound, so days on which
    daylight saving starts or ends come out 23 or 25 hours long.
    """
    if isinstance(day, str):
        day = date.fromisoformat(day)
    tz = ZoneInfo(tz_name)
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def local_today(tz_name: str, now: Optional[datetime] = None) -> date:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(ZoneInfo(tz_name)).date()


async def batch_sync_day(ctx: SyncContext, day: Optional[Union[str, date]] = None, source: str = "eod_batch") -> dict:
    result = empty_result()
    if not await ctx.store.is_sync_enabled():
        json_log("info", "ledger.day_batch.skipped", reason="sync disabled or disconnected")
        return result

    day = day or local_today(ctx.timezone, ctx.now())
    start, end = day_window(day, ctx.timezone)
    json_log("info", "ledger.day_batch.start", day=str(day), start=start, end=end)

    transactions = await ctx.store.list_day_transactions(start, end)
    if not transactions:
        json_log("info", "ledger.day_batch.empty", day=str(day))
        return result
    result["total"] = len(transactions)

    # Customers first: receipts reference them.
    customer_ids = list(dict.fromkeys(str(t["customer_id"]) for t in transactions if t.get("customer_id")))
    if customer_ids:
        try:
            unlinked = await ctx.store.list_unlinked_customer_ids(customer_ids)
        except Exception as ex:
            # Each sale still resolves its own customer below.
            json_log("error", "ledger.day_batch.customers.error", error=str(ex))
            unlinked = []
        if unlinked:
            customers = await sync_customer_batch(ctx, unlinked, source)
            result["customers_synced"] = customers["synced"]
            result["customers_failed"] = customers["failed"]

    size = max(1, int(ctx.chunk_size or 25))
    for i in range(0, len(transactions), size):
        for txn in transactions[i:i + size]:
            outcome = (await sync_transaction_safely(ctx, str(txn["id"]), source)).outcome
            result[OUTCOME_BUCKETS.get(outcome, "failed")] += 1
        if i + size < len(transactions):
            await ctx.pause()

    json_log("info", "ledger.day_batch.complete", day=str(day), **result)
    return result
