"""
Periodic auto-sync sweep (cron-triggered).

Picks up records that missed the POS hooks: unsynced sales, unlinked
customers, catalog edits, and failed sales whose last attempt is old enough
to retry.
"""

from __future__ import annotations

from datetime import timedelta

from ..structured_log import json_log
from .catalog_sync import sync_all_catalog
from .context import SyncContext
from .customer_sync import sync_customer_batch
from .transaction_sync import retry_failed_transactions, sync_transaction_safely

TRANSACTION_LIMIT = 50
CUSTOMER_LIMIT = 50
RETRY_LIMIT = 10
RETRY_AFTER = timedelta(hours=1)
BASE_INTERVAL_MINUTES = 30


def empty_summary() -> dict:
    return {
        "transactions": {"synced": 0, "failed": 0, "skipped": 0},
        "customers": {"synced": 0, "failed": 0},
        "catalog": {"services": 0, "products": 0},
        "retried": {"synced": 0, "failed": 0},
    }


async def should_skip(ctx: SyncContext, interval: str):
    """Reason to skip this run, or None."""
    if interval == "disabled":
        return "Auto-sync disabled"
    try:
        minutes = int(interval or BASE_INTERVAL_MINUTES)
    except ValueError:
        minutes = BASE_INTERVAL_MINUTES
    # The cron fires every 30 minutes; longer intervals skip runs until due.
    if minutes > BASE_INTERVAL_MINUTES:
        last = await ctx.store.last_log_at("auto")
        if last is not None:
            elapsed = (ctx.now() - last).total_seconds() / 60
            if elapsed < minutes:
                return f"Last auto-sync was {round(elapsed)}m ago, interval is {minutes}m"
    return None


async def run_auto_sync(ctx: SyncContext, source: str = "auto") -> dict:
    if not await ctx.store.is_sync_enabled():
        return {"skipped": True, "reason": "Ledger sync disabled or disconnected"}

    settings = await ctx.store.get_sync_settings()
    reason = await should_skip(ctx, settings.auto_sync_interval)
    if reason:
        return {"skipped": True, "reason": reason}

    json_log("info", "ledger.auto_sync.start")
    summary = empty_summary()

    if settings.auto_sync_transactions:
        try:
            for row in await ctx.store.list_unsynced_transactions(limit=TRANSACTION_LIMIT):
                result = await sync_transaction_safely(ctx, str(row["id"]), source)
                if result.outcome == "skipped":
                    summary["transactions"]["skipped"] += 1
                elif result.success:
                    summary["transactions"]["synced"] += 1
                else:
                    summary["transactions"]["failed"] += 1
                await ctx.pause()
        except Exception as ex:
            json_log("error", "ledger.auto_sync.transactions.error", error=str(ex))

    if settings.auto_sync_customers:
        try:
            unlinked = await ctx.store.list_unlinked_customer_ids(limit=CUSTOMER_LIMIT)
            customers = await sync_customer_batch(ctx, unlinked, source)
            summary["customers"] = {"synced": customers["synced"], "failed": customers["failed"]}
        except Exception as ex:
            json_log("error", "ledger.auto_sync.customers.error", error=str(ex))

    if settings.auto_sync_catalog:
        try:
            catalog = await sync_all_catalog(ctx, source)
            summary["catalog"]["services"] = catalog["services"]["synced"]
            summary["catalog"]["products"] = catalog["products"]["synced"]
        except Exception as ex:
            json_log("error", "ledger.auto_sync.catalog.error", error=str(ex))

    if settings.auto_sync_transactions:
        try:
            summary["retried"] = await retry_failed_transactions(
                ctx, source, limit=RETRY_LIMIT, attempted_before=ctx.now() - RETRY_AFTER
            )
        except Exception as ex:
            json_log("error", "ledger.auto_sync.retry.error", error=str(ex))

    json_log("info", "ledger.auto_sync.complete", **summary)
    return summary
