from __future__ import annotations

import time
from decimal import Decimal

from ..structured_log import json_log
from .context import SyncContext
from .models import MAX_NAME_LENGTH, SyncLogEntry, SyncResult
from .placeholders import ITEM_TYPES

NOT_ENABLED = "Ledger sync not enabled"
NO_INCOME_ACCOUNT = "Income account not configured in ledger settings"


def item_fields(row: dict, kind: str, income_account_id: str) -> dict:
    return {
        "Name": (row.get("name") or "")[:MAX_NAME_LENGTH],
        "Type": ITEM_TYPES[kind],
        "IncomeAccountRef": {"value": income_account_id},
        "UnitPrice": float(Decimal(str(row.get("price") or 0))),
    }


async def _sync_catalog_item(ctx: SyncContext, kind: str, item_id: str, source: str) -> SyncResult:
    started = time.monotonic()
    if not await ctx.store.is_sync_enabled():
        return SyncResult.fail(NOT_ENABLED)

    row = await ctx.store.get_catalog_item(kind, item_id)
    if not row:
        return SyncResult.fail(f"{kind.capitalize()} not found: {item_id}", outcome="not_found")

    income_account_id = (await ctx.store.get_sync_settings()).income_account_id
    if not income_account_id:
        return SyncResult.fail(NO_INCOME_ACCOUNT)

    action = "update" if row.get("remote_id") else "create"
    payload = item_fields(row, kind, income_account_id)
    try:
        client = ctx.ledger()
        if row.get("remote_id"):
            updated = await client.update_with_fresh_token("item", str(row["remote_id"]), payload)
            remote_id = str(updated["Id"])
            outcome = "updated"
        else:
            # Item names aren't strictly unique in the ledger: an exact match is linked as-is.
            existing = await client.find_item_by_name(payload["Name"])
            if existing:
                remote_id = str(existing["Id"])
                outcome = "linked"
            else:
                created = await client.create_item(payload)
                remote_id = str(created["Id"])
                outcome = "created"

        await ctx.store.mark_catalog_item_synced(kind, item_id, remote_id)
        await ctx.store.log_sync(
            SyncLogEntry(
                entity_type=kind,
                entity_id=item_id,
                action=action,
                status="success",
                source=source,
                remote_id=remote_id,
                request_payload=payload,
                response_payload={"remote_id": remote_id, "outcome": outcome},
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        )
        return SyncResult(success=True, remote_id=remote_id, outcome=outcome)
    except Exception as ex:
        msg = str(ex) or ex.__class__.__name__
        await ctx.store.log_sync(
            SyncLogEntry(
                entity_type=kind,
                entity_id=item_id,
                action=action,
                status="failed",
                source=source,
                error_message=msg,
                request_payload=payload,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        )
        json_log("error", f"ledger.{kind}.failed", item_id=item_id, error=msg)
        return SyncResult.fail(msg)


async def sync_service(ctx: SyncContext, service_id: str, source: str = "manual") -> SyncResult:
    return await _sync_catalog_item(ctx, "service", service_id, source)


async def sync_product(ctx: SyncContext, product_id: str, source: str = "manual") -> SyncResult:
    return await _sync_catalog_item(ctx, "product", product_id, source)


async def sync_all_catalog(ctx: SyncContext, source: str = "manual") -> dict:
    """
    Re-sync every active service and product, linked or not.

    There is no per-row staleness tracking, so linked rows are pushed again
    each run (price/name edits propagate at the cost of extra calls).
    """
    summary = {"services": {"synced": 0, "failed": 0}, "products": {"synced": 0, "failed": 0}}
    if not await ctx.store.is_sync_enabled():
        return summary

    for kind, bucket, sync in (("service", "services", sync_service), ("product", "products", sync_product)):
        for item_id in await ctx.store.list_active_catalog_ids(kind):
            try:
                ok = (await sync(ctx, item_id, source)).success
            except Exception as ex:
                json_log("error", f"ledger.{kind}.batch.error", item_id=item_id, error=str(ex))
                ok = False
            summary[bucket]["synced" if ok else "failed"] += 1
            await ctx.pause()

    json_log("info", "ledger.catalog.synced", source=source, **summary)
    return summary
