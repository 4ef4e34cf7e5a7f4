"""
Completed sale -> ledger Sales Receipt.

A receipt needs three kinds of resolved references, in this order: the
customer, one Item per line, then the receipt itself. Receipts are only ever
created; voids and refunds are separate events and never edit a synced one.
"""

from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional
from zoneinfo import ZoneInfo

from ..structured_log import json_log
from .catalog_sync import NO_INCOME_ACCOUNT, sync_product, sync_service
from .context import SyncContext
from .customer_sync import sync_customer
from .models import MAX_PRIVATE_NOTE_LENGTH, SYNC_STATUS_SYNCED, SyncLogEntry, SyncResult

NOT_ENABLED = "Ledger sync not enabled"
LOOKBACK_DAYS = 30


def _money(v: Any) -> Decimal:
    return Decimal(str(v or 0)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _as_datetime(v: Any) -> datetime:
    if isinstance(v, datetime):
        dt = v
    else:
        dt = datetime.fromisoformat(str(v).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def local_date(created_at: Any, tz_name: str) -> str:
    """YYYY-MM-DD of an instant as seen in the business timezone."""
    return _as_datetime(created_at).astimezone(ZoneInfo(tz_name)).date().isoformat()


def build_private_note(
    receipt_number: Optional[str] = None,
    payment_method: Optional[str] = None,
    employee_name: Optional[str] = None,
    coupon_code: Optional[str] = None,
) -> str:
    parts = []
    if receipt_number:
        parts.append(f"POS #{receipt_number}")
    if payment_method:
        parts.append(f"Payment: {payment_method}")
    if employee_name:
        parts.append(f"Employee: {employee_name}")
    if coupon_code:
        parts.append(f"Coupon: {coupon_code}")
    return " | ".join(parts)[:MAX_PRIVATE_NOTE_LENGTH]


def sales_line(item_remote_id: str, quantity: Any, unit_price: Any) -> dict:
    qty = Decimal(str(quantity)) if quantity not in (None, "", 0) else Decimal("1")
    price = _money(unit_price)
    return {
        "Amount": float(_money(qty * price)),
        "DetailType": "SalesItemLineDetail",
        "SalesItemLineDetail": {
            "ItemRef": {"value": item_remote_id},
            "Qty": float(qty),
            "UnitPrice": float(price),
        },
    }


def discount_line(amount: Any) -> dict:
    return {
        "Amount": float(_money(amount)),
        "DetailType": "DiscountLineDetail",
        "DiscountLineDetail": {"PercentBased": False},
    }


async def _resolve_customer(ctx: SyncContext, txn: dict, source: str) -> str:
    if not txn.get("customer_id"):
        return await ctx.resolver.walk_in_customer(ctx.ledger())

    customer = await ctx.store.get_customer(str(txn["customer_id"]))
    if customer and customer.get("remote_id"):
        return str(customer["remote_id"])
    result = await sync_customer(ctx, str(txn["customer_id"]), source)
    if not result.success or not result.remote_id:
        raise RuntimeError(f"Failed to sync customer: {result.error}")
    return result.remote_id


async def _resolve_item(ctx: SyncContext, line: dict, income_account_id: str, source: str) -> str:
    if line.get("service_id"):
        kind, ref = "service", str(line["service_id"])
    elif line.get("product_id"):
        kind, ref = "product", str(line["product_id"])
    else:
        # No catalog reference at all (custom line).
        return await ctx.resolver.misc_item(ctx.ledger(), "service", income_account_id)

    row = await ctx.store.get_catalog_item(kind, ref)
    if row and row.get("remote_id"):
        return str(row["remote_id"])
    if row:
        sync = sync_service if kind == "service" else sync_product
        result = await sync(ctx, ref, source)
        if result.success and result.remote_id:
            return result.remote_id
    # Deleted row, or its own sync failed: keep the money, lose the attribution.
    return await ctx.resolver.misc_item(ctx.ledger(), kind, income_account_id)


async def build_receipt_payload(ctx: SyncContext, txn: dict, customer_remote_id: str, income_account_id: str, deposit_account_id: str, source: str) -> dict:
    lines = []
    for line in await ctx.store.get_transaction_lines(str(txn["id"])):
        item_remote_id = await _resolve_item(ctx, line, income_account_id, source)
        lines.append(sales_line(item_remote_id, line.get("quantity"), line.get("unit_price")))

    if _money(txn.get("discount_amount")) > 0:
        lines.append(discount_line(txn.get("discount_amount")))

    payload = {
        "TxnDate": local_date(txn["created_at"], ctx.timezone),
        "CustomerRef": {"value": customer_remote_id},
        "Line": lines,
        "PrivateNote": build_private_note(
            receipt_number=txn.get("receipt_number"),
            payment_method=txn.get("payment_method"),
            employee_name=await ctx.store.get_employee_name(txn.get("employee_id")),
            coupon_code=await ctx.store.get_coupon_code(txn.get("coupon_id")),
        ),
    }
    if deposit_account_id:
        payload["DepositToAccountRef"] = {"value": deposit_account_id}
    return payload


async def sync_transaction(ctx: SyncContext, transaction_id: str, source: str = "manual") -> SyncResult:
    """Submit one completed sale as a Sales Receipt. Ledger errors become a failed result."""
    started = time.monotonic()
    if not await ctx.store.is_sync_enabled():
        return SyncResult.fail(NOT_ENABLED)

    txn = await ctx.store.get_transaction(transaction_id)
    if not txn:
        return SyncResult.fail(f"Transaction not found: {transaction_id}", outcome="not_found")

    if txn.get("remote_sync_status") == SYNC_STATUS_SYNCED:
        return SyncResult(success=True, remote_id=txn.get("remote_id"), outcome="already_synced")

    if _money(txn.get("total_amount")) == 0:
        await ctx.store.mark_transaction_skipped(transaction_id)
        return SyncResult(success=True, outcome="skipped")

    settings = await ctx.store.get_sync_settings()
    if not settings.income_account_id:
        return SyncResult.fail(NO_INCOME_ACCOUNT)

    if not await ctx.store.claim_transaction(transaction_id):
        return SyncResult.fail("Transaction sync already in progress", outcome="in_progress")

    payload: Optional[dict] = None
    try:
        customer_remote_id = await _resolve_customer(ctx, txn, source)
        payload = await build_receipt_payload(
            ctx, txn, customer_remote_id, settings.income_account_id, settings.deposit_account_id, source
        )
        receipt = await ctx.ledger().create_sales_receipt(payload)
        remote_id = str(receipt["Id"])

        await ctx.store.mark_transaction_synced(transaction_id, remote_id, ctx.now())
        await ctx.store.log_sync(
            SyncLogEntry(
                entity_type="transaction",
                entity_id=transaction_id,
                action="create",
                status="success",
                source=source,
                remote_id=remote_id,
                request_payload=payload,
                response_payload={"remote_id": remote_id, "total": receipt.get("TotalAmt")},
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        )
        json_log("info", "ledger.transaction.synced", transaction_id=transaction_id, remote_id=remote_id, source=source)
        return SyncResult(success=True, remote_id=remote_id, outcome="created")
    except Exception as ex:
        msg = str(ex) or ex.__class__.__name__
        await ctx.store.mark_transaction_failed(transaction_id, msg)
        await ctx.store.log_sync(
            SyncLogEntry(
                entity_type="transaction",
                entity_id=transaction_id,
                action="create",
                status="failed",
                source=source,
                error_message=msg,
                request_payload=payload,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        )
        json_log("error", "ledger.transaction.failed", transaction_id=transaction_id, source=source, error=msg)
        return SyncResult.fail(msg)


async def sync_transaction_safely(ctx: SyncContext, transaction_id: str, source: str) -> SyncResult:
    """sync_transaction for batch loops: a store error counts as a failed result."""
    try:
        return await sync_transaction(ctx, transaction_id, source)
    except Exception as ex:
        json_log("error", "ledger.transaction.batch.error", transaction_id=transaction_id, error=str(ex))
        return SyncResult.fail(str(ex) or ex.__class__.__name__)


async def sync_unsynced(ctx: SyncContext, source: str = "manual") -> dict:
    """Sync completed, not-yet-synced sales since the last sync (at most 30 days back)."""
    summary = {"synced": 0, "failed": 0, "skipped": 0}
    if not await ctx.store.is_sync_enabled():
        return summary

    floor = ctx.now() - timedelta(days=LOOKBACK_DAYS)
    since = floor
    last = (await ctx.store.get_sync_settings()).last_sync_at
    if last:
        try:
            since = max(_as_datetime(last), floor)
        except ValueError:
            since = floor

    for row in await ctx.store.list_unsynced_transactions(since=since):
        result = await sync_transaction_safely(ctx, str(row["id"]), source)
        if result.outcome == "skipped":
            summary["skipped"] += 1
        elif result.success:
            summary["synced"] += 1
        else:
            summary["failed"] += 1
        await ctx.pause()

    # The only writer of last_sync_at: it is this sweep's lower bound.
    await ctx.store.set_last_sync_at(ctx.now())
    return summary


async def retry_failed_transactions(ctx: SyncContext, source: str = "manual", limit: int = 50, attempted_before: Optional[datetime] = None) -> dict:
    summary = {"synced": 0, "failed": 0}
    if not await ctx.store.is_sync_enabled():
        return summary
    for tid in await ctx.store.list_failed_transaction_ids(attempted_before=attempted_before, limit=limit):
        result = await sync_transaction_safely(ctx, tid, source)
        summary["synced" if result.success else "failed"] += 1
        await ctx.pause()
    return summary
