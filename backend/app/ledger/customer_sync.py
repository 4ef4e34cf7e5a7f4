from __future__ import annotations

import time
from typing import Iterable

from ..structured_log import json_log
from .client import DUPLICATE_NAME_CODE, LedgerApiError
from .context import SyncContext
from .models import SyncLogEntry, SyncResult

NOT_ENABLED = "Ledger sync not enabled"


def display_name_for(customer: dict) -> str:
    full = f"{customer.get('first_name') or ''} {customer.get('last_name') or ''}".strip()
    return full or (customer.get("phone") or "").strip() or f"Customer-{str(customer['id'])[:8]}"


def disambiguated_name(customer: dict, display_name: str) -> str:
    suffix = (customer.get("phone") or "").strip() or str(customer["id"])[:8]
    return f"{display_name} ({suffix})"


def linked_display_name(customer: dict, display_name: str) -> str:
    """
    Name to send when updating a linked customer.

    A record created under a disambiguated name keeps it for as long as the
    local name it was derived from is unchanged; the bare name is taken.
    """
    saved = (customer.get("remote_display_name") or "").strip()
    if saved.startswith(f"{display_name} (") and saved.endswith(")"):
        return saved
    return display_name


def customer_fields(customer: dict, display_name: str) -> dict:
    data = {"DisplayName": display_name}
    if customer.get("first_name"):
        data["GivenName"] = customer["first_name"]
    if customer.get("last_name"):
        data["FamilyName"] = customer["last_name"]
    if customer.get("email"):
        data["PrimaryEmailAddr"] = {"Address": customer["email"]}
    if customer.get("phone"):
        data["PrimaryPhone"] = {"FreeFormNumber": customer["phone"]}
    return data


async def sync_customer(ctx: SyncContext, customer_id: str, source: str = "manual") -> SyncResult:
    """Create, link or update one local customer in the ledger. Ledger errors become a failed result."""
    started = time.monotonic()
    if not await ctx.store.is_sync_enabled():
        return SyncResult.fail(NOT_ENABLED)

    customer = await ctx.store.get_customer(customer_id)
    if not customer:
        return SyncResult.fail(f"Customer not found: {customer_id}", outcome="not_found")

    action = "update" if customer.get("remote_id") else "create"
    display_name = display_name_for(customer)
    if customer.get("remote_id"):
        display_name = linked_display_name(customer, display_name)
    payload = customer_fields(customer, display_name)
    try:
        client = ctx.ledger()
        if customer.get("remote_id"):
            updated = await client.update_with_fresh_token("customer", str(customer["remote_id"]), payload)
            remote_id = str(updated["Id"])
            outcome = "updated"
        else:
            existing = await client.find_customer_by_name(display_name)
            if existing:
                remote_id = str(existing["Id"])
                outcome = "linked"
            else:
                try:
                    created = await client.create_customer(payload)
                except LedgerApiError as ex:
                    if ex.code != DUPLICATE_NAME_CODE:
                        raise
                    # Name taken (possibly by an inactive record search can't see): one retry.
                    display_name = disambiguated_name(customer, display_name)
                    payload = {**payload, "DisplayName": display_name}
                    created = await client.create_customer(payload)
                remote_id = str(created["Id"])
                outcome = "created"

        await ctx.store.mark_customer_synced(customer_id, remote_id, ctx.now(), display_name)
        await ctx.store.log_sync(
            SyncLogEntry(
                entity_type="customer",
                entity_id=customer_id,
                action=action,
                status="success",
                source=source,
                remote_id=remote_id,
                request_payload=payload,
                response_payload={"remote_id": remote_id, "outcome": outcome},
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        )
        json_log("info", "ledger.customer.synced", customer_id=customer_id, remote_id=remote_id, outcome=outcome)
        return SyncResult(success=True, remote_id=remote_id, outcome=outcome)
    except Exception as ex:
        msg = str(ex) or ex.__class__.__name__
        await ctx.store.log_sync(
            SyncLogEntry(
                entity_type="customer",
                entity_id=customer_id,
                action=action,
                status="failed",
                source=source,
                error_message=msg,
                request_payload=payload,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        )
        json_log("error", "ledger.customer.failed", customer_id=customer_id, error=msg)
        return SyncResult.fail(msg)


async def sync_customer_batch(ctx: SyncContext, customer_ids: Iterable[str], source: str = "manual") -> dict:
    summary = {"synced": 0, "failed": 0, "errors": []}
    for cid in customer_ids:
        try:
            result = await sync_customer(ctx, cid, source)
        except Exception as ex:
            # e.g. the customer read failing before anything could be logged.
            json_log("error", "ledger.customer.batch.error", customer_id=cid, error=str(ex))
            result = SyncResult.fail(str(ex) or ex.__class__.__name__)
        if result.success:
            summary["synced"] += 1
        else:
            summary["failed"] += 1
            if result.error:
                summary["errors"].append(f"{cid}: {result.error}")
        await ctx.pause()
    return summary
