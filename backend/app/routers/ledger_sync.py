from datetime import date, datetime, timezone
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response
from pydantic import BaseModel

from ..deps import get_sync_context, require_sync_api_key
from ..ledger.auto_sync import run_auto_sync
from ..ledger.catalog_sync import sync_all_catalog, sync_product, sync_service
from ..ledger.client import LedgerApiError
from ..ledger.context import SyncContext
from ..ledger.customer_sync import sync_customer
from ..ledger.day_batch import batch_sync_day
from ..ledger.sync_log import sync_log_csv
from ..ledger.transaction_sync import retry_failed_transactions, sync_transaction, sync_unsynced

router = APIRouter(prefix="/ledger-sync", tags=["ledger-sync"], dependencies=[Depends(require_sync_api_key)])

Source = Literal["manual", "auto", "pos_hook", "eod_batch"]


class DaySyncIn(BaseModel):
    day: Optional[date] = None


def _result_or_404(result):
    # Missing local rows are the only failures reported as HTTP errors.
    if result.outcome == "not_found":
        raise HTTPException(status_code=404, detail=result.error)
    return result.to_dict()


@router.get("/settings")
async def get_settings(ctx: SyncContext = Depends(get_sync_context)):
    s = await ctx.store.get_sync_settings()
    connected = await ctx.store.is_connected()
    return {
        "enabled": s.enabled,
        "connected": connected,
        "environment": s.environment,
        "auto_sync_transactions": s.auto_sync_transactions,
        "auto_sync_customers": s.auto_sync_customers,
        "auto_sync_catalog": s.auto_sync_catalog,
        "income_account_id": s.income_account_id,
        "deposit_account_id": s.deposit_account_id,
        "auto_sync_interval": s.auto_sync_interval,
        "last_sync_at": s.last_sync_at or None,
    }


@router.post("/disconnect")
async def disconnect(ctx: SyncContext = Depends(get_sync_context)):
    await ctx.store.disconnect()
    return {"ok": True}


def _connected_client(ctx: SyncContext):
    if ctx.client is None:
        raise HTTPException(status_code=409, detail="Not connected to ledger")
    return ctx.client


@router.get("/company")
async def company_info(ctx: SyncContext = Depends(get_sync_context)):
    # Connection check for the settings page.
    try:
        info = await _connected_client(ctx).get_company_info()
    except LedgerApiError as ex:
        raise HTTPException(status_code=502, detail=str(ex))
    return {"company_name": info.get("CompanyName") or "", "country": info.get("Country") or ""}


@router.get("/accounts")
async def list_accounts(account_type: Optional[str] = None, ctx: SyncContext = Depends(get_sync_context)):
    """Ledger accounts to pick the income and deposit accounts from."""
    try:
        rows = await _connected_client(ctx).get_accounts(account_type)
    except LedgerApiError as ex:
        raise HTTPException(status_code=502, detail=str(ex))
    return {
        "accounts": [
            {"id": str(r.get("Id")), "name": r.get("Name") or "", "account_type": r.get("AccountType") or ""}
            for r in rows
        ]
    }


@router.post("/customers/{customer_id}/sync")
async def sync_customer_endpoint(customer_id: str, source: Source = "manual", ctx: SyncContext = Depends(get_sync_context)):
    return _result_or_404(await sync_customer(ctx, customer_id, source))


@router.post("/services/{service_id}/sync")
async def sync_service_endpoint(service_id: str, source: Source = "manual", ctx: SyncContext = Depends(get_sync_context)):
    return _result_or_404(await sync_service(ctx, service_id, source))


@router.post("/products/{product_id}/sync")
async def sync_product_endpoint(product_id: str, source: Source = "manual", ctx: SyncContext = Depends(get_sync_context)):
    return _result_or_404(await sync_product(ctx, product_id, source))


@router.post("/transactions/{transaction_id}/sync")
async def sync_transaction_endpoint(transaction_id: str, source: Source = "manual", ctx: SyncContext = Depends(get_sync_context)):
    return _result_or_404(await sync_transaction(ctx, transaction_id, source))


@router.post("/transactions/sync-unsynced")
async def sync_unsynced_endpoint(ctx: SyncContext = Depends(get_sync_context)):
    return await sync_unsynced(ctx, "manual")


@router.post("/transactions/retry-failed")
async def retry_failed_endpoint(limit: int = 50, ctx: SyncContext = Depends(get_sync_context)):
    limit = max(1, min(int(limit or 50), 500))
    return await retry_failed_transactions(ctx, "manual", limit=limit)


@router.post("/catalog/sync")
async def sync_catalog_endpoint(ctx: SyncContext = Depends(get_sync_context)):
    return await sync_all_catalog(ctx, "manual")


@router.post("/day/sync")
async def sync_day_endpoint(data: Optional[DaySyncIn] = None, ctx: SyncContext = Depends(get_sync_context)):
    return await batch_sync_day(ctx, data.day if data else None)


@router.get("/cron")
async def cron_endpoint(ctx: SyncContext = Depends(get_sync_context)):
    return await run_auto_sync(ctx)


@router.get("/log/export")
async def export_sync_log(
    period: str = "30d",
    status: str = "all",
    entity_type: str = "all",
    ctx: SyncContext = Depends(get_sync_context),
):
    rows = await ctx.store.list_sync_log(period=period, status=status, entity_type=entity_type)
    today = datetime.now(timezone.utc).date().isoformat()
    return Response(
        content=sync_log_csv(rows),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="ledger-sync-log-{today}.csv"'},
    )
