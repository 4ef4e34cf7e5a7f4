import asyncio
from datetime import date, datetime, timezone

import httpx
import pytest
from fastapi import HTTPException

from backend.app import deps
from backend.app.ledger.models import SyncLogEntry
from backend.app.routers import ledger_sync as ledger_router
from backend.tests.ledger_fakes import FakeLedgerServer, FakeStore, make_context


def _call(store, fn, *args, server=None, **kwargs):
    async def scenario():
        ctx = make_context(store, server or FakeLedgerServer())
        return await fn(*args, ctx=ctx, **kwargs)

    return asyncio.run(scenario())


def test_api_key_guard(monkeypatch):
    monkeypatch.setattr(deps.settings, "ledger_sync_api_key", "")
    with pytest.raises(HTTPException) as ei:
        deps.require_sync_api_key("anything")
    assert ei.value.status_code == 503

    monkeypatch.setattr(deps.settings, "ledger_sync_api_key", "s3cret")
    with pytest.raises(HTTPException) as ei:
        deps.require_sync_api_key("wrong")
    assert ei.value.status_code == 401
    with pytest.raises(HTTPException):
        deps.require_sync_api_key(None)
    assert deps.require_sync_api_key("s3cret") is True


def test_settings_view_reports_connection():
    store = FakeStore(income_account_id="79")
    out = _call(store, ledger_router.get_settings)
    assert out["enabled"] is True
    assert out["connected"] is True
    assert out["income_account_id"] == "79"
    assert out["last_sync_at"] is None


def test_disconnect_keeps_links():
    store = FakeStore()
    store.add_customer("c1", "Jane", "Doe", remote_id="55")
    assert _call(store, ledger_router.disconnect) == {"ok": True}
    assert store.connected is False
    assert store.customers["c1"]["remote_id"] == "55"


def test_missing_entity_is_404():
    with pytest.raises(HTTPException) as ei:
        _call(FakeStore(), ledger_router.sync_customer_endpoint, "nope", "manual")
    assert ei.value.status_code == 404
    assert ei.value.detail == "Customer not found: nope"


def test_sync_failures_are_returned_not_raised():
    store = FakeStore(enabled=False)
    store.add_customer("c1", "Jane", "Doe")
    out = _call(store, ledger_router.sync_customer_endpoint, "c1", "manual")
    assert out == {"success": False, "outcome": "failed", "error": "Ledger sync not enabled"}


def test_transaction_endpoint_passes_source():
    store = FakeStore()
    store.add_transaction("t1", 45)
    out = _call(store, ledger_router.sync_transaction_endpoint, "t1", "pos_hook")
    assert out["success"] is True
    assert out["outcome"] == "created"
    assert store.logs[-1].source == "pos_hook"


def test_day_endpoint_defaults_and_explicit_day():
    store = FakeStore()
    store.add_transaction("t1", 10, created_at=datetime(2024, 3, 9, 20, 0, tzinfo=timezone.utc))
    out = _call(store, ledger_router.sync_day_endpoint, ledger_router.DaySyncIn(day=date(2024, 3, 9)))
    assert out["total"] == 1
    assert out["synced"] == 1


def test_retry_limit_is_clamped():
    store = FakeStore()
    for i in range(3):
        store.add_transaction(f"t{i}", 10, sync_status="failed")
    out = _call(store, ledger_router.retry_failed_endpoint, limit=0)
    # 0 -> default 50
    assert out == {"synced": 3, "failed": 0}


def test_log_export_is_csv_attachment():
    store = FakeStore()
    store.logs.append(
        SyncLogEntry(
            entity_type="customer",
            entity_id="c1",
            action="create",
            status="success",
            remote_id="55",
            created_at=datetime(2024, 3, 9, 20, 0, tzinfo=timezone.utc),
        )
    )
    res = _call(store, ledger_router.export_sync_log, "30d", "all", "all")
    assert res.media_type == "text/csv"
    assert res.headers["content-disposition"].startswith('attachment; filename="ledger-sync-log-')
    body = res.body.decode()
    assert body.splitlines()[1].startswith("2024-03-09T20:00:00+00:00,customer,c1,create,success,,55,manual")


def test_sync_unsynced_endpoint_runs_the_catch_up():
    store = FakeStore()
    store.add_transaction("t1", 45, created_at=datetime.now(timezone.utc))
    store.add_transaction("t0", 0, created_at=datetime.now(timezone.utc))
    out = _call(store, ledger_router.sync_unsynced_endpoint)
    assert out == {"synced": 1, "failed": 0, "skipped": 1}
    assert store.logs[-1].source == "manual"
    assert store.settings.last_sync_at


def test_company_and_accounts_lookups():
    server = FakeLedgerServer()
    sales = server.seed_account("Sales", "Income")
    server.seed_account("Undeposited Funds", "Other Current Asset")

    company = _call(FakeStore(), ledger_router.company_info, server=server)
    assert company == {"company_name": "Shine Auto Spa", "country": "US"}

    out = _call(FakeStore(), ledger_router.list_accounts, "Income", server=server)
    assert out == {"accounts": [{"id": sales, "name": "Sales", "account_type": "Income"}]}
    assert len(_call(FakeStore(), ledger_router.list_accounts, None, server=server)["accounts"]) == 2


def test_lookups_need_a_connection_and_surface_ledger_errors():
    async def without_client():
        return await ledger_router.company_info(ctx=make_context(FakeStore()))

    with pytest.raises(HTTPException) as ei:
        asyncio.run(without_client())
    assert ei.value.status_code == 409

    server = FakeLedgerServer()
    server.handle = lambda request: httpx.Response(401, json={})
    with pytest.raises(HTTPException) as ei:
        _call(FakeStore(), ledger_router.list_accounts, None, server=server)
    assert ei.value.status_code == 502
    assert "access token" in ei.value.detail
