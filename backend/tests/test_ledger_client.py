import asyncio

import httpx
import pytest

from backend.app.ledger.client import (
    DUPLICATE_NAME_CODE,
    LedgerApiError,
    LedgerClient,
    LedgerConflictError,
)
from backend.tests.ledger_fakes import FakeLedgerServer


def _client(handler, environment="sandbox"):
    return LedgerClient("realm-1", "token-1", environment, transport=httpx.MockTransport(handler))


def _call(handler, fn, environment="sandbox"):
    async def scenario():
        async with _client(handler, environment) as client:
            return await fn(client)

    return asyncio.run(scenario())


def test_requires_realm_and_token():
    with pytest.raises(LedgerApiError) as ei:
        LedgerClient("", "token")
    assert ei.value.code == "NOT_CONNECTED"


def test_requests_carry_auth_minor_version_and_base_url():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"Customer": {"Id": "5", "SyncToken": "2"}})

    _call(handler, lambda c: c.get_customer("5"), environment="production")
    req = seen[0]
    assert req.url.host == "quickbooks.api.intuit.com"
    assert req.url.path == "/v3/company/realm-1/customer/5"
    assert req.url.params["minorversion"] == "73"
    assert req.headers["Authorization"] == "Bearer token-1"


def test_name_queries_escape_single_quotes():
    seen = []

    def handler(request):
        seen.append(request.url.params["query"])
        return httpx.Response(200, json={"QueryResponse": {}})

    found = _call(handler, lambda c: c.find_customer_by_name("O'Brien"))
    assert found is None
    assert seen == ["SELECT * FROM Customer WHERE DisplayName = 'O\\'Brien'"]


def test_fault_codes_are_mapped():
    def duplicate(request):
        return httpx.Response(400, json={"Fault": {"Error": [{"Message": "Duplicate Name Exists Error", "Detail": "taken", "code": "6240"}]}})

    with pytest.raises(LedgerApiError) as ei:
        _call(duplicate, lambda c: c.create_customer({"DisplayName": "Jane"}))
    assert ei.value.code == DUPLICATE_NAME_CODE
    assert ei.value.detail == "taken"
    assert ei.value.status_code == 400
    assert str(ei.value) == "Duplicate Name Exists Error"

    def stale(request):
        return httpx.Response(400, json={"Fault": {"Error": [{"Message": "Stale Object Error", "code": "5010"}]}})

    with pytest.raises(LedgerConflictError):
        _call(stale, lambda c: c.update_item({"Id": "1", "SyncToken": "0"}))


def test_unauthorized_and_unparseable_errors():
    with pytest.raises(LedgerApiError) as ei:
        _call(lambda r: httpx.Response(401, text="nope"), lambda c: c.get_item("1"))
    assert ei.value.code == "UNAUTHORIZED"

    with pytest.raises(LedgerApiError) as ei:
        _call(lambda r: httpx.Response(500, text="<html>"), lambda c: c.get_item("1"))
    assert ei.value.code == "API_ERROR"
    assert ei.value.status_code == 500


def test_transport_failures_become_network_errors():
    def handler(request):
        raise httpx.ConnectError("boom", request=request)

    with pytest.raises(LedgerApiError) as ei:
        _call(handler, lambda c: c.get_item("1"))
    assert ei.value.code == "NETWORK_ERROR"


def test_update_with_fresh_token_retries_once_then_gives_up():
    server = FakeLedgerServer()
    rid = server.seed_item("Wax")
    server.stale_once.add(rid)

    updated = _call(server.handle, lambda c: c.update_with_fresh_token("item", rid, {"Name": "Wax 2"}))
    assert updated["Name"] == "Wax 2"
    assert [u["SyncToken"] for u in server.updates("item")] == ["0", "1"]

    def always_stale(request):
        if request.method == "GET":
            return httpx.Response(200, json={"Item": {"Id": "1", "SyncToken": "3"}})
        return httpx.Response(400, json={"Fault": {"Error": [{"Message": "Stale Object Error", "code": "5010"}]}})

    with pytest.raises(LedgerConflictError):
        _call(always_stale, lambda c: c.update_with_fresh_token("item", "1", {"Name": "x"}))
