"""
Thin async client for the accounting ledger's REST API (QuickBooks Online shaped).

Scope: the resource calls the sync code needs (Customer, Item, SalesReceipt,
plus lookups used by the admin settings page). The access token is read from
settings by the caller; refreshing it is handled elsewhere.
"""

from __future__ import annotations

from typing import Any, Optional
from urllib.parse import quote

import httpx

BASE_URLS = {
    "sandbox": "https://sandbox-quickbooks.api.intuit.com/v3/company",
    "production": "https://quickbooks.api.intuit.com/v3/company",
}
MINOR_VERSION = "73"

# Ledger fault codes we act on.
DUPLICATE_NAME_CODE = "6240"
STALE_OBJECT_CODE = "5010"


class LedgerApiError(Exception):
    def __init__(self, message: str, code: str = "API_ERROR", detail: str = "", status_code: int = 0):
        super().__init__(message)
        self.code = str(code or "API_ERROR")
        self.detail = detail or ""
        self.status_code = int(status_code or 0)


class LedgerConflictError(LedgerApiError):
    """The SyncToken sent with an update is no longer current."""


def _escape(value: str) -> str:
    return (value or "").replace("'", "\\'")


def _error_from_response(res: httpx.Response) -> LedgerApiError:
    try:
        body = res.json()
    except ValueError:
        body = {}
    fault = ((body or {}).get("Fault") or {}).get("Error") or [{}]
    first = fault[0] if fault else {}
    message = first.get("Message") or f"Ledger API error: {res.reason_phrase or res.status_code}"
    code = str(first.get("code") or "API_ERROR")
    cls = LedgerConflictError if code == STALE_OBJECT_CODE else LedgerApiError
    return cls(message, code, first.get("Detail") or "", res.status_code)


class LedgerClient:
    def __init__(
        self,
        realm_id: str,
        access_token: str,
        environment: str = "sandbox",
        *,
        timeout: float = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not realm_id or not access_token:
            raise LedgerApiError("Not connected to ledger", "NOT_CONNECTED")
        self.realm_id = realm_id
        base = BASE_URLS["production" if environment == "production" else "sandbox"]
        self._http = httpx.AsyncClient(
            base_url=f"{base}/{realm_id}/",
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def request(self, method: str, path: str, body: Optional[dict] = None) -> dict:
        sep = "&" if "?" in path else "?"
        url = f"{path}{sep}minorversion={MINOR_VERSION}"
        kwargs: dict[str, Any] = {}
        if body is not None and method in {"POST", "PUT"}:
            kwargs["json"] = body
        try:
            res = await self._http.request(method, url, **kwargs)
        except httpx.HTTPError as ex:
            raise LedgerApiError(f"Ledger request failed: {ex}", "NETWORK_ERROR") from ex
        if res.status_code == 401:
            raise LedgerApiError("Ledger rejected the access token", "UNAUTHORIZED", "", 401)
        if res.status_code >= 400:
            raise _error_from_response(res)
        return res.json()

    async def query(self, entity: str, where: str) -> list[dict]:
        q = quote(f"SELECT * FROM {entity} WHERE {where}", safe="")
        res = await self.request("GET", f"query?query={q}")
        return (res.get("QueryResponse") or {}).get(entity) or []

    # Customers

    async def create_customer(self, data: dict) -> dict:
        return (await self.request("POST", "customer", data))["Customer"]

    async def update_customer(self, data: dict) -> dict:
        # Requires Id and a current SyncToken.
        return (await self.request("POST", "customer", data))["Customer"]

    async def get_customer(self, remote_id: str) -> dict:
        return (await self.request("GET", f"customer/{remote_id}"))["Customer"]

    async def find_customer_by_name(self, display_name: str) -> Optional[dict]:
        rows = await self.query("Customer", f"DisplayName = '{_escape(display_name)}'")
        return rows[0] if rows else None

    # Items

    async def create_item(self, data: dict) -> dict:
        return (await self.request("POST", "item", data))["Item"]

    async def update_item(self, data: dict) -> dict:
        return (await self.request("POST", "item", data))["Item"]

    async def get_item(self, remote_id: str) -> dict:
        return (await self.request("GET", f"item/{remote_id}"))["Item"]

    async def find_item_by_name(self, name: str) -> Optional[dict]:
        rows = await self.query("Item", f"Name = '{_escape(name)}'")
        return rows[0] if rows else None

    async def fetch_sync_token(self, entity: str, remote_id: str) -> str:
        """Current revision token; only valid until the next write to that record."""
        if entity == "customer":
            current = await self.get_customer(remote_id)
        elif entity == "item":
            current = await self.get_item(remote_id)
        else:
            raise ValueError(f"unsupported entity: {entity}")
        return str(current.get("SyncToken") or "0")

    async def update_with_fresh_token(self, entity: str, remote_id: str, fields: dict) -> dict:
        """
        Fetch the current SyncToken, then submit the update. If another writer
        bumped the token in between, refetch and submit once more.
        """
        submit = self.update_customer if entity == "customer" else self.update_item
        for attempt in (1, 2):
            token = await self.fetch_sync_token(entity, remote_id)
            try:
                return await submit({**fields, "Id": remote_id, "SyncToken": token})
            except LedgerConflictError:
                if attempt == 2:
                    raise
        raise AssertionError("unreachable")

    # Sales receipts

    async def create_sales_receipt(self, data: dict) -> dict:
        return (await self.request("POST", "salesreceipt", data))["SalesReceipt"]

    # Settings lookups

    async def get_accounts(self, account_type: Optional[str] = None) -> list[dict]:
        if account_type:
            return await self.query("Account", f"AccountType = '{_escape(account_type)}'")
        q = quote("SELECT * FROM Account MAXRESULTS 1000", safe="")
        res = await self.request("GET", f"query?query={q}")
        return (res.get("QueryResponse") or {}).get("Account") or []

    async def get_company_info(self) -> dict:
        return (await self.request("GET", f"companyinfo/{self.realm_id}"))["CompanyInfo"]
