import json
import re
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx

from backend.app.ledger.client import LedgerClient
from backend.app.ledger.context import SyncContext
from backend.app.ledger.models import SyncSettings
from backend.app.ledger.store import STALE_CLAIM_AFTER

_QUERY_RE = re.compile(r"^SELECT \* FROM (\w+)(?: WHERE (\w+) = '(.*)')?(?: MAXRESULTS \d+)?$", re.DOTALL)


def _fault(code: str, message: str, status: int = 400) -> httpx.Response:
    return httpx.Response(status, json={"Fault": {"Error": [{"Message": message, "Detail": message, "code": code}]}})


class FakeLedgerServer:
    """In-memory stand-in for the ledger's REST API, served through httpx.MockTransport."""

    def __init__(self):
        self.customers = {}
        self.items = {}
        self.receipts = {}
        self.accounts = {}
        self.company = {"CompanyName": "Shine Auto Spa", "Country": "US"}
        self.calls = []
        self._next_id = 100
        # DisplayNames that exist remotely but are invisible to search (e.g. inactive records).
        self.hidden_customer_names = set()
        # Remote ids whose next update is rejected as stale (someone else wrote first).
        self.stale_once = set()
        self.fail_receipts_with = None

    def _new_id(self) -> str:
        self._next_id += 1
        return str(self._next_id)

    def seed_customer(self, name: str) -> str:
        rid = self._new_id()
        self.customers[rid] = {"Id": rid, "SyncToken": "0", "DisplayName": name}
        return rid

    def seed_item(self, name: str, type_: str = "Service") -> str:
        rid = self._new_id()
        self.items[rid] = {"Id": rid, "SyncToken": "0", "Name": name, "Type": type_}
        return rid

    def seed_account(self, name: str, account_type: str = "Income") -> str:
        rid = self._new_id()
        self.accounts[rid] = {"Id": rid, "Name": name, "AccountType": account_type}
        return rid

    def count(self, method: str, resource: str) -> int:
        return sum(1 for c in self.calls if c[0] == method and c[1] == resource)

    def creates(self, resource: str) -> list:
        return [c[2] for c in self.calls if c[0] == "POST" and c[1] == resource and "Id" not in (c[2] or {})]

    def updates(self, resource: str) -> list:
        return [c[2] for c in self.calls if c[0] == "POST" and c[1] == resource and "Id" in (c[2] or {})]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        parts = request.url.path.split("/")
        # /v3/company/<realm>/<resource>[/<id>]
        resource = parts[4]
        rid = parts[5] if len(parts) > 5 else None
        body = json.loads(request.content) if request.content else None
        self.calls.append((request.method, resource, body))

        if resource == "query":
            return self._query(request.url.params["query"])
        if resource in {"customer", "item"}:
            table = self.customers if resource == "customer" else self.items
            key = "Customer" if resource == "customer" else "Item"
            if request.method == "GET":
                if rid not in table:
                    return _fault("610", "Object Not Found", 400)
                return httpx.Response(200, json={key: table[rid]})
            return self._write(table, key, body)
        if resource == "salesreceipt":
            return self._receipt(body)
        if resource == "companyinfo" and request.method == "GET":
            return httpx.Response(200, json={"CompanyInfo": {**self.company, "Id": rid}})
        return httpx.Response(404, json={})

    def _query(self, q: str) -> httpx.Response:
        m = _QUERY_RE.match(q)
        entity, field = m.group(1), m.group(2)
        table = {"Customer": self.customers, "Item": self.items, "Account": self.accounts}[entity]
        rows = list(table.values())
        if field:
            value = m.group(3).replace("\\'", "'")
            rows = [r for r in rows if r.get(field) == value]
        return httpx.Response(200, json={"QueryResponse": {entity: rows} if rows else {}})

    def _write(self, table: dict, key: str, body: dict) -> httpx.Response:
        if "Id" in body:
            current = table.get(body["Id"])
            if current is None:
                return _fault("610", "Object Not Found")
            if body["Id"] in self.stale_once:
                self.stale_once.discard(body["Id"])
                current["SyncToken"] = str(int(current["SyncToken"]) + 1)
                return _fault("5010", "Stale Object Error")
            if body.get("SyncToken") != current["SyncToken"]:
                return _fault("5010", "Stale Object Error")
            current.update({k: v for k, v in body.items() if k != "SyncToken"})
            current["SyncToken"] = str(int(current["SyncToken"]) + 1)
            return httpx.Response(200, json={key: current})

        if key == "Customer":
            name = body.get("DisplayName")
            taken = name in self.hidden_customer_names or any(r["DisplayName"] == name for r in table.values())
            if taken:
                return _fault("6240", "Duplicate Name Exists Error")
        rid = self._new_id()
        table[rid] = {**body, "Id": rid, "SyncToken": "0"}
        return httpx.Response(200, json={key: table[rid]})

    def _receipt(self, body: dict) -> httpx.Response:
        if self.fail_receipts_with:
            return _fault(*self.fail_receipts_with)
        total = Decimal("0")
        for line in body.get("Line") or []:
            amount = Decimal(str(line["Amount"]))
            total += -amount if line["DetailType"] == "DiscountLineDetail" else amount
        rid = self._new_id()
        self.receipts[rid] = {**body, "Id": rid, "SyncToken": "0", "TotalAmt": float(total)}
        return httpx.Response(200, json={"SalesReceipt": self.receipts[rid]})


class FakeStore:
    """In-memory LocalStore with the same async surface."""

    def __init__(self, *, enabled=True, connected=True, income_account_id="79", deposit_account_id=""):
        self.enabled = enabled
        self.connected = connected
        self.settings = SyncSettings(
            enabled=enabled,
            income_account_id=income_account_id,
            deposit_account_id=deposit_account_id,
        )
        self.customers = {}
        self.catalog = {"service": {}, "product": {}}
        self.transactions = {}
        self.lines = {}
        self.employees = {}
        self.coupons = {}
        self.logs = []
        self.claim_calls = []

    # seeding helpers

    def add_customer(self, cid, first_name=None, last_name=None, phone=None, email=None, remote_id=None, created_at=None):
        self.customers[cid] = {
            "id": cid,
            "first_name": first_name,
            "last_name": last_name,
            "email": email,
            "phone": phone,
            "remote_id": remote_id,
            "remote_synced_at": None,
            "remote_display_name": None,
            "created_at": created_at or datetime(2024, 1, 1, tzinfo=timezone.utc),
        }
        return self.customers[cid]

    def add_catalog_item(self, kind, item_id, name, price, remote_id=None, is_active=True):
        self.catalog[kind][item_id] = {"id": item_id, "name": name, "price": Decimal(str(price)), "is_active": is_active, "remote_id": remote_id}
        return self.catalog[kind][item_id]

    def add_transaction(self, tid, total, *, created_at=None, customer_id=None, lines=(), discount=0, status="completed",
                        sync_status=None, remote_id=None, receipt_number=None, payment_method="cash", employee_id=None, coupon_id=None):
        self.transactions[tid] = {
            "id": tid,
            "total_amount": Decimal(str(total)),
            "discount_amount": Decimal(str(discount)),
            "created_at": created_at or datetime(2024, 3, 9, 20, 0, tzinfo=timezone.utc),
            "customer_id": customer_id,
            "employee_id": employee_id,
            "status": status,
            "payment_method": payment_method,
            "receipt_number": receipt_number,
            "coupon_id": coupon_id,
            "remote_id": remote_id,
            "remote_sync_status": sync_status,
            "remote_sync_error": None,
            "remote_synced_at": None,
            "remote_sync_attempted_at": None,
        }
        self.lines[tid] = [
            {
                "id": f"{tid}-line-{i}",
                "service_id": ln.get("service_id"),
                "product_id": ln.get("product_id"),
                "quantity": ln.get("quantity", 1),
                "unit_price": Decimal(str(ln.get("unit_price", 0))),
                "item_name": ln.get("item_name", ""),
            }
            for i, ln in enumerate(lines)
        ]
        return self.transactions[tid]

    # settings + log

    async def is_sync_enabled(self):
        return self.enabled and self.connected

    async def is_connected(self):
        return self.connected

    async def disconnect(self):
        self.connected = False

    async def get_sync_settings(self):
        return replace(self.settings, enabled=self.enabled)

    async def set_last_sync_at(self, ts):
        self.settings = replace(self.settings, last_sync_at=ts.isoformat())

    async def log_sync(self, entry):
        if entry.created_at is None:
            entry.created_at = datetime.now(timezone.utc)
        self.logs.append(entry)

    async def last_log_at(self, source):
        times = [e.created_at for e in self.logs if e.source == source]
        return max(times) if times else None

    async def list_sync_log(self, **filters):
        return [e.to_dict() for e in reversed(self.logs)]

    # customers

    async def get_customer(self, customer_id):
        row = self.customers.get(customer_id)
        return dict(row) if row else None

    async def mark_customer_synced(self, customer_id, remote_id, synced_at, display_name):
        self.customers[customer_id].update(remote_id=remote_id, remote_synced_at=synced_at, remote_display_name=display_name)

    async def list_unlinked_customer_ids(self, customer_ids=None, limit=None):
        rows = sorted(self.customers.values(), key=lambda r: r["created_at"])
        if customer_ids is not None:
            wanted = set(customer_ids)
            return [r["id"] for r in rows if r["id"] in wanted and not r["remote_id"]]
        named = [r["id"] for r in rows if not r["remote_id"] and (r["first_name"] or r["last_name"])]
        return named[: limit or 50]

    # catalog

    async def get_catalog_item(self, kind, item_id):
        row = self.catalog[kind].get(item_id)
        return dict(row) if row else None

    async def mark_catalog_item_synced(self, kind, item_id, remote_id):
        self.catalog[kind][item_id]["remote_id"] = remote_id

    async def list_active_catalog_ids(self, kind):
        rows = sorted(self.catalog[kind].values(), key=lambda r: r["name"])
        return [r["id"] for r in rows if r["is_active"]]

    # transactions

    async def get_transaction(self, transaction_id):
        row = self.transactions.get(transaction_id)
        return dict(row) if row else None

    async def get_transaction_lines(self, transaction_id):
        return [dict(ln) for ln in self.lines.get(transaction_id, [])]

    async def get_employee_name(self, employee_id):
        return self.employees.get(employee_id, "") if employee_id else ""

    async def get_coupon_code(self, coupon_id):
        return self.coupons.get(coupon_id, "") if coupon_id else ""

    async def claim_transaction(self, transaction_id):
        self.claim_calls.append(transaction_id)
        row = self.transactions[transaction_id]
        now = datetime.now(timezone.utc)
        status = row["remote_sync_status"]
        attempted = row["remote_sync_attempted_at"]
        stale_pending = status == "pending" and (attempted is None or attempted < now - STALE_CLAIM_AFTER)
        if status in (None, "unsynced", "failed") or stale_pending:
            row.update(remote_sync_status="pending", remote_sync_attempted_at=now)
            return True
        return False

    async def mark_transaction_skipped(self, transaction_id):
        self.transactions[transaction_id]["remote_sync_status"] = "skipped"

    async def mark_transaction_synced(self, transaction_id, remote_id, synced_at):
        self.transactions[transaction_id].update(
            remote_id=remote_id, remote_sync_status="synced", remote_sync_error=None, remote_synced_at=synced_at
        )

    async def mark_transaction_failed(self, transaction_id, error):
        row = self.transactions[transaction_id]
        if row["remote_sync_status"] != "synced":
            row.update(remote_sync_status="failed", remote_sync_error=(error or "")[:1000])

    async def list_day_transactions(self, start, end):
        rows = [
            r for r in self.transactions.values()
            if r["status"] == "completed"
            and start <= r["created_at"] < end
            and r["remote_sync_status"] in (None, "unsynced", "failed", "pending")
        ]
        rows.sort(key=lambda r: (r["created_at"], r["id"]))
        return [{"id": r["id"], "customer_id": r["customer_id"], "created_at": r["created_at"]} for r in rows]

    async def list_unsynced_transactions(self, since=None, limit=None):
        rows = [
            r for r in self.transactions.values()
            if r["status"] == "completed"
            and r["remote_sync_status"] in (None, "unsynced", "failed")
            and (since is None or r["created_at"] >= since)
        ]
        rows.sort(key=lambda r: (r["created_at"], r["id"]))
        return [{"id": r["id"], "total_amount": r["total_amount"]} for r in rows[: limit or 10000]]

    async def list_failed_transaction_ids(self, attempted_before=None, limit=10):
        rows = [
            r for r in self.transactions.values()
            if r["remote_sync_status"] == "failed"
            and (attempted_before is None or r["remote_sync_attempted_at"] is None or r["remote_sync_attempted_at"] < attempted_before)
        ]
        rows.sort(key=lambda r: (r["remote_sync_attempted_at"] or datetime.min.replace(tzinfo=timezone.utc), r["created_at"]))
        return [r["id"] for r in rows[:limit]]


class FlakyStore(FakeStore):
    """FakeStore whose row reads fail for the ids in `broken`, like a dropped connection."""

    def __init__(self, *args, broken=(), **kwargs):
        super().__init__(*args, **kwargs)
        self.broken = set(broken)

    def _check(self, row_id):
        if row_id in self.broken:
            raise RuntimeError("connection reset")

    async def get_customer(self, customer_id):
        self._check(customer_id)
        return await super().get_customer(customer_id)

    async def get_catalog_item(self, kind, item_id):
        self._check(item_id)
        return await super().get_catalog_item(kind, item_id)

    async def get_transaction(self, transaction_id):
        self._check(transaction_id)
        return await super().get_transaction(transaction_id)


def make_context(store, server=None, **kwargs) -> SyncContext:
    """Build inside a running event loop (the client owns an httpx.AsyncClient)."""
    client = LedgerClient("realm-1", "token-1", "sandbox", transport=server.transport()) if server is not None else None
    kwargs.setdefault("delay", 0)
    return SyncContext(store=store, client=client, **kwargs)


def days_ago(n: int) -> datetime:
    return datetime.now(timezone.utc) - timedelta(days=n)
