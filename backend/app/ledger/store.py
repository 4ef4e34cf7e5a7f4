from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

from . import settings as ledger_settings
from . import sync_log
from .models import MAX_ERROR_LENGTH, SyncLogEntry, SyncSettings

# A 'pending' claim older than this is treated as abandoned (crashed run).
STALE_CLAIM_AFTER = timedelta(minutes=10)

# Catalog tables: (table, price column).
CATALOG_TABLES = {
    "service": ("services", "flat_price"),
    "product": ("products", "retail_price"),
}


def _catalog_table(kind: str) -> tuple[str, str]:
    try:
        return CATALOG_TABLES[kind]
    except KeyError:
        raise ValueError(f"unknown catalog kind: {kind}") from None


class LocalStore:
    """Row-level reads/writes the sync code needs, over one psycopg async connection."""

    def __init__(self, conn):
        self.conn = conn

    async def _fetch_one(self, sql: str, params: tuple) -> Optional[dict]:
        async with self.conn.cursor() as cur:
            await cur.execute(sql, params)
            row = await cur.fetchone()
            return dict(row) if row else None

    async def _fetch_all(self, sql: str, params: tuple) -> list[dict]:
        async with self.conn.cursor() as cur:
            await cur.execute(sql, params)
            return [dict(r) for r in await cur.fetchall() or []]

    async def _execute(self, sql: str, params: tuple) -> None:
        async with self.conn.cursor() as cur:
            await cur.execute(sql, params)

    # Settings + log

    async def is_sync_enabled(self) -> bool:
        async with self.conn.cursor() as cur:
            return await ledger_settings.is_sync_enabled(cur)

    async def is_connected(self) -> bool:
        async with self.conn.cursor() as cur:
            return await ledger_settings.is_connected(cur)

    async def disconnect(self) -> None:
        async with self.conn.cursor() as cur:
            await ledger_settings.clear_tokens(cur)

    async def get_sync_settings(self) -> SyncSettings:
        async with self.conn.cursor() as cur:
            return await ledger_settings.get_sync_settings(cur)

    async def set_last_sync_at(self, ts: datetime) -> None:
        async with self.conn.cursor() as cur:
            await ledger_settings.set_setting(cur, "ledger_last_sync_at", ts.isoformat())

    async def log_sync(self, entry: SyncLogEntry) -> None:
        async with self.conn.cursor() as cur:
            await sync_log.log_sync(cur, entry)

    async def last_log_at(self, source: str) -> Optional[datetime]:
        async with self.conn.cursor() as cur:
            return await sync_log.last_log_at(cur, source)

    async def list_sync_log(self, **filters) -> list[dict[str, Any]]:
        async with self.conn.cursor() as cur:
            return await sync_log.list_sync_log(cur, **filters)

    # Customers

    async def get_customer(self, customer_id: str) -> Optional[dict]:
        return await self._fetch_one(
            """
            SELECT id, first_name, last_name, email, phone, remote_id, remote_synced_at, remote_display_name
            FROM customers
            WHERE id = %s
            """,
            (customer_id,),
        )

    async def mark_customer_synced(self, customer_id: str, remote_id: str, synced_at: datetime, display_name: str) -> None:
        await self._execute(
            """
            UPDATE customers
            SET remote_id = %s, remote_synced_at = %s, remote_display_name = %s
            WHERE id = %s
            """,
            (remote_id, synced_at, display_name, customer_id),
        )

    async def list_unlinked_customer_ids(self, customer_ids: Optional[list[str]] = None, limit: Optional[int] = None) -> list[str]:
        """Customers without a remote id; either among `customer_ids`, or (auto sweep) any with a name."""
        if customer_ids is not None:
            if not customer_ids:
                return []
            rows = await self._fetch_all(
                """
                SELECT id FROM customers
                WHERE id = ANY(%s) AND remote_id IS NULL
                ORDER BY created_at ASC
                """,
                (list(customer_ids),),
            )
        else:
            rows = await self._fetch_all(
                """
                SELECT id FROM customers
                WHERE remote_id IS NULL
                  AND (first_name IS NOT NULL OR last_name IS NOT NULL)
                ORDER BY created_at ASC
                LIMIT %s
                """,
                (int(limit or 50),),
            )
        return [str(r["id"]) for r in rows]

    # Catalog

    async def get_catalog_item(self, kind: str, item_id: str) -> Optional[dict]:
        table, price_col = _catalog_table(kind)
        return await self._fetch_one(
            f"SELECT id, name, {price_col} AS price, is_active, remote_id FROM {table} WHERE id = %s",
            (item_id,),
        )

    async def mark_catalog_item_synced(self, kind: str, item_id: str, remote_id: str) -> None:
        table, _ = _catalog_table(kind)
        await self._execute(f"UPDATE {table} SET remote_id = %s WHERE id = %s", (remote_id, item_id))

    async def list_active_catalog_ids(self, kind: str) -> list[str]:
        table, _ = _catalog_table(kind)
        rows = await self._fetch_all(f"SELECT id FROM {table} WHERE is_active = true ORDER BY name ASC", ())
        return [str(r["id"]) for r in rows]

    # Transactions

    async def get_transaction(self, transaction_id: str) -> Optional[dict]:
        return await self._fetch_one(
            """
            SELECT id, total_amount, discount_amount, created_at, customer_id, employee_id,
                   status, payment_method, receipt_number, coupon_id,
                   remote_id, remote_sync_status, remote_sync_error, remote_synced_at
            FROM transactions
            WHERE id = %s
            """,
            (transaction_id,),
        )

    async def get_transaction_lines(self, transaction_id: str) -> list[dict]:
        return await self._fetch_all(
            """
            SELECT id, service_id, product_id, quantity, unit_price, item_name
            FROM transaction_items
            WHERE transaction_id = %s
            ORDER BY created_at ASC, id ASC
            """,
            (transaction_id,),
        )

    async def get_employee_name(self, employee_id: Optional[str]) -> str:
        if not employee_id:
            return ""
        row = await self._fetch_one("SELECT first_name, last_name FROM employees WHERE id = %s", (employee_id,))
        if not row:
            return ""
        return f"{row.get('first_name') or ''} {row.get('last_name') or ''}".strip()

    async def get_coupon_code(self, coupon_id: Optional[str]) -> str:
        if not coupon_id:
            return ""
        row = await self._fetch_one("SELECT code FROM coupons WHERE id = %s", (coupon_id,))
        return (row or {}).get("code") or ""

    async def claim_transaction(self, transaction_id: str) -> bool:
        """
        Move a transaction to 'pending' only if nobody else holds it.

        Eligible: unsynced (NULL), failed, or a 'pending' claim older than
        STALE_CLAIM_AFTER. Returns False if another runner claimed it first.
        """
        row = await self._fetch_one(
            """
            UPDATE transactions
            SET remote_sync_status = 'pending', remote_sync_attempted_at = now()
            WHERE id = %s
              AND (
                remote_sync_status IS NULL
                OR remote_sync_status IN ('unsynced', 'failed')
                OR (
                  remote_sync_status = 'pending'
                  AND (remote_sync_attempted_at IS NULL OR remote_sync_attempted_at < now() - %s)
                )
              )
            RETURNING id
            """,
            (transaction_id, STALE_CLAIM_AFTER),
        )
        return row is not None

    async def mark_transaction_skipped(self, transaction_id: str) -> None:
        await self._execute(
            "UPDATE transactions SET remote_sync_status = 'skipped' WHERE id = %s",
            (transaction_id,),
        )

    async def mark_transaction_synced(self, transaction_id: str, remote_id: str, synced_at: datetime) -> None:
        await self._execute(
            """
            UPDATE transactions
            SET remote_id = %s, remote_sync_status = 'synced', remote_sync_error = NULL, remote_synced_at = %s
            WHERE id = %s
            """,
            (remote_id, synced_at, transaction_id),
        )

    async def mark_transaction_failed(self, transaction_id: str, error: str) -> None:
        await self._execute(
            """
            UPDATE transactions
            SET remote_sync_status = 'failed', remote_sync_error = %s
            WHERE id = %s AND remote_sync_status IS DISTINCT FROM 'synced'
            """,
            ((error or "")[:MAX_ERROR_LENGTH], transaction_id),
        )

    async def list_day_transactions(self, start: datetime, end: datetime) -> list[dict[str, Any]]:
        return await self._fetch_all(
            """
            SELECT id, customer_id, created_at
            FROM transactions
            WHERE status = 'completed'
              AND created_at >= %s AND created_at < %s
              AND (remote_sync_status IS NULL OR remote_sync_status IN ('unsynced', 'failed', 'pending'))
            ORDER BY created_at ASC, id ASC
            """,
            (start, end),
        )

    async def list_unsynced_transactions(self, since: Optional[datetime] = None, limit: Optional[int] = None) -> list[dict[str, Any]]:
        rows = await self._fetch_all(
            """
            SELECT id, total_amount
            FROM transactions
            WHERE status = 'completed'
              AND (remote_sync_status IS NULL OR remote_sync_status IN ('unsynced', 'failed'))
              AND (%s::timestamptz IS NULL OR created_at >= %s::timestamptz)
            ORDER BY created_at ASC, id ASC
            LIMIT %s
            """,
            (since, since, int(limit or 10000)),
        )
        return rows

    async def list_failed_transaction_ids(self, attempted_before: Optional[datetime] = None, limit: int = 10) -> list[str]:
        rows = await self._fetch_all(
            """
            SELECT id
            FROM transactions
            WHERE remote_sync_status = 'failed'
              AND (%s::timestamptz IS NULL OR remote_sync_attempted_at IS NULL OR remote_sync_attempted_at < %s::timestamptz)
            ORDER BY remote_sync_attempted_at ASC NULLS FIRST, created_at ASC
            LIMIT %s
            """,
            (attempted_before, attempted_before, int(limit)),
        )
        return [str(r["id"]) for r in rows]
