"""
Append-only audit trail of ledger sync attempts (`ledger_sync_log`).

Sync code only ever inserts; reads here serve the admin export and the
auto-sync interval check.
"""

from __future__ import annotations

import csv
import io
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

from .models import MAX_ERROR_LENGTH, SyncLogEntry


PERIOD_DAYS = {"7d": 7, "30d": 30, "90d": 90}
EXPORT_LIMIT = 5000
CSV_COLUMNS = ["Date", "Entity Type", "Entity ID", "Action", "Status", "Error", "Remote ID", "Source", "Duration (ms)"]


async def log_sync(cur, entry: SyncLogEntry) -> None:
    await cur.execute(
        """
        INSERT INTO ledger_sync_log
          (entity_type, entity_id, action, remote_id, status, error_message,
           request_payload, response_payload, duration_ms, source, created_at)
        VALUES
          (%s, %s, %s, %s, %s, %s, %s::jsonb, %s::jsonb, %s, %s, COALESCE(%s, now()))
        """,
        (
            entry.entity_type,
            str(entry.entity_id),
            entry.action,
            entry.remote_id,
            entry.status,
            (entry.error_message or None) and entry.error_message[:MAX_ERROR_LENGTH],
            json.dumps(entry.request_payload, default=str) if entry.request_payload is not None else None,
            json.dumps(entry.response_payload, default=str) if entry.response_payload is not None else None,
            int(entry.duration_ms or 0),
            entry.source,
            entry.created_at,
        ),
    )


async def last_log_at(cur, source: str) -> Optional[datetime]:
    await cur.execute(
        """
        SELECT created_at
        FROM ledger_sync_log
        WHERE source = %s
        ORDER BY created_at DESC
        LIMIT 1
        """,
        (source,),
    )
    row = await cur.fetchone()
    return row["created_at"] if row else None


def period_start(period: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """Start of an export period; 'all' means no lower bound, unknown values mean 30d."""
    if period == "all":
        return None
    now = now or datetime.now(timezone.utc)
    return now - timedelta(days=PERIOD_DAYS.get(period, 30))


async def list_sync_log(
    cur,
    *,
    period: str = "30d",
    status: str = "all",
    entity_type: str = "all",
    now: Optional[datetime] = None,
) -> list[dict[str, Any]]:
    where = []
    params: list[Any] = []
    since = period_start(period, now)
    if since is not None:
        where.append("created_at >= %s")
        params.append(since)
    if status != "all":
        where.append("status = %s")
        params.append(status)
    if entity_type != "all":
        where.append("entity_type = %s")
        params.append(entity_type)
    sql = """
        SELECT id, entity_type, entity_id, action, remote_id, status, error_message,
               duration_ms, source, created_at
        FROM ledger_sync_log
    """
    if where:
        sql += " WHERE " + " AND ".join(where)
    sql += " ORDER BY created_at DESC LIMIT %s"
    params.append(EXPORT_LIMIT)
    await cur.execute(sql, tuple(params))
    return [dict(r) for r in await cur.fetchall() or []]


def sync_log_csv(rows: Iterable[dict[str, Any]]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for r in rows:
        created_at = r.get("created_at")
        writer.writerow(
            [
                created_at.isoformat() if isinstance(created_at, datetime) else (created_at or ""),
                r.get("entity_type") or "",
                r.get("entity_id") or "",
                r.get("action") or "",
                r.get("status") or "",
                r.get("error_message") or "",
                r.get("remote_id") or "",
                r.get("source") or "",
                r.get("duration_ms") if r.get("duration_ms") is not None else "",
            ]
        )
    return buf.getvalue()
