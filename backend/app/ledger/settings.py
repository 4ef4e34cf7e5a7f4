"""
Persisted sync settings.

Convention (shared with the admin UI):
  business_settings.key   = 'ledger_<name>'
  business_settings.value = JSON-encoded string, e.g. '"sandbox"', '"true"'
  feature_flags.key       = 'ledger_enabled'

Nothing here caches: every operation reads the current values on demand.
"""

from __future__ import annotations

import json
from typing import Any, Optional

from .models import SyncSettings

TOKEN_KEYS = (
    "ledger_access_token",
    "ledger_refresh_token",
    "ledger_realm_id",
    "ledger_token_expires_at",
)
CONNECTION_KEYS = ("ledger_realm_id", "ledger_access_token", "ledger_refresh_token")


def _clean(val: Any) -> str:
    if val is None:
        return ""
    if isinstance(val, bool):
        return "true" if val else "false"
    if not isinstance(val, str):
        return str(val)
    # Stored as JSON strings; tolerate both '"x"' and a bare x.
    if len(val) >= 2 and val.startswith('"') and val.endswith('"'):
        return val[1:-1]
    return val


def parse_sync_settings(raw: dict[str, str], *, enabled: bool = False) -> SyncSettings:
    return SyncSettings(
        enabled=enabled,
        environment="production" if raw.get("ledger_environment") == "production" else "sandbox",
        auto_sync_transactions=raw.get("ledger_auto_sync_transactions") != "false",
        auto_sync_customers=raw.get("ledger_auto_sync_customers") != "false",
        auto_sync_catalog=raw.get("ledger_auto_sync_catalog") != "false",
        income_account_id=raw.get("ledger_income_account_id") or "",
        deposit_account_id=raw.get("ledger_deposit_account_id") or "",
        auto_sync_interval=raw.get("ledger_auto_sync_interval") or "30",
        last_sync_at=raw.get("ledger_last_sync_at") or "",
    )


async def get_setting(cur, key: str) -> Optional[str]:
    await cur.execute("SELECT value FROM business_settings WHERE key = %s", (key,))
    row = await cur.fetchone()
    if not row:
        return None
    return _clean(row.get("value"))


async def set_setting(cur, key: str, value: str) -> None:
    await cur.execute(
        """
        INSERT INTO business_settings (key, value)
        VALUES (%s, %s)
        ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value
        """,
        (key, json.dumps(value)),
    )


async def _read_prefixed(cur) -> dict[str, str]:
    await cur.execute("SELECT key, value FROM business_settings WHERE key LIKE %s", ("ledger\\_%",))
    rows = await cur.fetchall()
    return {r["key"]: _clean(r.get("value")) for r in rows or []}


async def is_feature_enabled(cur) -> bool:
    await cur.execute("SELECT enabled FROM feature_flags WHERE key = 'ledger_enabled'")
    row = await cur.fetchone()
    return bool(row and row.get("enabled"))


async def is_connected(cur) -> bool:
    """True when the realm id and both OAuth tokens are present."""
    await cur.execute(
        "SELECT key, value FROM business_settings WHERE key = ANY(%s)",
        (list(CONNECTION_KEYS),),
    )
    rows = await cur.fetchall() or []
    values = {r["key"]: _clean(r.get("value")) for r in rows}
    return all(values.get(k) for k in CONNECTION_KEYS)


async def is_sync_enabled(cur) -> bool:
    # Feature flag AND a live connection.
    if not await is_feature_enabled(cur):
        return False
    return await is_connected(cur)


async def get_sync_settings(cur) -> SyncSettings:
    raw = await _read_prefixed(cur)
    enabled = await is_feature_enabled(cur)
    return parse_sync_settings(raw, enabled=enabled)


async def get_connection(cur) -> dict[str, str]:
    """Environment, realm id and access token for building a ledger client."""
    raw = await _read_prefixed(cur)
    return {
        "environment": "production" if raw.get("ledger_environment") == "production" else "sandbox",
        "realm_id": raw.get("ledger_realm_id") or "",
        "access_token": raw.get("ledger_access_token") or "",
    }


async def clear_tokens(cur) -> None:
    """Disconnect: blank out the OAuth tokens. Linked remote ids are kept."""
    for key in TOKEN_KEYS:
        await cur.execute(
            "UPDATE business_settings SET value = %s WHERE key = %s",
            ('""', key),
        )
