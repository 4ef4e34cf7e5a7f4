from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from ..config import settings
from . import settings as ledger_settings
from .client import LedgerClient
from .placeholders import PlaceholderResolver
from .store import LocalStore


@dataclass
class SyncContext:
    """Everything one sync run needs; built once per run and passed down."""

    store: LocalStore
    client: Optional[LedgerClient]
    resolver: PlaceholderResolver = field(default_factory=PlaceholderResolver)
    timezone: str = "America/Los_Angeles"
    delay: float = 0.1
    chunk_size: int = 25

    def ledger(self) -> LedgerClient:
        if self.client is None:
            raise RuntimeError("Not connected to ledger")
        return self.client

    async def pause(self) -> None:
        # Courtesy delay between ledger calls (rate limits).
        if self.delay > 0:
            await asyncio.sleep(self.delay)

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


@asynccontextmanager
async def open_sync_context(conn):
    store = LocalStore(conn)
    async with conn.cursor() as cur:
        connection = await ledger_settings.get_connection(cur)
    client = None
    if connection["realm_id"] and connection["access_token"]:
        client = LedgerClient(
            connection["realm_id"],
            connection["access_token"],
            connection["environment"],
            timeout=settings.ledger_http_timeout,
        )
    ctx = SyncContext(
        store=store,
        client=client,
        timezone=settings.ledger_timezone,
        delay=settings.ledger_sync_delay_ms / 1000.0,
        chunk_size=settings.ledger_sync_chunk_size,
    )
    try:
        yield ctx
    finally:
        if client is not None:
            await client.aclose()
