from fastapi import Header, HTTPException
from typing import Optional
import hmac

from .config import settings
from .db import get_conn
from .ledger.context import open_sync_context


def require_sync_api_key(x_api_key: Optional[str] = Header(None, alias="X-Api-Key")):
    expected = settings.ledger_sync_api_key
    if not expected:
        raise HTTPException(status_code=503, detail="sync api key not configured")
    if not x_api_key or not hmac.compare_digest(x_api_key, expected):
        raise HTTPException(status_code=401, detail="invalid api key")
    return True


async def get_sync_context():
    async with get_conn() as conn:
        async with open_sync_context(conn) as ctx:
            yield ctx
