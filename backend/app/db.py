import os
from psycopg.rows import dict_row
from contextlib import asynccontextmanager

# psycopg3 connection pooling lives in a separate package.
from psycopg_pool import AsyncConnectionPool

DATABASE_URL = os.getenv("APP_DATABASE_URL") or os.getenv("DATABASE_URL") or "postgresql://localhost/posledger"

def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default

# Pool sizing defaults are conservative for local/dev. Override in prod via env:
# - DB_POOL_MIN_SIZE / DB_POOL_MAX_SIZE
_POOL_MIN = _env_int("DB_POOL_MIN_SIZE", 1)
_POOL_MAX = _env_int("DB_POOL_MAX_SIZE", 5)

# Sync runs are long and write status fields as they go ('pending' must be
# visible to other readers right away), so connections run in autocommit.
# The pool is opened lazily by the first get_conn() / open_pool() call.
_pool = AsyncConnectionPool(
    conninfo=DATABASE_URL,
    min_size=_POOL_MIN,
    max_size=_POOL_MAX,
    kwargs={"row_factory": dict_row, "autocommit": True},
    open=False,
)


async def open_pool() -> None:
    await _pool.open()


@asynccontextmanager
async def get_conn():
    if _pool.closed:
        await _pool.open()
    async with _pool.connection() as conn:
        yield conn


async def close_pool() -> None:
    # Best-effort shutdown hook (e.g. uvicorn shutdown).
    try:
        await _pool.close()
    except Exception:
        pass
