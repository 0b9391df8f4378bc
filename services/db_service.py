# services/db_service.py
"""
Shared asyncpg pool for the Postgres ledger store.

Statements go through `_timed`, which logs anything slower than
DB_SLOW_QUERY_MS. Transactions are explicit: the award commit is the only
multi-statement write and it uses `run_in_transaction`. Inside
`pinned_connection` every helper reuses the pinned connection instead of the pool.
"""
from __future__ import annotations

import asyncio
import contextvars
from contextlib import asynccontextmanager
from time import monotonic
from typing import Any, AsyncIterator, List, Optional
from urllib.parse import urlparse

import asyncpg

from app.config import require_database_url, settings
from app.core.logging import get_logger

logger = get_logger()

APPLICATION_NAME = "xp-ledger"

_pool: asyncpg.Pool | None = None
_pool_lock = asyncio.Lock()
_pinned_conn: contextvars.ContextVar[Optional[asyncpg.Connection]] = contextvars.ContextVar(
    "xp_db_pinned_conn", default=None
)


def normalize_database_url(raw_dsn: str) -> str:
    """asyncpg only understands the plain postgresql:// scheme."""
    dsn = raw_dsn.strip()
    for prefix in ("postgresql+asyncpg://", "postgres://"):
        if dsn.startswith(prefix):
            return "postgresql://" + dsn[len(prefix):]
    return dsn


async def ensure_pool() -> asyncpg.Pool:
    global _pool
    if _pool is not None:
        return _pool

    async with _pool_lock:
        if _pool is None:
            dsn = normalize_database_url(require_database_url())
            logger.info(
                "xp_db_pool_opening",
                dsn_host=urlparse(dsn).hostname,
                min_size=settings.DB_POOL_MIN_SIZE,
                max_size=settings.DB_POOL_MAX_SIZE,
            )
            # statement_cache_size=0 keeps the pool usable behind pgbouncer
            _pool = await asyncpg.create_pool(
                dsn=dsn,
                min_size=settings.DB_POOL_MIN_SIZE,
                max_size=max(settings.DB_POOL_MAX_SIZE, settings.DB_POOL_MIN_SIZE),
                statement_cache_size=0,
                server_settings={
                    "application_name": APPLICATION_NAME,
                    "statement_timeout": str(settings.DB_STATEMENT_TIMEOUT_MS),
                    "lock_timeout": str(settings.DB_LOCK_TIMEOUT_MS),
                },
            )
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None
        logger.info("xp_db_pool_closed")


async def _timed(conn: asyncpg.Connection, method: str, query: str, *args: Any) -> Any:
    started = monotonic()
    try:
        return await getattr(conn, method)(query, *args)
    finally:
        elapsed_ms = (monotonic() - started) * 1000
        if elapsed_ms >= settings.DB_SLOW_QUERY_MS:
            logger.warning(
                "xp_db_slow_query",
                method=method,
                duration_ms=round(elapsed_ms, 1),
                query=query.strip().splitlines()[0][:160],
            )


@asynccontextmanager
async def connection() -> AsyncIterator[asyncpg.Connection]:
    pinned = _pinned_conn.get()
    if pinned is not None:
        yield pinned
        return
    pool = await ensure_pool()
    async with pool.acquire() as conn:
        yield conn


@asynccontextmanager
async def pinned_connection() -> AsyncIterator[asyncpg.Connection]:
    """
    Hold one pooled connection and route every helper called inside the block
    through it, so a caller holding a session lock never needs a second
    connection. Statements inside the block must run one at a time.
    """
    async with connection() as conn:
        token = _pinned_conn.set(conn)
        try:
            yield conn
        finally:
            _pinned_conn.reset(token)


@asynccontextmanager
async def run_in_transaction() -> AsyncIterator[asyncpg.Connection]:
    """Yield a connection inside a transaction; any exception rolls it back."""
    async with connection() as conn:
        async with conn.transaction():
            yield conn


async def fetch(query: str, *args: Any) -> List[asyncpg.Record]:
    async with connection() as conn:
        return await _timed(conn, "fetch", query, *args)


async def fetchrow(query: str, *args: Any) -> Optional[asyncpg.Record]:
    async with connection() as conn:
        return await _timed(conn, "fetchrow", query, *args)


async def execute(query: str, *args: Any) -> str:
    async with connection() as conn:
        return await _timed(conn, "execute", query, *args)


async def fetchrow_with_conn(conn: asyncpg.Connection, query: str, *args: Any) -> Optional[asyncpg.Record]:
    return await _timed(conn, "fetchrow", query, *args)


async def execute_with_conn(conn: asyncpg.Connection, query: str, *args: Any) -> str:
    return await _timed(conn, "execute", query, *args)
