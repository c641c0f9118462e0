"""
Database connection pool and RLS-scoped connection managers.

All item access goes through user_conn() or system_conn(). The change feed
holds one long-lived connection per store from listener_conn(), outside the
pool, since LISTEN ties up a connection for as long as it is subscribed.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from uuid import UUID

import asyncpg

from engine.kernel.config import settings

pool: asyncpg.Pool | None = None
# DSN the pool was opened with; listener connections follow it
_dsn: str | None = None


async def init_pool(dsn: str | None = None) -> None:
    """
    Initialize the connection pool.
    Called once at startup, before any store is used.
    """
    global pool, _dsn
    _dsn = dsn or settings.require_database_url()
    pool = await asyncpg.create_pool(
        dsn=_dsn,
        min_size=2,
        max_size=20,
        command_timeout=60,
        init=_init_connection,
    )


async def close_pool() -> None:
    """Close the connection pool. Called at shutdown."""
    global pool
    if pool is not None:
        await pool.close()
        pool = None


async def _init_connection(conn: asyncpg.Connection) -> None:
    """
    Initialize each new connection.
    Item and user ids travel through the kernel as strings; decode them so.
    """
    await conn.set_type_codec(
        "uuid",
        encoder=str,
        decoder=str,
        schema="pg_catalog",
    )


@asynccontextmanager
async def user_conn(user_id: str | UUID):
    """
    Acquire a database connection scoped to a specific user via RLS.

    Every query through this connection only sees items of lists the user
    is a member of, and can only write where the user is an editor or owner.
    Enforced by Postgres RLS policies.

    Usage:
        async with user_conn(user_id) as conn:
            rows = await conn.fetch("SELECT * FROM items WHERE list_id = $1", list_id)

    Yields:
        asyncpg.Connection with RLS context set, inside a transaction
    """
    if pool is None:
        raise RuntimeError("Database pool not initialized. Call init_pool() first.")

    async with pool.acquire() as conn:
        async with conn.transaction():
            # All policies read current_setting('app.user_id') via get_app_user_id()
            await conn.execute(
                "SELECT set_config('app.user_id', $1, true)",
                str(user_id),
            )
            yield conn


@asynccontextmanager
async def system_conn():
    """
    Acquire a database connection without user scoping.

    For fixtures, migrations and membership administration only. Never use
    it to serve a user's items.

    Yields:
        asyncpg.Connection without RLS scoping
    """
    if pool is None:
        raise RuntimeError("Database pool not initialized. Call init_pool() first.")

    async with pool.acquire() as conn:
        async with conn.transaction():
            # Empty app.user_id is the system bypass in every policy
            await conn.execute("SELECT set_config('app.user_id', '', true)")
            yield conn


async def listener_conn(dsn: str | None = None) -> asyncpg.Connection:
    """
    Open a dedicated connection for LISTEN.
    The caller owns it and must close it.
    """
    conn = await asyncpg.connect(dsn=dsn or _dsn or settings.require_database_url())
    await _init_connection(conn)
    return conn
