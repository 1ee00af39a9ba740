"""Database connection factory.

One writer connection and one reader connection to the local SQLite store,
both in WAL mode so readers see a consistent snapshot while a write
transaction is open. All writes go through ``write_transaction``.
"""
from __future__ import annotations

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from agentlog import config
from agentlog.errors import WriteError

logger = logging.getLogger("agentlog.db")

_connection: aiosqlite.Connection | None = None
_read_connection: aiosqlite.Connection | None = None
_write_locks: "weakref.WeakKeyDictionary[aiosqlite.Connection, asyncio.Lock]" = weakref.WeakKeyDictionary()


async def open_connection(path: Path | str) -> aiosqlite.Connection:
    """Open and configure a connection. ``":memory:"`` is accepted for tests."""
    target = str(path)
    if target != ":memory:":
        Path(target).parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(target)
    conn.row_factory = aiosqlite.Row
    if target != ":memory:":
        await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.execute("PRAGMA busy_timeout=5000")
    return conn


async def get_connection() -> aiosqlite.Connection:
    """Return the singleton writer connection, creating it if needed."""
    global _connection
    if _connection is not None:
        return _connection
    _connection = await open_connection(config.DB_PATH)
    logger.info(f"Database connection established: {config.DB_PATH}")
    return _connection


async def get_read_connection() -> aiosqlite.Connection:
    """Return the singleton reader connection used by query operations."""
    global _read_connection
    if _read_connection is not None:
        return _read_connection
    _read_connection = await open_connection(config.DB_PATH)
    await _read_connection.execute("PRAGMA query_only=ON")
    return _read_connection


async def close_connection() -> None:
    """Close both connections."""
    global _connection, _read_connection
    if _read_connection is not None:
        await _read_connection.close()
        _read_connection = None
    if _connection is not None:
        await _connection.close()
        _connection = None
        logger.info("Database connection closed")


def _write_lock(db: aiosqlite.Connection) -> asyncio.Lock:
    lock = _write_locks.get(db)
    if lock is None:
        lock = asyncio.Lock()
        _write_locks[db] = lock
    return lock


@asynccontextmanager
async def write_transaction(db: aiosqlite.Connection) -> AsyncIterator[aiosqlite.Connection]:
    """Serialize writers and run the block inside ``BEGIN IMMEDIATE``.

    Commits on success. Database failures roll back and surface as
    ``WriteError``; cancellation and other exceptions roll back and propagate.
    """
    async with _write_lock(db):
        if db.in_transaction:
            await db.commit()
        try:
            await db.execute("BEGIN IMMEDIATE")
        except aiosqlite.Error as exc:
            raise WriteError(f"Could not open write transaction: {exc}") from exc
        try:
            yield db
        except aiosqlite.Error as exc:
            await db.rollback()
            raise WriteError(f"Write transaction rolled back: {exc}") from exc
        except BaseException:
            await db.rollback()
            raise
        try:
            await db.commit()
        except aiosqlite.Error as exc:
            await db.rollback()
            raise WriteError(f"Commit failed: {exc}") from exc
