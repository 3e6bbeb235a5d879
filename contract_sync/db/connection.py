"""SQLite connection factory for the on-device key/value stores.

Each store gets its own database file so that the secure store and the
general-purpose store fail independently, the way separate platform
services do.
"""
from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

from contract_sync.db.sqlite_migrations import run_migrations

logger = logging.getLogger("contract_sync.db")


async def open_connection(db_path: Path | str) -> aiosqlite.Connection:
    """Open a store database (``":memory:"`` allowed) and migrate it."""
    target = str(db_path)
    if target != ":memory:":
        Path(target).parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(target)
    conn.row_factory = aiosqlite.Row
    if target != ":memory:":
        # Enable WAL mode for better concurrent read performance
        await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA busy_timeout=5000")
    await run_migrations(conn)
    logger.info(f"Store connection established: {target}")
    return conn


async def close_connection(conn: aiosqlite.Connection | None) -> None:
    """Close a store connection; None is ignored."""
    if conn is None:
        return
    await conn.close()
    logger.info("Store connection closed")
