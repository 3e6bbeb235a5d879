"""Schema versioning for the key/value store databases."""
from __future__ import annotations

import logging
from typing import Awaitable, Callable

import aiosqlite

logger = logging.getLogger("contract_sync.db")


async def _v1_create_tables(db: aiosqlite.Connection) -> None:
    await db.executescript(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version   INTEGER NOT NULL,
            applied   TEXT NOT NULL DEFAULT (datetime('now'))
        );
        CREATE TABLE IF NOT EXISTS kv_store (
            key         TEXT PRIMARY KEY,
            value       TEXT NOT NULL,
            updated_at  TEXT NOT NULL
        );
        """
    )


async def _v2_size_tracking(db: aiosqlite.Connection) -> None:
    async with db.execute("PRAGMA table_info(kv_store)") as cur:
        columns = {row[1] for row in await cur.fetchall()}
    if "size_bytes" not in columns:
        await db.execute("ALTER TABLE kv_store ADD COLUMN size_bytes INTEGER DEFAULT 0")
    await db.execute("CREATE INDEX IF NOT EXISTS idx_kv_updated ON kv_store(updated_at DESC)")


MIGRATIONS: list[Callable[[aiosqlite.Connection], Awaitable[None]]] = [
    _v1_create_tables,
    _v2_size_tracking,
]
SCHEMA_VERSION = len(MIGRATIONS)


async def _current_version(db: aiosqlite.Connection) -> int:
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
    except aiosqlite.OperationalError:
        return 0
    return int(row[0]) if row and row[0] else 0


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Apply every migration newer than the recorded version. Idempotent."""
    current = await _current_version(db)
    if current >= SCHEMA_VERSION:
        logger.debug(f"Schema is up to date (version {current})")
        return

    logger.info(f"Running migrations: {current} -> {SCHEMA_VERSION}")
    for version, migration in enumerate(MIGRATIONS, start=1):
        if version > current:
            await migration(db)
    await db.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
    await db.commit()
    logger.info(f"Migrations complete, schema version {SCHEMA_VERSION}")
