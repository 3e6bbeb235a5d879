"""Concrete on-device stores behind the KeyValueBackend.

- ``SecureStore``: keychain-like, values capped at a few kilobytes.
- ``GeneralStore``: unlimited general-purpose local storage.
- ``BrowserStore``: browser-style local storage persisted as one JSON file.

All stores work on plain string keys and string values; serialization of
structured data is the caller's job.
"""
from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol

import aiosqlite

from contract_sync.errors import BackendError, ValueTooLargeError

logger = logging.getLogger("contract_sync.storage")


class StoreBackend(Protocol):
    name: str

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...


class SqliteStore:
    """aiosqlite-backed key/value table."""

    name = "sqlite"

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get(self, key: str) -> Optional[str]:
        try:
            async with self.db.execute("SELECT value FROM kv_store WHERE key = ?", (key,)) as cur:
                row = await cur.fetchone()
        except aiosqlite.Error as exc:
            raise BackendError(f"{self.name} read failed: {exc}", backend=self.name, key=key) from exc
        return row[0] if row else None

    async def set(self, key: str, value: str) -> None:
        now = datetime.now(timezone.utc).isoformat()
        try:
            await self.db.execute(
                """INSERT INTO kv_store (key, value, updated_at, size_bytes)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET
                       value=excluded.value, updated_at=excluded.updated_at,
                       size_bytes=excluded.size_bytes""",
                (key, value, now, len(value.encode("utf-8"))),
            )
            await self.db.commit()
        except aiosqlite.Error as exc:
            raise BackendError(f"{self.name} write failed: {exc}", backend=self.name, key=key) from exc

    async def delete(self, key: str) -> None:
        try:
            await self.db.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            await self.db.commit()
        except aiosqlite.Error as exc:
            raise BackendError(f"{self.name} delete failed: {exc}", backend=self.name, key=key) from exc


class SecureStore(SqliteStore):
    """Size-limited secure store."""

    name = "secure"

    def __init__(self, db: aiosqlite.Connection, max_bytes: int = 2048):
        super().__init__(db)
        self.max_bytes = max_bytes

    async def set(self, key: str, value: str) -> None:
        size = len(value.encode("utf-8"))
        if size > self.max_bytes:
            raise ValueTooLargeError(
                f"value of {size} bytes exceeds secure store limit of {self.max_bytes}",
                backend=self.name,
                key=key,
            )
        await super().set(key, value)


class GeneralStore(SqliteStore):
    """Unlimited general-purpose store."""

    name = "general"


class BrowserStore:
    """Browser-style local storage persisted as a single JSON document.

    ``path=None`` keeps everything in memory.
    """

    name = "browser"

    def __init__(self, path: Optional[Path] = None):
        self.path = path
        self._items: dict[str, str] = {}
        self._loaded = False
        self._lock = asyncio.Lock()

    def _read_file(self) -> dict[str, str]:
        if self.path is None or not self.path.exists():
            return {}
        content = self.path.read_text(encoding="utf-8")
        if not content.strip():
            return {}
        data = json.loads(content)
        return {str(k): str(v) for k, v in data.items()} if isinstance(data, dict) else {}

    def _write_file(self, items: dict[str, str]) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(items), encoding="utf-8")

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        try:
            self._items = await asyncio.to_thread(self._read_file)
        except (OSError, ValueError) as exc:
            raise BackendError(f"browser store unreadable: {exc}", backend=self.name) from exc
        self._loaded = True

    async def _commit(self, items: dict[str, str]) -> None:
        """Write ``items`` to disk, then adopt them as the in-memory state."""
        try:
            await asyncio.to_thread(self._write_file, items)
        except OSError as exc:
            raise BackendError(f"browser store write failed: {exc}", backend=self.name) from exc
        self._items = items

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            await self._ensure_loaded()
            return self._items.get(key)

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            await self._ensure_loaded()
            await self._commit({**self._items, key: value})

    async def delete(self, key: str) -> None:
        async with self._lock:
            await self._ensure_loaded()
            if key in self._items:
                await self._commit({k: v for k, v in self._items.items() if k != key})
