"""Stable per-install device identifier."""
from __future__ import annotations

import asyncio
import logging
import secrets
import time
from typing import Optional

from contract_sync.db.key_value import KeyValueBackend
from contract_sync.errors import BackendError

logger = logging.getLogger("contract_sync.device")

DEVICE_ID_KEY = "device_id"
BACKUP_DEVICE_ID_KEY = f"backup_{DEVICE_ID_KEY}"


def _now_ms() -> int:
    return int(time.time() * 1000)


def generate_device_id() -> str:
    return f"device_{_now_ms()}_{secrets.token_hex(16)}"


def _short(device_id: str) -> str:
    return f"{device_id[:8]}..."


class DeviceIdentity:
    """Resolves the device id through the primary store, then a backup copy.

    The backup copy lives in the general store so it survives a failure of
    the secure store. When both fail a timestamp-only id is returned.
    """

    def __init__(self, kv: KeyValueBackend):
        self.kv = kv
        self._cached: Optional[str] = None
        self._lock = asyncio.Lock()

    async def get_or_create(self) -> str:
        if self._cached:
            return self._cached
        async with self._lock:
            if self._cached:
                return self._cached
            return await self._resolve()

    async def _resolve(self) -> str:
        try:
            existing = await self.kv.get(DEVICE_ID_KEY, strict=True)
            if existing:
                logger.info(f"Found existing device ID: {_short(existing)}")
                self._cached = existing
                return existing

            backup = await self.kv.get(BACKUP_DEVICE_ID_KEY, large=True)
            if backup:
                logger.info(f"Primary device ID missing, restoring backup: {_short(backup)}")
                await self.kv.set(DEVICE_ID_KEY, backup)
                self._cached = backup
                return backup

            device_id = generate_device_id()
            await self.kv.set(DEVICE_ID_KEY, device_id)
            try:
                await self.kv.set(BACKUP_DEVICE_ID_KEY, device_id, large=True)
            except BackendError as exc:
                logger.warning(f"Failed to store backup device ID: {exc}")

            logger.info(f"Generated new device ID: {_short(device_id)}")
            self._cached = device_id
            return device_id
        except BackendError as exc:
            logger.error(f"Failed to get/create device ID: {exc}")
            return await self._recover()

    async def _recover(self) -> str:
        try:
            backup = await self.kv.get(BACKUP_DEVICE_ID_KEY, large=True, strict=True)
        except BackendError as exc:
            logger.warning(f"Backup device ID unavailable: {exc}")
            backup = None
        if backup:
            logger.info("Retrieved device ID from backup storage")
            self._cached = backup
            return backup

        fallback_id = f"device_fallback_{_now_ms()}"
        logger.warning(f"Using degraded timestamp-only device ID: {_short(fallback_id)}")
        try:
            await self.kv.set(DEVICE_ID_KEY, fallback_id)
        except BackendError as exc:
            logger.error(f"Failed to store fallback device ID: {exc}")
        return fallback_id
