"""Unified key/value facade over the secure, general and browser stores.

Routing is decided per call:

- web platform: every call goes to the browser store;
- values larger than the secure limit (or ``large=True``): general store;
- everything else: secure store first, general store on any secure failure
  or miss.

A key is kept in exactly one native store. After a successful write the
other native store's copy is dropped so a secure-first read never returns a
stale value that has since moved to the general store.
"""
from __future__ import annotations

import logging
import re
from typing import Optional

from contract_sync import config
from contract_sync.db.backends import StoreBackend
from contract_sync.errors import BackendError, InvalidKeyError, ValidationError
from contract_sync.observability import record_storage_fallback

logger = logging.getLogger("contract_sync.storage")

_DISALLOWED_KEY_CHARS = re.compile(r"[^a-zA-Z0-9._-]")
_TRUNCATION_MARKER = "_tr"


def normalize_key(key: object, max_length: int = config.MAX_KEY_LENGTH) -> str:
    """Return a storage-safe key or raise ``InvalidKeyError``."""
    if key is None or not isinstance(key, str):
        raise InvalidKeyError(f"storage key must be a string, got {type(key).__name__}")
    trimmed = key.strip()
    if not trimmed:
        raise InvalidKeyError("storage key must not be empty")

    sanitized = _DISALLOWED_KEY_CHARS.sub("_", trimmed)
    if sanitized[0].isdigit():
        sanitized = f"key_{sanitized}"
    if len(sanitized) > max_length:
        sanitized = sanitized[: max_length - len(_TRUNCATION_MARKER)] + _TRUNCATION_MARKER
    return sanitized


def _byte_size(value: str) -> int:
    return len(value.encode("utf-8"))


class KeyValueBackend:
    """Async get/set/delete with backend selection and secure->general fallback."""

    def __init__(
        self,
        secure: StoreBackend,
        general: StoreBackend,
        browser: StoreBackend,
        *,
        platform: str = "native",
        size_threshold: int = config.SECURE_STORE_MAX_BYTES,
        chunk_size: int = config.CHUNK_SIZE,
        max_key_length: int = config.MAX_KEY_LENGTH,
    ):
        self.secure = secure
        self.general = general
        self.browser = browser
        self.platform = platform
        self.size_threshold = size_threshold
        self.chunk_size = chunk_size
        self.max_key_length = max_key_length

    @property
    def is_web(self) -> bool:
        return self.platform == "web"

    def normalize(self, key: object) -> str:
        return normalize_key(key, self.max_key_length)

    # ── Reads ──────────────────────────────────────────────────────

    async def get(
        self,
        key: str,
        default: Optional[str] = None,
        *,
        large: bool = False,
        strict: bool = False,
    ) -> Optional[str]:
        """Read ``key``; returns ``default`` when absent.

        Read failures are logged and turned into ``default`` unless
        ``strict`` is set, in which case the final ``BackendError`` propagates.
        ``large=True`` reads the general store directly.
        """
        safe_key = self.normalize(key)
        try:
            value = await self._read(safe_key, large=large)
        except BackendError as exc:
            if strict:
                raise
            logger.warning(f"Storage read failed for {safe_key}: {exc}")
            return default
        return default if value is None else value

    async def _read(self, key: str, *, large: bool) -> Optional[str]:
        if self.is_web:
            return await self.browser.get(key)
        if large:
            return await self.general.get(key)

        try:
            value = await self.secure.get(key)
        except BackendError as exc:
            logger.debug(f"Secure read failed for {key}, using general store: {exc}")
            record_storage_fallback("get")
            return await self.general.get(key)
        if value is None:
            return await self.general.get(key)
        return value

    # ── Writes ─────────────────────────────────────────────────────

    async def set(self, key: str, value: str, *, large: bool = False) -> None:
        """Write ``value`` under ``key``; re-raises if the last store fails."""
        if not isinstance(value, str):
            raise ValidationError(f"value for {key!r} must be a string")
        safe_key = self.normalize(key)

        try:
            if self.is_web:
                await self.browser.set(safe_key, value)
                return
            if large or _byte_size(value) > self.size_threshold:
                await self.general.set(safe_key, value)
                await self._discard(self.secure, safe_key)
                return

            try:
                await self.secure.set(safe_key, value)
            except BackendError as exc:
                logger.debug(f"Secure write failed for {safe_key}, using general store: {exc}")
                record_storage_fallback("set")
                await self.general.set(safe_key, value)
                await self._discard(self.secure, safe_key)
                return
            await self._discard(self.general, safe_key)
        except BackendError as exc:
            logger.error(f"Storage write failed for {safe_key}: {exc}")
            raise

    async def delete(self, key: str) -> None:
        """Remove ``key`` everywhere it may live. Never raises for backend errors."""
        safe_key = self.normalize(key)
        stores = [self.browser] if self.is_web else [self.secure, self.general]
        for store in stores:
            await self._discard(store, safe_key)

    async def _discard(self, store: StoreBackend, key: str) -> None:
        try:
            await store.delete(key)
        except BackendError as exc:
            logger.warning(f"Delete of {key} from {store.name} store failed: {exc}")

    # ── Chunked values ─────────────────────────────────────────────

    async def set_large(self, key: str, value: str) -> bool:
        """Store ``value`` as ``chunk_size`` pieces under ``<key>_chunk_<i>``."""
        chunks = [value[i : i + self.chunk_size] for i in range(0, len(value), self.chunk_size)]
        try:
            await self.set(f"{key}_chunks", str(len(chunks)))
            for index, chunk in enumerate(chunks):
                await self.set(f"{key}_chunk_{index}", chunk)
        except BackendError as exc:
            logger.error(f"Chunked write failed for {key}: {exc}")
            return False
        return True

    async def get_large(self, key: str) -> Optional[str]:
        """Reassemble a chunked value; None if the count or any chunk is missing."""
        raw_count = await self.get(f"{key}_chunks")
        if raw_count is None:
            return None
        try:
            count = int(raw_count)
        except ValueError:
            logger.warning(f"Corrupt chunk count for {key}: {raw_count!r}")
            return None

        parts: list[str] = []
        for index in range(count):
            chunk = await self.get(f"{key}_chunk_{index}")
            if chunk is None:
                logger.warning(f"Missing chunk {index} of {count} for {key}")
                return None
            parts.append(chunk)
        return "".join(parts)

    async def delete_large(self, key: str) -> None:
        raw_count = await self.get(f"{key}_chunks")
        try:
            count = int(raw_count) if raw_count is not None else 0
        except ValueError:
            count = 0
        for index in range(count):
            await self.delete(f"{key}_chunk_{index}")
        await self.delete(f"{key}_chunks")
