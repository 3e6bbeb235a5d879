"""Store factory: builds the KeyValueBackend from opened connections."""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import aiosqlite

from contract_sync import config
from contract_sync.db.backends import BrowserStore, GeneralStore, SecureStore
from contract_sync.db.key_value import KeyValueBackend


def get_key_value_backend(
    secure_db: aiosqlite.Connection,
    general_db: aiosqlite.Connection,
    browser_path: Optional[Path] = None,
    *,
    platform: str = config.PLATFORM,
) -> KeyValueBackend:
    return KeyValueBackend(
        SecureStore(secure_db, max_bytes=config.SECURE_STORE_MAX_BYTES),
        GeneralStore(general_db),
        BrowserStore(browser_path),
        platform=platform,
        size_threshold=config.SECURE_STORE_MAX_BYTES,
        chunk_size=config.CHUNK_SIZE,
        max_key_length=config.MAX_KEY_LENGTH,
    )
