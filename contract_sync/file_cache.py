"""Local cache of source documents for offline viewing."""
from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Optional

import requests

from contract_sync import config

logger = logging.getLogger("contract_sync.storage")

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


class FileCache:
    """Downloads remote documents into a local directory.

    On the web platform nothing is cached and callers keep the remote URL.
    """

    def __init__(
        self,
        directory: Path = config.FILE_CACHE_DIR,
        *,
        platform: str = config.PLATFORM,
        timeout: float = config.HTTP_TIMEOUT_SECONDS,
        http: Optional[requests.Session] = None,
    ):
        self.directory = Path(directory)
        self.platform = platform
        self.timeout = timeout
        self.http = http or requests.Session()

    def path_for(self, session_id: str) -> Path:
        safe_id = _UNSAFE_FILENAME_CHARS.sub("_", session_id)
        return self.directory / f"contract_{safe_id}.pdf"

    async def download(self, url: str, session_id: str) -> Optional[str]:
        """Return a local path for ``url``, or None when it cannot be cached."""
        if not url or not isinstance(url, str):
            logger.warning("Invalid document URL provided for download")
            return None
        if not session_id:
            logger.warning("Invalid session ID provided for document download")
            return None
        if self.platform == "web":
            return None

        target = self.path_for(session_id)
        if target.exists():
            return str(target)

        logger.info(f"Downloading document for offline use: {url}")
        try:
            return await asyncio.to_thread(self._fetch, url, target)
        except (requests.RequestException, OSError) as exc:
            logger.error(f"Failed to download document for {session_id}: {exc}")
            return None

    def _fetch(self, url: str, target: Path) -> Optional[str]:
        response = self.http.get(url, timeout=self.timeout)
        if response.status_code != 200:
            logger.warning(f"Document download failed with status {response.status_code}")
            return None
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(response.content)
        logger.info(f"Document cached at {target}")
        return str(target)
