"""Client for the remote contract analysis service.

Calls run ``requests`` in a worker thread so the event loop never blocks.
Non-2xx responses become ``NetworkError``; responses that mean "this session
does not exist" become ``NotFoundSemanticError``.
"""
from __future__ import annotations

import asyncio
import logging
import mimetypes
from pathlib import Path
from typing import Any, Optional
from urllib.parse import unquote, urlparse

import requests

from contract_sync import config
from contract_sync.errors import NetworkError, NotFoundSemanticError, is_session_not_found
from contract_sync.models import ContractFile

logger = logging.getLogger("contract_sync.api")


def _error_details(response: requests.Response) -> tuple[str, Optional[str]]:
    message = ""
    code = None
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for field in ("error", "message", "detail"):
            value = body.get(field)
            if isinstance(value, str) and value.strip():
                message = value.strip()
                break
        raw_code = body.get("code") or body.get("error_code")
        code = str(raw_code) if raw_code else None
    if not message:
        message = (response.text or "").strip()[:200] or response.reason or ""
    return f"HTTP {response.status_code}: {message}".strip(), code


def raise_for_status(response: requests.Response) -> None:
    if response.ok:
        return
    message, code = _error_details(response)
    error = NetworkError(message, status_code=response.status_code, code=code)
    if is_session_not_found(error):
        raise NotFoundSemanticError(message, status_code=response.status_code, code=code)
    raise error


def _local_path(uri: str) -> Path:
    parsed = urlparse(uri)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    return Path(uri)


class AnalysisApiClient:
    """Thin wrapper over the remote analysis API."""

    def __init__(
        self,
        base_url: str = config.API_BASE_URL,
        *,
        timeout: float = config.HTTP_TIMEOUT_SECONDS,
        upload_timeout: float = config.UPLOAD_TIMEOUT_SECONDS,
        http: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.upload_timeout = upload_timeout
        self.http = http or requests.Session()

    def _url(self, path: str, base_url: Optional[str] = None) -> str:
        root = (base_url or self.base_url).rstrip("/")
        return f"{root}/{path.lstrip('/')}"

    async def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        kwargs.setdefault("timeout", self.timeout)
        try:
            response = await asyncio.to_thread(self.http.request, method, url, **kwargs)
        except requests.RequestException as exc:
            raise NetworkError(f"{method} {url} failed: {exc}") from exc
        raise_for_status(response)
        return response

    @staticmethod
    def _json(response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise NetworkError(f"Invalid JSON from {response.url}", status_code=response.status_code) from exc

    # ── Analysis status ────────────────────────────────────────────

    async def get_session(self, session_id: str) -> dict[str, Any]:
        response = await self._request("GET", self._url(f"/session/{session_id}"))
        data = self._json(response)
        if not isinstance(data, dict):
            raise NetworkError(f"Unexpected session payload for {session_id}")
        return data

    async def get_session_terms(self, session_id: str) -> list[dict[str, Any]]:
        response = await self._request("GET", self._url(f"/session/{session_id}/terms"))
        data = self._json(response)
        if isinstance(data, dict):
            data = data.get("terms") or data.get("analysis_results") or []
        return [item for item in data if isinstance(item, dict)] if isinstance(data, list) else []

    async def upload_contract(self, file: ContractFile) -> dict[str, Any]:
        path = _local_path(file.uri)
        name = file.name or path.name
        mime_type = file.mimeType or mimetypes.guess_type(name)[0] or "application/octet-stream"
        try:
            content = await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise NetworkError(f"Cannot read upload source {file.uri}: {exc}") from exc

        logger.info(f"Uploading {name} ({len(content)} bytes)")
        response = await self._request(
            "POST",
            self._url("/upload"),
            files={"file": (name, content, mime_type)},
            timeout=self.upload_timeout,
        )
        data = self._json(response)
        if not isinstance(data, dict) or not data.get("session_id"):
            raise NetworkError("Upload response did not include a session_id")
        return data

    # ── Sync endpoints ─────────────────────────────────────────────

    async def list_sessions(self, base_url: str, device_id: str, headers: dict[str, str]) -> list[dict[str, Any]]:
        response = await self._request(
            "GET",
            self._url("/sessions", base_url),
            params={"device_id": device_id},
            headers=headers,
        )
        data = self._json(response)
        if isinstance(data, dict):
            data = data.get("sessions") or []
        if not isinstance(data, list):
            raise NetworkError("Unexpected sessions payload")
        return [item for item in data if isinstance(item, dict)]

    async def save_session(self, base_url: str, payload: dict[str, Any], headers: dict[str, str]) -> None:
        await self._request("POST", self._url("/save-session", base_url), json=payload, headers=headers)

    async def head(self, url: str, timeout: float) -> int:
        """Status code of a HEAD request; raises ``NetworkError`` on transport failure."""
        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(self.http.head, url, timeout=timeout),
                timeout=timeout,
            )
        except (requests.RequestException, asyncio.TimeoutError) as exc:
            raise NetworkError(f"HEAD {url} failed: {exc}") from exc
        return response.status_code
