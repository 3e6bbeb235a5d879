"""Shared fakes for the test suite."""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

from contract_sync.db.key_value import KeyValueBackend
from contract_sync.errors import BackendError, NetworkError, ValueTooLargeError
from contract_sync.models import ContractFile, LocalNotification


class MemoryStore:
    """Dict-backed store with switchable failures."""

    def __init__(self, name: str = "memory", max_bytes: Optional[int] = None):
        self.name = name
        self.max_bytes = max_bytes
        self.items: dict[str, str] = {}
        self.fail_reads = False
        self.fail_writes = False
        self.fail_deletes = False

    async def get(self, key: str) -> Optional[str]:
        if self.fail_reads:
            raise BackendError(f"{self.name} read failed", backend=self.name, key=key)
        return self.items.get(key)

    async def set(self, key: str, value: str) -> None:
        if self.fail_writes:
            raise BackendError(f"{self.name} write failed", backend=self.name, key=key)
        if self.max_bytes is not None and len(value.encode("utf-8")) > self.max_bytes:
            raise ValueTooLargeError("too large", backend=self.name, key=key)
        self.items[key] = value

    async def delete(self, key: str) -> None:
        if self.fail_deletes:
            raise BackendError(f"{self.name} delete failed", backend=self.name, key=key)
        self.items.pop(key, None)


def memory_backend(platform: str = "native", **kwargs: Any) -> KeyValueBackend:
    return KeyValueBackend(
        MemoryStore("secure", max_bytes=2048),
        MemoryStore("general"),
        MemoryStore("browser"),
        platform=platform,
        **kwargs,
    )


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[LocalNotification] = []

    async def schedule(self, notification: LocalNotification) -> None:
        self.sent.append(notification)

    def types(self) -> list[str]:
        return [item.data.get("type") for item in self.sent]


class FakeApi:
    """Scripted stand-in for AnalysisApiClient.

    ``session_responses`` is consumed in order; the last entry repeats. An
    entry may be a payload dict or an exception instance to raise.
    """

    def __init__(self) -> None:
        self.session_responses: list[Any] = [{}]
        self.terms: list[dict[str, Any]] = []
        self.get_session_calls: list[str] = []
        self.upload_results: list[Any] = []
        self.uploads: list[ContractFile] = []
        self.remote_sessions: list[dict[str, Any]] = []
        self.list_error: Optional[Exception] = None
        self.saved: list[dict[str, Any]] = []
        self.saved_headers: list[dict[str, str]] = []
        self.head_status: Any = 200

    async def get_session(self, session_id: str) -> dict[str, Any]:
        index = min(len(self.get_session_calls), len(self.session_responses) - 1)
        self.get_session_calls.append(session_id)
        item = self.session_responses[index]
        if isinstance(item, Exception):
            raise item
        return dict(item)

    async def get_session_terms(self, session_id: str) -> list[dict[str, Any]]:
        return list(self.terms)

    async def upload_contract(self, file: ContractFile) -> dict[str, Any]:
        self.uploads.append(file)
        item = self.upload_results.pop(0) if self.upload_results else NetworkError("HTTP 503: unavailable", status_code=503)
        if isinstance(item, Exception):
            raise item
        return dict(item)

    async def list_sessions(self, base_url: str, device_id: str, headers: dict[str, str]) -> list[dict[str, Any]]:
        if self.list_error is not None:
            raise self.list_error
        return [dict(item) for item in self.remote_sessions]

    async def save_session(self, base_url: str, payload: dict[str, Any], headers: dict[str, str]) -> None:
        self.saved.append(payload)
        self.saved_headers.append(headers)

    async def head(self, url: str, timeout: float) -> int:
        if isinstance(self.head_status, Exception):
            raise self.head_status
        return self.head_status


def complete_payload(session_id: str, terms: int = 3, **extra: Any) -> dict[str, Any]:
    payload = {
        "session_id": session_id,
        "analysis_timestamp": "2026-03-01T10:00:00Z",
        "analysis_results": [
            {"term_id": f"t{i}", "term_text": f"Term {i}", "is_valid_sharia": True} for i in range(terms)
        ],
    }
    payload.update(extra)
    return payload


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.001)
