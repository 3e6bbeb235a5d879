"""Error taxonomy shared by storage, sync and job tracking."""
from __future__ import annotations

from typing import Any

# Observed server messages for an unknown session. The Arabic text has been
# seen both with and without a doubled alef.
_NOT_FOUND_MESSAGES = (
    "session not found",
    "الجلسة غير موجودة",
    "االجلسة غير موجودة",
)
_NOT_FOUND_CODES = {"SESSION_NOT_FOUND", "NOT_FOUND"}


class ContractSyncError(Exception):
    """Base class for every error raised by this package."""


class ValidationError(ContractSyncError):
    """Bad input to a repository or storage call."""


class InvalidKeyError(ValidationError):
    """Storage key is missing, not a string, or blank."""


class BackendError(ContractSyncError):
    """A storage backend operation failed."""

    def __init__(self, message: str, *, backend: str = "", key: str = ""):
        super().__init__(message)
        self.backend = backend
        self.key = key


class ValueTooLargeError(BackendError):
    """Value exceeds the size limit of the secure store."""


class NetworkError(ContractSyncError):
    """A remote call failed or returned a non-success status."""

    def __init__(self, message: str, *, status_code: int | None = None, code: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class NotFoundSemanticError(NetworkError):
    """The remote service does not know the requested session."""


class AnalysisTimeoutError(ContractSyncError):
    """A job exhausted its retry budget without completing."""


def is_session_not_found(error: Any) -> bool:
    """Return True when an error means the server does not know the session.

    Structured signals (error type, error code, HTTP 404) are checked first;
    message matching is kept for servers that only send text.
    """
    if error is None:
        return False
    if isinstance(error, NotFoundSemanticError):
        return True
    if isinstance(error, NetworkError):
        if error.status_code == 404:
            return True
        if error.code and error.code.strip().upper() in _NOT_FOUND_CODES:
            return True
    message = str(error or "")
    lowered = message.lower()
    if any(marker in lowered for marker in _NOT_FOUND_MESSAGES):
        return True
    return "404" in message
