"""Repository package for on-device persistence."""

from .sessions import SessionRepository

__all__ = [
    "SessionRepository",
]
