"""App lifecycle primitives shared by the trackers.

``AppStateBus`` carries foreground/background transitions to independent
subscribers. ``KeepAwake`` is the reference-counted "device stays awake"
hold: every tracker acquires under its own owner key and the hold is only
released once no owner remains.
"""
from __future__ import annotations

import logging
from typing import Awaitable, Callable

from contract_sync.models import AppState

logger = logging.getLogger("contract_sync.lifecycle")

AppStateListener = Callable[[AppState, AppState], Awaitable[None]]


def is_backgrounded(state: AppState) -> bool:
    return state in ("background", "inactive")


class AppStateBus:
    def __init__(self, initial: AppState = "active"):
        self._state: AppState = initial
        self._listeners: list[AppStateListener] = []

    @property
    def state(self) -> AppState:
        return self._state

    def subscribe(self, listener: AppStateListener) -> Callable[[], None]:
        """Register ``listener(previous, current)``; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def publish(self, state: AppState) -> None:
        previous = self._state
        self._state = state
        if previous == state:
            return
        logger.info(f"App state changed: {previous} -> {state}")
        for listener in list(self._listeners):
            try:
                await listener(previous, state)
            except Exception:
                logger.exception(f"App state listener failed on {previous} -> {state}")


class KeepAwake:
    """Reference-counted keep-awake hold keyed by owner."""

    def __init__(self) -> None:
        self._owners: set[str] = set()

    @property
    def active(self) -> bool:
        return bool(self._owners)

    @property
    def owners(self) -> set[str]:
        return set(self._owners)

    def acquire(self, owner: str) -> None:
        was_active = self.active
        self._owners.add(owner)
        if not was_active:
            logger.info(f"Keep awake activated by {owner}")

    def release(self, owner: str) -> None:
        if owner not in self._owners:
            return
        self._owners.discard(owner)
        if not self._owners:
            logger.info(f"Keep awake deactivated after {owner}")

    def release_all(self) -> None:
        if self._owners:
            self._owners.clear()
            logger.info("Keep awake deactivated")
