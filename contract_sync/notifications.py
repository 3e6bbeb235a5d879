"""Local notification scheduling.

The core only ever schedules notifications; presentation happens elsewhere.
"""
from __future__ import annotations

import logging
from collections import deque
from typing import Protocol

from contract_sync.models import LocalNotification

logger = logging.getLogger("contract_sync.notifications")


class Notifier(Protocol):
    async def schedule(self, notification: LocalNotification) -> None: ...


class LoggingNotifier:
    """Logs scheduled notifications and keeps the most recent ones in memory."""

    def __init__(self, history_size: int = 100):
        self.history: deque[LocalNotification] = deque(maxlen=history_size)

    async def schedule(self, notification: LocalNotification) -> None:
        self.history.append(notification)
        logger.info(
            "Notification scheduled: %s (%s)",
            notification.title,
            notification.data.get("type", "unknown"),
        )


def analysis_complete(session_id: str) -> LocalNotification:
    return LocalNotification(
        title="Analysis Complete",
        body="Your contract analysis is ready to view.",
        data={"type": "analysis_complete", "sessionId": session_id, "autoNavigate": True},
    )


def analysis_timeout(session_id: str) -> LocalNotification:
    return LocalNotification(
        title="Analysis Taking Longer",
        body="Your contract analysis is still processing. Please check back later.",
        data={"type": "analysis_timeout", "sessionId": session_id},
    )


def analysis_error(session_id: str, reason: str = "error") -> LocalNotification:
    return LocalNotification(
        title="Analysis Error",
        body="There was an issue with your contract analysis. Please try again.",
        data={"type": "analysis_error", "sessionId": session_id, "reason": reason},
    )


def upload_complete(session_id: str) -> LocalNotification:
    return LocalNotification(
        title="Upload Complete",
        body="Your contract has been uploaded and analysis is starting.",
        data={"type": "upload_complete", "sessionId": session_id},
    )


def upload_failed(upload_id: str) -> LocalNotification:
    return LocalNotification(
        title="Upload Failed",
        body="Your contract upload failed after multiple attempts.",
        data={"type": "upload_failed", "uploadId": upload_id},
    )
