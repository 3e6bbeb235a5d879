"""Background uploads and background-processing registrations.

Uploads that could not complete in the foreground are kept in a durable map
and retried on every processing pass. A successful upload hands its session
over to the JobTracker; an upload that fails ``max_retries`` times is
dropped with a failure notification.

Every active upload and processing registration holds the shared keep-awake
under its own owner key.
"""
from __future__ import annotations

import asyncio
import json
import logging
import secrets
import time
from typing import TYPE_CHECKING, Optional, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from contract_sync import config
from contract_sync import notifications
from contract_sync.api_client import AnalysisApiClient
from contract_sync.db.key_value import KeyValueBackend
from contract_sync.errors import ContractSyncError, ValidationError
from contract_sync.lifecycle import KeepAwake
from contract_sync.models import BackgroundProcessing, BackgroundUpload, ContractFile
from contract_sync.notifications import Notifier
from contract_sync.observability import record_upload_result

if TYPE_CHECKING:
    from contract_sync.services.job_tracker import JobTracker

logger = logging.getLogger("contract_sync.uploads")

ACTIVE_UPLOADS_KEY = "activeBackgroundUploads"
ACTIVE_PROCESSING_KEY = "activeBackgroundProcessing"

_M = TypeVar("_M", bound=BaseModel)


def _now_ms() -> float:
    return time.time() * 1000


def new_upload_id() -> str:
    return f"upload_{int(_now_ms())}_{secrets.token_hex(4)}"


class BackgroundUploadTracker:
    def __init__(
        self,
        api: AnalysisApiClient,
        kv: KeyValueBackend,
        notifier: Notifier,
        keep_awake: KeepAwake,
        *,
        max_retries: int = config.UPLOAD_MAX_RETRIES,
        processing_max_retries: int = config.JOB_MAX_RETRIES,
    ):
        self.api = api
        self.kv = kv
        self.notifier = notifier
        self.keep_awake = keep_awake
        self.max_retries = max_retries
        self.processing_max_retries = processing_max_retries
        self.job_tracker: Optional[JobTracker] = None
        self._uploads: dict[str, BackgroundUpload] = {}
        self._processing: dict[str, BackgroundProcessing] = {}
        self._pass_lock = asyncio.Lock()

    def attach_job_tracker(self, job_tracker: "JobTracker") -> None:
        self.job_tracker = job_tracker

    def get_active_counts(self) -> dict[str, int]:
        return {"uploads": len(self._uploads), "processing": len(self._processing)}

    def get_uploads(self) -> list[BackgroundUpload]:
        return [upload.model_copy() for upload in self._uploads.values()]

    def is_processing(self, session_id: str) -> bool:
        return session_id in self._processing

    # ── Registration ───────────────────────────────────────────────

    async def start_upload(self, session_id: str, file: ContractFile) -> BackgroundUpload:
        if not session_id:
            raise ValidationError("Session ID is required for a background upload")
        upload = BackgroundUpload(
            id=new_upload_id(),
            sessionId=session_id,
            file=file,
            startTime=_now_ms(),
        )
        logger.info(f"Starting background upload {upload.id} for session {session_id}")
        self._uploads[upload.id] = upload
        self.keep_awake.acquire(f"upload:{upload.id}")
        await self._persist(ACTIVE_UPLOADS_KEY, self._uploads)
        return upload

    async def register_processing(self, session_id: str) -> None:
        logger.info(f"Registering background processing for session: {session_id}")
        self._processing[session_id] = BackgroundProcessing(
            sessionId=session_id,
            startTime=_now_ms(),
            maxRetries=self.processing_max_retries,
        )
        self.keep_awake.acquire(f"processing:{session_id}")
        await self._persist(ACTIVE_PROCESSING_KEY, self._processing)

    async def stop_processing(self, session_id: str) -> None:
        if self._processing.pop(session_id, None) is None:
            return
        self.keep_awake.release(f"processing:{session_id}")
        await self._persist(ACTIVE_PROCESSING_KEY, self._processing)

    # ── Processing passes ──────────────────────────────────────────

    async def process_uploads(self) -> int:
        """Attempt every pending upload once; returns how many completed."""
        async with self._pass_lock:
            completed = 0
            for upload_id, upload in list(self._uploads.items()):
                if await self._attempt(upload_id, upload):
                    completed += 1
            return completed

    async def _attempt(self, upload_id: str, upload: BackgroundUpload) -> bool:
        logger.info(f"Processing background upload: {upload_id}")
        try:
            response = await self.api.upload_contract(upload.file)
        except ContractSyncError as exc:
            upload.retryCount += 1
            logger.error(f"Background upload {upload_id} failed ({upload.retryCount}/{self.max_retries}): {exc}")
            if upload.retryCount >= self.max_retries:
                self._uploads.pop(upload_id, None)
                self.keep_awake.release(f"upload:{upload_id}")
                await self._persist(ACTIVE_UPLOADS_KEY, self._uploads)
                record_upload_result("failed")
                await self._notify(notifications.upload_failed(upload_id))
            else:
                await self._persist(ACTIVE_UPLOADS_KEY, self._uploads)
                record_upload_result("retry")
            return False

        session_id = str(response["session_id"])
        logger.info(f"Background upload completed: {session_id}")
        self._uploads.pop(upload_id, None)
        await self._persist(ACTIVE_UPLOADS_KEY, self._uploads)
        record_upload_result("ok")

        if self.job_tracker is not None:
            await self.job_tracker.start_analysis(session_id)
        else:
            await self.register_processing(session_id)
        self.keep_awake.release(f"upload:{upload_id}")
        await self._notify(notifications.upload_complete(session_id))
        return True

    async def sync_pending(self) -> bool:
        """Reload durable state and run one upload pass; True if anything was pending."""
        await self._load_uploads()
        await self._load_processing()
        had_pending = bool(self._uploads) or bool(self._processing)
        if self._uploads:
            await self.process_uploads()
        return had_pending

    async def cleanup(self, *, keep_persisted: bool = False) -> None:
        logger.info("Cleaning up background uploads")
        for upload_id in list(self._uploads):
            self.keep_awake.release(f"upload:{upload_id}")
        for session_id in list(self._processing):
            self.keep_awake.release(f"processing:{session_id}")
        self._uploads.clear()
        self._processing.clear()
        if not keep_persisted:
            await self.kv.delete(ACTIVE_UPLOADS_KEY)
            await self.kv.delete(ACTIVE_PROCESSING_KEY)

    # ── Durable state ──────────────────────────────────────────────

    async def _notify(self, notification) -> None:
        try:
            await self.notifier.schedule(notification)
        except Exception:
            logger.exception(f"Failed to schedule notification {notification.title!r}")

    async def _persist(self, key: str, items: dict[str, BaseModel]) -> None:
        payload = json.dumps([[item_id, item.model_dump()] for item_id, item in items.items()])
        try:
            await self.kv.set(key, payload, large=True)
        except ContractSyncError as exc:
            logger.error(f"Failed to persist {key}: {exc}")

    async def _read(self, key: str, model: type[_M]) -> dict[str, _M]:
        raw = await self.kv.get(key, large=True)
        if not raw:
            return {}
        try:
            pairs = json.loads(raw)
        except ValueError:
            logger.error(f"Stored {key} is corrupt; ignoring")
            return {}
        items: dict[str, _M] = {}
        for pair in pairs if isinstance(pairs, list) else []:
            if not isinstance(pair, list) or len(pair) != 2:
                continue
            try:
                items[str(pair[0])] = model.model_validate(pair[1])
            except PydanticValidationError as exc:
                logger.warning(f"Skipping invalid entry in {key}: {exc}")
        return items

    async def _load_uploads(self) -> None:
        for upload_id, upload in (await self._read(ACTIVE_UPLOADS_KEY, BackgroundUpload)).items():
            if upload_id not in self._uploads:
                self._uploads[upload_id] = upload
                self.keep_awake.acquire(f"upload:{upload_id}")

    async def _load_processing(self) -> None:
        for session_id, entry in (await self._read(ACTIVE_PROCESSING_KEY, BackgroundProcessing)).items():
            if session_id not in self._processing:
                self._processing[session_id] = entry
                self.keep_awake.acquire(f"processing:{session_id}")
