"""Composition root: builds and wires every service once per process."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import aiosqlite

from contract_sync import config
from contract_sync.api_client import AnalysisApiClient
from contract_sync.date_utils import utc_now_iso
from contract_sync.db.connection import close_connection, open_connection
from contract_sync.db.factory import get_key_value_backend
from contract_sync.db.key_value import KeyValueBackend
from contract_sync.db.repositories import SessionRepository
from contract_sync.device_identity import DeviceIdentity
from contract_sync.errors import ContractSyncError, ValidationError
from contract_sync.file_cache import FileCache
from contract_sync.lifecycle import AppStateBus, KeepAwake
from contract_sync.models import AppState, ContractFile, Session
from contract_sync.notifications import LoggingNotifier, Notifier
from contract_sync.services.analytics import AnalyticsAggregator
from contract_sync.services.background_uploads import BackgroundUploadTracker
from contract_sync.services.job_tracker import JobTracker, PollSchedule
from contract_sync.services.sync_coordinator import SyncCoordinator

logger = logging.getLogger("contract_sync")


class ContractSyncApp:
    """Holds the live service graph; ``start()`` must run before any operation."""

    def __init__(
        self,
        *,
        secure_db_path: Path | str = config.SECURE_DB_PATH,
        general_db_path: Path | str = config.GENERAL_DB_PATH,
        browser_path: Optional[Path] = config.BROWSER_STORE_PATH,
        file_cache_dir: Path = config.FILE_CACHE_DIR,
        platform: str = config.PLATFORM,
        api: Optional[AnalysisApiClient] = None,
        notifier: Optional[Notifier] = None,
        schedule: Optional[PollSchedule] = None,
    ):
        self.secure_db_path = secure_db_path
        self.general_db_path = general_db_path
        self.browser_path = browser_path
        self.file_cache_dir = file_cache_dir
        self.platform = platform
        self.api = api or AnalysisApiClient()
        self.notifier = notifier or LoggingNotifier()
        self.schedule = schedule or PollSchedule()
        self.keep_awake = KeepAwake()
        self.app_state = AppStateBus()

        self._secure_db: Optional[aiosqlite.Connection] = None
        self._general_db: Optional[aiosqlite.Connection] = None
        self.kv: KeyValueBackend
        self.device_identity: DeviceIdentity
        self.repository: SessionRepository
        self.uploads: BackgroundUploadTracker
        self.jobs: JobTracker
        self.sync: SyncCoordinator
        self.analytics: AnalyticsAggregator
        self.started = False

    async def start(self) -> list[str]:
        """Open the stores, wire services and resume persisted jobs; returns restored ids."""
        if self.started:
            return []
        self._secure_db = await open_connection(self.secure_db_path)
        self._general_db = await open_connection(self.general_db_path)
        self.kv = get_key_value_backend(
            self._secure_db, self._general_db, self.browser_path, platform=self.platform
        )
        self.device_identity = DeviceIdentity(self.kv)
        file_cache = FileCache(self.file_cache_dir, platform=self.platform)
        self.repository = SessionRepository(self.kv, self.device_identity, file_cache)
        self.uploads = BackgroundUploadTracker(
            self.api,
            self.kv,
            self.notifier,
            self.keep_awake,
            processing_max_retries=self.schedule.max_retries,
        )
        self.jobs = JobTracker(
            self.api,
            self.repository,
            self.kv,
            self.notifier,
            self.keep_awake,
            self.app_state,
            processing=self.uploads,
            schedule=self.schedule,
        )
        self.uploads.attach_job_tracker(self.jobs)
        self.sync = SyncCoordinator(self.repository, self.device_identity, self.api, self.kv)
        self.analytics = AnalyticsAggregator(self.repository, self.jobs)
        self.repository.add_listener(lambda _session_id: self.analytics.invalidate())

        self.jobs.initialize()
        self.started = True
        restored = await self.jobs.restore_state()
        logger.info(f"Contract sync started; resumed {len(restored)} analysis job(s)")
        return restored

    async def stop(self) -> None:
        if not self.started:
            return
        await self.jobs.cleanup(keep_persisted=True)
        self.keep_awake.release_all()
        await close_connection(self._secure_db)
        await close_connection(self._general_db)
        self._secure_db = None
        self._general_db = None
        self.started = False
        logger.info("Contract sync stopped")

    # ── Analysis ───────────────────────────────────────────────────

    async def start_analysis(self, session_id: str, file: Optional[ContractFile] = None) -> str:
        """Store a processing placeholder, upload ``file`` if given, and track the job.

        Returns the id being tracked, which is the server-assigned id when a
        foreground upload returned a different one. A failed foreground upload
        is handed to the background upload tracker instead.
        """
        if not session_id or not isinstance(session_id, str):
            raise ValidationError("Valid session ID is required to start analysis")

        placeholder = Session(
            session_id=session_id,
            original_filename=file.name if file else "",
            created_at=utc_now_iso(),
            is_processing=True,
        )
        if await self.repository.get(session_id) is None:
            await self.repository.store(placeholder)
        if file is None:
            await self.jobs.start_analysis(session_id)
            return session_id

        try:
            response = await self.api.upload_contract(file)
        except ContractSyncError as exc:
            logger.warning(f"Foreground upload for {session_id} failed, queueing background upload: {exc}")
            await self.uploads.start_upload(session_id, file)
            return session_id

        server_id = str(response["session_id"])
        if server_id != session_id:
            logger.info(f"Server assigned {server_id} to temporary session {session_id}")
            await self.repository.store(placeholder.model_copy(update={"session_id": server_id}))
            try:
                await self.repository.remove(session_id)
            except ContractSyncError as exc:
                logger.warning(f"Failed to remove temporary session {session_id}: {exc}")
        await self.jobs.start_analysis(server_id)
        return server_id

    async def stop_analysis(self, session_id: str) -> None:
        await self.jobs.stop_analysis(session_id)

    def is_analyzing(self, session_id: str) -> bool:
        return self.jobs.is_analyzing(session_id)

    def get_active_jobs(self) -> list[str]:
        return self.jobs.get_active_jobs()

    # ── Lifecycle ──────────────────────────────────────────────────

    async def set_app_state(self, state: AppState) -> None:
        await self.app_state.publish(state)

    async def run_background_pass(self) -> dict[str, object]:
        pending = await self.uploads.sync_pending()
        return {"pending": pending, **self.uploads.get_active_counts()}
