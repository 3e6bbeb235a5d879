"""Local-first reconciliation of stored sessions with the remote collection.

Local data always wins: remote sessions unknown locally are stored, local
sessions unknown remotely are uploaded, and ids present on both sides are
left untouched. No field-level merge is performed.
"""
from __future__ import annotations

import logging
import time
from typing import Optional

from contract_sync import config
from contract_sync.api_client import AnalysisApiClient
from contract_sync.db.key_value import KeyValueBackend
from contract_sync.db.repositories.sessions import SessionRepository
from contract_sync.device_identity import DeviceIdentity
from contract_sync.errors import ContractSyncError
from contract_sync.models import Session
from contract_sync.observability import record_sync_cycle, start_span

logger = logging.getLogger("contract_sync.sync")

AUTH_TOKEN_KEY = "auth_token"


class SyncCoordinator:
    def __init__(
        self,
        repository: SessionRepository,
        device_identity: DeviceIdentity,
        api: AnalysisApiClient,
        kv: KeyValueBackend,
        *,
        connectivity_url: str = config.CONNECTIVITY_URL,
        connectivity_timeout: float = config.CONNECTIVITY_TIMEOUT_SECONDS,
    ):
        self.repository = repository
        self.device_identity = device_identity
        self.api = api
        self.kv = kv
        self.connectivity_url = connectivity_url
        self.connectivity_timeout = connectivity_timeout

    async def _headers(self, device_id: str) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "X-Device-ID": device_id,
        }
        token = await self.kv.get(AUTH_TOKEN_KEY)
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def sync_with_backend(self, remote_base_url: str) -> bool:
        """Run one fetch-merge-upload cycle. Never raises."""
        started = time.monotonic()
        pulled = 0
        pushed = 0
        with start_span("sync.cycle", {"remote": remote_base_url}):
            try:
                device_id = await self.device_identity.get_or_create()
                headers = await self._headers(device_id)

                remote_sessions = await self.api.list_sessions(remote_base_url, device_id, headers)
                logger.info(f"Fetched {len(remote_sessions)} sessions from backend")

                local_sessions = await self.repository.get_all()
                local_ids = {session.session_id for session in local_sessions}
                remote_ids: set[str] = set()

                for raw in remote_sessions:
                    remote_id = raw.get("session_id") if isinstance(raw, dict) else None
                    if not remote_id:
                        logger.warning("Skipping remote session without session_id")
                        continue
                    remote_ids.add(remote_id)
                    if remote_id in local_ids:
                        continue
                    try:
                        await self.repository.store(raw)
                    except ContractSyncError as exc:
                        logger.error(f"Failed to store remote session {remote_id}: {exc}")
                        continue
                    local_ids.add(remote_id)
                    pulled += 1
                    logger.info(f"Added remote session: {remote_id}")

                for session in local_sessions:
                    if session.session_id in remote_ids:
                        continue
                    if await self.upload_session(session, remote_base_url, device_id):
                        pushed += 1
                    else:
                        logger.warning(f"Failed to upload session {session.session_id}")
            except ContractSyncError as exc:
                duration_ms = (time.monotonic() - started) * 1000
                record_sync_cycle("failed", pulled, pushed, duration_ms)
                logger.error(f"Session sync failed: {exc}")
                return False

        duration_ms = (time.monotonic() - started) * 1000
        record_sync_cycle("ok", pulled, pushed, duration_ms)
        logger.info(f"Session sync completed: pulled={pulled} pushed={pushed}")
        return True

    async def upload_session(
        self, session: Session, remote_base_url: str, device_id: Optional[str] = None
    ) -> bool:
        try:
            final_device_id = device_id or await self.device_identity.get_or_create()
            headers = await self._headers(final_device_id)
            payload = {
                "device_id": final_device_id,
                "session": session.model_dump(mode="json"),
            }
            await self.api.save_session(remote_base_url, payload, headers)
        except ContractSyncError as exc:
            logger.error(f"Failed to upload session {session.session_id}: {exc}")
            return False
        logger.info(f"Session uploaded: {session.session_id}")
        return True

    async def check_connectivity(self) -> bool:
        try:
            status = await self.api.head(self.connectivity_url, self.connectivity_timeout)
        except ContractSyncError as exc:
            logger.info(f"Connectivity check failed: {exc}")
            return False
        return 200 <= status < 300

    async def get_sessions_offline_first(self, remote_base_url: Optional[str] = None) -> list[Session]:
        """Local sessions, refreshed by a sync cycle when online. Never raises."""
        try:
            local_sessions = await self.repository.get_all()
        except ContractSyncError as exc:
            logger.error(f"Failed to load local sessions: {exc}")
            local_sessions = []
        logger.info(f"Found {len(local_sessions)} local sessions")
        if not remote_base_url:
            return local_sessions

        if not await self.check_connectivity():
            logger.info("Device is offline, using local sessions only")
            return local_sessions

        if await self.sync_with_backend(remote_base_url):
            try:
                return await self.repository.get_all()
            except ContractSyncError as exc:
                logger.warning(f"Reloading sessions after sync failed: {exc}")
        return local_sessions
