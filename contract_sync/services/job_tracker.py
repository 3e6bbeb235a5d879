"""Tracks in-flight analysis jobs by polling the remote status endpoint.

Each job moves from polling to exactly one terminal state: complete,
timeout, not_found or error. Every terminal transition stops the poll loop,
drops the job, releases its keep-awake hold and schedules one notification.

Every job runs as one asyncio task. A task carries the generation it was
started with; after each await it checks that its job is still tracked
under that generation, so a late response from a replaced or stopped loop
is ignored.
"""
from __future__ import annotations

import asyncio
import itertools
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Protocol

from pydantic import ValidationError as PydanticValidationError

from contract_sync import config
from contract_sync import notifications
from contract_sync.api_client import AnalysisApiClient
from contract_sync.db.key_value import KeyValueBackend
from contract_sync.db.repositories.sessions import SessionRepository
from contract_sync.errors import ContractSyncError, ValidationError, is_session_not_found
from contract_sync.lifecycle import AppStateBus, KeepAwake, is_backgrounded
from contract_sync.models import AnalysisJob, AppState, Session
from contract_sync.notifications import Notifier
from contract_sync.observability import record_job_outcome

logger = logging.getLogger("contract_sync.jobs")

ACTIVE_JOBS_KEY = "active_analysis_jobs"

JobOutcome = Literal["complete", "timeout", "not_found", "error"]

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)
_SESSION_PREFIX = "session_"


def normalize_session_id(session_id: str) -> str:
    """Strip a ``session_`` prefix only when what remains is a UUID."""
    if session_id.startswith(_SESSION_PREFIX):
        remainder = session_id[len(_SESSION_PREFIX):]
        if _UUID_RE.match(remainder):
            return remainder
    return session_id


def _has_timestamp(payload: dict[str, Any]) -> bool:
    value = payload.get("analysis_timestamp")
    return isinstance(value, str) and bool(value.strip())


def _has_results(payload: dict[str, Any]) -> bool:
    results = payload.get("analysis_results")
    return isinstance(results, list) and len(results) > 0


@dataclass(frozen=True)
class PollSchedule:
    """Polling cadence; all durations in seconds."""

    initial_delay: float = config.POLL_INITIAL_DELAY_SECONDS
    base_interval: float = config.POLL_BASE_INTERVAL_SECONDS
    step: float = config.POLL_STEP_SECONDS
    max_interval: float = config.POLL_MAX_INTERVAL_SECONDS
    background_interval: float = config.POLL_BACKGROUND_INTERVAL_SECONDS
    max_retries: int = config.JOB_MAX_RETRIES
    probe_after: int = config.NOT_FOUND_PROBE_AFTER

    def interval(self, retry_count: int, backgrounded: bool) -> float:
        if backgrounded:
            return self.background_interval
        return min(self.base_interval + retry_count * self.step, self.max_interval)


class ProcessingRegistry(Protocol):
    async def register_processing(self, session_id: str) -> None: ...

    async def stop_processing(self, session_id: str) -> None: ...

    async def cleanup(self, *, keep_persisted: bool = False) -> None: ...


@dataclass
class _TrackedJob:
    record: AnalysisJob
    generation: int = 0
    task: Optional[asyncio.Task] = field(default=None, repr=False)


class JobTracker:
    def __init__(
        self,
        api: AnalysisApiClient,
        repository: SessionRepository,
        kv: KeyValueBackend,
        notifier: Notifier,
        keep_awake: KeepAwake,
        app_state: AppStateBus,
        *,
        processing: Optional[ProcessingRegistry] = None,
        schedule: PollSchedule = PollSchedule(),
    ):
        self.api = api
        self.repository = repository
        self.kv = kv
        self.notifier = notifier
        self.keep_awake = keep_awake
        self.app_state = app_state
        self.processing = processing
        self.schedule = schedule
        self._jobs: dict[str, _TrackedJob] = {}
        self._generations = itertools.count(1)
        self._backgrounded = is_backgrounded(app_state.state)
        self._unsubscribe = None

    def initialize(self) -> None:
        """Start following app-state transitions. Idempotent."""
        if self._unsubscribe is None:
            self._unsubscribe = self.app_state.subscribe(self._on_app_state)

    # ── Public API ─────────────────────────────────────────────────

    def is_analyzing(self, session_id: str) -> bool:
        return session_id in self._jobs

    def get_active_jobs(self) -> list[str]:
        return list(self._jobs.keys())

    def get_job(self, session_id: str) -> Optional[AnalysisJob]:
        tracked = self._jobs.get(session_id)
        return tracked.record.model_copy() if tracked else None

    async def start_analysis(self, session_id: str) -> None:
        """Begin (or restart) tracking ``session_id`` from a fresh retry budget."""
        if not session_id or not isinstance(session_id, str):
            raise ValidationError("Valid session ID is required to start analysis")
        logger.info(f"Starting analysis tracking for session: {session_id}")

        await self.stop_analysis(session_id)
        record = AnalysisJob(
            sessionId=session_id,
            startTime=time.time() * 1000,
            maxRetries=self.schedule.max_retries,
        )
        tracked = _TrackedJob(record=record)
        self._jobs[session_id] = tracked
        self.keep_awake.acquire(f"job:{session_id}")
        self._spawn(tracked, self._first_delay())

        if self.processing is not None:
            try:
                await self.processing.register_processing(session_id)
            except ContractSyncError as exc:
                logger.warning(f"Background processing registration failed for {session_id}: {exc}")
        try:
            await self.repository.index_session(session_id)
        except ContractSyncError as exc:
            logger.warning(f"Failed to index session {session_id}: {exc}")

    async def stop_analysis(self, session_id: str) -> None:
        """Stop tracking ``session_id``; unknown ids are a no-op."""
        tracked = self._jobs.pop(session_id, None)
        if tracked is None:
            return
        logger.info(f"Stopping analysis tracking for session: {session_id}")
        self._cancel(tracked)
        self.keep_awake.release(f"job:{session_id}")
        if self.processing is not None:
            await self.processing.stop_processing(session_id)
        await self._persist_quietly()

    async def cleanup(self, *, keep_persisted: bool = False) -> None:
        """Stop every job and detach from app-state transitions.

        With ``keep_persisted`` the active set is written to durable storage
        first so it can be resumed by the next process.
        """
        if keep_persisted:
            await self._persist_quietly()
        for session_id, tracked in list(self._jobs.items()):
            self._cancel(tracked)
            self.keep_awake.release(f"job:{session_id}")
        self._jobs.clear()
        if not keep_persisted:
            await self.kv.delete(ACTIVE_JOBS_KEY)

        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self.processing is not None:
            await self.processing.cleanup(keep_persisted=keep_persisted)

    # ── Durable state ──────────────────────────────────────────────

    async def persist_state(self) -> None:
        jobs = [tracked.record.model_dump() for tracked in self._jobs.values()]
        await self.kv.set(ACTIVE_JOBS_KEY, json.dumps(jobs))
        logger.info(f"Persisted analysis state for {len(jobs)} jobs")

    async def _persist_quietly(self) -> None:
        try:
            await self.persist_state()
        except ContractSyncError as exc:
            logger.error(f"Failed to persist analysis state: {exc}")

    async def restore_state(self) -> list[str]:
        """Re-create persisted jobs missing from memory and start polling them."""
        restored = self._load_persisted(await self.kv.get(ACTIVE_JOBS_KEY))
        for tracked in restored:
            self._spawn(tracked, self._first_delay())
        await self._register_restored(restored)
        return [tracked.record.sessionId for tracked in restored]

    async def _register_restored(self, restored: list[_TrackedJob]) -> None:
        if self.processing is None:
            return
        for tracked in restored:
            try:
                await self.processing.register_processing(tracked.record.sessionId)
            except ContractSyncError as exc:
                logger.warning(f"Background processing registration failed for {tracked.record.sessionId}: {exc}")

    def _load_persisted(self, raw: Optional[str]) -> list[_TrackedJob]:
        if not raw:
            return []
        try:
            items = json.loads(raw)
        except ValueError:
            logger.error("Persisted analysis state is corrupt; ignoring")
            return []

        restored: list[_TrackedJob] = []
        for item in items if isinstance(items, list) else []:
            try:
                record = AnalysisJob.model_validate(item)
            except PydanticValidationError as exc:
                logger.warning(f"Skipping invalid persisted job: {exc}")
                continue
            if record.sessionId in self._jobs:
                continue
            tracked = _TrackedJob(record=record)
            self._jobs[record.sessionId] = tracked
            self.keep_awake.acquire(f"job:{record.sessionId}")
            restored.append(tracked)
        if restored:
            logger.info(f"Restored {len(restored)} analysis jobs from storage")
        return restored

    # ── App-state adaptation ───────────────────────────────────────

    async def _on_app_state(self, previous: AppState, current: AppState) -> None:
        if not is_backgrounded(previous) and is_backgrounded(current):
            logger.info(f"App backgrounded with {len(self._jobs)} active jobs")
            await self._persist_quietly()
            self._backgrounded = True
            self._retime_all()
        elif is_backgrounded(previous) and current == "active":
            logger.info("App foregrounded, resuming analysis tracking")
            self._backgrounded = False
            restored = self._load_persisted(await self.kv.get(ACTIVE_JOBS_KEY))
            self._retime_all()
            await self._register_restored(restored)

    def _retime_all(self) -> None:
        for tracked in self._jobs.values():
            self._cancel(tracked)
            self._spawn(tracked, self._first_delay())

    # ── Poll loop ──────────────────────────────────────────────────

    def _first_delay(self) -> float:
        if self._backgrounded:
            return self.schedule.background_interval
        return self.schedule.initial_delay

    def _spawn(self, tracked: _TrackedJob, first_delay: float) -> None:
        tracked.generation = next(self._generations)
        tracked.task = asyncio.create_task(
            self._run(tracked.record.sessionId, tracked.generation, first_delay),
            name=f"poll:{tracked.record.sessionId}",
        )

    @staticmethod
    def _cancel(tracked: _TrackedJob) -> None:
        task = tracked.task
        tracked.task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def _live(self, session_id: str, generation: int) -> Optional[_TrackedJob]:
        tracked = self._jobs.get(session_id)
        if tracked is None or tracked.generation != generation:
            return None
        return tracked

    async def _run(self, session_id: str, generation: int, first_delay: float) -> None:
        delay = first_delay
        try:
            while True:
                await asyncio.sleep(delay)
                tracked = self._live(session_id, generation)
                if tracked is None:
                    return
                if await self._poll(tracked, generation):
                    return
                tracked = self._live(session_id, generation)
                if tracked is None:
                    return
                delay = self.schedule.interval(tracked.record.retryCount, self._backgrounded)
        except asyncio.CancelledError:
            logger.debug(f"Poll loop for {session_id} cancelled")
            raise

    async def _poll(self, tracked: _TrackedJob, generation: int) -> bool:
        """Run one poll; True when the loop must end."""
        job = tracked.record
        session_id = job.sessionId
        remote_id = normalize_session_id(session_id)
        logger.info(f"Polling attempt {job.retryCount + 1}/{job.maxRetries} for session: {session_id}")

        try:
            payload = await self._fetch_completed(remote_id)
        except Exception as exc:
            if self._live(session_id, generation) is None:
                return True
            job.retryCount += 1
            logger.warning(f"Polling error for session {session_id} ({job.retryCount}/{job.maxRetries}): {exc}")
            if is_session_not_found(exc):
                await self._finish(tracked, "not_found")
                return True
            if job.retryCount >= job.maxRetries:
                await self._finish(tracked, "error")
                return True
            return False

        if self._live(session_id, generation) is None:
            return True
        if payload is not None:
            await self._finish(tracked, "complete", payload)
            return True

        job.retryCount += 1
        logger.info(f"Analysis not ready yet, retry {job.retryCount}/{job.maxRetries} for session: {session_id}")

        if job.retryCount >= self.schedule.probe_after and not job.existenceProbed:
            job.existenceProbed = True
            missing = await self._session_missing(remote_id)
            if self._live(session_id, generation) is None:
                return True
            if missing:
                await self._finish(tracked, "not_found")
                return True

        if job.retryCount >= job.maxRetries:
            await self._finish(tracked, "timeout")
            return True
        return False

    async def _fetch_completed(self, remote_id: str) -> Optional[dict[str, Any]]:
        """Status payload when the analysis is complete, else None."""
        data = await self.api.get_session(remote_id)
        has_timestamp = _has_timestamp(data)
        if has_timestamp and _has_results(data):
            return data
        if not has_timestamp:
            return None

        logger.info(f"Analysis timestamp exists but no results yet for {remote_id}")
        try:
            terms = await self.api.get_session_terms(remote_id)
        except ContractSyncError as exc:
            logger.warning(f"Failed to fetch terms separately for {remote_id}: {exc}")
            return None
        if terms:
            logger.info(f"Found {len(terms)} terms via separate terms endpoint")
            return {**data, "analysis_results": terms}
        return None

    async def _session_missing(self, remote_id: str) -> bool:
        try:
            await self.api.get_session(remote_id)
        except Exception as exc:
            if is_session_not_found(exc):
                logger.info(f"Session {remote_id} not found on server after validation")
                return True
        return False

    # ── Terminal transitions ───────────────────────────────────────

    async def _finish(
        self,
        tracked: _TrackedJob,
        outcome: JobOutcome,
        payload: Optional[dict[str, Any]] = None,
    ) -> None:
        session_id = tracked.record.sessionId
        if self._jobs.get(session_id) is not tracked:
            return
        del self._jobs[session_id]
        self._cancel(tracked)
        self.keep_awake.release(f"job:{session_id}")
        record_job_outcome(outcome, tracked.record.retryCount)
        logger.info(f"Analysis {outcome} for session: {session_id}")

        if outcome == "complete" and payload is not None:
            await self._store_result(session_id, payload)

        if outcome == "complete":
            notification = notifications.analysis_complete(session_id)
        elif outcome == "timeout":
            notification = notifications.analysis_timeout(session_id)
        else:
            notification = notifications.analysis_error(session_id, outcome)
        try:
            await self.notifier.schedule(notification)
        except Exception:
            logger.exception(f"Failed to schedule {outcome} notification for {session_id}")

        if self.processing is not None:
            try:
                await self.processing.stop_processing(session_id)
            except ContractSyncError as exc:
                logger.warning(f"Failed to stop background processing for {session_id}: {exc}")
        await self._persist_quietly()

    async def _store_result(self, session_id: str, payload: dict[str, Any]) -> None:
        """Overlay the completed payload on any stored placeholder and persist it."""
        try:
            existing = await self.repository.get(session_id)
            merged = existing.model_dump() if existing else {}
            merged.update({key: value for key, value in payload.items() if value is not None})
            merged["session_id"] = session_id
            merged["is_processing"] = False
            await self.repository.store(Session.model_validate(merged))
        except (ContractSyncError, PydanticValidationError) as exc:
            logger.error(f"Failed to persist completed analysis for {session_id}: {exc}")
