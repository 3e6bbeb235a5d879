"""On-device session repository.

Session payloads live under ``session_<id>``; every index is only a capped,
most-recent-first list of ids. Indexes are treated as self-healing caches:
membership never implies the record exists, and reads deduplicate and skip
missing entries.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Optional

from pydantic import ValidationError as PydanticValidationError

from contract_sync import config
from contract_sync.date_utils import iso_to_epoch, utc_now_iso
from contract_sync.db.key_value import KeyValueBackend
from contract_sync.device_identity import DeviceIdentity
from contract_sync.errors import BackendError, ValidationError
from contract_sync.file_cache import FileCache
from contract_sync.models import OfflineAnalysisSummary, RestorationRecord, Session

logger = logging.getLogger("contract_sync.sessions")

SESSIONS_INDEX_KEY = "sessions_index"
OFFLINE_ANALYSES_INDEX_KEY = "offline_analyses_index"


def session_key(session_id: str) -> str:
    return f"session_{session_id}"


def offline_analysis_key(session_id: str) -> str:
    return f"offline_analysis_{session_id}"


def restoration_key(session_id: str) -> str:
    return f"restoration_{session_id}"


def device_sessions_key(device_id: str) -> str:
    return f"device_sessions_{device_id}"


# ── Summary derivation ─────────────────────────────────────────────

def calculate_compliance_score(session: Session) -> float:
    """Server percentage when present, else the share of compliant terms (0-100)."""
    if session.compliance_percentage is not None:
        return session.compliance_percentage
    terms = session.analysis_results
    if not terms:
        return 0
    compliant = sum(1 for term in terms if term.effective_compliance)
    return round(compliant / len(terms) * 100)


def count_issues(session: Session) -> int:
    return sum(1 for term in session.analysis_results if not term.is_valid_sharia)


def _format_score(score: float) -> str:
    return str(int(score)) if float(score).is_integer() else str(score)


def generate_summary(session: Session) -> str:
    issues = count_issues(session)
    score = _format_score(calculate_compliance_score(session))
    if issues == 0:
        return f"Contract is Sharia compliant ({score}% compliance). No issues found."
    noun = "issues" if issues > 1 else "issue"
    return f"Found {issues} Sharia {noun} ({score}% compliance). Review required."


def generate_flags(session: Session) -> list[str]:
    score = calculate_compliance_score(session)
    flags: list[str] = []
    if score < 70:
        flags.append("Low Compliance")
    if count_issues(session) > 0:
        flags.append("Needs Review")
    if any(term.has_expert_feedback for term in session.analysis_results):
        flags.append("Expert Reviewed")
    if score >= 90:
        flags.append("Highly Compliant")
    return flags


def _require_id(session_id: Any) -> str:
    if not session_id or not isinstance(session_id, str) or not session_id.strip():
        raise ValidationError("Valid session ID is required")
    return session_id


def _coerce_session(session: Any) -> Session:
    if session is None:
        raise ValidationError("Session data is required")
    if isinstance(session, Session):
        parsed = session
    else:
        try:
            parsed = Session.model_validate(session)
        except PydanticValidationError as exc:
            raise ValidationError(f"Malformed session data: {exc}") from exc
    if not parsed.session_id:
        raise ValidationError("Session ID is required in session data")
    return parsed


def _parse_index(raw: Optional[str], key: str) -> list[str]:
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except ValueError:
        logger.warning(f"Corrupt index {key}; treating as empty")
        return []
    if not isinstance(data, list):
        logger.warning(f"Index {key} is not a list; treating as empty")
        return []
    return [item for item in data if isinstance(item, str) and item.strip()]


def _dedupe(ids: list[str]) -> list[str]:
    seen: set[str] = set()
    result = []
    for item in ids:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result


class SessionRepository:
    """Stores sessions, their offline summaries and the indexes over them."""

    def __init__(
        self,
        kv: KeyValueBackend,
        device_identity: DeviceIdentity,
        file_cache: Optional[FileCache] = None,
        *,
        sessions_limit: int = config.SESSIONS_INDEX_LIMIT,
        device_sessions_limit: int = config.DEVICE_SESSIONS_LIMIT,
        offline_limit: int = config.OFFLINE_ANALYSES_LIMIT,
    ):
        self.kv = kv
        self.device_identity = device_identity
        self.file_cache = file_cache
        self.sessions_limit = sessions_limit
        self.device_sessions_limit = device_sessions_limit
        self.offline_limit = offline_limit
        self._index_locks: dict[str, asyncio.Lock] = {}
        self._listeners: list[Callable[[Optional[str]], None]] = []

    def add_listener(self, listener: Callable[[Optional[str]], None]) -> None:
        """Call ``listener(session_id)`` after every store or remove; None after clear_all."""
        self._listeners.append(listener)

    def _changed(self, session_id: Optional[str]) -> None:
        for listener in self._listeners:
            listener(session_id)

    # ── Index helpers ──────────────────────────────────────────────

    def _lock_for(self, index_key: str) -> asyncio.Lock:
        return self._index_locks.setdefault(index_key, asyncio.Lock())

    async def _read_index(self, index_key: str, *, large: bool = False) -> list[str]:
        raw = await self.kv.get(index_key, large=large)
        return _parse_index(raw, index_key)

    async def _insert_head(self, index_key: str, session_id: str, limit: int, *, large: bool = False) -> None:
        async with self._lock_for(index_key):
            ids = await self._read_index(index_key, large=large)
            if session_id in ids:
                return
            ids.insert(0, session_id)
            await self.kv.set(index_key, json.dumps(ids[:limit]), large=large)

    async def _drop_from_index(self, index_key: str, session_ids: set[str], *, large: bool = False) -> None:
        async with self._lock_for(index_key):
            ids = await self._read_index(index_key, large=large)
            kept = [item for item in ids if item not in session_ids]
            if len(kept) != len(ids):
                await self.kv.set(index_key, json.dumps(kept), large=large)

    async def get_sessions_index(self) -> list[str]:
        return await self._read_index(SESSIONS_INDEX_KEY)

    async def get_offline_index(self) -> list[str]:
        return await self._read_index(OFFLINE_ANALYSES_INDEX_KEY, large=True)

    async def get_device_sessions(self) -> list[str]:
        device_id = await self.device_identity.get_or_create()
        return await self._read_index(device_sessions_key(device_id), large=True)

    async def index_session(self, session_id: str) -> None:
        """Head-insert an id into the sessions index ahead of its record."""
        _require_id(session_id)
        await self._insert_head(SESSIONS_INDEX_KEY, session_id, self.sessions_limit)

    # ── Writes ─────────────────────────────────────────────────────

    async def store(self, session: Session | dict) -> None:
        """Persist a session and update every index that lists it.

        Steps run in order and stop at the first failure, which is raised;
        completed steps are not rolled back.
        """
        parsed = _coerce_session(session)
        session_id = parsed.session_id
        logger.info(f"Storing session {session_id}")

        device_id = await self.device_identity.get_or_create()
        payload = parsed.model_dump_json()
        await self.kv.set(session_key(session_id), payload, large=True)

        await self._insert_head(
            device_sessions_key(device_id), session_id, self.device_sessions_limit, large=True
        )
        await self._insert_head(SESSIONS_INDEX_KEY, session_id, self.sessions_limit)
        await self.store_offline_analysis(parsed)

        record = RestorationRecord(
            sessionId=session_id,
            timestamp=utc_now_iso(),
            deviceId=device_id,
            analysisTermsCount=len(parsed.analysis_results),
            compliancePercentage=parsed.compliance_percentage or 0,
            originalFilename=parsed.original_filename,
        )
        await self.kv.set(restoration_key(session_id), record.model_dump_json(), large=True)
        self._changed(session_id)
        logger.info(f"Session {session_id} stored")

    async def store_offline_analysis(
        self, session: Session | dict, local_pdf_path: Optional[str] = None
    ) -> Optional[OfflineAnalysisSummary]:
        """Derive and store the history summary; None when no document path resolves."""
        parsed = _coerce_session(session)
        session_id = parsed.session_id
        remote_url = parsed.document_url

        cached_path = local_pdf_path
        if not cached_path and remote_url and self.file_cache is not None:
            cached_path = await self.file_cache.download(remote_url, session_id)
        if not cached_path and remote_url:
            logger.warning(f"No local document cached for {session_id}, using remote URL")
            cached_path = remote_url
        if not cached_path:
            logger.warning(f"No document path available for {session_id}; skipping offline analysis")
            return None

        language = parsed.detected_contract_language if parsed.detected_contract_language in ("ar", "en") else "en"
        summary = OfflineAnalysisSummary(
            id=f"offline_{session_id}",
            sessionId=session_id,
            pdfUrl=remote_url,
            localPdfPath=cached_path,
            originalFilename=parsed.original_filename or "Unknown Contract",
            summary=generate_summary(parsed),
            complianceScore=calculate_compliance_score(parsed),
            flags=generate_flags(parsed),
            analysisDate=parsed.analysis_timestamp or utc_now_iso(),
            termsCount=len(parsed.analysis_results),
            issuesCount=count_issues(parsed),
            language=language,
            fullSessionData=parsed,
            isOfflineOnly=False,
        )
        await self.kv.set(offline_analysis_key(session_id), summary.model_dump_json(), large=True)
        await self._insert_head(OFFLINE_ANALYSES_INDEX_KEY, session_id, self.offline_limit, large=True)
        return summary

    # ── Reads ──────────────────────────────────────────────────────

    async def get(self, session_id: str) -> Optional[Session]:
        _require_id(session_id)
        key = session_key(session_id)
        raw = await self.kv.get(key, large=True)
        if raw is None:
            raw = await self.kv.get(key)
        if raw is None:
            return None
        try:
            return Session.model_validate_json(raw)
        except PydanticValidationError as exc:
            logger.warning(f"Corrupt session record {session_id}: {exc}")
            return None

    async def get_all(self) -> list[Session]:
        """Every session listed by the sessions index or this device's list."""
        ids = await self.get_sessions_index() + await self.get_device_sessions()

        sessions: list[Session] = []
        for session_id in _dedupe(ids):
            try:
                session = await self.get(session_id)
            except ValidationError as exc:
                logger.warning(f"Skipping invalid index entry {session_id!r}: {exc}")
                continue
            if session is None:
                logger.warning(f"Session {session_id} listed in index but not loadable")
                continue
            sessions.append(session)
        return sessions

    async def get_all_offline_analyses(self) -> list[OfflineAnalysisSummary]:
        """Load summaries newest first, pruning unloadable ids from the index."""
        ids = await self.get_offline_index()
        analyses: list[OfflineAnalysisSummary] = []
        failed: set[str] = set()

        for session_id in _dedupe(ids):
            raw = await self.kv.get(offline_analysis_key(session_id), large=True)
            if raw is None:
                logger.warning(f"No offline analysis found for {session_id}")
                failed.add(session_id)
                continue
            try:
                analysis = OfflineAnalysisSummary.model_validate_json(raw)
            except PydanticValidationError as exc:
                logger.warning(f"Invalid offline analysis for {session_id}: {exc}")
                failed.add(session_id)
                continue
            if not analysis.sessionId or not analysis.originalFilename:
                logger.warning(f"Incomplete offline analysis for {session_id}")
                failed.add(session_id)
                continue
            analyses.append(analysis)

        if failed:
            try:
                await self._drop_from_index(OFFLINE_ANALYSES_INDEX_KEY, failed, large=True)
                logger.info(f"Pruned {len(failed)} entries from offline analyses index")
            except BackendError as exc:
                logger.warning(f"Failed to prune offline analyses index: {exc}")

        analyses.sort(key=lambda item: iso_to_epoch(item.analysisDate), reverse=True)
        return analyses

    async def get_restoration(self, session_id: str) -> Optional[RestorationRecord]:
        _require_id(session_id)
        raw = await self.kv.get(restoration_key(session_id), large=True)
        if raw is None:
            return None
        try:
            return RestorationRecord.model_validate_json(raw)
        except PydanticValidationError as exc:
            logger.warning(f"Corrupt restoration record {session_id}: {exc}")
            return None

    # ── Deletes ────────────────────────────────────────────────────

    async def remove(self, session_id: str) -> None:
        """Best-effort removal of a session, its summary and its index entries."""
        _require_id(session_id)
        logger.info(f"Removing session {session_id}")

        await self.kv.delete(session_key(session_id))
        await self.kv.delete(offline_analysis_key(session_id))
        await self.kv.delete(restoration_key(session_id))

        device_id = await self.device_identity.get_or_create()
        targets = [
            (SESSIONS_INDEX_KEY, False),
            (OFFLINE_ANALYSES_INDEX_KEY, True),
            (device_sessions_key(device_id), True),
        ]

        for index_key, large in targets:
            try:
                await self._drop_from_index(index_key, {session_id}, large=large)
            except BackendError as exc:
                logger.warning(f"Failed to drop {session_id} from {index_key}: {exc}")
        self._changed(session_id)

    async def clear_all(self) -> None:
        ids = _dedupe(
            await self.get_sessions_index()
            + await self.get_offline_index()
            + await self.get_device_sessions()
        )
        logger.info(f"Clearing {len(ids)} stored sessions")
        for session_id in ids:
            await self.kv.delete(session_key(session_id))
            await self.kv.delete(offline_analysis_key(session_id))
            await self.kv.delete(restoration_key(session_id))

        await self.kv.delete(SESSIONS_INDEX_KEY)
        await self.kv.delete(OFFLINE_ANALYSES_INDEX_KEY)
        device_id = await self.device_identity.get_or_create()
        await self.kv.delete(device_sessions_key(device_id))
        self._changed(None)
