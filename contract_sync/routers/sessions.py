"""Session history, offline summaries, sync, device identity and analytics API."""
from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from contract_sync.container import ContractSyncApp
from contract_sync.errors import ContractSyncError, ValidationError
from contract_sync.models import AnalyticsSummary, OfflineAnalysisSummary, Session

logger = logging.getLogger("contract_sync.api")

sessions_router = APIRouter(prefix="/api", tags=["sessions"])


class SyncRequest(BaseModel):
    remote_url: str = Field(..., min_length=1)


def get_container(request: Request) -> ContractSyncApp:
    container = getattr(request.app.state, "container", None)
    if container is None or not container.started:
        raise HTTPException(status_code=503, detail="Contract sync not initialized")
    return container


def _http_error(exc: ContractSyncError) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


@sessions_router.post("/sessions", status_code=201)
async def store_session(payload: dict[str, Any], request: Request):
    container = get_container(request)
    try:
        await container.repository.store(payload)
    except ContractSyncError as exc:
        raise _http_error(exc) from exc
    return {"status": "stored", "session_id": payload.get("session_id")}


@sessions_router.get("/sessions", response_model=list[Session])
async def list_sessions(request: Request):
    container = get_container(request)
    try:
        return await container.repository.get_all()
    except ContractSyncError as exc:
        raise _http_error(exc) from exc


@sessions_router.get("/sessions/offline-first", response_model=list[Session])
async def list_sessions_offline_first(request: Request, remote_url: Optional[str] = Query(None)):
    container = get_container(request)
    return await container.sync.get_sessions_offline_first(remote_url)


@sessions_router.get("/sessions/{session_id}", response_model=Session)
async def get_session(session_id: str, request: Request):
    container = get_container(request)
    try:
        session = await container.repository.get(session_id)
    except ContractSyncError as exc:
        raise _http_error(exc) from exc
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return session


@sessions_router.delete("/sessions/{session_id}")
async def remove_session(session_id: str, request: Request):
    container = get_container(request)
    try:
        await container.repository.remove(session_id)
    except ContractSyncError as exc:
        raise _http_error(exc) from exc
    return {"status": "removed", "session_id": session_id}


@sessions_router.delete("/sessions")
async def clear_sessions(request: Request):
    container = get_container(request)
    try:
        await container.repository.clear_all()
    except ContractSyncError as exc:
        raise _http_error(exc) from exc
    return {"status": "cleared"}


@sessions_router.get("/offline-analyses", response_model=list[OfflineAnalysisSummary])
async def list_offline_analyses(request: Request):
    container = get_container(request)
    return await container.repository.get_all_offline_analyses()


@sessions_router.post("/sync")
async def sync_with_backend(req: SyncRequest, request: Request):
    container = get_container(request)
    ok = await container.sync.sync_with_backend(req.remote_url)
    return {"success": ok}


@sessions_router.get("/device-id")
async def get_device_id(request: Request):
    container = get_container(request)
    return {"device_id": await container.device_identity.get_or_create()}


@sessions_router.get("/analytics", response_model=AnalyticsSummary)
async def get_analytics(request: Request, refresh: bool = Query(False)):
    container = get_container(request)
    return await container.analytics.get_summary(force=refresh)
