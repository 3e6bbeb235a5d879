"""Analysis tracking, app lifecycle and background pass API."""
from __future__ import annotations

import asyncio
import logging
import secrets
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, File, HTTPException, Request, UploadFile
from pydantic import BaseModel

from contract_sync import config
from contract_sync.errors import ContractSyncError, ValidationError
from contract_sync.models import AppState, ContractFile
from contract_sync.routers.sessions import get_container

logger = logging.getLogger("contract_sync.api")

analysis_router = APIRouter(prefix="/api", tags=["analysis"])


class AppStateRequest(BaseModel):
    state: AppState


async def _save_upload(upload: UploadFile) -> ContractFile:
    """Spool a multipart upload to disk so it can be retried later."""
    content = await upload.read()
    name = Path(upload.filename or "contract.pdf").name
    target = config.DATA_DIR / "uploads" / f"{secrets.token_hex(8)}_{name}"

    def _write() -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)

    await asyncio.to_thread(_write)
    return ContractFile(
        uri=str(target),
        name=name,
        mimeType=upload.content_type or "application/pdf",
        size=len(content),
    )


@analysis_router.post("/analysis/{session_id}", status_code=202)
async def start_analysis(session_id: str, request: Request, file: Optional[UploadFile] = File(None)):
    container = get_container(request)
    contract_file = await _save_upload(file) if file is not None else None
    try:
        tracked_id = await container.start_analysis(session_id, contract_file)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ContractSyncError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return {
        "session_id": tracked_id,
        "analyzing": container.is_analyzing(tracked_id),
    }


@analysis_router.get("/analysis/{session_id}")
async def is_analyzing(session_id: str, request: Request):
    container = get_container(request)
    return {"session_id": session_id, "analyzing": container.is_analyzing(session_id)}


@analysis_router.get("/analysis")
async def get_active_jobs(request: Request):
    container = get_container(request)
    return {"jobs": container.get_active_jobs()}


@analysis_router.delete("/analysis/{session_id}")
async def stop_analysis(session_id: str, request: Request):
    container = get_container(request)
    await container.stop_analysis(session_id)
    return {"session_id": session_id, "analyzing": False}


@analysis_router.post("/app-state")
async def set_app_state(req: AppStateRequest, request: Request):
    container = get_container(request)
    await container.set_app_state(req.state)
    return {"state": container.app_state.state}


@analysis_router.post("/background/run")
async def run_background_pass(request: Request):
    container = get_container(request)
    return await container.run_background_pass()
