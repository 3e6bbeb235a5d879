"""Contract Sync FastAPI application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from contract_sync import config
from contract_sync.container import ContractSyncApp
from contract_sync.observability import initialize as initialize_observability, shutdown as shutdown_observability
from contract_sync.routers.analysis import analysis_router
from contract_sync.routers.sessions import sessions_router

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("contract_sync")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("Contract sync service starting up")
    initialize_observability(app)

    container = ContractSyncApp()
    await container.start()
    app.state.container = container

    yield

    logger.info("Contract sync service shutting down")
    await container.stop()
    shutdown_observability(app)


app = FastAPI(
    title="Contract Sync API",
    description="Offline-first storage, sync and analysis tracking for contract reviews",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:19006",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sessions_router)
app.include_router(analysis_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    container = getattr(app.state, "container", None)
    return {
        "status": "ok",
        "stores": "open" if container is not None and container.started else "closed",
        "keepAwake": container.keep_awake.active if container is not None else False,
    }
