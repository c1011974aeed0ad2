"""agentpulse FastAPI backend: main application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agentpulse import config
from agentpulse.engine.aggregator import ActivityEngine
from agentpulse.engine.broadcast import ActivityBroadcaster
from agentpulse.engine.settings import EngineConfig
from agentpulse.engine.worker import ActivityWorker
from agentpulse.routers.activity import activity_router
from agentpulse.observability import initialize as initialize_observability, shutdown as shutdown_observability

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("agentpulse")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("agentpulse backend starting up")
    initialize_observability(app)

    engine = ActivityEngine(EngineConfig())
    broadcaster = ActivityBroadcaster()
    worker = ActivityWorker(engine, broadcaster)
    app.state.activity_engine = engine
    app.state.activity_broadcaster = broadcaster
    app.state.activity_worker = worker

    if config.WORKER_AUTOSTART:
        await worker.start()

    yield

    logger.info("agentpulse backend shutting down")
    await worker.stop()
    shutdown_observability(app)


app = FastAPI(
    title="agentpulse API",
    description="Live activity feed for coding-agent sessions",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(activity_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    worker = getattr(app.state, "activity_worker", None)
    return {
        "status": "ok",
        "worker": "running" if worker and worker.is_running else "stopped",
    }
