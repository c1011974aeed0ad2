"""Live agent activity API: snapshots, manual poll and an SSE stream."""
from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException, Request
from sse_starlette import ServerSentEvent
from sse_starlette.sse import EventSourceResponse

from agentpulse import config

logger = logging.getLogger("agentpulse.activity")

activity_router = APIRouter(prefix="/api/activity", tags=["activity"])


def _get_engine(request: Request):
    engine = getattr(request.app.state, "activity_engine", None)
    if not engine:
        raise HTTPException(status_code=503, detail="Activity engine not initialized")
    return engine


def _get_worker(request: Request):
    worker = getattr(request.app.state, "activity_worker", None)
    if not worker:
        raise HTTPException(status_code=503, detail="Activity worker not initialized")
    return worker


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@activity_router.get("/progress")
async def get_progress(request: Request):
    """Buffered progress events, oldest first."""
    engine = _get_engine(request)
    progress = engine.get_progress()
    return {"count": len(progress), "progress": [event.model_dump(mode="json") for event in progress]}


@activity_router.get("/sessions")
async def get_sessions(request: Request):
    engine = _get_engine(request)
    sessions = engine.get_sessions()
    return {"count": len(sessions), "sessions": [session.model_dump(mode="json") for session in sessions]}


@activity_router.get("/metrics")
async def get_metrics(request: Request):
    engine = _get_engine(request)
    return engine.get_metrics().model_dump(mode="json")


@activity_router.get("/status")
async def get_status(request: Request):
    """Worker state, input paths and engine metrics."""
    engine = _get_engine(request)
    worker = getattr(request.app.state, "activity_worker", None)
    broadcaster = getattr(request.app.state, "activity_broadcaster", None)
    settings = engine.settings
    return {
        "status": "active",
        "worker": "running" if worker and worker.is_running else "stopped",
        "subscribers": len(broadcaster) if broadcaster is not None else 0,
        "paths": {
            "progressFile": str(settings.progress_file),
            "sessionsDir": str(settings.sessions_dir),
            "registryFile": str(settings.registry_file),
        },
        "metrics": engine.get_metrics().model_dump(mode="json"),
    }


@activity_router.post("/poll")
async def trigger_poll(request: Request):
    """Run one tick now and report what it changed."""
    worker = _get_worker(request)
    result = await worker.poll_now()
    return {
        "status": "ok",
        "changed": result.changed,
        "newEvents": len(result.progress),
        "sessionsChanged": result.sessions is not None,
        "failedSteps": result.failed_steps,
        "skippedSteps": result.skipped_steps,
        "durationMs": round(result.duration_ms, 3),
        "nextIntervalMs": result.next_interval_ms,
    }


@activity_router.get("/stream")
async def activity_stream(request: Request) -> EventSourceResponse:
    """SSE stream of activity changes.

    Events:
        - connected: initial snapshot of progress and sessions
        - progress: new or updated progress events
        - sessions: full session list whenever it changes
        - keepalive: heartbeat when nothing happened for a while
    """
    engine = _get_engine(request)
    broadcaster = getattr(request.app.state, "activity_broadcaster", None)
    if broadcaster is None:
        raise HTTPException(status_code=503, detail="Activity stream not initialized")

    async def event_generator():
        queue = broadcaster.subscribe()
        try:
            yield ServerSentEvent(
                data=json.dumps(
                    {
                        "timestamp": _timestamp(),
                        "progress": [event.model_dump(mode="json") for event in engine.get_progress()],
                        "sessions": [session.model_dump(mode="json") for session in engine.get_sessions()],
                    }
                ),
                event="connected",
            )
            logger.info("Activity stream connected")

            while True:
                try:
                    message = await asyncio.wait_for(queue.get(), timeout=config.STREAM_KEEPALIVE_SECONDS)
                    yield ServerSentEvent(data=json.dumps(message["data"]), event=message["event"])
                except asyncio.TimeoutError:
                    yield ServerSentEvent(data=json.dumps({"timestamp": _timestamp()}), event="keepalive")
        except asyncio.CancelledError:
            logger.info("Activity stream disconnected")
            raise
        finally:
            broadcaster.unsubscribe(queue)

    return EventSourceResponse(event_generator())
