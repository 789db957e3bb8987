"""
shelfsync API - Douban -> Feishu library sync service
"""

import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from sse_starlette.sse import EventSourceResponse

from config import settings
from database import connect_to_mongo, close_mongo_connection
from models.job import SyncJobResponse, SyncRequest
from services.contract_validator import ContractValidator
from services.feishu_client import FeishuClient
from services.sync_orchestrator import (
    ActiveJobConflict,
    InvalidTransition,
    SyncOrchestrator,
)

logger = logging.getLogger("shelfsync")

# One validator per process so its counters cover every destination call
_validator = ContractValidator.for_environment(settings.APP_ENV, settings.CONTRACT_LOG_DIR)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application startup and shutdown events"""
    # Startup
    if settings.MONGO_URI:
        try:
            await connect_to_mongo()
            logger.info("Database connection established", extra={"event": "startup_complete"})
        except Exception as e:
            logger.error("Failed to connect to MongoDB", extra={"event": "startup_failed", "error": str(e)})
            raise
    else:
        logger.info(
            "MONGO_URI not set, job history kept in memory only",
            extra={"event": "startup_complete", "history": "memory"},
        )

    yield

    # Shutdown
    await close_mongo_connection()


app = FastAPI(
    title="shelfsync API",
    description="Syncs a Douban library into Feishu Bitable tables",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"http://localhost:\d+|http://127\.0\.0\.1:\d+",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _get_orchestrator() -> SyncOrchestrator:
    """Create a SyncOrchestrator wired to the real dependencies."""
    config = settings.to_sync_config()
    return SyncOrchestrator(
        config=config,
        destination=FeishuClient(config.feishu, _validator),
        max_concurrent_jobs=settings.MAX_CONCURRENT_JOBS,
    )


@app.get("/")
async def root():
    """Root endpoint - API health check"""
    return {"message": "shelfsync API is running"}


# ── Sync Job Endpoints ───────────────────────────────────────────────────────


@app.post("/sync/jobs", status_code=201)
async def start_sync(request_body: SyncRequest):
    """
    Enqueue a sync job for one Douban user.

    Returns a job_id plus stream and status URLs. A user with a queued or
    running job gets 409.
    """
    orchestrator = _get_orchestrator()

    try:
        job = await orchestrator.start_job(request_body)
    except ActiveJobConflict as e:
        logger.warning(
            "Sync job rejected, user already has an active job",
            extra={
                "event": "sync_job_conflict",
                "user_id": e.user_id,
                "active_job_id": e.job_id,
            },
        )
        raise HTTPException(status_code=409, detail=str(e))

    logger.info(
        "Sync endpoint: job created",
        extra={
            "event": "sync_endpoint_started",
            "job_id": job.job_id,
            "user_id": job.user_id,
            "trigger_type": request_body.trigger_type.value,
        },
    )

    return SyncJobResponse(
        job_id=job.job_id,
        state=job.state,
        stream_url=f"/sync/jobs/{job.job_id}/stream",
        status_url=f"/sync/jobs/{job.job_id}",
    )


@app.get("/sync/jobs")
async def list_sync_jobs(
    user_id: str = Query(None, description="Only jobs for this Douban user"),
    limit: int = Query(20, ge=1, le=100),
):
    """Job history, newest first."""
    orchestrator = _get_orchestrator()
    jobs = await orchestrator.list_jobs(user_id=user_id, limit=limit)
    return [job.model_dump(mode="json") for job in jobs]


@app.get("/sync/jobs/{job_id}")
async def get_sync_status(job_id: str):
    """
    Polling fallback - returns current job status and counters.

    Use the SSE stream endpoint for real-time updates.
    """
    orchestrator = _get_orchestrator()
    job = await orchestrator.get_status(job_id)

    if job is None:
        raise HTTPException(status_code=404, detail="Sync job not found")

    return job.model_dump(mode="json")


@app.post("/sync/jobs/{job_id}/cancel")
async def cancel_sync(job_id: str):
    """Request cancellation. The job stops before its next item."""
    orchestrator = _get_orchestrator()

    try:
        job = await orchestrator.cancel(job_id)
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))

    if job is None:
        raise HTTPException(status_code=404, detail="Sync job not found")

    return job.model_dump(mode="json")


@app.get("/sync/jobs/{job_id}/stream")
async def stream_sync(job_id: str, request: Request):
    """
    SSE endpoint - streams job progress.

    Event types: job_started, item, heartbeat, complete.
    """
    orchestrator = _get_orchestrator()
    job = await orchestrator.get_status(job_id)

    if job is None:
        raise HTTPException(status_code=404, detail="Sync job not found")

    async def event_generator():
        async for event in orchestrator.event_stream(job_id):
            if await request.is_disconnected():
                logger.info(
                    "SSE client disconnected",
                    extra={"event": "sse_disconnect", "job_id": job_id},
                )
                break

            event_type = event.get("event", "message")
            data = event.get("data", {})

            yield {
                "event": event_type,
                "data": json.dumps(data, ensure_ascii=False) if isinstance(data, dict) else str(data),
            }

            # Stop after terminal events
            if event_type in ("complete", "error"):
                break

    return EventSourceResponse(event_generator())


# ── Operational Endpoints ────────────────────────────────────────────────────


@app.get("/contract/stats")
async def contract_stats():
    """Destination contract health: process counters plus today's failure log."""
    return {
        "strict": _validator.strict,
        "counters": _validator.stats.model_dump(),
        "today": _validator.get_today_failure_stats().model_dump(),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=True)
