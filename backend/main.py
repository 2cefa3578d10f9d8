"""
Vendor Discovery API - Admin control surface for the discovery scheduler
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware

from config import settings
from database import connect_to_mongo, close_mongo_connection
from models.discovery import (
    BulkJobCreateRequest,
    DiscoveryJob,
    DiscoveryJobCreate,
    DiscoveryJobUpdate,
    DiscoveryRun,
    ManualRunResponse,
    SchedulerConfigUpdate,
)
from models.vendor import StagedVendor, StagedVendorStatus
from services import job_admin
from services.clock import ReferenceClock
from services.conversation_store import ConversationStore
from services.discovery_pipeline import DiscoveryPipeline
from services.discovery_provider import GeminiDiscoveryProvider
from services.scheduler import JobNotFoundError, JobScheduler
from services.storage import DiscoveryStorage, MongoDiscoveryStorage
from services.website_verifier import WebsiteVerifier

logger = logging.getLogger("vendor_discovery")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application startup and shutdown events"""
    # Startup
    try:
        await connect_to_mongo()
        logger.info("Database connection established", extra={"event": "startup_complete"})
    except Exception as e:
        logger.error("Failed to connect to MongoDB", extra={"event": "startup_failed", "error": str(e)})
        raise

    storage = MongoDiscoveryStorage()
    clock = ReferenceClock()
    conversations = ConversationStore(storage)
    pipeline = DiscoveryPipeline(
        storage=storage,
        provider=GeminiDiscoveryProvider(),
        verifier=WebsiteVerifier(),
        clock=clock,
        conversations=conversations,
    )
    scheduler = JobScheduler(storage, pipeline, clock)

    app.state.storage = storage
    app.state.conversations = conversations
    app.state.scheduler = scheduler

    if settings.DISCOVERY_SCHEDULER_ENABLED:
        await scheduler.start(settings.DISCOVERY_TICK_SECONDS)

    yield

    # Shutdown
    await scheduler.stop(cancel_active=True)
    await scheduler.join()
    await close_mongo_connection()


app = FastAPI(
    title="Vendor Discovery API",
    description="Scheduled AI vendor discovery for the wedding-planning platform",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware configuration
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"http://localhost:\d+|http://127\.0\.0\.1:\d+",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _get_storage(request: Request) -> DiscoveryStorage:
    storage = getattr(request.app.state, "storage", None)
    if storage is None:
        raise HTTPException(status_code=500, detail="Storage not initialized")
    return storage


def _get_scheduler(request: Request) -> JobScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=500, detail="Scheduler not initialized")
    return scheduler


def _get_conversations(request: Request) -> ConversationStore:
    conversations = getattr(request.app.state, "conversations", None)
    if conversations is None:
        return ConversationStore(_get_storage(request))
    return conversations


@app.get("/")
async def root():
    """Root endpoint - API health check"""
    return {"message": "Vendor Discovery API is running"}


# ── Discovery Jobs ───────────────────────────────────────────────────────────


@app.get("/admin/discovery-jobs", response_model=list[DiscoveryJob])
async def list_discovery_jobs(request: Request):
    try:
        return await _get_storage(request).list_jobs()
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Database error: {str(e)}")


@app.post("/admin/discovery-jobs", response_model=DiscoveryJob, status_code=201)
async def create_discovery_job(payload: DiscoveryJobCreate, request: Request):
    return await job_admin.create_job(_get_storage(request), payload)


@app.post("/admin/discovery-jobs/bulk", status_code=201)
async def bulk_create_discovery_jobs(payload: BulkJobCreateRequest, request: Request):
    """
    Create one job per (area, specialty) combination.

    Returns a summary plus a per-pair result (created / skipped_existing / error).
    """
    outcome = await job_admin.bulk_create_jobs(_get_storage(request), payload)
    return {
        "summary": outcome["summary"],
        "results": [result.model_dump(exclude_none=True) for result in outcome["results"]],
    }


@app.patch("/admin/discovery-jobs/{job_id}", response_model=DiscoveryJob)
async def update_discovery_job(job_id: str, payload: DiscoveryJobUpdate, request: Request):
    job = await job_admin.update_job(_get_storage(request), job_id, payload)
    if job is None:
        raise HTTPException(status_code=404, detail="Discovery job not found")
    return job


@app.post("/admin/discovery-jobs/{job_id}/retire", response_model=DiscoveryJob)
async def retire_discovery_job(job_id: str, request: Request):
    job = await job_admin.retire_job(_get_storage(request), job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Discovery job not found")
    return job


@app.post("/admin/discovery-jobs/{job_id}/run-now", response_model=ManualRunResponse)
async def run_discovery_job_now(job_id: str, request: Request):
    """
    Trigger a manual run. Returns immediately with the queued run id;
    poll /admin/discovery-runs/{run_id} for the outcome.
    """
    scheduler = _get_scheduler(request)
    try:
        run_id = await scheduler.run_job_now(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Discovery job not found")

    logger.info(
        "Manual run requested",
        extra={"event": "manual_run_endpoint", "job_id": job_id, "run_id": run_id},
    )
    return ManualRunResponse(run_id=run_id)


# ── Discovery Runs ───────────────────────────────────────────────────────────


@app.get("/admin/discovery-runs", response_model=list[DiscoveryRun])
async def list_discovery_runs(
    request: Request,
    job_id: Optional[str] = Query(None, description="Only runs of this job"),
    run_date: Optional[str] = Query(None, description="Calendar day, YYYY-MM-DD"),
    limit: int = Query(100, ge=1, le=500, description="Max runs to return"),
):
    """Most recent runs first."""
    try:
        return await _get_storage(request).list_runs(job_id=job_id, run_date=run_date, limit=limit)
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Database error: {str(e)}")


@app.get("/admin/discovery-runs/{run_id}", response_model=DiscoveryRun)
async def get_discovery_run(run_id: str, request: Request):
    run = await _get_storage(request).get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Discovery run not found")
    return run


@app.post("/admin/discovery-runs/{run_id}/cancel")
async def cancel_discovery_run(run_id: str, request: Request):
    cancelled = await _get_scheduler(request).cancel_run(run_id)
    if not cancelled:
        raise HTTPException(status_code=409, detail="Run is not active or already finished")
    return {"status": "cancelled", "message": "Run cancelled successfully"}


# ── Scheduler ────────────────────────────────────────────────────────────────


@app.get("/admin/scheduler-config")
async def get_scheduler_config(request: Request):
    scheduler = _get_scheduler(request)
    config = await scheduler.get_config()
    return {
        **config.model_dump(),
        "timezone": scheduler.timezone_name,
        "running": scheduler.started,
    }


@app.put("/admin/scheduler-config")
async def update_scheduler_config(payload: SchedulerConfigUpdate, request: Request):
    if payload.run_hour is not None and not 0 <= payload.run_hour <= 23:
        raise HTTPException(status_code=400, detail="run_hour must be between 0 and 23")
    if payload.daily_cap is not None and payload.daily_cap < 1:
        raise HTTPException(status_code=400, detail="daily_cap must be at least 1")

    scheduler = _get_scheduler(request)
    config = await scheduler.update_config(run_hour=payload.run_hour, daily_cap=payload.daily_cap)
    return {
        **config.model_dump(),
        "timezone": scheduler.timezone_name,
        "running": scheduler.started,
    }


@app.post("/admin/scheduler/start")
async def start_scheduler(request: Request):
    scheduler = _get_scheduler(request)
    await scheduler.start(settings.DISCOVERY_TICK_SECONDS)
    return {"status": "started"}


@app.post("/admin/scheduler/stop")
async def stop_scheduler(request: Request):
    await _get_scheduler(request).stop()
    return {"status": "stopped"}


# ── Conversations & Staged Vendors ───────────────────────────────────────────


@app.delete("/admin/discovery-conversations")
async def reset_discovery_conversation(
    request: Request,
    area: str = Query(..., min_length=1),
    specialty: str = Query(..., min_length=1),
):
    """Forget the provider dialogue so the next run for this pair starts fresh."""
    deleted = await _get_conversations(request).reset(area, specialty)
    return {"deleted": deleted, "area": area, "specialty": specialty}


@app.get("/admin/staged-vendors", response_model=list[StagedVendor])
async def list_staged_vendors(
    request: Request,
    status: Optional[StagedVendorStatus] = Query(None, description="Filter by review status"),
    job_id: Optional[str] = Query(None, description="Only vendors found by this job"),
):
    try:
        return await _get_storage(request).list_staged_vendors(
            status=status.value if status else None,
            job_id=job_id,
        )
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Database error: {str(e)}")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=True)
