"""HTTP jobs API serving a job store."""

from __future__ import annotations

import logging

from fastapi import Depends, FastAPI, HTTPException, Response
from fastapi.responses import JSONResponse

from batchprompt.config import LOG_FORMAT, Settings
from batchprompt.schemas import (
    ErrorResponse,
    HealthResponse,
    JobDefinition,
    JobListResponse,
    JobStatusUpdate,
    JobTrigger,
)
from batchprompt.store import PersistenceError, SQLiteJobStore, get_store

logger = logging.getLogger(__name__)

# Configure logging
logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

app = FastAPI(
    title="batchprompt jobs",
    description="Create and list reusable batch prompt jobs",
    version="0.1.0",
)


def get_job_store() -> SQLiteJobStore:
    """Store used by the endpoints; overridden in tests."""
    return get_store(Settings.from_env().jobs_db_path)


@app.get("/api/jobs", response_model=JobListResponse)
async def list_jobs(
    trigger: JobTrigger | None = None,
    store: SQLiteJobStore = Depends(get_job_store),
) -> JobListResponse:
    """List stored jobs, optionally filtered by trigger."""
    return JobListResponse(jobs=store.list(trigger=trigger))


@app.get("/api/jobs/{job_id}", response_model=JobDefinition)
async def get_job(job_id: str, store: SQLiteJobStore = Depends(get_job_store)) -> JobDefinition:
    job = store.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@app.post("/api/jobs", response_model=JobDefinition, status_code=201)
async def create_job(
    definition: JobDefinition,
    response: Response,
    store: SQLiteJobStore = Depends(get_job_store),
) -> JobDefinition:
    """Create a job, or replace the job with the same id."""
    replacing = definition.id is not None and store.get(definition.id) is not None
    stored = store.save(definition)
    if replacing:
        response.status_code = 200

    logger.info(f"{'Updated' if replacing else 'Created'} job {stored.id}: {stored.name}")
    return stored


@app.delete("/api/jobs/{job_id}")
async def delete_job(job_id: str, store: SQLiteJobStore = Depends(get_job_store)) -> dict:
    if not store.delete(job_id):
        raise HTTPException(status_code=404, detail="Job not found")
    return {"success": True}


@app.post("/api/jobs/{job_id}/status", response_model=JobDefinition)
async def update_job_status(
    job_id: str,
    update: JobStatusUpdate,
    store: SQLiteJobStore = Depends(get_job_store),
) -> JobDefinition:
    """Record the outcome of a run on a job and stamp its last run time."""
    job = store.update_run_status(job_id, update.status, update.last_result_url)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@app.post("/api/jobs/{job_id}/skipped", response_model=JobDefinition)
async def mark_job_skipped(job_id: str, store: SQLiteJobStore = Depends(get_job_store)) -> JobDefinition:
    job = store.mark_skipped(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@app.get("/health", response_model=HealthResponse)
async def health(store: SQLiteJobStore = Depends(get_job_store)) -> HealthResponse:
    """Check broker and job store health."""
    try:
        job_count = len(store.list())
    except PersistenceError:
        return HealthResponse(store="unhealthy")
    return HealthResponse(job_count=job_count)


@app.exception_handler(PersistenceError)
async def persistence_exception_handler(request, exc: PersistenceError) -> JSONResponse:
    """Report store failures as service unavailable."""
    logger.error(f"Job store failure: {exc}")
    return JSONResponse(
        status_code=503,
        content=ErrorResponse(
            detail=str(exc),
            error_code="STORE_UNAVAILABLE",
        ).model_dump(),
    )
