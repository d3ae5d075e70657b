from __future__ import annotations

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel, Field

from . import jobqueue
from .api_common import api_connection, get_version, require_api_token
from .config import ConfigError, load_runtime_config
from .models import JOB_STATUSES, PayloadError
from .utils import utc_now_iso

app = FastAPI(title="newsline Queue Manager")


class CreateJobRequest(BaseModel):
    type: str
    payload: dict
    priority: int | None = None
    max_attempts: int | None = Field(default=None, ge=1)


class PollRequest(BaseModel):
    worker_type: str
    limit: int | None = Field(default=None, ge=1, le=100)
    worker_id: str | None = None


class ClaimRequest(BaseModel):
    worker_id: str


class FailRequest(BaseModel):
    error: str = "unknown error"
    permanent: bool = False


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "status": "Queue Manager operational",
        "version": get_version(),
        "timestamp": utc_now_iso(),
    }


@app.post("/jobs", dependencies=[Depends(require_api_token)])
def create_job(request: CreateJobRequest) -> dict[str, object]:
    with api_connection() as conn:
        try:
            config = load_runtime_config(conn)
        except ConfigError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        priority = request.priority
        if priority is None:
            priority = config.queue.default_priority
        max_attempts = request.max_attempts or config.queue.default_max_attempts
        try:
            job_id = jobqueue.create_job(
                conn, request.type, request.payload, priority=priority, max_attempts=max_attempts
            )
        except PayloadError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"success": True, "job_id": job_id}


@app.get("/jobs", dependencies=[Depends(require_api_token)])
def list_jobs(
    status: str | None = None, type: str | None = None, limit: int = 50
) -> dict[str, object]:
    if status is not None and status not in JOB_STATUSES:
        raise HTTPException(status_code=400, detail=f"unknown job status {status!r}")
    with api_connection() as conn:
        jobs = jobqueue.list_jobs(conn, status=status, job_type=type, limit=limit)
    return {"jobs": [job.to_dict() for job in jobs]}


@app.get("/jobs/{job_id}", dependencies=[Depends(require_api_token)])
def get_job(job_id: str) -> dict[str, object]:
    with api_connection() as conn:
        job = jobqueue.get_job(conn, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="job_not_found")
    return job.to_dict()


@app.post("/workers/poll", dependencies=[Depends(require_api_token)])
def poll(request: PollRequest) -> dict[str, object]:
    with api_connection() as conn:
        limit = request.limit
        if limit is None:
            limit = load_runtime_config(conn).queue.poll_limit
        jobs = jobqueue.claim_jobs_for_worker(
            conn, request.worker_type, limit, request.worker_id
        )
    return {"jobs": [job.to_dict() for job in jobs]}


@app.post("/jobs/{job_id}/claim", dependencies=[Depends(require_api_token)])
def claim(job_id: str, request: ClaimRequest) -> dict[str, object]:
    with api_connection() as conn:
        if jobqueue.get_job(conn, job_id) is None:
            raise HTTPException(status_code=404, detail="job_not_found")
        job = jobqueue.claim_job(conn, job_id, request.worker_id)
    return {"success": job is not None, "job": job.to_dict() if job else None}


@app.post("/jobs/{job_id}/complete", dependencies=[Depends(require_api_token)])
def complete(job_id: str) -> dict[str, object]:
    with api_connection() as conn:
        if not jobqueue.complete_job(conn, job_id):
            raise HTTPException(status_code=404, detail="job_not_found")
    return {"success": True}


@app.post("/jobs/{job_id}/fail", dependencies=[Depends(require_api_token)])
def fail(job_id: str, request: FailRequest) -> dict[str, object]:
    with api_connection() as conn:
        job = jobqueue.fail_job(conn, job_id, request.error, permanent=request.permanent)
    if job is None:
        raise HTTPException(status_code=404, detail="job_not_found")
    return {"success": True, "status": job.status, "attempts": job.attempts}


@app.post("/jobs/{job_id}/retry", dependencies=[Depends(require_api_token)])
def retry(job_id: str) -> dict[str, object]:
    with api_connection() as conn:
        if not jobqueue.retry_job(conn, job_id):
            raise HTTPException(status_code=404, detail="job_not_found")
    return {"success": True}


@app.post("/cleanup", dependencies=[Depends(require_api_token)])
def cleanup() -> dict[str, object]:
    with api_connection() as conn:
        config = load_runtime_config(conn)
        reset = jobqueue.cleanup_stale_jobs(conn, config.queue.lease_seconds)
    return {"success": True, "reset": reset, "message": "Cleanup completed"}


@app.get("/stats", dependencies=[Depends(require_api_token)])
def stats() -> dict[str, object]:
    with api_connection() as conn:
        return jobqueue.get_queue_stats(conn)
