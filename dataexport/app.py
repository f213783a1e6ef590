"""
FastAPI application: REST API for managing and running export jobs.
Run with: python -m dataexport
"""
import logging
import os
import secrets
from datetime import datetime, time
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from dataexport.database import init_db
from dataexport.scheduler import scheduler
from services.job_service import INVALID, NOT_FOUND, REJECTED, JobService

logger = logging.getLogger(__name__)

app = FastAPI(title="DataExport", version="1.0.0")

API_KEY = os.environ.get("DATAEXPORT_API_KEY")
ALLOW_INSECURE = os.environ.get("DATAEXPORT_ALLOW_INSECURE", "false").lower() == "true"
ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.environ.get("DATAEXPORT_ALLOWED_ORIGINS", "http://localhost:8001").split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

_STATUS_CODES = {NOT_FOUND: 404, REJECTED: 409, INVALID: 400}


def require_admin_api_key(x_api_key: Optional[str] = Header(default=None, alias="X-API-Key")):
    """Protect administrative endpoints with API key."""
    if ALLOW_INSECURE:
        return

    if not API_KEY:
        raise HTTPException(
            status_code=503,
            detail="DATAEXPORT_API_KEY is not configured. Set it or enable DATAEXPORT_ALLOW_INSECURE=true only for development.",
        )

    if not x_api_key or not secrets.compare_digest(x_api_key, API_KEY):
        raise HTTPException(status_code=401, detail="Invalid API key")


def _unwrap(result: Dict[str, Any]) -> Dict[str, Any]:
    """Turn a failed service result into the matching HTTP error."""
    if result.get("success"):
        return result
    raise HTTPException(_STATUS_CODES.get(result.get("error_code"), 500), result.get("error", "Request failed"))


# ============================================================================
# Pydantic Schemas
# ============================================================================

class JobCreate(BaseModel):
    name: str
    description: Optional[str] = ""
    type: str = "ProfileExecution"
    profile_id: Optional[int] = None
    profile_type: Optional[str] = None
    destination_id: Optional[int] = None
    custom_action: Optional[str] = None
    schedule_type: str = "Manual"
    cron_expression: Optional[str] = None
    interval_minutes: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    week_days: Optional[str] = None
    month_day: Optional[int] = None
    max_retries: int = 3
    timeout_minutes: int = 60
    priority: int = 5
    allow_concurrent: bool = False
    depends_on_job_ids: Optional[str] = None
    auto_pause_enabled: bool = True
    is_enabled: bool = True
    tags: List[str] = []

class JobUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    type: Optional[str] = None
    profile_id: Optional[int] = None
    profile_type: Optional[str] = None
    destination_id: Optional[int] = None
    custom_action: Optional[str] = None
    schedule_type: Optional[str] = None
    cron_expression: Optional[str] = None
    interval_minutes: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    week_days: Optional[str] = None
    month_day: Optional[int] = None
    max_retries: Optional[int] = None
    timeout_minutes: Optional[int] = None
    priority: Optional[int] = None
    allow_concurrent: Optional[bool] = None
    depends_on_job_ids: Optional[str] = None
    auto_pause_enabled: Optional[bool] = None
    is_enabled: Optional[bool] = None
    tags: Optional[List[str]] = None

class RunRequest(BaseModel):
    ignore_dependencies: bool = False
    parameters: Optional[Dict[str, Any]] = None


# ============================================================================
# Lifecycle
# ============================================================================

@app.on_event("startup")
async def startup():
    init_db()
    scheduler.start()
    if ALLOW_INSECURE:
        logger.warning("[SECURITY] DATAEXPORT_ALLOW_INSECURE=true. API key checks are disabled.")
    elif not API_KEY:
        logger.error("[SECURITY] DATAEXPORT_API_KEY is not set. Administrative API endpoints will reject requests.")
    logger.info("[APP] DataExport started on http://0.0.0.0:8001")

@app.on_event("shutdown")
async def shutdown():
    await scheduler.shutdown()


# ============================================================================
# API: Jobs CRUD
# ============================================================================

@app.get("/api/jobs")
def list_jobs(_auth: None = Depends(require_admin_api_key)):
    """List all export jobs."""
    result = _unwrap(JobService.list_jobs())
    return {"jobs": result["data"], "count": result["count"]}


@app.get("/api/jobs/status-summary")
def get_status_summary(_auth: None = Depends(require_admin_api_key)):
    """Job counts by status plus the next scheduled runs."""
    result = _unwrap(JobService.get_job_status())
    return {"summary": result["summary"], "next_runs": result["next_runs"]}


@app.post("/api/jobs")
def create_job(job: JobCreate, _auth: None = Depends(require_admin_api_key)):
    """Create a new export job."""
    result = _unwrap(JobService.create_job(job.dict(), created_by="API"))
    return {"id": result["data"]["id"], "name": result["data"]["name"],
            "next_run_time": result["data"]["next_run_time"], "status": "created"}


@app.get("/api/jobs/{job_id}")
def get_job(job_id: int, _auth: None = Depends(require_admin_api_key)):
    """Get a specific job."""
    return _unwrap(JobService.get_job(job_id))["data"]


@app.put("/api/jobs/{job_id}")
def update_job(job_id: int, updates: JobUpdate, _auth: None = Depends(require_admin_api_key)):
    """Update a job. Its next run time is recalculated."""
    result = _unwrap(JobService.update_job(job_id, updates.dict(exclude_unset=True)))
    return {"id": job_id, "next_run_time": result["data"]["next_run_time"], "status": "updated"}


@app.delete("/api/jobs/{job_id}")
def delete_job(job_id: int, _auth: None = Depends(require_admin_api_key)):
    """Delete a job and all its executions."""
    _unwrap(JobService.delete_job(job_id))
    return {"status": "deleted"}


# ============================================================================
# API: Execution
# ============================================================================

@app.post("/api/jobs/{job_id}/run")
async def trigger_job(job_id: int, request: Optional[RunRequest] = None,
                      _auth: None = Depends(require_admin_api_key)):
    """Manually trigger a job. Returns once the execution has been created."""
    request = request or RunRequest()
    result = _unwrap(await JobService.trigger_job(
        job_id, request.ignore_dependencies, request.parameters, triggered_by="API"
    ))
    return {"execution_id": result["execution_id"], "status": "started"}


@app.post("/api/jobs/{job_id}/resume")
def resume_job(job_id: int, _auth: None = Depends(require_admin_api_key)):
    """Re-enable a job paused by the circuit breaker."""
    return _unwrap(JobService.resume_job(job_id))["data"]


@app.post("/api/jobs/{job_id}/reset-failures")
def reset_failures(job_id: int, _auth: None = Depends(require_admin_api_key)):
    _unwrap(JobService.reset_failures(job_id))
    return {"id": job_id, "status": "reset"}


@app.get("/api/jobs/{job_id}/executions")
def get_job_executions(job_id: int, limit: int = Query(50, ge=1, le=500),
                       _auth: None = Depends(require_admin_api_key)):
    """Recent executions of a job, newest first."""
    result = _unwrap(JobService.get_job_logs(job_id, limit))
    return {"executions": result["data"], "count": result["count"]}


@app.post("/api/executions/{execution_id}/cancel")
def cancel_execution(execution_id: int, _auth: None = Depends(require_admin_api_key)):
    _unwrap(JobService.cancel_execution(execution_id))
    return {"id": execution_id, "status": "cancelled"}


@app.get("/api/queue")
def get_queue_status(_auth: None = Depends(require_admin_api_key)):
    """Queue depth, free slots and running jobs."""
    return _unwrap(JobService.get_queue_status())["data"]


@app.get("/api/profile-executions/{execution_id}/splits")
def get_profile_execution_splits(execution_id: int, _auth: None = Depends(require_admin_api_key)):
    """Per-split outcome of a split profile execution."""
    result = _unwrap(JobService.get_profile_execution_splits(execution_id))
    result.pop("success", None)
    return result
