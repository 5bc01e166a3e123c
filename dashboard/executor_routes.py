"""
Executor Endpoints
==================

Job submission and the polling status endpoint read by the debug output
panel. Each polling client passes its own clientId so it only receives
output lines it has not seen yet.
"""

from typing import Optional, Dict, Any, List

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from executor import JobValidationError


# Will be set from main server
services = None

router = APIRouter(prefix="/api/executor", tags=["executor"])


def set_services(svc):
    """Set the service context (called from main server)."""
    global services
    services = svc


def _require_services():
    if not services:
        raise HTTPException(status_code=503, detail="Services not initialized")
    return services


class JobSubmitRequest(BaseModel):
    """Submit a CLI job."""
    command: str
    args: List[str] = Field(default_factory=list)
    cwd: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    timeout: Optional[float] = Field(default=None, description="Seconds; executor default when omitted")
    id: Optional[str] = None
    project_id: Optional[str] = None
    ticket_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


@router.get("/status")
async def executor_status(
    ticketId: Optional[str] = None,
    projectId: Optional[str] = None,
    clientId: str = "default"
):
    """Executor state plus the output lines this client has not read yet."""
    svc = _require_services()
    executor = svc.executor

    stats = executor.get_stats()
    running = executor.get_running_jobs()
    pending = executor.get_pending_jobs()

    current_job = None
    if running:
        # Prefer a job belonging to the requested ticket/project
        matching = [
            job for job in running
            if (not ticketId or job['ticket_id'] == ticketId)
            and (not projectId or job['project_id'] == projectId)
        ]
        job = (matching or running)[0]
        current_job = {'id': job['id'], 'command': job['command'], 'startedAt': job['started_at']}

    new_output = [
        {'seq': line.seq, 'timestamp': line.timestamp, 'text': line.text, 'isError': line.is_error}
        for line in svc.output_buffer.read_new(clientId)
    ]

    return {
        "status": "running" if running else "idle",
        "currentJob": current_job,
        "newOutput": new_output,
        "stats": {
            "queued": stats['queued'],
            "running": stats['running'],
            "completed": stats['completed'],
            "maxConcurrent": stats['max_concurrent'],
        },
        "pendingJobs": len(pending),
        "ticketId": ticketId,
        "projectId": projectId,
    }


@router.get("/jobs")
async def list_jobs():
    """Running and queued jobs."""
    executor = _require_services().executor
    return {
        "running": executor.get_running_jobs(),
        "pending": executor.get_pending_jobs(),
        "stats": executor.get_stats(),
    }


@router.post("/jobs", status_code=201)
async def submit_job(request: JobSubmitRequest):
    """Queue a job; it starts immediately when a slot is free."""
    executor = _require_services().executor
    try:
        job_id = executor.submit(request.model_dump(exclude_none=True))
    except JobValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"id": job_id, "status": executor.get_job_status(job_id)}


@router.get("/jobs/{job_id}")
async def get_job(job_id: str):
    """Job details, including the result once finished."""
    job = _require_services().executor.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    return job


@router.delete("/jobs/{job_id}")
async def cancel_job(job_id: str):
    """Cancel a queued job. Running jobs cannot be cancelled."""
    executor = _require_services().executor
    status = executor.get_job_status(job_id)
    if status is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    if not executor.cancel(job_id):
        raise HTTPException(status_code=409, detail=f"Job {job_id} is {status}, only queued jobs can be cancelled")
    return {"success": True, "id": job_id, "status": "cancelled"}
