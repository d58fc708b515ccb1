"""
Job Routes: enqueue, list, detail, retry and cancel.
"""
from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
import logging

from beyanname_ai.api.deps import get_job_store, get_scheduler
from beyanname_ai.core.limiter import limiter, ENQUEUE_LIMIT, LIST_LIMIT, RETRY_LIMIT
from beyanname_ai.core.security import get_current_owner
from beyanname_ai.services.job_store import (
    DuplicateJobError,
    InvalidTransitionError,
    Job,
    JobNotFoundError,
    JobStore,
    JobValidationError,
)
from beyanname_ai.services.scheduler import JobScheduler

logger = logging.getLogger(__name__)
router = APIRouter()

# ─── Data Models ─────────────────────────────────────────────────────────────

class JobCreateRequest(BaseModel):
    job_id: Optional[str] = None
    owner_id: Optional[str] = None
    input_refs: List[str] = Field(default_factory=list)
    input_payload: Any = None

class JobAccepted(BaseModel):
    job_id: str
    status: str

class BatchProgressModel(BaseModel):
    completed_parts: int
    total_parts: int

class JobSummary(BaseModel):
    job_id: str
    status: str
    input_refs: List[str]
    batch_progress: Optional[BatchProgressModel] = None
    artifact_available: bool
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

class JobDetail(JobSummary):
    result_text: Optional[str] = None
    cancel_requested: bool = False


def _summary_fields(job: Job) -> Dict[str, Any]:
    return {
        "job_id": job.job_id,
        "status": job.status.value,
        "input_refs": job.input_refs,
        "batch_progress": job.batch_progress.to_dict() if job.batch_progress else None,
        "artifact_available": bool(job.artifact_url),
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "updated_at": job.updated_at.isoformat() if job.updated_at else None,
    }

# ─── Endpoints ───────────────────────────────────────────────────────────────

@router.post("/jobs", response_model=JobAccepted, status_code=status.HTTP_202_ACCEPTED)
@limiter.limit(ENQUEUE_LIMIT)
def enqueue_job(
    request: Request,
    body: JobCreateRequest,
    owner_id: str = Depends(get_current_owner),
    scheduler: JobScheduler = Depends(get_scheduler),
):
    """
    Create a pending analysis job and hand it to a worker.
    Progress is observed by polling /jobs/{job_id}/status.
    """
    if body.owner_id is not None and body.owner_id != owner_id:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "owner_id does not match the authenticated user")

    try:
        job = scheduler.enqueue(owner_id, body.input_refs, body.input_payload, job_id=body.job_id)
    except JobValidationError as e:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, str(e))
    except DuplicateJobError as e:
        raise HTTPException(status.HTTP_409_CONFLICT, str(e))

    logger.info(f"Job {job.job_id} accepted for {owner_id}.")
    # Eager mode may already have finished the job; report the stored state
    return JobAccepted(job_id=job.job_id, status=job.status.value)


@router.get("/jobs", response_model=List[JobSummary])
@limiter.limit(LIST_LIMIT)
def list_jobs(
    request: Request,
    limit: int = 100,
    owner_id: str = Depends(get_current_owner),
    store: JobStore = Depends(get_job_store),
):
    """
    The caller's previous analyses, newest first.
    """
    limit = max(1, min(limit, 500))
    return [JobSummary(**_summary_fields(job)) for job in store.list_by_owner(owner_id, limit)]


@router.get("/jobs/{job_id}", response_model=JobDetail)
def get_job(
    job_id: str,
    owner_id: str = Depends(get_current_owner),
    store: JobStore = Depends(get_job_store),
):
    try:
        job = store.get_by_id(job_id, owner_id)
    except JobNotFoundError:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Job not found")
    return JobDetail(
        **_summary_fields(job),
        result_text=job.result_text,
        cancel_requested=job.cancel_requested,
    )


@router.post("/jobs/{job_id}/retry")
@limiter.limit(RETRY_LIMIT)
def retry_job(
    request: Request,
    job_id: str,
    owner_id: str = Depends(get_current_owner),
    scheduler: JobScheduler = Depends(get_scheduler),
):
    """
    Re-run a failed job with its stored payload.
    """
    try:
        scheduler.retry(job_id, owner_id)
    except JobNotFoundError:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Job not found")
    except InvalidTransitionError as e:
        raise HTTPException(status.HTTP_409_CONFLICT, str(e))
    return {}


@router.post("/jobs/{job_id}/cancel", status_code=status.HTTP_202_ACCEPTED)
def cancel_job(
    job_id: str,
    owner_id: str = Depends(get_current_owner),
    scheduler: JobScheduler = Depends(get_scheduler),
):
    """
    Ask the worker to stop. The job ends failed with kind Cancelled once the
    worker next checks; a job already completed or failed returns 409.
    """
    try:
        scheduler.cancel(job_id, owner_id)
    except JobNotFoundError:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Job not found")
    except InvalidTransitionError as e:
        raise HTTPException(status.HTTP_409_CONFLICT, str(e))
    return {}
