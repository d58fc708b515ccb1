"""
Status Routes: job status polling and failure history.
"""
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from typing import List, Optional
import logging

from beyanname_ai.api.deps import get_status_service
from beyanname_ai.core.limiter import limiter, STATUS_LIMIT
from beyanname_ai.core.security import get_current_owner
from beyanname_ai.services.job_store import JobNotFoundError
from beyanname_ai.services.status_service import StatusService

logger = logging.getLogger(__name__)
router = APIRouter()

class BatchProgressResponse(BaseModel):
    completed_parts: int
    total_parts: int

class FailureResponse(BaseModel):
    kind: str
    message: str
    created_at: Optional[str] = None
    error_message: Optional[str] = None
    error_detail: Optional[str] = None

class StatusResponse(BaseModel):
    job_id: str
    status: str
    updated_at: Optional[str] = None
    artifact_available: bool
    batch_progress: Optional[BatchProgressResponse] = None
    failure: Optional[FailureResponse] = None

class FailureLogResponse(BaseModel):
    id: int
    job_id: str
    kind: str
    error_message: str
    error_detail: Optional[str] = None
    created_at: Optional[str] = None


@router.get(
    "/jobs/{job_id}/status",
    response_model=StatusResponse,
    response_model_exclude_none=True,
)
@limiter.limit(STATUS_LIMIT)
def get_job_status(
    request: Request,
    job_id: str,
    owner_id: Optional[str] = None,
    include_detail: bool = False,
    caller: str = Depends(get_current_owner),
    service: StatusService = Depends(get_status_service),
):
    """
    Check the state of an analysis job.
    Another owner's job is reported as 404, exactly like a missing one.
    """
    if owner_id is not None and owner_id != caller:
        raise HTTPException(status_code=404, detail="Job not found")
    try:
        view = service.get_status(job_id, caller, include_detail=include_detail)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    return view.to_dict()


@router.get("/jobs/{job_id}/failures", response_model=List[FailureLogResponse])
@limiter.limit(STATUS_LIMIT)
def list_job_failures(
    request: Request,
    job_id: str,
    limit: int = 50,
    caller: str = Depends(get_current_owner),
    service: StatusService = Depends(get_status_service),
):
    """
    Failure history of a job across retries, newest first.
    """
    limit = max(1, min(limit, 200))
    try:
        entries = service.list_failures(job_id, caller, limit=limit)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    return [entry.to_dict() for entry in entries]
