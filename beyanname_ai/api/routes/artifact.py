"""
Artifact Routes: PDF download and re-render.
"""
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import FileResponse, RedirectResponse
import logging

from beyanname_ai.api.deps import get_artifact_dispatcher, get_job_store, get_storage
from beyanname_ai.core.limiter import limiter, ARTIFACT_LIMIT
from beyanname_ai.core.security import get_current_owner
from beyanname_ai.services.job_store import JobNotFoundError, JobStatus, JobStore
from beyanname_ai.services.storage import ARTIFACT_CONTENT_TYPE, ArtifactNotFoundError, StorageProvider

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/jobs/{job_id}/artifact")
def download_artifact(
    job_id: str,
    owner_id: str = Depends(get_current_owner),
    store: JobStore = Depends(get_job_store),
    storage: StorageProvider = Depends(get_storage),
):
    """
    Stream the rendered PDF, or redirect to a pre-signed URL when the
    storage backend offers one.
    """
    try:
        job = store.get_by_id(job_id, owner_id)
    except JobNotFoundError:
        raise HTTPException(404, "Job not found")
    if not job.artifact_url:
        raise HTTPException(404, "Report not rendered yet.")

    url = storage.presigned_url(job.artifact_url)
    if url:
        return RedirectResponse(url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)

    try:
        path = storage.get_absolute_path(job.artifact_url)
    except ArtifactNotFoundError:
        logger.warning(f"Artifact for {job_id} missing from storage: {job.artifact_url}")
        raise HTTPException(404, "Report file missing from storage.")

    return FileResponse(path, media_type=ARTIFACT_CONTENT_TYPE, filename=f"beyanname_analiz_{job_id}.pdf")


@router.post("/jobs/{job_id}/artifact", status_code=status.HTTP_202_ACCEPTED)
@limiter.limit(ARTIFACT_LIMIT)
def rerender_artifact(
    request: Request,
    job_id: str,
    owner_id: str = Depends(get_current_owner),
    store: JobStore = Depends(get_job_store),
    dispatch=Depends(get_artifact_dispatcher),
):
    """
    Queue a fresh PDF render for a completed job.
    Poll /jobs/{job_id}/status until artifact_available is true.
    """
    try:
        job = store.get_by_id(job_id, owner_id)
    except JobNotFoundError:
        raise HTTPException(404, "Job not found")
    if job.status != JobStatus.COMPLETED:
        raise HTTPException(409, f"Job is {job.status.value}; only completed jobs can be rendered.")

    dispatch(job_id, owner_id)
    return {"message": "Report rendering started."}
