from fastapi import APIRouter

from beyanname_ai.api.routes import artifact, jobs, status

router = APIRouter()
router.include_router(jobs.router)
router.include_router(status.router)
router.include_router(artifact.router)
