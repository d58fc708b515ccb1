"""
Shared FastAPI dependencies. Tests replace these through ``app.dependency_overrides``.
"""
from functools import lru_cache

from fastapi import Depends

from beyanname_ai.core.config import settings
from beyanname_ai.services.job_store import JobStore
from beyanname_ai.services.scheduler import JobScheduler, build_scheduler
from beyanname_ai.services.status_service import StatusService
from beyanname_ai.services.storage import StorageProvider


def get_job_store() -> JobStore:
    return JobStore()


@lru_cache(maxsize=1)
def get_scheduler() -> JobScheduler:
    # Imported here: loading the Celery app pings Redis
    from beyanname_ai.tasks import dispatch_pickup
    return build_scheduler(settings, dispatcher=dispatch_pickup)


def get_status_service(store: JobStore = Depends(get_job_store)) -> StatusService:
    return StatusService(store)


def get_storage(scheduler: JobScheduler = Depends(get_scheduler)) -> StorageProvider:
    return scheduler.storage


def get_artifact_dispatcher():
    """``f(job_id, owner_id)`` that queues a PDF re-render."""
    from beyanname_ai.tasks import render_artifact_task
    return lambda job_id, owner_id: render_artifact_task.delay(job_id, owner_id)
