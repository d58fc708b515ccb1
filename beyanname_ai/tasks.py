"""
Celery adapters around the job scheduler.
Each task is thin: build the scheduler, call one scheduler operation.
"""
import logging

from beyanname_ai.core.celery_app import celery_app
from beyanname_ai.core.config import settings
from beyanname_ai.db import init_db
from beyanname_ai.services.job_store import InvalidTransitionError, JobNotFoundError
from beyanname_ai.services.scheduler import JobScheduler, build_scheduler

logger = logging.getLogger(__name__)

_scheduler = None


def dispatch_pickup(job_id: str, owner_id: str) -> None:
    """Dispatcher handed to the scheduler: queue a pickup on a worker."""
    process_job_task.delay(job_id, owner_id)


def get_scheduler() -> JobScheduler:
    """Worker-side scheduler, built once per process."""
    global _scheduler
    if _scheduler is None:
        init_db()
        _scheduler = build_scheduler(settings, dispatcher=dispatch_pickup)
    return _scheduler


@celery_app.task(name="beyanname_ai.tasks.process_job")
def process_job_task(job_id: str, owner_id: str):
    """
    Claim and run one job. A duplicate delivery finds the row already
    claimed and returns without doing anything.
    """
    job = get_scheduler().pickup_and_process(job_id, owner_id)
    return job.status.value if job else None


@celery_app.task(name="beyanname_ai.tasks.render_artifact")
def render_artifact_task(job_id: str, owner_id: str):
    """
    Re-render the PDF for a completed job.
    """
    try:
        return get_scheduler().render_artifact(job_id, owner_id)
    except (InvalidTransitionError, JobNotFoundError) as e:
        logger.warning(f"Artifact render for {job_id} skipped: {e}")
        return None


@celery_app.task(name="beyanname_ai.tasks.sweep_pending")
def sweep_pending_task(limit: int = settings.SWEEP_BATCH_SIZE):
    """Periodic pickup of pending jobs whose dispatch was lost."""
    return get_scheduler().sweep(limit)


@celery_app.task(name="beyanname_ai.tasks.recover_stale")
def recover_stale_task(older_than_seconds: float = settings.STALE_PROCESSING_SECONDS):
    """Periodic failure of processing jobs abandoned by a dead worker."""
    return get_scheduler().recover_stale(older_than_seconds)
