import logging

from celery import Celery
from beyanname_ai.core.config import settings

logger = logging.getLogger(__name__)


def get_celery_app() -> Celery:
    redis_url = settings.REDIS_URL

    app = Celery(
        "beyanname_ai_tasks",
        broker=redis_url,
        backend=redis_url,
        include=["beyanname_ai.tasks"],
    )

    app.conf.update(
        result_expires=86400, # 24 hours
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,
        # Don't ack tasks until AFTER they complete.
        # If a worker dies mid-task, Redis re-queues it; the conditional claim keeps the rerun harmless.
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        # A batch job may poll for BATCH_DEADLINE_SECONDS; keep the task invisible longer than that
        broker_transport_options={"visibility_timeout": int(settings.BATCH_DEADLINE_SECONDS) + 600},
        beat_schedule={
            "sweep-pending-jobs": {
                "task": "beyanname_ai.tasks.sweep_pending",
                "schedule": float(settings.SWEEP_INTERVAL_SECONDS),
            },
            "recover-stale-jobs": {
                "task": "beyanname_ai.tasks.recover_stale",
                "schedule": float(settings.SWEEP_INTERVAL_SECONDS) * 5,
            },
        },
    )

    # If Redis is not running, switch to 'task_always_eager' (synchronous mode)
    # so the API keeps working during development without infrastructure.
    try:
        import redis
        client = redis.from_url(redis_url, socket_connect_timeout=1)
        client.ping()
        logger.info(f"[Celery] Connected to Redis at {redis_url}")
    except Exception as e:
        logger.warning(f"[Celery] Redis not available ({e}). Running in SYNC mode (task_always_eager=True).")
        app.conf.update(
            task_always_eager=True,
            task_eager_propagates=True,
        )

    return app

celery_app = get_celery_app()
