"""
Celery application configuration for the commerce sync engine.
"""
from celery import Celery

from commerce_sync.core.config import settings

celery_app = Celery(
    "commerce_sync",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "commerce_sync.tasks.queue_tasks",
        "commerce_sync.tasks.stock_tasks",
    ]
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],

    timezone=settings.celery_timezone,
    enable_utc=True,

    task_track_started=True,
    task_time_limit=10 * 60,  # hard limit
    task_soft_time_limit=8 * 60,

    # Ticks are short and frequent; do not hoard them
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=500,

    task_acks_late=True,
    task_reject_on_worker_lost=True,

    result_expires=3600,

    task_routes={
        "commerce_sync.tasks.queue_tasks.*": {"queue": "sync_queue"},
        "commerce_sync.tasks.stock_tasks.*": {"queue": "stock_queue"},
    },

    broker_connection_retry_on_startup=True,
    broker_connection_max_retries=10,
)

celery_app.conf.beat_schedule = {
    "process-job-queue": {
        "task": "commerce_sync.tasks.queue_tasks.process_job_queue",
        "schedule": settings.queue_poll_interval_seconds,
    },
    "requeue-stale-jobs-every-minute": {
        "task": "commerce_sync.tasks.queue_tasks.requeue_stale_jobs",
        "schedule": 60.0,
    },
    "poll-channel-stock": {
        "task": "commerce_sync.tasks.stock_tasks.schedule_stock_polls",
        "schedule": settings.stock_poll_interval_seconds,
    },
    "cleanup-finished-jobs-daily": {
        "task": "commerce_sync.tasks.queue_tasks.cleanup_finished_jobs",
        "schedule": 24 * 60 * 60.0,
    },
}

if __name__ == "__main__":
    celery_app.start()
