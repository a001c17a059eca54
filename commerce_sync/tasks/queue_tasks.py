"""
Celery tasks driving the propagation job queue.
"""
import logging
from typing import Any, Dict, Optional

from commerce_sync.celery_app import celery_app
from commerce_sync.core.exceptions import SyncValidationError
from commerce_sync.services.job_executor import JobExecutor
from commerce_sync.services.job_queue import JobQueue
from commerce_sync.services.sync_service import SyncService
from commerce_sync.tasks.base import DatabaseTask

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    base=DatabaseTask,
    name="commerce_sync.tasks.queue_tasks.process_job_queue"
)
def process_job_queue(self, batch_size: Optional[int] = None) -> Dict[str, int]:
    """
    Poller tick: claim a batch of due jobs and run them.

    Safe to run on several workers at once; claims are conditional updates.
    """
    stats = JobExecutor(self.db).run_batch(batch_size=batch_size)
    if stats["claimed"]:
        logger.info(f"Job queue tick: {stats}")
    return stats


@celery_app.task(
    bind=True,
    base=DatabaseTask,
    name="commerce_sync.tasks.queue_tasks.requeue_stale_jobs"
)
def requeue_stale_jobs(self) -> Dict[str, int]:
    requeued = JobQueue(self.db).requeue_stale()
    if requeued:
        logger.warning(f"Requeued {requeued} stale jobs")
    return {"requeued": requeued}


@celery_app.task(
    bind=True,
    base=DatabaseTask,
    name="commerce_sync.tasks.queue_tasks.cleanup_finished_jobs"
)
def cleanup_finished_jobs(self, retention_days: Optional[int] = None) -> Dict[str, int]:
    deleted = JobQueue(self.db).cleanup(retention_days=retention_days)
    return {"deleted": deleted}


@celery_app.task(
    bind=True,
    base=DatabaseTask,
    name="commerce_sync.tasks.queue_tasks.process_incoming_change",
    max_retries=3,
    default_retry_delay=30
)
def process_incoming_change(
    self,
    origin: str,
    tenant_id: str,
    channel_id: Optional[int],
    external_id: Optional[str],
    field_map: Dict[str, Any],
    webhook_event_id: Optional[str] = None,
    entity_type: str = "product"
) -> Dict[str, Any]:
    """
    Apply an inbound notification asynchronously.

    Validation errors are returned, not retried.
    """
    try:
        result = SyncService(self.db).process_incoming_change(
            origin=origin,
            tenant_id=tenant_id,
            channel_id=channel_id,
            external_id=external_id,
            field_map=field_map,
            webhook_event_id=webhook_event_id,
            entity_type=entity_type
        )
        return result.model_dump(mode="json")
    except SyncValidationError as e:
        logger.error(f"Rejected inbound change from {origin} ({external_id}): {e}")
        return {"accepted": False, "error": str(e)}
    except Exception as exc:
        logger.error(f"Error processing inbound change from {origin} ({external_id}): {exc}")
        raise self.retry(exc=exc)
