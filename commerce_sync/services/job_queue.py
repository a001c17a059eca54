"""
Durable propagation job queue.

Jobs are keyed by ``(entity_id, target_key)``. Enqueueing work for a key that
already has a pending job merges into it. A job is never claimed while another
job for the same entity and channel is processing; ``sync_all`` jobs carry no
channel and hold every channel of their entity.

Retry delay after the n-th failed attempt is
``base_delay * multiplier ** (n - 1)``: with a base of 60s and a multiplier
of 2 the reschedules are 60s then 120s, and the third failure with
``max_retries = 3`` dead-letters the job.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from commerce_sync.constants.sync import JobStatus, SyncAction
from commerce_sync.core.alerts import send_job_failed_alert
from commerce_sync.core.config import settings
from commerce_sync.models import SyncJob
from commerce_sync.repositories import SyncJobRepository, SyncLogRepository, TenantConfigRepository
from commerce_sync.utils.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int
    base_delay_seconds: int
    backoff_multiplier: float

    def delay_for(self, attempts: int) -> timedelta:
        """Delay before the next attempt after `attempts` failed attempts."""
        exponent = max(attempts - 1, 0)
        return timedelta(seconds=self.base_delay_seconds * (self.backoff_multiplier ** exponent))


def make_target_key(operation: str, channel_id: Optional[int]) -> str:
    return f"{operation}:{channel_id if channel_id is not None else 'all'}"


class JobQueue:
    """Scheduler-side operations on the sync job table."""

    def __init__(self, db: Session):
        self.db = db
        self.job_repo = SyncJobRepository(db)
        self.log_repo = SyncLogRepository(db)
        self.tenant_repo = TenantConfigRepository(db)

    def retry_policy(self, tenant_id: str) -> RetryPolicy:
        """Tenant overrides on top of the global queue settings."""
        config = self.tenant_repo.get(tenant_id) if tenant_id else None

        def pick(name, default):
            value = getattr(config, name, None) if config is not None else None
            return value if value is not None else default

        return RetryPolicy(
            max_retries=pick("max_retries", settings.queue_max_retries),
            base_delay_seconds=pick("retry_base_delay_seconds", settings.queue_retry_base_delay_seconds),
            backoff_multiplier=pick("retry_backoff_multiplier", settings.queue_retry_backoff_multiplier),
        )

    def enqueue(
        self,
        entity_id: int,
        tenant_id: str,
        operation: str,
        trigger_origin: str,
        channel_id: Optional[int] = None,
        priority: int = 0,
        fields_to_sync: Optional[Iterable[str]] = None,
        trigger_event_id: Optional[str] = None,
        delay_seconds: int = 0,
        now: Optional[datetime] = None
    ) -> SyncJob:
        """
        Add propagation work, coalescing with a pending job for the same target.

        Args:
            entity_id: Entity to propagate
            tenant_id: Owning tenant
            operation: One of JobOperation
            trigger_origin: Origin of the change that caused the work
            channel_id: Single target channel, or None for all
            priority: Higher runs first
            fields_to_sync: Restrict the payload; None means all fields
            trigger_event_id: Inbound event that caused the work
            delay_seconds: Earliest start relative to now
            now: Current time

        Returns:
            The new or merged SyncJob (flushed, not committed)
        """
        now = now or utcnow()
        target_key = make_target_key(operation, channel_id)
        scheduled_for = now + timedelta(seconds=delay_seconds)
        fields = sorted(set(fields_to_sync)) if fields_to_sync is not None else None

        existing = self.job_repo.get_pending_for_target(entity_id, target_key)
        if existing is not None:
            if existing.fields_to_sync is None or fields is None:
                existing.fields_to_sync = None
            else:
                existing.fields_to_sync = sorted(set(existing.fields_to_sync) | set(fields))
            existing.priority = max(existing.priority, priority)
            if scheduled_for < existing.scheduled_for:
                existing.scheduled_for = scheduled_for
            existing.trigger_origin = trigger_origin
            existing.trigger_event_id = trigger_event_id or existing.trigger_event_id
            self.db.flush()
            logger.debug(f"Coalesced {operation} for entity {entity_id} into job {existing.id}")
            return existing

        policy = self.retry_policy(tenant_id)
        job = self.job_repo.create(
            entity_id=entity_id,
            tenant_id=tenant_id,
            operation=operation,
            channel_id=channel_id,
            target_key=target_key,
            trigger_origin=trigger_origin,
            trigger_event_id=trigger_event_id,
            fields_to_sync=fields,
            priority=priority,
            status=JobStatus.PENDING,
            attempts=0,
            max_retries=policy.max_retries,
            scheduled_for=scheduled_for,
            created_at=now
        )
        logger.info(f"Enqueued job {job.id}: {operation} entity={entity_id} target={target_key}")
        return job

    def claim_batch(self, now: Optional[datetime] = None, batch_size: Optional[int] = None) -> List[SyncJob]:
        """
        Claim up to batch_size due jobs.

        Each claim is its own conditional update; candidates lost to another
        poller or blocked by a processing job on the same target are skipped.
        """
        now = now or utcnow()
        batch_size = batch_size or settings.queue_batch_size
        candidates = self.job_repo.get_due_candidates(now, limit=batch_size * 3)

        claimed = []
        for candidate in candidates:
            if len(claimed) >= batch_size:
                break
            job = self.job_repo.claim(candidate, now)
            if job is not None:
                claimed.append(job)
        if claimed:
            logger.info(f"Claimed {len(claimed)} of {len(candidates)} due jobs")
        return claimed

    def complete(self, job: SyncJob, now: Optional[datetime] = None) -> SyncJob:
        job.status = JobStatus.COMPLETED
        job.completed_at = now or utcnow()
        job.last_error = None
        job.claim_token = None
        self.db.commit()
        return job

    def skip(self, job: SyncJob, reason: str, now: Optional[datetime] = None) -> SyncJob:
        job.status = JobStatus.SKIPPED
        job.completed_at = now or utcnow()
        job.last_error = reason
        job.claim_token = None
        self.db.commit()
        logger.info(f"Job {job.id} skipped: {reason}")
        return job

    def retry_or_fail(self, job: SyncJob, error: str, now: Optional[datetime] = None) -> SyncJob:
        """
        Reschedule with exponential backoff, or dead-letter when exhausted.

        Args:
            job: A job in processing whose attempt just failed
            error: Error text of the attempt
            now: Current time

        Returns:
            The updated job
        """
        now = now or utcnow()
        if job.attempts >= job.max_retries:
            return self.fail(job, error, now)

        policy = self.retry_policy(job.tenant_id)
        delay = policy.delay_for(job.attempts)
        job.status = JobStatus.PENDING
        job.scheduled_for = now + delay
        job.last_error = error
        job.claim_token = None
        self.db.commit()
        logger.warning(
            f"Job {job.id} attempt {job.attempts}/{job.max_retries} failed, "
            f"retrying in {int(delay.total_seconds())}s: {error}"
        )
        return job

    def fail(self, job: SyncJob, error: str, now: Optional[datetime] = None) -> SyncJob:
        """Dead-letter a job and record the failure."""
        now = now or utcnow()
        job.status = JobStatus.FAILED
        job.completed_at = now
        job.last_error = error
        job.claim_token = None
        self.log_repo.add(
            action=SyncAction.FAILED,
            origin=job.trigger_origin,
            target=job.target_key,
            now=now,
            entity_id=job.entity_id,
            tenant_id=job.tenant_id,
            channel_id=job.channel_id,
            changed_fields=job.fields_to_sync or [],
            success=False,
            error_message=error
        )
        self.db.commit()
        logger.error(
            f"Job {job.id} failed permanently after {job.attempts} attempts "
            f"(entity {job.entity_id}, {job.target_key}): {error}"
        )
        send_job_failed_alert(
            job_id=job.id,
            entity_id=job.entity_id,
            operation=job.operation,
            attempts=job.attempts,
            error=error,
            channel_id=job.channel_id
        )
        return job

    def cleanup(self, now: Optional[datetime] = None, retention_days: Optional[int] = None) -> int:
        """Purge completed and skipped jobs past the retention window."""
        now = now or utcnow()
        days = retention_days if retention_days is not None else settings.queue_completed_retention_days
        deleted = self.job_repo.delete_finished_before(now - timedelta(days=days))
        self.db.commit()
        if deleted:
            logger.info(f"Purged {deleted} finished jobs older than {days} days")
        return deleted

    def requeue_stale(self, now: Optional[datetime] = None, stale_minutes: Optional[int] = None) -> int:
        """
        Return jobs abandoned in processing to pending.

        The abandoned attempt is not counted against the retry budget.
        """
        now = now or utcnow()
        minutes = stale_minutes if stale_minutes is not None else settings.queue_stale_processing_minutes
        stale = self.job_repo.get_stale_processing(now - timedelta(minutes=minutes))
        for job in stale:
            logger.warning(f"Requeueing job {job.id} stuck in processing since {job.started_at}")
            job.status = JobStatus.PENDING
            job.attempts = max(job.attempts - 1, 0)
            job.scheduled_for = now
            job.claim_token = None
            job.last_error = f"requeued after {minutes} minutes in processing"
        self.db.commit()
        return len(stale)

    def reset_failed_for_entity(self, entity_id: int, now: Optional[datetime] = None) -> int:
        """Give every failed job of an entity a fresh retry budget."""
        now = now or utcnow()
        failed = self.job_repo.list_for_entity(entity_id, status=JobStatus.FAILED)
        for job in failed:
            job.status = JobStatus.PENDING
            job.attempts = 0
            job.scheduled_for = now
            job.completed_at = None
            job.claim_token = None
        self.db.commit()
        return len(failed)
