"""
Job executor.

Drains claimed jobs one by one and is the single place where errors become
job state: conflicts and missing entities skip the job, authentication
failures disable the channel and dead-letter immediately, validation errors
dead-letter immediately, everything else goes through retry with backoff.
"""
import logging
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.orm import Session

from commerce_sync.adapters.factory import AdapterRegistry, adapter_registry
from commerce_sync.constants.sync import JobOperation, JobStatus, SyncOrigin
from commerce_sync.core.alerts import send_channel_disabled_alert
from commerce_sync.core.exceptions import (
    AdapterError,
    AuthenticationError,
    ConflictStateError,
    EntityNotFoundError,
    SyncValidationError,
    is_retryable,
)
from commerce_sync.models import SyncJob
from commerce_sync.repositories import ChannelRepository
from commerce_sync.services.job_queue import JobQueue
from commerce_sync.services.propagator import OutboundPropagator
from commerce_sync.services.stock_reconciliation import StockReconciliation
from commerce_sync.utils.clock import utcnow

logger = logging.getLogger(__name__)


class JobExecutor:

    def __init__(
        self,
        db: Session,
        adapters: Optional[AdapterRegistry] = None,
        queue: Optional[JobQueue] = None,
        propagator: Optional[OutboundPropagator] = None,
        stock: Optional[StockReconciliation] = None
    ):
        self.db = db
        self.adapters = adapters or adapter_registry
        self.queue = queue or JobQueue(db)
        self.propagator = propagator or OutboundPropagator(db, adapters=self.adapters, job_queue=self.queue)
        self.stock = stock or StockReconciliation(db, adapters=self.adapters, propagator=self.propagator)
        self.channel_repo = ChannelRepository(db)

    def run_batch(self, now: Optional[datetime] = None, batch_size: Optional[int] = None) -> Dict[str, int]:
        """
        One poller tick: claim due jobs and process them sequentially.

        Returns:
            Counts per final job status plus ``claimed``
        """
        now = now or utcnow()
        jobs = self.queue.claim_batch(now=now, batch_size=batch_size)
        stats = {
            "claimed": len(jobs),
            JobStatus.COMPLETED: 0,
            JobStatus.PENDING: 0,
            JobStatus.FAILED: 0,
            JobStatus.SKIPPED: 0,
        }
        for job in jobs:
            status = self.execute(job, now=now)
            stats[status] = stats.get(status, 0) + 1
        return stats

    def execute(self, job: SyncJob, now: Optional[datetime] = None) -> str:
        """
        Run one claimed job and record its outcome.

        Returns:
            The job status after processing
        """
        now = now or utcnow()
        logger.info(
            f"Executing job {job.id}: {job.operation} entity={job.entity_id} "
            f"channel={job.channel_id} attempt {job.attempts}/{job.max_retries}"
        )
        try:
            self._run(job, now)
        except (ConflictStateError, EntityNotFoundError) as e:
            self.db.rollback()
            self.queue.skip(job, str(e), now)
        except AuthenticationError as e:
            self.db.rollback()
            if job.channel_id is not None:
                self._disable_channel(job.channel_id, str(e))
            self.queue.fail(job, str(e), now)
        except Exception as e:
            self.db.rollback()
            if is_retryable(e):
                self.queue.retry_or_fail(job, str(e), now)
            else:
                self.queue.fail(job, str(e), now)
        else:
            self.queue.complete(job, now)
        return job.status

    def _run(self, job: SyncJob, now: datetime) -> None:
        origin = SyncOrigin(job.trigger_origin)

        if job.operation == JobOperation.PUSH_STOCK:
            if job.channel_id is None:
                raise SyncValidationError(f"Job {job.id}: stock push needs a channel")
            self.stock.push_stock(job.entity_id, job.channel_id, origin=origin, now=now)
            return

        if job.operation == JobOperation.SYNC_ALL:
            only = None
        elif job.operation in (JobOperation.PUSH_TO_CHANNEL, JobOperation.PUSH_TO_FULFILLMENT):
            if job.channel_id is None:
                raise SyncValidationError(f"Job {job.id}: {job.operation} needs a channel")
            only = [job.channel_id]
        else:
            raise SyncValidationError(f"Job {job.id}: unknown operation '{job.operation}'")

        result = self.propagator.propagate(
            job.entity_id,
            origin,
            fields_to_sync=job.fields_to_sync,
            only_targets=only,
            now=now
        )
        if result.success:
            return

        for target in result.targets:
            if isinstance(target.exception, AuthenticationError):
                self._disable_channel(target.channel_id, target.error)
        if isinstance(result.first_exception, Exception):
            raise result.first_exception
        raise AdapterError(result.first_error or "propagation failed")

    def _disable_channel(self, channel_id: int, reason: str) -> None:
        channel = self.channel_repo.get(channel_id)
        if channel is None or not channel.is_active:
            return
        self.channel_repo.deactivate(channel, reason)
        self.adapters.invalidate(channel_id)
        self.db.commit()
        logger.error(f"Channel {channel_id} disabled after authentication failure: {reason}")
        send_channel_disabled_alert(channel_id, channel.tenant_id, reason)
