"""
Sync job repository.

Claiming is a single conditional UPDATE: a row moves to ``processing`` only
if it is still ``pending`` and no other job for the same entity and channel
is ``processing``. A job without a channel conflicts with every channel.
Concurrent pollers can race for the same candidate row; exactly one of them
sees ``rowcount == 1``.
"""
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session, aliased

from commerce_sync.constants.sync import JobStatus
from commerce_sync.models import SyncJob


class SyncJobRepository:
    """Repository for the propagation job queue."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, job_id: int) -> Optional[SyncJob]:
        return self.db.query(SyncJob).filter(SyncJob.id == job_id).first()

    def create(self, **fields) -> SyncJob:
        job = SyncJob(**fields)
        self.db.add(job)
        self.db.flush()
        return job

    def get_pending_for_target(self, entity_id: int, target_key: str) -> Optional[SyncJob]:
        return self.db.query(SyncJob).filter(
            SyncJob.entity_id == entity_id,
            SyncJob.target_key == target_key,
            SyncJob.status == JobStatus.PENDING
        ).order_by(SyncJob.id).first()

    def get_due_candidates(self, now: datetime, limit: int) -> List[SyncJob]:
        """
        Pending jobs that are due, highest priority first.

        Args:
            now: Current time
            limit: Maximum candidates to return

        Returns:
            Jobs ordered by priority desc, scheduled_for asc
        """
        return self.db.query(SyncJob).filter(
            SyncJob.status == JobStatus.PENDING,
            SyncJob.scheduled_for <= now,
            SyncJob.attempts < SyncJob.max_retries
        ).order_by(
            SyncJob.priority.desc(),
            SyncJob.scheduled_for.asc(),
            SyncJob.id.asc()
        ).limit(limit).all()

    def claim(self, job: SyncJob, now: datetime) -> Optional[SyncJob]:
        """
        Atomically transition a candidate to processing.

        Args:
            job: Candidate returned by get_due_candidates
            now: Current time

        Returns:
            The claimed job, or None if another poller won or the
            entity is busy on the same channel
        """
        token = uuid.uuid4().hex
        busy = aliased(SyncJob)
        conditions = [busy.entity_id == job.entity_id, busy.status == JobStatus.PROCESSING]
        if job.channel_id is not None:
            # A channel-wide job (sync_all) holds every channel of the entity
            conditions.append(or_(busy.channel_id == job.channel_id, busy.channel_id.is_(None)))
        busy_exists = select(busy.id).where(*conditions).exists()

        stmt = update(SyncJob).where(
            SyncJob.id == job.id,
            SyncJob.status == JobStatus.PENDING,
            ~busy_exists
        ).values(
            status=JobStatus.PROCESSING,
            attempts=SyncJob.attempts + 1,
            started_at=now,
            claim_token=token
        ).execution_options(synchronize_session=False)

        result = self.db.execute(stmt)
        self.db.commit()
        if result.rowcount != 1:
            return None

        claimed = self.db.query(SyncJob).filter(
            SyncJob.id == job.id,
            SyncJob.claim_token == token
        ).populate_existing().first()
        return claimed

    def list_for_entity(self, entity_id: int, status: Optional[str] = None) -> List[SyncJob]:
        query = self.db.query(SyncJob).filter(SyncJob.entity_id == entity_id)
        if status:
            query = query.filter(SyncJob.status == status)
        return query.order_by(SyncJob.id.desc()).all()

    def get_stale_processing(self, started_before: datetime) -> List[SyncJob]:
        return self.db.query(SyncJob).filter(
            SyncJob.status == JobStatus.PROCESSING,
            SyncJob.started_at < started_before
        ).all()

    def delete_finished_before(self, cutoff: datetime) -> int:
        """Delete completed and skipped jobs finished before cutoff."""
        deleted = self.db.query(SyncJob).filter(
            SyncJob.status.in_([JobStatus.COMPLETED, JobStatus.SKIPPED]),
            SyncJob.completed_at < cutoff
        ).delete(synchronize_session=False)
        return deleted

    def count_by_status(self, entity_id: Optional[int] = None, tenant_id: Optional[str] = None) -> Dict[str, int]:
        query = self.db.query(SyncJob.status, func.count(SyncJob.id))
        if entity_id is not None:
            query = query.filter(SyncJob.entity_id == entity_id)
        if tenant_id is not None:
            query = query.filter(SyncJob.tenant_id == tenant_id)
        rows = query.group_by(SyncJob.status).all()
        return {status: count for status, count in rows}

    def next_scheduled(self, entity_id: int) -> Optional[datetime]:
        return self.db.query(func.min(SyncJob.scheduled_for)).filter(
            and_(SyncJob.entity_id == entity_id, SyncJob.status == JobStatus.PENDING)
        ).scalar()
