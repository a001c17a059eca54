"""
Operator actions on the sync engine.

Retrying failed work, inspecting an entity's queue, resolving entities held
in CONFLICT, and conflict and status reporting per tenant.
"""
import logging
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from commerce_sync.constants.sync import (
    ConflictResolution,
    ConflictStrategy,
    SyncAction,
    SyncOrigin,
    SyncStatus,
)
from commerce_sync.core.exceptions import EntityNotFoundError, SyncValidationError
from commerce_sync.models import SyncEntity, SyncLogEntry
from commerce_sync.repositories import (
    ChannelRepository,
    EntityRepository,
    SyncJobRepository,
    SyncLogRepository,
)
from commerce_sync.schemas.sync_schemas import QueueStatus
from commerce_sync.services.job_queue import JobQueue
from commerce_sync.services.propagator import OutboundPropagator
from commerce_sync.utils.clock import utcnow

logger = logging.getLogger(__name__)


class SyncAdmin:

    def __init__(self, db: Session, queue: Optional[JobQueue] = None,
                 propagator: Optional[OutboundPropagator] = None):
        self.db = db
        self.queue = queue or JobQueue(db)
        self.propagator = propagator or OutboundPropagator(db, job_queue=self.queue)
        self.entity_repo = EntityRepository(db)
        self.job_repo = SyncJobRepository(db)
        self.log_repo = SyncLogRepository(db)
        self.channel_repo = ChannelRepository(db)

    def retry_failed_for_entity(self, entity_id: int, now: Optional[datetime] = None) -> int:
        """
        Put every dead-lettered job of an entity back in the queue.

        Returns:
            Number of jobs requeued
        """
        if self.entity_repo.get(entity_id) is None:
            raise EntityNotFoundError(entity_id)
        count = self.queue.reset_failed_for_entity(entity_id, now=now)
        logger.info(f"Requeued {count} failed jobs for entity {entity_id}")
        return count

    def get_queue_status_for_entity(self, entity_id: int) -> QueueStatus:
        entity = self.entity_repo.get(entity_id)
        if entity is None:
            raise EntityNotFoundError(entity_id)

        jobs = self.job_repo.list_for_entity(entity_id)
        last_error = next((job.last_error for job in jobs if job.last_error), None)
        return QueueStatus(
            entity_id=entity_id,
            sync_status=entity.sync_status,
            counts=self.job_repo.count_by_status(entity_id=entity_id),
            next_scheduled_for=self.job_repo.next_scheduled(entity_id),
            last_error=last_error,
            jobs=[
                {
                    "id": job.id,
                    "operation": job.operation,
                    "channel_id": job.channel_id,
                    "status": job.status,
                    "attempts": job.attempts,
                    "max_retries": job.max_retries,
                    "scheduled_for": job.scheduled_for,
                    "last_error": job.last_error,
                }
                for job in jobs
            ]
        )

    def resolve_conflict(
        self,
        entity_id: int,
        strategy: ConflictStrategy,
        merge_data: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None
    ) -> SyncEntity:
        """
        Release an entity from CONFLICT.

        Args:
            entity_id: Entity in CONFLICT
            strategy: accept_local keeps local values, accept_remote applies
                the refused incoming values, merge applies merge_data
            merge_data: Field values chosen by the operator (merge only)
            now: Current time

        Returns:
            The entity, back in PENDING with propagation jobs enqueued
        """
        now = now or utcnow()
        strategy = ConflictStrategy(strategy)
        entity = self.entity_repo.get(entity_id, lock=True)
        if entity is None:
            raise EntityNotFoundError(entity_id)
        if entity.sync_status != SyncStatus.CONFLICT:
            raise SyncValidationError(f"Entity {entity_id} is not in conflict")

        applied: Dict[str, Any] = {}
        if strategy == ConflictStrategy.ACCEPT_REMOTE:
            applied = self._refused_values(entity_id)
        elif strategy == ConflictStrategy.MERGE:
            if not merge_data:
                raise SyncValidationError("merge requires merge_data")
            applied = dict(merge_data)

        old_values = {f: entity.get(f) for f in applied}
        if applied:
            self.entity_repo.apply_fields(entity, applied, SyncOrigin.PLATFORM.value, now)
        entity.sync_status = SyncStatus.PENDING

        self.log_repo.add(
            action=SyncAction.RESOLVE_CONFLICT,
            origin=SyncOrigin.PLATFORM.value,
            target="local",
            now=now,
            entity_id=entity.id,
            tenant_id=entity.tenant_id,
            changed_fields=applied.keys(),
            old_values=old_values,
            new_values={"strategy": strategy.value, **applied}
        )
        jobs = self.propagator.enqueue_fan_out(entity, SyncOrigin.PLATFORM, now=now)
        self.db.commit()
        logger.info(
            f"Conflict on entity {entity_id} resolved with {strategy.value}; "
            f"{len(jobs)} propagation jobs enqueued"
        )
        return entity

    def _refused_values(self, entity_id: int) -> Dict[str, Any]:
        """Values refused for manual review since the last resolution, latest wins."""
        entries: List[SyncLogEntry] = []
        for entry in self.log_repo.list_for_entity(entity_id, limit=500):
            if entry.action == SyncAction.RESOLVE_CONFLICT:
                break
            if entry.action == SyncAction.CONFLICT and entry.resolution == ConflictResolution.MANUAL:
                entries.append(entry)

        values: Dict[str, Any] = {}
        for entry in reversed(entries):
            values.update(entry.new_values or {})
        return values

    def list_conflicts(self, tenant_id: str, since: Optional[datetime] = None,
                       limit: int = 100) -> List[Dict[str, Any]]:
        return [
            {
                "id": entry.id,
                "entity_id": entry.entity_id,
                "field": entry.changed_fields[0] if entry.changed_fields else None,
                "resolution": entry.resolution,
                "reason": entry.error_message,
                "origin": entry.origin,
                "old_value": (entry.old_values or {}).get(entry.changed_fields[0]) if entry.changed_fields else None,
                "new_value": (entry.new_values or {}).get(entry.changed_fields[0]) if entry.changed_fields else None,
                "created_at": entry.created_at,
            }
            for entry in self.log_repo.list_conflicts(tenant_id, since=since, limit=limit)
        ]

    def conflict_stats(self, tenant_id: str, since: Optional[datetime] = None) -> Dict[str, Any]:
        entries = self.log_repo.list_conflicts(tenant_id, since=since, limit=10000)
        by_resolution = Counter(entry.resolution for entry in entries)
        by_field = Counter(field for entry in entries for field in (entry.changed_fields or []))
        by_origin = Counter(entry.origin for entry in entries)
        return {
            "total": len(entries),
            "accepted": by_resolution.get(ConflictResolution.ACCEPTED, 0),
            "rejected": by_resolution.get(ConflictResolution.REJECTED, 0),
            "manual": by_resolution.get(ConflictResolution.MANUAL, 0),
            "by_field": dict(by_field),
            "by_origin": dict(by_origin),
        }

    def status_summary(self, tenant_id: str, since: Optional[datetime] = None) -> Dict[str, Any]:
        """Entity, job and channel health for one tenant."""
        channels = self.channel_repo.list_for_tenant(tenant_id, active_only=False)
        return {
            "tenant_id": tenant_id,
            "entities": self.entity_repo.count_by_status(tenant_id),
            "jobs": self.job_repo.count_by_status(tenant_id=tenant_id),
            "log_actions": self.log_repo.count_by_action(tenant_id, since=since),
            "channels": [
                {
                    "id": channel.id,
                    "type": channel.channel_type,
                    "active": channel.is_active,
                    "polling_enabled": channel.polling_enabled,
                    "last_polled_at": channel.last_polled_at,
                    "disabled_reason": channel.disabled_reason,
                }
                for channel in channels
            ],
        }
