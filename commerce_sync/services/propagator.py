"""
Outbound propagator.

Pushes the canonical state of an entity to its linked channels. Every push is
an upsert keyed by the link's external id, so re-running a propagation for an
entity whose remote state already matches is harmless. A failure on one link
is recorded on that link and does not stop the others.
"""
import logging
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from commerce_sync.adapters.factory import AdapterRegistry, adapter_registry
from commerce_sync.constants.sync import (
    ChannelType,
    EntityType,
    JobOperation,
    SyncAction,
    SyncOrigin,
    SyncStatus,
)
from commerce_sync.core.exceptions import ConflictStateError, DuplicateEntityError, EntityNotFoundError
from commerce_sync.models import ExternalLink, SyncEntity, SyncJob
from commerce_sync.repositories import EntityRepository, ExternalLinkRepository, SyncLogRepository
from commerce_sync.schemas.sync_schemas import PropagationResult, TargetResult
from commerce_sync.services.field_ownership import stock_fields
from commerce_sync.services.job_queue import JobQueue
from commerce_sync.utils.checksum import compute_checksum
from commerce_sync.utils.clock import utcnow

logger = logging.getLogger(__name__)

STOCK_PUSH_PRIORITY = 5


def payload_fields(entity: SyncEntity) -> dict:
    """Entity fields sent through upsert; stock travels through the inventory API."""
    excluded = stock_fields(EntityType(entity.entity_type))
    return {k: v for k, v in (entity.data or {}).items() if k not in excluded}


class OutboundPropagator:

    def __init__(self, db: Session, adapters: Optional[AdapterRegistry] = None,
                 job_queue: Optional[JobQueue] = None):
        self.db = db
        self.adapters = adapters or adapter_registry
        self.job_queue = job_queue or JobQueue(db)
        self.entity_repo = EntityRepository(db)
        self.link_repo = ExternalLinkRepository(db)
        self.log_repo = SyncLogRepository(db)

    def propagate(
        self,
        entity_id: int,
        trigger_origin: SyncOrigin,
        skip_targets: Optional[Iterable[int]] = None,
        fields_to_sync: Optional[Iterable[str]] = None,
        only_targets: Optional[Iterable[int]] = None,
        now: Optional[datetime] = None
    ) -> PropagationResult:
        """
        Push an entity to its active links.

        Args:
            entity_id: Entity to push
            trigger_origin: Origin of the change being propagated
            skip_targets: Channel ids to leave out
            fields_to_sync: Restrict the payload to these fields
            only_targets: Restrict the push to these channel ids
            now: Current time

        Returns:
            PropagationResult with one TargetResult per attempted link

        Raises:
            EntityNotFoundError: Entity does not exist
            ConflictStateError: Entity awaits manual conflict resolution
        """
        now = now or utcnow()
        entity = self.entity_repo.get(entity_id, lock=True)
        if entity is None:
            raise EntityNotFoundError(entity_id)
        if entity.sync_status == SyncStatus.CONFLICT:
            raise ConflictStateError(entity_id)

        skip = set(skip_targets or [])
        only = set(only_targets) if only_targets is not None else None
        links = [
            link for link in self.link_repo.list_for_entity(entity_id)
            if link.channel_id not in skip and (only is None or link.channel_id in only)
        ]

        full_fields = payload_fields(entity)
        checksum = compute_checksum(full_fields)
        selected = set(fields_to_sync) if fields_to_sync else None

        result = PropagationResult(entity_id=entity_id)
        for link in links:
            target = self._push_link(entity, link, full_fields, selected, checksum, trigger_origin, now)
            result.targets.append(target)
            if not target.success and result.first_error is None:
                result.first_error = target.error
                result.first_exception = target.exception

        self._refresh_entity_status(entity, now)
        self.log_repo.add(
            action=SyncAction.PROPAGATED,
            origin=trigger_origin.value,
            target="all" if only is None else ",".join(sorted(t.channel_type for t in result.targets)) or "none",
            now=now,
            entity_id=entity.id,
            tenant_id=entity.tenant_id,
            changed_fields=selected if selected is not None else full_fields.keys(),
            success=result.success,
            error_message=result.first_error
        )
        self.db.commit()

        if result.success:
            logger.info(f"Propagated entity {entity_id} to {len(result.targets)} target(s)")
        else:
            logger.error(
                f"Propagation of entity {entity_id} failed for channels "
                f"{result.failed_channel_ids}: {result.first_error}"
            )
        return result

    def _push_link(self, entity, link: ExternalLink, full_fields, selected, checksum, trigger_origin, now) -> TargetResult:
        channel = link.channel
        target = TargetResult(
            channel_id=link.channel_id,
            channel_type=channel.channel_type,
            external_id=link.external_id,
            success=False
        )

        if (link.external_id and link.sync_status == SyncStatus.SYNCED
                and link.last_sync_checksum == checksum):
            target.success = True
            target.skipped = True
            return target

        fields = full_fields if selected is None else {k: v for k, v in full_fields.items() if k in selected}
        if link.external_id is None:
            # Creating remotely needs the whole record
            fields = full_fields
        payload = {
            "entity_id": entity.id,
            "entity_type": entity.entity_type,
            "external_id": link.external_id,
            "fields": fields,
        }

        created = link.external_id is None
        first_push = created
        try:
            adapter = self.adapters.get(channel)
            try:
                external_id = adapter.upsert_entity(payload)
            except DuplicateEntityError as e:
                logger.warning(
                    f"Entity {entity.id} already exists on channel {channel.id} as "
                    f"{e.existing_external_id}; linking to it"
                )
                external_id = e.existing_external_id
                target.healed_duplicate = True
                created = False
        except Exception as e:
            link.sync_status = SyncStatus.ERROR
            link.last_error = str(e)
            link.last_error_at = now
            self.db.flush()
            target.error = str(e)
            target.exception = e
            logger.error(
                f"Push of entity {entity.id} to {channel.channel_type} channel {channel.id} "
                f"failed (fields: {sorted(fields)}): {e}"
            )
            return target

        link.external_id = str(external_id)
        link.sync_status = SyncStatus.SYNCED
        link.last_sync_at = now
        link.last_sync_checksum = checksum
        link.last_error = None
        link.last_error_at = None
        self.db.flush()

        self.log_repo.add(
            action=SyncAction.CREATED if created else SyncAction.PUSHED,
            origin=trigger_origin.value,
            target=channel.channel_type,
            now=now,
            entity_id=entity.id,
            tenant_id=entity.tenant_id,
            channel_id=channel.id,
            external_id=link.external_id,
            changed_fields=fields.keys()
        )
        if first_push:
            self._enqueue_initial_stock(entity, link, trigger_origin, now)
        target.success = True
        target.created = created
        target.external_id = link.external_id
        return target

    def _enqueue_initial_stock(self, entity: SyncEntity, link: ExternalLink, trigger_origin, now) -> None:
        """Stock is left out of the create payload; send it once the remote id is known."""
        if link.channel.channel_type == ChannelType.FULFILLMENT.value:
            return
        if not stock_fields(EntityType(entity.entity_type)):
            return
        self.job_queue.enqueue(
            entity_id=entity.id,
            tenant_id=entity.tenant_id,
            operation=JobOperation.PUSH_STOCK,
            trigger_origin=trigger_origin.value,
            channel_id=link.channel_id,
            priority=STOCK_PUSH_PRIORITY,
            now=now
        )

    def _refresh_entity_status(self, entity: SyncEntity, now: datetime) -> None:
        links = self.link_repo.list_for_entity(entity.id)
        if any(link.sync_status == SyncStatus.ERROR for link in links):
            entity.sync_status = SyncStatus.ERROR
            return
        entity.sync_status = SyncStatus.SYNCED
        entity.checksum = compute_checksum(entity.data or {})
        entity.last_synced_at = now

    def enqueue_fan_out(
        self,
        entity: SyncEntity,
        trigger_origin: SyncOrigin,
        origin_channel_id: Optional[int] = None,
        changed_fields: Optional[Iterable[str]] = None,
        trigger_event_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> List[SyncJob]:
        """
        Enqueue one push job per linked target other than the originating channel.

        Stock changes become stock pushes to storefront channels; the
        fulfillment system is the stock authority and never receives them.
        """
        if entity.sync_status == SyncStatus.CONFLICT:
            logger.info(f"Entity {entity.id} is in conflict; not propagating")
            return []

        now = now or utcnow()
        changed = set(changed_fields) if changed_fields is not None else None
        excluded = stock_fields(EntityType(entity.entity_type))
        regular = None if changed is None else changed - excluded
        stock_changed = changed is None or bool(changed & excluded)

        jobs = []
        for link in self.link_repo.list_for_entity(entity.id):
            if link.channel_id == origin_channel_id:
                continue
            channel_type = link.channel.channel_type
            if regular is None or regular:
                operation = (
                    JobOperation.PUSH_TO_FULFILLMENT if channel_type == ChannelType.FULFILLMENT.value
                    else JobOperation.PUSH_TO_CHANNEL
                )
                jobs.append(self.job_queue.enqueue(
                    entity_id=entity.id,
                    tenant_id=entity.tenant_id,
                    operation=operation,
                    trigger_origin=trigger_origin.value,
                    channel_id=link.channel_id,
                    fields_to_sync=regular,
                    trigger_event_id=trigger_event_id,
                    now=now
                ))
            if (stock_changed and excluded and channel_type != ChannelType.FULFILLMENT.value
                    and link.external_id):
                jobs.append(self.job_queue.enqueue(
                    entity_id=entity.id,
                    tenant_id=entity.tenant_id,
                    operation=JobOperation.PUSH_STOCK,
                    trigger_origin=trigger_origin.value,
                    channel_id=link.channel_id,
                    priority=STOCK_PUSH_PRIORITY,
                    trigger_event_id=trigger_event_id,
                    now=now
                ))
        return jobs
