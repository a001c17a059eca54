"""
Inbound change processing.

Entry point for notifications from any origin system and for authenticated
local writes. A change passes the echo detector, is resolved field by field
against the ownership rules, mutates the canonical entity under a row lock,
and fans out as propagation jobs to every other linked target.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from commerce_sync.adapters.factory import AdapterRegistry, adapter_registry
from commerce_sync.constants.sync import (
    ChannelType,
    ConflictResolution,
    EntityType,
    JobOperation,
    SyncAction,
    SyncOrigin,
    SyncStatus,
    WebhookEventStatus,
)
from commerce_sync.core.exceptions import EntityNotFoundError, SyncValidationError
from commerce_sync.models import SyncEntity
from commerce_sync.repositories import (
    ChannelRepository,
    EntityRepository,
    ExternalLinkRepository,
    SyncLogRepository,
    TenantConfigRepository,
    WebhookEventRepository,
)
from commerce_sync.schemas.sync_schemas import IncomingChangeResult, ResolutionResult
from commerce_sync.services.bundle_resolver import BundleResolver, parse_components
from commerce_sync.services.conflict_resolver import ConflictResolver
from commerce_sync.services.echo_detector import EchoDetector
from commerce_sync.services.job_queue import JobQueue
from commerce_sync.services.propagator import OutboundPropagator
from commerce_sync.utils.clock import utcnow

logger = logging.getLogger(__name__)

BUNDLE_COMPONENTS_KEY = "bundle_components"


def coerce_origin(origin) -> SyncOrigin:
    if isinstance(origin, SyncOrigin):
        return origin
    try:
        return SyncOrigin(origin)
    except ValueError:
        raise SyncValidationError(f"Unknown origin '{origin}'")


class SyncService:
    """Applies incoming and local changes to canonical entities."""

    def __init__(
        self,
        db: Session,
        adapters: Optional[AdapterRegistry] = None,
        resolver: Optional[ConflictResolver] = None,
        echo_detector: Optional[EchoDetector] = None
    ):
        self.db = db
        self.queue = JobQueue(db)
        self.propagator = OutboundPropagator(db, adapters=adapters or adapter_registry, job_queue=self.queue)
        self.resolver = resolver or ConflictResolver()
        self.echo_detector = echo_detector or EchoDetector(db)
        self.bundles = BundleResolver(db)
        self.entity_repo = EntityRepository(db)
        self.link_repo = ExternalLinkRepository(db)
        self.channel_repo = ChannelRepository(db)
        self.log_repo = SyncLogRepository(db)
        self.tenant_repo = TenantConfigRepository(db)
        self.event_repo = WebhookEventRepository(db)

    def process_incoming_change(
        self,
        origin,
        tenant_id: str,
        channel_id: Optional[int],
        external_id: Optional[str],
        field_map: Dict[str, Any],
        webhook_event_id: Optional[str] = None,
        entity_type: EntityType = EntityType.PRODUCT,
        now: Optional[datetime] = None
    ) -> IncomingChangeResult:
        """
        Process a change notification from an origin system.

        Safe to call repeatedly with the same webhook_event_id: the stored
        result of the first call is returned.

        Args:
            origin: System that produced the change
            tenant_id: Owning tenant
            channel_id: Channel the notification arrived on
            external_id: Entity id in the origin system
            field_map: Field name to new value; may carry ``bundle_components``
            webhook_event_id: Sender's event id for idempotency
            entity_type: product, order or return
            now: Arrival time

        Returns:
            IncomingChangeResult

        Raises:
            SyncValidationError: Malformed input; nothing is enqueued and the
                webhook event, if any, is recorded as failed
        """
        now = now or utcnow()
        origin = coerce_origin(origin)
        entity_type = EntityType(entity_type)
        fields, components = self._validate_incoming(tenant_id, channel_id, external_id, field_map)

        if webhook_event_id:
            event = self.event_repo.get_by_event_id(webhook_event_id)
            if event is not None and event.status != WebhookEventStatus.FAILED:
                logger.info(f"Webhook event {webhook_event_id} already seen ({event.status})")
                if event.status == WebhookEventStatus.COMPLETED and event.result:
                    replay = IncomingChangeResult(**event.result)
                    replay.duplicate_event = True
                    return replay
                return IncomingChangeResult(accepted=False, action=SyncAction.SKIPPED, duplicate_event=True)
            if event is None:
                try:
                    event = self.event_repo.create(webhook_event_id, origin.value, channel_id, external_id, now)
                except IntegrityError:
                    self.db.rollback()
                    logger.info(f"Webhook event {webhook_event_id} is being processed concurrently")
                    return IncomingChangeResult(accepted=False, action=SyncAction.SKIPPED, duplicate_event=True)
            else:
                event.status = WebhookEventStatus.PROCESSING
                self.db.flush()
        else:
            event = None

        try:
            result = self._process(origin, tenant_id, channel_id, external_id, fields,
                                   components, webhook_event_id, entity_type, now)
        except Exception as e:
            self.db.rollback()
            if webhook_event_id:
                self._record_failed_event(webhook_event_id, origin, channel_id, external_id, e, now)
            raise

        if event is not None:
            self.event_repo.finish(event, WebhookEventStatus.COMPLETED, now, result=result.model_dump(mode="json"))
        self.db.commit()
        return result

    def _record_failed_event(self, webhook_event_id, origin, channel_id, external_id, error, now) -> None:
        """Mark the event failed so a redelivery is processed again."""
        try:
            event = self.event_repo.get_by_event_id(webhook_event_id)
            if event is None:
                event = self.event_repo.create(webhook_event_id, origin.value, channel_id, external_id, now)
            self.event_repo.finish(event, WebhookEventStatus.FAILED, now, error_message=str(error))
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.warning(f"Webhook event {webhook_event_id} was recorded concurrently; not marking it failed")
        logger.error(f"Webhook event {webhook_event_id} failed: {error}")

    def _validate_incoming(self, tenant_id, channel_id, external_id, field_map):
        if not tenant_id:
            raise SyncValidationError("tenant_id is required")
        if not isinstance(field_map, dict) or not field_map:
            raise SyncValidationError("field_map must be a non-empty mapping")
        if channel_id is not None and not external_id:
            raise SyncValidationError("external_id is required for changes arriving on a channel")

        fields = dict(field_map)
        components = None
        if BUNDLE_COMPONENTS_KEY in fields:
            components = parse_components(fields.pop(BUNDLE_COMPONENTS_KEY))

        if channel_id is not None:
            channel = self.channel_repo.get(channel_id)
            if channel is None or channel.tenant_id != tenant_id:
                raise SyncValidationError(f"Channel {channel_id} does not belong to tenant {tenant_id}")
        return fields, components

    def _process(self, origin, tenant_id, channel_id, external_id, fields, components,
                 event_id, entity_type, now, entity=None) -> IncomingChangeResult:
        if external_id and self.echo_detector.is_echo(str(external_id), origin, channel_id, now):
            self.log_repo.add(
                action=SyncAction.SKIPPED,
                origin=origin.value,
                target="local",
                now=now,
                tenant_id=tenant_id,
                channel_id=channel_id,
                external_id=external_id,
                changed_fields=fields.keys(),
                error_message="echo of own push"
            )
            return IncomingChangeResult(accepted=False, action=SyncAction.SKIPPED)

        if entity is None:
            entity, linked_now = self._find_entity(tenant_id, channel_id, external_id, fields, entity_type)
        else:
            linked_now = False
        resolution = self.resolver.resolve(
            entity, fields, origin, now,
            entity_type=entity_type,
            window_seconds=self._conflict_window(tenant_id)
        )
        self._log_conflicts(resolution, entity, tenant_id, origin, channel_id, external_id, now)

        if resolution.requires_manual:
            entity.sync_status = SyncStatus.CONFLICT
            self.db.flush()
            logger.warning(f"Entity {entity.id} marked CONFLICT; update from {origin.value} refused")
            return IncomingChangeResult(
                accepted=False, entity_id=entity.id,
                conflicts=resolution.conflicts, action=SyncAction.CONFLICT
            )

        accepted = len(resolution.rejected_fields) < len(fields) or bool(components)
        if entity is None:
            if not resolution.apply:
                return IncomingChangeResult(
                    accepted=False, conflicts=resolution.conflicts, action=SyncAction.SKIPPED
                )
            entity = self.entity_repo.create(tenant_id, entity_type.value, resolution.apply, origin.value, now)
            action = SyncAction.CREATED
            old_values = None
        elif resolution.apply:
            old_values = {f: entity.get(f) for f in resolution.apply}
            self.entity_repo.apply_fields(entity, resolution.apply, origin.value, now)
            action = SyncAction.UPDATED
        else:
            old_values = None
            action = SyncAction.SKIPPED

        if action != SyncAction.SKIPPED:
            if entity.sync_status != SyncStatus.CONFLICT:
                entity.sync_status = SyncStatus.PENDING
            self.log_repo.add(
                action=action,
                origin=origin.value,
                target="local",
                now=now,
                entity_id=entity.id,
                tenant_id=tenant_id,
                channel_id=channel_id,
                external_id=external_id,
                changed_fields=resolution.apply.keys(),
                old_values=old_values,
                new_values=resolution.apply
            )
            logger.info(
                f"Entity {entity.id} {action} from {origin.value}: {sorted(resolution.apply)}"
            )

        if channel_id is not None and (linked_now or action == SyncAction.CREATED):
            link = self.link_repo.get_or_create(entity.id, channel_id, external_id)
            link.sync_status = SyncStatus.SYNCED
            link.last_sync_at = now
            linked_now = True

        changed = set(resolution.apply)
        if components is not None:
            self.bundles.apply_composition(entity, components, channel_id=channel_id, origin=origin, now=now)
            changed.add("available")
        if action == SyncAction.CREATED or linked_now or "sku" in resolution.apply:
            self.bundles.resolve_pending_for(entity, external_id=external_id, channel_id=channel_id, now=now)

        jobs = []
        if changed:
            jobs = self.propagator.enqueue_fan_out(
                entity, origin,
                origin_channel_id=channel_id,
                changed_fields=changed,
                trigger_event_id=event_id,
                now=now
            )
        self.db.flush()

        return IncomingChangeResult(
            accepted=accepted,
            entity_id=entity.id,
            conflicts=resolution.conflicts,
            action=action,
            jobs_enqueued=len(jobs)
        )

    def _find_entity(self, tenant_id, channel_id, external_id, fields, entity_type):
        """
        Locate the entity a change refers to.

        Returns:
            (entity or None, whether the channel link must be created)
        """
        if channel_id is not None and external_id:
            link = self.link_repo.get_by_external_id(channel_id, external_id)
            if link is not None:
                return self.entity_repo.get(link.entity_id, lock=True), False

        sku = fields.get("sku")
        if sku and entity_type == EntityType.PRODUCT:
            entity = self.entity_repo.get_by_sku(tenant_id, sku, entity_type=entity_type.value)
            if entity is not None:
                logger.info(f"Matched incoming {external_id} to entity {entity.id} by SKU {sku}")
                return self.entity_repo.get(entity.id, lock=True), channel_id is not None
        return None, False

    def _conflict_window(self, tenant_id: str) -> Optional[int]:
        config = self.tenant_repo.get(tenant_id)
        return config.conflict_window_seconds if config is not None else None

    def _log_conflicts(self, resolution: ResolutionResult, entity, tenant_id, origin,
                       channel_id, external_id, now) -> None:
        for conflict in resolution.conflicts:
            self.log_repo.add(
                action=SyncAction.CONFLICT,
                origin=origin.value,
                target="local",
                now=now,
                entity_id=entity.id if entity is not None else None,
                tenant_id=tenant_id,
                channel_id=channel_id,
                external_id=external_id,
                changed_fields=[conflict.field],
                old_values={conflict.field: conflict.old_value},
                new_values={conflict.field: conflict.new_value},
                success=conflict.resolution != ConflictResolution.REJECTED,
                error_message=conflict.reason,
                resolution=conflict.resolution
            )
            logger.warning(
                f"Conflict on {conflict.field} from {origin.value} "
                f"(entity {entity.id if entity is not None else 'new'}): "
                f"{conflict.resolution}, {conflict.reason}"
            )

    def process_deletion(
        self,
        origin,
        tenant_id: str,
        channel_id: int,
        external_id: str,
        now: Optional[datetime] = None
    ) -> IncomingChangeResult:
        """
        Unlink an entity deleted remotely.

        The entity is soft-deactivated once no active link remains; it is
        never destroyed.
        """
        now = now or utcnow()
        origin = coerce_origin(origin)
        link = self.link_repo.get_by_external_id(channel_id, external_id)
        if link is None:
            return IncomingChangeResult(accepted=False, action=SyncAction.SKIPPED)

        link.is_active = False
        link.sync_enabled = False
        entity = self.entity_repo.get(link.entity_id, lock=True)
        self.db.flush()
        remaining = self.link_repo.list_for_entity(entity.id)
        if not remaining:
            entity.is_active = False
            entity.last_updated_by = origin.value
            entity.updated_at = now

        self.log_repo.add(
            action=SyncAction.DELETED,
            origin=origin.value,
            target="local",
            now=now,
            entity_id=entity.id,
            tenant_id=tenant_id,
            channel_id=channel_id,
            external_id=external_id,
            new_values={"is_active": entity.is_active}
        )
        self.db.commit()
        logger.info(
            f"Entity {entity.id} unlinked from channel {channel_id}"
            f"{'' if remaining else ' and deactivated'}"
        )
        return IncomingChangeResult(accepted=True, entity_id=entity.id, action=SyncAction.DELETED)

    def create_entity(
        self,
        tenant_id: str,
        field_map: Dict[str, Any],
        entity_type: EntityType = EntityType.PRODUCT,
        origin=SyncOrigin.PLATFORM,
        now: Optional[datetime] = None
    ) -> SyncEntity:
        """Create an entity locally and resolve any bundle links waiting for it."""
        now = now or utcnow()
        origin = coerce_origin(origin)
        result = self.process_incoming_change(
            origin, tenant_id, None, None, field_map, entity_type=entity_type, now=now
        )
        if result.entity_id is None:
            raise SyncValidationError(f"No writable fields for {origin.value} in {sorted(field_map)}")
        return self.entity_repo.get(result.entity_id)

    def apply_local_change(
        self,
        entity_id: int,
        field_map: Dict[str, Any],
        origin=SyncOrigin.PLATFORM,
        now: Optional[datetime] = None
    ) -> IncomingChangeResult:
        """Authenticated local write; fans out to every linked target."""
        now = now or utcnow()
        origin = coerce_origin(origin)
        entity = self.entity_repo.get(entity_id, lock=True)
        if entity is None:
            raise EntityNotFoundError(entity_id)
        fields, components = self._validate_incoming(entity.tenant_id, None, None, field_map)
        try:
            result = self._process(origin, entity.tenant_id, None, None, fields, components,
                                   None, EntityType(entity.entity_type), now, entity=entity)
        except Exception:
            self.db.rollback()
            raise
        self.db.commit()
        return result

    def link_entity(
        self,
        entity_id: int,
        channel_id: int,
        external_id: Optional[str] = None,
        now: Optional[datetime] = None
    ):
        """
        Attach an entity to a channel and schedule its first push.

        Returns:
            The ExternalLink
        """
        now = now or utcnow()
        entity = self.entity_repo.get(entity_id)
        if entity is None:
            raise EntityNotFoundError(entity_id)
        channel = self.channel_repo.get(channel_id)
        if channel is None or channel.tenant_id != entity.tenant_id:
            raise SyncValidationError(f"Channel {channel_id} does not belong to tenant {entity.tenant_id}")

        link = self.link_repo.get_or_create(entity_id, channel_id, external_id)
        link.is_active = True
        link.sync_enabled = True
        if external_id:
            self.bundles.resolve_pending_for(entity, external_id=external_id, channel_id=channel_id, now=now)
        self.queue.enqueue(
            entity_id=entity_id,
            tenant_id=entity.tenant_id,
            operation=(
                JobOperation.PUSH_TO_FULFILLMENT if channel.channel_type == ChannelType.FULFILLMENT.value
                else JobOperation.PUSH_TO_CHANNEL
            ),
            trigger_origin=SyncOrigin.PLATFORM.value,
            channel_id=channel_id,
            now=now
        )
        self.db.commit()
        return link
