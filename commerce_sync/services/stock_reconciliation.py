"""
Stock reconciliation.

Pushes are verified by reading the level back; a mismatch fails the push so
the job is retried. Channels without change notifications are polled, and
differences are written locally and fanned out to the other targets.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from commerce_sync.adapters.factory import AdapterRegistry, adapter_registry
from commerce_sync.constants.sync import CHANNEL_ORIGIN, ChannelType, SyncAction, SyncOrigin, SyncStatus
from commerce_sync.core.alerts import send_channel_disabled_alert
from commerce_sync.core.exceptions import (
    AdapterError,
    AuthenticationError,
    EntityNotFoundError,
    StockVerificationError,
    SyncValidationError,
)
from commerce_sync.models import SyncChannel
from commerce_sync.repositories import (
    ChannelRepository,
    EntityRepository,
    ExternalLinkRepository,
    SyncLogRepository,
    TenantConfigRepository,
)
from commerce_sync.schemas.sync_schemas import StockPollResult
from commerce_sync.services.bundle_resolver import BundleResolver
from commerce_sync.services.conflict_resolver import ConflictResolver
from commerce_sync.services.propagator import OutboundPropagator
from commerce_sync.utils.clock import utcnow

logger = logging.getLogger(__name__)

POLLED_STOCK_FIELDS = ("available", "reserved")
INITIAL_POLL_SINCE = datetime(1970, 1, 1)


class StockReconciliation:

    def __init__(
        self,
        db: Session,
        adapters: Optional[AdapterRegistry] = None,
        propagator: Optional[OutboundPropagator] = None,
        resolver: Optional[ConflictResolver] = None
    ):
        self.db = db
        self.adapters = adapters or adapter_registry
        self.propagator = propagator or OutboundPropagator(db, adapters=self.adapters)
        self.resolver = resolver or ConflictResolver()
        self.bundles = BundleResolver(db)
        self.entity_repo = EntityRepository(db)
        self.link_repo = ExternalLinkRepository(db)
        self.channel_repo = ChannelRepository(db)
        self.log_repo = SyncLogRepository(db)
        self.tenant_repo = TenantConfigRepository(db)

    def sellable_quantity(self, entity_id: int) -> int:
        """Bundles sell what their components allow; other products their own stock."""
        possible = self.bundles.possible_quantity(entity_id)
        if possible is not None:
            return possible
        entity = self.entity_repo.get(entity_id)
        return int(entity.get("available") or 0)

    def push_stock(
        self,
        entity_id: int,
        channel_id: int,
        origin: SyncOrigin = SyncOrigin.PLATFORM,
        now: Optional[datetime] = None
    ) -> int:
        """
        Set the inventory level on one channel and verify it by reading back.

        Args:
            entity_id: Entity whose stock is pushed
            channel_id: Target channel
            origin: Origin of the stock change
            now: Current time

        Returns:
            The quantity written

        Raises:
            StockVerificationError: Read-back differs from the written value
            SyncValidationError: The entity is not linked to the channel
        """
        now = now or utcnow()
        entity = self.entity_repo.get(entity_id)
        if entity is None:
            raise EntityNotFoundError(entity_id)
        link = self.link_repo.get(entity_id, channel_id)
        if link is None or not link.external_id:
            raise SyncValidationError(f"Entity {entity_id} has no external id on channel {channel_id}")
        channel = link.channel

        quantity = self.sellable_quantity(entity_id)
        adapter = self.adapters.get(channel)
        try:
            adapter.set_inventory_level(link.external_id, quantity)
            actual = adapter.get_inventory_level(link.external_id)
            if actual != quantity:
                raise StockVerificationError(link.external_id, quantity, actual)
        except AdapterError as e:
            link.sync_status = SyncStatus.ERROR
            link.last_error = str(e)
            link.last_error_at = now
            self.db.commit()
            raise

        link.last_sync_at = now
        link.last_error = None
        link.last_error_at = None
        self.log_repo.add(
            action=SyncAction.PUSHED,
            origin=origin.value,
            target=channel.channel_type,
            now=now,
            entity_id=entity_id,
            tenant_id=entity.tenant_id,
            channel_id=channel_id,
            external_id=link.external_id,
            changed_fields=["available"],
            new_values={"available": quantity}
        )
        self.db.commit()
        logger.info(f"Stock for entity {entity_id} set to {quantity} on channel {channel_id} and verified")
        return quantity

    def poll_channel(self, channel: SyncChannel, now: Optional[datetime] = None) -> StockPollResult:
        """
        Pull stock levels from a channel and apply the differences.

        An authentication failure turns polling off for the channel and
        alerts operators instead of retrying.
        """
        now = now or utcnow()
        result = StockPollResult(channel_id=channel.id)
        origin = CHANNEL_ORIGIN[ChannelType(channel.channel_type)]
        since = channel.last_polled_at or INITIAL_POLL_SINCE

        try:
            adapter = self.adapters.get(channel)
            remote_entities = adapter.fetch_entities_since(since)
        except AuthenticationError as e:
            reason = f"Authentication failed during stock polling: {e}"
            self.channel_repo.disable_polling(channel, reason)
            self.adapters.invalidate(channel.id)
            self.db.commit()
            logger.error(f"Polling disabled for channel {channel.id}: {e}")
            send_channel_disabled_alert(channel.id, channel.tenant_id, reason)
            result.disabled = True
            result.error = str(e)
            return result
        except AdapterError as e:
            logger.warning(f"Stock poll of channel {channel.id} failed, retrying next interval: {e}")
            result.error = str(e)
            return result

        tenant_config = self.tenant_repo.get(channel.tenant_id)
        window = tenant_config.conflict_window_seconds if tenant_config is not None else None

        for remote in remote_entities:
            result.checked += 1
            link = self.link_repo.get_by_external_id(channel.id, remote["external_id"])
            if link is None:
                continue
            entity = self.entity_repo.get(link.entity_id, lock=True)
            if entity is None or not entity.is_active:
                continue

            fields = remote.get("fields") or {}
            incoming = {
                f: fields[f] for f in POLLED_STOCK_FIELDS
                if f in fields and entity.get(f) != fields[f]
            }
            if not incoming:
                continue

            resolution = self.resolver.resolve(entity, incoming, origin, now, window_seconds=window)
            if not resolution.apply:
                for conflict in resolution.conflicts:
                    logger.warning(
                        f"Polled stock for entity {entity.id} rejected: {conflict.field} ({conflict.reason})"
                    )
                continue

            old_values = {f: entity.get(f) for f in resolution.apply}
            self.entity_repo.apply_fields(entity, resolution.apply, origin.value, now)
            self.log_repo.add(
                action=SyncAction.STOCK_POLLED,
                origin=origin.value,
                target="local",
                now=now,
                entity_id=entity.id,
                tenant_id=entity.tenant_id,
                channel_id=channel.id,
                external_id=link.external_id,
                changed_fields=resolution.apply.keys(),
                old_values=old_values,
                new_values=resolution.apply
            )
            result.updated += 1

            jobs = self.propagator.enqueue_fan_out(
                entity, origin, origin_channel_id=channel.id,
                changed_fields=resolution.apply.keys(), now=now
            )
            for item in self.bundles.bundle_repo.list_parents(entity.id):
                parent = self.entity_repo.get(item.parent_id)
                if parent is None:
                    continue
                jobs += self.propagator.enqueue_fan_out(
                    parent, SyncOrigin.SYSTEM, origin_channel_id=channel.id,
                    changed_fields=["available"], now=now
                )
            result.jobs_enqueued += len(jobs)

        channel.last_polled_at = now
        self.db.commit()
        logger.info(
            f"Polled channel {channel.id}: {result.checked} checked, {result.updated} updated, "
            f"{result.jobs_enqueued} jobs enqueued"
        )
        return result
