"""
Conflict resolver.

Decides per field whether an incoming write is applied, applied but flagged,
or rejected. The decision depends only on the existing entity, the incoming
values, the origin and the clock, so it can be replayed from the same inputs.
Callers persist the returned conflicts.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional

from commerce_sync.constants.sync import (
    ConflictResolution,
    EntityType,
    OriginClass,
    SyncOrigin,
    origin_class,
)
from commerce_sync.core.config import settings
from commerce_sync.models import SyncEntity
from commerce_sync.schemas.sync_schemas import ConflictRecord, ResolutionResult
from commerce_sync.services.field_ownership import FieldOwner, is_authorized, owner_of

logger = logging.getLogger(__name__)

STOCK_REJECTION_REASON = "stock is warehouse-authoritative"


class ConflictResolver:
    """
    Per-field ownership and recency rules for incoming changes.

    Args:
        conflict_window_seconds: Window in which a shared-field overwrite of
            another origin's write is flagged
        manual_review_fields: Shared fields whose concurrent overwrite must be
            decided by an operator instead of last-write-wins
    """

    def __init__(self, conflict_window_seconds: Optional[int] = None,
                 manual_review_fields: Iterable[str] = ()):
        self.conflict_window_seconds = (
            conflict_window_seconds if conflict_window_seconds is not None
            else settings.conflict_window_seconds
        )
        self.manual_review_fields = frozenset(manual_review_fields)

    def resolve(
        self,
        entity: Optional[SyncEntity],
        incoming: Dict[str, Any],
        origin: SyncOrigin,
        now: datetime,
        entity_type: Optional[EntityType] = None,
        window_seconds: Optional[int] = None
    ) -> ResolutionResult:
        """
        Resolve an incoming field map against the current entity.

        Args:
            entity: Current entity, or None when it does not exist yet
            incoming: Field name to new value
            origin: System that produced the change
            now: Decision time
            entity_type: Required when entity is None
            window_seconds: Per-tenant override of the conflict window

        Returns:
            ResolutionResult with the fields to persist and conflict records.
            When any conflict is manual, nothing is applied.
        """
        writer = origin_class(origin)
        if entity is not None:
            entity_type = EntityType(entity.entity_type)
        entity_type = EntityType(entity_type or EntityType.PRODUCT)

        window = timedelta(
            seconds=window_seconds if window_seconds is not None else self.conflict_window_seconds
        )
        current = dict(entity.data or {}) if entity is not None else {}
        concurrent_writer = (
            entity is not None
            and entity.last_updated_by != origin.value
            and entity.updated_at is not None
            and entity.updated_at >= now - window
        )

        result = ResolutionResult()
        for field, new_value in incoming.items():
            owner = owner_of(field, entity_type)
            old_value = current.get(field)

            if owner == FieldOwner.STOCK and writer == OriginClass.COMMERCE:
                result.conflicts.append(self._record(
                    field, ConflictResolution.REJECTED, STOCK_REJECTION_REASON,
                    origin, entity, old_value, new_value
                ))
                continue

            if not is_authorized(owner, writer):
                result.conflicts.append(self._record(
                    field, ConflictResolution.REJECTED,
                    f"{owner.value} field is not writable by {origin.value}",
                    origin, entity, old_value, new_value
                ))
                continue

            if entity is not None and field in current and old_value == new_value:
                continue

            if owner == FieldOwner.SHARED and concurrent_writer:
                if field in self.manual_review_fields:
                    result.conflicts.append(self._record(
                        field, ConflictResolution.MANUAL,
                        f"concurrent edit by {entity.last_updated_by} requires review",
                        origin, entity, old_value, new_value
                    ))
                    continue
                result.conflicts.append(self._record(
                    field, ConflictResolution.ACCEPTED,
                    f"overwrote {entity.last_updated_by} write within conflict window",
                    origin, entity, old_value, new_value
                ))

            result.apply[field] = new_value

        if result.requires_manual:
            logger.warning(
                f"Update from {origin.value} for entity "
                f"{entity.id if entity is not None else 'new'} refused pending manual review"
            )
            result.apply = {}

        return result

    @staticmethod
    def _record(field, resolution, reason, origin, entity, old_value, new_value) -> ConflictRecord:
        return ConflictRecord(
            field=field,
            resolution=resolution,
            reason=reason,
            origin=origin.value,
            previous_origin=entity.last_updated_by if entity is not None else None,
            old_value=old_value,
            new_value=new_value
        )
