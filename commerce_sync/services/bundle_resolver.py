"""
Bundle link resolver.

A bundle declares its components by external id and/or SKU. Components that
are already known become BundleItem rows; unknown ones are parked as pending
links and converted the moment a matching entity shows up, so the parent and
its components may arrive in any order.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from commerce_sync.constants.sync import EntityType, SyncAction, SyncOrigin
from commerce_sync.core.exceptions import SyncValidationError
from commerce_sync.models import BundleItem, PendingBundleLink, SyncEntity
from commerce_sync.repositories import (
    BundleRepository,
    EntityRepository,
    ExternalLinkRepository,
    SyncLogRepository,
)
from commerce_sync.schemas.sync_schemas import BundleResolution
from commerce_sync.utils.clock import utcnow

logger = logging.getLogger(__name__)


def parse_components(raw: Any) -> List[Dict[str, Any]]:
    """
    Normalize declared components.

    Raises:
        SyncValidationError: A component has no identifier or a bad quantity
    """
    if not isinstance(raw, list):
        raise SyncValidationError("bundle_components must be a list")

    components = []
    for item in raw:
        if not isinstance(item, dict):
            raise SyncValidationError(f"Invalid bundle component: {item!r}")
        external_id = item.get("external_id")
        sku = item.get("sku")
        if not external_id and not sku:
            raise SyncValidationError("Bundle component needs an external_id or a sku")
        quantity = item.get("quantity", 1)
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise SyncValidationError(f"Bundle component quantity must be a positive integer, got {quantity!r}")
        components.append({
            "external_id": str(external_id) if external_id else None,
            "sku": sku or None,
            "quantity": quantity,
        })
    return components


class BundleResolver:

    def __init__(self, db: Session):
        self.db = db
        self.bundle_repo = BundleRepository(db)
        self.entity_repo = EntityRepository(db)
        self.link_repo = ExternalLinkRepository(db)
        self.log_repo = SyncLogRepository(db)

    def apply_composition(
        self,
        parent: SyncEntity,
        components: List[Dict[str, Any]],
        channel_id: Optional[int] = None,
        origin: SyncOrigin = SyncOrigin.PLATFORM,
        now: Optional[datetime] = None
    ) -> BundleResolution:
        """
        Replace a bundle's composition with the declared components.

        Args:
            parent: Bundle entity
            components: Normalized components (see parse_components)
            channel_id: Channel whose external ids the components use
            origin: Origin of the declaration
            now: Current time

        Returns:
            BundleResolution listing linked child ids, pending identifiers
            and removed child ids

        Raises:
            SyncValidationError: The parent is itself a component, or a
                resolved child violates the composition rules
        """
        now = now or utcnow()
        if self.bundle_repo.is_child(parent.id):
            raise SyncValidationError(f"Entity {parent.id} is a bundle component and cannot be a bundle")

        resolution = BundleResolution(parent_id=parent.id)
        declared_children = set()
        declared_pending = set()

        for component in components:
            child = self._find_child(parent.tenant_id, channel_id, component["external_id"], component["sku"])
            if child is not None:
                self._validate_edge(parent, child)
                self.bundle_repo.upsert_item(parent.tenant_id, parent.id, child.id, component["quantity"])
                declared_children.add(child.id)
                resolution.linked.append(child.id)
            else:
                pending = self.bundle_repo.upsert_pending(
                    tenant_id=parent.tenant_id,
                    parent_id=parent.id,
                    channel_id=channel_id,
                    child_external_id=component["external_id"],
                    child_sku=component["sku"],
                    quantity=component["quantity"]
                )
                declared_pending.add(pending.id)
                resolution.pending.append(component["external_id"] or component["sku"])

        for item in self.bundle_repo.list_children(parent.id):
            if item.child_id not in declared_children:
                resolution.removed.append(item.child_id)
                self.bundle_repo.delete_item(item)
        for pending in self.bundle_repo.list_pending_for_parent(parent.id):
            if pending.id not in declared_pending:
                self.bundle_repo.delete_pending(pending)

        self.log_repo.add(
            action=SyncAction.BUNDLE_LINKED,
            origin=origin.value,
            target="local",
            now=now,
            entity_id=parent.id,
            tenant_id=parent.tenant_id,
            channel_id=channel_id,
            changed_fields=["bundle_components"],
            new_values={
                "linked": resolution.linked,
                "pending": resolution.pending,
                "removed": resolution.removed,
            }
        )
        logger.info(
            f"Bundle {parent.id}: {len(resolution.linked)} linked, "
            f"{len(resolution.pending)} pending, {len(resolution.removed)} removed"
        )
        return resolution

    def resolve_pending_for(
        self,
        entity: SyncEntity,
        external_id: Optional[str] = None,
        channel_id: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> List[BundleItem]:
        """
        Convert pending links that name this entity into bundle items.

        Called whenever an entity is created or gains a SKU or external id.
        """
        now = now or utcnow()
        candidates = self.bundle_repo.find_pending(entity.tenant_id, external_id=external_id, sku=entity.sku)
        created = []
        for pending in candidates:
            if not self._matches(pending, entity, external_id, channel_id):
                continue
            if pending.parent_id == entity.id:
                continue

            if self.bundle_repo.get_item(pending.parent_id, entity.id) is not None:
                # Another pending link already produced this edge
                self.bundle_repo.delete_pending(pending)
                continue

            parent = self.entity_repo.get(pending.parent_id)
            try:
                self._validate_edge(parent, entity)
            except SyncValidationError as e:
                pending.last_error = str(e)
                self.db.flush()
                logger.warning(f"Pending bundle link {pending.id} cannot resolve to entity {entity.id}: {e}")
                continue

            item = self.bundle_repo.upsert_item(entity.tenant_id, pending.parent_id, entity.id, pending.quantity)
            self.bundle_repo.mark_resolved(pending, entity.id, now)
            self.log_repo.add(
                action=SyncAction.BUNDLE_LINKED,
                origin=SyncOrigin.SYSTEM.value,
                target="local",
                now=now,
                entity_id=pending.parent_id,
                tenant_id=entity.tenant_id,
                channel_id=pending.channel_id,
                external_id=pending.child_external_id,
                changed_fields=["bundle_components"],
                new_values={"child_id": entity.id, "quantity": pending.quantity}
            )
            logger.info(f"Resolved pending bundle link {pending.id}: {pending.parent_id} -> {entity.id}")
            created.append(item)
        return created

    def possible_quantity(self, parent_id: int) -> Optional[int]:
        """
        Sellable bundle units given component stock.

        Returns:
            min(child.available // quantity), or None if the entity has no components
        """
        items = self.bundle_repo.list_children(parent_id)
        if not items:
            return None
        possible = None
        for item in items:
            child = self.entity_repo.get(item.child_id)
            available = int((child.get("available") if child else 0) or 0)
            units = max(available, 0) // item.quantity
            possible = units if possible is None else min(possible, units)
        return possible

    def _find_child(self, tenant_id: str, channel_id: Optional[int],
                    external_id: Optional[str], sku: Optional[str]) -> Optional[SyncEntity]:
        if external_id:
            link = None
            if channel_id is not None:
                link = self.link_repo.get_by_external_id(channel_id, external_id)
            if link is None:
                link = self.link_repo.find_by_external_id(tenant_id, external_id)
            if link is not None:
                return self.entity_repo.get(link.entity_id)
        if sku:
            return self.entity_repo.get_by_sku(tenant_id, sku, entity_type=EntityType.PRODUCT.value)
        return None

    def _validate_edge(self, parent: SyncEntity, child: SyncEntity) -> None:
        if parent is None:
            raise SyncValidationError("Bundle parent no longer exists")
        if parent.id == child.id:
            raise SyncValidationError(f"Entity {parent.id} cannot contain itself")
        if parent.tenant_id != child.tenant_id:
            raise SyncValidationError(
                f"Bundle {parent.id} and component {child.id} belong to different tenants"
            )
        if self.bundle_repo.is_child(parent.id):
            raise SyncValidationError(f"Entity {parent.id} is a bundle component and cannot be a bundle")
        # Unresolved declarations count as composition
        if self.bundle_repo.has_children(child.id) or self.bundle_repo.list_pending_for_parent(child.id):
            raise SyncValidationError(f"Component {child.id} is itself a bundle; nesting is not supported")

    @staticmethod
    def _matches(pending: PendingBundleLink, entity: SyncEntity,
                 external_id: Optional[str], channel_id: Optional[int]) -> bool:
        if pending.child_sku and entity.sku and pending.child_sku == entity.sku:
            return True
        if pending.child_external_id and external_id and pending.child_external_id == str(external_id):
            return pending.channel_id is None or channel_id is None or pending.channel_id == channel_id
        return False
