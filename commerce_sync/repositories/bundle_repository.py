from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from commerce_sync.constants.sync import PendingLinkStatus
from commerce_sync.models import BundleItem, PendingBundleLink


class BundleRepository:
    """Repository for bundle edges and pending links."""

    def __init__(self, db: Session):
        self.db = db

    def get_item(self, parent_id: int, child_id: int) -> Optional[BundleItem]:
        return self.db.query(BundleItem).filter(
            BundleItem.parent_id == parent_id,
            BundleItem.child_id == child_id
        ).first()

    def list_children(self, parent_id: int) -> List[BundleItem]:
        return self.db.query(BundleItem).filter(
            BundleItem.parent_id == parent_id
        ).order_by(BundleItem.child_id).all()

    def has_children(self, entity_id: int) -> bool:
        return self.db.query(BundleItem.id).filter(
            BundleItem.parent_id == entity_id
        ).first() is not None

    def is_child(self, entity_id: int) -> bool:
        return self.db.query(BundleItem.id).filter(
            BundleItem.child_id == entity_id
        ).first() is not None

    def list_parents(self, child_id: int) -> List[BundleItem]:
        return self.db.query(BundleItem).filter(BundleItem.child_id == child_id).all()

    def upsert_item(self, tenant_id: str, parent_id: int, child_id: int, quantity: int) -> BundleItem:
        item = self.get_item(parent_id, child_id)
        if item is None:
            item = BundleItem(
                tenant_id=tenant_id,
                parent_id=parent_id,
                child_id=child_id,
                quantity=quantity
            )
            self.db.add(item)
        else:
            item.quantity = quantity
        self.db.flush()
        return item

    def delete_item(self, item: BundleItem) -> None:
        self.db.delete(item)
        self.db.flush()

    def list_pending_for_parent(self, parent_id: int) -> List[PendingBundleLink]:
        return self.db.query(PendingBundleLink).filter(
            PendingBundleLink.parent_id == parent_id,
            PendingBundleLink.status == PendingLinkStatus.PENDING
        ).all()

    def find_pending(self, tenant_id: str, external_id: Optional[str] = None,
                     sku: Optional[str] = None) -> List[PendingBundleLink]:
        """Pending links of the tenant whose candidate matches either identifier."""
        conditions = []
        if external_id:
            conditions.append(PendingBundleLink.child_external_id == str(external_id))
        if sku:
            conditions.append(PendingBundleLink.child_sku == sku)
        if not conditions:
            return []
        return self.db.query(PendingBundleLink).filter(
            PendingBundleLink.tenant_id == tenant_id,
            PendingBundleLink.status == PendingLinkStatus.PENDING,
            or_(*conditions)
        ).order_by(PendingBundleLink.id).all()

    def upsert_pending(
        self,
        tenant_id: str,
        parent_id: int,
        channel_id: Optional[int],
        child_external_id: Optional[str],
        child_sku: Optional[str],
        quantity: int
    ) -> PendingBundleLink:
        query = self.db.query(PendingBundleLink).filter(
            PendingBundleLink.parent_id == parent_id,
            PendingBundleLink.status == PendingLinkStatus.PENDING,
            PendingBundleLink.child_external_id == child_external_id,
            PendingBundleLink.child_sku == child_sku
        )
        link = query.first()
        if link is None:
            link = PendingBundleLink(
                tenant_id=tenant_id,
                parent_id=parent_id,
                channel_id=channel_id,
                child_external_id=child_external_id,
                child_sku=child_sku,
                quantity=quantity
            )
            self.db.add(link)
        else:
            link.quantity = quantity
            link.channel_id = channel_id
        self.db.flush()
        return link

    def mark_resolved(self, link: PendingBundleLink, child_id: int, now: datetime) -> PendingBundleLink:
        link.status = PendingLinkStatus.RESOLVED
        link.resolved_child_id = child_id
        link.resolved_at = now
        self.db.flush()
        return link

    def delete_pending(self, link: PendingBundleLink) -> None:
        self.db.delete(link)
        self.db.flush()
