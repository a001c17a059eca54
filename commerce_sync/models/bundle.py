"""Composite product (bundle) edges and deferred links."""

from sqlalchemy import (
    CheckConstraint, Column, DateTime, ForeignKey, Integer, String, Text,
    UniqueConstraint, func
)

from commerce_sync.constants.sync import PendingLinkStatus
from commerce_sync.db.base import Base


class BundleItem(Base):
    __tablename__ = "bundle_items"
    __table_args__ = (
        UniqueConstraint("parent_id", "child_id", name="uq_bundle_item_parent_child"),
        CheckConstraint("quantity >= 1", name="ck_bundle_item_quantity"),
        CheckConstraint("parent_id <> child_id", name="ck_bundle_item_no_self_reference"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    parent_id = Column(Integer, ForeignKey("sync_entities.id", ondelete="CASCADE"),
                       nullable=False, index=True)
    child_id = Column(Integer, ForeignKey("sync_entities.id", ondelete="CASCADE"),
                      nullable=False, index=True)
    quantity = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, server_default=func.now())


class PendingBundleLink(Base):
    """Bundle edge whose child has not been seen locally yet."""

    __tablename__ = "pending_bundle_links"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    parent_id = Column(Integer, ForeignKey("sync_entities.id", ondelete="CASCADE"),
                       nullable=False, index=True)
    channel_id = Column(Integer, nullable=True)
    child_external_id = Column(String(200), nullable=True, index=True)
    child_sku = Column(String(200), nullable=True, index=True)
    quantity = Column(Integer, nullable=False, default=1)
    status = Column(String(20), nullable=False, default=PendingLinkStatus.PENDING)
    resolved_child_id = Column(Integer, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
