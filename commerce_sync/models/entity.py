"""Synchronizable entities and their links to external channels."""

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Integer, JSON, String, Text,
    UniqueConstraint, func
)
from sqlalchemy.orm import relationship

from commerce_sync.constants.sync import SyncStatus
from commerce_sync.db.base import Base


class SyncEntity(Base):
    """Canonical local record for a product, order or return."""

    __tablename__ = "sync_entities"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    entity_type = Column(String(20), nullable=False, default="product",
                         comment="product, order, return")
    sku = Column(String(200), nullable=True, index=True,
                 comment="Mirror of data['sku'] for lookups")
    data = Column(JSON, nullable=False, default=dict,
                  comment="Per-field values")

    sync_status = Column(String(20), nullable=False, default=SyncStatus.PENDING)
    last_updated_by = Column(String(20), nullable=False, comment="Origin tag of the last write")
    checksum = Column(String(64), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    last_synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now())

    links = relationship("ExternalLink", back_populates="entity", cascade="all, delete-orphan")

    def get(self, field, default=None):
        return (self.data or {}).get(field, default)

    def __repr__(self):
        return f"<SyncEntity(id={self.id}, type={self.entity_type}, sku={self.sku})>"


class ExternalLink(Base):
    """Mapping from an entity to its identifier in one channel."""

    __tablename__ = "external_links"
    __table_args__ = (
        UniqueConstraint("entity_id", "channel_id", name="uq_external_link_entity_channel"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    entity_id = Column(Integer, ForeignKey("sync_entities.id", ondelete="CASCADE"),
                       nullable=False, index=True)
    channel_id = Column(Integer, ForeignKey("sync_channels.id", ondelete="CASCADE"),
                        nullable=False, index=True)
    external_id = Column(String(200), nullable=True, index=True)

    sync_status = Column(String(20), nullable=False, default=SyncStatus.PENDING)
    sync_enabled = Column(Boolean, nullable=False, default=True)
    is_active = Column(Boolean, nullable=False, default=True)
    last_sync_at = Column(DateTime, nullable=True)
    last_sync_checksum = Column(String(64), nullable=True)
    last_error = Column(Text, nullable=True)
    last_error_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now())

    entity = relationship("SyncEntity", back_populates="links")
    channel = relationship("SyncChannel")

    def __repr__(self):
        return (
            f"<ExternalLink(entity={self.entity_id}, channel={self.channel_id}, "
            f"external_id={self.external_id})>"
        )
