"""External target systems and per-tenant sync tuning."""

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, JSON, String, Text, func

from commerce_sync.db.base import Base


class SyncChannel(Base):
    """One external system a tenant is connected to."""

    __tablename__ = "sync_channels"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    channel_type = Column(String(20), nullable=False,
                          comment="shopify, woocommerce, fulfillment")
    name = Column(String(200), nullable=True)

    api_url = Column(String(500), nullable=True)
    config = Column(JSON, nullable=False, default=dict,
                    comment="Adapter settings; credentials are resolved by the adapter layer")

    is_active = Column(Boolean, nullable=False, default=True)
    polling_enabled = Column(Boolean, nullable=False, default=False,
                             comment="Pull stock levels; for systems without change notifications")
    last_polled_at = Column(DateTime, nullable=True)
    disabled_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now())

    def __repr__(self):
        return f"<SyncChannel(id={self.id}, type={self.channel_type}, tenant={self.tenant_id})>"


class TenantSyncConfig(Base):
    """Retry and conflict-window overrides for one tenant."""

    __tablename__ = "tenant_sync_configs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, unique=True, index=True)
    max_retries = Column(Integer, nullable=True)
    retry_base_delay_seconds = Column(Integer, nullable=True)
    retry_backoff_multiplier = Column(Float, nullable=True)
    conflict_window_seconds = Column(Integer, nullable=True)
