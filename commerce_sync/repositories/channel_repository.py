from typing import List, Optional

from sqlalchemy.orm import Session

from commerce_sync.models import SyncChannel, TenantSyncConfig


class ChannelRepository:
    """Repository for channel configurations."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, channel_id: int) -> Optional[SyncChannel]:
        return self.db.query(SyncChannel).filter(SyncChannel.id == channel_id).first()

    def list_for_tenant(self, tenant_id: str, active_only: bool = True) -> List[SyncChannel]:
        query = self.db.query(SyncChannel).filter(SyncChannel.tenant_id == tenant_id)
        if active_only:
            query = query.filter(SyncChannel.is_active == True)  # noqa: E712
        return query.order_by(SyncChannel.id).all()

    def list_pollable(self) -> List[SyncChannel]:
        """Active channels whose stock must be pulled."""
        return self.db.query(SyncChannel).filter(
            SyncChannel.is_active == True,  # noqa: E712
            SyncChannel.polling_enabled == True  # noqa: E712
        ).order_by(SyncChannel.id).all()

    def deactivate(self, channel: SyncChannel, reason: str) -> SyncChannel:
        channel.is_active = False
        channel.polling_enabled = False
        channel.disabled_reason = reason
        self.db.flush()
        return channel

    def disable_polling(self, channel: SyncChannel, reason: str) -> SyncChannel:
        channel.polling_enabled = False
        channel.disabled_reason = reason
        self.db.flush()
        return channel


class TenantConfigRepository:

    def __init__(self, db: Session):
        self.db = db

    def get(self, tenant_id: str) -> Optional[TenantSyncConfig]:
        return self.db.query(TenantSyncConfig).filter(
            TenantSyncConfig.tenant_id == tenant_id
        ).first()
