"""
Entity and external link repositories.

Write methods add and flush; the calling service owns the transaction and
commits once its unit of work is complete.
"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from commerce_sync.models import ExternalLink, SyncChannel, SyncEntity


class EntityRepository:
    """Repository for canonical entity records."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, entity_id: int, lock: bool = False) -> Optional[SyncEntity]:
        """
        Get an entity by id.

        Args:
            entity_id: Local entity id
            lock: Take a row lock for the rest of the transaction

        Returns:
            SyncEntity or None
        """
        query = self.db.query(SyncEntity).filter(SyncEntity.id == entity_id)
        if lock:
            query = query.with_for_update()
        return query.first()

    def get_by_sku(self, tenant_id: str, sku: str, entity_type: str = None) -> Optional[SyncEntity]:
        query = self.db.query(SyncEntity).filter(
            SyncEntity.tenant_id == tenant_id,
            SyncEntity.sku == sku
        )
        if entity_type:
            query = query.filter(SyncEntity.entity_type == entity_type)
        return query.first()

    def create(
        self,
        tenant_id: str,
        entity_type: str,
        data: dict,
        last_updated_by: str,
        now: datetime,
        sync_status: str = None
    ) -> SyncEntity:
        entity = SyncEntity(
            tenant_id=tenant_id,
            entity_type=entity_type,
            data=dict(data),
            sku=data.get("sku"),
            last_updated_by=last_updated_by,
            updated_at=now,
            created_at=now
        )
        if sync_status:
            entity.sync_status = sync_status
        self.db.add(entity)
        self.db.flush()
        return entity

    def apply_fields(self, entity: SyncEntity, fields: dict, origin: str, now: datetime) -> SyncEntity:
        """
        Merge field values into an entity and stamp the writer.

        The JSON column is reassigned so the change is tracked.
        """
        data = dict(entity.data or {})
        data.update(fields)
        entity.data = data
        if "sku" in fields:
            entity.sku = fields["sku"]
        entity.last_updated_by = origin
        entity.updated_at = now
        self.db.flush()
        return entity

    def list_by_status(self, tenant_id: str, sync_status: str, limit: int = 100, offset: int = 0) -> List[SyncEntity]:
        return self.db.query(SyncEntity).filter(
            SyncEntity.tenant_id == tenant_id,
            SyncEntity.sync_status == sync_status
        ).order_by(SyncEntity.updated_at.desc()).offset(offset).limit(limit).all()

    def count_by_status(self, tenant_id: str) -> dict:
        rows = self.db.query(SyncEntity.sync_status, func.count(SyncEntity.id)).filter(
            SyncEntity.tenant_id == tenant_id,
            SyncEntity.is_active == True  # noqa: E712
        ).group_by(SyncEntity.sync_status).all()
        return {status: count for status, count in rows}


class ExternalLinkRepository:
    """Repository for entity-to-channel links."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, entity_id: int, channel_id: int) -> Optional[ExternalLink]:
        return self.db.query(ExternalLink).filter(
            ExternalLink.entity_id == entity_id,
            ExternalLink.channel_id == channel_id
        ).first()

    def get_by_external_id(self, channel_id: int, external_id: str) -> Optional[ExternalLink]:
        return self.db.query(ExternalLink).filter(
            ExternalLink.channel_id == channel_id,
            ExternalLink.external_id == str(external_id)
        ).first()

    def find_by_external_id(self, tenant_id: str, external_id: str) -> Optional[ExternalLink]:
        """Look up a link on any of the tenant's channels."""
        return self.db.query(ExternalLink).join(
            SyncChannel, SyncChannel.id == ExternalLink.channel_id
        ).filter(
            SyncChannel.tenant_id == tenant_id,
            ExternalLink.external_id == str(external_id)
        ).first()

    def get_or_create(self, entity_id: int, channel_id: int, external_id: str = None) -> ExternalLink:
        """
        Return the link for (entity, channel), creating it when missing.

        There is never more than one link per pair.
        """
        link = self.get(entity_id, channel_id)
        if link is None:
            link = ExternalLink(
                entity_id=entity_id,
                channel_id=channel_id,
                external_id=str(external_id) if external_id is not None else None
            )
            self.db.add(link)
            self.db.flush()
        elif external_id is not None and link.external_id is None:
            link.external_id = str(external_id)
            self.db.flush()
        return link

    def list_for_entity(self, entity_id: int, active_only: bool = True) -> List[ExternalLink]:
        query = self.db.query(ExternalLink).filter(ExternalLink.entity_id == entity_id)
        if active_only:
            query = query.join(SyncChannel, SyncChannel.id == ExternalLink.channel_id).filter(
                ExternalLink.is_active == True,  # noqa: E712
                ExternalLink.sync_enabled == True,  # noqa: E712
                SyncChannel.is_active == True  # noqa: E712
            )
        return query.order_by(ExternalLink.id).all()

    def list_for_channel(self, channel_id: int) -> List[ExternalLink]:
        return self.db.query(ExternalLink).filter(
            ExternalLink.channel_id == channel_id,
            ExternalLink.is_active == True,  # noqa: E712
            ExternalLink.external_id.isnot(None)
        ).all()
