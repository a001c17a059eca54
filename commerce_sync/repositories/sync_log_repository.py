from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from commerce_sync.constants.sync import SyncAction
from commerce_sync.models import SyncLogEntry


class SyncLogRepository:
    """Append-only access to the sync audit log."""

    def __init__(self, db: Session):
        self.db = db

    def add(
        self,
        action: str,
        origin: str,
        target: str,
        now: datetime,
        entity_id: Optional[int] = None,
        tenant_id: Optional[str] = None,
        channel_id: Optional[int] = None,
        external_id: Optional[str] = None,
        changed_fields: Optional[Iterable[str]] = None,
        old_values: Optional[dict] = None,
        new_values: Optional[dict] = None,
        success: bool = True,
        error_message: Optional[str] = None,
        resolution: Optional[str] = None
    ) -> SyncLogEntry:
        entry = SyncLogEntry(
            action=action,
            origin=origin,
            target=target,
            entity_id=entity_id,
            tenant_id=tenant_id,
            channel_id=channel_id,
            external_id=str(external_id) if external_id is not None else None,
            changed_fields=sorted(changed_fields or []),
            old_values=old_values,
            new_values=new_values,
            success=success,
            error_message=error_message,
            resolution=resolution,
            created_at=now
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def find_recent_outbound(
        self,
        external_id: str,
        target: str,
        since: datetime,
        channel_id: Optional[int] = None
    ) -> Optional[SyncLogEntry]:
        """
        Most recent successful outbound write of external_id to target.

        Args:
            external_id: Identifier in the target system
            target: Target tag the push was addressed to
            since: Window start
            channel_id: Restrict to one channel when known

        Returns:
            SyncLogEntry or None
        """
        query = self.db.query(SyncLogEntry).filter(
            SyncLogEntry.external_id == str(external_id),
            SyncLogEntry.target == target,
            SyncLogEntry.action.in_(SyncAction.OUTBOUND),
            SyncLogEntry.success == True,  # noqa: E712
            SyncLogEntry.created_at >= since
        )
        if channel_id is not None:
            query = query.filter(SyncLogEntry.channel_id == channel_id)
        return query.order_by(SyncLogEntry.created_at.desc()).first()

    def list_for_entity(self, entity_id: int, action: Optional[str] = None, limit: int = 100) -> List[SyncLogEntry]:
        query = self.db.query(SyncLogEntry).filter(SyncLogEntry.entity_id == entity_id)
        if action:
            query = query.filter(SyncLogEntry.action == action)
        return query.order_by(SyncLogEntry.created_at.desc(), SyncLogEntry.id.desc()).limit(limit).all()

    def list_conflicts(self, tenant_id: str, since: Optional[datetime] = None, limit: int = 100) -> List[SyncLogEntry]:
        query = self.db.query(SyncLogEntry).filter(
            SyncLogEntry.tenant_id == tenant_id,
            SyncLogEntry.action == SyncAction.CONFLICT
        )
        if since is not None:
            query = query.filter(SyncLogEntry.created_at >= since)
        return query.order_by(SyncLogEntry.created_at.desc(), SyncLogEntry.id.desc()).limit(limit).all()

    def count_by_action(self, tenant_id: str, since: Optional[datetime] = None) -> dict:
        query = self.db.query(SyncLogEntry.action, func.count(SyncLogEntry.id)).filter(
            SyncLogEntry.tenant_id == tenant_id
        )
        if since is not None:
            query = query.filter(SyncLogEntry.created_at >= since)
        return {action: count for action, count in query.group_by(SyncLogEntry.action).all()}
