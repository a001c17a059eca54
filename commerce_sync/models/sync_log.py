from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String, Text, func

from commerce_sync.db.base import Base


class SyncLogEntry(Base):
    """Append-only audit record of sync decisions and outcomes."""

    __tablename__ = "sync_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    entity_id = Column(Integer, nullable=True, index=True)
    tenant_id = Column(String(64), nullable=True, index=True)
    action = Column(String(40), nullable=False, index=True)
    origin = Column(String(20), nullable=False)
    target = Column(String(40), nullable=False, comment="Channel type, 'local' or 'all'")
    channel_id = Column(Integer, nullable=True)
    external_id = Column(String(200), nullable=True, index=True)
    changed_fields = Column(JSON, nullable=False, default=list)
    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)
    resolution = Column(String(20), nullable=True, comment="Conflict outcome for action=conflict")
    success = Column(Boolean, nullable=False, default=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now(), index=True)
