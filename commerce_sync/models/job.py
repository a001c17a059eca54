from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text, func

from commerce_sync.constants.sync import JobStatus
from commerce_sync.db.base import Base


class SyncJob(Base):
    """Unit of outbound propagation work."""

    __tablename__ = "sync_jobs"
    __table_args__ = (
        Index("ix_sync_jobs_claim", "status", "scheduled_for", "priority"),
        Index("ix_sync_jobs_target", "entity_id", "target_key", "status"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    entity_id = Column(Integer, ForeignKey("sync_entities.id", ondelete="CASCADE"),
                       nullable=False)
    tenant_id = Column(String(64), nullable=False, index=True)
    operation = Column(String(40), nullable=False)
    channel_id = Column(Integer, ForeignKey("sync_channels.id", ondelete="SET NULL"),
                        nullable=True)
    target_key = Column(String(80), nullable=False,
                        comment="operation:channel; at most one processing job per entity+target_key")
    trigger_origin = Column(String(20), nullable=False)
    trigger_event_id = Column(String(200), nullable=True)
    fields_to_sync = Column(JSON, nullable=True)

    priority = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default=JobStatus.PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    scheduled_for = Column(DateTime, nullable=False)
    claim_token = Column(String(64), nullable=True)
    last_error = Column(Text, nullable=True)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    def __repr__(self):
        return (
            f"<SyncJob(id={self.id}, entity={self.entity_id}, op={self.operation}, "
            f"status={self.status}, attempts={self.attempts})>"
        )
