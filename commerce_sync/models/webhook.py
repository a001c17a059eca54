from sqlalchemy import Column, DateTime, Integer, JSON, String, Text, func

from commerce_sync.constants.sync import WebhookEventStatus
from commerce_sync.db.base import Base


class WebhookEvent(Base):
    """Processed inbound notification, keyed by the sender's event id."""

    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    event_id = Column(String(200), nullable=False, unique=True, index=True)
    origin = Column(String(20), nullable=False)
    channel_id = Column(Integer, nullable=True)
    external_id = Column(String(200), nullable=True)
    status = Column(String(20), nullable=False, default=WebhookEventStatus.PROCESSING)
    result = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    processed_at = Column(DateTime, nullable=True)
