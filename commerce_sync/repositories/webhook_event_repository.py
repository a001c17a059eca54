from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from commerce_sync.constants.sync import WebhookEventStatus
from commerce_sync.models import WebhookEvent


class WebhookEventRepository:
    """Repository for inbound notification idempotency records."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_event_id(self, event_id: str) -> Optional[WebhookEvent]:
        return self.db.query(WebhookEvent).filter(WebhookEvent.event_id == event_id).first()

    def create(self, event_id: str, origin: str, channel_id: Optional[int],
               external_id: Optional[str], now: datetime) -> WebhookEvent:
        event = WebhookEvent(
            event_id=event_id,
            origin=origin,
            channel_id=channel_id,
            external_id=str(external_id) if external_id is not None else None,
            status=WebhookEventStatus.PROCESSING,
            created_at=now
        )
        self.db.add(event)
        self.db.flush()
        return event

    def finish(self, event: WebhookEvent, status: str, now: datetime,
               result: Optional[dict] = None, error_message: Optional[str] = None) -> WebhookEvent:
        event.status = status
        event.result = result
        event.error_message = error_message
        event.processed_at = now
        self.db.flush()
        return event
