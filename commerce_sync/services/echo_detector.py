"""
Echo detector.

An inbound notification is treated as the echo of our own push when either
a successful outbound write of the same external id to that origin was
logged recently, or the linked entity was just written by a different origin
and is still propagating.

Both windows are wall-clock heuristics. A slow system echoing after the log
window is processed again (the conflict resolver then sees unchanged values),
and two operators editing inside the recent-write window can have the second
edit suppressed. The windows are settings, not guarantees.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from commerce_sync.constants.sync import SyncOrigin
from commerce_sync.core.config import settings
from commerce_sync.repositories import EntityRepository, ExternalLinkRepository, SyncLogRepository

logger = logging.getLogger(__name__)


class EchoDetector:

    def __init__(
        self,
        db: Session,
        log_window_seconds: Optional[int] = None,
        recent_write_window_seconds: Optional[int] = None
    ):
        self.db = db
        self.log_repo = SyncLogRepository(db)
        self.link_repo = ExternalLinkRepository(db)
        self.entity_repo = EntityRepository(db)
        self.log_window = timedelta(seconds=(
            log_window_seconds if log_window_seconds is not None
            else settings.echo_log_window_seconds
        ))
        self.recent_write_window = timedelta(seconds=(
            recent_write_window_seconds if recent_write_window_seconds is not None
            else settings.echo_recent_write_window_seconds
        ))

    def is_echo(
        self,
        external_id: str,
        origin: SyncOrigin,
        channel_id: Optional[int],
        now: datetime
    ) -> bool:
        """
        Whether an inbound notification should be suppressed.

        Args:
            external_id: Identifier in the origin system
            origin: System that sent the notification
            channel_id: Channel the notification arrived on, if known
            now: Arrival time

        Returns:
            True to suppress
        """
        if not external_id:
            return False

        pushed = self.log_repo.find_recent_outbound(
            external_id=external_id,
            target=origin.value,
            since=now - self.log_window,
            channel_id=channel_id
        )
        if pushed is not None:
            logger.info(
                f"Echo suppressed: {origin.value} {external_id} was pushed at {pushed.created_at}"
            )
            return True

        if channel_id is None:
            return False
        link = self.link_repo.get_by_external_id(channel_id, external_id)
        if link is None:
            return False
        entity = self.entity_repo.get(link.entity_id)
        if entity is None or entity.updated_at is None:
            return False

        if entity.last_updated_by != origin.value and entity.updated_at >= now - self.recent_write_window:
            logger.info(
                f"Echo suppressed: entity {entity.id} written by {entity.last_updated_by} "
                f"at {entity.updated_at}, notification from {origin.value}"
            )
            return True
        return False
