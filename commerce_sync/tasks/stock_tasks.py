"""
Celery tasks for pull-based stock reconciliation.
"""
import logging
from datetime import timedelta
from typing import Any, Dict

import redis
from redis.lock import Lock as RedisLock

from commerce_sync.celery_app import celery_app
from commerce_sync.core.config import settings
from commerce_sync.repositories import ChannelRepository
from commerce_sync.services.stock_reconciliation import StockReconciliation
from commerce_sync.tasks.base import DatabaseTask
from commerce_sync.utils.clock import utcnow

logger = logging.getLogger(__name__)

# Redis client for per-channel poll locks
try:
    redis_client = redis.Redis.from_url(settings.celery_broker_url, decode_responses=True)
except Exception as e:
    logger.warning(f"Failed to initialize Redis client: {e}. Poll locks will be disabled.")
    redis_client = None


@celery_app.task(
    bind=True,
    base=DatabaseTask,
    name="commerce_sync.tasks.stock_tasks.schedule_stock_polls"
)
def schedule_stock_polls(self) -> Dict[str, Any]:
    """Queue a poll for every polling channel whose interval has elapsed."""
    now = utcnow()
    due_before = now - timedelta(seconds=settings.stock_poll_interval_seconds)
    queued = []
    for channel in ChannelRepository(self.db).list_pollable():
        if channel.last_polled_at is None or channel.last_polled_at <= due_before:
            poll_channel_stock.delay(channel.id)
            queued.append(channel.id)
    if queued:
        logger.info(f"Queued stock polls for channels {queued}")
    return {"queued": queued}


@celery_app.task(
    bind=True,
    base=DatabaseTask,
    name="commerce_sync.tasks.stock_tasks.poll_channel_stock"
)
def poll_channel_stock(self, channel_id: int) -> Dict[str, Any]:
    """
    Poll one channel's stock levels.

    A per-channel Redis lock keeps overlapping beat ticks from polling the
    same channel twice.
    """
    lock = None
    if redis_client:
        lock = RedisLock(redis_client, f"stock_poll:{channel_id}",
                         timeout=int(settings.stock_poll_interval_seconds) * 2, blocking_timeout=0)
        if not lock.acquire(blocking=False):
            logger.info(f"Stock poll for channel {channel_id} already running")
            return {"channel_id": channel_id, "skipped": True}

    try:
        channel = ChannelRepository(self.db).get(channel_id)
        if channel is None or not channel.is_active or not channel.polling_enabled:
            return {"channel_id": channel_id, "skipped": True}
        result = StockReconciliation(self.db).poll_channel(channel)
        return result.model_dump()
    finally:
        if lock is not None and lock.owned():
            lock.release()
