from commerce_sync.repositories.entity_repository import EntityRepository, ExternalLinkRepository
from commerce_sync.repositories.channel_repository import ChannelRepository, TenantConfigRepository
from commerce_sync.repositories.sync_job_repository import SyncJobRepository
from commerce_sync.repositories.sync_log_repository import SyncLogRepository
from commerce_sync.repositories.bundle_repository import BundleRepository
from commerce_sync.repositories.webhook_event_repository import WebhookEventRepository

__all__ = [
    "EntityRepository",
    "ExternalLinkRepository",
    "ChannelRepository",
    "TenantConfigRepository",
    "SyncJobRepository",
    "SyncLogRepository",
    "BundleRepository",
    "WebhookEventRepository",
]
