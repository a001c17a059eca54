from commerce_sync.models.entity import SyncEntity, ExternalLink
from commerce_sync.models.channel import SyncChannel, TenantSyncConfig
from commerce_sync.models.job import SyncJob
from commerce_sync.models.sync_log import SyncLogEntry
from commerce_sync.models.bundle import BundleItem, PendingBundleLink
from commerce_sync.models.webhook import WebhookEvent

__all__ = [
    "SyncEntity",
    "ExternalLink",
    "SyncChannel",
    "TenantSyncConfig",
    "SyncJob",
    "SyncLogEntry",
    "BundleItem",
    "PendingBundleLink",
    "WebhookEvent",
]
