"""Constants for sync operations."""

from enum import Enum


class SyncOrigin(str, Enum):
    """System that produced a change."""
    SHOPIFY = "shopify"
    WOOCOMMERCE = "woocommerce"
    PLATFORM = "platform"
    FULFILLMENT = "fulfillment"
    SYSTEM = "system"


class OriginClass(str, Enum):
    """Writer class an origin belongs to."""
    COMMERCE = "commerce"
    OPERATIONS = "operations"
    INTERNAL = "internal"


def origin_class(origin: SyncOrigin) -> OriginClass:
    """Classify an origin; unknown members are a programming error."""
    if origin in (SyncOrigin.SHOPIFY, SyncOrigin.WOOCOMMERCE):
        return OriginClass.COMMERCE
    if origin in (SyncOrigin.PLATFORM, SyncOrigin.FULFILLMENT):
        return OriginClass.OPERATIONS
    if origin is SyncOrigin.SYSTEM:
        return OriginClass.INTERNAL
    raise ValueError(f"Unhandled sync origin: {origin!r}")


class ChannelType(str, Enum):
    """External target system kinds."""
    SHOPIFY = "shopify"
    WOOCOMMERCE = "woocommerce"
    FULFILLMENT = "fulfillment"


# Origin tag written when a change arrives from a channel of the given type.
CHANNEL_ORIGIN = {
    ChannelType.SHOPIFY: SyncOrigin.SHOPIFY,
    ChannelType.WOOCOMMERCE: SyncOrigin.WOOCOMMERCE,
    ChannelType.FULFILLMENT: SyncOrigin.FULFILLMENT,
}


class EntityType(str, Enum):
    PRODUCT = "product"
    ORDER = "order"
    RETURN = "return"


class SyncStatus:
    """Entity and link sync status constants."""
    PENDING = "pending"
    SYNCED = "synced"
    CONFLICT = "conflict"
    ERROR = "error"


class JobStatus:
    """Sync job status constants."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class JobOperation:
    """Sync job operations."""
    SYNC_ALL = "sync_all"
    PUSH_TO_CHANNEL = "push_to_channel"
    PUSH_TO_FULFILLMENT = "push_to_fulfillment"
    PUSH_STOCK = "push_stock"

    ALL = (SYNC_ALL, PUSH_TO_CHANNEL, PUSH_TO_FULFILLMENT, PUSH_STOCK)


class SyncAction:
    """Sync log action constants."""
    CREATED = "created"
    UPDATED = "updated"
    PUSHED = "pushed"
    SKIPPED = "skipped"
    DELETED = "deleted"
    CONFLICT = "conflict"
    RESOLVE_CONFLICT = "resolve_conflict"
    FAILED = "failed"
    STOCK_POLLED = "stock_polled"
    BUNDLE_LINKED = "bundle_linked"
    PROPAGATED = "propagated"

    # Actions that count as an outbound write for echo detection
    OUTBOUND = (CREATED, UPDATED, PUSHED)


class ConflictResolution:
    """Per-field conflict outcomes."""
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    MANUAL = "manual"


class ConflictStrategy(str, Enum):
    """Manual resolution strategies for an entity in CONFLICT."""
    ACCEPT_LOCAL = "accept_local"
    ACCEPT_REMOTE = "accept_remote"
    MERGE = "merge"


class PendingLinkStatus:
    PENDING = "pending"
    RESOLVED = "resolved"


class WebhookEventStatus:
    """Inbound notification processing status constants."""
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
