"""Factory for building adapters from channel configurations."""

import logging
from typing import Callable, Dict

from commerce_sync.adapters.base import SyncAdapter
from commerce_sync.constants.sync import ChannelType
from commerce_sync.core.exceptions import AdapterError
from commerce_sync.models import SyncChannel

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """
    Maps channel types to adapter builders and caches one adapter per channel.

    Example:
        registry = AdapterRegistry()
        registry.register(ChannelType.WOOCOMMERCE, WooCommerceAdapter.from_channel)
        adapter = registry.get(channel)
    """

    def __init__(self):
        self._builders: Dict[str, Callable[[SyncChannel], SyncAdapter]] = {}
        self._cache: Dict[int, SyncAdapter] = {}

    def register(self, channel_type, builder: Callable[[SyncChannel], SyncAdapter]) -> None:
        key = channel_type.value if isinstance(channel_type, ChannelType) else str(channel_type)
        self._builders[key] = builder
        self._cache.clear()

    def get(self, channel: SyncChannel) -> SyncAdapter:
        """
        Return the adapter for a channel.

        Raises:
            AdapterError: No builder is registered for the channel type
        """
        adapter = self._cache.get(channel.id)
        if adapter is not None:
            return adapter

        builder = self._builders.get(channel.channel_type)
        if builder is None:
            raise AdapterError(f"No adapter registered for channel type '{channel.channel_type}'")

        adapter = builder(channel)
        self._cache[channel.id] = adapter
        logger.debug(f"Built {type(adapter).__name__} for channel {channel.id}")
        return adapter

    def invalidate(self, channel_id: int) -> None:
        self._cache.pop(channel_id, None)


def _build_default_registry() -> AdapterRegistry:
    from commerce_sync.adapters.woocommerce import WooCommerceAdapter

    registry = AdapterRegistry()
    registry.register(ChannelType.WOOCOMMERCE, WooCommerceAdapter.from_channel)
    return registry


adapter_registry = _build_default_registry()
