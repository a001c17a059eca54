from commerce_sync.adapters.base import SyncAdapter
from commerce_sync.adapters.factory import AdapterRegistry, adapter_registry

__all__ = ["SyncAdapter", "AdapterRegistry", "adapter_registry"]
