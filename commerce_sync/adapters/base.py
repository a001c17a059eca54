"""
Adapter contract consumed by the propagator and stock reconciliation.

Adapters speak one external system's wire protocol and translate its
failures into the error taxonomy of ``commerce_sync.core.exceptions``:
timeouts and rate limits become ``TransientAdapterError``, revoked
credentials ``AuthenticationError``, and an "already exists" answer a
``DuplicateEntityError`` carrying the remote identifier.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List


class SyncAdapter(ABC):
    """Black-box client for one external channel."""

    @abstractmethod
    def upsert_entity(self, payload: Dict[str, Any]) -> str:
        """
        Create or update an entity remotely.

        Args:
            payload: Dict with ``entity_type``, ``external_id`` (None to
                create) and ``fields``

        Returns:
            External identifier of the written entity
        """

    @abstractmethod
    def fetch_entities_since(self, since: datetime) -> List[Dict[str, Any]]:
        """
        Entities modified remotely since a timestamp.

        Returns:
            List of dicts with ``external_id`` and ``fields``
        """

    @abstractmethod
    def set_inventory_level(self, external_id: str, quantity: int) -> None:
        """Write the sellable quantity for an entity."""

    @abstractmethod
    def get_inventory_level(self, external_id: str) -> int:
        """Read the current sellable quantity for an entity."""
