"""Checksums over sync-relevant entity fields for re-push detection."""
import hashlib
import json
from typing import Any, Dict, Iterable, Optional


def compute_checksum(data: Dict[str, Any], fields: Optional[Iterable[str]] = None) -> str:
    """
    SHA256 over the selected fields of an entity, stable across key order.

    Args:
        data: Entity field values
        fields: Fields to include (None = all)

    Returns:
        Hexadecimal digest
    """
    if fields is not None:
        data = {field: data.get(field) for field in fields}
    payload = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
