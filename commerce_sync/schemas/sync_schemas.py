"""
Schemas for sync engine results.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ConflictRecord(BaseModel):
    """Per-field outcome of a write that was not silently applied."""
    field: str
    resolution: str = Field(..., description="accepted, rejected, manual")
    reason: str
    origin: str
    previous_origin: Optional[str] = None
    old_value: Any = None
    new_value: Any = None


class ResolutionResult(BaseModel):
    """Fields to persist and conflicts raised for one incoming change."""
    apply: Dict[str, Any] = Field(default_factory=dict)
    conflicts: List[ConflictRecord] = Field(default_factory=list)

    @property
    def requires_manual(self) -> bool:
        return any(c.resolution == "manual" for c in self.conflicts)

    @property
    def rejected_fields(self) -> List[str]:
        return [c.field for c in self.conflicts if c.resolution == "rejected"]


class TargetResult(BaseModel):
    channel_id: int
    channel_type: str
    external_id: Optional[str] = None
    success: bool
    skipped: bool = False
    created: bool = False
    healed_duplicate: bool = False
    error: Optional[str] = None
    exception: Any = Field(default=None, exclude=True)


class PropagationResult(BaseModel):
    """Per-target outcome of pushing one entity outward."""
    entity_id: int
    targets: List[TargetResult] = Field(default_factory=list)
    first_error: Optional[str] = None
    first_exception: Any = Field(default=None, exclude=True)

    @property
    def success(self) -> bool:
        return all(t.success for t in self.targets)

    @property
    def failed_channel_ids(self) -> List[int]:
        return [t.channel_id for t in self.targets if not t.success]


class IncomingChangeResult(BaseModel):
    """Answer to an inbound change notification."""
    accepted: bool
    entity_id: Optional[int] = None
    conflicts: List[ConflictRecord] = Field(default_factory=list)
    action: str
    jobs_enqueued: int = 0
    duplicate_event: bool = False


class StockPollResult(BaseModel):
    channel_id: int
    checked: int = 0
    updated: int = 0
    jobs_enqueued: int = 0
    disabled: bool = False
    error: Optional[str] = None


class BundleResolution(BaseModel):
    parent_id: int
    linked: List[int] = Field(default_factory=list)
    pending: List[str] = Field(default_factory=list)
    removed: List[int] = Field(default_factory=list)


class QueueStatus(BaseModel):
    """Job queue view for one entity."""
    entity_id: int
    sync_status: str
    counts: Dict[str, int] = Field(default_factory=dict)
    next_scheduled_for: Optional[datetime] = None
    last_error: Optional[str] = None
    jobs: List[Dict[str, Any]] = Field(default_factory=list)
