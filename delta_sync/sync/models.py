"""Data models for synchronization operations."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from delta_sync.models.delta import SyncMode


class SyncState(str, Enum):
    """States of the orchestrator state machine."""

    START = "start"
    PAGING = "paging"
    SETTLED = "settled"
    POLLING = "polling"


class SyncReport(BaseModel):
    """Report of one orchestrator call."""

    resource: str = Field(..., description="Collection that was synced")
    mode: SyncMode = Field(..., description="Mode of the last traversal performed")
    pages_fetched: int = Field(default=0, ge=0, description="Pages fetched across all passes")
    records_upserted: int = Field(default=0, ge=0, description="Created or updated records applied")
    records_removed: int = Field(default=0, ge=0, description="Tombstones applied")
    used_stored_cursor: bool = Field(
        default=False, description="Whether the call started from a stored cursor"
    )
    forced_resync: bool = Field(
        default=False, description="Whether an expired cursor forced a full resync"
    )
    poll_attempts: int = Field(default=0, ge=0, description="Delta passes issued while polling")
    changes_observed: bool = Field(
        default=False, description="Whether polling saw a new cursor or any record"
    )
    cancelled: bool = Field(default=False, description="Whether polling was cancelled")
    cursor_changed: bool = Field(
        default=False, description="Whether the stored cursor was replaced"
    )
    start_time: datetime = Field(..., description="Call start timestamp")
    end_time: datetime = Field(..., description="Call end timestamp")

    @property
    def duration_seconds(self) -> float:
        return (self.end_time - self.start_time).total_seconds()

    @property
    def total_changes(self) -> int:
        """Get total number of records applied."""
        return self.records_upserted + self.records_removed
