"""Pydantic models for delta pages, change records and cursors."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ChangeKind(str, Enum):
    """Kind of change carried by a record."""

    UPSERT = "upsert"
    REMOVED = "removed"


class ChangeRecord(BaseModel):
    """A single changed entity as returned by the delta endpoint."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default=..., min_length=1, description="Stable key of the remote entity")
    attributes: dict[str, Any] = Field(
        default_factory=dict, description="Selected fields returned for the entity"
    )
    kind: ChangeKind = Field(default=ChangeKind.UPSERT, description="Created/updated or removed")
    removal_reason: str | None = Field(
        default=None, description="Reason carried by the tombstone marker, if removed"
    )

    @property
    def is_removed(self) -> bool:
        """Check if the record is a tombstone."""
        return self.kind is ChangeKind.REMOVED


class DeltaCursor(BaseModel):
    """Opaque watermark meaning "every change up to here has been observed"."""

    model_config = ConfigDict(frozen=True)

    value: str = Field(default=..., min_length=1, description="Delta link or token, never parsed")
    obtained_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the cursor was received",
    )

    def same_token(self, other: "DeltaCursor | None") -> bool:
        """Compare the opaque token only, ignoring bookkeeping fields."""
        return other is not None and self.value == other.value


class Page(BaseModel):
    """One page of a delta traversal.

    Carries either a continuation link (more pages in this pass) or the
    terminal delta cursor, never both.
    """

    records: list[ChangeRecord] = Field(default_factory=list)
    next_link: str | None = Field(default=None, description="Continuation link for this pass")
    delta_cursor: DeltaCursor | None = Field(default=None, description="Terminal cursor")

    @model_validator(mode="after")
    def _exactly_one_link(self) -> "Page":
        if (self.next_link is None) == (self.delta_cursor is None):
            raise ValueError("page must carry exactly one of next_link or delta_cursor")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.delta_cursor is not None


class InitialQuery(BaseModel):
    """First request of a full traversal, with field selection."""

    model_config = ConfigDict(frozen=True)

    select: tuple[str, ...] = Field(default_factory=tuple)


class ContinuationRequest(BaseModel):
    """Request for the next page within a pass."""

    model_config = ConfigDict(frozen=True)

    next_link: str = Field(default=..., min_length=1)


class DeltaRequest(BaseModel):
    """Request replaying a stored cursor to get subsequent changes."""

    model_config = ConfigDict(frozen=True)

    cursor: DeltaCursor


PageRequest = InitialQuery | ContinuationRequest | DeltaRequest


class SyncMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class SyncSession(BaseModel):
    """Transient state for one traversal. Not persisted."""

    mode: SyncMode
    request: PageRequest | None = Field(
        default=None, description="Request for the page about to be fetched"
    )
    pages_fetched: int = Field(default=0, ge=0)
    records_upserted: int = Field(default=0, ge=0)
    records_removed: int = Field(default=0, ge=0)

    @property
    def is_full_snapshot(self) -> bool:
        return self.mode is SyncMode.FULL

    @property
    def records_applied(self) -> int:
        return self.records_upserted + self.records_removed
