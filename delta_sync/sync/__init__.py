"""Synchronization components for tracking a collection through delta queries."""

from delta_sync.sync.change_applier import (
    ChangeApplier,
    CompositeApplier,
    PrintingApplier,
    ProjectionApplier,
)
from delta_sync.sync.cursor_store import DeltaCursorStore, FileCursorStore, InMemoryCursorStore
from delta_sync.sync.models import SyncReport, SyncState
from delta_sync.sync.sync_orchestrator import SyncOrchestrator

__all__ = [
    "ChangeApplier",
    "CompositeApplier",
    "DeltaCursorStore",
    "FileCursorStore",
    "InMemoryCursorStore",
    "PrintingApplier",
    "ProjectionApplier",
    "SyncOrchestrator",
    "SyncReport",
    "SyncState",
]
