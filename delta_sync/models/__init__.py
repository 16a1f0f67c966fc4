"""Data models for the delta sync engine."""

from delta_sync.models.config import (
    AppConfig,
    CursorStoreConfig,
    GraphConfig,
    LoggingConfig,
    PollingConfig,
    RetryConfig,
)
from delta_sync.models.delta import (
    ChangeKind,
    ChangeRecord,
    ContinuationRequest,
    DeltaCursor,
    DeltaRequest,
    InitialQuery,
    Page,
    PageRequest,
    SyncMode,
    SyncSession,
)

__all__ = [
    "ChangeKind",
    "ChangeRecord",
    "ContinuationRequest",
    "DeltaCursor",
    "DeltaRequest",
    "InitialQuery",
    "Page",
    "PageRequest",
    "SyncMode",
    "SyncSession",
    "AppConfig",
    "CursorStoreConfig",
    "GraphConfig",
    "LoggingConfig",
    "PollingConfig",
    "RetryConfig",
]
