"""Exception hierarchy for delta synchronization."""

from typing import Any

# Status codes and error codes the remote service uses to say a delta token
# can no longer be replayed.
CURSOR_EXPIRED_STATUSES: frozenset[int] = frozenset({410})
CURSOR_EXPIRED_CODES: frozenset[str] = frozenset(
    {"syncStateNotFound", "syncStateInvalid", "resyncRequired"}
)
TRANSIENT_STATUSES: frozenset[int] = frozenset({429, 500, 502, 503, 504})


class DeltaSyncError(Exception):
    """Base class for all delta synchronization errors."""

    pass


class TransportError(DeltaSyncError):
    """Raised when the request never produced an HTTP response (DNS, connect, timeout)."""

    pass


class RemoteError(DeltaSyncError):
    """Raised when the remote service answers with a non-2xx status."""

    def __init__(
        self,
        status: int,
        body: Any = None,
        code: str | None = None,
        retry_after: float | None = None,
    ):
        self.status = status
        self.body = body
        self.code = code
        self.retry_after = retry_after
        super().__init__(f"Remote service returned HTTP {status}" + (f" ({code})" if code else ""))

    @property
    def is_cursor_expired(self) -> bool:
        """Check if the error means the stored cursor must be discarded."""
        if self.status in CURSOR_EXPIRED_STATUSES:
            return True
        return isinstance(self.code, str) and self.code in CURSOR_EXPIRED_CODES

    @property
    def is_transient(self) -> bool:
        """Check if the error is throttling or a server-side failure worth retrying."""
        return not self.is_cursor_expired and self.status in TRANSIENT_STATUSES


class ProtocolError(DeltaSyncError):
    """Raised when a response violates the delta page contract."""

    pass


class ChangeApplyError(DeltaSyncError):
    """Raised when the local sink fails to apply a change record."""

    def __init__(self, record_id: str, cause: Exception):
        self.record_id = record_id
        self.cause = cause
        super().__init__(f"Failed to apply change for {record_id}: {cause}")


class CursorStoreError(DeltaSyncError):
    """Raised when a persisted cursor cannot be read or written."""

    pass
