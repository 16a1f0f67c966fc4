"""Delta cursor persistence between sync passes."""

import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path

import structlog
from pydantic import ValidationError

from delta_sync.exceptions import CursorStoreError
from delta_sync.models.delta import DeltaCursor

log = structlog.stdlib.get_logger()


class DeltaCursorStore(ABC):
    """Holds the current watermark for one resource collection.

    Token contents are opaque and never validated. Implementations guarantee
    that ``set`` replaces the previous cursor atomically with respect to
    ``get``.
    """

    @abstractmethod
    def get(self) -> DeltaCursor | None:
        """Return the stored cursor, or None when a full snapshot is required."""
        ...

    @abstractmethod
    def set(self, cursor: DeltaCursor) -> None:
        """Replace the stored cursor."""
        ...

    @abstractmethod
    def clear(self) -> None:
        """Discard the stored cursor, forcing the next pass to resync."""
        ...


class InMemoryCursorStore(DeltaCursorStore):
    """Cursor store that lives as long as the process."""

    def __init__(self, cursor: DeltaCursor | None = None):
        self._cursor = cursor
        self._lock = threading.Lock()

    def get(self) -> DeltaCursor | None:
        with self._lock:
            return self._cursor

    def set(self, cursor: DeltaCursor) -> None:
        with self._lock:
            self._cursor = cursor

    def clear(self) -> None:
        with self._lock:
            self._cursor = None


class FileCursorStore(DeltaCursorStore):
    """Cursor store backed by a JSON file.

    Writes go to a temporary file in the same directory which is then renamed
    over the target, so readers observe either the old or the new cursor.
    """

    def __init__(self, path: str | Path):
        """
        Initialize file cursor store.

        Args:
            path: Location of the cursor file; parent directories are created on write
        """
        self._path = Path(path)
        self._lock = threading.Lock()
        log.info("file_cursor_store_initialized", path=str(self._path))

    @property
    def path(self) -> Path:
        return self._path

    def get(self) -> DeltaCursor | None:
        """
        Load the cursor from disk.

        Returns:
            DeltaCursor if the file exists, None otherwise

        Raises:
            CursorStoreError: If the file exists but cannot be read or parsed
        """
        with self._lock:
            try:
                raw = self._path.read_text(encoding="utf-8")
            except FileNotFoundError:
                log.debug("no_cursor_file", path=str(self._path))
                return None
            except (OSError, UnicodeDecodeError) as e:
                log.error("failed_to_read_cursor", path=str(self._path), error=str(e))
                raise CursorStoreError(f"Failed to read cursor file {self._path}: {e}") from e

        try:
            return DeltaCursor.model_validate_json(raw)
        except ValidationError as e:
            log.error("corrupt_cursor_file", path=str(self._path), error=str(e))
            raise CursorStoreError(f"Corrupt cursor file {self._path}: {e}") from e

    def set(self, cursor: DeltaCursor) -> None:
        """
        Atomically replace the cursor file.

        Raises:
            CursorStoreError: If the file cannot be written
        """
        payload = cursor.model_dump_json()
        with self._lock:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(
                    dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp"
                )
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as f:
                        f.write(payload)
                        f.flush()
                        os.fsync(f.fileno())
                    os.replace(tmp_name, self._path)
                except BaseException:
                    Path(tmp_name).unlink(missing_ok=True)
                    raise
            except OSError as e:
                log.error("failed_to_write_cursor", path=str(self._path), error=str(e))
                raise CursorStoreError(f"Failed to write cursor file {self._path}: {e}") from e

        log.debug("cursor_file_written", path=str(self._path))

    def clear(self) -> None:
        with self._lock:
            try:
                self._path.unlink(missing_ok=True)
            except OSError as e:
                raise CursorStoreError(f"Failed to remove cursor file {self._path}: {e}") from e

        log.info("cursor_file_cleared", path=str(self._path))


def describe_cursor(cursor: DeltaCursor | None) -> dict[str, str | None]:
    """Summarise a cursor for logging without dumping the whole link."""
    if cursor is None:
        return {"cursor": None}
    value = cursor.value
    return {
        "cursor": value if len(value) <= 24 else f"...{value[-24:]}",
        "obtained_at": cursor.obtained_at.isoformat(),
    }
