"""Sinks that apply change records to a local projection."""

import sys
import threading
from abc import ABC, abstractmethod
from typing import Any, Iterable, TextIO

import structlog

from delta_sync.models.delta import ChangeRecord

log = structlog.stdlib.get_logger()


class ChangeApplier(ABC):
    """Consumes change records.

    Implementations must be idempotent: applying the same record twice leaves
    the sink in the same state as applying it once, and applying a removal
    for an unknown id is a no-op.
    """

    @abstractmethod
    def apply(self, record: ChangeRecord) -> None:
        ...


class ProjectionApplier(ChangeApplier):
    """Keeps an in-memory table of entities keyed by id.

    Upserts merge incoming attributes over the stored entry, since delta
    responses for an update may carry only the fields that changed.
    """

    def __init__(self, initial: dict[str, dict[str, Any]] | None = None):
        self._entries: dict[str, dict[str, Any]] = {
            key: dict(value) for key, value in (initial or {}).items()
        }
        self._lock = threading.Lock()

    def apply(self, record: ChangeRecord) -> None:
        with self._lock:
            if record.is_removed:
                removed = self._entries.pop(record.id, None)
                log.debug("projection_entry_removed", id=record.id, existed=removed is not None)
                return

            entry = self._entries.setdefault(record.id, {})
            entry.update(record.attributes)
            log.debug("projection_entry_upserted", id=record.id)

    def get(self, entity_id: str) -> dict[str, Any] | None:
        with self._lock:
            entry = self._entries.get(entity_id)
            return dict(entry) if entry is not None else None

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Return a copy of every entry, keyed by id."""
        with self._lock:
            return {key: dict(value) for key, value in self._entries.items()}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, entity_id: object) -> bool:
        with self._lock:
            return entity_id in self._entries


class PrintingApplier(ChangeApplier):
    """Writes one line per change to a text stream.

    Upserts print the key field lower-cased followed by the label field;
    records without the key field are skipped.
    """

    def __init__(
        self,
        stream: TextIO | None = None,
        key_field: str = "userPrincipalName",
        label_field: str = "displayName",
    ):
        self._stream = stream or sys.stdout
        self._key_field = key_field
        self._label_field = label_field

    def apply(self, record: ChangeRecord) -> None:
        if record.is_removed:
            reason = record.removal_reason or "removed"
            self._stream.write(f"{record.id}\t\t<{reason}>\n")
            return

        key = record.attributes.get(self._key_field)
        if key is None:
            return

        label = record.attributes.get(self._label_field)
        self._stream.write(f"{str(key).lower()}\t\t{'' if label is None else label}\n")


class CompositeApplier(ChangeApplier):
    """Fans each record out to several appliers, in order."""

    def __init__(self, appliers: Iterable[ChangeApplier]):
        self._appliers = list(appliers)
        if not self._appliers:
            raise ValueError("CompositeApplier needs at least one applier")

    def apply(self, record: ChangeRecord) -> None:
        for applier in self._appliers:
            applier.apply(record)
