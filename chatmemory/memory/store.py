"""Per-scope memory records on top of the host key/value store."""

from __future__ import annotations

from typing import Any

from chatmemory.errors import StoreError
from chatmemory.logging import get_logger
from chatmemory.memory.io import KeyValueStore
from chatmemory.memory.types import HistoryEntry, MemoryRecord, utc_now_iso

logger = get_logger(__name__)

_RECORD_FIELDS = frozenset({
    "rolling_summary",
    "entities",
    "consolidated_cursor",
    "last_updated",
    "history",
    "message_summaries",
})


class MemoryStore:
    """Reads and writes MemoryRecords; every public write is a single store write."""

    NAMESPACE = "memory"

    def __init__(self, kv: KeyValueStore, *, history_limit: int = 20) -> None:
        self.kv = kv
        self.history_limit = max(1, history_limit)

    def _read(self, scope_id: str) -> MemoryRecord:
        try:
            raw = self.kv.get(self.NAMESPACE, scope_id)
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"Failed to read memory for {scope_id}") from e
        try:
            return MemoryRecord.from_dict(raw if isinstance(raw, dict) else None)
        except (TypeError, ValueError) as e:
            logger.warning("Corrupt memory record, treating as empty", scope_id=scope_id, error=str(e))
            return MemoryRecord()

    def _write(self, scope_id: str, record: MemoryRecord) -> None:
        try:
            self.kv.set(self.NAMESPACE, scope_id, record.to_dict())
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"Failed to write memory for {scope_id}") from e

    def _cap_history(self, history: list[HistoryEntry]) -> list[HistoryEntry]:
        if len(history) <= self.history_limit:
            return history
        return history[-self.history_limit:]

    def get(self, scope_id: str) -> MemoryRecord:
        return self._read(scope_id)

    def update(
        self,
        scope_id: str,
        *,
        history_entry: HistoryEntry | None = None,
        **fields: Any,
    ) -> MemoryRecord:
        """Merge *fields* into the record and optionally append one history entry.

        The cursor never moves backwards here; only ``wipe`` resets it.
        """
        unknown = set(fields) - _RECORD_FIELDS
        if unknown:
            raise ValueError(f"Unknown memory record fields: {sorted(unknown)}")
        record = self._read(scope_id)
        if "consolidated_cursor" in fields:
            new_cursor = int(fields["consolidated_cursor"])
            if new_cursor < record.consolidated_cursor:
                logger.warning(
                    "Ignoring backwards cursor update",
                    scope_id=scope_id,
                    cursor=record.consolidated_cursor,
                    requested=new_cursor,
                )
                fields["consolidated_cursor"] = record.consolidated_cursor
        for name, value in fields.items():
            setattr(record, name, value)
        if history_entry is not None:
            record.history = self._cap_history([*record.history, history_entry])
        record.last_updated = fields.get("last_updated") or utc_now_iso()
        self._write(scope_id, record)
        return record

    def append_history(self, scope_id: str, entry: HistoryEntry) -> MemoryRecord:
        record = self._read(scope_id)
        record.history = self._cap_history([*record.history, entry])
        self._write(scope_id, record)
        return record

    def wipe(self, scope_id: str) -> None:
        try:
            self.kv.delete(self.NAMESPACE, scope_id)
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"Failed to wipe memory for {scope_id}") from e
        logger.info("Memory wiped", scope_id=scope_id)
