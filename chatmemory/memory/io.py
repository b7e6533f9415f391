"""Key/value persistence adapters with atomic file semantics."""

from __future__ import annotations

import json
import threading
from copy import deepcopy
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from chatmemory.errors import StoreError
from chatmemory.logging import get_logger
from chatmemory.utils.helpers import atomic_write_text

logger = get_logger(__name__)

SCOPE_KINDS = frozenset({"chat", "character"})


def scope_key(kind: str, ident: str) -> str:
    """Build a scope id such as ``chat:abc`` or ``character:Seraphina``."""
    if kind not in SCOPE_KINDS:
        raise ValueError(f"Unknown scope kind: {kind!r}")
    return f"{kind}:{ident}"


@runtime_checkable
class KeyValueStore(Protocol):
    """Namespaced JSON-value store supplied by the host."""

    def get(self, namespace: str, key: str, default: Any = None) -> Any: ...

    def set(self, namespace: str, key: str, value: Any) -> None: ...

    def merge(self, namespace: str, key: str, partial: dict[str, Any]) -> dict[str, Any]: ...

    def delete(self, namespace: str, key: str) -> None: ...


class InMemoryKeyValueStore:
    """Process-local store; values are deep-copied in and out."""

    def __init__(self) -> None:
        self._data: dict[str, dict[str, Any]] = {}

    def get(self, namespace: str, key: str, default: Any = None) -> Any:
        bucket = self._data.get(namespace, {})
        if key not in bucket:
            return default
        return deepcopy(bucket[key])

    def set(self, namespace: str, key: str, value: Any) -> None:
        self._data.setdefault(namespace, {})[key] = deepcopy(value)

    def merge(self, namespace: str, key: str, partial: dict[str, Any]) -> dict[str, Any]:
        current = self.get(namespace, key) or {}
        if not isinstance(current, dict):
            raise StoreError(f"Cannot merge into non-object value at {namespace}/{key}")
        current.update(deepcopy(partial))
        self.set(namespace, key, current)
        return deepcopy(current)

    def delete(self, namespace: str, key: str) -> None:
        self._data.get(namespace, {}).pop(key, None)

    def keys(self, namespace: str) -> list[str]:
        return sorted(self._data.get(namespace, {}))


class JsonFileKeyValueStore(InMemoryKeyValueStore):
    """Single JSON document on disk, rewritten atomically on every write."""

    def __init__(self, path: Path) -> None:
        super().__init__()
        self.path = path
        self._write_lock = threading.Lock()
        self._data = self._load()

    def _load(self) -> dict[str, dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StoreError(f"Failed to read store file {self.path}") from e
        if not isinstance(data, dict):
            raise StoreError(f"Store file root must be an object: {self.path}")
        return {ns: dict(bucket) for ns, bucket in data.items() if isinstance(bucket, dict)}

    def _flush(self, data: dict[str, dict[str, Any]]) -> None:
        payload = json.dumps(data, ensure_ascii=False, indent=2, sort_keys=True)
        try:
            atomic_write_text(self.path, payload + "\n", encoding="utf-8")
        except OSError as e:
            logger.warning("Failed to write store file", file=str(self.path), error=str(e))
            raise StoreError(f"Failed to write store file {self.path}") from e

    def _staged(self) -> dict[str, dict[str, Any]]:
        # Stored values are never mutated in place, so copying the buckets is enough.
        return {ns: dict(bucket) for ns, bucket in self._data.items()}

    def set(self, namespace: str, key: str, value: Any) -> None:
        with self._write_lock:
            data = self._staged()
            data.setdefault(namespace, {})[key] = deepcopy(value)
            self._flush(data)
            self._data = data

    def delete(self, namespace: str, key: str) -> None:
        with self._write_lock:
            data = self._staged()
            data.get(namespace, {}).pop(key, None)
            self._flush(data)
            self._data = data
