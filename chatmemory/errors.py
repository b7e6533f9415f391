"""Error taxonomy for the memory engine."""

from __future__ import annotations


class MemoryEngineError(Exception):
    """Base class for all memory engine failures."""

    kind = "error"


class GenerationError(MemoryEngineError):
    """Generation backend failed: network error, timeout or non-2xx reply."""

    kind = "generation"


class ParseError(MemoryEngineError):
    """A response fragment did not match the expected shape."""

    kind = "parse"


class EmptyResultError(MemoryEngineError):
    """Generation succeeded but produced no usable text."""

    kind = "empty_result"


class StoreError(MemoryEngineError):
    """Persistence layer failure."""

    kind = "store"


# User-facing notification text; never includes exception details.
USER_MESSAGES = {
    GenerationError.kind: "Memory update failed: the model did not respond. It will retry on the next message.",
    EmptyResultError.kind: "Memory update skipped: the model returned nothing usable. It will retry on the next message.",
    StoreError.kind: "Memory could not be saved. Check the storage backend.",
    MemoryEngineError.kind: "Memory update failed unexpectedly. It will retry on the next message.",
}


def user_message_for(kind: str) -> str:
    return USER_MESSAGES.get(kind, USER_MESSAGES[MemoryEngineError.kind])
