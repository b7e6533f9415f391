"""Memory engine components."""

from chatmemory.memory.archive import ArchiveMatch, VectorArchive
from chatmemory.memory.budget import BudgetEstimator
from chatmemory.memory.cleaner import clean
from chatmemory.memory.consolidation import ConsolidationEngine, ConsolidationOutcome
from chatmemory.memory.coordinator import ConsolidationCoordinator, ConsolidationState
from chatmemory.memory.events import MemoryEventEmitter
from chatmemory.memory.injection import ContextAssembler, Injection
from chatmemory.memory.io import InMemoryKeyValueStore, JsonFileKeyValueStore, KeyValueStore, scope_key
from chatmemory.memory.retention import RetentionController, RetentionResult
from chatmemory.memory.store import MemoryStore
from chatmemory.memory.types import (
    ArchiveEntry,
    EntityEntry,
    GenerationOptions,
    HistoryEntry,
    MemoryRecord,
    Message,
)

__all__ = [
    "ArchiveEntry",
    "ArchiveMatch",
    "BudgetEstimator",
    "ConsolidationCoordinator",
    "ConsolidationEngine",
    "ConsolidationOutcome",
    "ConsolidationState",
    "ContextAssembler",
    "EntityEntry",
    "GenerationOptions",
    "HistoryEntry",
    "InMemoryKeyValueStore",
    "Injection",
    "JsonFileKeyValueStore",
    "KeyValueStore",
    "MemoryEventEmitter",
    "MemoryRecord",
    "MemoryStore",
    "Message",
    "RetentionController",
    "RetentionResult",
    "VectorArchive",
    "clean",
    "scope_key",
]
