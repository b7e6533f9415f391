"""Host-facing facade that wires the memory components together."""

from __future__ import annotations

import asyncio
from typing import Sequence

from chatmemory.config.schema import MemoryConfig
from chatmemory.errors import StoreError
from chatmemory.logging import get_logger
from chatmemory.memory.annotations import MessageAnnotator
from chatmemory.memory.archive import VectorArchive
from chatmemory.memory.budget import BudgetEstimator
from chatmemory.memory.consolidation import ConsolidationEngine, ConsolidationOutcome
from chatmemory.memory.coordinator import ConsolidationCoordinator, ConsolidationState
from chatmemory.memory.events import MEMORY_EVENT_MEMORY_WIPED, MemoryEventEmitter, MemoryEventListener
from chatmemory.memory.injection import ContextAssembler, Injection
from chatmemory.memory.io import KeyValueStore
from chatmemory.memory.retention import RetentionController, RetentionResult
from chatmemory.memory.store import MemoryStore
from chatmemory.memory.types import EmbedFn, GenerateFn, MemoryRecord, Message, MessageSource, TitleNormalizer

logger = get_logger(__name__)


class MemoryService:
    """
    One entry point per host event.

    Call ``on_new_message`` after every appended message and ``get_injection_text``
    before every generation request. All tunables come from ``config``.
    """

    def __init__(
        self,
        generate: GenerateFn,
        kv: KeyValueStore,
        config: MemoryConfig | None = None,
        *,
        get_messages: MessageSource | None = None,
        embed: EmbedFn | None = None,
        estimator: BudgetEstimator | None = None,
        title_normalizer: TitleNormalizer | None = None,
    ) -> None:
        self.config = config or MemoryConfig()
        self.get_messages = get_messages
        self.estimator = estimator or BudgetEstimator()
        self.coordinator = ConsolidationCoordinator()
        self.events = MemoryEventEmitter()
        self.store = MemoryStore(kv, history_limit=self.config.consolidation.history_limit)
        self.archive = VectorArchive(kv, embed, self.config.archive)
        self.engine = ConsolidationEngine(
            self.store,
            generate,
            self.config.consolidation,
            coordinator=self.coordinator,
            events=self.events,
            title_normalizer=title_normalizer,
        )
        self.retention = RetentionController(
            self.config.retention,
            estimator=self.estimator,
            archive=self.archive,
        )
        self.assembler = ContextAssembler(
            self.config.injection,
            shape=self.config.consolidation.shape,
            estimator=self.estimator,
            archive=self.archive,
        )
        self.annotator = MessageAnnotator(
            self.store,
            generate,
            self.config.annotations,
            coordinator=self.coordinator,
        )

    def _resolve_messages(self, scope_id: str, messages: Sequence[Message] | None) -> list[Message]:
        if messages is not None:
            return list(messages)
        if self.get_messages is None:
            raise ValueError("messages must be passed when no get_messages source is configured")
        return list(self.get_messages(scope_id))

    def state(self, scope_id: str) -> ConsolidationState:
        return self.coordinator.state(scope_id)

    def subscribe(self, listener: MemoryEventListener) -> None:
        self.events.subscribe(listener)

    def unsubscribe(self, listener: MemoryEventListener) -> None:
        self.events.unsubscribe(listener)

    async def on_new_message(
        self,
        scope_id: str,
        messages: Sequence[Message] | None = None,
    ) -> ConsolidationOutcome | None:
        """
        React to an appended message.

        Runs consolidation when the trigger fires (inline, or as a tracked task in
        background mode), then per-message annotations and retention. Returns the
        inline consolidation outcome, or None when consolidation was scheduled in
        the background. Never raises for engine failures.
        """
        msgs = self._resolve_messages(scope_id, messages)
        outcome: ConsolidationOutcome | None = None
        if self.config.consolidation.background:
            self._schedule_background(scope_id, msgs)
        else:
            outcome = await self.engine.run(scope_id, msgs)

        if self.config.annotations.enabled:
            try:
                await self.annotator.annotate(scope_id, msgs)
            except Exception:
                logger.exception("Message annotation failed", scope_id=scope_id)

        try:
            await self.apply_retention(scope_id, msgs)
        except Exception:
            logger.exception("Retention update failed", scope_id=scope_id)
        return outcome

    def _schedule_background(self, scope_id: str, messages: list[Message]) -> asyncio.Task | None:
        try:
            cursor = self.store.get(scope_id).consolidated_cursor
        except StoreError:
            logger.exception("Failed to read memory before scheduling consolidation", scope_id=scope_id)
            return None
        if not self.engine.should_trigger(scope_id, cursor, len(messages)):
            return None
        task = self.coordinator.start_background(scope_id, lambda: self.engine.run(scope_id, messages))
        if task is None:
            logger.debug("Background consolidation still running, dropping trigger", scope_id=scope_id)
        return task

    async def wait_idle(self, scope_id: str) -> None:
        """Wait for a background consolidation of *scope_id*, if one is running."""
        task = self.coordinator.tasks.get(scope_id)
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)

    async def apply_retention(self, scope_id: str, messages: Sequence[Message]) -> RetentionResult:
        cursor = self.store.get(scope_id).consolidated_cursor
        return await self.retention.apply(scope_id, messages, cursor)

    async def force_consolidate(
        self,
        scope_id: str,
        messages: Sequence[Message] | None = None,
    ) -> ConsolidationOutcome:
        """Consolidate now regardless of threshold. Drops the request if busy."""
        msgs = self._resolve_messages(scope_id, messages)
        return await self.engine.run(scope_id, msgs, force=True)

    def get_memory_snapshot(self, scope_id: str) -> MemoryRecord:
        """Fresh copy of the stored record. StoreError propagates."""
        return self.store.get(scope_id)

    async def wipe(self, scope_id: str) -> None:
        """Reset memory and archive for *scope_id*; in-flight results are discarded."""
        self.coordinator.bump_epoch(scope_id)
        await self.coordinator.cancel_inflight(scope_id)
        self.store.wipe(scope_id)
        self.archive.wipe(scope_id)
        logger.info("Memory wiped", scope_id=scope_id)
        await self.events.emit(MEMORY_EVENT_MEMORY_WIPED, scope_id)

    async def get_injection(self, scope_id: str, query: str | None = None) -> Injection:
        record = self.store.get(scope_id)
        return await self.assembler.build_injection(scope_id, record, query)

    async def get_injection_text(self, scope_id: str, query: str | None = None) -> str:
        injection = await self.get_injection(scope_id, query)
        return injection.text

    async def annotate(self, scope_id: str, messages: Sequence[Message] | None = None) -> int:
        msgs = self._resolve_messages(scope_id, messages)
        return await self.annotator.annotate(scope_id, msgs)

    async def archive_maintenance(self, scope_id: str) -> int:
        return await self.archive.maintenance(scope_id)
