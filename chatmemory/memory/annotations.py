"""Per-message summary annotations keyed by message index."""

from __future__ import annotations

import asyncio
from typing import Callable, Sequence

from chatmemory.config.schema import AnnotationConfig
from chatmemory.errors import GenerationError
from chatmemory.logging import get_logger
from chatmemory.memory.cleaner import clean
from chatmemory.memory.consolidation import render_prompt
from chatmemory.memory.coordinator import ConsolidationCoordinator
from chatmemory.memory.parser import strip_response_artifacts
from chatmemory.memory.store import MemoryStore
from chatmemory.memory.types import GenerateFn, GenerationOptions, Message

logger = get_logger(__name__)


class MessageAnnotator:
    """Summarize individual messages, ``batch_size`` per run, oldest first."""

    def __init__(
        self,
        store: MemoryStore,
        generate: GenerateFn,
        config: AnnotationConfig | None = None,
        *,
        coordinator: ConsolidationCoordinator | None = None,
        cleaner: Callable[[object], str] = clean,
    ) -> None:
        self.store = store
        self.generate = generate
        self.config = config or AnnotationConfig()
        self.coordinator = coordinator or ConsolidationCoordinator()
        self.cleaner = cleaner

    @staticmethod
    def _guard_key(scope_id: str) -> str:
        return f"{scope_id}#annotations"

    def eligible(self, messages: Sequence[Message], annotated: set[int]) -> list[Message]:
        cfg = self.config
        limit = max(0, len(messages) - cfg.message_lag)
        out: list[Message] = []
        for m in messages[:limit]:
            if m.index in annotated:
                continue
            if not m.matches_filters(
                include_user=cfg.include_user_messages,
                include_character=cfg.include_character_messages,
                include_system=cfg.include_system_messages,
                include_hidden=cfg.include_hidden_messages,
            ):
                continue
            if self.cleaner(m.text):
                out.append(m)
        return out

    async def _summarize(self, message: Message) -> str | None:
        gen = self.config.generation
        prompt = render_prompt(self.config.prompt_template, {"message": self.cleaner(message.text)})
        options = GenerationOptions(
            max_tokens=gen.max_tokens,
            temperature=gen.temperature,
            stop_sequences=tuple(gen.stop_sequences),
        )
        try:
            raw = await asyncio.wait_for(self.generate(prompt, options), timeout=gen.timeout)
        except asyncio.TimeoutError:
            logger.warning("Message summary timed out", index=message.index, timeout=gen.timeout)
            return None
        except Exception as e:
            logger.warning(
                "Message summary failed",
                index=message.index,
                error_type=type(e).__name__,
                generation_error=isinstance(e, GenerationError),
            )
            return None
        summary = strip_response_artifacts(raw, ("SUMMARY:",))
        return summary or None

    async def annotate(self, scope_id: str, messages: Sequence[Message]) -> int:
        """Annotate up to ``batch_size`` messages. Returns the number stored."""
        if not self.config.enabled:
            return 0
        key = self._guard_key(scope_id)
        if not self.coordinator.try_begin(key):
            return 0
        epoch = self.coordinator.epoch(scope_id)
        try:
            record = self.store.get(scope_id)
            batch = self.eligible(messages, set(record.message_summaries))[: self.config.batch_size]
            if not batch:
                return 0
            produced: dict[int, str] = {}
            for message in batch:
                summary = await self._summarize(message)
                if summary:
                    produced[message.index] = summary
            if not produced:
                return 0

            async def _write() -> bool:
                if self.coordinator.epoch(scope_id) != epoch:
                    return False
                current = self.store.get(scope_id)
                current.message_summaries.update(produced)
                self.store.update(scope_id, message_summaries=current.message_summaries)
                return True

            if not await self.coordinator.run_locked(scope_id, _write):
                logger.warning("Message summaries discarded; scope was wiped", scope_id=scope_id)
                return 0
            logger.info("Message summaries stored", scope_id=scope_id, count=len(produced), attempted=len(batch))
            return len(produced)
        finally:
            self.coordinator.finish(key)
