"""Decide which raw messages can be left out of the next generation request."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Sequence

from chatmemory.config.schema import RetentionConfig
from chatmemory.logging import get_logger
from chatmemory.memory.archive import VectorArchive
from chatmemory.memory.budget import BudgetEstimator
from chatmemory.memory.cleaner import clean
from chatmemory.memory.coordinator import lock_is_free
from chatmemory.memory.types import Message

logger = get_logger(__name__)


@dataclass
class RetentionResult:
    excluded: set[int] = field(default_factory=set)
    newly_excluded: list[int] = field(default_factory=list)
    restored: list[int] = field(default_factory=list)
    archived: list[int] = field(default_factory=list)


class RetentionController:
    """
    Prune old messages from context by token budget.

    Exclusion is advisory: only the message's ``excluded_from_context`` flag is
    touched, never its text. The most recent ``buffer`` consolidated messages and
    every unconsolidated message always stay visible.
    """

    def __init__(
        self,
        config: RetentionConfig | None = None,
        *,
        estimator: BudgetEstimator | None = None,
        archive: VectorArchive | None = None,
        cleaner: Callable[[object], str] = clean,
    ) -> None:
        self.config = config or RetentionConfig()
        self.estimator = estimator or BudgetEstimator()
        self.archive = archive
        self.cleaner = cleaner
        self._locks: dict[str, asyncio.Lock] = {}

    def compute_exclusions(
        self,
        messages: Sequence[Message],
        cursor: int,
        token_budget: int | None = None,
        *,
        buffer: int | None = None,
    ) -> set[int]:
        """Return the ``index`` values of messages that may be left out of context."""
        if not messages:
            return set()
        budget = self.config.token_budget if token_budget is None else token_budget
        keep_buffer = self.config.buffer if buffer is None else buffer
        cursor = max(0, min(cursor, len(messages)))

        total = 0
        cutoff = -1
        for pos in range(len(messages) - 1, -1, -1):
            total += self.estimator.estimate_tokens(self.cleaner(messages[pos].text))
            if total > budget:
                cutoff = pos
                break
        if cutoff < 0:
            return set()

        # Positions at or after cursor - buffer are never excluded.
        protected_from = max(0, cursor - keep_buffer)
        boundary = min(cutoff, protected_from - 1)
        return {messages[pos].index for pos in range(boundary + 1)}

    async def apply(
        self,
        scope_id: str,
        messages: Sequence[Message],
        cursor: int,
        token_budget: int | None = None,
    ) -> RetentionResult:
        """Set exclusion flags and archive newly excluded messages once.

        Calls for the same scope are serialized.
        """
        lock = self._locks.setdefault(scope_id, asyncio.Lock())
        try:
            async with lock:
                return await self._apply(scope_id, messages, cursor, token_budget)
        finally:
            if lock_is_free(lock):
                self._locks.pop(scope_id, None)

    async def _apply(
        self,
        scope_id: str,
        messages: Sequence[Message],
        cursor: int,
        token_budget: int | None,
    ) -> RetentionResult:
        result = RetentionResult()
        if not self.config.enabled:
            for m in messages:
                if m.excluded_from_context:
                    m.excluded_from_context = False
                    result.restored.append(m.index)
            return result

        result.excluded = self.compute_exclusions(messages, cursor, token_budget)
        archive_enabled = bool(self.config.archive_excluded and self.archive is not None and self.archive.enabled)
        for m in messages:
            should_exclude = m.index in result.excluded
            if should_exclude and not m.excluded_from_context:
                if archive_enabled and not self.archive.has_source(scope_id, m.index):
                    text = self.cleaner(m.text)
                    if text:
                        entry = await self.archive.archive(scope_id, f"{m.speaker}: {text}", source_index=m.index)
                        if entry is not None:
                            result.archived.append(m.index)
                m.excluded_from_context = True
                result.newly_excluded.append(m.index)
            elif not should_exclude and m.excluded_from_context:
                m.excluded_from_context = False
                result.restored.append(m.index)

        if result.newly_excluded or result.restored:
            logger.debug(
                "Retention exclusions updated",
                scope_id=scope_id,
                excluded=len(result.excluded),
                newly_excluded=len(result.newly_excluded),
                restored=len(result.restored),
                archived=len(result.archived),
            )
        return result
