"""Assemble the memory text injected ahead of each generation request."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal, Sequence

from chatmemory.config.schema import ConsolidationShape, InjectionConfig
from chatmemory.logging import get_logger
from chatmemory.memory.archive import ArchiveMatch, VectorArchive
from chatmemory.memory.budget import BudgetEstimator
from chatmemory.memory.types import EntityEntry, MemoryRecord, render_entities

logger = get_logger(__name__)

_TRUNCATED_NOTICE = "(... truncated)"
_WORD_RE = re.compile(r"\w+", re.UNICODE)


@dataclass(frozen=True)
class Injection:
    text: str
    position: Literal["before_prompt", "after_scenario", "in_chat"]
    depth: int

    @property
    def is_empty(self) -> bool:
        return not self.text


class ContextAssembler:
    """
    Build injection blocks in the configured order.

    ``render`` is pure: identical inputs give identical output.
    """

    def __init__(
        self,
        config: InjectionConfig | None = None,
        *,
        shape: ConsolidationShape = "rolling",
        estimator: BudgetEstimator | None = None,
        archive: VectorArchive | None = None,
    ) -> None:
        self.config = config or InjectionConfig()
        self.shape = shape
        self.estimator = estimator or BudgetEstimator()
        self.archive = archive

    def _select_entities(self, record: MemoryRecord, query: str | None) -> list[EntityEntry]:
        entries = list(record.entities.values())
        if not self.config.entity_keyword_filter or not query:
            return entries
        words = {w.casefold() for w in _WORD_RE.findall(query)}
        haystack = query.casefold()
        selected: list[EntityEntry] = []
        for entry in entries:
            triggers = {entry.display_name.casefold(), *entry.keywords}
            # Entries without keywords are always active.
            if not entry.keywords or any(t in words or (" " in t and t in haystack) for t in triggers):
                selected.append(entry)
        return selected

    def _fit_entities(self, entries: Sequence[EntityEntry]) -> str:
        budget = self.config.max_memory_tokens
        kept: list[EntityEntry] = []
        used = 0
        for entry in entries:
            cost = self.estimator.estimate_tokens(render_entities([entry])) + 1
            if kept and used + cost > budget:
                return render_entities(kept) + "\n" + _TRUNCATED_NOTICE
            kept.append(entry)
            used += cost
        text = render_entities(kept)
        if self.estimator.estimate_tokens(text) > budget:
            return self.estimator.truncate_to_tokens(text, budget, marker="\n" + _TRUNCATED_NOTICE)
        return text

    def _memory_block(self, record: MemoryRecord, query: str | None) -> str:
        cfg = self.config
        if self.shape == "entities":
            body = self._fit_entities(self._select_entities(record, query))
            header = cfg.entities_header
        else:
            body = record.rolling_summary.strip()
            if body and self.estimator.estimate_tokens(body) > cfg.max_memory_tokens:
                body = self.estimator.truncate_to_tokens(body, cfg.max_memory_tokens)
            header = cfg.memory_header
        return f"{header}\n{body}" if body else ""

    def _retrieved_block(self, matches: Sequence[ArchiveMatch] | None) -> str:
        if not matches:
            return ""
        lines = [f"- {m.entry.text}" for m in matches]
        return f"{self.config.retrieved_header}\n" + "\n".join(lines)

    def _message_summaries_block(self, record: MemoryRecord) -> str:
        if not record.message_summaries:
            return ""
        budget = self.config.max_summary_tokens
        kept: list[str] = []
        used = 0
        # Newest first while budgeting, rendered oldest first.
        for index in sorted(record.message_summaries, reverse=True):
            line = f"- {record.message_summaries[index]}"
            cost = self.estimator.estimate_tokens(line) + 1
            if kept and used + cost > budget:
                break
            kept.append(line)
            used += cost
        kept.reverse()
        return f"{self.config.message_summaries_header}\n" + "\n".join(kept)

    def render(
        self,
        record: MemoryRecord,
        matches: Sequence[ArchiveMatch] | None = None,
        query: str | None = None,
    ) -> str:
        cfg = self.config
        if not cfg.enabled:
            return ""
        if record.consolidated_cursor < cfg.min_cursor_before_injection:
            return ""
        blocks: list[str] = []
        for name in cfg.order:
            if name == "memory":
                block = self._memory_block(record, query)
            elif name == "retrieved":
                block = self._retrieved_block(matches)
            else:
                block = self._message_summaries_block(record)
            if block:
                blocks.append(block)
        return cfg.separator.join(blocks)

    async def build_injection(self, scope_id: str, record: MemoryRecord, query: str | None = None) -> Injection:
        matches: list[ArchiveMatch] = []
        if (
            query
            and self.config.enabled
            and "retrieved" in self.config.order
            and self.archive is not None
            and self.archive.enabled
        ):
            matches = await self.archive.retrieve(scope_id, query)
            logger.debug("Archive matches for injection", scope_id=scope_id, matches=len(matches))
        text = self.render(record, matches, query)
        return Injection(text=text, position=self.config.position, depth=self.config.depth)
