"""Consolidation engine: fold unconsolidated messages into long-term memory."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from typing import Callable, Literal, Sequence

from chatmemory.config.schema import ConsolidationConfig
from chatmemory.errors import (
    EmptyResultError,
    GenerationError,
    MemoryEngineError,
    StoreError,
    user_message_for,
)
from chatmemory.logging import get_logger
from chatmemory.memory.cleaner import clean
from chatmemory.memory.coordinator import ConsolidationCoordinator, ConsolidationState
from chatmemory.memory.events import (
    MEMORY_EVENT_CONSOLIDATION_FAILED,
    MEMORY_EVENT_CONSOLIDATION_STARTED,
    MEMORY_EVENT_MEMORY_UPDATED,
    MemoryEventEmitter,
)
from chatmemory.memory.parser import (
    EntityTriple,
    is_no_new_data,
    make_alias_normalizer,
    parse_entity_response,
    strip_response_artifacts,
)
from chatmemory.memory.store import MemoryStore
from chatmemory.memory.types import (
    EntityEntry,
    GenerateFn,
    GenerationOptions,
    HistoryEntry,
    MemoryRecord,
    Message,
    TitleNormalizer,
    normalize_entity_key,
    render_entities,
    utc_now_iso,
)

logger = get_logger(__name__)

OutcomeStatus = Literal["committed", "failed", "busy", "skipped", "discarded"]

_PLACEHOLDER_RE = re.compile(r"\{\{\s*(\w+)\s*\}\}")
_TRUNCATION_MARKER = "..."
_LOG_SAMPLE_CHARS = 160


def render_prompt(template: str, values: dict[str, str]) -> str:
    """Substitute ``{{name}}`` placeholders in one pass; unknown names are left as-is."""
    return _PLACEHOLDER_RE.sub(lambda m: values.get(m.group(1), m.group(0)), template)


def truncate_chars(text: str, max_chars: int, marker: str = _TRUNCATION_MARKER) -> str:
    if len(text) <= max_chars:
        return text
    return text[: max(0, max_chars - len(marker))].rstrip() + marker


def merge_entity(existing: EntityEntry, content: str, keywords: set[str]) -> bool:
    """Append *content* unless already contained and union keywords. Returns True if changed."""
    changed = False
    new_keywords = {k.lower() for k in keywords} - existing.keywords
    if new_keywords:
        existing.keywords |= new_keywords
        changed = True
    fragment = content.strip()
    if fragment and fragment.casefold() not in existing.content.casefold():
        existing.content = f"{existing.content}\n{fragment}" if existing.content else fragment
        changed = True
    return changed


@dataclass
class ConsolidationOutcome:
    scope_id: str
    status: OutcomeStatus
    cursor: int
    error_kind: str | None = None
    user_message: str | None = None
    generated: bool = False
    no_new_data: bool = False
    entities_changed: list[str] = field(default_factory=list)

    @property
    def committed(self) -> bool:
        return self.status == "committed"


@dataclass
class _ParsedResult:
    summary: str = ""
    narrative: str = ""
    triples: list[EntityTriple] = field(default_factory=list)
    discarded: int = 0
    no_new_data: bool = False


@dataclass
class _RunContext:
    scope_id: str
    record: MemoryRecord
    snapshot_len: int
    pending: int
    epoch: int
    forced: bool
    new_lines: str = ""
    parsed: _ParsedResult | None = None
    entities_changed: list[str] = field(default_factory=list)


class ConsolidationEngine:
    """
    Per-scope consolidation state machine.

    IDLE -> TRIGGERED -> GENERATING -> PARSING -> COMMITTED | FAILED -> IDLE

    At most one run is in flight per scope. A trigger that finds the scope busy is
    dropped; the next qualifying message retries with an up-to-date pending count.
    """

    def __init__(
        self,
        store: MemoryStore,
        generate: GenerateFn,
        config: ConsolidationConfig | None = None,
        *,
        coordinator: ConsolidationCoordinator | None = None,
        events: MemoryEventEmitter | None = None,
        title_normalizer: TitleNormalizer | None = None,
        cleaner: Callable[[object], str] = clean,
    ) -> None:
        self.store = store
        self.generate = generate
        self.config = config or ConsolidationConfig()
        self.coordinator = coordinator or ConsolidationCoordinator()
        self.events = events or MemoryEventEmitter()
        self.title_normalizer = title_normalizer or make_alias_normalizer(
            self.config.subject_name, self.config.subject_aliases
        )
        self.cleaner = cleaner

    def state(self, scope_id: str) -> ConsolidationState:
        return self.coordinator.state(scope_id)

    def snapshot_length(self, message_count: int) -> int:
        return max(0, message_count - self.config.message_lag)

    def pending_count(self, cursor: int, message_count: int) -> int:
        return max(0, self.snapshot_length(message_count) - cursor)

    def should_trigger(self, scope_id: str, cursor: int, message_count: int) -> bool:
        return (
            self.config.enabled
            and self.coordinator.is_idle(scope_id)
            and self.pending_count(cursor, message_count) >= self.config.threshold
        )

    def format_new_lines(self, messages: Sequence[Message]) -> str:
        cfg = self.config
        lines: list[str] = []
        for m in messages:
            if not m.matches_filters(
                include_user=cfg.include_user_messages,
                include_character=cfg.include_character_messages,
                include_system=cfg.include_system_messages,
                include_hidden=cfg.include_hidden_messages,
            ):
                continue
            text = self.cleaner(m.text)
            if not text:
                continue
            lines.append(f"{m.speaker}: {text}")
        return "\n".join(lines)

    def build_prompt(self, record: MemoryRecord, new_lines: str) -> str:
        cfg = self.config
        if cfg.shape == "entities":
            existing = render_entities(record.entities.values())
        else:
            existing = record.rolling_summary
        return render_prompt(
            cfg.resolved_prompt_template(),
            {
                "existing_memory": existing or "(empty)",
                "new_lines": new_lines,
                "max_words": str(cfg.max_words),
                "delimiter": cfg.delimiter,
                "subject": cfg.subject_name or "the main character",
            },
        )

    async def run(
        self,
        scope_id: str,
        messages: Sequence[Message],
        *,
        force: bool = False,
    ) -> ConsolidationOutcome:
        """Check the trigger and, if it fires, consolidate. Never raises."""
        if not self.config.enabled and not force:
            return ConsolidationOutcome(scope_id=scope_id, status="skipped", cursor=0)
        if not self.coordinator.is_idle(scope_id):
            logger.debug("Consolidation already in flight, dropping trigger", scope_id=scope_id)
            return ConsolidationOutcome(scope_id=scope_id, status="busy", cursor=0)

        try:
            record = self.store.get(scope_id)
        except StoreError:
            logger.exception("Failed to read memory before consolidation", scope_id=scope_id)
            return ConsolidationOutcome(
                scope_id=scope_id,
                status="failed",
                cursor=0,
                error_kind=StoreError.kind,
                user_message=user_message_for(StoreError.kind),
            )

        snapshot_len = self.snapshot_length(len(messages))
        cursor = record.consolidated_cursor
        pending = self.pending_count(cursor, len(messages))
        required = 1 if force else self.config.threshold
        if pending < required:
            return ConsolidationOutcome(scope_id=scope_id, status="skipped", cursor=cursor)

        # Check-and-set happens before the first await.
        if not self.coordinator.try_begin(scope_id):
            return ConsolidationOutcome(scope_id=scope_id, status="busy", cursor=cursor)

        ctx = _RunContext(
            scope_id=scope_id,
            record=record,
            snapshot_len=snapshot_len,
            pending=pending,
            epoch=self.coordinator.epoch(scope_id),
            forced=force,
        )
        try:
            return await self._consolidate(ctx, messages)
        except MemoryEngineError as e:
            return await self._fail(ctx, e)
        except Exception as e:
            logger.exception("Memory consolidation failed unexpectedly", scope_id=scope_id, error_type=type(e).__name__)
            return await self._fail(ctx, MemoryEngineError(str(e)), log=False)
        finally:
            self.coordinator.finish(scope_id)

    async def _consolidate(self, ctx: _RunContext, messages: Sequence[Message]) -> ConsolidationOutcome:
        logger.info(
            "Memory consolidation",
            scope_id=ctx.scope_id,
            pending=ctx.pending,
            cursor=ctx.record.consolidated_cursor,
            snapshot_len=ctx.snapshot_len,
            shape=self.config.shape,
            forced=ctx.forced,
        )
        await self.events.emit(
            MEMORY_EVENT_CONSOLIDATION_STARTED,
            ctx.scope_id,
            pending=ctx.pending,
            snapshot_len=ctx.snapshot_len,
            forced=ctx.forced,
        )

        ctx.new_lines = self.format_new_lines(messages[ctx.record.consolidated_cursor:ctx.snapshot_len])
        if not ctx.new_lines:
            # Nothing useful to summarize; just mark the messages as processed.
            ctx.parsed = _ParsedResult(no_new_data=True)
            return await self._commit(ctx, generated=False)

        prompt = self.build_prompt(ctx.record, ctx.new_lines)
        self.coordinator.transition(ctx.scope_id, ConsolidationState.GENERATING)
        raw = await self._generate(prompt)

        self.coordinator.transition(ctx.scope_id, ConsolidationState.PARSING)
        ctx.parsed = self._parse(raw)
        if ctx.parsed.narrative:
            logger.info(
                "Memory consolidation narrative note",
                scope_id=ctx.scope_id,
                note=truncate_chars(ctx.parsed.narrative, _LOG_SAMPLE_CHARS),
            )
        if ctx.parsed.discarded:
            logger.warning(
                "Memory consolidation discarded malformed entity blocks",
                scope_id=ctx.scope_id,
                discarded=ctx.parsed.discarded,
                kept=len(ctx.parsed.triples),
            )
        return await self._commit(ctx, generated=True)

    async def _generate(self, prompt: str) -> str:
        gen = self.config.generation
        options = GenerationOptions(
            max_tokens=gen.max_tokens,
            temperature=gen.temperature,
            stop_sequences=tuple(gen.stop_sequences),
        )
        try:
            raw = await asyncio.wait_for(self.generate(prompt, options), timeout=gen.timeout)
        except asyncio.TimeoutError as e:
            raise GenerationError(f"generation timed out after {gen.timeout}s") from e
        except MemoryEngineError:
            raise
        except Exception as e:
            raise GenerationError(f"{type(e).__name__}: {e}") from e
        if raw is None:
            raise EmptyResultError("generation returned no text")
        return str(raw)

    def _parse(self, raw: str) -> _ParsedResult:
        cfg = self.config
        text = strip_response_artifacts(raw, cfg.strip_prefixes)
        if not text:
            raise EmptyResultError("empty generation result")
        if is_no_new_data(text, cfg.no_new_data_sentinels):
            return _ParsedResult(no_new_data=True)
        if cfg.shape == "rolling":
            return _ParsedResult(summary=text)

        parsed = parse_entity_response(text, cfg.delimiter)
        result = _ParsedResult(
            narrative=parsed.narrative,
            triples=parsed.triples,
            discarded=parsed.discarded,
        )
        if not parsed.triples:
            if any(is_no_new_data(line, cfg.no_new_data_sentinels) for line in text.splitlines()):
                result.no_new_data = True
                return result
            raise EmptyResultError(f"no usable entity blocks ({parsed.discarded} discarded)")
        return result

    async def _commit(self, ctx: _RunContext, *, generated: bool) -> ConsolidationOutcome:
        async def _write() -> MemoryRecord | None:
            if self.coordinator.epoch(ctx.scope_id) != ctx.epoch:
                return None
            # Re-read so fields written by other writers (annotations) survive.
            current = self.store.get(ctx.scope_id)
            return self._step_apply(ctx, current)

        record = await self.coordinator.run_locked(ctx.scope_id, _write)
        if record is None:
            logger.warning(
                "Memory consolidation result discarded; scope was wiped during generation",
                scope_id=ctx.scope_id,
            )
            return ConsolidationOutcome(scope_id=ctx.scope_id, status="discarded", cursor=0, generated=generated)

        self.coordinator.transition(ctx.scope_id, ConsolidationState.COMMITTED)
        parsed = ctx.parsed or _ParsedResult()
        logger.info(
            "Memory consolidation done",
            scope_id=ctx.scope_id,
            snapshot_len=ctx.snapshot_len,
            consolidated_cursor=record.consolidated_cursor,
            no_new_data=parsed.no_new_data,
            entities_changed=len(ctx.entities_changed),
        )
        event_fields: dict[str, object] = {
            "shape": self.config.shape,
            "consolidated_cursor": record.consolidated_cursor,
            "no_new_data": parsed.no_new_data,
        }
        if self.config.shape == "entities":
            event_fields["entities_changed"] = list(ctx.entities_changed)
        else:
            event_fields["summary_chars"] = len(record.rolling_summary)
        await self.events.emit(MEMORY_EVENT_MEMORY_UPDATED, ctx.scope_id, **event_fields)
        return ConsolidationOutcome(
            scope_id=ctx.scope_id,
            status="committed",
            cursor=record.consolidated_cursor,
            generated=generated,
            no_new_data=parsed.no_new_data,
            entities_changed=list(ctx.entities_changed),
        )

    def _step_apply(self, ctx: _RunContext, current: MemoryRecord) -> MemoryRecord:
        parsed = ctx.parsed or _ParsedResult(no_new_data=True)
        cursor = max(current.consolidated_cursor, ctx.snapshot_len)
        if parsed.no_new_data:
            return self.store.update(ctx.scope_id, consolidated_cursor=cursor)
        if self.config.shape == "rolling":
            return self._step_rolling(ctx, parsed, cursor)
        return self._step_entities(ctx, parsed, current, cursor)

    def _step_rolling(self, ctx: _RunContext, parsed: _ParsedResult, cursor: int) -> MemoryRecord:
        summary = truncate_chars(parsed.summary, self.config.max_chars)
        if len(summary) < len(parsed.summary):
            logger.warning(
                "Rolling summary truncated to budget",
                scope_id=ctx.scope_id,
                returned_chars=len(parsed.summary),
                max_chars=self.config.max_chars,
            )
        now = utc_now_iso()
        return self.store.update(
            ctx.scope_id,
            rolling_summary=summary,
            consolidated_cursor=cursor,
            last_updated=now,
            history_entry=HistoryEntry(summary=summary, timestamp=now, message_count=ctx.snapshot_len),
        )

    def _step_entities(
        self,
        ctx: _RunContext,
        parsed: _ParsedResult,
        current: MemoryRecord,
        cursor: int,
    ) -> MemoryRecord:
        entities = dict(current.entities)
        for triple in parsed.triples:
            title = self.title_normalizer(triple.name) or triple.name
            key = normalize_entity_key(title)
            existing = entities.get(key)
            if existing is None:
                entities[key] = EntityEntry(
                    display_name=title,
                    keywords={k.lower() for k in triple.keywords},
                    content=triple.content.strip(),
                )
                ctx.entities_changed.append(title)
            elif merge_entity(existing, triple.content, triple.keywords):
                ctx.entities_changed.append(existing.display_name)

        now = utc_now_iso()
        if parsed.narrative:
            history_summary = parsed.narrative
        elif ctx.entities_changed:
            history_summary = "Updated entries: " + ", ".join(ctx.entities_changed)
        else:
            history_summary = "No new facts."
        return self.store.update(
            ctx.scope_id,
            entities=entities,
            consolidated_cursor=cursor,
            last_updated=now,
            history_entry=HistoryEntry(
                summary=truncate_chars(history_summary, self.config.max_chars),
                timestamp=now,
                message_count=ctx.snapshot_len,
            ),
        )

    async def _fail(self, ctx: _RunContext, error: MemoryEngineError, *, log: bool = True) -> ConsolidationOutcome:
        state = self.coordinator.state(ctx.scope_id)
        if state in (ConsolidationState.TRIGGERED, ConsolidationState.GENERATING, ConsolidationState.PARSING):
            self.coordinator.transition(ctx.scope_id, ConsolidationState.FAILED)
        if log:
            logger.warning(
                "Memory consolidation failed; memory left unchanged",
                scope_id=ctx.scope_id,
                error_type=type(error).__name__,
                error_kind=error.kind,
                error=str(error),
            )
        message = user_message_for(error.kind)
        await self.events.emit(
            MEMORY_EVENT_CONSOLIDATION_FAILED,
            ctx.scope_id,
            error_kind=error.kind,
            user_message=message,
        )
        return ConsolidationOutcome(
            scope_id=ctx.scope_id,
            status="failed",
            cursor=ctx.record.consolidated_cursor,
            error_kind=error.kind,
            user_message=message,
        )
