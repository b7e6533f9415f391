"""Data model for conversation memory."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Literal, Sequence, TypeAlias

MessageRole: TypeAlias = Literal["user", "character", "system"]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def normalize_entity_key(title: str) -> str:
    """Lookup key for an entity title: case-folded, whitespace collapsed."""
    return " ".join(title.split()).casefold()


@dataclass
class Message:
    """
    A chat message owned by the host.

    The engine never rewrites ``text``; it only sets ``excluded_from_context``.
    """

    index: int
    speaker: str
    text: str
    role: MessageRole = "user"
    render_flags: dict[str, Any] = field(default_factory=dict)
    excluded_from_context: bool = False

    @property
    def hidden(self) -> bool:
        return bool(self.render_flags.get("hidden"))

    def matches_filters(
        self,
        *,
        include_user: bool,
        include_character: bool,
        include_system: bool,
        include_hidden: bool,
    ) -> bool:
        """True if the role and hidden flag pass the include_* switches."""
        if self.hidden and not include_hidden:
            return False
        if self.role == "user":
            return include_user
        if self.role == "character":
            return include_character
        return include_system


@dataclass
class EntityEntry:
    display_name: str
    keywords: set[str] = field(default_factory=set)
    content: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "display_name": self.display_name,
            "keywords": sorted(self.keywords),
            "content": self.content,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EntityEntry:
        return cls(
            display_name=str(data.get("display_name", "")),
            keywords={str(k).lower() for k in data.get("keywords") or [] if str(k).strip()},
            content=str(data.get("content", "")),
        )


@dataclass
class HistoryEntry:
    summary: str
    timestamp: str
    message_count: int

    def to_dict(self) -> dict[str, Any]:
        return {"summary": self.summary, "timestamp": self.timestamp, "message_count": self.message_count}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HistoryEntry:
        return cls(
            summary=str(data.get("summary", "")),
            timestamp=str(data.get("timestamp", "")),
            message_count=int(data.get("message_count", 0)),
        )


@dataclass
class MemoryRecord:
    """Consolidated memory for one conversation scope."""

    rolling_summary: str = ""
    entities: dict[str, EntityEntry] = field(default_factory=dict)
    consolidated_cursor: int = 0
    last_updated: str | None = None
    history: list[HistoryEntry] = field(default_factory=list)
    message_summaries: dict[int, str] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.rolling_summary and not self.entities and not self.message_summaries

    def to_dict(self) -> dict[str, Any]:
        return {
            "rolling_summary": self.rolling_summary,
            "entities": {key: entry.to_dict() for key, entry in self.entities.items()},
            "consolidated_cursor": self.consolidated_cursor,
            "last_updated": self.last_updated,
            "history": [h.to_dict() for h in self.history],
            # JSON object keys must be strings
            "message_summaries": {str(k): v for k, v in sorted(self.message_summaries.items())},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> MemoryRecord:
        if not data:
            return cls()
        return cls(
            rolling_summary=str(data.get("rolling_summary", "")),
            entities={
                str(key): EntityEntry.from_dict(value)
                for key, value in (data.get("entities") or {}).items()
                if isinstance(value, dict)
            },
            consolidated_cursor=max(0, int(data.get("consolidated_cursor", 0))),
            last_updated=data.get("last_updated"),
            history=[HistoryEntry.from_dict(h) for h in data.get("history") or [] if isinstance(h, dict)],
            message_summaries={
                int(k): str(v) for k, v in (data.get("message_summaries") or {}).items()
            },
        )


@dataclass
class ArchiveEntry:
    text: str
    vector: list[float]
    timestamp: str
    source_index: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "vector": list(self.vector),
            "timestamp": self.timestamp,
            "source_index": self.source_index,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArchiveEntry:
        source_index = data.get("source_index")
        return cls(
            text=str(data.get("text", "")),
            vector=[float(x) for x in data.get("vector") or []],
            timestamp=str(data.get("timestamp", "")),
            source_index=int(source_index) if source_index is not None else None,
        )


@dataclass(frozen=True)
class GenerationOptions:
    max_tokens: int
    temperature: float
    stop_sequences: tuple[str, ...] = ()


GenerateFn: TypeAlias = Callable[[str, GenerationOptions], Awaitable[str]]
EmbedFn: TypeAlias = Callable[[str], Awaitable[Sequence[float]]]
MessageSource: TypeAlias = Callable[[str], Sequence[Message]]
TitleNormalizer: TypeAlias = Callable[[str], str]


def render_entities(entities: Iterable[EntityEntry]) -> str:
    """Plain-text entity listing shared by prompts and injection."""
    blocks: list[str] = []
    for entry in entities:
        header = f"[{entry.display_name}]"
        if entry.keywords:
            header += f" (keywords: {', '.join(sorted(entry.keywords))})"
        blocks.append(f"{header}\n{entry.content}".rstrip())
    return "\n\n".join(blocks)
