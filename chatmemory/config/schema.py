"""Configuration schema for the memory engine."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

ConsolidationShape = Literal["rolling", "entities"]
InjectionBlock = Literal["memory", "retrieved", "message_summaries"]
InjectionPosition = Literal["before_prompt", "after_scenario", "in_chat"]

DEFAULT_ROLLING_PROMPT = """You maintain the long-term memory of an ongoing roleplay conversation.
Rewrite the memory so it includes the important events, facts and relationships from the new lines.
Keep everything from the existing memory that still matters. Write plain prose, at most {{max_words}} words.
Reply with the full updated memory only. If the new lines add nothing, reply with NO_NEW_DATA.

## Existing memory
{{existing_memory}}

## New lines
{{new_lines}}"""

DEFAULT_ENTITIES_PROMPT = """You maintain structured memory entries for an ongoing roleplay conversation.
Read the new lines and record new facts about characters, places, items and events.
Refer to {{subject}} by name, never as "you" or by pronoun.

You may start with a one-paragraph note about the scene. Then write a line containing only
{{delimiter}}
followed by one block per subject:
ENTRY: <name>
KEYWORDS: <comma separated keywords>
CONTENT: <new facts only>

Do not repeat facts that are already in the existing entries. If there is nothing new, reply with NO_NEW_DATA.

## Existing entries
{{existing_memory}}

## New lines
{{new_lines}}"""

DEFAULT_MESSAGE_PROMPT = "Summarize the following message concisely in 1-2 sentences:\n\n{{message}}"


class GenerationConfig(BaseModel):
    max_tokens: int = Field(default=600, ge=1)
    temperature: float = Field(default=0.1, ge=0.0)
    stop_sequences: list[str] = Field(default_factory=list)
    timeout: float = Field(default=30.0, gt=0)


class ConsolidationConfig(BaseModel):
    enabled: bool = True
    shape: ConsolidationShape = "rolling"
    threshold: int = Field(default=5, ge=1)
    message_lag: int = Field(default=0, ge=0)
    prompt_template: str | None = None
    max_words: int = Field(default=300, ge=1)
    max_chars: int = Field(default=4000, ge=16)
    history_limit: int = Field(default=20, ge=1)
    include_user_messages: bool = True
    include_character_messages: bool = True
    include_system_messages: bool = False
    include_hidden_messages: bool = False
    delimiter: str = "### ENTRIES"
    no_new_data_sentinels: list[str] = Field(
        default_factory=lambda: ["NO_NEW_DATA", "NO NEW DATA", "NO NEW INFORMATION", "NOTHING NEW"]
    )
    strip_prefixes: list[str] = Field(
        default_factory=lambda: ["UPDATED MEMORY:", "MEMORY:", "SUMMARY:", "UPDATED SUMMARY:"]
    )
    subject_name: str | None = None
    subject_aliases: list[str] = Field(
        default_factory=lambda: ["you", "yourself", "i", "me", "myself", "he", "him", "she", "her", "they", "them"]
    )
    background: bool = False
    generation: GenerationConfig = Field(default_factory=GenerationConfig)

    def resolved_prompt_template(self) -> str:
        if self.prompt_template:
            return self.prompt_template
        return DEFAULT_ENTITIES_PROMPT if self.shape == "entities" else DEFAULT_ROLLING_PROMPT


class RetentionConfig(BaseModel):
    enabled: bool = True
    token_budget: int = Field(default=4000, ge=0)
    buffer: int = Field(default=4, ge=0)
    archive_excluded: bool = False


class ArchiveConfig(BaseModel):
    enabled: bool = False
    max_text_chars: int = Field(default=1000, ge=1)
    top_k: int = Field(default=3, ge=1)
    min_score: float = 0.35
    maintenance_concurrency: int = Field(default=4, ge=1)


class InjectionConfig(BaseModel):
    enabled: bool = True
    order: list[InjectionBlock] = Field(default_factory=lambda: ["memory", "retrieved", "message_summaries"])
    memory_header: str = "[Story so far]"
    entities_header: str = "[Known facts]"
    retrieved_header: str = "[Related past events]"
    message_summaries_header: str = "[Earlier messages]"
    separator: str = "\n\n"
    position: InjectionPosition = "after_scenario"
    depth: int = Field(default=2, ge=0)
    max_memory_tokens: int = Field(default=1500, ge=1)
    max_summary_tokens: int = Field(default=500, ge=1)
    entity_keyword_filter: bool = False
    min_cursor_before_injection: int = Field(default=0, ge=0)


class AnnotationConfig(BaseModel):
    enabled: bool = False
    prompt_template: str = DEFAULT_MESSAGE_PROMPT
    batch_size: int = Field(default=5, ge=1)
    message_lag: int = Field(default=0, ge=0)
    include_user_messages: bool = False
    include_character_messages: bool = True
    include_system_messages: bool = False
    include_hidden_messages: bool = False
    generation: GenerationConfig = Field(
        default_factory=lambda: GenerationConfig(max_tokens=150, temperature=0.1)
    )


class MemoryConfig(BaseModel):
    consolidation: ConsolidationConfig = Field(default_factory=ConsolidationConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    archive: ArchiveConfig = Field(default_factory=ArchiveConfig)
    injection: InjectionConfig = Field(default_factory=InjectionConfig)
    annotations: AnnotationConfig = Field(default_factory=AnnotationConfig)
    profiles: dict[str, dict[str, Any]] = Field(default_factory=dict)
    active_profile: str | None = None
