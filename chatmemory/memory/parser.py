"""Tolerant parsing of consolidation responses.

Entity responses follow a small line grammar::

    response   := [narrative] [DELIMITER_LINE] block*
    block      := entry_line [keywords_line] [content_line continuation*]
    entry_line := "ENTRY:" name
    ...

Field labels are case-insensitive and may carry list/markdown decoration
(``- **ENTRY:** Alice``). A block missing its name or content is discarded;
parsing continues with the next ``ENTRY:`` line.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Literal

from chatmemory.errors import ParseError
from chatmemory.logging import get_logger
from chatmemory.memory.types import TitleNormalizer

logger = get_logger(__name__)

FieldName = Literal["entry", "keywords", "content"]

_FIELD_LINE_RE = re.compile(
    r"^[\s>*_#-]*(ENTRY|KEYWORDS|CONTENT)[\s*_]*:[\s*_]*(.*)$",
    re.IGNORECASE,
)
_KEYWORD_SPLIT_RE = re.compile(r"[,;|]")
_QUOTE_PAIRS = (('"', '"'), ("'", "'"), ("“", "”"), ("`", "`"))


@dataclass
class EntityTriple:
    name: str
    keywords: set[str]
    content: str


@dataclass
class ParsedEntityResponse:
    narrative: str = ""
    triples: list[EntityTriple] = field(default_factory=list)
    discarded: int = 0
    delimiter_found: bool = False


@dataclass
class _Token:
    kind: FieldName | Literal["text"]
    value: str
    line_no: int


def strip_response_artifacts(text: str | None, prefixes: Iterable[str] = ()) -> str:
    """Trim whitespace, wrapping quotes and leading labels such as ``UPDATED MEMORY:``."""
    if not text:
        return ""
    out = text.strip()
    lowered_prefixes = [p.lower() for p in prefixes if p]
    changed = True
    while changed and out:
        changed = False
        for opening, closing in _QUOTE_PAIRS:
            if len(out) < 2 or not (out.startswith(opening) and out.endswith(closing)):
                continue
            inner = out[len(opening):-len(closing)]
            # '"Hi," she said, "bye"' is two quoted spans, not one wrapped reply.
            if closing in inner:
                continue
            out = inner.strip()
            changed = True
        lower = out.lower()
        for prefix in lowered_prefixes:
            if lower.startswith(prefix):
                out = out[len(prefix):].strip()
                changed = True
                break
    return out


def is_no_new_data(text: str, sentinels: Iterable[str]) -> bool:
    """True when the whole response is one of the "nothing new" sentinels."""
    normalized = " ".join(text.strip().strip(".!*_`\"'").split()).upper()
    if not normalized:
        return False
    return any(normalized == " ".join(s.split()).upper() for s in sentinels if s)


def parse_keywords(raw: str) -> set[str]:
    """Lowercased, de-duplicated keywords from a comma/semicolon separated list."""
    out: set[str] = set()
    for part in _KEYWORD_SPLIT_RE.split(raw or ""):
        word = part.strip().strip("\"'`[]()").strip().lower()
        if word:
            out.add(word)
    return out


def _tokenize(lines: Iterable[str], start_line: int = 0) -> Iterator[_Token]:
    for offset, line in enumerate(lines):
        m = _FIELD_LINE_RE.match(line)
        if m:
            yield _Token(kind=m.group(1).lower(), value=m.group(2).strip(), line_no=start_line + offset)  # type: ignore[arg-type]
        else:
            yield _Token(kind="text", value=line.strip(), line_no=start_line + offset)


class _BlockBuilder:
    def __init__(self, line_no: int, name: str | None = None) -> None:
        self.line_no = line_no
        self.name = name
        self.keywords: set[str] = set()
        self.content_parts: list[str] | None = None

    def build(self) -> EntityTriple:
        name = (self.name or "").strip().strip("*_`\"'").strip()
        content = " ".join(p for p in (self.content_parts or []) if p).strip()
        if not name:
            raise ParseError(f"block at line {self.line_no} has no ENTRY name")
        if not content:
            raise ParseError(f"block '{name}' at line {self.line_no} has no CONTENT")
        return EntityTriple(name=name, keywords=self.keywords, content=content)


def _split_on_delimiter(lines: list[str], delimiter: str) -> tuple[list[str], list[str], bool]:
    target = delimiter.strip().lower()
    if target:
        for idx, line in enumerate(lines):
            if line.strip().lower() == target:
                return lines[:idx], lines[idx + 1:], True
    return [], lines, False


def parse_entity_response(text: str, delimiter: str) -> ParsedEntityResponse:
    """Parse a narrative preamble plus repeated ``ENTRY/KEYWORDS/CONTENT`` blocks.

    Without a delimiter line the whole response is scanned for blocks. Text lines
    before the first ``ENTRY:`` in that case are kept as the narrative.
    """
    lines = text.splitlines()
    preamble, body, found = _split_on_delimiter(lines, delimiter)
    result = ParsedEntityResponse(delimiter_found=found)
    narrative_parts = [line.strip() for line in preamble if line.strip()]

    current: _BlockBuilder | None = None

    def _flush() -> None:
        nonlocal current
        if current is None:
            return
        try:
            result.triples.append(current.build())
        except ParseError as e:
            result.discarded += 1
            logger.debug("Discarding malformed entity block", reason=str(e))
        current = None

    for token in _tokenize(body, start_line=len(preamble) + (1 if found else 0)):
        if token.kind == "entry":
            _flush()
            current = _BlockBuilder(token.line_no, token.value)
        elif token.kind == "keywords":
            if current is None:
                # KEYWORDS before any ENTRY: a nameless block, discarded on flush.
                current = _BlockBuilder(token.line_no)
            current.keywords |= parse_keywords(token.value)
        elif token.kind == "content":
            if current is None:
                current = _BlockBuilder(token.line_no)
            if current.content_parts is None:
                current.content_parts = []
            current.content_parts.append(token.value)
        else:
            if current is not None and current.content_parts is not None:
                current.content_parts.append(token.value)
            elif current is None and not found and token.value:
                narrative_parts.append(token.value)
    _flush()

    result.narrative = " ".join(narrative_parts).strip()
    return result


def make_alias_normalizer(subject_name: str | None, aliases: Iterable[str]) -> TitleNormalizer:
    """Map self-referential titles (``you``, ``she``...) to *subject_name*.

    Without a subject name the returned function only trims the title.
    """
    alias_set = {" ".join(a.split()).casefold() for a in aliases if a and a.strip()}
    canonical = (subject_name or "").strip()

    def _normalize(title: str) -> str:
        cleaned = " ".join((title or "").split())
        if canonical and cleaned.casefold() in alias_set:
            return canonical
        return cleaned

    return _normalize
