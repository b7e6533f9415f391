"""Strip structural noise from raw chat messages before they reach a prompt."""

from __future__ import annotations

import re

_CODE_FENCE_RE = re.compile(r"```.*?(?:```|$)", re.DOTALL)
_HTML_TAG_RE = re.compile(r"<[^<>]+>")
_WHITESPACE_RE = re.compile(r"\s+")

# Literal headers that open a stat/status block; the block runs to the next blank line.
DEFAULT_NOISE_HEADERS: tuple[str, ...] = (
    "Status:",
    "Stats:",
    "Character Stats:",
    "Inventory:",
    "[Status]",
    "[Stats]",
    "OOC:",
)


def _noise_section_re(headers: tuple[str, ...]) -> re.Pattern[str] | None:
    if not headers:
        return None
    alternatives = "|".join(re.escape(h) for h in headers)
    return re.compile(rf"(?im)^[ \t]*(?:{alternatives}).*?(?:\n[ \t]*\n|\Z)", re.DOTALL)


_DEFAULT_NOISE_RE = _noise_section_re(DEFAULT_NOISE_HEADERS)


def clean(raw: object, noise_headers: tuple[str, ...] | None = None) -> str:
    """Return *raw* without code fences, HTML tags or noise sections, whitespace collapsed.

    Never raises; non-string input yields an empty string.
    """
    if not isinstance(raw, str) or not raw:
        return ""
    text = _CODE_FENCE_RE.sub(" ", raw)
    text = _HTML_TAG_RE.sub(" ", text)
    noise_re = _DEFAULT_NOISE_RE if noise_headers is None else _noise_section_re(noise_headers)
    if noise_re is not None:
        text = noise_re.sub(" ", text)
    return _WHITESPACE_RE.sub(" ", text).strip()
