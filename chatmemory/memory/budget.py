"""Token budget estimation for pruning and memory-size enforcement."""

from __future__ import annotations

import math
from typing import Callable


class BudgetEstimator:
    """Approximate token counts.

    Uses ``ceil(len(text) / 4)`` unless the host supplies a precise counter.
    """

    _CHARS_PER_TOKEN = 4

    def __init__(self, token_counter: Callable[[str], int] | None = None) -> None:
        self._token_counter = token_counter

    @classmethod
    def with_tiktoken(cls, encoding: str = "cl100k_base") -> BudgetEstimator:
        """Estimator backed by a tiktoken encoding (cl100k_base covers most chat models)."""
        import tiktoken

        enc = tiktoken.get_encoding(encoding)
        return cls(lambda text: len(enc.encode(text)))

    @property
    def is_precise(self) -> bool:
        return self._token_counter is not None

    def estimate_tokens(self, text: str | None) -> int:
        if not text:
            return 0
        if self._token_counter is not None:
            return int(self._token_counter(text))
        return math.ceil(len(text) / self._CHARS_PER_TOKEN)

    def truncate_to_tokens(self, text: str, max_tokens: int, *, marker: str = "...") -> str:
        """Cut *text* so its estimate fits *max_tokens*, keeping the head."""
        if self.estimate_tokens(text) <= max_tokens:
            return text
        max_chars = max(0, max_tokens * self._CHARS_PER_TOKEN - len(marker))
        trimmed = text[:max_chars]
        # Tighten if a precise counter still overshoots.
        while trimmed and self.estimate_tokens(trimmed + marker) > max_tokens:
            trimmed = trimmed[: int(len(trimmed) * 0.85)]
        return trimmed.rstrip() + marker if trimmed else ""
