"""Append-only archive of pruned text with cosine-similarity retrieval."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import numpy as np

from chatmemory.config.schema import ArchiveConfig
from chatmemory.logging import get_logger
from chatmemory.memory.io import KeyValueStore
from chatmemory.memory.types import ArchiveEntry, EmbedFn, utc_now_iso

logger = get_logger(__name__)


@dataclass
class ArchiveMatch:
    entry: ArchiveEntry
    score: float
    position: int


def cosine_scores(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """``dot(a, b) / (|a| * |b|)`` per row; zero-norm rows score 0."""
    q_norm = float(np.linalg.norm(query))
    row_norms = np.linalg.norm(matrix, axis=1)
    denom = row_norms * q_norm
    dots = matrix @ query
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(denom > 0, dots / denom, 0.0)
    return scores


class VectorArchive:
    """
    Per-scope embedding archive persisted in the key/value store.

    Embedding failures never raise: archiving keeps the text with an empty vector
    (picked up later by ``maintenance``) and retrieval returns no matches.
    """

    NAMESPACE = "archive"

    def __init__(
        self,
        kv: KeyValueStore,
        embed: EmbedFn | None = None,
        config: ArchiveConfig | None = None,
    ) -> None:
        self.kv = kv
        self.embed = embed
        self.config = config or ArchiveConfig()

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def entries(self, scope_id: str) -> list[ArchiveEntry]:
        raw = self.kv.get(self.NAMESPACE, scope_id) or []
        return [ArchiveEntry.from_dict(item) for item in raw if isinstance(item, dict)]

    def _save(self, scope_id: str, entries: list[ArchiveEntry]) -> None:
        self.kv.set(self.NAMESPACE, scope_id, [e.to_dict() for e in entries])

    def has_source(self, scope_id: str, source_index: int) -> bool:
        return any(e.source_index == source_index for e in self.entries(scope_id))

    async def _embed(self, text: str) -> list[float]:
        if self.embed is None:
            return []
        try:
            vector = await self.embed(text)
        except Exception as e:
            logger.warning("Archive embedding failed", error_type=type(e).__name__, error=str(e))
            return []
        return [float(x) for x in vector or []]

    async def archive(self, scope_id: str, text: str, *, source_index: int | None = None) -> ArchiveEntry | None:
        text = (text or "").strip()
        if not text:
            return None
        text = text[: self.config.max_text_chars]
        vector = await self._embed(text)
        entry = ArchiveEntry(text=text, vector=vector, timestamp=utc_now_iso(), source_index=source_index)
        entries = self.entries(scope_id)
        entries.append(entry)
        self._save(scope_id, entries)
        logger.debug(
            "Archived text",
            scope_id=scope_id,
            source_index=source_index,
            chars=len(text),
            embedded=bool(vector),
        )
        return entry

    async def retrieve(
        self,
        scope_id: str,
        query: str,
        k: int | None = None,
        min_score: float | None = None,
    ) -> list[ArchiveMatch]:
        top_k = self.config.top_k if k is None else k
        threshold = self.config.min_score if min_score is None else min_score
        if not query or not query.strip() or top_k <= 0:
            return []
        entries = self.entries(scope_id)
        if not entries:
            return []
        query_vec = await self._embed(query.strip())
        if not query_vec:
            return []

        q = np.asarray(query_vec, dtype=np.float32)
        positions = [i for i, e in enumerate(entries) if len(e.vector) == q.shape[0]]
        if not positions:
            return []
        matrix = np.asarray([entries[i].vector for i in positions], dtype=np.float32)
        scores = cosine_scores(q, matrix)

        # Stable sort on -score keeps insertion order for ties.
        ranked = sorted(range(len(positions)), key=lambda j: -float(scores[j]))
        matches: list[ArchiveMatch] = []
        for j in ranked:
            score = float(scores[j])
            if score < threshold:
                continue
            pos = positions[j]
            matches.append(ArchiveMatch(entry=entries[pos], score=score, position=pos))
            if len(matches) >= top_k:
                break
        return matches

    async def maintenance(self, scope_id: str) -> int:
        """Backfill embeddings for entries stored without a vector. Returns count fixed."""
        if self.embed is None:
            return 0
        entries = self.entries(scope_id)
        missing = [i for i, e in enumerate(entries) if not e.vector]
        if not missing:
            return 0
        semaphore = asyncio.Semaphore(self.config.maintenance_concurrency)

        async def _one(i: int) -> tuple[int, list[float]]:
            async with semaphore:
                return i, await self._embed(entries[i].text)

        results = await asyncio.gather(*(_one(i) for i in missing))
        fixed = 0
        # Re-read and patch by position so entries appended meanwhile survive.
        latest = self.entries(scope_id)
        for i, vector in results:
            if vector and i < len(latest) and not latest[i].vector and latest[i].text == entries[i].text:
                latest[i].vector = vector
                fixed += 1
        if fixed:
            self._save(scope_id, latest)
        logger.info("Archive maintenance done", scope_id=scope_id, missing=len(missing), fixed=fixed)
        return fixed

    def wipe(self, scope_id: str) -> None:
        self.kv.delete(self.NAMESPACE, scope_id)
