"""Hybrid search: cosine similarity over stored vectors merged with FTS5 BM25."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
import math
import re
import sqlite3
from typing import Any

from memory_engine.config import SearchConfig
from memory_engine.embeddings import Embedder
from memory_engine.exceptions import EmbeddingError
from memory_engine.logging import get_logger
from memory_engine.store import ContentStore, StoredChunk

log = get_logger(__name__)

# Anything that is not a Unicode letter, digit or whitespace.
_FTS_UNSAFE_RE = re.compile(r"[^\w\s]|_")


@dataclass
class ScoredResult:
    """One search hit."""

    id: str
    path: str
    start_line: int
    end_line: int
    snippet: str
    score: float
    origin: str
    vector_score: float | None = None
    text_score: float | None = None


@dataclass
class SubSearchResult:
    """Outcome of one retrieval signal; ``degraded`` marks an unavailable signal."""

    hits: list[ScoredResult] = field(default_factory=list)
    degraded: bool = False
    reason: str = ""

    @classmethod
    def unavailable(cls, reason: str) -> "SubSearchResult":
        return cls(hits=[], degraded=True, reason=reason)


def cosine_similarity(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = norm_a = norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    denom = math.sqrt(norm_a) * math.sqrt(norm_b)
    if denom == 0:
        return 0.0
    score = dot / denom
    return score if math.isfinite(score) else 0.0


def rank_to_score(rank: float) -> float:
    """Map an FTS5 rank (negative, lower is better) to a positive score."""
    return 1.0 / (1.0 + max(0.0, -rank))


def build_fts_query(query: str) -> str | None:
    """Reduce *query* to quoted terms safe for FTS5 MATCH, or None if nothing is left."""
    tokens = _FTS_UNSAFE_RE.sub(" ", query).split()
    if not tokens:
        return None
    return " ".join(f'"{token}"' for token in tokens)


def merge_hybrid_results(
    vector: list[ScoredResult],
    keyword: list[ScoredResult],
    config: SearchConfig,
) -> list[ScoredResult]:
    """Weighted merge keyed by chunk id; chunks found by both signals get both terms."""
    total_weight = config.vector_weight + config.text_weight
    vw = config.vector_weight / total_weight
    tw = config.text_weight / total_weight

    merged: dict[str, ScoredResult] = {}
    for hit in vector:
        merged[hit.id] = replace(hit, score=(hit.vector_score or 0.0) * vw)

    for hit in keyword:
        text_part = (hit.text_score or 0.0) * tw
        existing = merged.get(hit.id)
        if existing is not None:
            existing.score += text_part
            existing.text_score = hit.text_score
        else:
            merged[hit.id] = replace(hit, score=text_part)

    # Stable sort: ties keep vector-first insertion order.
    return sorted(merged.values(), key=lambda item: item.score, reverse=True)


class HybridSearch:
    """Runs vector and lexical retrieval concurrently and merges the rankings."""

    def __init__(self, *, store: ContentStore, embedder: Embedder, config: SearchConfig | None = None):
        self.store = store
        self.embedder = embedder
        self.config = config or SearchConfig()

    def resolve_config(self, config: SearchConfig | None = None, **overrides: Any) -> SearchConfig:
        base = config or self.config
        if not overrides:
            return base
        return SearchConfig.model_validate({**base.model_dump(), **overrides})

    async def search(
        self,
        query: str,
        config: SearchConfig | None = None,
        **overrides: Any,
    ) -> list[ScoredResult]:
        """Hybrid search over all indexed chunks.

        Keyword arguments override fields of the effective ``SearchConfig``
        (e.g. ``min_score=0``). Unavailable signals degrade to no hits; when
        both are empty the result is ``[]``.
        """
        cfg = self.resolve_config(config, **overrides)
        cleaned = str(query or "").strip()
        if not cleaned:
            return []

        limit = cfg.candidate_limit
        vector, keyword = await asyncio.gather(
            self.vector_search(cleaned, limit, snippet_max_chars=cfg.snippet_max_chars),
            self.keyword_search(cleaned, limit, snippet_max_chars=cfg.snippet_max_chars),
        )
        if vector.degraded:
            log.debug("Vector search degraded", reason=vector.reason)
        if keyword.degraded:
            log.debug("Keyword search degraded", reason=keyword.reason)

        if not vector.hits and not keyword.hits:
            return []

        merged = merge_hybrid_results(vector.hits, keyword.hits, cfg)
        return [item for item in merged if item.score >= cfg.min_score][: cfg.max_results]

    async def vector_search(self, query: str, limit: int, *, snippet_max_chars: int = 700) -> SubSearchResult:
        try:
            query_vec = await self.embedder.embed_one(query)
        except EmbeddingError as exc:
            return SubSearchResult.unavailable(f"query embedding failed: {exc}")

        scored: list[ScoredResult] = []
        for chunk in await self.store.list_chunks():
            similarity = cosine_similarity(query_vec, chunk.embedding)
            if similarity > 0:
                scored.append(
                    _to_result(chunk, similarity, snippet_max_chars, vector_score=similarity)
                )
        scored.sort(key=lambda item: item.score, reverse=True)
        return SubSearchResult(hits=scored[:limit])

    async def keyword_search(self, query: str, limit: int, *, snippet_max_chars: int = 700) -> SubSearchResult:
        if not self.store.fts_available:
            return SubSearchResult.unavailable("full-text index unavailable")
        match = build_fts_query(query)
        if match is None:
            return SubSearchResult.unavailable("no searchable terms in query")
        try:
            rows = await self.store.search_fts(match, limit)
        except sqlite3.OperationalError as exc:
            return SubSearchResult.unavailable(f"full-text match failed: {exc}")

        hits: list[ScoredResult] = []
        for chunk, rank in rows:
            text_score = rank_to_score(rank)
            hits.append(_to_result(chunk, text_score, snippet_max_chars, text_score=text_score))
        return SubSearchResult(hits=hits)


def _to_result(
    chunk: StoredChunk,
    score: float,
    snippet_max_chars: int,
    *,
    vector_score: float | None = None,
    text_score: float | None = None,
) -> ScoredResult:
    return ScoredResult(
        id=chunk.id,
        path=chunk.path,
        start_line=chunk.start_line,
        end_line=chunk.end_line,
        snippet=chunk.text[:snippet_max_chars],
        score=score,
        origin=chunk.origin,
        vector_score=vector_score,
        text_score=text_score,
    )
