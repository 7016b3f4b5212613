"""Memory engine facade: store lifecycle plus the index/search entry points."""

from __future__ import annotations

import asyncio
from typing import Any

from memory_engine.config import ChunkingConfig, Config, SearchConfig, get_config
from memory_engine.corpus import MemoryFiles
from memory_engine.embeddings import EmbeddingProvider, Embedder, create_embedding_provider
from memory_engine.indexer import Corpus, Indexer, IndexStats
from memory_engine.logging import get_logger
from memory_engine.search import HybridSearch, ScoredResult
from memory_engine.store import ContentStore

log = get_logger(__name__)


class MemoryEngine:
    """Owns one content store handle and exposes sync, capture, removal and search.

    Use ``async with engine:`` or call ``open()``/``close()`` explicitly.
    """

    def __init__(
        self,
        *,
        store: ContentStore,
        provider: EmbeddingProvider,
        corpus: Corpus | None = None,
        chunking: ChunkingConfig | None = None,
        search_config: SearchConfig | None = None,
    ):
        self.store = store
        self.embedder = Embedder(store, provider)
        self.indexer = Indexer(store=store, embedder=self.embedder, corpus=corpus, chunking=chunking)
        self.searcher = HybridSearch(store=store, embedder=self.embedder, config=search_config)
        self._sync_task: asyncio.Task[IndexStats] | None = None

    async def open(self) -> "MemoryEngine":
        await self.store.open()
        return self

    async def close(self) -> None:
        task, self._sync_task = self._sync_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.store.close()

    async def __aenter__(self) -> "MemoryEngine":
        return await self.open()

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    def is_embedding_available(self) -> bool:
        return self.embedder.is_available()

    async def sync_index(self) -> IndexStats:
        """Run a full sync; callers arriving mid-sync share the in-flight pass."""
        task = self._sync_task
        if task is None or task.done():
            task = asyncio.create_task(self.indexer.sync_index())
            self._sync_task = task
        return await asyncio.shield(task)

    async def index_text(self, text: str, origin: str, logical_path: str) -> list[str]:
        return await self.indexer.index_text(text, origin, logical_path)

    async def remove_chunks_by_path(self, path: str) -> int:
        return await self.indexer.remove_chunks_by_path(path)

    async def remove_chunk(self, chunk_id: str) -> bool:
        return await self.indexer.remove_chunk(chunk_id)

    async def search(
        self,
        query: str,
        config: SearchConfig | None = None,
        **overrides: Any,
    ) -> list[ScoredResult]:
        return await self.searcher.search(query, config, **overrides)


def create_memory_engine(
    config: Config | None = None,
    *,
    corpus: Corpus | None = None,
    provider: EmbeddingProvider | None = None,
) -> MemoryEngine:
    """Create a memory engine from configuration (not yet opened)."""
    config = config or get_config()
    if corpus is None:
        corpus = MemoryFiles(config.resolved_corpus_path())
    if provider is None:
        provider = create_embedding_provider(config.embeddings)
    log.debug(
        "Creating memory engine",
        db=str(config.resolved_store_path()),
        provider=provider.provider_id,
        model=provider.model,
    )
    return MemoryEngine(
        store=ContentStore(config.resolved_store_path(), fts_enabled=config.store.fts_enabled),
        provider=provider,
        corpus=corpus,
        chunking=config.chunking,
        search_config=config.search,
    )
