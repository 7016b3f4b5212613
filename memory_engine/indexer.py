"""Incremental memory indexing: full corpus sync and real-time capture."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
import json
from typing import Protocol
import uuid

from memory_engine.chunker import TextChunk, chunk_markdown, hash_text
from memory_engine.config import ChunkingConfig
from memory_engine.embeddings import Embedder
from memory_engine.exceptions import EmbeddingError
from memory_engine.logging import get_logger
from memory_engine.store import ContentStore, SourceFile, StoredChunk

log = get_logger(__name__)

FINGERPRINT_KEY = "index_fingerprint"


@dataclass
class CorpusDocument:
    """One logical document supplied by the host."""

    path: str
    content: str
    mtime: float = 0.0
    size: int = 0
    origin: str = "memory"


class Corpus(Protocol):
    def list_documents(self) -> Iterable[CorpusDocument]:
        """Return every document currently present in the corpus."""


@dataclass
class IndexStats:
    """Counters from one full sync pass."""

    files_scanned: int = 0
    chunks_indexed: int = 0
    chunks_skipped: int = 0
    embeddings_requested: int = 0
    files_removed: int = 0
    embeddings_unavailable: bool = False


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


class Indexer:
    """Keeps the content store in step with the corpus.

    Callers must not run two ``sync_index`` passes concurrently; the engine
    facade shares one in-flight pass between callers.
    """

    def __init__(
        self,
        *,
        store: ContentStore,
        embedder: Embedder,
        corpus: Corpus | None = None,
        chunking: ChunkingConfig | None = None,
    ):
        self.store = store
        self.embedder = embedder
        self.corpus = corpus
        self.chunking = chunking or ChunkingConfig()

    def fingerprint(self) -> str:
        """Identify the provider, model and chunking params the index is built with."""
        return json.dumps(
            {
                "provider": self.embedder.provider_id,
                "model": self.embedder.model_id,
                "tokens": self.chunking.tokens,
                "overlap": self.chunking.overlap,
            },
            sort_keys=True,
        )

    async def sync_index(self) -> IndexStats:
        """Reconcile the store with the current corpus, reindexing only changed documents."""
        stats = IndexStats()
        if self.corpus is None:
            log.debug("No corpus configured; nothing to sync")
            return stats
        documents = await self._collect_documents()
        stats.files_scanned = len(documents)

        fingerprint = self.fingerprint()
        stored_fingerprint = await self.store.get_meta(FINGERPRINT_KEY)
        force = stored_fingerprint is not None and stored_fingerprint != fingerprint
        if force:
            log.info("Index fingerprint changed; reindexing all documents")

        to_update: list[tuple[CorpusDocument, str]] = []
        for doc in documents.values():
            content_hash = hash_text(doc.content)
            existing = await self.store.get_file(doc.path)
            if existing is not None and existing.content_hash == content_hash and not force:
                stats.chunks_skipped += 1
                continue
            to_update.append((doc, content_hash))

        # Tombstone sweep runs before any reindex write.
        for path in await self.store.list_file_paths():
            if path not in documents:
                await self.remove_chunks_by_path(path)
                stats.files_removed += 1

        if to_update and not self.embedder.is_available():
            log.info(
                "Embeddings unavailable; skipping memory indexing",
                pending=len(to_update),
                provider=self.embedder.provider_id,
            )
            stats.embeddings_unavailable = True
            return stats

        for doc, content_hash in to_update:
            chunks = chunk_markdown(doc.content, self.chunking)
            texts = [chunk.text for chunk in chunks]
            try:
                vectors = await self.embedder.embed_batch(texts)
            except EmbeddingError as exc:
                log.warning("Embedding failed; pausing memory sync", path=doc.path, error=str(exc))
                stats.embeddings_unavailable = True
                return stats
            stats.embeddings_requested += len(texts)

            rows = self._build_rows(chunks, vectors, origin=doc.origin, path=doc.path)
            async with self.store.transaction():
                await self.store.delete_chunks_by_path(doc.path)
                await self.store.insert_chunks(rows)
                await self.store.upsert_file(
                    SourceFile(
                        path=doc.path,
                        origin=doc.origin,
                        content_hash=content_hash,
                        mtime=doc.mtime,
                        size=doc.size,
                    )
                )
            stats.chunks_indexed += len(rows)

        async with self.store.transaction():
            await self.store.set_meta(FINGERPRINT_KEY, fingerprint)
        if to_update or stats.files_removed:
            log.info(
                "Memory index synced",
                files=stats.files_scanned,
                indexed=stats.chunks_indexed,
                skipped=stats.chunks_skipped,
                removed=stats.files_removed,
            )
        return stats

    async def index_text(self, text: str, origin: str, logical_path: str) -> list[str]:
        """Index one captured text without a backing file row; returns new chunk ids."""
        chunks = chunk_markdown(text, self.chunking)
        if not chunks:
            return []
        vectors = await self.embedder.embed_batch([chunk.text for chunk in chunks])
        rows = self._build_rows(chunks, vectors, origin=origin, path=logical_path)
        async with self.store.transaction():
            await self.store.insert_chunks(rows)
        log.debug("Indexed captured text", path=logical_path, chunks=len(rows))
        return [row.id for row in rows]

    async def remove_chunks_by_path(self, path: str) -> int:
        """Delete all chunks and the file row for *path*. Returns chunk rows removed."""
        async with self.store.transaction():
            removed = await self.store.delete_chunks_by_path(path)
            await self.store.delete_file(path)
        if removed:
            log.debug("Removed chunks", path=path, chunks=removed)
        return removed

    async def remove_chunk(self, chunk_id: str) -> bool:
        async with self.store.transaction():
            return await self.store.delete_chunk(chunk_id)

    async def _collect_documents(self) -> dict[str, CorpusDocument]:
        corpus = self.corpus
        listed = await asyncio.to_thread(lambda: list(corpus.list_documents()))
        # Later entries win on duplicate paths.
        return {doc.path: doc for doc in listed}

    def _build_rows(
        self,
        chunks: list[TextChunk],
        vectors: list[list[float]],
        *,
        origin: str,
        path: str,
    ) -> list[StoredChunk]:
        now_iso = _utcnow_iso()
        return [
            StoredChunk(
                id=str(uuid.uuid4()),
                path=path,
                origin=origin,
                start_line=chunk.start_line,
                end_line=chunk.end_line,
                text=chunk.text,
                content_hash=chunk.hash,
                model=self.embedder.model_id,
                embedding=vector,
                updated_at=now_iso,
            )
            for chunk, vector in zip(chunks, vectors)
        ]
