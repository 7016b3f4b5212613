import asyncio
from pathlib import Path

import pytest

from memory_engine.config import Config
from memory_engine.corpus import MemoryFiles
from memory_engine.embeddings import LocalHashEmbeddingProvider
from memory_engine.engine import MemoryEngine, create_memory_engine
from memory_engine.exceptions import StoreClosedError
from memory_engine.store import ContentStore


def _engine(tmp_path: Path, provider, corpus=None, **store_kwargs) -> MemoryEngine:
    return MemoryEngine(
        store=ContentStore(tmp_path / "index.sqlite", **store_kwargs),
        provider=provider,
        corpus=corpus,
    )


@pytest.mark.asyncio
async def test_captured_text_is_immediately_searchable(tmp_path: Path, provider):
    async with _engine(tmp_path, provider) as engine:
        ids = await engine.index_text("User prefers dark mode.", "memory", "memory/2024-01-01.md")
        results = await engine.search("dark mode", min_score=0)

    assert len(ids) == 1
    assert results[0].id == ids[0]
    assert results[0].snippet == "User prefers dark mode."
    assert results[0].path == "memory/2024-01-01.md"
    assert results[0].origin == "memory"


@pytest.mark.asyncio
async def test_search_without_any_signal_returns_empty(tmp_path: Path, provider):
    provider.available = False
    async with _engine(tmp_path, provider, fts_enabled=False) as engine:
        assert engine.is_embedding_available() is False
        assert await engine.search("anything") == []


@pytest.mark.asyncio
async def test_concurrent_syncs_share_one_pass(tmp_path: Path, provider, corpus):
    corpus.documents = {"MEMORY.md": "User prefers dark mode.", "notes.md": "Ship on Friday."}
    async with _engine(tmp_path, provider, corpus) as engine:
        first, second = await asyncio.gather(engine.sync_index(), engine.sync_index())
        third = await engine.sync_index()

    assert first is second
    assert first.chunks_indexed == 2
    assert third is not first
    assert third.chunks_indexed == 0


@pytest.mark.asyncio
async def test_removal_through_engine(tmp_path: Path, provider, corpus):
    corpus.documents = {"MEMORY.md": "Printer lives on floor three."}
    async with _engine(tmp_path, provider, corpus) as engine:
        await engine.sync_index()
        hits = await engine.search("printer floor", min_score=0)
        assert hits

        assert await engine.remove_chunk(hits[0].id) is True
        assert await engine.search("printer floor", min_score=0) == []
        assert await engine.remove_chunks_by_path("MEMORY.md") == 0


@pytest.mark.asyncio
async def test_closed_engine_rejects_calls(tmp_path: Path, provider):
    engine = _engine(tmp_path, provider)
    await engine.open()
    await engine.close()

    with pytest.raises(StoreClosedError):
        await engine.index_text("late write", "memory", "MEMORY.md")


@pytest.mark.asyncio
async def test_create_memory_engine_from_config(tmp_path: Path):
    memory_dir = tmp_path / "memory"
    files = MemoryFiles(memory_dir)
    files.save_memory("# Memory\nThe staging database is called atlas.\n")
    cfg = Config(
        store={"path": str(tmp_path / "db" / "index.sqlite")},
        corpus={"path": str(memory_dir)},
        embeddings={"provider": "local_hash"},
    )

    engine = create_memory_engine(cfg)
    assert isinstance(engine.embedder.provider, LocalHashEmbeddingProvider)
    try:
        await engine.open()
        stats = await engine.sync_index()
        results = await engine.search("staging database atlas", min_score=0)
    finally:
        await engine.close()

    assert stats.files_scanned == 1
    assert results[0].path == "MEMORY.md"
    assert (tmp_path / "db" / "index.sqlite").exists()
