from pathlib import Path

import pytest

from memory_engine.exceptions import StoreClosedError
from memory_engine.store import ContentStore, SourceFile, StoredChunk, decode_vector, encode_vector


def _chunk(chunk_id: str, path: str = "MEMORY.md", text: str = "User likes green tea.", start: int = 1) -> StoredChunk:
    return StoredChunk(
        id=chunk_id,
        path=path,
        origin="memory",
        start_line=start,
        end_line=start,
        text=text,
        content_hash=f"hash-{chunk_id}",
        model="bow-64",
        embedding=[0.5, 0.5, 0.0],
    )


def test_vector_codec_rejects_non_finite_values():
    assert decode_vector(encode_vector([1, 2.5])) == [1.0, 2.5]
    with pytest.raises(ValueError):
        decode_vector('{"a": 1}')
    with pytest.raises(ValueError):
        decode_vector("[1.0, NaN]")


@pytest.mark.asyncio
async def test_operations_on_closed_store_raise(tmp_path: Path):
    store = ContentStore(tmp_path / "index.sqlite")

    with pytest.raises(StoreClosedError):
        await store.count_chunks()


@pytest.mark.asyncio
async def test_open_creates_parent_dirs_and_is_idempotent(tmp_path: Path):
    db_path = tmp_path / "nested" / "memory" / "index.sqlite"
    store = ContentStore(db_path)
    try:
        await store.open()
        await store.open()
        assert db_path.exists()
        assert store.is_open
    finally:
        await store.close()
    assert not store.is_open
    assert not store.fts_available


@pytest.mark.asyncio
async def test_file_and_chunk_round_trip(tmp_path: Path):
    async with ContentStore(tmp_path / "index.sqlite") as store:
        async with store.transaction():
            await store.upsert_file(SourceFile(path="MEMORY.md", content_hash="abc", mtime=1.5, size=10))
            await store.insert_chunks([_chunk("c1"), _chunk("c2", start=2, text="Meeting on Monday.")])

        stored_file = await store.get_file("MEMORY.md")
        assert stored_file is not None
        assert stored_file.content_hash == "abc"
        assert stored_file.mtime == 1.5
        assert await store.list_file_paths() == ["MEMORY.md"]

        chunks = await store.list_chunks("MEMORY.md")
        assert [c.id for c in chunks] == ["c1", "c2"]
        assert chunks[0].embedding == [0.5, 0.5, 0.0]
        assert chunks[0].updated_at

        fetched = await store.get_chunk("c2")
        assert fetched is not None
        assert fetched.text == "Meeting on Monday."


@pytest.mark.asyncio
async def test_transaction_rolls_back_on_error(tmp_path: Path):
    async with ContentStore(tmp_path / "index.sqlite") as store:
        with pytest.raises(RuntimeError):
            async with store.transaction():
                await store.insert_chunks([_chunk("c1")])
                raise RuntimeError("boom")

        assert await store.count_chunks() == 0


@pytest.mark.asyncio
async def test_delete_by_path_removes_fts_rows(tmp_path: Path):
    async with ContentStore(tmp_path / "index.sqlite") as store:
        async with store.transaction():
            await store.insert_chunks([_chunk("c1"), _chunk("c2", path="2024-01-01.md")])

        assert store.fts_available
        assert len(await store.search_fts('"tea"', 10)) == 2

        async with store.transaction():
            removed = await store.delete_chunks_by_path("MEMORY.md")

        assert removed == 1
        hits = await store.search_fts('"tea"', 10)
        assert [chunk.id for chunk, _ in hits] == ["c2"]


@pytest.mark.asyncio
async def test_delete_single_chunk(tmp_path: Path):
    async with ContentStore(tmp_path / "index.sqlite") as store:
        async with store.transaction():
            await store.insert_chunks([_chunk("c1"), _chunk("c2", start=2)])
        async with store.transaction():
            assert await store.delete_chunk("c1") is True
            assert await store.delete_chunk("missing") is False

        assert await store.count_chunks() == 1
        assert [chunk.id for chunk, _ in await store.search_fts('"tea"', 10)] == ["c2"]


@pytest.mark.asyncio
async def test_fts_disabled_store_skips_lexical_index(tmp_path: Path):
    async with ContentStore(tmp_path / "index.sqlite", fts_enabled=False) as store:
        async with store.transaction():
            await store.insert_chunks([_chunk("c1")])

        assert not store.fts_available
        assert await store.search_fts('"tea"', 10) == []
        assert await store.count_chunks() == 1


@pytest.mark.asyncio
async def test_malformed_stored_vector_is_skipped(tmp_path: Path):
    async with ContentStore(tmp_path / "index.sqlite") as store:
        async with store.transaction():
            await store.insert_chunks([_chunk("good"), _chunk("bad", start=2)])
        conn = store._conn_or_raise()
        await conn.execute("UPDATE chunks SET embedding = 'not-json' WHERE id = 'bad'")

        chunks = await store.list_chunks()

    assert [chunk.id for chunk in chunks] == ["good"]


@pytest.mark.asyncio
async def test_embedding_cache_upsert_and_lookup(tmp_path: Path):
    async with ContentStore(tmp_path / "index.sqlite") as store:
        async with store.transaction():
            await store.put_cached_embeddings("fake", "m1", {"h1": [1.0, 0.0], "h2": [0.0, 1.0]})
            await store.put_cached_embeddings("fake", "m1", {"h1": [0.6, 0.8]})
            await store.put_cached_embeddings("fake", "m2", {"h1": [9.0]})

        found = await store.get_cached_embeddings("fake", "m1", ["h1", "h2", "h3"])
        assert found == {"h1": [0.6, 0.8], "h2": [0.0, 1.0]}
        assert await store.count_cache_entries() == 3
        assert await store.count_cache_entries(model="m2") == 1

        async with store.transaction():
            assert await store.clear_embedding_cache() == 3


@pytest.mark.asyncio
async def test_meta_values_persist_across_reopen(tmp_path: Path):
    db_path = tmp_path / "index.sqlite"
    async with ContentStore(db_path) as store:
        await store.set_meta("index_fingerprint", "v1")
    async with ContentStore(db_path) as store:
        assert await store.get_meta("index_fingerprint") == "v1"
        assert await store.get_meta("missing") is None
