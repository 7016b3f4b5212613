"""SQLite content store: indexed files, chunks, embedding cache and FTS5 index."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
import json
import math
from pathlib import Path
import sqlite3
from typing import Any

import aiosqlite

from memory_engine.exceptions import StoreClosedError
from memory_engine.logging import get_logger

log = get_logger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class SourceFile:
    """One indexed document."""

    path: str
    content_hash: str
    mtime: float = 0.0
    size: int = 0
    origin: str = "memory"


@dataclass
class StoredChunk:
    """One chunk row; ``embedding`` is empty for rows read from the FTS index."""

    id: str
    path: str
    origin: str
    start_line: int
    end_line: int
    text: str
    content_hash: str = ""
    model: str = ""
    embedding: list[float] = field(default_factory=list)
    updated_at: str = ""


def encode_vector(vector: Iterable[float]) -> str:
    return json.dumps([float(v) for v in vector], ensure_ascii=True)


def decode_vector(raw: Any) -> list[float]:
    """Decode a stored vector, raising ValueError on anything but a finite float list."""
    values = json.loads(str(raw))
    if not isinstance(values, list):
        raise ValueError("stored embedding is not a list")
    vector = [float(v) for v in values]
    if not all(math.isfinite(v) for v in vector):
        raise ValueError("stored embedding has non-finite values")
    return vector


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS meta (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS files (
        path TEXT PRIMARY KEY,
        source TEXT NOT NULL DEFAULT 'memory',
        hash TEXT NOT NULL,
        mtime REAL NOT NULL,
        size INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chunks (
        id TEXT PRIMARY KEY,
        path TEXT NOT NULL,
        source TEXT NOT NULL DEFAULT 'memory',
        start_line INTEGER NOT NULL,
        end_line INTEGER NOT NULL,
        hash TEXT NOT NULL,
        model TEXT NOT NULL,
        text TEXT NOT NULL,
        embedding TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_chunks_path ON chunks(path)",
    "CREATE INDEX IF NOT EXISTS idx_chunks_source ON chunks(source)",
    """
    CREATE TABLE IF NOT EXISTS embedding_cache (
        provider TEXT NOT NULL,
        model TEXT NOT NULL,
        hash TEXT NOT NULL,
        embedding TEXT NOT NULL,
        dims INTEGER,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (provider, model, hash)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_cache_updated ON embedding_cache(updated_at)",
)

_CREATE_FTS = """
CREATE VIRTUAL TABLE IF NOT EXISTS chunks_fts USING fts5(
    text,
    id UNINDEXED,
    path UNINDEXED,
    source UNINDEXED,
    start_line UNINDEXED,
    end_line UNINDEXED
)
"""

_CHUNK_COLUMNS = "id, path, source, start_line, end_line, hash, model, text, embedding, updated_at"


class ContentStore:
    """Async SQLite store for the memory index.

    The store is an explicit handle: call ``open()`` once at startup (or use
    ``async with``) and ``close()`` on shutdown. Multi-statement writes go
    through ``transaction()`` so they commit or roll back as a unit.
    """

    def __init__(self, db_path: Path | str, *, fts_enabled: bool = True):
        self.db_path = Path(db_path).expanduser()
        self.fts_enabled = bool(fts_enabled)
        self._conn: aiosqlite.Connection | None = None
        self._fts_available = False
        self._write_lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    @property
    def fts_available(self) -> bool:
        """Whether the FTS5 index exists; lexical search is disabled otherwise."""
        return self._conn is not None and self._fts_available

    async def open(self) -> "ContentStore":
        if self._conn is not None:
            return self
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode; transactions are issued explicitly.
        conn = await aiosqlite.connect(str(self.db_path), isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            await conn.execute("PRAGMA journal_mode=WAL")
            await conn.execute("PRAGMA synchronous=NORMAL")
            for statement in _SCHEMA:
                await conn.execute(statement)
            self._fts_available = await self._ensure_fts(conn)
        except Exception:
            await conn.close()
            raise
        self._conn = conn
        log.debug("Memory store opened", path=str(self.db_path), fts=self._fts_available)
        return self

    async def close(self) -> None:
        """Close SQLite resources."""
        conn, self._conn = self._conn, None
        self._fts_available = False
        if conn is not None:
            await conn.close()
            log.debug("Memory store closed", path=str(self.db_path))

    async def __aenter__(self) -> "ContentStore":
        return await self.open()

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    async def _ensure_fts(self, conn: aiosqlite.Connection) -> bool:
        if not self.fts_enabled:
            return False
        try:
            await conn.execute(_CREATE_FTS)
            await conn.execute("SELECT * FROM chunks_fts LIMIT 0")
        except sqlite3.Error as exc:
            log.warning("FTS5 not available, keyword search disabled", error=str(exc))
            return False
        return True

    def _conn_or_raise(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StoreClosedError(str(self.db_path))
        return self._conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["ContentStore"]:
        """Run the enclosed writes as one atomic unit. Not reentrant."""
        conn = self._conn_or_raise()
        async with self._write_lock:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield self
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            await conn.execute("COMMIT")

    # Files

    async def get_file(self, path: str) -> SourceFile | None:
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT path, source, hash, mtime, size FROM files WHERE path = ?",
            (path,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return SourceFile(
            path=row["path"],
            origin=row["source"],
            content_hash=row["hash"],
            mtime=float(row["mtime"]),
            size=int(row["size"]),
        )

    async def list_file_paths(self) -> list[str]:
        conn = self._conn_or_raise()
        async with conn.execute("SELECT path FROM files ORDER BY path") as cursor:
            rows = await cursor.fetchall()
        return [str(row["path"]) for row in rows]

    async def upsert_file(self, file: SourceFile) -> None:
        conn = self._conn_or_raise()
        await conn.execute(
            "INSERT OR REPLACE INTO files (path, source, hash, mtime, size) VALUES (?, ?, ?, ?, ?)",
            (file.path, file.origin, file.content_hash, float(file.mtime), int(file.size)),
        )

    async def delete_file(self, path: str) -> bool:
        conn = self._conn_or_raise()
        cursor = await conn.execute("DELETE FROM files WHERE path = ?", (path,))
        return cursor.rowcount > 0

    # Chunks

    async def insert_chunks(self, chunks: list[StoredChunk]) -> None:
        if not chunks:
            return
        conn = self._conn_or_raise()
        await conn.executemany(
            f"INSERT INTO chunks ({_CHUNK_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                (
                    chunk.id,
                    chunk.path,
                    chunk.origin,
                    chunk.start_line,
                    chunk.end_line,
                    chunk.content_hash,
                    chunk.model,
                    chunk.text,
                    encode_vector(chunk.embedding),
                    chunk.updated_at or _utcnow_iso(),
                )
                for chunk in chunks
            ],
        )
        if self.fts_available:
            await conn.executemany(
                """
                INSERT INTO chunks_fts (id, path, source, start_line, end_line, text)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (chunk.id, chunk.path, chunk.origin, chunk.start_line, chunk.end_line, chunk.text)
                    for chunk in chunks
                ],
            )

    async def get_chunk(self, chunk_id: str) -> StoredChunk | None:
        conn = self._conn_or_raise()
        async with conn.execute(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE id = ?",
            (chunk_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return _row_to_chunk(row)

    async def list_chunks(self, path: str | None = None) -> list[StoredChunk]:
        """Return chunks (optionally for one path) ordered by path and start line.

        Rows whose stored vector cannot be decoded are skipped.
        """
        conn = self._conn_or_raise()
        sql = f"SELECT {_CHUNK_COLUMNS} FROM chunks"
        params: tuple[Any, ...] = ()
        if path is not None:
            sql += " WHERE path = ?"
            params = (path,)
        sql += " ORDER BY path, start_line"
        async with conn.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        chunks: list[StoredChunk] = []
        for row in rows:
            try:
                chunks.append(_row_to_chunk(row))
            except (ValueError, TypeError) as exc:
                log.warning("Skipping chunk with malformed embedding", chunk_id=row["id"], error=str(exc))
        return chunks

    async def count_chunks(self, path: str | None = None) -> int:
        conn = self._conn_or_raise()
        if path is None:
            async with conn.execute("SELECT COUNT(*) FROM chunks") as cursor:
                row = await cursor.fetchone()
        else:
            async with conn.execute("SELECT COUNT(*) FROM chunks WHERE path = ?", (path,)) as cursor:
                row = await cursor.fetchone()
        return int(row[0])

    async def delete_chunks_by_path(self, path: str) -> int:
        """Delete chunk rows (and FTS rows, best-effort) for *path*."""
        conn = self._conn_or_raise()
        cursor = await conn.execute("DELETE FROM chunks WHERE path = ?", (path,))
        removed = cursor.rowcount
        if self.fts_available:
            try:
                await conn.execute("DELETE FROM chunks_fts WHERE path = ?", (path,))
            except sqlite3.Error as exc:
                log.warning("FTS cleanup failed", path=path, error=str(exc))
        return max(0, removed)

    async def delete_chunk(self, chunk_id: str) -> bool:
        conn = self._conn_or_raise()
        cursor = await conn.execute("DELETE FROM chunks WHERE id = ?", (chunk_id,))
        if self.fts_available:
            try:
                await conn.execute("DELETE FROM chunks_fts WHERE id = ?", (chunk_id,))
            except sqlite3.Error as exc:
                log.warning("FTS cleanup failed", chunk_id=chunk_id, error=str(exc))
        return cursor.rowcount > 0

    async def search_fts(self, match: str, limit: int) -> list[tuple[StoredChunk, float]]:
        """Ranked FTS5 match. ``match`` must already be valid FTS5 query syntax.

        Returns (chunk, rank) pairs best-first; FTS5 ranks are negative and
        lower is better.
        """
        conn = self._conn_or_raise()
        if not self.fts_available:
            return []
        async with conn.execute(
            """
            SELECT id, path, source, start_line, end_line, text, rank
            FROM chunks_fts
            WHERE chunks_fts MATCH ?
            ORDER BY rank
            LIMIT ?
            """,
            (match, int(limit)),
        ) as cursor:
            rows = await cursor.fetchall()
        hits: list[tuple[StoredChunk, float]] = []
        for row in rows:
            chunk = StoredChunk(
                id=str(row["id"]),
                path=str(row["path"]),
                origin=str(row["source"]),
                start_line=int(row["start_line"]),
                end_line=int(row["end_line"]),
                text=str(row["text"]),
            )
            hits.append((chunk, float(row["rank"])))
        return hits

    # Embedding cache

    async def get_cached_embeddings(
        self,
        provider: str,
        model: str,
        hashes: Iterable[str],
    ) -> dict[str, list[float]]:
        conn = self._conn_or_raise()
        found: dict[str, list[float]] = {}
        for text_hash in dict.fromkeys(hashes):
            async with conn.execute(
                "SELECT embedding FROM embedding_cache WHERE provider = ? AND model = ? AND hash = ?",
                (provider, model, text_hash),
            ) as cursor:
                row = await cursor.fetchone()
            if row is None:
                continue
            try:
                found[text_hash] = decode_vector(row["embedding"])
            except (ValueError, TypeError) as exc:
                log.warning("Ignoring malformed cache entry", hash=text_hash, error=str(exc))
        return found

    async def put_cached_embeddings(
        self,
        provider: str,
        model: str,
        vectors: dict[str, list[float]],
    ) -> None:
        if not vectors:
            return
        conn = self._conn_or_raise()
        now_iso = _utcnow_iso()
        await conn.executemany(
            """
            INSERT OR REPLACE INTO embedding_cache (provider, model, hash, embedding, dims, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                (provider, model, text_hash, encode_vector(vector), len(vector), now_iso)
                for text_hash, vector in vectors.items()
            ],
        )

    async def count_cache_entries(self, provider: str | None = None, model: str | None = None) -> int:
        conn = self._conn_or_raise()
        sql = "SELECT COUNT(*) FROM embedding_cache WHERE 1 = 1"
        params: list[str] = []
        if provider is not None:
            sql += " AND provider = ?"
            params.append(provider)
        if model is not None:
            sql += " AND model = ?"
            params.append(model)
        async with conn.execute(sql, params) as cursor:
            row = await cursor.fetchone()
        return int(row[0])

    async def clear_embedding_cache(self) -> int:
        conn = self._conn_or_raise()
        cursor = await conn.execute("DELETE FROM embedding_cache")
        return max(0, cursor.rowcount)

    # Meta

    async def get_meta(self, key: str) -> str | None:
        conn = self._conn_or_raise()
        async with conn.execute("SELECT value FROM meta WHERE key = ?", (key,)) as cursor:
            row = await cursor.fetchone()
        return str(row["value"]) if row else None

    async def set_meta(self, key: str, value: str) -> None:
        conn = self._conn_or_raise()
        await conn.execute("INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)", (key, value))


def _row_to_chunk(row: sqlite3.Row) -> StoredChunk:
    return StoredChunk(
        id=str(row["id"]),
        path=str(row["path"]),
        origin=str(row["source"]),
        start_line=int(row["start_line"]),
        end_line=int(row["end_line"]),
        content_hash=str(row["hash"]),
        model=str(row["model"]),
        text=str(row["text"]),
        embedding=decode_vector(row["embedding"]),
        updated_at=str(row["updated_at"]),
    )
