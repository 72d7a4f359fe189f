"""
SQLite-backed vector memory store.

Chunks and their embeddings live in two tables:

    memory_chunks      (id, session_id, content, type, source, created_at)
    memory_embeddings  (chunk_id -> memory_chunks.id, embedding BLOB float32)

Keeping metadata apart from vectors lets searches filter by source prefix
(one namespace per agent, campaign or document) without touching the
embeddings. Nearest-neighbour search is an exact cosine scan in numpy;
distance is 1 - cosine similarity, so 0 is identical.

Writes (store, delete) are serialized through one asyncio lock and each
runs inside a single SQLite transaction. Embeddings are computed before
the transaction opens, so a failed embedding call writes nothing.
"""

import asyncio
import logging
import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numpy as np

from errors import EmbeddingError
from .embeddings import EMBEDDING_DIM, EmbeddingProvider, get_provider

logger = logging.getLogger(__name__)

CHUNK_TYPES = ("conversation", "knowledge", "note")


# ═══════════════════════════════════════════════════════════
# HELPERS
# ═══════════════════════════════════════════════════════════


def serialize_embedding(embedding: list[float]) -> bytes:
    """Serialize embedding to float32 bytes for SQLite storage."""
    return np.asarray(embedding, dtype=np.float32).tobytes()


def deserialize_embedding(data: bytes) -> np.ndarray:
    """Deserialize float32 bytes back into a vector."""
    return np.frombuffer(data, dtype=np.float32)


@dataclass
class MemoryChunk:
    """A stored unit of text."""
    id: int
    content: str
    type: str = "knowledge"
    source: str = ""
    session_id: str | None = None
    created_at: int = 0


@dataclass
class MemorySearchResult(MemoryChunk):
    """A chunk returned by search, with its cosine distance to the query."""
    distance: float = 0.0

    @property
    def similarity(self) -> int:
        """0-100 display value."""
        return round((1 - self.distance) * 100)


@dataclass
class ChunkInput:
    """One item of a store_chunks batch."""
    content: str
    type: str = "knowledge"
    source: str = ""
    session_id: str | None = None


def _as_chunk_input(item: Any) -> ChunkInput:
    if isinstance(item, ChunkInput):
        return item
    if isinstance(item, str):
        return ChunkInput(content=item)
    return ChunkInput(
        content=item["content"],
        type=item.get("type", "knowledge"),
        source=item.get("source", ""),
        session_id=item.get("session_id"),
    )


# ═══════════════════════════════════════════════════════════
# STORE
# ═══════════════════════════════════════════════════════════


class VectorStore:
    """
    Vector memory with exact cosine search.

    Usage:
        store = VectorStore("~/.agentdeck/memory.db")
        chunk_id = await store.store_chunk("banana bread recipe", type="note", source="kitchen")
        results = await store.search("banana bread", k=3)
    """

    def __init__(
        self,
        db_path: str = "~/.agentdeck/memory.db",
        provider: EmbeddingProvider | None = None,
        dim: int = EMBEDDING_DIM,
    ):
        if db_path == ":memory:":
            self.db_path = db_path
        else:
            path = Path(db_path).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            self.db_path = str(path)
        self.dim = dim
        self._provider = provider
        self._conn: sqlite3.Connection | None = None
        self._write_lock = asyncio.Lock()

    @property
    def provider(self) -> EmbeddingProvider:
        return self._provider or get_provider()

    @property
    def conn(self) -> sqlite3.Connection:
        """Get database connection (lazy initialization)."""
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._create_tables()
        return self._conn

    def _create_tables(self):
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS memory_chunks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT,
                content TEXT NOT NULL,
                type TEXT NOT NULL DEFAULT 'knowledge',
                source TEXT NOT NULL DEFAULT '',
                created_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS memory_embeddings (
                chunk_id INTEGER PRIMARY KEY
                    REFERENCES memory_chunks(id) ON DELETE CASCADE,
                embedding BLOB NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_chunks_source ON memory_chunks(source);
            CREATE INDEX IF NOT EXISTS idx_chunks_type ON memory_chunks(type);
            """
        )
        self._conn.commit()

    def close(self):
        if self._conn:
            self._conn.close()
            self._conn = None

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def _embed(self, texts: list[str]) -> list[list[float]]:
        embeddings = await self.provider.embed_batch(texts)
        if len(embeddings) != len(texts):
            raise EmbeddingError(f"Got {len(embeddings)} embeddings for {len(texts)} texts")
        for vector in embeddings:
            if len(vector) != self.dim:
                raise EmbeddingError(f"Expected {self.dim}-dim embedding, got {len(vector)}")
        return embeddings

    def _insert(self, items: list[ChunkInput], embeddings: list[list[float]]) -> list[int]:
        """Insert rows and embeddings in one transaction."""
        now = int(time.time())
        ids = []
        with self.conn:
            for item, embedding in zip(items, embeddings):
                cur = self.conn.execute(
                    """
                    INSERT INTO memory_chunks (session_id, content, type, source, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (item.session_id, item.content, item.type, item.source, now),
                )
                chunk_id = cur.lastrowid
                self.conn.execute(
                    "INSERT INTO memory_embeddings (chunk_id, embedding) VALUES (?, ?)",
                    (chunk_id, serialize_embedding(embedding)),
                )
                ids.append(chunk_id)
        return ids

    async def store_chunk(self, content: str, type: str = "knowledge", source: str = "",
                          session_id: str = None) -> int:
        """Embed and store one chunk. Returns the new chunk id."""
        ids = await self.store_chunks([ChunkInput(content, type, source, session_id)])
        return ids[0]

    async def store_chunks(self, batch: list) -> list[int]:
        """
        Embed a batch in one provider call and store it atomically.

        Items may be ChunkInput, dicts with a "content" key, or plain strings.
        Either every chunk is written or none is. Returns ids in input order.
        """
        items = [_as_chunk_input(item) for item in batch]
        if not items:
            return []
        for item in items:
            if item.type not in CHUNK_TYPES:
                raise ValueError(f"Unknown chunk type: {item.type}")

        embeddings = await self._embed([item.content for item in items])

        async with self._write_lock:
            ids = self._insert(items, embeddings)

        logger.debug("Stored %d memory chunks", len(ids))
        return ids

    async def delete_chunk(self, chunk_id: int) -> bool:
        """Remove a chunk and its embedding."""
        async with self._write_lock:
            with self.conn:
                self.conn.execute("DELETE FROM memory_embeddings WHERE chunk_id = ?", (chunk_id,))
                cur = self.conn.execute("DELETE FROM memory_chunks WHERE id = ?", (chunk_id,))
        return cur.rowcount > 0

    async def delete_by_source(self, prefix: str) -> int:
        """Remove every chunk whose source starts with prefix. Returns the count."""
        if not prefix:
            raise ValueError("Refusing to delete with an empty source prefix")
        async with self._write_lock:
            with self.conn:
                self.conn.execute(
                    """
                    DELETE FROM memory_embeddings WHERE chunk_id IN (
                        SELECT id FROM memory_chunks WHERE substr(source, 1, length(?)) = ?
                    )
                    """,
                    (prefix, prefix),
                )
                cur = self.conn.execute(
                    "DELETE FROM memory_chunks WHERE substr(source, 1, length(?)) = ?",
                    (prefix, prefix),
                )
        return cur.rowcount

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def search(self, query: str, k: int = 5, source_prefix: str = None,
                     type: str = None) -> list[MemorySearchResult]:
        """k nearest chunks to the query, ascending by cosine distance."""
        if k <= 0:
            return []
        query_vec = np.asarray((await self._embed([query]))[0], dtype=np.float32)

        sql = """
            SELECT c.id, c.session_id, c.content, c.type, c.source, c.created_at, e.embedding
            FROM memory_chunks c
            JOIN memory_embeddings e ON e.chunk_id = c.id
        """
        where, params = [], []
        if source_prefix:
            where.append("substr(c.source, 1, length(?)) = ?")
            params.extend([source_prefix, source_prefix])
        if type:
            where.append("c.type = ?")
            params.append(type)
        if where:
            sql += " WHERE " + " AND ".join(where)

        rows = [
            r for r in self.conn.execute(sql, params).fetchall()
            if len(r["embedding"]) == self.dim * 4
        ]
        if not rows:
            return []

        matrix = np.vstack([deserialize_embedding(r["embedding"]) for r in rows])
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query_vec)
        dots = matrix @ query_vec
        similarities = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)
        distances = 1.0 - similarities

        order = np.argsort(distances, kind="stable")[:k]
        return [
            MemorySearchResult(
                id=rows[i]["id"],
                content=rows[i]["content"],
                type=rows[i]["type"],
                source=rows[i]["source"],
                session_id=rows[i]["session_id"],
                created_at=rows[i]["created_at"],
                distance=float(distances[i]),
            )
            for i in order
        ]

    def get_chunk(self, chunk_id: int) -> MemoryChunk | None:
        row = self.conn.execute(
            "SELECT id, session_id, content, type, source, created_at FROM memory_chunks WHERE id = ?",
            (chunk_id,),
        ).fetchone()
        return MemoryChunk(**dict(row)) if row else None

    def count(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM memory_chunks").fetchone()[0]

    def get_stats(self) -> dict:
        """Total chunk count and a per-type breakdown."""
        rows = self.conn.execute(
            "SELECT type, COUNT(*) AS n FROM memory_chunks GROUP BY type"
        ).fetchall()
        by_type = {r["type"]: r["n"] for r in rows}
        return {"total": sum(by_type.values()), "by_type": by_type}
