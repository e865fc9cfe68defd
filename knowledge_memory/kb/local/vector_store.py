"""
SQLite-backed vector store for knowledge entries.

Each row holds the entry text, its metadata columns, a float32 embedding
blob and the content hash used for deduplication.  Similarity search loads
the vectors into numpy and ranks them by cosine similarity.

Storage: ``.memory/store/vectors.db``
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sqlite3
import threading
import uuid
from typing import Optional

import numpy as np

from knowledge_memory.errors import StorageError, ValidationError
from knowledge_memory.kb.local.embedder import EmbeddingProvider
from knowledge_memory.kb.local.hasher import hash_content
from knowledge_memory.kb.local.models import (
    CATEGORIES,
    DEFAULT_CATEGORY,
    MemoryEntry,
    MemoryEntryInput,
    MemoryMetadata,
    MemorySearchResult,
    utc_now,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MAX_ID_LENGTH = 128
MAX_CATEGORY_LENGTH = 64
MAX_FILE_PATH_LENGTH = 1024

_SCHEMA = """
CREATE TABLE IF NOT EXISTS entries (
    id              TEXT PRIMARY KEY,
    content         TEXT    NOT NULL,
    category        TEXT    NOT NULL DEFAULT 'general',
    source          TEXT    NOT NULL DEFAULT 'manual',
    file_path       TEXT    DEFAULT NULL,
    section_title   TEXT    DEFAULT NULL,
    keywords        TEXT    NOT NULL DEFAULT '[]',
    reference_count INTEGER NOT NULL DEFAULT 0,
    promoted        INTEGER NOT NULL DEFAULT 0,
    promoted_at     TEXT    DEFAULT NULL,
    created_at      TEXT    NOT NULL,
    updated_at      TEXT    NOT NULL,
    vector          BLOB    NOT NULL,
    content_hash    TEXT    NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_entries_content_hash ON entries(content_hash);
CREATE INDEX IF NOT EXISTS idx_entries_file     ON entries(file_path);
CREATE INDEX IF NOT EXISTS idx_entries_category ON entries(category);
"""

_ENTRY_COLUMNS = (
    "id, content, category, source, file_path, section_title, keywords, "
    "reference_count, promoted, promoted_at, created_at, updated_at"
)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_id(entry_id: str) -> str:
    if not isinstance(entry_id, str):
        raise ValidationError("ID must be a string", "id")
    if not entry_id:
        raise ValidationError("ID cannot be empty", "id")
    if len(entry_id) > MAX_ID_LENGTH:
        raise ValidationError(
            f"ID exceeds maximum length of {MAX_ID_LENGTH} characters", "id",
        )
    return entry_id


def validate_category(category: str) -> str:
    if not isinstance(category, str):
        raise ValidationError("Category must be a string", "category")
    if len(category) > MAX_CATEGORY_LENGTH:
        raise ValidationError(
            f"Category exceeds maximum length of {MAX_CATEGORY_LENGTH} characters",
            "category",
        )
    if category not in CATEGORIES:
        raise ValidationError(
            f"Invalid category: {category}. Must be one of: {', '.join(CATEGORIES)}",
            "category",
        )
    return category


def validate_file_path(file_path: str) -> str:
    if not isinstance(file_path, str):
        raise ValidationError("File path must be a string", "file_path")
    if not file_path:
        raise ValidationError("File path cannot be empty", "file_path")
    if len(file_path) > MAX_FILE_PATH_LENGTH:
        raise ValidationError(
            f"File path exceeds maximum length of {MAX_FILE_PATH_LENGTH} characters",
            "file_path",
        )
    return file_path


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _vec_to_bytes(vec: list[float]) -> bytes:
    return np.asarray(vec, dtype=np.float32).tobytes()


def _cosine_similarity_batch(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity between *query* (1-D) and each row of *matrix*."""
    query_norm = np.linalg.norm(query)
    if query_norm == 0:
        return np.zeros(matrix.shape[0])
    row_norms = np.linalg.norm(matrix, axis=1)
    row_norms[row_norms == 0] = 1.0
    return (matrix @ query) / (row_norms * query_norm)


def _row_to_entry(row: sqlite3.Row) -> MemoryEntry:
    try:
        keywords = json.loads(row["keywords"] or "[]")
    except (json.JSONDecodeError, TypeError):
        keywords = []
    return MemoryEntry(
        id=row["id"],
        content=row["content"],
        metadata=MemoryMetadata(
            category=row["category"],
            source=row["source"],
            file_path=row["file_path"],
            section_title=row["section_title"],
            keywords=keywords,
            reference_count=row["reference_count"],
            promoted=bool(row["promoted"]),
            promoted_at=row["promoted_at"],
        ),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


# ---------------------------------------------------------------------------
# MemoryRepository
# ---------------------------------------------------------------------------

class MemoryRepository:
    """
    Knowledge entry store with content-hash deduplication.

    All public methods are coroutines; SQLite and numpy work runs in a
    worker thread guarded by a lock.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Created on :meth:`connect`.
    embedder:
        Provider used to embed entry content and search queries.
    """

    def __init__(self, db_path: str, embedder: EmbeddingProvider) -> None:
        self._db_path = db_path
        self._embedder = embedder
        self._lock = threading.Lock()
        # Serializes the lookup, embed and insert steps of add().
        self._add_lock = asyncio.Lock()
        self._conn: sqlite3.Connection | None = None
        self._hash_cache: dict[str, MemoryEntry] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        if self._conn is not None:
            return
        await asyncio.to_thread(self._open)
        logger.debug("Connected to vector store at %s", self._db_path)

    def _open(self) -> None:
        try:
            os.makedirs(os.path.dirname(self._db_path) or ".", exist_ok=True)
            conn = sqlite3.connect(self._db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.executescript(_SCHEMA)
            conn.commit()
        except (OSError, sqlite3.Error) as exc:
            raise StorageError(
                f"Failed to connect to database: {exc}", "CONNECTION",
                context={"path": self._db_path},
            ) from exc
        self._conn = conn

    async def disconnect(self) -> None:
        """Close the connection and drop the dedup cache."""
        self._hash_cache.clear()
        if self._conn is not None:
            with self._lock:
                self._conn.close()
            self._conn = None

    def is_connected(self) -> bool:
        return self._conn is not None

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageError("Database not connected", "NOT_CONNECTED")
        return self._conn

    def _run(self, sql: str, params: tuple = (), *, commit: bool = False) -> list:
        """Execute one statement under the lock and return all rows."""
        conn = self._require_conn()
        with self._lock:
            try:
                rows = conn.execute(sql, params).fetchall()
                if commit:
                    conn.commit()
            except sqlite3.Error as exc:
                raise StorageError(str(exc), "QUERY", context={"sql": sql}) from exc
        return rows

    def _write(self, sql: str, params: tuple = ()) -> int:
        """Execute and commit one write under the lock; return the rowcount."""
        conn = self._require_conn()
        with self._lock:
            try:
                rowcount = conn.execute(sql, params).rowcount
                conn.commit()
            except sqlite3.Error as exc:
                raise StorageError(str(exc), "QUERY", context={"sql": sql}) from exc
        return rowcount

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add(self, entry_input: MemoryEntryInput) -> MemoryEntry:
        """
        Store *entry_input*, or return the existing entry with identical content.

        Returns
        -------
        MemoryEntry
            The newly created entry, or the stored duplicate unchanged.
        """
        self._require_conn()
        meta = entry_input.metadata or MemoryMetadata()
        validate_category(meta.category or DEFAULT_CATEGORY)
        if meta.file_path is not None:
            validate_file_path(meta.file_path)

        content_hash = hash_content(entry_input.content)
        async with self._add_lock:
            existing = await self.find_by_content_hash(content_hash)
            if existing is not None:
                logger.debug(
                    "Duplicate content (hash=%s...), returning existing entry %s",
                    content_hash[:8], existing.id,
                )
                return existing

            vector = await self._embedder.embed(entry_input.content)
            now = utc_now()
            entry = MemoryEntry(
                id=str(uuid.uuid4()),
                content=entry_input.content,
                metadata=MemoryMetadata(
                    category=meta.category or DEFAULT_CATEGORY,
                    source=meta.source or "manual",
                    file_path=meta.file_path,
                    section_title=meta.section_title,
                    keywords=list(meta.keywords),
                    reference_count=meta.reference_count,
                    promoted=meta.promoted,
                    promoted_at=meta.promoted_at,
                ),
                created_at=now,
                updated_at=now,
            )
            m = entry.metadata
            inserted = await asyncio.to_thread(
                self._write,
                f"INSERT INTO entries ({_ENTRY_COLUMNS}, vector, content_hash) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(content_hash) DO NOTHING",
                (
                    entry.id, entry.content, m.category, m.source, m.file_path,
                    m.section_title, json.dumps(m.keywords), m.reference_count,
                    int(m.promoted), m.promoted_at, entry.created_at, entry.updated_at,
                    _vec_to_bytes(vector), content_hash,
                ),
            )
            if not inserted:
                # Another connection stored the same content first.
                winner = await self.find_by_content_hash(content_hash)
                if winner is None:
                    raise StorageError(
                        "Duplicate insert ignored but no stored entry found", "QUERY",
                        context={"content_hash": content_hash},
                    )
                return winner
            self._hash_cache[content_hash] = entry
            return entry

    async def add_batch(self, inputs: list[MemoryEntryInput]) -> list[MemoryEntry]:
        results = []
        for entry_input in inputs:
            results.append(await self.add(entry_input))
        return results

    def _delete_where(self, where: str, params: tuple) -> list[str]:
        """Delete matching rows under the lock; returns their content hashes."""
        conn = self._require_conn()
        with self._lock:
            try:
                hashes = [
                    row[0] for row in conn.execute(
                        f"SELECT content_hash FROM entries WHERE {where}", params,
                    ).fetchall()
                ]
                if hashes:
                    conn.execute(f"DELETE FROM entries WHERE {where}", params)
                    conn.commit()
            except sqlite3.Error as exc:
                raise StorageError(str(exc), "DELETE", context={"where": where}) from exc
        return hashes

    async def delete(self, entry_id: str) -> bool:
        validate_id(entry_id)
        hashes = await asyncio.to_thread(self._delete_where, "id = ?", (entry_id,))
        for content_hash in hashes:
            self._hash_cache.pop(content_hash, None)
        return bool(hashes)

    async def delete_by_file(self, file_path: str) -> int:
        """Delete every entry indexed from *file_path*; returns how many."""
        validate_file_path(file_path)
        hashes = await asyncio.to_thread(self._delete_where, "file_path = ?", (file_path,))
        for content_hash in hashes:
            self._hash_cache.pop(content_hash, None)
        if hashes:
            logger.debug("Deleted %d entries for file %s", len(hashes), file_path)
        return len(hashes)

    async def increment_reference_count(self, entry_id: str) -> None:
        """Bump the retrieval counter of *entry_id*; unknown ids are ignored."""
        validate_id(entry_id)
        await asyncio.to_thread(
            self._run,
            "UPDATE entries SET reference_count = reference_count + 1 WHERE id = ?",
            (entry_id,), commit=True,
        )
        for content_hash, cached in list(self._hash_cache.items()):
            if cached.id == entry_id:
                del self._hash_cache[content_hash]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, entry_id: str) -> Optional[MemoryEntry]:
        validate_id(entry_id)
        rows = await asyncio.to_thread(
            self._run, f"SELECT {_ENTRY_COLUMNS} FROM entries WHERE id = ?", (entry_id,),
        )
        return _row_to_entry(rows[0]) if rows else None

    async def find_by_content_hash(self, content_hash: str) -> Optional[MemoryEntry]:
        cached = self._hash_cache.get(content_hash)
        if cached is not None:
            return cached
        rows = await asyncio.to_thread(
            self._run,
            f"SELECT {_ENTRY_COLUMNS} FROM entries WHERE content_hash = ? LIMIT 1",
            (content_hash,),
        )
        if not rows:
            return None
        entry = _row_to_entry(rows[0])
        self._hash_cache[content_hash] = entry
        return entry

    async def list(self, category: Optional[str] = None, limit: int = 50) -> list[MemoryEntry]:
        if category is not None:
            validate_category(category)
            rows = await asyncio.to_thread(
                self._run,
                f"SELECT {_ENTRY_COLUMNS} FROM entries WHERE category = ? "
                "ORDER BY rowid LIMIT ?",
                (category, limit),
            )
        else:
            rows = await asyncio.to_thread(
                self._run,
                f"SELECT {_ENTRY_COLUMNS} FROM entries ORDER BY rowid LIMIT ?", (limit,),
            )
        return [_row_to_entry(r) for r in rows]

    async def count(self, category: Optional[str] = None) -> int:
        if category is not None:
            validate_category(category)
            rows = await asyncio.to_thread(
                self._run, "SELECT COUNT(*) FROM entries WHERE category = ?", (category,),
            )
        else:
            rows = await asyncio.to_thread(self._run, "SELECT COUNT(*) FROM entries")
        return rows[0][0]

    async def search(self, query: str, limit: int = 5) -> list[MemorySearchResult]:
        """
        Rank stored entries by cosine similarity to *query*.

        Parameters
        ----------
        query:
            Free-text query; embedded with the configured provider.
        limit:
            Maximum number of results.

        Returns
        -------
        list[MemorySearchResult]
            Best match first; scores lie in [-1, 1].
        """
        self._require_conn()
        if limit <= 0:
            return []
        query_vector = await self._embedder.embed(query)
        return await asyncio.to_thread(self._search_sync, query_vector, limit)

    def _search_sync(self, query_vector: list[float], limit: int) -> list[MemorySearchResult]:
        rows = self._run(f"SELECT {_ENTRY_COLUMNS}, vector FROM entries")
        if not rows:
            return []

        query_arr = np.asarray(query_vector, dtype=np.float32)
        usable = []
        for row in rows:
            vec = np.frombuffer(row["vector"], dtype=np.float32)
            if vec.shape[0] == query_arr.shape[0]:
                usable.append((row, vec))
        if len(usable) < len(rows):
            logger.warning(
                "Skipped %d entries with mismatched vector size (re-index after "
                "changing embedding model)", len(rows) - len(usable),
            )
        if not usable:
            return []

        matrix = np.stack([vec for _, vec in usable])
        scores = _cosine_similarity_batch(query_arr, matrix)

        if len(scores) <= limit:
            top_indices = np.argsort(scores)[::-1]
        else:
            top_indices = np.argpartition(scores, -limit)[-limit:]
            top_indices = top_indices[np.argsort(scores[top_indices])[::-1]]

        return [
            MemorySearchResult(entry=_row_to_entry(usable[idx][0]), score=float(scores[idx]))
            for idx in top_indices
        ]
