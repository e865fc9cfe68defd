"""
SQLite FTS5 keyword index for knowledge entries.

Mirrors the searchable fields of every entry into an FTS5 virtual table
(``porter unicode61`` tokenizer) and ranks matches with BM25.  Scores are
min-max normalized within each result set so the best hit scores 1.0.

Storage: ``.memory/store/fts.sqlite``
"""

from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
import threading

from knowledge_memory.errors import StorageError
from knowledge_memory.kb.local.models import FtsSearchResult, MemoryEntry

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE VIRTUAL TABLE IF NOT EXISTS memory_fts USING fts5(
    id UNINDEXED,
    content,
    category,
    source,
    file_path,
    section_title,
    keywords,
    tokenize = 'porter unicode61'
);
"""

_INSERT = (
    "INSERT INTO memory_fts(id, content, category, source, file_path, section_title, keywords) "
    "VALUES (?, ?, ?, ?, ?, ?, ?)"
)


def normalize_bm25(rows: list[tuple[str, float]]) -> list[FtsSearchResult]:
    """
    Map raw FTS5 ranks onto [0, 1].

    FTS5 ranks are negative BM25 values where more negative means more
    relevant, so the lowest rank maps to 1.0.  When all ranks are equal every
    hit scores 1.0.
    """
    if not rows:
        return []
    ranks = [rank for _, rank in rows]
    lo, hi = min(ranks), max(ranks)
    spread = hi - lo
    if spread == 0:
        return [FtsSearchResult(id=entry_id, score=1.0) for entry_id, _ in rows]
    return [FtsSearchResult(id=entry_id, score=(hi - rank) / spread) for entry_id, rank in rows]


def _entry_to_row(entry: MemoryEntry) -> tuple:
    m = entry.metadata
    return (
        entry.id,
        entry.content,
        m.category,
        m.source,
        m.file_path or "",
        m.section_title or "",
        " ".join(m.keywords),
    )


class FtsStore:
    """
    BM25 keyword index over knowledge entries.

    :meth:`open` and :meth:`close` are synchronous; the data operations are
    coroutines that run SQLite work in a worker thread.

    Parameters
    ----------
    db_path:
        Path to the SQLite database holding the FTS5 table.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> None:
        if self._conn is not None:
            return
        try:
            os.makedirs(os.path.dirname(self._db_path) or ".", exist_ok=True)
            conn = sqlite3.connect(self._db_path, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_CREATE_TABLE)
            conn.commit()
        except (OSError, sqlite3.Error) as exc:
            raise StorageError(
                f"Failed to open FTS database: {exc}", "FTS_OPEN",
                context={"path": self._db_path},
            ) from exc
        self._conn = conn
        logger.debug("FTS store opened at %s", self._db_path)

    def close(self) -> None:
        if self._conn is not None:
            with self._lock:
                self._conn.close()
            self._conn = None

    def is_open(self) -> bool:
        return self._conn is not None

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageError("FTS database not open", "FTS_NOT_OPEN")
        return self._conn

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _write(self, entries: list[MemoryEntry]) -> None:
        conn = self._require_conn()
        with self._lock:
            # Re-adding an id replaces its row.
            for entry in entries:
                conn.execute("DELETE FROM memory_fts WHERE id = ?", (entry.id,))
                conn.execute(_INSERT, _entry_to_row(entry))
            conn.commit()

    async def add(self, entry: MemoryEntry) -> None:
        try:
            await asyncio.to_thread(self._write, [entry])
        except sqlite3.Error as exc:
            raise StorageError(
                f"Failed to add entry to FTS index: {exc}", "FTS_ADD",
                context={"entry_id": entry.id},
            ) from exc

    async def add_batch(self, entries: list[MemoryEntry]) -> None:
        if not entries:
            return
        try:
            await asyncio.to_thread(self._write, entries)
        except sqlite3.Error as exc:
            raise StorageError(
                f"Failed to batch add entries to FTS index: {exc}", "FTS_ADD_BATCH",
                context={"count": len(entries)},
            ) from exc

    def _execute(self, sql: str, params: tuple = ()) -> None:
        conn = self._require_conn()
        with self._lock:
            conn.execute(sql, params)
            conn.commit()

    async def delete(self, entry_id: str) -> None:
        try:
            await asyncio.to_thread(self._execute, "DELETE FROM memory_fts WHERE id = ?", (entry_id,))
        except sqlite3.Error as exc:
            raise StorageError(
                f"Failed to delete entry from FTS index: {exc}", "FTS_DELETE",
                context={"entry_id": entry_id},
            ) from exc

    async def delete_by_file(self, file_path: str) -> None:
        try:
            await asyncio.to_thread(
                self._execute, "DELETE FROM memory_fts WHERE file_path = ?", (file_path,),
            )
        except sqlite3.Error as exc:
            raise StorageError(
                f"Failed to delete file entries from FTS index: {exc}", "FTS_DELETE",
                context={"file_path": file_path},
            ) from exc

    async def clear(self) -> None:
        """Drop every row."""
        try:
            await asyncio.to_thread(self._execute, "DELETE FROM memory_fts")
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to clear FTS index: {exc}", "FTS_CLEAR") from exc

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def _query(self, query: str, limit: int) -> list[tuple[str, float]]:
        conn = self._require_conn()
        with self._lock:
            return conn.execute(
                "SELECT id, rank FROM memory_fts WHERE memory_fts MATCH ? "
                "ORDER BY rank LIMIT ?",
                (query, limit),
            ).fetchall()

    async def search(self, query: str, limit: int = 10) -> list[FtsSearchResult]:
        """
        BM25 search; blank or malformed queries return no results.

        Parameters
        ----------
        query:
            FTS5 MATCH expression (plain words work).
        limit:
            Maximum number of hits.

        Returns
        -------
        list[FtsSearchResult]
            Best match first, scores normalized to [0, 1].
        """
        self._require_conn()
        if not query or not query.strip():
            return []
        try:
            rows = await asyncio.to_thread(self._query, query.strip(), limit)
        except sqlite3.Error as exc:
            logger.warning("FTS search query error: %s", exc)
            return []
        return normalize_bm25([(row[0], row[1]) for row in rows])

    async def count(self) -> int:
        def _count() -> int:
            conn = self._require_conn()
            with self._lock:
                return conn.execute("SELECT COUNT(*) FROM memory_fts").fetchone()[0]

        return await asyncio.to_thread(_count)
