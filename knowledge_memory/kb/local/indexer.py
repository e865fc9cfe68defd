"""
Knowledge indexer: turns the markdown files under ``.memory/knowledge``
into stored entries.

Files are processed one at a time.  Unchanged files (same content hash as
the last run) are skipped unless ``force`` is set; a changed file has all of
its previous entries replaced.  A failure on one file is recorded in the
result and the run continues with the next file.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Optional

from knowledge_memory.kb.local.directives import parse_directives
from knowledge_memory.kb.local.hasher import hash_content
from knowledge_memory.kb.local.models import (
    CATEGORIES,
    DEFAULT_CATEGORY,
    MemoryEntryInput,
    MemoryMetadata,
)
from knowledge_memory.kb.local.parser import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_OVERLAP_PERCENT,
    chunk_by_headers,
    parse_markdown,
)

if TYPE_CHECKING:
    from knowledge_memory.kb.local.fts_store import FtsStore
    from knowledge_memory.kb.local.manifest import Manifest
    from knowledge_memory.kb.local.vector_store import MemoryRepository

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class IndexProgress:
    current: int
    total: int
    file: str


@dataclass
class FileIndexError:
    """A file that failed to index and why."""
    file: str
    error: str


@dataclass
class IndexResult:
    files_processed: int = 0
    files_skipped: int = 0
    entries_created: int = 0
    entries_updated: int = 0
    entries_deleted: int = 0
    errors: list[FileIndexError] = field(default_factory=list)
    duration_ms: int = 0


# ---------------------------------------------------------------------------
# File walker
# ---------------------------------------------------------------------------

def find_markdown_files(knowledge_dir: str) -> list[str]:
    """
    Return absolute paths of every ``*.md`` file under *knowledge_dir*.

    Files whose name starts with ``_`` are excluded.  Directories that cannot
    be read are logged and skipped.
    """
    results: list[str] = []

    def _on_error(exc: OSError) -> None:
        logger.warning("Could not read directory %s: %s", exc.filename, exc.strerror or exc)

    for dirpath, dirnames, filenames in os.walk(knowledge_dir, onerror=_on_error):
        dirnames.sort()
        for fname in sorted(filenames):
            if fname.endswith(".md") and not fname.startswith("_"):
                results.append(os.path.join(dirpath, fname))

    return results


def _relative_path(path: str, root: str) -> str:
    return os.path.relpath(path, root).replace(os.sep, "/")


def _has_traversal(rel_path: str) -> bool:
    return ".." in rel_path.split("/")


# ---------------------------------------------------------------------------
# Indexer
# ---------------------------------------------------------------------------

class Indexer:
    """
    Incremental markdown indexer.

    Parameters
    ----------
    repository:
        Connected vector store receiving the chunks.  May be None when the
        indexer only runs dry runs, which never touch storage.
    manifest:
        Change-tracking record holding per-file hashes.
    knowledge_dir:
        Root directory of the knowledge files.
    chunk_size:
        Maximum characters per chunk.
    chunk_overlap_percent:
        Share of each chunk repeated at the start of the next one.
    fts_store:
        Optional keyword index kept in sync on a best-effort basis.
    """

    def __init__(
        self,
        repository: Optional["MemoryRepository"],
        manifest: "Manifest",
        knowledge_dir: str,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunk_overlap_percent: int = DEFAULT_OVERLAP_PERCENT,
        fts_store: Optional["FtsStore"] = None,
    ) -> None:
        self._repository = repository
        self._manifest = manifest
        self._knowledge_dir = knowledge_dir
        self._chunk_size = chunk_size
        self._chunk_overlap_percent = chunk_overlap_percent
        self._fts_store = fts_store

    def _find_files(self) -> list[str]:
        return find_markdown_files(self._knowledge_dir)

    async def index(
        self,
        force: bool = False,
        dry_run: bool = False,
        on_progress: Optional[Callable[[IndexProgress], None]] = None,
    ) -> IndexResult:
        """
        Index every knowledge file.

        Parameters
        ----------
        force:
            Re-index files even when their hash is unchanged.
        dry_run:
            Parse and chunk but write nothing (entries, hashes, timestamps).
        on_progress:
            Called once per file before it is processed.

        Returns
        -------
        IndexResult
            Counters, per-file errors and wall-clock duration.
        """
        start = time.monotonic()
        result = IndexResult()

        self._manifest.load()
        files = self._find_files()
        logger.info("Found %d markdown files", len(files))

        total = len(files)
        for idx, path in enumerate(files):
            rel_path = _relative_path(path, self._knowledge_dir)

            if _has_traversal(rel_path):
                logger.warning("Skipping path with traversal: %s", rel_path)
                result.files_skipped += 1
                continue

            if on_progress:
                on_progress(IndexProgress(current=idx + 1, total=total, file=rel_path))

            try:
                await self._index_file(path, rel_path, force, dry_run, result)
            except Exception as exc:
                logger.error("Failed to index %s: %s", rel_path, exc)
                result.errors.append(FileIndexError(file=rel_path, error=str(exc)))

        if not dry_run:
            self._manifest.update_last_indexed_at()
            self._manifest.save()

        result.duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "Indexing complete: %d processed, %d skipped, %d created, %d deleted, "
            "%d errors in %dms",
            result.files_processed, result.files_skipped, result.entries_created,
            result.entries_deleted, len(result.errors), result.duration_ms,
        )
        return result

    async def _index_file(
        self,
        path: str,
        rel_path: str,
        force: bool,
        dry_run: bool,
        result: IndexResult,
    ) -> None:
        with open(path, "r", encoding="utf-8") as f:
            content = f.read()
        content_hash = hash_content(content)

        if not force and self._manifest.get_file_hash(rel_path) == content_hash:
            logger.debug("Skipping unchanged: %s", rel_path)
            result.files_skipped += 1
            return

        directives = parse_directives(content)
        for warning in directives.warnings:
            logger.warning("%s: %s", rel_path, warning)
        if not directives.vector_index:
            logger.debug("Skipping (vector-index: false): %s", rel_path)
            result.files_skipped += 1
            return

        parsed = parse_markdown(content)
        chunks = chunk_by_headers(
            parsed.content,
            max_chunk_size=self._chunk_size,
            overlap_percent=self._chunk_overlap_percent,
        )
        if not chunks:
            logger.warning("Empty file: %s", rel_path)
            result.files_skipped += 1
            return

        if not dry_run:
            result.entries_deleted += await self._repository.delete_by_file(rel_path)
            if self._fts_store is not None:
                try:
                    await self._fts_store.delete_by_file(rel_path)
                except Exception as exc:
                    logger.warning("FTS cleanup failed for %s: %s", rel_path, exc)

            category = parsed.frontmatter.get("category")
            if category not in CATEGORIES:
                if category is not None:
                    logger.warning("%s: unknown category %r, using %s",
                                   rel_path, category, DEFAULT_CATEGORY)
                category = DEFAULT_CATEGORY

            for chunk in chunks:
                entry = await self._repository.add(MemoryEntryInput(
                    content=chunk.content,
                    metadata=MemoryMetadata(
                        category=category,
                        source="markdown",
                        file_path=rel_path,
                        section_title=chunk.title or None,
                        keywords=list(directives.keywords),
                    ),
                ))
                result.entries_created += 1

                if self._fts_store is not None:
                    try:
                        await self._fts_store.add(entry)
                    except Exception as exc:
                        logger.warning("FTS sync failed for entry %s: %s", entry.id, exc)

            self._manifest.set_file_hash(rel_path, content_hash)

        result.files_processed += 1

    async def rebuild_keyword_index(self) -> int:
        """Replace the keyword index with every stored entry; returns the count."""
        if self._fts_store is None:
            return 0
        total = await self._repository.count()
        entries = await self._repository.list(limit=total) if total else []
        await self._fts_store.clear()
        await self._fts_store.add_batch(entries)
        logger.info("Rebuilt keyword index with %d entries", len(entries))
        return len(entries)
