"""
Data model for the knowledge store: entries, their metadata, and the
transient structures passed between the indexer, stores and searcher.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

CATEGORIES: tuple[str, ...] = (
    "architecture",
    "component",
    "domain",
    "pattern",
    "gotcha",
    "discovery",
    "general",
)

SOURCES: tuple[str, ...] = ("markdown", "session", "discovery", "manual")

DEFAULT_CATEGORY = "general"


@dataclass
class MemoryMetadata:
    """Metadata attached to each memory entry."""
    category: str = DEFAULT_CATEGORY
    source: str = "manual"
    file_path: Optional[str] = None
    section_title: Optional[str] = None
    keywords: list[str] = field(default_factory=list)
    reference_count: int = 0
    promoted: bool = False
    promoted_at: Optional[str] = None


@dataclass
class MemoryEntry:
    """A single entry stored in the vector store."""
    id: str
    content: str
    metadata: MemoryMetadata
    created_at: str
    updated_at: str


@dataclass
class MemoryEntryInput:
    """Input for creating a new memory entry."""
    content: str
    metadata: MemoryMetadata = field(default_factory=MemoryMetadata)


@dataclass
class MemorySearchResult:
    """A search hit with its relevance score."""
    entry: MemoryEntry
    score: float


@dataclass
class FtsSearchResult:
    """BM25 hit with its score normalized to [0, 1]."""
    id: str
    score: float


@dataclass
class RankedItem:
    """An id with its accumulated fusion score during RRF."""
    id: str
    rrf_score: float
    entry: Optional[MemoryEntry] = None


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string with a ``Z`` suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
