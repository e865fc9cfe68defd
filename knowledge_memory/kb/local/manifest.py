"""
JSON-backed change-tracking record for the knowledge indexer.

Tracks the content hash of every indexed knowledge file (for incremental
re-indexing), when the last run finished, and whether discovery has run.
The record lives in ``.memory/store/meta.json`` with camelCase keys.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Optional

from knowledge_memory.errors import FileSystemError
from knowledge_memory.kb.local.models import utc_now

logger = logging.getLogger(__name__)

META_VERSION = 1


@dataclass
class DiscoveryStatus:
    complete: bool = False
    last_run_at: Optional[str] = None


@dataclass
class IndexerMeta:
    """In-memory form of ``meta.json``."""
    version: int = META_VERSION
    last_indexed_at: str = ""
    file_hashes: dict[str, str] = field(default_factory=dict)
    discovery: DiscoveryStatus = field(default_factory=DiscoveryStatus)

    def to_dict(self) -> dict:
        discovery: dict = {"complete": self.discovery.complete}
        if self.discovery.last_run_at:
            discovery["lastRunAt"] = self.discovery.last_run_at
        return {
            "version": self.version,
            "lastIndexedAt": self.last_indexed_at,
            "fileHashes": dict(self.file_hashes),
            "discovery": discovery,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "IndexerMeta":
        discovery = data.get("discovery") or {}
        hashes = data.get("fileHashes") or {}
        if not isinstance(hashes, dict) or not isinstance(discovery, dict):
            raise ValueError("fileHashes and discovery must be objects")
        return cls(
            version=int(data.get("version", META_VERSION)),
            last_indexed_at=str(data.get("lastIndexedAt", "")),
            file_hashes={str(k): str(v) for k, v in hashes.items()},
            discovery=DiscoveryStatus(
                complete=bool(discovery.get("complete", False)),
                last_run_at=discovery.get("lastRunAt"),
            ),
        )


class Manifest:
    """
    Lazily-loaded change-tracking record.

    All mutators change the in-memory record only; call :meth:`save` to
    persist.

    Parameters
    ----------
    meta_path:
        Path to the JSON file.  A missing file yields a fresh record.
    """

    def __init__(self, meta_path: str):
        self._meta_path = meta_path
        self._meta: Optional[IndexerMeta] = None

    @property
    def path(self) -> str:
        return self._meta_path

    # ------------------------------------------------------------------
    # Load / save
    # ------------------------------------------------------------------

    def load(self) -> IndexerMeta:
        """Return the record, reading it from disk on first use."""
        if self._meta is not None:
            return self._meta

        if not os.path.exists(self._meta_path):
            logger.debug("No manifest at %s; starting fresh", self._meta_path)
            self._meta = IndexerMeta()
            return self._meta

        try:
            with open(self._meta_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("top level is not an object")
            self._meta = IndexerMeta.from_dict(data)
        except (OSError, ValueError) as exc:
            raise FileSystemError(
                f"Failed to load index metadata: {exc}", self._meta_path,
            ) from exc
        return self._meta

    def save(self, meta: Optional[IndexerMeta] = None) -> None:
        """Write *meta* (or the cached record) to disk, creating parent dirs."""
        if meta is not None:
            self._meta = meta
        if self._meta is None:
            self._meta = IndexerMeta()

        try:
            os.makedirs(os.path.dirname(self._meta_path) or ".", exist_ok=True)
            with open(self._meta_path, "w", encoding="utf-8") as f:
                json.dump(self._meta.to_dict(), f, indent=2)
        except OSError as exc:
            raise FileSystemError(
                f"Failed to save index metadata: {exc}", self._meta_path,
            ) from exc

    def clear(self) -> None:
        """Reset to a fresh record and persist it."""
        self._meta = IndexerMeta()
        self.save()

    # ------------------------------------------------------------------
    # File hashes
    # ------------------------------------------------------------------

    def get_file_hash(self, file_path: str) -> Optional[str]:
        return self.load().file_hashes.get(file_path)

    def set_file_hash(self, file_path: str, content_hash: str) -> None:
        self.load().file_hashes[file_path] = content_hash

    def remove_file_hash(self, file_path: str) -> None:
        self.load().file_hashes.pop(file_path, None)

    def update_last_indexed_at(self) -> None:
        self.load().last_indexed_at = utc_now()

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def is_discovered(self) -> bool:
        return self.load().discovery.complete

    def set_discovered(self, complete: bool) -> None:
        discovery = self.load().discovery
        discovery.complete = complete
        if complete:
            discovery.last_run_at = utc_now()
