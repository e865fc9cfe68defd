"""
Search over the knowledge store.

Three modes are supported: ``vector`` (embedding similarity), ``keyword``
(BM25 via SQLite FTS5) and ``hybrid``, which runs both concurrently and
merges the ranked lists with Reciprocal Rank Fusion.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Optional

from knowledge_memory.config import SEARCH_MODES
from knowledge_memory.kb.local.models import (
    FtsSearchResult,
    MemorySearchResult,
    RankedItem,
)

if TYPE_CHECKING:
    from knowledge_memory.config import MemoryConfig
    from knowledge_memory.kb.local.fts_store import FtsStore
    from knowledge_memory.kb.local.vector_store import MemoryRepository

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

RRF_K = 60
OVER_FETCH_FACTOR = 3


def fuse_with_rrf(
    vector_results: list[MemorySearchResult],
    fts_results: list[FtsSearchResult],
    k: int = RRF_K,
) -> list[RankedItem]:
    """
    Merge two ranked lists with Reciprocal Rank Fusion.

    Each list contributes ``1 / (k + rank + 1)`` (0-based rank) to an id's
    score; ids found in both lists receive both contributions.

    Returns
    -------
    list[RankedItem]
        Highest fused score first.  Ties keep first-seen order, vector hits
        before keyword-only hits.  Keyword-only items carry no entry.
    """
    fused: dict[str, RankedItem] = {}

    for rank, result in enumerate(vector_results):
        fused[result.entry.id] = RankedItem(
            id=result.entry.id, rrf_score=1 / (k + rank + 1), entry=result.entry,
        )

    for rank, result in enumerate(fts_results):
        score = 1 / (k + rank + 1)
        item = fused.get(result.id)
        if item is not None:
            item.rrf_score += score
        else:
            fused[result.id] = RankedItem(id=result.id, rrf_score=score)

    return sorted(fused.values(), key=lambda item: item.rrf_score, reverse=True)


class HybridSearch:
    """
    Query front-end combining the vector store and the keyword index.

    Parameters
    ----------
    repository:
        Connected :class:`MemoryRepository`.
    fts_store:
        Open :class:`FtsStore`.
    config:
        Supplies the default mode and minimum vector score.
    rrf_k:
        RRF damping constant.
    over_fetch_factor:
        How many times *limit* each source returns in hybrid mode, so
        filtering still leaves enough results.
    """

    def __init__(
        self,
        repository: "MemoryRepository",
        fts_store: "FtsStore",
        config: "MemoryConfig",
        rrf_k: int = RRF_K,
        over_fetch_factor: int = OVER_FETCH_FACTOR,
    ) -> None:
        self._repository = repository
        self._fts_store = fts_store
        self._config = config
        self._rrf_k = rrf_k
        self._over_fetch_factor = over_fetch_factor

    async def search(
        self,
        query: str,
        limit: int = 5,
        mode: Optional[str] = None,
        category: Optional[str] = None,
        min_score: Optional[float] = None,
    ) -> list[MemorySearchResult]:
        if not query or not query.strip() or limit <= 0:
            return []

        mode = mode or self._config.DEFAULT_SEARCH_MODE
        if mode not in SEARCH_MODES:
            logger.warning("Unknown search mode %r, using hybrid", mode)
            mode = "hybrid"

        if mode == "vector":
            return await self._search_vector(query, limit, min_score, category)
        if mode == "keyword":
            return await self._search_keyword(query, limit, category)
        return await self._search_hybrid(query, limit, category)

    async def _search_vector(
        self,
        query: str,
        limit: int,
        min_score: Optional[float],
        category: Optional[str],
    ) -> list[MemorySearchResult]:
        threshold = self._config.MIN_SCORE if min_score is None else min_score
        results = await self._repository.search(query, limit)
        return [
            r for r in results
            if r.score >= threshold
            and (category is None or r.entry.metadata.category == category)
        ]

    async def _search_keyword(
        self,
        query: str,
        limit: int,
        category: Optional[str],
    ) -> list[MemorySearchResult]:
        results = []
        for hit in await self._fts_store.search(query, limit):
            entry = await self._repository.get(hit.id)
            if entry is None:
                logger.debug("Dropping stale keyword hit %s", hit.id)
                continue
            if category is not None and entry.metadata.category != category:
                continue
            results.append(MemorySearchResult(entry=entry, score=hit.score))
        return results

    async def _search_hybrid(
        self,
        query: str,
        limit: int,
        category: Optional[str],
    ) -> list[MemorySearchResult]:
        over_fetch = limit * self._over_fetch_factor
        vector_results, fts_results = await asyncio.gather(
            self._repository.search(query, over_fetch),
            self._fts_store.search(query, over_fetch),
        )

        results: list[MemorySearchResult] = []
        for item in fuse_with_rrf(vector_results, fts_results, self._rrf_k):
            entry = item.entry
            if entry is None:
                entry = await self._repository.get(item.id)
                if entry is None:
                    logger.debug("Dropping stale keyword hit %s", item.id)
                    continue
            if category is not None and entry.metadata.category != category:
                continue
            results.append(MemorySearchResult(entry=entry, score=item.rrf_score))
            if len(results) >= limit:
                break
        return results
