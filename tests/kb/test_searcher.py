"""
Unit tests for knowledge_memory.kb.local.searcher
"""

from __future__ import annotations

import pytest
import pytest_asyncio


def _entry(entry_id, category="general"):
    from knowledge_memory.kb.local.models import MemoryEntry, MemoryMetadata
    return MemoryEntry(
        id=entry_id,
        content=f"content {entry_id}",
        metadata=MemoryMetadata(category=category),
        created_at="2024-01-01T00:00:00.000Z",
        updated_at="2024-01-01T00:00:00.000Z",
    )


class TestFuseWithRrf:
    def test_overlap_ranks_first(self):
        from knowledge_memory.kb.local.models import FtsSearchResult, MemorySearchResult
        from knowledge_memory.kb.local.searcher import fuse_with_rrf
        vector = [
            MemorySearchResult(entry=_entry("A"), score=0.9),
            MemorySearchResult(entry=_entry("B"), score=0.8),
        ]
        fts = [FtsSearchResult(id="B", score=1.0), FtsSearchResult(id="C", score=0.5)]

        fused = fuse_with_rrf(vector, fts)
        assert [item.id for item in fused] == ["B", "A", "C"]
        assert fused[0].rrf_score == pytest.approx(1 / 62 + 1 / 61)
        assert fused[1].rrf_score == pytest.approx(1 / 61)
        assert fused[2].rrf_score == pytest.approx(1 / 62)
        assert fused[0].entry is not None
        assert fused[2].entry is None

    def test_ties_keep_vector_first(self):
        from knowledge_memory.kb.local.models import FtsSearchResult, MemorySearchResult
        from knowledge_memory.kb.local.searcher import fuse_with_rrf
        fused = fuse_with_rrf(
            [MemorySearchResult(entry=_entry("V"), score=0.5)],
            [FtsSearchResult(id="K", score=1.0)],
        )
        assert [item.id for item in fused] == ["V", "K"]

    def test_custom_k(self):
        from knowledge_memory.kb.local.models import FtsSearchResult
        from knowledge_memory.kb.local.searcher import fuse_with_rrf
        [item] = fuse_with_rrf([], [FtsSearchResult(id="K", score=1.0)], k=0)
        assert item.rrf_score == 1.0

    def test_empty_inputs(self):
        from knowledge_memory.kb.local.searcher import fuse_with_rrf
        assert fuse_with_rrf([], []) == []


@pytest_asyncio.fixture
async def populated(repository, fts_store):
    from knowledge_memory.kb.local.models import MemoryEntryInput, MemoryMetadata
    texts = [
        ("Database connection pooling keeps twenty sockets open.", "architecture"),
        ("Refresh tokens rotate on every login.", "gotcha"),
        ("Button colors follow the design system.", "component"),
    ]
    entries = []
    for text, category in texts:
        entry = await repository.add(MemoryEntryInput(
            content=text, metadata=MemoryMetadata(category=category),
        ))
        await fts_store.add(entry)
        entries.append(entry)
    return entries


@pytest.fixture
def searcher(repository, fts_store, clean_env):
    from knowledge_memory.config import MemoryConfig
    from knowledge_memory.kb.local.searcher import HybridSearch
    return HybridSearch(repository, fts_store, MemoryConfig())


class TestHybridSearch:
    @pytest.mark.asyncio
    async def test_blank_query_or_zero_limit(self, searcher, populated):
        assert await searcher.search("") == []
        assert await searcher.search("   ") == []
        assert await searcher.search("tokens", limit=0) == []

    @pytest.mark.asyncio
    async def test_hybrid_puts_agreed_hit_first(self, searcher, populated):
        results = await searcher.search("refresh tokens login", mode="hybrid")
        assert results[0].entry.id == populated[1].id
        assert results[0].score == pytest.approx(2 / 61)

    @pytest.mark.asyncio
    async def test_default_mode_is_hybrid(self, searcher, populated):
        default = await searcher.search("refresh tokens login")
        explicit = await searcher.search("refresh tokens login", mode="hybrid")
        assert [r.entry.id for r in default] == [r.entry.id for r in explicit]

    @pytest.mark.asyncio
    async def test_unknown_mode_falls_back_to_hybrid(self, searcher, populated, caplog):
        results = await searcher.search("refresh tokens login", mode="fuzzy")
        assert results[0].score == pytest.approx(2 / 61)
        assert "Unknown search mode" in caplog.text

    @pytest.mark.asyncio
    async def test_hybrid_respects_limit(self, searcher, populated):
        results = await searcher.search("database tokens button", limit=2)
        assert len(results) == 2

    @pytest.mark.asyncio
    async def test_vector_mode_scores_are_similarity(self, searcher, populated):
        results = await searcher.search("database connection pooling", mode="vector", limit=3)
        assert results[0].entry.id == populated[0].id
        assert -1.0 <= results[0].score <= 1.0
        assert results[0].score > results[-1].score

    @pytest.mark.asyncio
    async def test_vector_mode_min_score(self, searcher, populated):
        results = await searcher.search(
            "database connection pooling", mode="vector", limit=3, min_score=0.5,
        )
        assert [r.entry.id for r in results] == [populated[0].id]

    @pytest.mark.asyncio
    async def test_keyword_mode(self, searcher, populated):
        results = await searcher.search("tokens", mode="keyword")
        assert [r.entry.id for r in results] == [populated[1].id]
        assert results[0].score == 1.0

    @pytest.mark.asyncio
    async def test_keyword_mode_drops_stale_ids(self, searcher, populated, repository):
        await repository.delete(populated[1].id)
        assert await searcher.search("tokens", mode="keyword") == []
        results = await searcher.search("tokens", mode="hybrid")
        assert populated[1].id not in [r.entry.id for r in results]

    @pytest.mark.asyncio
    async def test_category_filter(self, searcher, populated):
        for mode in ("vector", "keyword", "hybrid"):
            results = await searcher.search(
                "database tokens button", mode=mode, limit=5, category="gotcha",
            )
            assert [r.entry.metadata.category for r in results] in ([], ["gotcha"])
        hybrid = await searcher.search("tokens", mode="hybrid", category="gotcha")
        assert [r.entry.id for r in hybrid] == [populated[1].id]

    @pytest.mark.asyncio
    async def test_sources_queried_with_over_fetch(self, clean_env):
        from knowledge_memory.config import MemoryConfig
        from knowledge_memory.kb.local.searcher import HybridSearch

        calls = {}

        class RecordingRepo:
            async def search(self, query, limit):
                calls["vector"] = limit
                return []

            async def get(self, entry_id):
                return None

        class RecordingFts:
            async def search(self, query, limit):
                calls["fts"] = limit
                return []

        searcher = HybridSearch(RecordingRepo(), RecordingFts(), MemoryConfig())
        assert await searcher.search("anything", limit=4) == []
        assert calls == {"vector": 12, "fts": 12}
