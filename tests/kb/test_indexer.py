"""
Unit tests for knowledge_memory.kb.local.indexer
"""

from __future__ import annotations

import os

import pytest


@pytest.fixture
def knowledge_dir(tmp_path):
    path = tmp_path / "knowledge"
    path.mkdir()
    return path


@pytest.fixture
def manifest(tmp_path):
    from knowledge_memory.kb.local.manifest import Manifest
    return Manifest(str(tmp_path / "store" / "meta.json"))


@pytest.fixture
def indexer(repository, manifest, knowledge_dir, fts_store):
    from knowledge_memory.kb.local.indexer import Indexer
    return Indexer(repository, manifest, str(knowledge_dir),
                   chunk_overlap_percent=0, fts_store=fts_store)


class TestFindMarkdownFiles:
    def test_sorted_markdown_only(self, knowledge_dir):
        from knowledge_memory.kb.local.indexer import find_markdown_files
        (knowledge_dir / "b.md").write_text("b")
        (knowledge_dir / "a.md").write_text("a")
        (knowledge_dir / "notes.txt").write_text("x")
        (knowledge_dir / "_draft.md").write_text("x")
        (knowledge_dir / "sub").mkdir()
        (knowledge_dir / "sub" / "c.md").write_text("c")

        found = find_markdown_files(str(knowledge_dir))
        rel = [os.path.relpath(p, knowledge_dir).replace(os.sep, "/") for p in found]
        assert rel == ["a.md", "b.md", "sub/c.md"]

    def test_missing_directory(self, tmp_path):
        from knowledge_memory.kb.local.indexer import find_markdown_files
        assert find_markdown_files(str(tmp_path / "nope")) == []


class TestIndexer:
    @pytest.mark.asyncio
    async def test_first_run_indexes_sections(self, indexer, knowledge_dir, repository):
        (knowledge_dir / "auth.md").write_text(
            "### Login\nUsers log in with email.\n### Logout\nSessions are cleared.\n"
        )
        result = await indexer.index()
        assert result.files_processed == 1
        assert result.files_skipped == 0
        assert result.entries_created == 2
        assert result.errors == []
        assert result.duration_ms >= 0

        entries = await repository.list()
        assert [e.metadata.section_title for e in entries] == ["Login", "Logout"]
        assert all(e.metadata.file_path == "auth.md" for e in entries)
        assert all(e.metadata.source == "markdown" for e in entries)

    @pytest.mark.asyncio
    async def test_unchanged_file_skipped_unless_forced(self, indexer, knowledge_dir):
        (knowledge_dir / "a.md").write_text("### A\nAlpha content.\n")
        await indexer.index()

        second = await indexer.index()
        assert second.files_processed == 0
        assert second.files_skipped == 1

        forced = await indexer.index(force=True)
        assert forced.files_processed == 1
        assert forced.entries_deleted == 1
        assert forced.entries_created == 1

    @pytest.mark.asyncio
    async def test_new_file_alongside_unchanged(self, indexer, knowledge_dir):
        (knowledge_dir / "a.md").write_text("### A\nAlpha content.\n")
        await indexer.index()
        (knowledge_dir / "b.md").write_text("### B1\nFirst part.\n### B2\nSecond part.\n")

        result = await indexer.index()
        assert result.files_processed == 1
        assert result.files_skipped == 1
        assert result.entries_created == 2
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_changed_file_replaces_entries(self, indexer, knowledge_dir, repository):
        path = knowledge_dir / "a.md"
        path.write_text("### One\nFirst.\n### Two\nSecond.\n")
        await indexer.index()
        path.write_text("### Only\nReplacement.\n")

        result = await indexer.index()
        assert result.entries_deleted == 2
        assert result.entries_created == 1
        assert [e.content for e in await repository.list()] == ["Replacement."]

    @pytest.mark.asyncio
    async def test_keyword_index_mirrors_entries(self, indexer, knowledge_dir, fts_store):
        path = knowledge_dir / "a.md"
        path.write_text("### Cache\nInvalidation happens nightly.\n")
        await indexer.index()
        assert len(await fts_store.search("invalidation")) == 1

        path.write_text("### Cache\nEviction is manual.\n")
        await indexer.index()
        assert await fts_store.search("invalidation") == []
        assert len(await fts_store.search("eviction")) == 1

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, indexer, knowledge_dir, repository, manifest):
        (knowledge_dir / "a.md").write_text("### A\nAlpha content.\n")
        result = await indexer.index(dry_run=True)
        assert result.files_processed == 1
        assert result.entries_created == 0
        assert await repository.count() == 0
        assert manifest.get_file_hash("a.md") is None
        assert manifest.load().last_indexed_at == ""
        assert not os.path.exists(manifest.path)

    @pytest.mark.asyncio
    async def test_vector_index_false_is_skipped(self, indexer, knowledge_dir, repository):
        (knowledge_dir / "a.md").write_text(
            "<!-- vector-index: false -->\n### A\nPrivate notes.\n"
        )
        result = await indexer.index()
        assert result.files_skipped == 1
        assert result.files_processed == 0
        assert await repository.count() == 0

    @pytest.mark.asyncio
    async def test_directive_keywords_attached(self, indexer, knowledge_dir, repository):
        (knowledge_dir / "a.md").write_text(
            "<!-- keywords: oauth, tokens -->\n### A\nAuth notes.\n"
        )
        await indexer.index()
        [entry] = await repository.list()
        assert entry.metadata.keywords == ["oauth", "tokens"]

    @pytest.mark.asyncio
    async def test_empty_file_is_skipped(self, indexer, knowledge_dir, caplog):
        (knowledge_dir / "empty.md").write_text("   \n\n")
        result = await indexer.index()
        assert result.files_skipped == 1
        assert result.entries_created == 0
        assert "Empty file: empty.md" in caplog.text

    @pytest.mark.asyncio
    async def test_underscore_files_ignored(self, indexer, knowledge_dir):
        (knowledge_dir / "_template.md").write_text("### T\nTemplate.\n")
        result = await indexer.index()
        assert result.files_processed == 0
        assert result.files_skipped == 0

    @pytest.mark.asyncio
    async def test_frontmatter_category(self, indexer, knowledge_dir, repository):
        (knowledge_dir / "a.md").write_text("---\ncategory: gotcha\n---\n### A\nWatch out.\n")
        (knowledge_dir / "b.md").write_text("---\ncategory: bogus\n---\n### B\nPlain.\n")
        await indexer.index()
        by_file = {e.metadata.file_path: e.metadata.category for e in await repository.list()}
        assert by_file == {"a.md": "gotcha", "b.md": "general"}

    @pytest.mark.asyncio
    async def test_nested_paths_use_forward_slashes(self, indexer, knowledge_dir, manifest):
        (knowledge_dir / "domain").mkdir()
        (knowledge_dir / "domain" / "billing.md").write_text("### Billing\nInvoices.\n")
        await indexer.index()
        assert manifest.get_file_hash("domain/billing.md")

    @pytest.mark.asyncio
    async def test_traversal_path_skipped_even_when_forced(self, indexer, tmp_path):
        outside = tmp_path / "outside.md"
        outside.write_text("### X\nShould never be read.\n")
        indexer._find_files = lambda: [str(outside)]
        progress = []

        result = await indexer.index(force=True, on_progress=progress.append)
        assert result.files_skipped == 1
        assert result.files_processed == 0
        assert progress == []

    @pytest.mark.asyncio
    async def test_progress_reported_per_file(self, indexer, knowledge_dir):
        (knowledge_dir / "a.md").write_text("### A\nOne.\n")
        (knowledge_dir / "b.md").write_text("### B\nTwo.\n")
        progress = []
        await indexer.index(on_progress=progress.append)
        assert [(p.current, p.total, p.file) for p in progress] == [
            (1, 2, "a.md"), (2, 2, "b.md"),
        ]

    @pytest.mark.asyncio
    async def test_file_error_recorded_and_run_continues(self, indexer, knowledge_dir):
        (knowledge_dir / "bad.md").write_bytes(b"### Bad\n\xff\xfe not utf-8\n")
        (knowledge_dir / "good.md").write_text("### Good\nFine.\n")
        result = await indexer.index()
        assert [e.file for e in result.errors] == ["bad.md"]
        assert result.files_processed == 1

    @pytest.mark.asyncio
    async def test_keyword_mirror_failure_is_not_fatal(
        self, repository, manifest, knowledge_dir,
    ):
        from knowledge_memory.kb.local.indexer import Indexer

        class BrokenFts:
            async def add(self, entry):
                raise RuntimeError("fts down")

            async def delete_by_file(self, file_path):
                raise RuntimeError("fts down")

        (knowledge_dir / "a.md").write_text("### A\nAlpha.\n")
        idx = Indexer(repository, manifest, str(knowledge_dir), fts_store=BrokenFts())
        result = await idx.index()
        assert result.errors == []
        assert result.entries_created == 1
        assert await repository.count() == 1

    @pytest.mark.asyncio
    async def test_rebuild_keyword_index(self, indexer, repository, fts_store):
        from knowledge_memory.kb.local.models import MemoryEntryInput
        await repository.add(MemoryEntryInput(content="manually added pelican fact"))
        assert await fts_store.search("pelican") == []

        assert await indexer.rebuild_keyword_index() == 1
        assert len(await fts_store.search("pelican")) == 1
