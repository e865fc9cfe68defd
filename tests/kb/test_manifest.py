"""
Unit tests for knowledge_memory.kb.local.manifest
"""

from __future__ import annotations

import json

import pytest


class TestManifest:
    def test_missing_file_yields_defaults(self, tmp_path):
        from knowledge_memory.kb.local.manifest import Manifest
        m = Manifest(str(tmp_path / "meta.json"))
        meta = m.load()
        assert meta.version == 1
        assert meta.last_indexed_at == ""
        assert meta.file_hashes == {}
        assert meta.discovery.complete is False
        assert not (tmp_path / "meta.json").exists()

    def test_load_is_cached(self, tmp_path):
        from knowledge_memory.kb.local.manifest import Manifest
        m = Manifest(str(tmp_path / "meta.json"))
        assert m.load() is m.load()

    def test_set_and_get_file_hash(self, tmp_path):
        from knowledge_memory.kb.local.manifest import Manifest
        m = Manifest(str(tmp_path / "meta.json"))
        assert m.get_file_hash("a.md") is None
        m.set_file_hash("a.md", "abc")
        assert m.get_file_hash("a.md") == "abc"
        m.remove_file_hash("a.md")
        assert m.get_file_hash("a.md") is None
        m.remove_file_hash("missing.md")

    def test_save_round_trips_with_camel_case_keys(self, tmp_path):
        from knowledge_memory.kb.local.manifest import Manifest
        path = tmp_path / "nested" / "meta.json"
        m = Manifest(str(path))
        m.set_file_hash("docs/a.md", "h1")
        m.update_last_indexed_at()
        m.save()

        data = json.loads(path.read_text())
        assert data["fileHashes"] == {"docs/a.md": "h1"}
        assert data["lastIndexedAt"].endswith("Z")
        assert data["discovery"] == {"complete": False}

        reloaded = Manifest(str(path))
        assert reloaded.get_file_hash("docs/a.md") == "h1"

    def test_mutations_not_persisted_until_save(self, tmp_path):
        from knowledge_memory.kb.local.manifest import Manifest
        path = tmp_path / "meta.json"
        m = Manifest(str(path))
        m.set_file_hash("a.md", "h")
        assert not path.exists()
        assert Manifest(str(path)).get_file_hash("a.md") is None

    def test_set_discovered_stamps_time(self, tmp_path):
        from knowledge_memory.kb.local.manifest import Manifest
        m = Manifest(str(tmp_path / "meta.json"))
        assert m.is_discovered() is False
        m.set_discovered(True)
        assert m.is_discovered() is True
        assert m.load().discovery.last_run_at
        m.save()
        data = json.loads((tmp_path / "meta.json").read_text())
        assert data["discovery"]["complete"] is True
        assert "lastRunAt" in data["discovery"]

    def test_clear_resets_and_saves(self, tmp_path):
        from knowledge_memory.kb.local.manifest import Manifest
        path = tmp_path / "meta.json"
        m = Manifest(str(path))
        m.set_file_hash("a.md", "h")
        m.save()
        m.clear()
        assert m.get_file_hash("a.md") is None
        assert json.loads(path.read_text())["fileHashes"] == {}

    def test_malformed_file_raises(self, tmp_path):
        from knowledge_memory.errors import FileSystemError
        from knowledge_memory.kb.local.manifest import Manifest
        path = tmp_path / "meta.json"
        path.write_text("{not json")
        with pytest.raises(FileSystemError) as exc_info:
            Manifest(str(path)).load()
        assert exc_info.value.code == "FS_ERROR"
        assert exc_info.value.path == str(path)
