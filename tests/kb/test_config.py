"""
Unit tests for knowledge_memory.config
"""

from __future__ import annotations

import os


class TestMemoryConfig:
    def test_defaults(self, clean_env):
        from knowledge_memory.config import MemoryConfig
        cfg = MemoryConfig()
        assert cfg.MIN_SCORE == -0.5
        assert cfg.CHUNK_OVERLAP_PERCENT == 15
        assert cfg.CHUNK_SIZE == 2000
        assert cfg.DEFAULT_SEARCH_MODE == "hybrid"
        assert cfg.FTS_DB_NAME == "fts.sqlite"
        assert cfg.EMBEDDING_PROVIDER == "ollama"
        assert cfg.EMBEDDING_MODEL == "nomic-embed-text"
        assert cfg.EMBEDDING_BASE_URL == "http://localhost:11434"

    def test_yaml_overrides_defaults(self, clean_env):
        from knowledge_memory.config import MemoryConfig
        cfg = MemoryConfig({
            "chunk_size": 500,
            "default_search_mode": "keyword",
            "embedding": {"provider": "openai", "model": "text-embedding-3-small"},
        })
        assert cfg.CHUNK_SIZE == 500
        assert cfg.DEFAULT_SEARCH_MODE == "keyword"
        assert cfg.EMBEDDING_PROVIDER == "openai"
        assert cfg.EMBEDDING_MODEL == "text-embedding-3-small"

    def test_env_overrides_yaml(self, clean_env):
        from knowledge_memory.config import MemoryConfig
        clean_env.setenv("KNOWLEDGE_MEMORY_CHUNK_SIZE", "300")
        clean_env.setenv("KNOWLEDGE_MEMORY_MIN_SCORE", "0.25")
        clean_env.setenv("KNOWLEDGE_MEMORY_SEARCH_MODE", "vector")
        cfg = MemoryConfig({"chunk_size": 500, "default_search_mode": "keyword"})
        assert cfg.CHUNK_SIZE == 300
        assert cfg.MIN_SCORE == 0.25
        assert cfg.DEFAULT_SEARCH_MODE == "vector"

    def test_invalid_values_fall_back(self, clean_env, caplog):
        from knowledge_memory.config import MemoryConfig
        clean_env.setenv("KNOWLEDGE_MEMORY_CHUNK_OVERLAP", "not-a-number")
        cfg = MemoryConfig({"chunk_size": 50, "min_score": 5, "default_search_mode": "fuzzy"})
        assert cfg.CHUNK_SIZE == 2000
        assert cfg.MIN_SCORE == -0.5
        assert cfg.DEFAULT_SEARCH_MODE == "hybrid"
        assert cfg.CHUNK_OVERLAP_PERCENT == 15
        assert "KNOWLEDGE_MEMORY_CHUNK_OVERLAP" in caplog.text

    def test_unknown_keys_warned(self, clean_env, caplog):
        from knowledge_memory.config import MemoryConfig
        MemoryConfig({"bogus": 1})
        assert "Unknown config key ignored: bogus" in caplog.text

    def test_unknown_provider_falls_back(self, clean_env):
        from knowledge_memory.config import MemoryConfig
        clean_env.setenv("KNOWLEDGE_MEMORY_EMBEDDING_PROVIDER", "cohere")
        assert MemoryConfig().EMBEDDING_PROVIDER == "ollama"

    def test_load_reads_project_yaml(self, clean_env, tmp_path):
        from knowledge_memory.config import MemoryConfig
        (tmp_path / ".memory").mkdir()
        (tmp_path / ".memory" / "config.yaml").write_text("chunk_overlap_percent: 30\n")
        assert MemoryConfig.load(str(tmp_path)).CHUNK_OVERLAP_PERCENT == 30

    def test_load_ignores_non_mapping_yaml(self, clean_env, tmp_path, caplog):
        from knowledge_memory.config import MemoryConfig
        (tmp_path / ".memory").mkdir()
        (tmp_path / ".memory" / "config.yaml").write_text("- just\n- a list\n")
        cfg = MemoryConfig.load(str(tmp_path))
        assert cfg.CHUNK_SIZE == 2000
        assert "not a mapping" in caplog.text


class TestProjectPaths:
    def test_layout(self, tmp_path):
        from knowledge_memory.config import ProjectPaths
        paths = ProjectPaths.for_root(str(tmp_path))
        assert paths.knowledge_dir == os.path.join(str(tmp_path), ".memory", "knowledge")
        assert paths.vectors_db == os.path.join(str(tmp_path), ".memory", "store", "vectors.db")
        assert paths.meta_file == os.path.join(str(tmp_path), ".memory", "store", "meta.json")
        assert paths.mcp_config_file == os.path.join(str(tmp_path), ".mcp.json")
        assert paths.fts_db("fts.sqlite") == os.path.join(
            str(tmp_path), ".memory", "store", "fts.sqlite")
