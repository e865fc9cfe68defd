"""
Configuration: loads settings from ``.memory/config.yaml``, environment
variables, and built-in defaults (priority: env > YAML > defaults).

Invalid values at any layer are logged and ignored, so a bad override never
prevents the knowledge base from starting.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

import yaml

logger = logging.getLogger(__name__)

SEARCH_MODES = ("vector", "keyword", "hybrid")
EMBEDDING_PROVIDERS = ("ollama", "openai")

_DEFAULTS = {
    "min_score": -0.5,
    "chunk_overlap_percent": 15,
    "chunk_size": 2000,
    "default_search_mode": "hybrid",
    "fts_db_name": "fts.sqlite",
    "embedding": {
        "provider": "ollama",
        "model": "nomic-embed-text",
        "base_url": "http://localhost:11434",
        "api_key": "",
    },
}

_KNOWN_KEYS = frozenset(_DEFAULTS)

MEMORY_DIR = ".memory"
CONFIG_FILENAME = "config.yaml"
MCP_CONFIG_FILENAME = ".mcp.json"


# ---------------------------------------------------------------------------
# Project paths
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProjectPaths:
    """Resolved on-disk layout for one project."""
    root: str
    memory_dir: str
    knowledge_dir: str
    store_dir: str
    vectors_db: str
    meta_file: str
    config_file: str
    mcp_config_file: str

    @classmethod
    def for_root(cls, project_root: str) -> "ProjectPaths":
        root = os.path.abspath(project_root)
        memory_dir = os.path.join(root, MEMORY_DIR)
        store_dir = os.path.join(memory_dir, "store")
        return cls(
            root=root,
            memory_dir=memory_dir,
            knowledge_dir=os.path.join(memory_dir, "knowledge"),
            store_dir=store_dir,
            vectors_db=os.path.join(store_dir, "vectors.db"),
            meta_file=os.path.join(store_dir, "meta.json"),
            config_file=os.path.join(memory_dir, CONFIG_FILENAME),
            mcp_config_file=os.path.join(root, MCP_CONFIG_FILENAME),
        )

    def fts_db(self, fts_db_name: str) -> str:
        return os.path.join(self.store_dir, fts_db_name)


# ---------------------------------------------------------------------------
# Validators
# ---------------------------------------------------------------------------

def _valid_min_score(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) \
        and -2 <= value <= 1


def _valid_overlap(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= 50


def _valid_chunk_size(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 100 <= value <= 10000


def _valid_mode(value) -> bool:
    return value in SEARCH_MODES


def _valid_fts_name(value) -> bool:
    return isinstance(value, str) and 1 <= len(value) <= 100


_VALIDATORS = {
    "min_score": (_valid_min_score, "number -2 to 1"),
    "chunk_overlap_percent": (_valid_overlap, "integer 0-50"),
    "chunk_size": (_valid_chunk_size, "integer 100-10000"),
    "default_search_mode": (_valid_mode, "vector|keyword|hybrid"),
    "fts_db_name": (_valid_fts_name, "string of 1-100 characters"),
}

# Environment variable -> (config key, cast)
ENV_MAP = {
    "KNOWLEDGE_MEMORY_MIN_SCORE": ("min_score", float),
    "KNOWLEDGE_MEMORY_CHUNK_OVERLAP": ("chunk_overlap_percent", int),
    "KNOWLEDGE_MEMORY_CHUNK_SIZE": ("chunk_size", int),
    "KNOWLEDGE_MEMORY_SEARCH_MODE": ("default_search_mode", str),
}


def _load_yaml(path: str) -> dict:
    """Load YAML file, returns empty dict on failure."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Invalid config file at %s: %s", path, exc)
        return {}
    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring config file %s: top level is not a mapping", path)
        return {}
    return data


class MemoryConfig:
    """Resolved knowledge-memory configuration.

    Settings are resolved in priority order:
    1. Environment variables
    2. ``.memory/config.yaml``
    3. Built-in defaults
    """

    def __init__(self, yaml_data: dict | None = None):
        yd = yaml_data or {}

        for key in yd:
            if key not in _KNOWN_KEYS:
                logger.warning("Unknown config key ignored: %s", key)

        resolved: dict = {}
        for key, (validator, expected) in _VALIDATORS.items():
            resolved[key] = _DEFAULTS[key]
            if key in yd:
                if validator(yd[key]):
                    resolved[key] = yd[key]
                else:
                    logger.warning(
                        "Invalid config value for %s: %r (expected %s)",
                        key, yd[key], expected,
                    )

        for env_key, (key, cast) in ENV_MAP.items():
            raw = os.getenv(env_key)
            if raw is None:
                continue
            validator, expected = _VALIDATORS[key]
            try:
                value = cast(raw)
            except ValueError:
                value = None
            if value is not None and validator(value):
                resolved[key] = value
            else:
                logger.warning("Invalid %s: %r (expected %s)", env_key, raw, expected)

        self.MIN_SCORE: float = float(resolved["min_score"])
        self.CHUNK_OVERLAP_PERCENT: int = resolved["chunk_overlap_percent"]
        self.CHUNK_SIZE: int = resolved["chunk_size"]
        self.DEFAULT_SEARCH_MODE: str = resolved["default_search_mode"]
        self.FTS_DB_NAME: str = resolved["fts_db_name"]

        # Embedding provider section
        embed_defaults = _DEFAULTS["embedding"]
        embed_section = yd.get("embedding", {})
        if not isinstance(embed_section, dict):
            logger.warning("Config key 'embedding' must be a mapping; using defaults")
            embed_section = {}

        def _get(env_key: str, yaml_key: str) -> str:
            env_val = os.getenv(env_key)
            if env_val is not None:
                return env_val
            yaml_val = embed_section.get(yaml_key)
            if yaml_val is not None:
                return str(yaml_val)
            return embed_defaults[yaml_key]

        provider = _get("KNOWLEDGE_MEMORY_EMBEDDING_PROVIDER", "provider").lower()
        if provider not in EMBEDDING_PROVIDERS:
            logger.warning(
                "Invalid embedding provider %r (expected %s); using %s",
                provider, "|".join(EMBEDDING_PROVIDERS), embed_defaults["provider"],
            )
            provider = embed_defaults["provider"]
        self.EMBEDDING_PROVIDER: str = provider
        self.EMBEDDING_MODEL: str = _get("KNOWLEDGE_MEMORY_EMBEDDING_MODEL", "model")
        self.EMBEDDING_BASE_URL: str = _get("KNOWLEDGE_MEMORY_EMBEDDING_URL", "base_url")
        self.OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY") or str(
            embed_section.get("api_key", embed_defaults["api_key"]))

    @classmethod
    def load(cls, project_root: str | None = None) -> "MemoryConfig":
        """Load config from ``<root>/.memory/config.yaml`` (if present) + env vars + defaults."""
        paths = ProjectPaths.for_root(project_root or os.getcwd())
        yaml_data = _load_yaml(paths.config_file) if os.path.isfile(paths.config_file) else {}
        return cls(yaml_data)
