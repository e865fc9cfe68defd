"""
Shared fixtures: a deterministic embedding provider and connected stores
rooted in ``tmp_path``.
"""

from __future__ import annotations

import hashlib
import re

import pytest
import pytest_asyncio

from knowledge_memory.kb.local.embedder import EmbeddingProvider

FAKE_DIMENSIONS = 64

_WORD_RE = re.compile(r"[a-z0-9]+")


def bag_of_words(text: str, dims: int = FAKE_DIMENSIONS) -> list[float]:
    """Hash each lower-cased word into one of *dims* buckets."""
    vec = [0.0] * dims
    for word in _WORD_RE.findall(text.lower()):
        bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % dims
        vec[bucket] += 1.0
    return vec


class FakeEmbeddingProvider(EmbeddingProvider):
    """Offline provider; texts sharing words get similar vectors."""

    def __init__(self) -> None:
        super().__init__("fake-bag-of-words")
        self._dimensions = FAKE_DIMENSIONS
        self.embedded: list[str] = []

    def _request(self, texts: list[str]) -> list[list[float]]:
        self.embedded.extend(texts)
        return [bag_of_words(t) for t in texts]


@pytest.fixture
def embedder():
    return FakeEmbeddingProvider()


@pytest_asyncio.fixture
async def repository(tmp_path, embedder):
    from knowledge_memory.kb.local.vector_store import MemoryRepository
    repo = MemoryRepository(str(tmp_path / "store" / "vectors.db"), embedder)
    await repo.connect()
    yield repo
    await repo.disconnect()


@pytest.fixture
def fts_store(tmp_path):
    from knowledge_memory.kb.local.fts_store import FtsStore
    store = FtsStore(str(tmp_path / "store" / "fts.sqlite"))
    store.open()
    yield store
    store.close()


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every KNOWLEDGE_MEMORY_* / OPENAI_API_KEY override."""
    import os
    for key in list(os.environ):
        if key.startswith("KNOWLEDGE_MEMORY_") or key == "OPENAI_API_KEY":
            monkeypatch.delenv(key, raising=False)
    return monkeypatch
