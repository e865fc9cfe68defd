"""
Embedding providers for the knowledge store.

Two adapters are available: a local Ollama server (``/api/embed``) and the
OpenAI Embeddings API.  Both are synchronous HTTP clients wrapped in an
async interface; the blocking call runs in a worker thread.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import time
from typing import TYPE_CHECKING

import requests

from knowledge_memory.errors import ConfigError, EmbeddingError

if TYPE_CHECKING:
    from knowledge_memory.config import MemoryConfig

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MAX_RETRIES = 3
BATCH_SIZE = 100
REQUEST_TIMEOUT = (10, 120)

# Known output sizes; other models report theirs on the first response.
_KNOWN_DIMENSIONS = {
    "nomic-embed-text": 768,
    "mxbai-embed-large": 1024,
    "all-minilm": 384,
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


class EmbeddingProvider(abc.ABC):
    """Turns text into fixed-size float vectors."""

    def __init__(self, model: str):
        self._model = model
        self._dimensions = _KNOWN_DIMENSIONS.get(model, 0)

    @property
    def model_name(self) -> str:
        return self._model

    @property
    def dimensions(self) -> int:
        """Vector size; 0 until known."""
        return self._dimensions

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        vectors: list[list[float]] = []
        for start in range(0, len(texts), BATCH_SIZE):
            batch = texts[start:start + BATCH_SIZE]
            vectors.extend(await asyncio.to_thread(self._embed_with_retry, batch))
        if vectors and not self._dimensions:
            self._dimensions = len(vectors[0])
        return vectors

    def _embed_with_retry(self, texts: list[str]) -> list[list[float]]:
        """
        Call :meth:`_request` with exponential back-off.

        Raises
        ------
        EmbeddingError
            If all retries are exhausted.
        """
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                return self._request(texts)
            except Exception as exc:
                if attempt < MAX_RETRIES:
                    wait = 2 ** attempt
                    logger.warning(
                        "Embedding error from %s (attempt %d/%d): %s; retrying in %ds",
                        self._model, attempt, MAX_RETRIES, exc, wait,
                    )
                    time.sleep(wait)
                else:
                    raise EmbeddingError(
                        f"Embedding failed after {MAX_RETRIES} attempts: {exc}",
                        context={"model": self._model},
                    ) from exc
        raise EmbeddingError("Embedding failed", context={"model": self._model})

    @abc.abstractmethod
    def _request(self, texts: list[str]) -> list[list[float]]:
        """Perform one blocking embedding request."""


class OllamaEmbeddingProvider(EmbeddingProvider):
    """Embeddings from a local Ollama server."""

    def __init__(self, base_url: str, model: str):
        super().__init__(model)
        if "/api/" in base_url:
            self._api_root = base_url.rsplit("/api/", 1)[0]
        else:
            self._api_root = base_url.rstrip("/")

    def _request(self, texts: list[str]) -> list[list[float]]:
        response = requests.post(
            f"{self._api_root}/api/embed",
            json={"model": self._model, "input": texts},
            timeout=REQUEST_TIMEOUT,
        )
        response.raise_for_status()
        embeddings = response.json().get("embeddings") or []
        if len(embeddings) != len(texts):
            raise ValueError(
                f"expected {len(texts)} embeddings, got {len(embeddings)}"
            )
        return embeddings


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """Embeddings from the OpenAI API (requires the ``openai`` extra)."""

    def __init__(self, api_key: str, model: str):
        super().__init__(model)
        if not api_key:
            raise ConfigError("OPENAI_API_KEY is not set")
        self._api_key = api_key
        self._client = None

    def _get_client(self):
        if self._client is None:
            try:
                import openai  # type: ignore
            except ImportError as exc:
                raise ConfigError(
                    "openai package is required for OpenAI embeddings. "
                    "Install it with: pip install 'knowledge-memory[openai]'"
                ) from exc
            self._client = openai.OpenAI(api_key=self._api_key)
        return self._client

    def _request(self, texts: list[str]) -> list[list[float]]:
        response = self._get_client().embeddings.create(model=self._model, input=texts)
        return [item.embedding for item in response.data]


def create_embedding_provider(config: "MemoryConfig") -> EmbeddingProvider:
    """Build the provider selected in *config*."""
    provider = config.EMBEDDING_PROVIDER
    if provider == "ollama":
        return OllamaEmbeddingProvider(config.EMBEDDING_BASE_URL, config.EMBEDDING_MODEL)
    if provider == "openai":
        model = config.EMBEDDING_MODEL
        if model == "nomic-embed-text":
            model = "text-embedding-3-small"
        return OpenAIEmbeddingProvider(config.OPENAI_API_KEY, model)
    raise ConfigError(f"Unknown embedding provider: {provider}")
