"""
Embedding Providers
===================
Text -> fixed-length vector capability used by the memory engine.

Providers:
    - MockEmbeddingProvider: deterministic pseudo-random unit vectors derived
      from a hash of the text. No network, stable across runs.
    - OpenAIEmbeddingProvider: the OpenAI-compatible ``/embeddings`` endpoint
      over aiohttp, with timeout and exponential-backoff retries.

The engine never inspects vector values; it only needs a stable
dimensionality per provider instance.
"""

import hashlib
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence

import aiohttp
import numpy as np
from loguru import logger

from unimem.core.config import EMBEDDING_PROVIDERS, EmbeddingConfig
from unimem.core.exceptions import ConfigurationError, EmbeddingError, UnsupportedProviderError
from unimem.core.http import RetryConfig, request_json
from unimem.core.similarity import normalize


class EmbeddingProvider(ABC):
    """Abstract text embedding capability."""

    name: str = "abstract"

    @abstractmethod
    async def embed(self, text: str) -> List[float]:
        """Embed a single text."""

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed several texts; order of the result matches ``texts``."""
        return [await self.embed(text) for text in texts]

    @abstractmethod
    def dimensions(self) -> int:
        """Length of every vector this provider returns."""

    async def close(self) -> None:
        """Release network resources."""


class MockEmbeddingProvider(EmbeddingProvider):
    """
    Deterministic embeddings for tests and offline use.

    The same text always maps to the same unit vector; different texts map
    to (almost) orthogonal ones, so similarity between unrelated texts is
    close to zero.
    """

    name = "mock"

    def __init__(self, dimensions: int = 384):
        self._dimensions = dimensions
        self.call_count = 0

    def _vector(self, text: str) -> List[float]:
        seed = int.from_bytes(hashlib.shake_256(text.encode("utf-8")).digest(4), "little")
        return normalize(np.random.RandomState(seed).standard_normal(self._dimensions))

    async def embed(self, text: str) -> List[float]:
        self.call_count += 1
        return self._vector(text)

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        self.call_count += len(texts)
        return [self._vector(text) for text in texts]

    def dimensions(self) -> int:
        return self._dimensions


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """Embeddings from an OpenAI-compatible HTTP API."""

    name = "openai"

    MODEL_DIMENSIONS: Dict[str, int] = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
    }

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        base_url: str = "https://api.openai.com/v1",
        dimensions: Optional[int] = None,
        retry: Optional[RetryConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        if not api_key:
            raise ConfigurationError(config_key="embedding.api_key", reason="OpenAI provider requires an API key")
        self.model = model
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._dimensions = dimensions or self.MODEL_DIMENSIONS.get(model, 1536)
        self._retry = retry or RetryConfig()
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _error(self, reason: str, context: dict) -> EmbeddingError:
        return EmbeddingError(self.name, reason, context)

    async def embed(self, text: str) -> List[float]:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []

        body = {"model": self.model, "input": list(texts)}
        if self._dimensions != self.MODEL_DIMENSIONS.get(self.model):
            body["dimensions"] = self._dimensions

        data = await request_json(
            self._get_session(),
            "POST",
            f"{self.base_url}/embeddings",
            self._retry,
            self._error,
            json_body=body,
            headers={"Authorization": f"Bearer {self._api_key}"},
        )

        try:
            items = sorted(data["data"], key=lambda item: item.get("index", 0))
            vectors = [[float(x) for x in item["embedding"]] for item in items]
        except (KeyError, TypeError, ValueError) as exc:
            raise EmbeddingError(self.name, f"malformed response: {exc}") from exc

        if len(vectors) != len(texts):
            raise EmbeddingError(self.name, f"expected {len(texts)} embeddings, got {len(vectors)}")

        logger.debug(f"[openai] Embedded {len(texts)} text(s) with {self.model}")
        return vectors

    def dimensions(self) -> int:
        return self._dimensions

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


def create_embedding_provider(config: EmbeddingConfig) -> Optional[EmbeddingProvider]:
    """
    Build the provider selected by configuration.

    Returns None for ``provider: none``; the engine then stores entities
    without embeddings.
    """
    provider = config.provider
    if provider == "none":
        return None
    if provider == "mock":
        return MockEmbeddingProvider(dimensions=config.dimensions or 384)
    if provider == "openai":
        return OpenAIEmbeddingProvider(
            api_key=config.api_key,
            model=config.model,
            base_url=config.base_url,
            dimensions=config.dimensions,
            retry=RetryConfig(
                max_attempts=config.max_retries + 1,
                base_delay_seconds=config.retry_base_delay_seconds,
                max_delay_seconds=config.retry_max_delay_seconds,
                timeout_seconds=config.timeout_seconds,
            ),
        )
    raise UnsupportedProviderError(provider, list(EMBEDDING_PROVIDERS))
