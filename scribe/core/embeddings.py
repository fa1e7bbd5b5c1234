"""OpenAI embeddings generation with validation and a query cache."""

import asyncio
import hashlib
import threading
from collections import OrderedDict
from typing import Protocol

import openai
from openai import OpenAI

from scribe.core.config import Settings, get_settings
from scribe.core.errors import ConfigurationError, TransientUpstreamError
from scribe.core.logging import get_logger

logger = get_logger(__name__)

TRANSIENT_OPENAI_ERRORS = (
    openai.RateLimitError,
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.InternalServerError,
)


class EmbeddingClient(Protocol):
    """Turns text into fixed-dimension vectors. May raise TransientUpstreamError."""

    async def embed(self, text: str) -> list[float]: ...

    async def embed_many(self, texts: list[str]) -> list[list[float]]: ...


def _get_client() -> OpenAI:
    """Get OpenAI client instance. Retries are handled by callers."""
    settings = get_settings()
    return OpenAI(
        api_key=settings.OPENAI_API_KEY,
        timeout=settings.EMBEDDING_TIMEOUT_SECONDS,
        max_retries=0,
    )


def embed_texts(texts: list[str]) -> list[list[float]]:
    """
    Generate embeddings for a list of texts using OpenAI.

    Args:
        texts: List of text strings to embed

    Returns:
        List of embedding vectors (each vector is list of floats)

    Raises:
        ConfigurationError: If embedding dimension doesn't match expected EMBEDDING_DIM
        TransientUpstreamError: On rate limits, timeouts and 5xx responses
    """
    if not texts:
        return []

    settings = get_settings()
    client = _get_client()

    try:
        response = client.embeddings.create(
            model=settings.EMBEDDING_MODEL,
            input=texts,
        )
    except TRANSIENT_OPENAI_ERRORS as e:
        logger.warning(f"Transient embedding failure: {e}")
        raise TransientUpstreamError(f"Embedding request failed: {e}") from e
    except Exception as e:
        logger.error(f"Failed to generate embeddings: {e}")
        raise

    embeddings = []
    for i, embedding_obj in enumerate(response.data):
        embedding = embedding_obj.embedding

        if len(embedding) != settings.EMBEDDING_DIM:
            raise ConfigurationError(
                f"Embedding dimension mismatch for text {i}: "
                f"expected {settings.EMBEDDING_DIM}, got {len(embedding)}"
            )

        embeddings.append(embedding)

    logger.debug(
        f"Generated {len(embeddings)} embeddings using {settings.EMBEDDING_MODEL}",
        extra={"model": settings.EMBEDDING_MODEL, "count": len(embeddings)},
    )

    return embeddings


async def embed_texts_async(texts: list[str], timeout: float | None = None) -> list[list[float]]:
    """Async wrapper around embed_texts using thread pool, bounded by timeout."""
    try:
        return await asyncio.wait_for(asyncio.to_thread(embed_texts, texts), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise TransientUpstreamError(f"Embedding request timed out after {timeout}s") from e


class EmbeddingCache:
    """Small LRU of query embeddings keyed by md5 of the normalized text."""

    def __init__(self, max_size: int = 512):
        self.max_size = max_size
        self.hits = 0
        self.misses = 0
        self._lock = threading.Lock()
        self._items: OrderedDict[str, list[float]] = OrderedDict()

    @staticmethod
    def key(text: str) -> str:
        normalized = " ".join(text.lower().split())
        return hashlib.md5(normalized.encode("utf-8")).hexdigest()

    def get(self, text: str) -> list[float] | None:
        key = self.key(text)
        with self._lock:
            vector = self._items.get(key)
            if vector is None:
                self.misses += 1
                return None
            self._items.move_to_end(key)
            self.hits += 1
            return vector

    def put(self, text: str, vector: list[float]) -> None:
        if self.max_size <= 0:
            return
        key = self.key(text)
        with self._lock:
            self._items[key] = vector
            self._items.move_to_end(key)
            while len(self._items) > self.max_size:
                self._items.popitem(last=False)

    def __len__(self) -> int:
        return len(self._items)


class OpenAIEmbeddingClient:
    """EmbeddingClient backed by the OpenAI embeddings endpoint."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.cache = EmbeddingCache(self.settings.EMBEDDING_CACHE_SIZE)

    async def embed(self, text: str) -> list[float]:
        cached = self.cache.get(text)
        if cached is not None:
            return cached

        vector = (await self.embed_many([text]))[0]
        self.cache.put(text, vector)
        return vector

    async def embed_many(self, texts: list[str]) -> list[list[float]]:
        return await embed_texts_async(texts, timeout=self.settings.EMBEDDING_TIMEOUT_SECONDS)
