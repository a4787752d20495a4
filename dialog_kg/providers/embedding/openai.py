"""
OpenAI Embedding Provider (LangChain-based)

Vectors for entity names and proposition text. Both are short strings, so
the small model is the default.

Models:
    - text-embedding-3-small: 1536 dimensions, default
    - text-embedding-3-large: 3072 dimensions
    - text-embedding-ada-002: 1536 dimensions, fixed size

text-embedding-3 models accept a shortened `dimensions`; the vector stores
size their columns from `provider.dimensions`, so changing it requires a
fresh store directory.

Example:
    >>> provider = OpenAIEmbeddingProvider(dimensions=512)
    >>> vectors = await provider.embed(["The user loves Brahms", "The user dislikes opera"])
    >>> len(vectors[0])
    512
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any

from dialog_kg.providers.base import EmbeddingProvider
from dialog_kg.types.results import LLMCallRecord
from dialog_kg.utils.telemetry import current_stage, record_call

if TYPE_CHECKING:
    from langchain_openai import OpenAIEmbeddings

logger = logging.getLogger(__name__)

NATIVE_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}
SHORTENABLE_MODELS = frozenset({"text-embedding-3-small", "text-embedding-3-large"})

DEFAULT_MODEL = "text-embedding-3-small"
DEFAULT_BATCH_SIZE = 256


def _get_openai_embeddings(**kwargs: Any) -> "OpenAIEmbeddings":
    """
    Build an OpenAIEmbeddings client.

    Lazy import so the core package works without the openai extra.

    Raises:
        ImportError: If langchain-openai package is not installed
    """
    try:
        from langchain_openai import OpenAIEmbeddings
    except ImportError:
        raise ImportError(
            "OpenAI embedding provider requires the 'langchain-openai' package. "
            "Install with: pip install dialog-kg[openai]"
        )
    return OpenAIEmbeddings(**kwargs)


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """
    Embeddings through LangChain's synchronous OpenAIEmbeddings client,
    run off the event loop.

    Args:
        api_key: OpenAI API key. If None, uses OPENAI_API_KEY environment variable.
        model: Embedding model name
        dimensions: Shortened vector size (text-embedding-3 models only)
        batch_size: Texts sent per request
        timeout: Client-side request timeout in seconds
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str = DEFAULT_MODEL,
        dimensions: int | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        timeout: float | None = None,
    ) -> None:
        if dimensions is not None:
            if model not in SHORTENABLE_MODELS:
                raise ValueError(f"{model} does not support a custom dimensions value")
            if dimensions <= 0:
                raise ValueError(f"dimensions must be positive, got {dimensions}")
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")

        self._api_key = api_key
        self._model = model
        self._requested_dimensions = dimensions
        self._dimensions = dimensions or NATIVE_DIMENSIONS.get(model, 1536)
        self._batch_size = batch_size
        self._timeout = timeout
        self._client: OpenAIEmbeddings | None = None

    def _get_client(self) -> "OpenAIEmbeddings":
        if self._client is None:
            kwargs: dict[str, Any] = {"model": self._model, "chunk_size": self._batch_size}
            if self._api_key:
                from pydantic import SecretStr
                kwargs["api_key"] = SecretStr(self._api_key)
            if self._requested_dimensions is not None:
                kwargs["dimensions"] = self._requested_dimensions
            if self._timeout is not None:
                kwargs["timeout"] = self._timeout
            self._client = _get_openai_embeddings(**kwargs)
        return self._client

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def model_name(self) -> str:
        return self._model

    def _record(self, operation: str, start_ns: int, succeeded: bool, count: int) -> None:
        record_call(
            LLMCallRecord(
                provider="openai",
                model=self._model,
                operation=operation,
                stage=current_stage(),
                latency_ms=int((time.perf_counter_ns() - start_ns) // 1_000_000),
                succeeded=succeeded,
                metadata={"texts": count},
            )
        )

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        # The API rejects empty input
        cleaned = [text if text.strip() else " " for text in texts]
        client = self._get_client()

        vectors: list[list[float]] = []
        for offset in range(0, len(cleaned), self._batch_size):
            batch = cleaned[offset:offset + self._batch_size]
            start = time.perf_counter_ns()
            try:
                vectors.extend(await asyncio.to_thread(client.embed_documents, batch))
            except Exception:
                self._record("embed", start, False, len(batch))
                raise
            self._record("embed", start, True, len(batch))

        logger.debug(f"Embedded {len(texts)} texts with {self._model}")
        return vectors

    async def embed_single(self, text: str) -> list[float]:
        start = time.perf_counter_ns()
        try:
            vector = await asyncio.to_thread(self._get_client().embed_query, text or " ")
        except Exception:
            self._record("embed", start, False, 1)
            raise
        self._record("embed", start, True, 1)
        return vector
