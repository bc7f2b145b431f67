"""Embedding providers with batching and retry logic.

``OpenAIEmbedder`` talks to the OpenAI embeddings API, or to any
OpenAI-compatible endpoint (``custom`` provider) through ``base_url``.
Texts are sent in batches of ``batch_size``; transient failures are
retried with exponential backoff and anything else surfaces as
``EmbeddingProviderError``.
"""

import logging
import math
import time
from abc import ABC, abstractmethod
from typing import Optional, Sequence

from openai import AsyncOpenAI

from llm.retry import DEFAULT_BACKOFF_BASE, call_with_retry
from vectorstore.chunker import get_encoder

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "text-embedding-3-large"
DEFAULT_DIMENSIONS = 1536
DEFAULT_BATCH_SIZE = 100
MAX_TOKENS_PER_TEXT = 8000  # model limit is 8192; leave margin


class EmbeddingProviderError(Exception):
    """Upstream embedding call failed, or returned a malformed response."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class EmbeddingProvider(ABC):
    """Maps texts to fixed-dimension vectors, one per input, in input order."""

    model: str
    dimensions: int
    batch_size: int

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        ...

    async def embed_single(self, text: str) -> list[float]:
        """Embed a single text string (convenience method for queries)."""
        result = await self.embed([text])
        return result[0]


class OpenAIEmbedder(EmbeddingProvider):
    """OpenAI (or OpenAI-compatible) embeddings over ``AsyncOpenAI``."""

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        dimensions: int = DEFAULT_DIMENSIONS,
        api_key: Optional[str] = None,
        api_base: Optional[str] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        send_dimensions: bool = True,
        max_retries: int = 3,
        retry_backoff: float = DEFAULT_BACKOFF_BASE,
        timeout: float = 60.0,
        max_input_tokens: Optional[int] = MAX_TOKENS_PER_TEXT,
        client: Optional[AsyncOpenAI] = None,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        if dimensions < 1:
            raise ValueError(f"dimensions must be >= 1, got {dimensions}")
        self.model = model
        self.dimensions = dimensions
        self.batch_size = batch_size
        self.send_dimensions = send_dimensions
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.max_input_tokens = max_input_tokens
        # SDK-level retries are off; call_with_retry owns the policy
        self.client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=api_base,
            timeout=timeout,
            max_retries=0,
        )

    def _truncate_text(self, text: str) -> str:
        """Truncate text to fit within the embedding model's token limit."""
        if not self.max_input_tokens:
            return text
        encoder = get_encoder(self.model)
        if encoder is None:
            return text
        tokens = encoder.encode(text, disallowed_special=())
        if len(tokens) <= self.max_input_tokens:
            return text
        logger.warning(
            "Truncating text from %d to %d tokens (first 60 chars: '%.60s')",
            len(tokens), self.max_input_tokens, text,
        )
        return encoder.decode(tokens[:self.max_input_tokens])

    async def _embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed a single batch of texts via the API."""
        params = {"model": self.model, "input": texts}
        if self.send_dimensions:
            params["dimensions"] = self.dimensions

        try:
            response = await call_with_retry(
                lambda: self.client.embeddings.create(**params),
                max_attempts=self.max_retries,
                label="Embedding API",
                backoff_base=self.retry_backoff,
            )
        except Exception as e:
            raise EmbeddingProviderError(f"Embedding request failed: {e}", cause=e) from e

        # Response data is sorted by index
        sorted_data = sorted(response.data, key=lambda x: x.index)
        vectors = [list(item.embedding) for item in sorted_data]

        if len(vectors) != len(texts):
            raise EmbeddingProviderError(
                f"Embedding API returned {len(vectors)} vectors for {len(texts)} inputs"
            )
        for vector in vectors:
            if len(vector) != self.dimensions:
                raise EmbeddingProviderError(
                    f"Embedding API returned a {len(vector)}-dimensional vector, "
                    f"expected {self.dimensions}"
                )
        return vectors

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed a list of texts, handling batching automatically.

        Args:
            texts: List of text strings to embed.

        Returns:
            List of embedding vectors (same order as input texts).

        Raises:
            EmbeddingProviderError: the upstream call failed after retries.
        """
        if not texts:
            return []

        texts = [self._truncate_text(t) for t in texts]

        all_embeddings: list[list[float]] = []
        total_batches = (len(texts) + self.batch_size - 1) // self.batch_size
        overall_start = time.perf_counter()

        for batch_idx in range(total_batches):
            start = batch_idx * self.batch_size
            end = min(start + self.batch_size, len(texts))
            all_embeddings.extend(await self._embed_batch(texts[start:end]))
            logger.debug(
                "Embedding batch %d/%d (%d texts, cumulative %d/%d)",
                batch_idx + 1, total_batches, end - start, end, len(texts),
            )

        logger.info(
            "Embedded %d texts (%d dimensions each) in %.1fs",
            len(all_embeddings), self.dimensions, time.perf_counter() - overall_start,
        )
        return all_embeddings


# ---------------------------------------------------------------------------
# Vector utilities
# ---------------------------------------------------------------------------


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]; 0.0 when either vector has zero norm."""
    if len(a) != len(b):
        raise ValueError("Vectors must have the same length")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def euclidean_distance(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b):
        raise ValueError("Vectors must have the same length")
    return math.sqrt(sum((x - y) ** 2 for x, y in zip(a, b)))


def build_embedding_provider(settings) -> EmbeddingProvider:
    """Select the embedding backend named by ``settings.embeddings_provider``."""
    provider = settings.embeddings_provider
    if provider == "openai":
        return OpenAIEmbedder(
            model=settings.embeddings_model,
            dimensions=settings.embeddings_dimensions,
            api_key=settings.embeddings_api_key,
            api_base=settings.embeddings_api_base,
            batch_size=settings.embeddings_batch_size,
            max_retries=settings.llm_max_retries,
        )
    if provider in ("custom", "local"):
        if not settings.embeddings_api_base:
            raise ValueError("EMBEDDINGS_API_BASE is required for the custom embeddings provider")
        return OpenAIEmbedder(
            model=settings.embeddings_model,
            dimensions=settings.embeddings_dimensions,
            api_key=settings.embeddings_api_key or "unused",
            api_base=settings.embeddings_api_base,
            batch_size=settings.embeddings_batch_size,
            send_dimensions=False,
            max_retries=settings.llm_max_retries,
            max_input_tokens=None,
        )
    raise ValueError(f"Unknown embedding provider: {provider!r}")
