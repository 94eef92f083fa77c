"""
Embedding Pipeline  —  Providers + Batched Embeddings with Retry
════════════════════════════════════════════════════════════════

Providers (EmbeddingProvider):
  OpenAIEmbeddingProvider               text-embedding-3-small → 1536 dims (default)
  SentenceTransformerEmbeddingProvider  all-MiniLM-L6-v2 → 384 dims, local, no API key

Batching strategy (EmbeddingBatcher):
  Texts are partitioned into sub-batches of `batch_size` and issued
  concurrently, at most `max_concurrency` at a time (asyncio.Semaphore).
  Output order always matches input order.

Retry policy (per sub-batch):
  TransientError (rate limit, timeout, 5xx, connection) → wait
      min(base_delay × 2^(attempt-1), max_delay), up to max_retries
  ConfigurationError (auth, dimension mismatch)          → fail immediately
  Exhausted                                              → EmbeddingBatchError

Validation:
  Every vector must have exactly `dimension` floats. Nothing is truncated
  or padded: a mismatch raises DimensionMismatchError (a configuration
  error, never retried by the job queue).
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Sequence

from scholarai.core.config import Settings
from scholarai.core.errors import (
    ConfigurationError,
    DimensionMismatchError,
    EmbeddingBatchError,
    IngestionError,
    InputError,
    TransientError,
    classify,
)

logger = logging.getLogger(__name__)

# Approximate tokens per character for cost estimation
CHARS_PER_TOKEN_EST = 4


# ---------------------------------------------------------------------------
# Provider interface
# ---------------------------------------------------------------------------

class EmbeddingProvider(ABC):
    """Maps texts to fixed-dimension vectors. One call = one provider request."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def dimension(self) -> int:
        ...

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        ...


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """
    openai.AsyncOpenAI embeddings.

    Error mapping:
      AuthenticationError / PermissionDeniedError   → ConfigurationError
      BadRequestError                               → InputError
      RateLimitError / timeouts / connection / 5xx  → TransientError
    """

    def __init__(
        self,
        api_key:   str,
        model:     str = "text-embedding-3-small",
        dimension: int = 1536,
    ) -> None:
        from openai import AsyncOpenAI

        if not api_key:
            raise ConfigurationError("OPENAI_API_KEY is required for the openai embedding backend")
        self._client    = AsyncOpenAI(api_key=api_key)
        self._model     = model
        self._dimension = dimension

    @property
    def name(self) -> str:
        return f"openai:{self._model}"

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed(self, texts: list[str]) -> list[list[float]]:
        import openai

        kwargs: dict = {"model": self._model, "input": texts}
        # dimensions param only works for text-embedding-3-* models
        if self._model.startswith("text-embedding-3"):
            kwargs["dimensions"] = self._dimension

        t_api = time.monotonic()
        try:
            response = await self._client.embeddings.create(**kwargs)
        except (openai.AuthenticationError, openai.PermissionDeniedError) as exc:
            raise ConfigurationError(f"embedding provider rejected credentials: {exc}") from exc
        except openai.BadRequestError as exc:
            raise InputError(f"embedding request rejected: {exc}") from exc
        except (openai.RateLimitError, openai.APIConnectionError, openai.InternalServerError) as exc:
            raise TransientError(f"{type(exc).__name__}: {exc}") from exc
        except openai.APIError as exc:
            raise TransientError(f"embedding provider error: {exc}") from exc

        tokens_used = response.usage.total_tokens if response.usage else sum(
            len(t) // CHARS_PER_TOKEN_EST for t in texts
        )
        logger.debug(
            "OpenAI embeddings | size=%d tokens=%d api_ms=%.0f",
            len(texts), tokens_used, (time.monotonic() - t_api) * 1000,
        )
        return [item.embedding for item in response.data]


# Known model dimensions
_ST_MODEL_DIMENSIONS: dict[str, int] = {
    "sentence-transformers/all-MiniLM-L6-v2": 384,
    "sentence-transformers/all-mpnet-base-v2": 768,
    "BAAI/bge-small-en-v1.5": 384,
    "BAAI/bge-base-en-v1.5": 768,
}

_ST_DEFAULT_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
_ST_BATCH_LIMIT = 64  # conservative batch size for CPU inference


class SentenceTransformerEmbeddingProvider(EmbeddingProvider):
    """
    Local sentence-transformers model (pip install "scholarai[local]").
    The model loads on first use; encode() runs in the default executor.
    """

    def __init__(self, model_name: str | None = None, dimension: int | None = None) -> None:
        self._model_name = model_name or _ST_DEFAULT_MODEL
        self._dimension  = dimension or _ST_MODEL_DIMENSIONS.get(self._model_name, 384)
        self._model = None  # lazy-loaded

    @property
    def name(self) -> str:
        return f"sentence_transformers:{self._model_name.split('/')[-1]}"

    @property
    def dimension(self) -> int:
        return self._dimension

    def _load_model(self):
        if self._model is not None:
            return self._model
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as exc:
            raise ConfigurationError(
                "sentence-transformers is not installed; install scholarai[local]"
            ) from exc
        logger.info("Loading sentence-transformers model | model=%s", self._model_name)
        self._model = SentenceTransformer(self._model_name)
        return self._model

    def _encode_sync(self, texts: list[str]) -> list[list[float]]:
        model = self._load_model()
        vectors: list[list[float]] = []
        for start in range(0, len(texts), _ST_BATCH_LIMIT):
            batch = texts[start:start + _ST_BATCH_LIMIT]
            encoded = model.encode(batch, normalize_embeddings=True, show_progress_bar=False)
            vectors.extend(encoded.tolist())
        return vectors

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._encode_sync, texts)


def build_embedding_provider(settings: Settings) -> EmbeddingProvider:
    backend = settings.embedding_backend.lower()
    if backend == "openai":
        return OpenAIEmbeddingProvider(
            api_key=settings.openai_api_key,
            model=settings.embedding_model,
            dimension=settings.embedding_dimension,
        )
    if backend in ("sentence_transformers", "local"):
        model = settings.embedding_model if "/" in settings.embedding_model else None
        return SentenceTransformerEmbeddingProvider(model_name=model)
    raise ConfigurationError(f"unknown embedding backend: {settings.embedding_backend}")


# ---------------------------------------------------------------------------
# Batcher
# ---------------------------------------------------------------------------

class EmbeddingBatcher:
    """
    Order-preserving, bounded-concurrency, retrying front of a provider.

    Usage:
        batcher = EmbeddingBatcher(provider, dimension=384)
        vectors = await batcher.embed_batch([c.text for c in chunks])
        query   = await batcher.embed_query("what is entropy?")
    """

    def __init__(
        self,
        provider:        EmbeddingProvider,
        dimension:       int,
        batch_size:      int   = 100,
        max_concurrency: int   = 4,
        max_retries:     int   = 3,
        base_delay:      float = 2.0,
        max_delay:       float = 60.0,
        sleep:           Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if dimension <= 0 or batch_size <= 0 or max_concurrency <= 0:
            raise ConfigurationError("dimension, batch_size and max_concurrency must be positive")
        self._provider        = provider
        self._dimension       = dimension
        self._batch_size      = batch_size
        self._max_concurrency = max_concurrency
        self._max_retries     = max_retries
        self._base_delay      = base_delay
        self._max_delay       = max_delay
        self._sleep           = sleep

    @classmethod
    def from_settings(cls, settings: Settings, provider: EmbeddingProvider) -> "EmbeddingBatcher":
        return cls(
            provider,
            dimension=settings.embedding_dimension,
            batch_size=settings.embedding_batch_size,
            max_concurrency=settings.embedding_max_concurrency,
            max_retries=settings.embedding_max_retries,
            base_delay=settings.embedding_retry_base_delay,
            max_delay=settings.embedding_retry_max_delay,
        )

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def provider_name(self) -> str:
        return self._provider.name

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []

        t0 = time.monotonic()
        spans = [
            (start, min(start + self._batch_size, len(texts)))
            for start in range(0, len(texts), self._batch_size)
        ]
        logger.info(
            "EmbeddingBatcher | provider=%s texts=%d batches=%d",
            self._provider.name, len(texts), len(spans),
        )

        semaphore = asyncio.Semaphore(self._max_concurrency)
        results = await asyncio.gather(
            *[
                self._embed_with_retry(list(texts[start:end]), idx, start, end, semaphore)
                for idx, (start, end) in enumerate(spans)
            ],
            return_exceptions=True,
        )

        vectors: list[list[float]] = []
        for result in results:
            if isinstance(result, BaseException):
                raise result
            vectors.extend(result)

        self._validate(vectors)
        logger.info(
            "EmbeddingBatcher done | vectors=%d elapsed_ms=%.0f",
            len(vectors), (time.monotonic() - t0) * 1000,
        )
        return vectors

    async def embed_query(self, text: str) -> list[float]:
        """Single vector for query-time retrieval, same provider + validation."""
        vectors = await self._embed_with_retry(
            [text], 0, 0, 1, asyncio.Semaphore(1),
        )
        self._validate(vectors)
        return vectors[0]

    # ------------------------------------------------------------------
    # Sub-batch processing with retry
    # ------------------------------------------------------------------

    async def _embed_with_retry(
        self,
        texts:     list[str],
        batch_idx: int,
        start:     int,
        end:       int,
        semaphore: asyncio.Semaphore,
    ) -> list[list[float]]:
        last_error: IngestionError | None = None

        for attempt in range(self._max_retries + 1):
            if attempt > 0:
                delay = min(self._base_delay * (2 ** (attempt - 1)), self._max_delay)
                logger.warning(
                    "Embedding retry | batch=%d attempt=%d delay=%.1fs error=%s",
                    batch_idx, attempt, delay, last_error,
                )
                await self._sleep(delay)

            async with semaphore:
                try:
                    vectors = await self._provider.embed(texts)
                except Exception as exc:
                    err = classify(exc)
                    if not err.retryable:
                        logger.error(
                            "Non-retryable embedding error batch=%d: %s", batch_idx, err,
                        )
                        raise err
                    last_error = err
                    continue

            if len(vectors) != len(texts):
                raise EmbeddingBatchError(
                    batch_idx, start, end,
                    f"provider returned {len(vectors)} vectors for {len(texts)} texts",
                )
            return vectors

        raise EmbeddingBatchError(
            batch_idx, start, end,
            f"{self._max_retries} retries exhausted: {last_error}",
        )

    def _validate(self, vectors: list[list[float]]) -> None:
        for index, vector in enumerate(vectors):
            if len(vector) != self._dimension:
                raise DimensionMismatchError(index, self._dimension, len(vector))
