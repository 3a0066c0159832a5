"""
Embedding generation through a remote provider API.

Wire format (OpenAI / Mistral compatible):
    POST {api_url}/embeddings
    Authorization: Bearer <api_key>
    {"model": "...", "input": ["text", ...]}
    -> {"data": [{"index": 0, "embedding": [0.1, ...]}, ...]}

Error classification:
- 429, 5xx, timeouts, connection errors -> EmbeddingTransientError (retried)
- 413, or 400 mentioning token/batch limits -> EmbeddingFatalError with
  batch_too_large=True (not retried, shrink the batch)
- any other non-2xx -> EmbeddingFatalError
- wrong vector count -> EmbeddingBatchMismatchError
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

import httpx

from hybrid_retrieval.core.config import EmbeddingConfig
from hybrid_retrieval.core.exceptions import InvalidInputError
from hybrid_retrieval.embeddings.exceptions import (
    EmbeddingBatchMismatchError,
    EmbeddingError,
    EmbeddingFatalError,
    EmbeddingTransientError,
)
from hybrid_retrieval.embeddings.retry import RetryPolicy, retry_with_backoff

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

_CHARS_PER_TOKEN = 4
_MAX_ERROR_BODY = 500
_BATCH_TOO_LARGE = re.compile(
    r"too many tokens|token limit|too large|batch size|too many inputs|maximum context",
    re.IGNORECASE,
)

Vector = list[float]


# =============================================================================
# Batching
# =============================================================================


@dataclass(frozen=True)
class BatchOptions:
    """Per-call overrides of the configured batching limits."""

    max_batch_size: int | None = None
    max_tokens_per_batch: int | None = None
    delay_between_batches: float | None = None
    max_concurrent_batches: int | None = None


def estimate_tokens(text: str) -> int:
    """Rough token count: one token per four characters, rounded up."""
    return math.ceil(len(text) / _CHARS_PER_TOKEN)


def build_batches(
    texts: Sequence[str],
    max_batch_size: int,
    max_tokens_per_batch: int,
) -> list[list[int]]:
    """Greedily group text indexes into batches.

    A batch is closed when adding the next text would exceed either the item
    count or the token budget. A single text over the token budget forms its
    own batch.

    Returns:
        Lists of indexes into ``texts``, in input order
    """
    if max_batch_size < 1 or max_tokens_per_batch < 1:
        raise InvalidInputError("batch limits must be positive")

    batches: list[list[int]] = []
    current: list[int] = []
    current_tokens = 0

    for index, text in enumerate(texts):
        tokens = estimate_tokens(text)
        if current and (
            len(current) + 1 > max_batch_size
            or current_tokens + tokens > max_tokens_per_batch
        ):
            batches.append(current)
            current, current_tokens = [], 0
        current.append(index)
        current_tokens += tokens

    if current:
        batches.append(current)
    return batches


# =============================================================================
# EmbeddingService
# =============================================================================


class EmbeddingService:
    """Async client for a remote embeddings endpoint.

    Usage:
        async with EmbeddingService(EmbeddingConfig()) as service:
            vector = await service.generate_embedding("Klimaschutz")
            vectors = await service.generate_batch_embeddings(texts)
    """

    def __init__(
        self,
        config: EmbeddingConfig,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        """Initialize the service.

        Args:
            config: Provider endpoint, credentials, retry and batching limits
            client: Shared HTTP client; created (and owned) when omitted
            sleep: Awaitable sleep used for backoff and inter-batch delays
        """
        self._config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=config.timeout_seconds)
        self._sleep = sleep
        self._policy = RetryPolicy.from_config(config)
        self._endpoint = f"{config.api_url.rstrip('/')}/embeddings"

    @property
    def model_name(self) -> str:
        return self._config.model

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> EmbeddingService:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def generate_embedding(self, text: str) -> Vector:
        """Embed a single text, retrying transient failures.

        Raises:
            InvalidInputError: If ``text`` is empty or not a string
            EmbeddingError: If the provider call fails
        """
        self._validate_texts([text])
        vectors = await self._embed_batch([text])
        return vectors[0]

    async def generate_batch_embeddings(
        self,
        texts: Sequence[str],
        options: BatchOptions | None = None,
    ) -> list[Vector]:
        """Embed many texts; output order and length match the input.

        Texts are grouped by build_batches(). A failing multi-item batch is
        retried item by item so one bad text does not sink its neighbours;
        a failing single item propagates.

        Raises:
            InvalidInputError: If any text is empty or not a string
            EmbeddingError: If a batch cannot be embedded
        """
        if not isinstance(texts, (list, tuple)):
            raise InvalidInputError(f"texts must be a list, got {type(texts).__name__}")
        if not texts:
            return []
        self._validate_texts(texts)

        opts = options or BatchOptions()
        cfg = self._config
        max_size = opts.max_batch_size or cfg.max_batch_size
        max_tokens = opts.max_tokens_per_batch or cfg.max_tokens_per_batch
        delay = (
            opts.delay_between_batches
            if opts.delay_between_batches is not None
            else cfg.delay_between_batches
        )
        concurrency = opts.max_concurrent_batches or cfg.max_concurrent_batches

        batches = build_batches(texts, max_size, max_tokens)
        logger.info(
            "Embedding %d texts in %d batches (concurrency=%d)",
            len(texts),
            len(batches),
            concurrency,
        )

        results: list[Vector | None] = [None] * len(texts)

        if concurrency <= 1:
            for number, batch in enumerate(batches):
                if number > 0 and delay > 0:
                    await self._sleep(delay)
                vectors = await self._embed_with_fallback([texts[i] for i in batch])
                for index, vector in zip(batch, vectors):
                    results[index] = vector
        else:
            semaphore = asyncio.Semaphore(concurrency)

            async def run(batch: list[int]) -> None:
                async with semaphore:
                    vectors = await self._embed_with_fallback([texts[i] for i in batch])
                for index, vector in zip(batch, vectors):
                    results[index] = vector

            await asyncio.gather(*(run(batch) for batch in batches))

        output = [vector for vector in results if vector is not None]
        if len(output) != len(texts):
            raise EmbeddingBatchMismatchError(expected=len(texts), received=len(output))
        self._check_dimensions(output)
        return output

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _embed_with_fallback(self, texts: list[str]) -> list[Vector]:
        try:
            return await self._embed_batch(texts)
        except EmbeddingError as e:
            if len(texts) == 1:
                raise
            logger.warning(
                "Batch of %d texts failed (%s), falling back to per-item embedding",
                len(texts),
                e.kind,
            )

        vectors: list[Vector] = []
        for text in texts:
            single = await self._embed_batch([text])
            vectors.append(single[0])
        return vectors

    async def _embed_batch(self, texts: list[str]) -> list[Vector]:
        return await retry_with_backoff(
            lambda: self._request(texts),
            self._policy,
            operation_name=f"embedding request ({len(texts)} texts)",
            sleep=self._sleep,
        )

    async def _request(self, texts: list[str]) -> list[Vector]:
        headers = {"Content-Type": "application/json"}
        if self._config.api_key is not None:
            headers["Authorization"] = f"Bearer {self._config.api_key.get_secret_value()}"

        try:
            response = await self._client.post(
                self._endpoint,
                json={"model": self._config.model, "input": texts},
                headers=headers,
                timeout=self._config.timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise EmbeddingTransientError(f"Embedding request timed out: {e}", cause=e) from e
        except httpx.TransportError as e:
            raise EmbeddingTransientError(f"Embedding transport error: {e}", cause=e) from e

        if response.is_error:
            raise classify_error_response(response)

        try:
            body = response.json()
        except ValueError as e:
            raise EmbeddingFatalError(
                "Embedding provider returned invalid JSON",
                status_code=response.status_code,
                cause=e,
            ) from e

        vectors = self._parse_vectors(body)
        if len(vectors) != len(texts):
            raise EmbeddingBatchMismatchError(expected=len(texts), received=len(vectors))
        self._check_dimensions(vectors)
        return vectors

    def _parse_vectors(self, body: Any) -> list[Vector]:
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, list):
            raise EmbeddingFatalError("Embedding response has no 'data' list")

        if data and all(isinstance(item, dict) and "index" in item for item in data):
            data = sorted(data, key=lambda item: item["index"])

        vectors: list[Vector] = []
        for position, item in enumerate(data):
            embedding = item.get("embedding") if isinstance(item, dict) else None
            vectors.append(self._validate_vector(embedding, position))
        return vectors

    def _validate_vector(self, embedding: Any, position: int) -> Vector:
        if not isinstance(embedding, list) or not embedding:
            raise EmbeddingFatalError(f"Embedding {position} is missing or empty")
        if len(embedding) > self._config.max_dimensions:
            raise EmbeddingFatalError(
                f"Embedding {position} has {len(embedding)} dimensions, "
                f"maximum is {self._config.max_dimensions}"
            )
        for value in embedding:
            if (
                not isinstance(value, (int, float))
                or isinstance(value, bool)
                or not math.isfinite(value)
            ):
                raise EmbeddingFatalError(f"Embedding {position} contains invalid value {value!r}")
        return [float(value) for value in embedding]

    @staticmethod
    def _check_dimensions(vectors: Sequence[Vector]) -> None:
        dimensions = {len(vector) for vector in vectors}
        if len(dimensions) > 1:
            raise EmbeddingFatalError(
                f"Embeddings have inconsistent dimensions: {sorted(dimensions)}"
            )

    @staticmethod
    def _validate_texts(texts: Sequence[Any]) -> None:
        for position, text in enumerate(texts):
            if not isinstance(text, str) or not text.strip():
                raise InvalidInputError(f"text {position} must be a non-empty string")


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:_MAX_ERROR_BODY]

    if isinstance(body, dict):
        for key in ("message", "detail", "error"):
            value = body.get(key)
            if isinstance(value, dict):
                value = value.get("message")
            if value:
                return str(value)[:_MAX_ERROR_BODY]
    return str(body)[:_MAX_ERROR_BODY]


def classify_error_response(response: httpx.Response) -> EmbeddingError:
    """Map a non-2xx provider response to the embedding error taxonomy."""
    status = response.status_code
    message = _error_message(response)
    text = f"Embedding provider returned {status}: {message}"

    if status == 429 or status >= 500:
        return EmbeddingTransientError(text, status_code=status)
    if status == 413 or (status == 400 and _BATCH_TOO_LARGE.search(message)):
        return EmbeddingFatalError(text, status_code=status, batch_too_large=True)
    return EmbeddingFatalError(text, status_code=status)
