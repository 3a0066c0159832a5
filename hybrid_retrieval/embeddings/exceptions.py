"""
Embedding provider exceptions.

Retry classification lives in the type: EmbeddingTransientError is retried,
everything else propagates on the first occurrence.
"""

from __future__ import annotations

from typing import Any

from hybrid_retrieval.core.exceptions import HybridRetrievalError


class EmbeddingError(HybridRetrievalError):
    """Base exception for embedding generation failures."""

    kind = "embedding"


class EmbeddingTransientError(EmbeddingError):
    """Rate limiting (429), provider errors (5xx) or transport failures.

    Retried internally up to the configured number of attempts.
    """

    kind = "embedding_transient"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.status_code = status_code


class EmbeddingFatalError(EmbeddingError):
    """Non-retryable provider rejection.

    ``batch_too_large`` is set when the provider refused the request because of
    its item count or token volume; retrying the same batch cannot succeed, the
    caller must shrink it.
    """

    kind = "embedding_fatal"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        batch_too_large: bool = False,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.status_code = status_code
        self.batch_too_large = batch_too_large

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.batch_too_large:
            data["hint"] = "reduce max_batch_size or max_tokens_per_batch"
        return data


class EmbeddingBatchMismatchError(EmbeddingError):
    """Provider returned a different number of vectors than texts sent."""

    kind = "embedding_batch_mismatch"

    def __init__(self, expected: int, received: int) -> None:
        super().__init__(
            f"Embedding provider returned {received} vectors for {expected} inputs"
        )
        self.expected = expected
        self.received = received
