"""
Embedding generation via a remote provider.

- service.py: batching, provider calls, per-item fallback
- retry.py: tenacity-based exponential backoff for transient provider failures
- exceptions.py: transient / fatal / mismatch error taxonomy
"""

from hybrid_retrieval.embeddings.exceptions import (
    EmbeddingBatchMismatchError,
    EmbeddingError,
    EmbeddingFatalError,
    EmbeddingTransientError,
)
from hybrid_retrieval.embeddings.retry import RetryPolicy, retry_with_backoff
from hybrid_retrieval.embeddings.service import (
    BatchOptions,
    EmbeddingService,
    build_batches,
    estimate_tokens,
)

__all__ = [
    "BatchOptions",
    "EmbeddingBatchMismatchError",
    "EmbeddingError",
    "EmbeddingFatalError",
    "EmbeddingService",
    "EmbeddingTransientError",
    "RetryPolicy",
    "build_batches",
    "estimate_tokens",
    "retry_with_backoff",
]
