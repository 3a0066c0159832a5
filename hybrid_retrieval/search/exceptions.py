"""
Custom exceptions for the search module.

Exception naming avoids shadowing Python builtins (ConnectionError,
TimeoutError): InvalidInputError, RetrievalBackendError.
"""

from __future__ import annotations

from typing import Any

from hybrid_retrieval.core.exceptions import HybridRetrievalError, InvalidInputError

__all__ = ["HybridRetrievalError", "InvalidInputError", "RetrievalBackendError"]


class RetrievalBackendError(HybridRetrievalError):
    """Raised when the vector store or the text matcher cannot answer.

    A text backend failure is degraded to vector-only search by the
    orchestrator; a vector backend failure fails the request.
    """

    kind = "retrieval_backend"

    def __init__(
        self,
        message: str,
        backend: str,
        cause: Exception | None = None,
    ) -> None:
        """Initialize with message, failing backend and optional cause.

        Args:
            message: Human-readable error description
            backend: "vector" or "text"
            cause: Original exception that caused this error
        """
        super().__init__(message, cause=cause)
        self.backend = backend

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["backend"] = self.backend
        return data
