"""
Base exception for the retrieval core.

Every exception carries a stable ``kind`` so callers can surface the failure
category without exposing internal stack traces.
"""

from __future__ import annotations

from typing import Any


class HybridRetrievalError(Exception):
    """Base exception for all retrieval core errors."""

    kind = "hybrid_retrieval"

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        """Initialize with message and optional cause.

        Args:
            message: Human-readable error description
            cause: Original exception that caused this error
        """
        super().__init__(message)
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        """User-visible representation: taxonomy kind and message only."""
        return {"error": self.kind, "message": str(self)}


class InvalidInputError(HybridRetrievalError):
    """Raised for malformed requests or result lists.

    Fatal and never retried.
    """

    kind = "invalid_input"
