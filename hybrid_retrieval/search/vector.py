"""
Qdrant vector store adapter.

Consumed operations only; the index itself (points, HNSW, persistence) is
owned elsewhere:

- query: top-K neighbours of an embedding via ``query_points`` with a score
  threshold and per-query ``hnsw_ef``
- get_by_id: payload of one point via ``retrieve``
- get_chunks: a document's chunks in a ``chunk_index`` range via ``scroll``

Every Qdrant failure is wrapped in RetrievalBackendError(backend="vector").
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable

from pydantic import ValidationError
from qdrant_client import AsyncQdrantClient
from qdrant_client.models import FieldCondition, Filter, MatchValue, Range, SearchParams

from hybrid_retrieval.search.exceptions import InvalidInputError, RetrievalBackendError
from hybrid_retrieval.search.models import ResultId, VectorMatch, coerce_vector_hits

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

_BACKEND = "vector"
_DEFAULT_COLLECTION = "documents"


def to_qdrant_filter(query_filter: Mapping[str, Any] | None) -> Filter | None:
    """Validate a ``must/must_not/should`` dict into a Qdrant Filter.

    Raises:
        InvalidInputError: If the dict is not a valid Qdrant filter
    """
    if not query_filter:
        return None
    try:
        return Filter.model_validate(dict(query_filter))
    except ValidationError as e:
        raise InvalidInputError(f"Invalid filter: {e}", cause=e) from e


# =============================================================================
# Protocol for Duck Typing
# =============================================================================


@runtime_checkable
class VectorStoreProtocol(Protocol):
    """Vector store interface consumed by the orchestrator and the expander."""

    async def query(
        self,
        embedding: list[float],
        limit: int,
        query_filter: dict[str, Any] | None = None,
        score_threshold: float | None = None,
        hnsw_ef: int | None = None,
    ) -> list[VectorMatch]:
        """Top-K neighbours sorted by similarity descending."""
        ...

    async def get_by_id(self, point_id: ResultId) -> dict[str, Any] | None:
        """Payload of a point, or None if it does not exist."""
        ...

    async def get_chunks(
        self,
        document_id: Any,
        min_index: int,
        max_index: int,
    ) -> list[tuple[ResultId, dict[str, Any]]]:
        """Chunks of a document within an inclusive chunk_index range."""
        ...


# =============================================================================
# Real Implementation
# =============================================================================


class QdrantVectorStore:
    """Read-only Qdrant adapter.

    Usage:
        async with QdrantVectorStore(settings) as store:
            hits = await store.query(embedding, limit=20, score_threshold=0.35)

        # Sharing a client with the text matcher
        client = AsyncQdrantClient(url=settings.qdrant_url)
        store = QdrantVectorStore(settings, client=client)
    """

    def __init__(self, settings: Any, client: AsyncQdrantClient | None = None) -> None:
        """Initialize with a Settings object.

        Args:
            settings: Object with qdrant_url, qdrant_collection and optional
                qdrant_api_key attributes
            client: Already-created client; skips connect()
        """
        self._url = settings.qdrant_url
        self._collection = getattr(settings, "qdrant_collection", _DEFAULT_COLLECTION)
        self._api_key = getattr(settings, "qdrant_api_key", None)
        self._client = client

    @property
    def client(self) -> AsyncQdrantClient | None:
        return self._client

    @property
    def collection(self) -> str:
        return self._collection

    async def connect(self) -> None:
        """Create the client and verify connectivity.

        Raises:
            RetrievalBackendError: If Qdrant cannot be reached
        """
        if self._client is not None:
            return
        try:
            self._client = AsyncQdrantClient(url=self._url, api_key=self._api_key)
            await self._client.get_collections()
        except Exception as e:
            self._client = None
            raise RetrievalBackendError(
                f"Failed to connect to Qdrant at {self._url}: {e}",
                backend=_BACKEND,
                cause=e,
            ) from e

    async def close(self) -> None:
        """Close the client. Safe to call more than once."""
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def __aenter__(self) -> QdrantVectorStore:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.close()

    def _ensure_connected(self) -> AsyncQdrantClient:
        if self._client is None:
            raise RetrievalBackendError(
                "Client is not connected. Call connect() first.", backend=_BACKEND
            )
        return self._client

    async def query(
        self,
        embedding: list[float],
        limit: int,
        query_filter: dict[str, Any] | None = None,
        score_threshold: float | None = None,
        hnsw_ef: int | None = None,
    ) -> list[VectorMatch]:
        """Nearest neighbours of ``embedding``.

        Args:
            embedding: Query vector
            limit: Maximum number of hits
            query_filter: Qdrant-shaped filter dict
            score_threshold: Minimum cosine similarity applied by Qdrant
            hnsw_ef: Search-time HNSW beam width

        Raises:
            InvalidInputError: If the filter is malformed
            RetrievalBackendError: If the query fails
        """
        client = self._ensure_connected()
        qdrant_filter = to_qdrant_filter(query_filter)
        search_params = SearchParams(hnsw_ef=hnsw_ef) if hnsw_ef else None

        try:
            response = await client.query_points(
                collection_name=self._collection,
                query=embedding,
                limit=limit,
                query_filter=qdrant_filter,
                score_threshold=score_threshold,
                search_params=search_params,
                with_payload=True,
                with_vectors=False,
            )
        except Exception as e:
            raise RetrievalBackendError(
                f"Vector query failed in collection '{self._collection}': {e}",
                backend=_BACKEND,
                cause=e,
            ) from e

        return coerce_vector_hits(list(response.points))

    async def get_by_id(self, point_id: ResultId) -> dict[str, Any] | None:
        client = self._ensure_connected()
        try:
            points = await client.retrieve(
                collection_name=self._collection,
                ids=[point_id],
                with_payload=True,
                with_vectors=False,
            )
        except Exception as e:
            raise RetrievalBackendError(
                f"Point lookup failed for '{point_id}': {e}",
                backend=_BACKEND,
                cause=e,
            ) from e

        if not points:
            return None
        return dict(points[0].payload or {})

    async def get_chunks(
        self,
        document_id: Any,
        min_index: int,
        max_index: int,
    ) -> list[tuple[ResultId, dict[str, Any]]]:
        """Chunks of ``document_id`` with min_index <= chunk_index <= max_index.

        Returns:
            (id, payload) pairs sorted by chunk_index
        """
        client = self._ensure_connected()
        qdrant_filter = Filter(
            must=[
                FieldCondition(key="document_id", match=MatchValue(value=document_id)),
                FieldCondition(key="chunk_index", range=Range(gte=min_index, lte=max_index)),
            ]
        )

        try:
            points, _next_offset = await client.scroll(
                collection_name=self._collection,
                scroll_filter=qdrant_filter,
                limit=max(1, max_index - min_index + 1),
                with_payload=True,
                with_vectors=False,
            )
        except Exception as e:
            raise RetrievalBackendError(
                f"Chunk scroll failed for document '{document_id}': {e}",
                backend=_BACKEND,
                cause=e,
            ) from e

        chunks = [(point.id, dict(point.payload or {})) for point in points]
        chunks.sort(key=lambda item: item[1].get("chunk_index", 0))
        return chunks
