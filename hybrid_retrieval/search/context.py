"""
Chunk context expansion.

Fetches the neighbouring chunks of a retrieved chunk (same ``document_id``,
``chunk_index`` within +/- window) and merges their text in document order,
removing the overlap that sliding-window chunking leaves between neighbours.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from hybrid_retrieval.core.config import HybridConfig
from hybrid_retrieval.search.exceptions import InvalidInputError, RetrievalBackendError
from hybrid_retrieval.search.models import ResultId, ScoredResult
from hybrid_retrieval.search.quality import extract_text

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

DOCUMENT_ID_FIELD = "document_id"
CHUNK_INDEX_FIELD = "chunk_index"
_MIN_OVERLAP_CHARS = 10
_CHUNK_SEPARATOR = "\n\n"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class ContextChunk:
    """One chunk of a document, as returned by the vector store."""

    id: ResultId
    chunk_index: int
    text: str
    payload: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_point(cls, point_id: ResultId, payload: Mapping[str, Any]) -> ContextChunk:
        index = payload.get(CHUNK_INDEX_FIELD)
        return cls(
            id=point_id,
            chunk_index=int(index) if isinstance(index, (int, float)) else 0,
            text=extract_text(payload) or "",
            payload=dict(payload),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "chunk_index": self.chunk_index, "text": self.text}


@dataclass(frozen=True)
class ChunkContext:
    """A center chunk plus its neighbours in document order.

    Attributes:
        center: The retrieved chunk
        chunks: Center and neighbours sorted by chunk_index
        text: Merged text of ``chunks``
        document_id: Owning document, None when the payload has none
    """

    center: ContextChunk
    chunks: tuple[ContextChunk, ...]
    text: str
    document_id: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "center": self.center.to_dict(),
            "chunks": [chunk.to_dict() for chunk in self.chunks],
            "text": self.text,
            "document_id": self.document_id,
        }


# =============================================================================
# Protocol
# =============================================================================


@runtime_checkable
class ChunkStoreProtocol(Protocol):
    """Lookups the expander needs from the vector store."""

    async def get_by_id(self, point_id: ResultId) -> dict[str, Any] | None:
        """Payload of a single point, or None if it does not exist."""
        ...

    async def get_chunks(
        self,
        document_id: Any,
        min_index: int,
        max_index: int,
    ) -> list[tuple[ResultId, dict[str, Any]]]:
        """(id, payload) pairs of a document's chunks within an index range."""
        ...


# =============================================================================
# Text Merge
# =============================================================================


def _overlap(previous: str, following: str) -> int:
    limit = min(len(previous), len(following))
    for size in range(limit, _MIN_OVERLAP_CHARS - 1, -1):
        if previous.endswith(following[:size]):
            return size
    return 0


def merge_context_text(chunks: Sequence[ContextChunk]) -> str:
    """Concatenate chunk texts in document order without repeated overlap.

    A chunk whose text is already fully contained at the end of the merged
    text is skipped.
    """
    merged = ""
    seen_indexes: set[int] = set()
    for chunk in sorted(chunks, key=lambda c: c.chunk_index):
        if chunk.chunk_index in seen_indexes:
            continue
        seen_indexes.add(chunk.chunk_index)

        text = chunk.text.strip()
        if not text:
            continue
        if not merged:
            merged = text
            continue
        if merged.endswith(text):
            continue

        size = _overlap(merged, text)
        if size:
            merged += text[size:]
        else:
            merged += _CHUNK_SEPARATOR + text
    return merged


def merge_windows(indexes: Iterable[int], size: int) -> list[tuple[int, int]]:
    """Inclusive ``chunk_index`` ranges covering ``index +/- size`` for each index.

    Overlapping or adjacent windows collapse into one range; windows with a
    gap between them stay separate. Ranges are sorted and start at 0 or above.
    """
    ranges: list[tuple[int, int]] = []
    for index in sorted(set(indexes)):
        low, high = max(0, index - size), index + size
        if ranges and low <= ranges[-1][1] + 1:
            ranges[-1] = (ranges[-1][0], max(ranges[-1][1], high))
        else:
            ranges.append((low, high))
    return ranges


# =============================================================================
# ChunkContextExpander
# =============================================================================


class ChunkContextExpander:
    """Expands retrieved chunks with their neighbours.

    Usage:
        expander = ChunkContextExpander(vector_store, HybridConfig())
        context = await expander.get_chunk_context(result, window=1)
        contexts = await expander.get_batch_chunk_context(results)
    """

    def __init__(self, store: ChunkStoreProtocol, config: HybridConfig) -> None:
        self._store = store
        self._config = config

    def _resolve_window(self, window: int | None) -> int:
        resolved = self._config.default_context_window if window is None else window
        if not isinstance(resolved, int) or isinstance(resolved, bool) or resolved < 0:
            raise InvalidInputError(f"window must be a non-negative integer, got {resolved!r}")
        if resolved > self._config.max_context_window:
            raise InvalidInputError(
                f"window {resolved} exceeds maximum of {self._config.max_context_window}"
            )
        return resolved

    async def get_chunk_context(
        self,
        result: ScoredResult | ResultId,
        window: int | None = None,
    ) -> ChunkContext | None:
        """Context window around one chunk.

        Args:
            result: A scored result, or a point id to look up first
            window: Neighbours on each side (default: config.default_context_window)

        Returns:
            ChunkContext, or None if the point does not exist
        """
        size = self._resolve_window(window)

        if isinstance(result, (str, int)):
            payload = await self._call_store(self._store.get_by_id(result))
            if payload is None:
                return None
            center = ContextChunk.from_point(result, payload)
        else:
            center = ContextChunk.from_point(result.id, result.payload)

        document_id = center.payload.get(DOCUMENT_ID_FIELD)
        if document_id is None or size == 0:
            return ChunkContext(center, (center,), center.text, document_id)

        points = await self._call_store(
            self._store.get_chunks(
                document_id,
                max(0, center.chunk_index - size),
                center.chunk_index + size,
            )
        )
        neighbours = [ContextChunk.from_point(point_id, payload) for point_id, payload in points]
        return self._build(center, neighbours, size, document_id)

    async def get_batch_chunk_context(
        self,
        results: Sequence[ScoredResult],
        window: int | None = None,
    ) -> dict[ResultId, ChunkContext]:
        """Context windows for many results with few range lookups.

        Overlapping or adjacent windows of the same document share one range
        query; distant windows are fetched separately so the gap between them
        is never read. All lookups run concurrently.
        """
        size = self._resolve_window(window)

        centers = [ContextChunk.from_point(result.id, result.payload) for result in results]
        by_document: dict[Any, list[ContextChunk]] = defaultdict(list)
        contexts: dict[ResultId, ChunkContext] = {}

        for center in centers:
            document_id = center.payload.get(DOCUMENT_ID_FIELD)
            if document_id is None or size == 0:
                contexts[center.id] = ChunkContext(center, (center,), center.text, document_id)
            else:
                by_document[document_id].append(center)

        if not by_document:
            return contexts

        ranges = [
            (document_id, low, high)
            for document_id, document_centers in by_document.items()
            for low, high in merge_windows((c.chunk_index for c in document_centers), size)
        ]
        fetched = await asyncio.gather(
            *(
                self._call_store(self._store.get_chunks(document_id, low, high))
                for document_id, low, high in ranges
            )
        )

        chunks_by_document: dict[Any, list[ContextChunk]] = defaultdict(list)
        for (document_id, _, _), points in zip(ranges, fetched):
            chunks_by_document[document_id].extend(
                ContextChunk.from_point(point_id, payload) for point_id, payload in points
            )
        for document_id, document_centers in by_document.items():
            chunks = chunks_by_document[document_id]
            for center in document_centers:
                contexts[center.id] = self._build(center, chunks, size, document_id)

        logger.debug(
            "Expanded %d results across %d documents in %d lookups (window=%d)",
            len(centers),
            len(by_document),
            len(ranges),
            size,
        )
        return contexts

    @staticmethod
    def _build(
        center: ContextChunk,
        candidates: Sequence[ContextChunk],
        size: int,
        document_id: Any,
    ) -> ChunkContext:
        low, high = center.chunk_index - size, center.chunk_index + size
        by_index: dict[int, ContextChunk] = {center.chunk_index: center}
        for chunk in candidates:
            if low <= chunk.chunk_index <= high:
                by_index.setdefault(chunk.chunk_index, chunk)
        ordered = tuple(by_index[index] for index in sorted(by_index))
        return ChunkContext(center, ordered, merge_context_text(ordered), document_id)

    @staticmethod
    async def _call_store(awaitable: Any) -> Any:
        try:
            return await awaitable
        except RetrievalBackendError:
            raise
        except Exception as e:
            raise RetrievalBackendError(
                f"Context lookup failed: {e}", backend="vector", cause=e
            ) from e
