"""
Tests for chunk context expansion.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from hybrid_retrieval.core.config import HybridConfig
from hybrid_retrieval.search.context import (
    ChunkContextExpander,
    ContextChunk,
    merge_context_text,
    merge_windows,
)
from hybrid_retrieval.search.exceptions import InvalidInputError, RetrievalBackendError
from hybrid_retrieval.search.models import VectorMatch
from tests.fakes import InMemoryVectorStore


def _chunk(index: int, text: str) -> ContextChunk:
    return ContextChunk(id=f"c{index}", chunk_index=index, text=text)


@pytest.fixture
def store() -> InMemoryVectorStore:
    store = InMemoryVectorStore()
    for index in range(5):
        store.add(
            f"doc1-{index}",
            {"document_id": "doc1", "chunk_index": index, "chunk_text": f"Absatz {index}."},
        )
    store.add("loose", {"chunk_text": "Ohne Dokument."})
    return store


@pytest.fixture
def expander(store: InMemoryVectorStore, hybrid_config: HybridConfig) -> ChunkContextExpander:
    return ChunkContextExpander(store, hybrid_config)


# =============================================================================
# merge_context_text
# =============================================================================


class TestMergeContextText:
    def test_removes_overlap_between_neighbours(self) -> None:
        chunks = [
            _chunk(0, "Der Klimawandel ist real. Wir handeln jetzt"),
            _chunk(1, "Wir handeln jetzt sofort."),
        ]

        assert merge_context_text(chunks) == "Der Klimawandel ist real. Wir handeln jetzt sofort."

    def test_joins_without_overlap(self) -> None:
        assert merge_context_text([_chunk(1, "Zwei."), _chunk(0, "Eins.")]) == "Eins.\n\nZwei."

    def test_skips_contained_chunk(self) -> None:
        chunks = [_chunk(0, "Ein langer Absatz mit Ende."), _chunk(1, "mit Ende.")]

        assert merge_context_text(chunks) == "Ein langer Absatz mit Ende."

    def test_empty(self) -> None:
        assert merge_context_text([]) == ""


# =============================================================================
# get_chunk_context
# =============================================================================


class TestGetChunkContext:
    @pytest.mark.asyncio
    async def test_window_around_result(self, expander: ChunkContextExpander) -> None:
        result = VectorMatch(
            id="doc1-2",
            score=0.8,
            payload={"document_id": "doc1", "chunk_index": 2, "chunk_text": "Absatz 2."},
        )

        context = await expander.get_chunk_context(result, window=1)

        assert context is not None
        assert [c.chunk_index for c in context.chunks] == [1, 2, 3]
        assert context.text == "Absatz 1.\n\nAbsatz 2.\n\nAbsatz 3."
        assert context.document_id == "doc1"

    @pytest.mark.asyncio
    async def test_looks_up_point_by_id(self, expander: ChunkContextExpander) -> None:
        context = await expander.get_chunk_context("doc1-0", window=1)

        assert context is not None
        assert [c.chunk_index for c in context.chunks] == [0, 1]

    @pytest.mark.asyncio
    async def test_unknown_id_returns_none(self, expander: ChunkContextExpander) -> None:
        assert await expander.get_chunk_context("missing") is None

    @pytest.mark.asyncio
    async def test_without_document_id_returns_center_only(
        self, expander: ChunkContextExpander, store: InMemoryVectorStore
    ) -> None:
        context = await expander.get_chunk_context("loose", window=2)

        assert context is not None
        assert context.chunks == (context.center,)
        assert store.chunk_lookups == []

    @pytest.mark.asyncio
    async def test_rejects_window_above_maximum(self, expander: ChunkContextExpander) -> None:
        with pytest.raises(InvalidInputError):
            await expander.get_chunk_context("doc1-0", window=99)

    @pytest.mark.asyncio
    async def test_store_failure_is_wrapped(self, hybrid_config: HybridConfig) -> None:
        store = AsyncMock()
        store.get_chunks.side_effect = RuntimeError("connection reset")
        expander = ChunkContextExpander(store, hybrid_config)
        result = VectorMatch(id="a", score=0.5, payload={"document_id": "d", "chunk_index": 0})

        with pytest.raises(RetrievalBackendError) as exc_info:
            await expander.get_chunk_context(result)

        assert exc_info.value.backend == "vector"
        assert isinstance(exc_info.value.cause, RuntimeError)


# =============================================================================
# get_batch_chunk_context
# =============================================================================


class TestGetBatchChunkContext:
    @pytest.mark.asyncio
    async def test_overlapping_windows_share_one_lookup(
        self, expander: ChunkContextExpander, store: InMemoryVectorStore
    ) -> None:
        results = [
            VectorMatch(id="doc1-1", score=0.9, payload={"document_id": "doc1", "chunk_index": 1}),
            VectorMatch(id="doc1-3", score=0.8, payload={"document_id": "doc1", "chunk_index": 3}),
            VectorMatch(id="loose", score=0.7, payload={"chunk_text": "Ohne Dokument."}),
        ]

        contexts = await expander.get_batch_chunk_context(results, window=1)

        assert store.chunk_lookups == [("doc1", 0, 4)]
        assert [c.chunk_index for c in contexts["doc1-1"].chunks] == [0, 1, 2]
        assert [c.chunk_index for c in contexts["doc1-3"].chunks] == [2, 3, 4]
        assert contexts["loose"].text == "Ohne Dokument."

    @pytest.mark.asyncio
    async def test_empty_results(self, expander: ChunkContextExpander) -> None:
        assert await expander.get_batch_chunk_context([]) == {}

    @pytest.mark.asyncio
    async def test_distant_windows_skip_the_gap(
        self, expander: ChunkContextExpander, store: InMemoryVectorStore
    ) -> None:
        results = [
            VectorMatch(id="doc1-0", score=0.9, payload={"document_id": "doc1", "chunk_index": 0}),
            VectorMatch(
                id="doc1-500",
                score=0.8,
                payload={"document_id": "doc1", "chunk_index": 500, "chunk_text": "Weit hinten."},
            ),
        ]

        contexts = await expander.get_batch_chunk_context(results, window=2)

        assert sorted(store.chunk_lookups) == [("doc1", 0, 2), ("doc1", 498, 502)]
        assert [c.chunk_index for c in contexts["doc1-0"].chunks] == [0, 1, 2]
        assert contexts["doc1-500"].text == "Weit hinten."


class TestMergeWindows:
    def test_adjacent_windows_collapse(self) -> None:
        assert merge_windows([3, 0], 1) == [(0, 4)]

    def test_gap_keeps_windows_apart(self) -> None:
        assert merge_windows([0, 4], 1) == [(0, 1), (3, 5)]

    def test_duplicates_and_lower_bound(self) -> None:
        assert merge_windows([1, 1], 3) == [(0, 4)]
