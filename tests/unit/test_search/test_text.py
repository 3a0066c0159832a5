"""
Tests for the Qdrant full-text matcher and its scoring heuristic.

The Qdrant client is an AsyncMock whose ``scroll`` answers from a dict of
term -> points, keyed by the MatchText condition of each request.
"""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock

import pytest

from hybrid_retrieval.search.exceptions import RetrievalBackendError
from hybrid_retrieval.search.models import MatchType
from hybrid_retrieval.search.text import QdrantTextMatcher, calculate_text_search_score


def _point(point_id: Any, text: str) -> SimpleNamespace:
    return SimpleNamespace(id=point_id, payload={"chunk_text": text})


def _client(corpus: dict[str, list[SimpleNamespace]], failing: set[str] | None = None) -> AsyncMock:
    failing = failing or set()

    async def scroll(**kwargs: Any) -> tuple[list[SimpleNamespace], None]:
        term = kwargs["scroll_filter"].must[0].match.text
        if term in failing or "*" in failing:
            raise ConnectionError(f"scroll failed for {term}")
        return corpus.get(term, []), None

    client = AsyncMock()
    client.scroll.side_effect = scroll
    return client


# =============================================================================
# calculate_text_search_score
# =============================================================================


class TestCalculateTextSearchScore:
    def test_term_frequency(self) -> None:
        score = calculate_text_search_score("klimaschutz", "Klimaschutz und Klimaschutz", 0)

        assert score == pytest.approx(0.2)

    def test_position_penalty(self) -> None:
        score = calculate_text_search_score("klimaschutz", "Klimaschutz und Klimaschutz", 3)

        assert score == pytest.approx(0.14)

    def test_matched_variant_counts(self) -> None:
        score = calculate_text_search_score(
            "klima-schutz", "Klimaschutz heißt klimaschutz", 0, matched_variant="klimaschutz"
        )

        assert score == pytest.approx(0.2)

    def test_floor_for_missing_text_and_short_terms(self) -> None:
        assert calculate_text_search_score("klimaschutz", None, 0) == pytest.approx(0.1)
        assert calculate_text_search_score("co2", "CO2 Steuer", 0) == pytest.approx(0.1)


# =============================================================================
# QdrantTextMatcher
# =============================================================================


class TestQdrantTextMatcher:
    @pytest.mark.asyncio
    async def test_labels_exact_and_variant_hits(self) -> None:
        client = _client(
            {
                "klima-schutz": [_point(1, "Klima-Schutz jetzt")],
                "klimaschutz": [_point(2, "Klimaschutz"), _point(1, "Klima-Schutz jetzt")],
            }
        )
        matcher = QdrantTextMatcher(client, collection="test_documents")

        hits = await matcher.search("Klima-Schutz", limit=10)

        by_id = {hit.id: hit for hit in hits}
        assert by_id[1].match_type is MatchType.EXACT
        assert by_id[2].match_type is MatchType.VARIANT
        assert len(hits) == 2

    @pytest.mark.asyncio
    async def test_per_variant_scroll_limit(self) -> None:
        client = _client({})
        matcher = QdrantTextMatcher(client, collection="test_documents")

        await matcher.search("Klima-Schutz", limit=10)

        # three variants: ceil(10 / 3) + 5
        assert client.scroll.call_args_list[0].kwargs["limit"] == 9
        assert client.scroll.call_args_list[0].kwargs["collection_name"] == "test_documents"

    @pytest.mark.asyncio
    async def test_token_fallback_when_no_variant_matches(self) -> None:
        client = _client({"verkehrswende": [_point(3, "Die Verkehrswende kommt.")]})
        matcher = QdrantTextMatcher(client, collection="test_documents")

        hits = await matcher.search("Klimaschutz Verkehrswende", limit=10)

        assert [hit.id for hit in hits] == [3]
        assert hits[0].match_type is MatchType.TOKEN_FALLBACK

    @pytest.mark.asyncio
    async def test_single_token_query_without_hits(self) -> None:
        matcher = QdrantTextMatcher(_client({}), collection="test_documents")

        assert await matcher.search("Klimaschutz", limit=10) == []

    @pytest.mark.asyncio
    async def test_partial_variant_failure_is_tolerated(self) -> None:
        client = _client(
            {"klima-schutz": [_point(1, "Klima-Schutz")]},
            failing={"klimaschutz"},
        )
        matcher = QdrantTextMatcher(client, collection="test_documents")

        hits = await matcher.search("Klima-Schutz", limit=10)

        assert [hit.id for hit in hits] == [1]

    @pytest.mark.asyncio
    async def test_all_variants_failing_raises(self) -> None:
        matcher = QdrantTextMatcher(_client({}, failing={"*"}), collection="test_documents")

        with pytest.raises(RetrievalBackendError) as exc_info:
            await matcher.search("Klima-Schutz", limit=10)

        assert exc_info.value.backend == "text"

    @pytest.mark.asyncio
    async def test_caller_filter_is_merged(self) -> None:
        client = _client({})
        matcher = QdrantTextMatcher(client, collection="test_documents")
        query_filter = {"must": [{"key": "collection", "match": {"any": ["grundsatz_documents"]}}]}

        await matcher.search("Klimaschutz", limit=5, query_filter=query_filter)

        scroll_filter = client.scroll.call_args_list[0].kwargs["scroll_filter"]
        assert len(scroll_filter.must) == 2

    @pytest.mark.asyncio
    async def test_results_sorted_and_truncated(self) -> None:
        points = [_point(i, "Klimaschutz " * (i + 1)) for i in range(6)]
        matcher = QdrantTextMatcher(_client({"klimaschutz": points}), collection="test_documents")

        hits = await matcher.search("Klimaschutz", limit=3)

        scores = [hit.score for hit in hits]
        assert len(hits) == 3
        assert scores == sorted(scores, reverse=True)
