"""
Full-text matcher on top of Qdrant's payload text index.

Each spelling variant of the query (see text_normalization) is matched with
``MatchText`` on the chunk text field via ``scroll``; the variant equal to the
lowercased query labels its hits ``exact``, the others ``variant``. When no
variant matches, single tokens of four or more characters are tried and their
hits labelled ``token_fallback``.

Qdrant scroll returns points unranked, so scores come from
calculate_text_search_score().
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

from qdrant_client import AsyncQdrantClient

from hybrid_retrieval.search.exceptions import RetrievalBackendError
from hybrid_retrieval.search.intent import merge_filters
from hybrid_retrieval.search.models import MatchType, TextMatch
from hybrid_retrieval.search.text_normalization import (
    generate_query_variants,
    normalize_query,
    tokenize_query,
)
from hybrid_retrieval.search.vector import to_qdrant_filter

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

_BACKEND = "text"
_MIN_TOKEN_LENGTH = 4
_VARIANT_LIMIT_PADDING = 5
_TOKEN_LIMIT_PADDING = 3
_MIN_SCORE = 0.1
_MAX_TF_SCORE = 0.8


def calculate_text_search_score(
    search_term: str,
    text: str | None,
    position: int,
    matched_variant: str | None = None,
) -> float:
    """Heuristic relevance of a text hit.

    Occurrences of the term (or of the variant that matched, whichever is
    more frequent) times 0.1, capped at 0.8, multiplied by a position
    penalty ``max(0.1, 1 - position * 0.1)`` and a length normalization
    ``min(1, len(term) / 10)``.

    Returns:
        Score clamped to [0.1, 1.0]
    """
    if not text or not search_term:
        return _MIN_SCORE

    lower_text = text.lower()
    terms = {search_term.lower()}
    if matched_variant:
        terms.add(matched_variant.lower())
    matches = max(len(re.findall(re.escape(term), lower_text)) for term in terms)

    score = min(matches * 0.1, _MAX_TF_SCORE)
    score *= max(0.1, 1 - position * 0.1)
    score *= min(1.0, len(search_term) / 10)
    return min(1.0, max(_MIN_SCORE, score))


# =============================================================================
# Protocol for Duck Typing
# =============================================================================


@runtime_checkable
class TextMatcherProtocol(Protocol):
    """Keyword matcher interface consumed by the orchestrator."""

    async def search(
        self,
        query: str,
        limit: int,
        query_filter: dict[str, Any] | None = None,
    ) -> list[TextMatch]:
        """Ranked keyword hits with their match type."""
        ...


# =============================================================================
# Real Implementation
# =============================================================================


class QdrantTextMatcher:
    """Multi-variant keyword matcher using Qdrant full-text conditions.

    Usage:
        matcher = QdrantTextMatcher(client, collection="documents")
        hits = await matcher.search("Klima-Schutz", limit=40)
    """

    def __init__(
        self,
        client: AsyncQdrantClient,
        collection: str,
        text_field: str = "chunk_text",
    ) -> None:
        self._client = client
        self._collection = collection
        self._text_field = text_field

    async def search(
        self,
        query: str,
        limit: int,
        query_filter: dict[str, Any] | None = None,
    ) -> list[TextMatch]:
        """Search every query variant, then tokens if nothing matched.

        Failing variants are logged and skipped.

        Raises:
            RetrievalBackendError: If every variant query failed
        """
        variants = generate_query_variants(query)
        if not variants or limit <= 0:
            return []

        exact_form = query.strip().lower()
        per_variant = math.ceil(limit / len(variants)) + _VARIANT_LIMIT_PADDING
        outcomes = await asyncio.gather(
            *(self._scroll_term(variant, per_variant, query_filter) for variant in variants)
        )

        if all(points is None for points in outcomes):
            raise RetrievalBackendError(
                f"Text search failed for all {len(variants)} variants of '{query}'",
                backend=_BACKEND,
            )

        hits: dict[Any, tuple[dict[str, Any], str, MatchType]] = {}
        for variant, points in zip(variants, outcomes):
            match_type = MatchType.EXACT if variant == exact_form else MatchType.VARIANT
            for point_id, payload in points or []:
                hits.setdefault(point_id, (payload, variant, match_type))

        if not hits:
            hits = await self._token_fallback(query, limit, query_filter)

        results = [
            TextMatch(
                id=point_id,
                score=calculate_text_search_score(
                    query, payload.get(self._text_field), position, matched
                ),
                payload=payload,
                match_type=match_type,
            )
            for position, (point_id, (payload, matched, match_type)) in enumerate(hits.items())
        ]
        results.sort(key=lambda hit: -hit.score)

        logger.debug(
            "Text search '%s': %d unique hits from %d variants",
            query,
            len(results),
            len(variants),
        )
        return results[:limit]

    async def _token_fallback(
        self,
        query: str,
        limit: int,
        query_filter: dict[str, Any] | None,
    ) -> dict[Any, tuple[dict[str, Any], str, MatchType]]:
        normalized = normalize_query(query) or query
        tokens = [token for token in tokenize_query(normalized) if len(token) >= _MIN_TOKEN_LENGTH]
        if len(tokens) <= 1:
            return {}

        per_token = math.ceil(limit / len(tokens)) + _TOKEN_LIMIT_PADDING
        outcomes = await asyncio.gather(
            *(self._scroll_term(token, per_token, query_filter) for token in tokens)
        )

        hits: dict[Any, tuple[dict[str, Any], str, MatchType]] = {}
        for token, points in zip(tokens, outcomes):
            for point_id, payload in points or []:
                hits.setdefault(point_id, (payload, token, MatchType.TOKEN_FALLBACK))

        logger.debug("Token fallback for %s found %d hits", tokens, len(hits))
        return hits

    async def _scroll_term(
        self,
        term: str,
        limit: int,
        query_filter: dict[str, Any] | None,
    ) -> Sequence[tuple[Any, dict[str, Any]]] | None:
        """Points whose text field matches ``term``; None if the query failed."""
        text_condition = {"must": [{"key": self._text_field, "match": {"text": term}}]}
        qdrant_filter = to_qdrant_filter(merge_filters(text_condition, query_filter))
        try:
            points, _next_offset = await self._client.scroll(
                collection_name=self._collection,
                scroll_filter=qdrant_filter,
                limit=limit,
                with_payload=True,
                with_vectors=False,
            )
        except Exception as e:
            logger.warning("Text query for '%s' failed: %s", term, e)
            return None
        return [(point.id, dict(point.payload or {})) for point in points]
