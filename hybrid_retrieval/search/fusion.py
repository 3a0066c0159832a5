"""
Fusion of vector and text result lists into one ranked list.

Strategies:
- rrf: Reciprocal Rank Fusion, sum of 1/(k + rank) across lists, with a
  confidence multiplier for corroborated / uncorroborated hits
- weighted: normalized linear combination of the backend scores

The strategy is chosen per query by determine_fusion_strategy(): RRF assumes
both lists are comparably reliable rankings, so sparse or token-fallback-only
text hits switch to vector-dominant weighted fusion.

All operations are pure and synchronous. Malformed inputs raise
InvalidInputError; nothing here performs I/O.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from hybrid_retrieval.core.config import HybridConfig
from hybrid_retrieval.search.exceptions import InvalidInputError
from hybrid_retrieval.search.models import (
    REAL_MATCH_TYPES,
    HybridMatch,
    MatchType,
    ResultId,
    ScoredResult,
    ScoreKind,
    SearchMethod,
    TextMatch,
    VectorMatch,
    ensure_single_score_kind,
    validate_results,
)

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

_NEUTRAL_CONFIDENCE = 1.0


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class FusionEntry:
    """Per-id accumulator used during a single fusion call.

    Attributes:
        id: Result identifier
        order: Insertion order across both lists, used for stable tie-breaking
        payload: Merged payload (vector payload wins on key conflicts)
        vector_score: Raw vector similarity, if the id was in the vector list
        text_score: Raw text score, if the id was in the text list
        vector_rank: 1-based rank in the vector list
        text_rank: 1-based rank in the text list
        match_type: Text match type, if the id was in the text list
        rrf_score: Accumulated reciprocal rank contributions
        weighted_score: Accumulated weighted contributions
    """

    id: ResultId
    order: int
    payload: dict[str, Any] = field(default_factory=dict)
    vector_score: float | None = None
    text_score: float | None = None
    vector_rank: int | None = None
    text_rank: int | None = None
    match_type: MatchType | None = None
    rrf_score: float = 0.0
    weighted_score: float = 0.0

    @property
    def search_method(self) -> SearchMethod:
        """Derived from which lists contributed to this entry."""
        if self.vector_rank is not None and self.text_rank is not None:
            return SearchMethod.HYBRID
        if self.vector_rank is not None:
            return SearchMethod.VECTOR
        return SearchMethod.TEXT

    def to_result(self, score: float, score_kind: ScoreKind) -> ScoredResult:
        """Freeze the accumulator into the matching result variant."""
        method = self.search_method
        if method is SearchMethod.HYBRID:
            return HybridMatch(
                id=self.id,
                score=score,
                payload=self.payload,
                original_vector_score=self.vector_score,  # type: ignore[arg-type]
                original_text_score=self.text_score,  # type: ignore[arg-type]
                match_type=self.match_type or MatchType.NONE,
                score_kind=score_kind,
            )
        if method is SearchMethod.VECTOR:
            return VectorMatch(
                id=self.id,
                score=score,
                payload=self.payload,
                score_kind=score_kind,
                original_vector_score=self.vector_score,
            )
        return TextMatch(
            id=self.id,
            score=score,
            payload=self.payload,
            match_type=self.match_type or MatchType.NONE,
            score_kind=score_kind,
            original_text_score=self.text_score,
        )


@dataclass(frozen=True)
class FusionStrategy:
    """Outcome of determine_fusion_strategy().

    Attributes:
        use_rrf: True for rank fusion, False for weighted fusion
        vector_weight: Vector weight for weighted fusion
        text_weight: Text weight for weighted fusion
        reason: Short label of the rule that decided
        auto_switched: True when RRF was preferred but overridden
    """

    use_rrf: bool
    vector_weight: float
    text_weight: float
    reason: str
    auto_switched: bool = False

    @property
    def method(self) -> str:
        return "rrf" if self.use_rrf else "weighted"


# =============================================================================
# FusionEngine
# =============================================================================


class FusionEngine:
    """Combines vector and text results using RRF or weighted fusion.

    Usage:
        engine = FusionEngine(HybridConfig())
        strategy = engine.determine_fusion_strategy(text_hits, prefer_rrf=True)
        if strategy.use_rrf:
            fused = engine.fuse_rrf(vector_hits, text_hits, limit=10)
        else:
            fused = engine.fuse_weighted(
                vector_hits, text_hits,
                strategy.vector_weight, strategy.text_weight, limit=10,
            )
        gated = engine.apply_quality_gate(fused, has_text_matches=bool(text_hits))
    """

    def __init__(self, config: HybridConfig) -> None:
        self._config = config

    @property
    def config(self) -> HybridConfig:
        """Get the injected hybrid configuration."""
        return self._config

    # -------------------------------------------------------------------------
    # Fusion
    # -------------------------------------------------------------------------

    def fuse_rrf(
        self,
        vector_results: Sequence[ScoredResult],
        text_results: Sequence[ScoredResult],
        limit: int,
        k: int | None = None,
    ) -> list[ScoredResult]:
        """Reciprocal Rank Fusion with confidence weighting.

        Each list contributes 1/(k + rank) per id (rank is the 1-based
        position in the list). Ids in both lists are summed and labelled
        hybrid. The sum is multiplied by confidence_boost for hybrid ids and
        confidence_penalty for vector-only ids when confidence weighting is
        enabled.

        Args:
            vector_results: Raw vector hits in store order
            text_results: Raw text hits in matcher order
            limit: Maximum number of results
            k: RRF smoothing constant (default: config.rrf_k)

        Returns:
            Results sorted by fused score descending, ties in insertion order

        Raises:
            InvalidInputError: On malformed lists, non-raw scores or bad k/limit
        """
        rrf_k = self._config.rrf_k if k is None else k
        if not isinstance(rrf_k, int) or isinstance(rrf_k, bool) or rrf_k < 1:
            raise InvalidInputError(f"k must be a positive integer, got {rrf_k!r}")
        self._validate_limit(limit)

        entries = self._accumulate(vector_results, text_results)

        for entry in entries.values():
            if entry.vector_rank is not None:
                entry.rrf_score += 1.0 / (rrf_k + entry.vector_rank)
            if entry.text_rank is not None:
                entry.rrf_score += 1.0 / (rrf_k + entry.text_rank)

        scored = [
            (entry, entry.rrf_score * self._confidence(entry))
            for entry in entries.values()
        ]
        ranked = sorted(scored, key=lambda item: -item[1])[:limit]

        logger.debug(
            "RRF fused %d vector + %d text hits into %d results (k=%d)",
            len(vector_results),
            len(text_results),
            len(ranked),
            rrf_k,
        )
        return [entry.to_result(score, ScoreKind.RRF) for entry, score in ranked]

    def fuse_weighted(
        self,
        vector_results: Sequence[ScoredResult],
        text_results: Sequence[ScoredResult],
        vector_weight: float,
        text_weight: float,
        limit: int,
    ) -> list[ScoredResult]:
        """Weighted linear fusion of original scores.

        Weights are normalized to sum to 1. No confidence weighting is
        applied in this mode.

        Raises:
            InvalidInputError: On malformed lists, negative weights or a zero
                weight sum
        """
        for name, weight in (("vector_weight", vector_weight), ("text_weight", text_weight)):
            if not isinstance(weight, (int, float)) or not math.isfinite(weight) or weight < 0:
                raise InvalidInputError(f"{name} must be a non-negative number, got {weight!r}")
        total = vector_weight + text_weight
        if total <= 0:
            raise InvalidInputError("vector_weight + text_weight must be greater than 0")
        self._validate_limit(limit)

        norm_vector = vector_weight / total
        norm_text = text_weight / total

        entries = self._accumulate(vector_results, text_results)
        for entry in entries.values():
            if entry.vector_score is not None:
                entry.weighted_score += entry.vector_score * norm_vector
            if entry.text_score is not None:
                entry.weighted_score += entry.text_score * norm_text

        ranked = sorted(entries.values(), key=lambda entry: -entry.weighted_score)[:limit]

        logger.debug(
            "Weighted fusion (%.2f/%.2f) produced %d results",
            norm_vector,
            norm_text,
            len(ranked),
        )
        return [
            entry.to_result(entry.weighted_score, ScoreKind.WEIGHTED) for entry in ranked
        ]

    # -------------------------------------------------------------------------
    # Strategy / Gates
    # -------------------------------------------------------------------------

    def determine_fusion_strategy(
        self,
        text_results: Sequence[ScoredResult],
        prefer_rrf: bool,
        vector_weight: float | None = None,
        text_weight: float | None = None,
    ) -> FusionStrategy:
        """Choose between RRF and weighted fusion for this query.

        Rules, first match wins:
        (a) RRF not preferred: weighted; caller weights if both given,
            else vector-dominant without real text matches, else balanced
        (b/c) no text results or only token-fallback hits: vector-dominant
        (d) fewer than min_text_results_for_rrf text hits: vector-dominant
        (e) otherwise RRF with balanced weights

        Args:
            text_results: Raw text hits for the query
            prefer_rrf: Caller/config preference for rank fusion
            vector_weight: Explicit caller vector weight, honoured in (a)
            text_weight: Explicit caller text weight, honoured in (a)
        """
        cfg = self._config
        has_real = has_real_text_matches(text_results)
        dominant = (cfg.vector_dominant_weight, cfg.text_fallback_weight)
        balanced = (cfg.balanced_vector_weight, cfg.balanced_text_weight)

        if not prefer_rrf:
            if vector_weight is not None and text_weight is not None:
                weights, reason = (vector_weight, text_weight), "caller_weights"
            elif has_real:
                weights, reason = balanced, "rrf_disabled"
            else:
                weights, reason = dominant, "rrf_disabled_no_real_text"
            return FusionStrategy(False, weights[0], weights[1], reason)

        if not text_results:
            strategy = FusionStrategy(False, *dominant, "no_text_results", auto_switched=True)
        elif not has_real:
            strategy = FusionStrategy(False, *dominant, "fallback_text_only", auto_switched=True)
        elif len(text_results) < cfg.min_text_results_for_rrf:
            strategy = FusionStrategy(False, *dominant, "sparse_text_results", auto_switched=True)
        else:
            strategy = FusionStrategy(True, *balanced, "rrf")

        if strategy.auto_switched:
            logger.info(
                "Switched from RRF to weighted fusion (%s, %d text results)",
                strategy.reason,
                len(text_results),
            )
        return strategy

    def apply_quality_gate(
        self,
        results: Sequence[ScoredResult],
        has_text_matches: bool,
    ) -> list[ScoredResult]:
        """Drop fused results below the configured minimum final scores.

        Vector-only results face the stricter min_vector_only_final_score
        only when the query produced no text matches at all.

        Raises:
            InvalidInputError: If the list is malformed or mixes score kinds
        """
        checked = validate_results(results)
        ensure_single_score_kind(checked, "quality gate")

        if not self._config.enable_quality_gate:
            return checked

        min_final = self._config.min_final_score
        min_vector_only = self._config.min_vector_only_final_score

        kept: list[ScoredResult] = []
        for result in checked:
            if result.score < min_final:
                continue
            if (
                not has_text_matches
                and isinstance(result, VectorMatch)
                and result.score < min_vector_only
            ):
                continue
            kept.append(result)

        dropped = len(checked) - len(kept)
        if dropped:
            logger.debug("Quality gate dropped %d of %d results", dropped, len(checked))
        return kept

    def calculate_dynamic_threshold(self, base_threshold: float, has_text_matches: bool) -> float:
        """Raise (never lower) the vector similarity threshold.

        Returns:
            max(base, min_vector_with_text_threshold) with text matches,
            max(base, min_vector_only_threshold) without
        """
        self._validate_threshold(base_threshold)
        if not self._config.enable_dynamic_thresholds:
            return base_threshold
        floor = (
            self._config.min_vector_with_text_threshold
            if has_text_matches
            else self._config.min_vector_only_threshold
        )
        return max(base_threshold, floor)

    def calculate_prefetch_threshold(self, base_threshold: float) -> float:
        """Threshold for a vector query issued before text results are known.

        The lower of the two dynamic floors; the exact dynamic threshold is
        applied to the returned hits once text results arrive.
        """
        self._validate_threshold(base_threshold)
        if not self._config.enable_dynamic_thresholds:
            return base_threshold
        floor = min(
            self._config.min_vector_only_threshold,
            self._config.min_vector_with_text_threshold,
        )
        return max(base_threshold, floor)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _confidence(self, entry: FusionEntry) -> float:
        if not self._config.enable_confidence_weighting:
            return _NEUTRAL_CONFIDENCE
        method = entry.search_method
        if method is SearchMethod.HYBRID:
            return self._config.confidence_boost
        if method is SearchMethod.VECTOR:
            return self._config.confidence_penalty
        return _NEUTRAL_CONFIDENCE

    def _accumulate(
        self,
        vector_results: Sequence[ScoredResult],
        text_results: Sequence[ScoredResult],
    ) -> dict[ResultId, FusionEntry]:
        vectors = validate_results(vector_results, "vector_results")
        texts = validate_results(text_results, "text_results")
        for name, results in (("vector_results", vectors), ("text_results", texts)):
            if any(result.score_kind is not ScoreKind.RAW for result in results):
                raise InvalidInputError(f"{name} must contain raw backend scores")

        entries: dict[ResultId, FusionEntry] = {}

        for rank, result in enumerate(vectors, start=1):
            entry = entries.get(result.id)
            if entry is None:
                entry = FusionEntry(id=result.id, order=len(entries))
                entries[result.id] = entry
            elif entry.vector_rank is not None:
                # duplicate id in the same list, first occurrence wins
                continue
            entry.vector_rank = rank
            entry.vector_score = result.score
            entry.payload = {**entry.payload, **result.payload}

        for rank, result in enumerate(texts, start=1):
            entry = entries.get(result.id)
            if entry is None:
                entry = FusionEntry(id=result.id, order=len(entries))
                entries[result.id] = entry
            elif entry.text_rank is not None:
                continue
            entry.text_rank = rank
            entry.text_score = result.score
            entry.match_type = result.match_type or MatchType.NONE
            entry.payload = {**result.payload, **entry.payload}

        return entries

    @staticmethod
    def _validate_limit(limit: int) -> None:
        if not isinstance(limit, int) or isinstance(limit, bool) or limit < 0:
            raise InvalidInputError(f"limit must be a non-negative integer, got {limit!r}")

    @staticmethod
    def _validate_threshold(threshold: float) -> None:
        if (
            not isinstance(threshold, (int, float))
            or isinstance(threshold, bool)
            or not 0.0 <= threshold <= 1.0
        ):
            raise InvalidInputError(f"threshold must be within [0, 1], got {threshold!r}")


def has_real_text_matches(text_results: Sequence[ScoredResult]) -> bool:
    """True when at least one text hit is an exact or variant match."""
    return any(result.match_type in REAL_MATCH_TYPES for result in text_results)
