"""
Chunk quality scoring and quality-aware re-ranking.

A chunk's quality is a weighted sum of four heuristic sub-scores, each in
[0, 1]:

- readability: sentence and word length close to ordinary prose
- completeness: starts like a sentence and ends with terminal punctuation
- structure: paragraphs, headings and lists instead of one run-on line
- density: share of alphanumeric characters and lexical diversity

Stored ``quality_score`` payload values (written at ingestion time) take
precedence over recomputation.
"""

from __future__ import annotations

import dataclasses
import logging
import re
from collections.abc import Mapping, Sequence
from typing import Any

from hybrid_retrieval.core.config import QualityConfig
from hybrid_retrieval.search.exceptions import InvalidInputError
from hybrid_retrieval.search.models import (
    ScoredResult,
    ScoreKind,
    ensure_single_score_kind,
    validate_results,
)

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

TEXT_FIELDS = ("chunk_text", "text", "content")
QUALITY_FIELD = "quality_score"
NEUTRAL_QUALITY = 0.5

_IDEAL_SENTENCE_WORDS = (8, 25)
_IDEAL_WORD_CHARS = (4.0, 8.0)
_MIN_WORDS_FOR_DENSITY = 5

_SENTENCE_SPLIT = re.compile(r"[.!?]+(?:\s+|$)")
_WORD = re.compile(r"\w+", re.UNICODE)
_HEADING = re.compile(r"^\s{0,3}#{1,6}\s+\S", re.MULTILINE)
_LIST_ITEM = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+\S", re.MULTILINE)
_TERMINAL = (".", "!", "?", ":", '"', "“", "”", ")", "»")
_STRUCTURED_CONTENT_TYPES = frozenset({"heading", "list", "table", "code"})


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _range_score(value: float, low: float, high: float) -> float:
    """1.0 inside [low, high], decaying linearly to 0 at 0 and at 3*high."""
    if low <= value <= high:
        return 1.0
    if value < low:
        return _clamp(value / low) if low > 0 else 0.0
    return _clamp(1.0 - (value - high) / (2 * high))


# =============================================================================
# Sub-scores
# =============================================================================


def readability_score(text: str) -> float:
    """Score average sentence and word length against prose norms."""
    if not text or not text.strip():
        return 0.0

    words = _WORD.findall(text)
    if not words:
        return 0.0

    sentences = [s for s in _SENTENCE_SPLIT.split(text) if _WORD.search(s)]
    sentence_count = max(1, len(sentences))
    avg_sentence = len(words) / sentence_count
    avg_word = sum(len(word) for word in words) / len(words)

    sentence_part = _range_score(avg_sentence, *_IDEAL_SENTENCE_WORDS)
    word_part = _range_score(avg_word, *_IDEAL_WORD_CHARS)
    return _clamp(0.6 * sentence_part + 0.4 * word_part)


def completeness_score(text: str) -> float:
    """Penalize chunks cut mid-sentence at either end."""
    stripped = text.strip() if text else ""
    if not stripped:
        return 0.0

    score = 0.0
    first = stripped[0]
    if first.isupper() or first.isdigit() or first in "#-*\"'„«(":
        score += 0.5
    if stripped.endswith(_TERMINAL):
        score += 0.5
    return score


def structure_score(text: str, content_type: str | None = None) -> float:
    """Reward paragraphs, headings and lists; penalize one long run-on line."""
    stripped = text.strip() if text else ""
    if not stripped:
        return 0.0

    score = 0.5
    lines = [line for line in stripped.splitlines() if line.strip()]
    if len(lines) > 1:
        score += 0.2
    if _HEADING.search(stripped) or _LIST_ITEM.search(stripped):
        score += 0.2
    if content_type in _STRUCTURED_CONTENT_TYPES:
        score += 0.1
    if len(lines) == 1 and len(stripped) > 1000:
        score -= 0.2
    return _clamp(score)


def density_score(text: str) -> float:
    """Share of alphanumeric characters blended with lexical diversity."""
    if not text or not text.strip():
        return 0.0

    visible = [char for char in text if not char.isspace()]
    alnum_ratio = sum(1 for char in visible if char.isalnum()) / len(visible)

    words = [word.lower() for word in _WORD.findall(text)]
    diversity = len(set(words)) / len(words) if words else 0.0

    score = 0.5 * alnum_ratio + 0.5 * diversity
    if len(words) < _MIN_WORDS_FOR_DENSITY:
        score *= 0.5
    return _clamp(score)


def extract_text(payload: Mapping[str, Any]) -> str | None:
    """First non-empty text field of a payload (chunk_text, text, content)."""
    for name in TEXT_FIELDS:
        value = payload.get(name)
        if isinstance(value, str) and value.strip():
            return value
    return None


# =============================================================================
# QualityScorer
# =============================================================================


class QualityScorer:
    """Computes chunk quality and applies it to retrieval results.

    Usage:
        scorer = QualityScorer(QualityConfig())
        q = scorer.calculate_chunk_quality("Klimaschutz ist ...")
        kept = scorer.filter_by_quality(results)
        boosted = scorer.apply_quality_boost(kept)
    """

    def __init__(self, config: QualityConfig) -> None:
        self._config = config

    @property
    def config(self) -> QualityConfig:
        return self._config

    def calculate_chunk_quality(self, chunk: str | Mapping[str, Any]) -> float:
        """Weighted quality score of a chunk in [0, 1].

        Args:
            chunk: Raw text, or a payload mapping with a text field and an
                optional ``content_type``

        Returns:
            Quality score; 1.0 when quality scoring is disabled
        """
        if isinstance(chunk, Mapping):
            text = extract_text(chunk) or ""
            content_type = chunk.get("content_type")
        elif isinstance(chunk, str):
            text, content_type = chunk, None
        else:
            raise InvalidInputError(
                f"chunk must be text or a payload mapping, got {type(chunk).__name__}"
            )

        if not self._config.enabled:
            return 1.0
        if not text.strip():
            return 0.0

        weights = self._config.weights
        total = weights.total
        if total <= 0:
            return 0.0

        weighted = (
            weights.readability * readability_score(text)
            + weights.completeness * completeness_score(text)
            + weights.structure * structure_score(text, content_type)
            + weights.density * density_score(text)
        )
        return _clamp(weighted / total)

    def quality_of(self, result: ScoredResult) -> float | None:
        """Stored quality_score, else computed from payload text, else None."""
        stored = result.payload.get(QUALITY_FIELD)
        if isinstance(stored, (int, float)) and not isinstance(stored, bool):
            return _clamp(float(stored))
        if extract_text(result.payload) is None:
            return None
        return self.calculate_chunk_quality(result.payload)

    def apply_quality_boost(
        self,
        results: Sequence[ScoredResult],
        boost_factor: float | None = None,
    ) -> list[ScoredResult]:
        """Rescale scores by ``1 + (quality - 0.5) * (boost_factor - 1)``.

        Results without any quality signal are treated as neutral (0.5) and
        keep their score. Output is re-sorted by the boosted score and
        relabelled QUALITY_BOOSTED.

        Raises:
            InvalidInputError: On malformed or mixed-kind lists, or when the
                results were already boosted
        """
        checked = validate_results(results)
        ensure_single_score_kind(checked, "quality boost")
        if any(result.score_kind is ScoreKind.QUALITY_BOOSTED for result in checked):
            raise InvalidInputError("results were already quality boosted")

        factor = (
            boost_factor
            if boost_factor is not None
            else self._config.retrieval.quality_boost_factor
        )
        if factor <= 0:
            raise InvalidInputError(f"boost_factor must be positive, got {factor!r}")

        boosted: list[ScoredResult] = []
        for result in checked:
            quality = self.quality_of(result)
            if quality is None:
                quality = NEUTRAL_QUALITY
            multiplier = 1.0 + (quality - NEUTRAL_QUALITY) * (factor - 1.0)
            boosted.append(
                dataclasses.replace(
                    result,
                    score=result.score * multiplier,
                    score_kind=ScoreKind.QUALITY_BOOSTED,
                )
            )

        boosted.sort(key=lambda result: -result.score)
        return boosted

    def filter_by_quality(
        self,
        results: Sequence[ScoredResult],
        min_quality: float | None = None,
    ) -> list[ScoredResult]:
        """Drop results whose quality is below ``min_quality``.

        Only active when ``retrieval.enable_quality_filter`` is set. Results
        with neither a stored score nor payload text are kept.
        """
        checked = validate_results(results)
        if not self._config.retrieval.enable_quality_filter:
            return checked

        threshold = (
            min_quality
            if min_quality is not None
            else self._config.retrieval.min_retrieval_quality
        )

        kept = []
        for result in checked:
            quality = self.quality_of(result)
            if quality is None or quality >= threshold:
                kept.append(result)

        if len(kept) < len(checked):
            logger.debug(
                "Quality filter (min=%.2f) dropped %d of %d results",
                threshold,
                len(checked) - len(kept),
                len(checked),
            )
        return kept
