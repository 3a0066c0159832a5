"""
Tests for chunk quality scoring and quality-aware re-ranking.
"""

from __future__ import annotations

import pytest

from hybrid_retrieval.core.config import QualityConfig, QualityRetrievalConfig
from hybrid_retrieval.search.exceptions import InvalidInputError
from hybrid_retrieval.search.models import ScoreKind, TextMatch, VectorMatch
from hybrid_retrieval.search.quality import (
    QualityScorer,
    completeness_score,
    density_score,
    extract_text,
    readability_score,
    structure_score,
)

GOOD_CHUNK = (
    "Klimaschutz ist eine zentrale Aufgabe unserer Zeit. Wir wollen die "
    "Energiewende konsequent voranbringen und erneuerbare Energien ausbauen."
)
POOR_CHUNK = "und dann ... ,,, der der der der"


@pytest.fixture
def scorer(quality_config: QualityConfig) -> QualityScorer:
    return QualityScorer(quality_config)


# =============================================================================
# Sub-scores
# =============================================================================


class TestSubScores:
    def test_completeness_rewards_whole_sentences(self) -> None:
        assert completeness_score("Ein ganzer Satz.") == 1.0
        assert completeness_score("mitten im satz") == 0.0
        assert completeness_score("Anfang ohne Ende") == 0.5

    def test_structure_rewards_headings_and_lists(self) -> None:
        structured = "# Titel\n- Punkt eins\n- Punkt zwei"

        assert structure_score("eine Zeile") == pytest.approx(0.5)
        assert structure_score(structured) == pytest.approx(0.9)
        assert structure_score(structured, "list") == pytest.approx(1.0)

    def test_structure_penalizes_long_run_on_line(self) -> None:
        assert structure_score("wort " * 300) == pytest.approx(0.3)

    def test_empty_text_scores_zero(self) -> None:
        for score in (readability_score, completeness_score, structure_score, density_score):
            assert score("   ") == 0.0

    def test_readability_prefers_prose(self) -> None:
        assert readability_score(GOOD_CHUNK) > readability_score(POOR_CHUNK)

    def test_density_prefers_diverse_text(self) -> None:
        assert density_score(GOOD_CHUNK) > density_score("der der der der der der")


class TestExtractText:
    def test_prefers_chunk_text(self) -> None:
        payload = {"text": "fallback", "chunk_text": "primary"}

        assert extract_text(payload) == "primary"

    def test_skips_blank_fields(self) -> None:
        assert extract_text({"chunk_text": "  ", "content": "body"}) == "body"

    def test_returns_none_without_text(self) -> None:
        assert extract_text({"title": "x"}) is None


# =============================================================================
# calculate_chunk_quality
# =============================================================================


class TestCalculateChunkQuality:
    def test_score_in_unit_interval(self, scorer: QualityScorer) -> None:
        for text in (GOOD_CHUNK, POOR_CHUNK, "x"):
            assert 0.0 <= scorer.calculate_chunk_quality(text) <= 1.0

    def test_good_chunk_beats_poor_chunk(self, scorer: QualityScorer) -> None:
        assert scorer.calculate_chunk_quality(GOOD_CHUNK) > scorer.calculate_chunk_quality(
            POOR_CHUNK
        )

    def test_empty_text_is_zero(self, scorer: QualityScorer) -> None:
        assert scorer.calculate_chunk_quality("") == 0.0

    def test_accepts_payload_mapping(self, scorer: QualityScorer) -> None:
        from_payload = scorer.calculate_chunk_quality({"chunk_text": GOOD_CHUNK})

        assert from_payload == pytest.approx(scorer.calculate_chunk_quality(GOOD_CHUNK))

    def test_disabled_scoring_returns_one(self) -> None:
        scorer = QualityScorer(QualityConfig(_env_file=None, enabled=False))

        assert scorer.calculate_chunk_quality(POOR_CHUNK) == 1.0

    def test_rejects_non_text(self, scorer: QualityScorer) -> None:
        with pytest.raises(InvalidInputError):
            scorer.calculate_chunk_quality(42)  # type: ignore[arg-type]


class TestQualityOf:
    def test_stored_score_wins_and_is_clamped(self, scorer: QualityScorer) -> None:
        result = VectorMatch(id="a", score=0.5, payload={"quality_score": 1.7, "chunk_text": "x"})

        assert scorer.quality_of(result) == 1.0

    def test_computed_from_text(self, scorer: QualityScorer) -> None:
        result = VectorMatch(id="a", score=0.5, payload={"chunk_text": GOOD_CHUNK})

        assert scorer.quality_of(result) == pytest.approx(
            scorer.calculate_chunk_quality(GOOD_CHUNK)
        )

    def test_none_without_signal(self, scorer: QualityScorer) -> None:
        assert scorer.quality_of(VectorMatch(id="a", score=0.5)) is None


# =============================================================================
# apply_quality_boost
# =============================================================================


class TestApplyQualityBoost:
    def test_high_quality_boosted_low_quality_reduced(self, scorer: QualityScorer) -> None:
        results = [
            VectorMatch(id="hi", score=0.5, payload={"quality_score": 1.0}),
            VectorMatch(id="lo", score=0.5, payload={"quality_score": 0.0}),
        ]

        boosted = {r.id: r.score for r in scorer.apply_quality_boost(results)}

        assert boosted["hi"] == pytest.approx(0.55)
        assert boosted["lo"] == pytest.approx(0.45)

    def test_missing_quality_is_neutral(self, scorer: QualityScorer) -> None:
        boosted = scorer.apply_quality_boost([VectorMatch(id="a", score=0.4)])

        assert boosted[0].score == pytest.approx(0.4)
        assert boosted[0].score_kind is ScoreKind.QUALITY_BOOSTED

    def test_resorts_by_boosted_score(self, scorer: QualityScorer) -> None:
        results = [
            TextMatch(id="a", score=0.50, payload={"quality_score": 0.0}),
            TextMatch(id="b", score=0.48, payload={"quality_score": 1.0}),
        ]

        boosted = scorer.apply_quality_boost(results)

        assert [r.id for r in boosted] == ["b", "a"]

    def test_explicit_boost_factor(self, scorer: QualityScorer) -> None:
        results = [VectorMatch(id="a", score=0.4, payload={"quality_score": 1.0})]

        boosted = scorer.apply_quality_boost(results, boost_factor=1.5)

        assert boosted[0].score == pytest.approx(0.5)

    def test_refuses_double_boost(self, scorer: QualityScorer) -> None:
        once = scorer.apply_quality_boost([VectorMatch(id="a", score=0.4)])

        with pytest.raises(InvalidInputError):
            scorer.apply_quality_boost(once)

    def test_refuses_mixed_score_kinds(self, scorer: QualityScorer) -> None:
        mixed = [
            VectorMatch(id="a", score=0.4),
            VectorMatch(id="b", score=0.01, score_kind=ScoreKind.RRF),
        ]

        with pytest.raises(InvalidInputError):
            scorer.apply_quality_boost(mixed)


# =============================================================================
# filter_by_quality
# =============================================================================


class TestFilterByQuality:
    @pytest.fixture
    def results(self) -> list[VectorMatch]:
        return [
            VectorMatch(id="low", score=0.9, payload={"quality_score": 0.2}),
            VectorMatch(id="high", score=0.8, payload={"quality_score": 0.6}),
            VectorMatch(id="unknown", score=0.7),
        ]

    def test_drops_low_quality_keeps_unknown(
        self, scorer: QualityScorer, results: list[VectorMatch]
    ) -> None:
        kept = scorer.filter_by_quality(results)

        assert [r.id for r in kept] == ["high", "unknown"]

    def test_explicit_minimum(self, scorer: QualityScorer, results: list[VectorMatch]) -> None:
        kept = scorer.filter_by_quality(results, min_quality=0.1)

        assert len(kept) == 3

    def test_disabled_filter_keeps_everything(self, results: list[VectorMatch]) -> None:
        config = QualityConfig(
            _env_file=None,
            retrieval=QualityRetrievalConfig(enable_quality_filter=False),
        )

        assert QualityScorer(config).filter_by_quality(results) == results
