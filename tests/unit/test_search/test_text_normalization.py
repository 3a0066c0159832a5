"""
Tests for query normalization and German spelling variants.
"""

from __future__ import annotations

from hybrid_retrieval.search.text_normalization import (
    MAX_VARIANTS,
    fold_umlauts,
    generate_query_variants,
    normalize_query,
    tokenize_query,
)


class TestFoldUmlauts:
    def test_folds_umlauts_and_eszett(self) -> None:
        assert fold_umlauts("Grüne Straße in Köln") == "Gruene Strasse in Koeln"

    def test_keeps_case_of_capitals(self) -> None:
        assert fold_umlauts("Ärger Über Öl") == "Aerger Ueber Oel"


class TestNormalizeQuery:
    def test_strips_punctuation_and_lowercases(self) -> None:
        assert normalize_query("Was ist CO2?!") == "was ist co2"

    def test_tightens_spaced_hyphens(self) -> None:
        assert normalize_query("Klima - Schutz") == "klima-schutz"

    def test_empty(self) -> None:
        assert normalize_query("") == ""


class TestTokenizeQuery:
    def test_splits_on_whitespace_hyphen_and_slash(self) -> None:
        assert tokenize_query("klima-schutz co2/steuer") == ["klima", "schutz", "co2", "steuer"]


class TestGenerateQueryVariants:
    def test_hyphen_joined_and_split(self) -> None:
        assert generate_query_variants("Klima-Schutz") == [
            "klima-schutz",
            "klimaschutz",
            "klima schutz",
        ]

    def test_eszett_variant(self) -> None:
        assert generate_query_variants("Straße") == ["straße", "strasse"]

    def test_multi_word_query_gets_hyphenated_and_folded(self) -> None:
        variants = generate_query_variants("Grüne Politik")

        assert variants[0] == "grüne politik"
        assert "grüne-politik" in variants
        assert "gruene politik" in variants

    def test_variants_are_unique_and_bounded(self) -> None:
        variants = generate_query_variants("Grüne Klima-Politik für Straßenbahnen")

        assert len(variants) == len(set(variants))
        assert len(variants) <= MAX_VARIANTS

    def test_blank_query_has_no_variants(self) -> None:
        assert generate_query_variants("   ") == []
