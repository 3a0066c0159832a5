"""
Query normalization and spelling variants for German full-text matching.

Full-text indexes match tokens literally, so "Klima-Schutz", "Klimaschutz"
and "Klima Schutz" or "Straße" and "Strasse" miss each other. The text
matcher searches every variant produced here.

Usage:
    from hybrid_retrieval.search.text_normalization import generate_query_variants

    generate_query_variants("Grüne Klima-Politik")
    # ['grüne klima-politik', 'grüne klimapolitik', 'grüne klima politik',
    #  'gruene klima-politik', ...]
"""

from __future__ import annotations

import re

_UMLAUT_MAP = str.maketrans(
    {
        "ä": "ae",
        "ö": "oe",
        "ü": "ue",
        "Ä": "Ae",
        "Ö": "Oe",
        "Ü": "Ue",
        "ß": "ss",
    }
)

_WHITESPACE = re.compile(r"\s+")
_PUNCTUATION = re.compile(r"[^\w\s-]", re.UNICODE)
_TOKEN_SPLIT = re.compile(r"[\s\-/]+")
_HYPHEN = re.compile(r"\s*-\s*")

MAX_VARIANTS = 8


def fold_umlauts(text: str) -> str:
    """Replace umlauts with their two-letter transcription and ß with ss."""
    return text.translate(_UMLAUT_MAP)


def normalize_query(query: str) -> str:
    """Lowercase, strip punctuation (hyphens kept) and collapse whitespace."""
    if not query:
        return ""
    cleaned = _PUNCTUATION.sub(" ", query.lower())
    cleaned = _HYPHEN.sub("-", cleaned)
    return _WHITESPACE.sub(" ", cleaned).strip()


def tokenize_query(query: str) -> list[str]:
    """Split a normalized query on whitespace, hyphens and slashes."""
    return [token for token in _TOKEN_SPLIT.split(query) if token]


def generate_query_variants(query: str) -> list[str]:
    """
    Spelling variants of a query, the lowercased query first.

    Variants cover umlaut folding, ß -> ss, hyphen joining ("klima-schutz"
    -> "klimaschutz"), hyphen splitting ("klima schutz") and hyphenating
    multi-word queries ("co2 steuer" -> "co2-steuer").

    Args:
        query: Raw search term

    Returns:
        Unique variants in a stable order, at most MAX_VARIANTS
    """
    base = _WHITESPACE.sub(" ", query.strip().lower()) if query else ""
    if not base:
        return []

    candidates = [base, normalize_query(base)]
    forms = list(candidates)
    for form in forms:
        if "-" in form:
            candidates.append(_HYPHEN.sub("", form))
            candidates.append(_HYPHEN.sub(" ", form))
        elif " " in form:
            candidates.append(form.replace(" ", "-"))

    candidates.extend(fold_umlauts(form) for form in list(candidates))
    candidates.extend(form.replace("ß", "ss") for form in list(candidates))

    variants: list[str] = []
    for candidate in candidates:
        if candidate and candidate not in variants:
            variants.append(candidate)
    return variants[:MAX_VARIANTS]
