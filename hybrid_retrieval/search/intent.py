"""
Lexical query intent and document scope detection.

Pure and deterministic: dictionaries and regular expressions only, no model
calls and no I/O. Scope is translated into a Qdrant-shaped filter (``must``
clause lists) that the vector store and text matcher accept unchanged.
Content preferences never filter; they nudge the scores of retrieved results.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from hybrid_retrieval.search.exceptions import InvalidInputError
from hybrid_retrieval.search.models import (
    DocumentScope,
    IntentFlags,
    Language,
    QueryIntent,
    ScoredResult,
    validate_results,
)

logger = logging.getLogger(__name__)

# =============================================================================
# Lexical Dictionaries
# =============================================================================

_WORD = re.compile(r"\w+", re.UNICODE)
_GERMAN_CHARS = re.compile(r"[äöüß]", re.IGNORECASE)

DE_STOPWORDS = frozenset(
    {
        "der", "die", "das", "den", "dem", "des", "ein", "eine", "einer", "eines",
        "und", "oder", "aber", "ist", "sind", "war", "wird", "werden", "zu", "zum",
        "zur", "mit", "von", "für", "auf", "im", "in", "an", "bei", "nach", "über",
        "wie", "was", "wer", "wo", "wann", "warum", "welche", "welcher", "welches",
        "nicht", "auch", "sich", "es", "sie", "wir", "ich", "du", "man", "dass",
        "gibt", "haben", "hat", "kann", "können", "soll", "sollen", "zwischen",
    }
)

EN_STOPWORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "is", "are", "was", "were", "be",
        "to", "of", "for", "on", "in", "at", "by", "with", "from", "about",
        "how", "what", "who", "where", "when", "why", "which", "do", "does",
        "did", "not", "it", "they", "we", "i", "you", "there", "can", "should",
        "between", "this", "that", "these", "those",
    }
)

# Checked in this order; ties go to the earlier type.
INTENT_PATTERNS: dict[str, tuple[str, ...]] = {
    "comparison": (
        "unterschied", "vergleich", "versus", " vs ", "im gegensatz",
        "difference", "compare", "comparison",
    ),
    "definition": (
        "was ist", "was sind", "was bedeutet", "definition", "bedeutung",
        "what is", "what are", "define", "meaning of",
    ),
    "howto": (
        "wie kann", "wie funktioniert", "wie geht", "anleitung", "schritt",
        "how to", "how do", "how can", "steps",
    ),
    "position": (
        "position", "haltung", "fordern", "forderung", "positionieren",
        "meinung", "stance", "stand on",
    ),
    "list": (
        "welche", "liste", "auflistung", "beispiele", "übersicht",
        "list of", "which", "examples",
    ),
    "factual": (
        "wann", "wer ", "wie viele", "wieviel", "wie hoch", "seit wann",
        "when", "who ", "how many", "how much",
    ),
}

GENERAL_INTENT = "general"

CONTENT_PREFERENCES: dict[str, tuple[str, ...]] = {
    "definition": ("paragraph", "heading"),
    "howto": ("list", "paragraph"),
    "comparison": ("table", "paragraph"),
    "list": ("list", "table"),
    "factual": ("table", "paragraph"),
    "position": ("paragraph",),
    GENERAL_INTENT: (),
}

_BASE_CONFIDENCE = 0.5
_CONFIDENCE_PER_EXTRA_MATCH = 0.2
_LANGUAGE_BONUS = 0.1
_MAX_CONFIDENCE = 0.95
_GENERAL_CONFIDENCE = 0.3
_MIN_KEYWORD_LENGTH = 3
_CONTENT_PREFERENCE_BOOST = 1.1

SUBCATEGORY_KEYS = (
    "primary_category",
    "content_type",
    "subcategories",
    "country",
    "region",
    "landesverband",
)
DATE_FIELD = "published_at"


# =============================================================================
# Scope Rules
# =============================================================================


@dataclass(frozen=True)
class ScopeRule:
    """Maps a phrase in the query to the collections it narrows to.

    Attributes:
        pattern: Case-insensitive regex matched against the query
        collections: Collections the query is narrowed to
        label: Canonical phrase recorded as ``detected_phrase``
        title_filter: Optional document title the query refers to
        subcategory_filters: Payload filters implied by the phrase
    """

    pattern: re.Pattern[str]
    collections: tuple[str, ...]
    label: str
    title_filter: str | None = None
    subcategory_filters: Mapping[str, Any] = field(default_factory=dict)


def _rule(
    pattern: str,
    collections: Sequence[str],
    label: str,
    title_filter: str | None = None,
    **subcategory_filters: Any,
) -> ScopeRule:
    return ScopeRule(
        pattern=re.compile(pattern, re.IGNORECASE),
        collections=tuple(collections),
        label=label,
        title_filter=title_filter,
        subcategory_filters=subcategory_filters,
    )


DEFAULT_SCOPE_RULES: tuple[ScopeRule, ...] = (
    _rule(r"\bgrundsatzprogramm\w*", ["grundsatz_documents"], "Grundsatzprogramm", "Grundsatzprogramm"),
    _rule(r"\bwahlprogramm\w*", ["grundsatz_documents"], "Wahlprogramm", "Wahlprogramm"),
    _rule(r"\b(bundestag\w*|drucksache\w*)", ["bundestag_content"], "Bundestag"),
    _rule(r"\bkommunalwiki\b", ["kommunalwiki_documents"], "Kommunalwiki"),
    _rule(r"\b(b(ö|oe)ll[- ]?stiftung|heinrich[- ]b(ö|oe)ll)", ["boell_stiftung_documents"], "Böll-Stiftung"),
    _rule(r"\bsatzung\w*", ["satzungen_documents"], "Satzung"),
    _rule(
        r"\b((ö|oe)sterreich\w*|gr(ü|ue)ne[n]? at)\b",
        ["oesterreich_gruene_documents", "gruene_at_documents"],
        "Österreich",
    ),
    _rule(r"\bhamburg\w*", ["landesverbaende_documents"], "Hamburg", landesverband="HH"),
    _rule(
        r"\bschleswig[- ]holstein\w*",
        ["landesverbaende_documents"],
        "Schleswig-Holstein",
        landesverband="SH",
    ),
    _rule(r"\bth(ü|ue)ringen\b", ["landesverbaende_documents"], "Thüringen", landesverband=["TH", "TH-F"]),
    _rule(r"\bbayern\b", ["landesverbaende_documents"], "Bayern", landesverband="BY"),
    _rule(r"\bgruene\.de\b|\bbundesverband\b", ["gruene_de_documents"], "gruene.de"),
)


# =============================================================================
# IntentDetector
# =============================================================================


class IntentDetector:
    """Classifies queries and derives retrieval filters from them.

    Usage:
        detector = IntentDetector()
        intent = detector.detect_intent("Was ist das Klimageld?")
        scope = detector.detect_document_scope(query, ["grundsatz_documents"])
        query_filter = detector.generate_search_filters(intent, scope)
    """

    def __init__(self, scope_rules: Iterable[ScopeRule] = DEFAULT_SCOPE_RULES) -> None:
        self._scope_rules = tuple(scope_rules)

    def detect_intent(self, query: str) -> QueryIntent:
        """Lexically classify a query.

        Raises:
            InvalidInputError: If ``query`` is not a string
        """
        if not isinstance(query, str):
            raise InvalidInputError(f"query must be a string, got {type(query).__name__}")

        text = f" {query.strip().lower()} "
        tokens = _WORD.findall(text)
        language = self._detect_language(text, tokens)

        best_type = GENERAL_INTENT
        best_hits = 0
        for intent_type, patterns in INTENT_PATTERNS.items():
            hits = sum(1 for pattern in patterns if pattern in text)
            if hits > best_hits:
                best_type, best_hits = intent_type, hits

        if best_hits == 0:
            confidence = _GENERAL_CONFIDENCE
        else:
            confidence = _BASE_CONFIDENCE + _CONFIDENCE_PER_EXTRA_MATCH * (best_hits - 1)
            if language is not Language.UNKNOWN:
                confidence += _LANGUAGE_BONUS
            confidence = min(_MAX_CONFIDENCE, confidence)

        intent = QueryIntent(
            type=best_type,
            language=language,
            confidence=round(confidence, 3),
            keywords=self._extract_keywords(tokens),
            flags=IntentFlags(has_numbers=any(char.isdigit() for char in query)),
        )
        logger.debug(
            "Detected intent %s (language=%s, confidence=%.2f)",
            intent.type,
            intent.language.value,
            intent.confidence,
        )
        return intent

    def detect_document_scope(
        self,
        query: str,
        available_collections: Sequence[str],
    ) -> DocumentScope:
        """Narrow the collection set when the query names a document or source.

        The first matching scope rule wins. Without a match, or when none of
        the rule's collections is available, all collections are returned
        unfiltered.
        """
        if not isinstance(query, str):
            raise InvalidInputError(f"query must be a string, got {type(query).__name__}")

        available = tuple(available_collections)
        for rule in self._scope_rules:
            if not rule.pattern.search(query):
                continue
            narrowed = tuple(c for c in rule.collections if c in available)
            if not narrowed:
                logger.debug(
                    "Scope '%s' detected but none of %s is available",
                    rule.label,
                    list(rule.collections),
                )
                continue
            return DocumentScope(
                collections=narrowed,
                document_title_filter=rule.title_filter,
                detected_phrase=rule.label,
                subcategory_filters=dict(rule.subcategory_filters),
            )

        return DocumentScope(collections=available)

    def get_content_preferences(self, intent: QueryIntent) -> dict[str, Any]:
        """Content types and language the intent favours."""
        preferences: dict[str, Any] = {
            "content_types": list(CONTENT_PREFERENCES.get(intent.type, ())),
        }
        if intent.language is not Language.UNKNOWN:
            preferences["language"] = intent.language.value
        return preferences

    def generate_search_filters(
        self,
        intent: QueryIntent,
        scope: DocumentScope | None = None,
    ) -> dict[str, Any]:
        """Translate intent and scope into a Qdrant-shaped filter.

        - narrowed scope: ``collection`` match.any clause in ``must``
        - document title: full-text ``title`` clause in ``must``
        - subcategory filters: ``must`` clauses (match.any for several values),
          ``date_from`` / ``date_to`` as a range on ``published_at``

        Preferred content types are not part of the filter: a Qdrant
        ``should`` clause requires at least one match, so it would drop
        chunks without a ``content_type``. See apply_content_preferences().

        Empty clause lists are omitted; the result may be ``{}``.
        """
        must: list[dict[str, Any]] = []

        if scope is not None:
            if scope.is_narrowed and scope.collections:
                must.append({"key": "collection", "match": {"any": list(scope.collections)}})
            if scope.document_title_filter:
                must.append({"key": "title", "match": {"text": scope.document_title_filter}})
            must.extend(build_subcategory_conditions(scope.subcategory_filters))

        return {"must": must} if must else {}

    def apply_content_preferences(
        self,
        results: Sequence[ScoredResult],
        intent: QueryIntent,
        boost: float = _CONTENT_PREFERENCE_BOOST,
    ) -> list[ScoredResult]:
        """Multiply scores of results whose ``content_type`` the intent favours.

        Nothing is removed. Results with a missing or other ``content_type``
        keep their score; the list is re-sorted by score and score kinds are
        unchanged.

        Raises:
            InvalidInputError: On malformed results or a boost below 1.0
        """
        checked = validate_results(results)
        if boost < 1.0:
            raise InvalidInputError(f"boost must be >= 1.0, got {boost!r}")

        preferred = set(CONTENT_PREFERENCES.get(intent.type, ()))
        if not preferred:
            return checked

        nudged = [
            replace(result, score=result.score * boost)
            if result.payload.get("content_type") in preferred
            else result
            for result in checked
        ]
        nudged.sort(key=lambda result: -result.score)
        return nudged

    @staticmethod
    def _detect_language(text: str, tokens: Sequence[str]) -> Language:
        de_hits = sum(1 for token in tokens if token in DE_STOPWORDS)
        en_hits = sum(1 for token in tokens if token in EN_STOPWORDS)
        if _GERMAN_CHARS.search(text):
            de_hits += 2
        if de_hits > en_hits:
            return Language.DE
        if en_hits > de_hits:
            return Language.EN
        return Language.UNKNOWN

    @staticmethod
    def _extract_keywords(tokens: Sequence[str]) -> tuple[str, ...]:
        seen: dict[str, None] = {}
        for token in tokens:
            if len(token) < _MIN_KEYWORD_LENGTH or token.isdigit():
                continue
            if token in DE_STOPWORDS or token in EN_STOPWORDS:
                continue
            seen.setdefault(token, None)
        return tuple(seen)


# =============================================================================
# Filter Helpers
# =============================================================================


def build_subcategory_conditions(filters: Mapping[str, Any]) -> list[dict[str, Any]]:
    """Payload ``must`` conditions for subcategory and date filters."""
    conditions: list[dict[str, Any]] = []
    for key in SUBCATEGORY_KEYS:
        value = filters.get(key)
        if not value:
            continue
        if isinstance(value, (list, tuple)):
            values = [item for item in value if item]
            if len(values) == 1:
                conditions.append({"key": key, "match": {"value": values[0]}})
            elif values:
                conditions.append({"key": key, "match": {"any": values}})
        else:
            conditions.append({"key": key, "match": {"value": value}})

    date_range = {}
    if filters.get("date_from"):
        date_range["gte"] = filters["date_from"]
    if filters.get("date_to"):
        date_range["lte"] = filters["date_to"]
    if date_range:
        conditions.append({"key": DATE_FIELD, "range": date_range})

    return conditions


def merge_filters(*filters: Mapping[str, Any] | None) -> dict[str, Any]:
    """Concatenate must / must_not / should clauses; drop empty clause lists."""
    merged: dict[str, Any] = {}
    for clause in ("must", "must_not", "should"):
        combined: list[Any] = []
        for query_filter in filters:
            if query_filter:
                combined.extend(query_filter.get(clause) or [])
        if combined:
            merged[clause] = combined
    return merged
