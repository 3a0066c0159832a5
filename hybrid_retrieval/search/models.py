"""
Data model shared by the fusion, quality, intent and orchestration stages.

Results are a tagged union instead of one object with nullable fields:

- VectorMatch: found by vector similarity only
- TextMatch: found by the keyword matcher only
- HybridMatch: found by both

Each result records which scoring pass produced its ``score`` (ScoreKind).
Fusion only consumes RAW scores; the quality stages refuse lists that mix
kinds, so scores from different passes never end up compared to each other.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, Union

from pydantic import BaseModel, ConfigDict, Field

from hybrid_retrieval.search.exceptions import InvalidInputError

if TYPE_CHECKING:
    from hybrid_retrieval.core.config import HybridConfig


# =============================================================================
# Enums
# =============================================================================


class SearchMethod(str, Enum):
    """Which retrieval branch produced a result."""

    VECTOR = "vector"
    TEXT = "text"
    HYBRID = "hybrid"


class MatchType(str, Enum):
    """How the text matcher matched a result."""

    EXACT = "exact"
    VARIANT = "variant"
    TOKEN_FALLBACK = "token_fallback"
    NONE = "none"


REAL_MATCH_TYPES = frozenset({MatchType.EXACT, MatchType.VARIANT})


class ScoreKind(str, Enum):
    """Scoring pass that produced a result's score."""

    RAW = "raw"
    RRF = "rrf"
    WEIGHTED = "weighted"
    QUALITY_BOOSTED = "quality_boosted"


class Language(str, Enum):
    """Detected query language."""

    DE = "de"
    EN = "en"
    UNKNOWN = "unknown"


ResultId = Union[str, int]


# =============================================================================
# Result Variants
# =============================================================================


@dataclass(frozen=True)
class VectorMatch:
    """Result found by vector similarity only.

    Attributes:
        id: Point identifier, unique within a result list
        score: Score of the pass named by ``score_kind``
        payload: Chunk payload as stored in the vector store
        score_kind: Scoring pass that produced ``score``
        original_vector_score: Cosine similarity before fusion
    """

    id: ResultId
    score: float
    payload: Mapping[str, Any] = field(default_factory=dict)
    score_kind: ScoreKind = ScoreKind.RAW
    original_vector_score: float | None = None

    search_method: ClassVar[SearchMethod] = SearchMethod.VECTOR
    match_type: ClassVar[MatchType | None] = None
    original_text_score: ClassVar[float | None] = None

    def to_dict(self) -> dict[str, Any]:
        return _result_to_dict(self)


@dataclass(frozen=True)
class TextMatch:
    """Result found by the keyword matcher only."""

    id: ResultId
    score: float
    payload: Mapping[str, Any] = field(default_factory=dict)
    match_type: MatchType = MatchType.EXACT
    score_kind: ScoreKind = ScoreKind.RAW
    original_text_score: float | None = None

    search_method: ClassVar[SearchMethod] = SearchMethod.TEXT
    original_vector_score: ClassVar[float | None] = None

    def to_dict(self) -> dict[str, Any]:
        return _result_to_dict(self)


@dataclass(frozen=True)
class HybridMatch:
    """Result found by both branches; only produced by fusion."""

    id: ResultId
    score: float
    payload: Mapping[str, Any]
    original_vector_score: float
    original_text_score: float
    match_type: MatchType
    score_kind: ScoreKind

    search_method: ClassVar[SearchMethod] = SearchMethod.HYBRID

    def to_dict(self) -> dict[str, Any]:
        return _result_to_dict(self)


ScoredResult = Union[VectorMatch, TextMatch, HybridMatch]

_RESULT_TYPES = (VectorMatch, TextMatch, HybridMatch)


def _result_to_dict(result: ScoredResult) -> dict[str, Any]:
    match_type = result.match_type
    return {
        "id": result.id,
        "score": result.score,
        "payload": dict(result.payload),
        "search_method": result.search_method.value,
        "match_type": match_type.value if match_type is not None else None,
        "score_kind": result.score_kind.value,
        "original_vector_score": result.original_vector_score,
        "original_text_score": result.original_text_score,
    }


# =============================================================================
# Validation / Coercion
# =============================================================================


def _is_valid_score(score: Any) -> bool:
    return (
        isinstance(score, (int, float))
        and not isinstance(score, bool)
        and math.isfinite(score)
    )


def validate_results(results: Any, name: str = "results") -> list[ScoredResult]:
    """Check a result list before fusion or quality processing.

    Raises:
        InvalidInputError: If ``results`` is not a list/tuple, contains
            non-result items, or an item has no id or a non-finite score
    """
    if not isinstance(results, (list, tuple)):
        raise InvalidInputError(
            f"{name} must be a list, got {type(results).__name__}"
        )

    for position, result in enumerate(results):
        if not isinstance(result, _RESULT_TYPES):
            raise InvalidInputError(
                f"{name}[{position}] is not a scored result: {type(result).__name__}"
            )
        if result.id is None:
            raise InvalidInputError(f"{name}[{position}] has no id")
        if not _is_valid_score(result.score):
            raise InvalidInputError(
                f"{name}[{position}] (id={result.id!r}) has invalid score {result.score!r}"
            )

    return list(results)


def ensure_single_score_kind(results: Sequence[ScoredResult], stage: str) -> None:
    """Refuse result lists whose scores come from different passes.

    Raises:
        InvalidInputError: If more than one ScoreKind is present
    """
    kinds = {result.score_kind for result in results}
    if len(kinds) > 1:
        names = ", ".join(sorted(kind.value for kind in kinds))
        raise InvalidInputError(f"{stage} received mixed score kinds: {names}")


def _read_field(hit: Any, *names: str) -> Any:
    for name in names:
        if isinstance(hit, Mapping):
            if name in hit:
                return hit[name]
        elif hasattr(hit, name):
            return getattr(hit, name)
    return None


def _coerce_base(hit: Any, position: int, name: str) -> tuple[ResultId, float, dict]:
    hit_id = _read_field(hit, "id")
    score = _read_field(hit, "score")
    if hit_id is None:
        raise InvalidInputError(f"{name}[{position}] has no id")
    if not _is_valid_score(score):
        raise InvalidInputError(
            f"{name}[{position}] (id={hit_id!r}) has invalid score {score!r}"
        )
    payload = _read_field(hit, "payload") or {}
    if not isinstance(payload, Mapping):
        raise InvalidInputError(f"{name}[{position}] payload must be a mapping")
    return hit_id, float(score), dict(payload)


def coerce_vector_hits(hits: Any) -> list[VectorMatch]:
    """Convert vector store output into VectorMatch results.

    Accepts VectorMatch instances, ``{id, score, payload}`` mappings or
    objects exposing those attributes (e.g. Qdrant ScoredPoint).
    """
    if not isinstance(hits, (list, tuple)):
        raise InvalidInputError(
            f"vector hits must be a list, got {type(hits).__name__}"
        )

    results: list[VectorMatch] = []
    for position, hit in enumerate(hits):
        if isinstance(hit, VectorMatch):
            results.append(hit)
            continue
        hit_id, score, payload = _coerce_base(hit, position, "vector hits")
        results.append(VectorMatch(id=hit_id, score=score, payload=payload))
    return results


def coerce_text_hits(hits: Any) -> list[TextMatch]:
    """Convert text matcher output into TextMatch results.

    Mappings may spell the match type ``matchType`` or ``match_type``; a
    missing match type is treated as a token fallback hit.
    """
    if not isinstance(hits, (list, tuple)):
        raise InvalidInputError(
            f"text hits must be a list, got {type(hits).__name__}"
        )

    results: list[TextMatch] = []
    for position, hit in enumerate(hits):
        if isinstance(hit, TextMatch):
            results.append(hit)
            continue
        hit_id, score, payload = _coerce_base(hit, position, "text hits")
        raw_match_type = _read_field(hit, "match_type", "matchType")
        try:
            match_type = (
                MatchType(raw_match_type)
                if raw_match_type is not None
                else MatchType.TOKEN_FALLBACK
            )
        except ValueError as e:
            raise InvalidInputError(
                f"text hits[{position}] has unknown match type {raw_match_type!r}"
            ) from e
        results.append(
            TextMatch(id=hit_id, score=score, payload=payload, match_type=match_type)
        )
    return results


# =============================================================================
# Query Intent / Scope
# =============================================================================


@dataclass(frozen=True)
class IntentFlags:
    """Boolean query features."""

    has_numbers: bool = False


@dataclass(frozen=True)
class QueryIntent:
    """Lexical classification of a raw query."""

    type: str
    language: Language
    confidence: float
    keywords: tuple[str, ...] = ()
    flags: IntentFlags = field(default_factory=IntentFlags)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["language"] = self.language.value
        data["keywords"] = list(self.keywords)
        return data


@dataclass(frozen=True)
class DocumentScope:
    """Collections and filters a query explicitly narrows itself to."""

    collections: tuple[str, ...]
    document_title_filter: str | None = None
    detected_phrase: str | None = None
    subcategory_filters: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_narrowed(self) -> bool:
        """True when the query named an explicit document or collection."""
        return self.detected_phrase is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "collections": list(self.collections),
            "document_title_filter": self.document_title_filter,
            "detected_phrase": self.detected_phrase,
            "subcategory_filters": dict(self.subcategory_filters),
        }


# =============================================================================
# Request / Response
# =============================================================================


class HybridSearchOptions(BaseModel):
    """Per-call search parameters.

    Unset fields are filled from HybridConfig by ``with_defaults``.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    limit: int | None = Field(default=None, ge=1, description="Maximum results")
    threshold: float | None = Field(
        default=None, ge=0.0, le=1.0, description="Base vector similarity threshold"
    )
    vector_weight: float | None = Field(default=None, ge=0.0)
    text_weight: float | None = Field(default=None, ge=0.0)
    use_rrf: bool | None = Field(default=None, description="Prefer rank fusion")
    rrf_k: int | None = Field(default=None, ge=1)
    filter: dict[str, Any] | None = Field(
        default=None, description="Qdrant-shaped filter (must/must_not/should)"
    )
    recall_limit: int | None = Field(default=None, ge=1)
    expand_context: bool = False
    context_window: int | None = Field(default=None, ge=0)
    request_id: str | None = Field(default=None, max_length=200)

    def with_defaults(self, config: HybridConfig) -> HybridSearchOptions:
        """Return a copy with every unset field taken from ``config``.

        Raises:
            InvalidInputError: If limit or context window exceed configured maxima
        """
        limit = self.limit if self.limit is not None else config.default_limit
        if limit > config.max_limit:
            raise InvalidInputError(
                f"limit {limit} exceeds maximum of {config.max_limit}"
            )

        window = (
            self.context_window
            if self.context_window is not None
            else config.default_context_window
        )
        if window > config.max_context_window:
            raise InvalidInputError(
                f"context_window {window} exceeds maximum of {config.max_context_window}"
            )

        return self.model_copy(
            update={
                "limit": limit,
                "threshold": self.threshold
                if self.threshold is not None
                else config.default_threshold,
                "use_rrf": self.use_rrf if self.use_rrf is not None else config.use_rrf,
                "rrf_k": self.rrf_k if self.rrf_k is not None else config.rrf_k,
                "filter": self.filter or {},
                "context_window": window,
            }
        )

    @property
    def has_explicit_weights(self) -> bool:
        """True when the caller supplied both fusion weights."""
        return self.vector_weight is not None and self.text_weight is not None


@dataclass
class SearchMetadata:
    """Diagnostics describing how a response was produced."""

    vector_results: int = 0
    text_results: int = 0
    fusion_method: str = "weighted"
    vector_weight: float = 0.0
    text_weight: float = 0.0
    dynamic_threshold: float = 0.0
    quality_filtered: bool = False
    auto_switched_from_rrf: bool = False
    has_text_matches: bool = False
    has_real_text_matches: bool = False
    text_match_types: list[str] = field(default_factory=list)
    degraded: bool = False
    warnings: list[str] = field(default_factory=list)
    intent: dict[str, Any] | None = None
    scope: dict[str, Any] | None = None
    latency_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class HybridSearchResponse:
    """Final ranked results plus metadata.

    ``contexts`` maps result ids to their expanded chunk context when the
    caller requested context expansion.
    """

    results: list[ScoredResult]
    metadata: SearchMetadata
    contexts: dict[ResultId, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": [result.to_dict() for result in self.results],
            "metadata": self.metadata.to_dict(),
            "contexts": {
                key: context.to_dict() for key, context in self.contexts.items()
            },
        }
