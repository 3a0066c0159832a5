"""
Search module for the hybrid retrieval core.

Merges vector similarity hits and keyword hits into one ranked list.

- models.py: result variants, intent/scope, options and response types
- fusion.py: RRF and weighted fusion, strategy selection, quality gate
- quality.py: chunk quality scoring, quality filter and boost
- intent.py: query intent, document scope and filter generation
- context.py: neighbouring chunk expansion
- vector.py / text.py: Qdrant adapters
- hybrid.py: request orchestration
"""

from __future__ import annotations

from hybrid_retrieval.search.context import ChunkContext, ChunkContextExpander, ContextChunk
from hybrid_retrieval.search.exceptions import (
    HybridRetrievalError,
    InvalidInputError,
    RetrievalBackendError,
)
from hybrid_retrieval.search.fusion import FusionEngine, FusionEntry, FusionStrategy
from hybrid_retrieval.search.hybrid import HybridSearchOrchestrator, create_orchestrator
from hybrid_retrieval.search.intent import IntentDetector, ScopeRule, merge_filters
from hybrid_retrieval.search.models import (
    DocumentScope,
    HybridMatch,
    HybridSearchOptions,
    HybridSearchResponse,
    MatchType,
    QueryIntent,
    ScoredResult,
    ScoreKind,
    SearchMetadata,
    SearchMethod,
    TextMatch,
    VectorMatch,
)
from hybrid_retrieval.search.quality import QualityScorer
from hybrid_retrieval.search.text import QdrantTextMatcher
from hybrid_retrieval.search.vector import QdrantVectorStore

__all__ = [
    "ChunkContext",
    "ChunkContextExpander",
    "ContextChunk",
    "DocumentScope",
    "FusionEngine",
    "FusionEntry",
    "FusionStrategy",
    "HybridMatch",
    "HybridRetrievalError",
    "HybridSearchOptions",
    "HybridSearchOrchestrator",
    "HybridSearchResponse",
    "IntentDetector",
    "InvalidInputError",
    "MatchType",
    "QdrantTextMatcher",
    "QdrantVectorStore",
    "QualityScorer",
    "QueryIntent",
    "RetrievalBackendError",
    "ScopeRule",
    "ScoreKind",
    "ScoredResult",
    "SearchMetadata",
    "SearchMethod",
    "TextMatch",
    "VectorMatch",
    "create_orchestrator",
    "merge_filters",
]
