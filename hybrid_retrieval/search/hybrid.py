"""
Hybrid search orchestration.

Request lifecycle:
    Received -> IntentResolved -> Embedded -> Retrieved (vector + text
    concurrently) -> Fused -> QualityGated (plus content preference nudge)
    -> ContextExpanded (optional) -> Responded

The text query starts immediately and runs while the query is embedded and
the vector store is queried. A failing text backend degrades the request to
vector-only with a warning in the metadata; embedding or vector failures fail
the request. Cancelling search() cancels every in-flight sub-operation and no
partial result is returned.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import ValidationError
from qdrant_client import AsyncQdrantClient

from hybrid_retrieval.core.config import HybridConfig, QualityConfig, Settings, get_settings
from hybrid_retrieval.core.logging import bind_search_id, configure_logging, unbind_search_id
from hybrid_retrieval.embeddings.service import EmbeddingService
from hybrid_retrieval.search.context import ChunkContextExpander
from hybrid_retrieval.search.exceptions import (
    HybridRetrievalError,
    InvalidInputError,
    RetrievalBackendError,
)
from hybrid_retrieval.search.fusion import FusionEngine, has_real_text_matches
from hybrid_retrieval.search.intent import IntentDetector, merge_filters
from hybrid_retrieval.search.models import (
    HybridSearchOptions,
    HybridSearchResponse,
    QueryIntent,
    ScoredResult,
    SearchMetadata,
    TextMatch,
    VectorMatch,
    coerce_text_hits,
    coerce_vector_hits,
)
from hybrid_retrieval.search.quality import QualityScorer
from hybrid_retrieval.search.text import QdrantTextMatcher
from hybrid_retrieval.search.vector import QdrantVectorStore

logger = logging.getLogger(__name__)


class HybridSearchOrchestrator:
    """Coordinates intent detection, embedding, retrieval, fusion and quality.

    Constructed once with its collaborators and configs; holds no per-request
    state, so one instance serves concurrent requests.

    Usage:
        orchestrator = create_orchestrator(get_settings())
        response = await orchestrator.search(
            "Was fordern die Grünen zum Klimaschutz?",
            HybridSearchOptions(limit=5, expand_context=True),
        )
    """

    def __init__(
        self,
        vector_store: Any,  # VectorStoreProtocol
        text_matcher: Any,  # TextMatcherProtocol
        embedding_service: Any,  # EmbeddingService
        hybrid_config: HybridConfig,
        quality_config: QualityConfig,
        intent_detector: IntentDetector | None = None,
        context_expander: ChunkContextExpander | None = None,
        available_collections: Sequence[str] | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            vector_store: Store answering query() (and lookups for context)
            text_matcher: Keyword matcher answering search()
            embedding_service: Service with generate_embedding()
            hybrid_config: Fusion, threshold and gate configuration
            quality_config: Chunk quality configuration
            intent_detector: Enables intent/scope filters when given
            context_expander: Enables expand_context when given
            available_collections: Collections a query scope may narrow to
        """
        self._vector_store = vector_store
        self._text_matcher = text_matcher
        self._embedding_service = embedding_service
        self._hybrid_config = hybrid_config
        self._quality_config = quality_config
        self._intent_detector = intent_detector
        self._context_expander = context_expander
        self._available_collections = tuple(available_collections or ())
        self._fusion = FusionEngine(hybrid_config)
        self._quality = QualityScorer(quality_config)

    @property
    def fusion(self) -> FusionEngine:
        return self._fusion

    @property
    def quality(self) -> QualityScorer:
        return self._quality

    async def close(self) -> None:
        """Close collaborators that hold connections."""
        for component in (self._embedding_service, self._vector_store):
            close = getattr(component, "close", None)
            if close is not None:
                await close()

    async def search(
        self,
        query: str,
        options: HybridSearchOptions | Mapping[str, Any] | None = None,
    ) -> HybridSearchResponse:
        """Run one hybrid search.

        Args:
            query: Raw user query
            options: Per-call parameters; unset values come from HybridConfig

        Returns:
            Ranked results, metadata and (optionally) chunk contexts

        Raises:
            InvalidInputError: Malformed query or options
            EmbeddingError: Query embedding failed
            RetrievalBackendError: Vector store failed
        """
        resolved = self._resolve_options(options)
        text = self._validate_query(query)

        token = bind_search_id(resolved.request_id or uuid.uuid4().hex)
        try:
            return await self._run(text, resolved)
        except HybridRetrievalError as e:
            logger.error("Hybrid search failed (%s): %s", e.kind, e)
            raise
        finally:
            unbind_search_id(token)

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    async def _run(self, query: str, options: HybridSearchOptions) -> HybridSearchResponse:
        started = time.perf_counter()
        cfg = self._hybrid_config
        metadata = SearchMetadata()
        limit = options.limit or cfg.default_limit

        # IntentResolved
        query_filter: dict[str, Any] = merge_filters(options.filter)
        intent: QueryIntent | None = None
        if cfg.enable_query_intent and self._intent_detector is not None:
            intent = self._intent_detector.detect_intent(query)
            scope = self._intent_detector.detect_document_scope(
                query, self._available_collections
            )
            query_filter = merge_filters(
                query_filter, self._intent_detector.generate_search_filters(intent, scope)
            )
            metadata.intent = intent.to_dict()
            metadata.scope = scope.to_dict()

        base_recall = options.recall_limit or limit * cfg.recall_multiplier
        text_recall = max(limit, base_recall)
        vector_recall = max(limit, round(base_recall * cfg.vector_recall_factor))
        hnsw_ef = max(cfg.min_hnsw_ef, vector_recall * 2)

        # Retrieved: text branch runs while the query is embedded
        text_task = asyncio.create_task(
            self._search_text(query, text_recall, query_filter or None)
        )
        try:
            embedding = await self._embedding_service.generate_embedding(query)
            prefetch_threshold = self._fusion.calculate_prefetch_threshold(options.threshold)
            vector_hits = await self._search_vector(
                embedding, vector_recall, query_filter or None, prefetch_threshold, hnsw_ef
            )
        except BaseException:
            text_task.cancel()
            await asyncio.gather(text_task, return_exceptions=True)
            raise

        text_hits, text_error = await text_task
        if text_error is not None:
            metadata.degraded = True
            metadata.warnings.append(f"text search unavailable, vector-only results: {text_error}")

        has_text_matches = bool(text_hits)
        dynamic_threshold = self._fusion.calculate_dynamic_threshold(
            options.threshold, has_text_matches
        )
        vector_hits = [hit for hit in vector_hits if hit.score >= dynamic_threshold]

        # Fused
        strategy = self._fusion.determine_fusion_strategy(
            text_hits, options.use_rrf, options.vector_weight, options.text_weight
        )
        if strategy.use_rrf:
            fused = self._fusion.fuse_rrf(vector_hits, text_hits, limit, options.rrf_k)
        else:
            fused = self._fusion.fuse_weighted(
                vector_hits, text_hits, strategy.vector_weight, strategy.text_weight, limit
            )

        # QualityGated
        results = self._apply_quality(fused, has_text_matches)
        if intent is not None and results:
            results = self._intent_detector.apply_content_preferences(results, intent)

        # ContextExpanded
        contexts: dict[Any, Any] = {}
        if options.expand_context and results:
            contexts = await self._expand_context(results, options.context_window, metadata)

        metadata.vector_results = len(vector_hits)
        metadata.text_results = len(text_hits)
        metadata.fusion_method = strategy.method
        metadata.vector_weight = strategy.vector_weight
        metadata.text_weight = strategy.text_weight
        metadata.dynamic_threshold = dynamic_threshold
        metadata.quality_filtered = (
            cfg.enable_quality_gate or self._quality_config.retrieval.enable_quality_filter
        )
        metadata.auto_switched_from_rrf = strategy.auto_switched
        metadata.has_text_matches = has_text_matches
        metadata.has_real_text_matches = has_real_text_matches(text_hits)
        metadata.text_match_types = sorted(
            {hit.match_type.value for hit in text_hits if hit.match_type is not None}
        )
        metadata.latency_ms = round((time.perf_counter() - started) * 1000, 2)

        logger.info(
            "Hybrid search returned %d results (vector=%d, text=%d, fusion=%s, %.1fms)",
            len(results),
            metadata.vector_results,
            metadata.text_results,
            metadata.fusion_method,
            metadata.latency_ms,
            extra={
                "fusion_method": metadata.fusion_method,
                "results": len(results),
                "vector_results": metadata.vector_results,
                "text_results": metadata.text_results,
                "degraded": metadata.degraded,
                "latency_ms": metadata.latency_ms,
            },
        )
        return HybridSearchResponse(results=results, metadata=metadata, contexts=contexts)

    async def _search_text(
        self,
        query: str,
        limit: int,
        query_filter: dict[str, Any] | None,
    ) -> tuple[list[TextMatch], str | None]:
        """Text hits, or no hits plus the error message if the backend failed."""
        try:
            hits = await self._text_matcher.search(query, limit, query_filter)
            return coerce_text_hits(hits), None
        except Exception as e:
            logger.warning(
                "Text search failed, continuing vector-only: %s", e, extra={"backend": "text"}
            )
            return [], str(e)

    async def _search_vector(
        self,
        embedding: list[float],
        limit: int,
        query_filter: dict[str, Any] | None,
        score_threshold: float,
        hnsw_ef: int,
    ) -> list[VectorMatch]:
        try:
            hits = await self._vector_store.query(
                embedding,
                limit,
                query_filter=query_filter,
                score_threshold=score_threshold,
                hnsw_ef=hnsw_ef,
            )
        except HybridRetrievalError:
            raise
        except Exception as e:
            raise RetrievalBackendError(
                f"Vector search failed: {e}", backend="vector", cause=e
            ) from e
        return coerce_vector_hits(hits)

    def _apply_quality(
        self,
        fused: list[ScoredResult],
        has_text_matches: bool,
    ) -> list[ScoredResult]:
        results = self._fusion.apply_quality_gate(fused, has_text_matches)
        results = self._quality.filter_by_quality(results)
        if self._quality_config.enabled and results:
            results = self._quality.apply_quality_boost(results)
        return results

    async def _expand_context(
        self,
        results: list[ScoredResult],
        window: int | None,
        metadata: SearchMetadata,
    ) -> dict[Any, Any]:
        if self._context_expander is None:
            metadata.warnings.append("context expansion requested but not configured")
            return {}
        try:
            return await self._context_expander.get_batch_chunk_context(results, window)
        except RetrievalBackendError as e:
            logger.warning("Context expansion failed: %s", e)
            metadata.warnings.append(f"context expansion failed: {e}")
            return {}

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def _resolve_options(
        self,
        options: HybridSearchOptions | Mapping[str, Any] | None,
    ) -> HybridSearchOptions:
        if options is None:
            options = HybridSearchOptions()
        elif isinstance(options, Mapping):
            try:
                options = HybridSearchOptions.model_validate(dict(options))
            except ValidationError as e:
                raise InvalidInputError(f"Invalid search options: {e}", cause=e) from e
        elif not isinstance(options, HybridSearchOptions):
            raise InvalidInputError(
                f"options must be HybridSearchOptions or a mapping, got {type(options).__name__}"
            )
        return options.with_defaults(self._hybrid_config)

    def _validate_query(self, query: Any) -> str:
        if not isinstance(query, str):
            raise InvalidInputError(f"query must be a string, got {type(query).__name__}")
        text = query.strip()
        if not text:
            raise InvalidInputError("query must not be empty")
        if len(text) > self._hybrid_config.max_query_length:
            raise InvalidInputError(
                f"query exceeds maximum length of {self._hybrid_config.max_query_length}"
            )
        return text


def create_orchestrator(settings: Settings | None = None) -> HybridSearchOrchestrator:
    """Wire the Qdrant adapters, embedding service and detectors from settings.

    The vector store and the text matcher share one AsyncQdrantClient. With
    ``settings.log_json`` the package logger is switched to JSON output.
    """
    settings = settings or get_settings()
    if settings.log_json:
        configure_logging(log_file_path=settings.log_file_path)
    client = AsyncQdrantClient(url=settings.qdrant_url, api_key=settings.qdrant_api_key)
    vector_store = QdrantVectorStore(settings, client=client)
    text_matcher = QdrantTextMatcher(client, settings.qdrant_collection, settings.text_field)

    return HybridSearchOrchestrator(
        vector_store=vector_store,
        text_matcher=text_matcher,
        embedding_service=EmbeddingService(settings.embedding),
        hybrid_config=settings.hybrid,
        quality_config=settings.quality,
        intent_detector=IntentDetector(),
        context_expander=ChunkContextExpander(vector_store, settings.hybrid),
        available_collections=settings.available_collections,
    )
