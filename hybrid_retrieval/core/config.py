"""
Configuration module for the hybrid retrieval core.

Uses pydantic-settings for environment-based configuration. Each concern gets
its own settings class with an environment prefix:

- HybridConfig (HYBRID_*): thresholds, confidence factors, fusion defaults
- QualityConfig (QUALITY_*): chunk quality weights and retrieval gates
- EmbeddingConfig (EMBEDDING_*): embedding provider endpoint, retries, batching

All three are frozen: they are loaded once at startup and passed by reference
to every request.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic import BaseModel, ConfigDict, Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

_WEIGHT_TOLERANCE = 0.01


class HybridConfig(BaseSettings):
    """
    Tunables for fusion, dynamic thresholds and the post-fusion quality gate.

    Feature flags:
    - enable_dynamic_thresholds: raise the vector similarity floor per query
    - enable_confidence_weighting: boost corroborated hits, penalize vector-only
    - enable_quality_gate: drop fused results below minimum final scores
    - enable_query_intent: derive filter clauses from query intent and scope
    """

    model_config = SettingsConfigDict(
        env_prefix="HYBRID_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # ===========================================
    # DYNAMIC THRESHOLDS
    # ===========================================
    min_vector_only_threshold: float = Field(default=0.55, ge=0.0, le=1.0)
    min_vector_with_text_threshold: float = Field(default=0.35, ge=0.0, le=1.0)

    # ===========================================
    # QUALITY GATE
    # ===========================================
    min_final_score: float = Field(default=0.008, ge=0.0)
    min_vector_only_final_score: float = Field(default=0.010, ge=0.0)

    # ===========================================
    # CONFIDENCE WEIGHTING
    # ===========================================
    confidence_boost: float = Field(default=1.2, gt=0.0)
    confidence_penalty: float = Field(default=0.7, gt=0.0)

    # ===========================================
    # FEATURE FLAGS
    # ===========================================
    enable_dynamic_thresholds: bool = True
    enable_confidence_weighting: bool = True
    enable_quality_gate: bool = True
    enable_query_intent: bool = True

    # ===========================================
    # FUSION DEFAULTS
    # ===========================================
    default_limit: int = Field(default=10, ge=1)
    max_limit: int = Field(default=100, ge=1)
    default_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    use_rrf: bool = True
    rrf_k: int = Field(default=60, ge=1)
    min_text_results_for_rrf: int = Field(default=3, ge=0)
    vector_dominant_weight: float = Field(default=0.85, ge=0.0)
    text_fallback_weight: float = Field(default=0.15, ge=0.0)
    balanced_vector_weight: float = Field(default=0.5, ge=0.0)
    balanced_text_weight: float = Field(default=0.5, ge=0.0)

    # ===========================================
    # RECALL SIZING
    # ===========================================
    recall_multiplier: int = Field(default=4, ge=1)
    vector_recall_factor: float = Field(default=1.5, gt=0.0)
    min_hnsw_ef: int = Field(default=100, ge=1)

    # ===========================================
    # VALIDATION / CONTEXT
    # ===========================================
    max_query_length: int = Field(default=10000, ge=1)
    default_context_window: int = Field(default=1, ge=0)
    max_context_window: int = Field(default=5, ge=0)

    @model_validator(mode="after")
    def _warn_on_inconsistent_floors(self) -> HybridConfig:
        if self.min_vector_only_threshold < self.min_vector_with_text_threshold:
            logger.warning(
                "min_vector_only_threshold (%.2f) should be >= "
                "min_vector_with_text_threshold (%.2f) for logical consistency",
                self.min_vector_only_threshold,
                self.min_vector_with_text_threshold,
            )
        return self


class QualityWeights(BaseModel):
    """Weights of the four chunk quality components."""

    model_config = ConfigDict(frozen=True)

    readability: float = Field(default=0.3, ge=0.0)
    completeness: float = Field(default=0.25, ge=0.0)
    structure: float = Field(default=0.25, ge=0.0)
    density: float = Field(default=0.2, ge=0.0)

    @property
    def total(self) -> float:
        """Sum of all component weights."""
        return self.readability + self.completeness + self.structure + self.density


class QualityRetrievalConfig(BaseModel):
    """Retrieval-time quality gates."""

    model_config = ConfigDict(frozen=True)

    enable_quality_filter: bool = True
    min_retrieval_quality: float = Field(default=0.4, ge=0.0, le=1.0)
    quality_boost_factor: float = Field(default=1.2, gt=0.0)


class QualityConfig(BaseSettings):
    """
    Chunk quality scoring configuration.

    Nested values are read with a double underscore, e.g.
    QUALITY_RETRIEVAL__MIN_RETRIEVAL_QUALITY=0.5.
    """

    model_config = SettingsConfigDict(
        env_prefix="QUALITY_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    enabled: bool = True
    min_chunk_quality: float = Field(default=0.3, ge=0.0, le=1.0)
    weights: QualityWeights = Field(default_factory=QualityWeights)
    retrieval: QualityRetrievalConfig = Field(default_factory=QualityRetrievalConfig)

    @model_validator(mode="after")
    def _warn_on_weight_sum(self) -> QualityConfig:
        total = self.weights.total
        if self.enabled and abs(total - 1.0) > _WEIGHT_TOLERANCE:
            logger.warning("Quality weights sum to %.3f, should be 1.0", total)
        return self


class EmbeddingConfig(BaseSettings):
    """Remote embedding provider configuration."""

    model_config = SettingsConfigDict(
        env_prefix="EMBEDDING_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    api_url: str = Field(
        default="https://api.mistral.ai/v1",
        description="Base URL; requests go to {api_url}/embeddings",
    )
    api_key: SecretStr | None = Field(default=None, description="Bearer token")
    model: str = Field(default="mistral-embed", description="Embedding model name")
    timeout_seconds: float = Field(default=10.0, gt=0.0)

    # Retry policy
    max_retries: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=1.0, ge=0.0)
    retry_max_delay: float = Field(default=30.0, ge=0.0)

    # Batching
    max_batch_size: int = Field(default=64, ge=1)
    max_tokens_per_batch: int = Field(default=16000, ge=1)
    delay_between_batches: float = Field(default=0.1, ge=0.0)
    max_concurrent_batches: int = Field(default=1, ge=1)

    # Vector validation
    max_dimensions: int = Field(default=10000, ge=1)


class Settings(BaseSettings):
    """
    Service-level settings loaded from environment variables.

    Composes the per-concern configs so a single object can be handed to
    create_orchestrator().
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ===========================================
    # QDRANT CONFIGURATION
    # ===========================================
    qdrant_url: str = Field(
        default="http://localhost:6333",
        description="Qdrant REST API URL",
    )
    qdrant_api_key: str | None = Field(default=None, description="Qdrant API key")
    qdrant_collection: str = Field(
        default="documents",
        description="Collection holding the document chunks",
    )
    text_field: str = Field(
        default="chunk_text",
        description="Payload field with full-text index used by the text matcher",
    )
    available_collections: list[str] = Field(
        default_factory=lambda: ["documents"],
        description="Logical collections a query scope may narrow to",
    )

    # ===========================================
    # LOGGING
    # ===========================================
    log_json: bool = Field(
        default=False,
        description="Install JSON log handlers on the package logger in create_orchestrator()",
    )
    log_file_path: str | None = Field(
        default=None,
        description="Rotating JSON log file, used together with log_json",
    )

    hybrid: HybridConfig = Field(default_factory=HybridConfig)
    quality: QualityConfig = Field(default_factory=QualityConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
