"""
Pytest configuration and fixtures for hybrid retrieval tests.
"""

from __future__ import annotations

import pytest

from hybrid_retrieval.core.config import EmbeddingConfig, HybridConfig, QualityConfig, Settings
from tests.fakes import FakeEmbeddingService, FakeTextMatcher, InMemoryVectorStore


@pytest.fixture
def hybrid_config() -> HybridConfig:
    """Default hybrid config, independent of the environment."""
    return HybridConfig(_env_file=None)


@pytest.fixture
def quality_config() -> QualityConfig:
    """Default quality config, independent of the environment."""
    return QualityConfig(_env_file=None)


@pytest.fixture
def embedding_config() -> EmbeddingConfig:
    """Embedding config with fast retries for tests."""
    return EmbeddingConfig(
        _env_file=None,
        api_url="https://embeddings.test/v1",
        api_key="test-key",
        max_retries=3,
        retry_base_delay=0.01,
        retry_max_delay=0.05,
        delay_between_batches=0.0,
    )


@pytest.fixture
def settings() -> Settings:
    """Provide test settings pointing at a local Qdrant."""
    return Settings(
        _env_file=None,
        qdrant_url="http://localhost:6333",
        qdrant_collection="test_documents",
        available_collections=["grundsatz_documents", "bundestag_content"],
    )


@pytest.fixture
def vector_store() -> InMemoryVectorStore:
    return InMemoryVectorStore()


@pytest.fixture
def text_matcher() -> FakeTextMatcher:
    return FakeTextMatcher()


@pytest.fixture
def embedding_service() -> FakeEmbeddingService:
    return FakeEmbeddingService()
