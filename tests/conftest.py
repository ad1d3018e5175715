"""
Shared fixtures for the fashion trend test suite.
"""

import pytest

from fashion_core.embedding_cache import EmbeddingCache, InMemoryEmbeddingStore
from fashion_core.models import TrendReferenceSet
from fashion_core.search import InMemoryProductRepository


@pytest.fixture
def trend_references() -> TrendReferenceSet:
    """A small, realistic reference set with provenance on every entry."""
    return TrendReferenceSet.model_validate({
        "colors": [
            {"name": "Butter Yellow", "identifier": "#F8E38C", "confidence": 95,
             "observed_appearances": 120, "sources": ["Instagram", "WGSN"]},
            {"name": "Burgundy", "identifier": "#800020", "confidence": 80,
             "observed_appearances": 60, "sources": ["Instagram"]},
        ],
        "fabrics": [
            {"name": "Linen", "identifier": "+35%", "confidence": "+35%",
             "observed_appearances": 90, "sources": ["Google Trends"]},
            {"name": "Seda", "identifier": "+20%", "confidence": "+20%",
             "observed_appearances": 10, "sources": ["WGSN"]},
        ],
        "styles": [
            {"name": "Alfaiataria", "identifier": "alta", "confidence": "alta",
             "observed_appearances": 45, "sources": ["TikTok"]},
            {"name": "Wide leg", "identifier": "média", "confidence": "média",
             "observed_appearances": 30, "sources": ["TikTok", "Instagram"]},
        ],
    })


@pytest.fixture
def store() -> InMemoryEmbeddingStore:
    return InMemoryEmbeddingStore(dimension=4)


@pytest.fixture
def cache(store: InMemoryEmbeddingStore) -> EmbeddingCache:
    return EmbeddingCache(store, dimension=4, timeout=1.0, model_name="test-model")


@pytest.fixture
def repository(store: InMemoryEmbeddingStore) -> InMemoryProductRepository:
    return InMemoryProductRepository(store)
