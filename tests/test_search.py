"""
Tests for top-K similarity search.
"""

import hashlib
from typing import AsyncIterator, List, Optional

import pytest

from fashion_core.embedding_cache import InMemoryEmbeddingStore
from fashion_core.errors import DimensionMismatch, InvalidInput, NoEmbedding, ProductNotFound
from fashion_core.models import EmbeddingRecord, ProductSummary
from fashion_core.search import Candidate, InMemoryProductRepository, atop_k, search_similar, top_k


def _hash(name: str) -> str:
    return hashlib.sha256(name.encode()).hexdigest()


def _candidate(product_id: str, vector: Optional[List[float]], rankable: bool = True) -> Candidate:
    embedding = None
    if vector is not None:
        embedding = EmbeddingRecord(image_hash=_hash(product_id), vector=tuple(vector), rankable=rankable)
    return Candidate(summary=ProductSummary(product_id=product_id, sku=f"SKU-{product_id}"), embedding=embedding)


async def _stream(candidates: List[Candidate]) -> AsyncIterator[Candidate]:
    for candidate in candidates:
        yield candidate


QUERY = [1.0, 0.0, 0.0, 0.0]

POOL = [
    _candidate("far", [0.0, 1.0, 0.0, 0.0]),
    _candidate("close", [0.9, 0.1, 0.0, 0.0]),
    _candidate("tie-a", [0.5, 0.5, 0.0, 0.0]),
    _candidate("exact", [2.0, 0.0, 0.0, 0.0]),
    _candidate("tie-b", [0.5, 0.0, 0.5, 0.0]),
    _candidate("opposite", [-1.0, 0.0, 0.0, 0.0]),
    _candidate("no-embedding", None),
    _candidate("degraded", [0.0, 0.0, 0.0, 0.0], rankable=False),
]


def test_top_k_orders_by_similarity() -> None:
    results = top_k(QUERY, POOL, k=10)
    assert [r.product_id for r in results] == ["exact", "close", "tie-a", "tie-b", "far", "opposite"]
    assert results[0].similarity == pytest.approx(1.0)
    assert results[-1].similarity == pytest.approx(-1.0)
    assert results[1].sku == "SKU-close"


def test_ties_keep_insertion_order() -> None:
    """tie-a and tie-b have equal similarity; the one added first ranks first."""
    results = top_k(QUERY, POOL, k=10)
    ids = [r.product_id for r in results]
    assert results[2].similarity == results[3].similarity
    assert ids.index("tie-a") < ids.index("tie-b")

    reversed_pool = [c for c in POOL if c.product_id == "tie-b"] + [c for c in POOL if c.product_id != "tie-b"]
    reversed_ids = [r.product_id for r in top_k(QUERY, reversed_pool, k=10)]
    assert reversed_ids.index("tie-b") < reversed_ids.index("tie-a")


def test_ranking_is_deterministic() -> None:
    """The same query and pool give the same 5 ids in the same order."""
    first = [r.product_id for r in top_k(QUERY, POOL, k=5)]
    second = [r.product_id for r in top_k(QUERY, POOL, k=5)]
    assert first == second
    assert len(first) == 5


def test_unusable_candidates_are_excluded() -> None:
    """Products without embeddings and degraded sentinels never appear, not even with score 0."""
    ids = {r.product_id for r in top_k(QUERY, POOL, k=10)}
    assert "no-embedding" not in ids
    assert "degraded" not in ids


def test_query_product_is_excluded() -> None:
    ids = [r.product_id for r in top_k(QUERY, POOL, k=10, exclude_product_id="exact")]
    assert "exact" not in ids
    assert ids[0] == "close"


def test_k_limits_results() -> None:
    assert [r.product_id for r in top_k(QUERY, POOL, k=2)] == ["exact", "close"]


@pytest.mark.parametrize("k", [0, -3, 1.5])
def test_invalid_limit_is_rejected(k) -> None:
    with pytest.raises(InvalidInput):
        top_k(QUERY, POOL, k=k)


def test_dimension_mismatch_names_the_product() -> None:
    pool = POOL + [_candidate("short", [1.0, 0.0, 0.0])]
    with pytest.raises(DimensionMismatch) as exc_info:
        top_k(QUERY, pool, k=3)
    assert exc_info.value.context["product_id"] == "short"


@pytest.mark.asyncio
async def test_streaming_ranking_matches_in_memory_ranking() -> None:
    expected = [r.product_id for r in top_k(QUERY, POOL, k=4)]
    results, compared = await atop_k(QUERY, _stream(POOL), k=4)
    assert [r.product_id for r in results] == expected
    assert compared == 6


@pytest.mark.asyncio
async def test_streaming_ranking_keeps_insertion_order_on_ties() -> None:
    pool = [_candidate(f"p{i}", [1.0, 1.0, 0.0, 0.0]) for i in range(6)]
    results, _ = await atop_k(QUERY, _stream(pool), k=3)
    assert [r.product_id for r in results] == ["p0", "p1", "p2"]


# ---- search_similar over a repository ----

async def _seed(repository: InMemoryProductRepository, store: InMemoryEmbeddingStore) -> None:
    vectors = {
        "source": [1.0, 0.0, 0.0, 0.0],
        "twin": [1.0, 0.0, 0.0, 0.0],
        "near": [0.8, 0.2, 0.0, 0.0],
        "other": [0.0, 0.0, 1.0, 0.0],
    }
    for product_id, vector in vectors.items():
        await store.put(EmbeddingRecord(image_hash=_hash(product_id), vector=tuple(vector)))
        repository.add(ProductSummary(product_id=product_id, category="Dresses"), _hash(product_id))
    repository.add(ProductSummary(product_id="pending"))


@pytest.mark.asyncio
async def test_search_similar_excludes_source(repository, store) -> None:
    await _seed(repository, store)
    response = await search_similar("source", repository, limit=10)

    assert response.source_product.product_id == "source"
    assert [r.product_id for r in response.similar_products] == ["twin", "near", "other"]
    assert response.similar_products[0].similarity == pytest.approx(1.0)
    assert response.similar_products[0].category == "Dresses"


@pytest.mark.asyncio
async def test_search_without_embedding_raises_no_embedding(repository, store) -> None:
    """A product that exists but was never embedded is the distinct NoEmbedding case."""
    await _seed(repository, store)
    with pytest.raises(NoEmbedding) as exc_info:
        await search_similar("pending", repository)
    assert exc_info.value.code == "no_embedding"
    assert exc_info.value.product_id == "pending"


@pytest.mark.asyncio
async def test_search_with_degraded_embedding_raises_no_embedding(repository, store) -> None:
    await store.put(EmbeddingRecord(image_hash=_hash("bad"), vector=(0.0, 0.0, 0.0, 0.0), rankable=False))
    repository.add(ProductSummary(product_id="bad"), _hash("bad"))
    with pytest.raises(NoEmbedding):
        await search_similar("bad", repository)


@pytest.mark.asyncio
async def test_search_for_unknown_product(repository) -> None:
    with pytest.raises(ProductNotFound):
        await search_similar("missing", repository)


@pytest.mark.asyncio
async def test_search_rejects_invalid_limit(repository, store) -> None:
    await _seed(repository, store)
    with pytest.raises(InvalidInput):
        await search_similar("source", repository, limit=0)


@pytest.mark.asyncio
async def test_corrupt_stored_vector_fails_fast() -> None:
    """The store re-checks dimension on read, so a wrong-sized vector never reaches ranking."""
    store = InMemoryEmbeddingStore(dimension=4)
    repo = InMemoryProductRepository(store)
    await store.put(EmbeddingRecord(image_hash=_hash("source"), vector=(1.0, 0.0, 0.0, 0.0)))
    await store.put(EmbeddingRecord(image_hash=_hash("corrupt"), vector=(1.0, 0.0)))
    repo.add(ProductSummary(product_id="source"), _hash("source"))
    repo.add(ProductSummary(product_id="corrupt"), _hash("corrupt"))

    with pytest.raises(DimensionMismatch):
        await search_similar("source", repo)
