"""
Top-K similarity search over product embeddings.

Ranking is an exact linear scan: every candidate with a usable embedding is
scored with cosine similarity against the query. Candidates may be supplied
as a plain iterable or streamed page by page from an async repository, so the
pool never has to be materialized in full.
"""

import heapq
import logging
import uuid
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from fashion_core.embedding_cache import EmbeddingStore
from fashion_core.errors import DimensionMismatch, InvalidInput, NoEmbedding, ProductNotFound
from fashion_core.models import EmbeddingRecord, ProductAnalysis, ProductSummary, SearchResponse, SimilarityResult
from fashion_core.vector_math import cosine_similarity, validate_vector

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10


@dataclass(frozen=True)
class Candidate:
    """A product together with its embedding (if any)."""

    summary: ProductSummary
    embedding: Optional[EmbeddingRecord] = None

    @property
    def product_id(self) -> str:
        return self.summary.product_id

    @property
    def usable(self) -> bool:
        return self.embedding is not None and self.embedding.usable


class ProductRepository(Protocol):
    """Source of products and their embeddings for similarity search."""

    async def get_candidate(self, product_id: str) -> Optional[Candidate]:
        ...

    def iter_candidates(self, exclude_product_id: Optional[str] = None) -> AsyncIterator[Candidate]:
        """Yield every product in insertion order, optionally skipping one id."""
        ...


def _check_limit(k: int) -> None:
    if isinstance(k, bool) or not isinstance(k, int) or k < 1:
        raise InvalidInput(f"limit must be an integer >= 1, got {k!r}")


def _score(query: Sequence[float], candidate: Candidate) -> float:
    try:
        return cosine_similarity(query, candidate.embedding.vector)
    except DimensionMismatch as e:
        raise DimensionMismatch(e.expected, e.actual, product_id=candidate.product_id) from e


def _to_result(candidate: Candidate, similarity: float) -> SimilarityResult:
    return SimilarityResult(**candidate.summary.model_dump(), similarity=similarity)


def top_k(
    query: Sequence[float],
    candidates: Iterable[Candidate],
    k: int = DEFAULT_LIMIT,
    exclude_product_id: Optional[str] = None,
) -> List[SimilarityResult]:
    """
    Rank candidates by cosine similarity to ``query``.

    Candidates without a usable embedding, and the one matching
    ``exclude_product_id``, are skipped. Ties keep the candidates' input order.

    Raises:
        InvalidInput: If ``k`` < 1 or the query vector is empty.
        DimensionMismatch: If any candidate vector differs in length from the query.
    """
    _check_limit(k)
    validate_vector(query)

    def scored() -> Iterable[Tuple[float, int, Candidate]]:
        for position, candidate in enumerate(candidates):
            if candidate.product_id == exclude_product_id or not candidate.usable:
                continue
            yield _score(query, candidate), position, candidate

    # nlargest is stable for equal keys, so earlier candidates win ties
    best = heapq.nlargest(k, scored(), key=lambda item: item[0])
    return [_to_result(candidate, similarity) for similarity, _, candidate in best]


async def atop_k(
    query: Sequence[float],
    candidates: AsyncIterator[Candidate],
    k: int = DEFAULT_LIMIT,
    exclude_product_id: Optional[str] = None,
) -> Tuple[List[SimilarityResult], int]:
    """
    Streaming variant of :func:`top_k` for async candidate sources.

    Keeps a bounded heap of ``k`` entries, so memory does not grow with the pool.

    Returns:
        The ranked results and the number of candidates that were scored.
    """
    _check_limit(k)
    validate_vector(query)

    # Min-heap keyed on (similarity, -position): the root is the worst kept entry
    heap: List[Tuple[float, int, int, Candidate]] = []
    position = 0
    compared = 0
    async for candidate in candidates:
        position += 1
        if candidate.product_id == exclude_product_id or not candidate.usable:
            continue
        similarity = _score(query, candidate)
        compared += 1
        entry = (similarity, -position, position, candidate)
        if len(heap) < k:
            heapq.heappush(heap, entry)
        elif entry[:2] > heap[0][:2]:
            heapq.heapreplace(heap, entry)

    ranked = sorted(heap, key=lambda item: (-item[0], item[2]))
    return [_to_result(candidate, similarity) for similarity, _, _, candidate in ranked], compared


async def search_similar(
    product_id: str,
    repository: ProductRepository,
    limit: int = DEFAULT_LIMIT,
) -> SearchResponse:
    """
    Find the products most visually similar to ``product_id``.

    Raises:
        InvalidInput: If ``limit`` < 1.
        ProductNotFound: If the product does not exist.
        NoEmbedding: If the product has no usable embedding yet.
        DimensionMismatch: If stored vectors disagree in length.
    """
    _check_limit(limit)
    source = await repository.get_candidate(product_id)
    if source is None:
        raise ProductNotFound(product_id)
    if not source.usable:
        logger.info("Product %s has no usable embedding", product_id)
        raise NoEmbedding(product_id)

    results, compared = await atop_k(
        source.embedding.vector,
        repository.iter_candidates(exclude_product_id=product_id),
        k=limit,
        exclude_product_id=product_id,
    )
    logger.info(
        "Similarity search for %s compared %d candidates, returning %d",
        product_id, compared, len(results),
    )
    return SearchResponse(source_product=source.summary, similar_products=results)


class InMemoryProductRepository:
    """
    Product repository kept in process memory, resolving embeddings through a store.

    Products are returned in the order they were added.
    """

    def __init__(self, store: EmbeddingStore) -> None:
        self.store = store
        self._products: Dict[str, Tuple[ProductSummary, Optional[str]]] = {}
        self._analyses: Dict[str, ProductAnalysis] = {}

    def add(self, summary: ProductSummary, image_hash: Optional[str] = None) -> None:
        self._products[summary.product_id] = (summary, image_hash)

    async def link_embedding(self, product_id: str, image_hash: str) -> None:
        if product_id not in self._products:
            raise ProductNotFound(product_id)
        summary, _ = self._products[product_id]
        self._products[product_id] = (summary, image_hash)

    async def _candidate(self, summary: ProductSummary, image_hash: Optional[str]) -> Candidate:
        embedding = await self.store.get(image_hash) if image_hash else None
        return Candidate(summary=summary, embedding=embedding)

    async def get_candidate(self, product_id: str) -> Optional[Candidate]:
        entry = self._products.get(product_id)
        if entry is None:
            return None
        return await self._candidate(*entry)

    async def iter_candidates(self, exclude_product_id: Optional[str] = None) -> AsyncIterator[Candidate]:
        for product_id, entry in list(self._products.items()):
            if product_id == exclude_product_id:
                continue
            yield await self._candidate(*entry)

    async def save_product(self, summary: ProductSummary, image_hash: str, analysis: ProductAnalysis) -> ProductSummary:
        """Store an analysed product under a fresh id and return its summary."""
        stored = summary.model_copy(update={"product_id": str(uuid.uuid4())})
        self.add(stored, image_hash)
        self._analyses[stored.product_id] = analysis
        return stored

    async def find_analysis(self, image_hash: str) -> Optional[Tuple[ProductSummary, ProductAnalysis]]:
        """Most recently stored analysis for an image hash, if any."""
        for product_id, (summary, stored_hash) in reversed(list(self._products.items())):
            if stored_hash == image_hash and product_id in self._analyses:
                return summary, self._analyses[product_id]
        return None
