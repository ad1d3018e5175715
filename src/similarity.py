# src/similarity.py
"""
Visual similarity: resolving image embeddings and ranking similar products.

Wires the content-addressed embedding cache to the CLIP embedder and the
image storage, and runs similarity search against a product repository.
"""

import asyncio
import base64
import binascii
import re
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence

from fashion_core.embedding_cache import CacheResolution, EmbeddingCache, compute_image_hash
from fashion_core.errors import InvalidInput
from fashion_core.models import EmbedRequest, EmbedResponse, SearchRequest, SearchResponse
from fashion_core.search import ProductRepository, search_similar
from src.embeddings import embed_image, normalize_image
from src.logger import get_logger, info, warning

logger = get_logger(__name__)

_HASH_RE = re.compile(r"^[0-9a-f]{64}$")

ImageFetcher = Callable[[str], Awaitable[bytes]]
Embedder = Callable[[bytes], Awaitable[Sequence[float]]]


class LinkableRepository(ProductRepository, Protocol):
    async def link_embedding(self, product_id: str, image_hash: str) -> None:
        ...


def decode_image(image_base64: str) -> bytes:
    """
    Decode a base64 image, accepting an optional ``data:<mime>;base64,`` prefix.

    Raises:
        InvalidInput: If the payload is not valid base64 or is empty.
    """
    payload = image_base64.split(",", 1)[1] if image_base64.startswith("data:") else image_base64
    try:
        image_bytes = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidInput(f"image_base64 is not valid base64: {e}") from e
    if not image_bytes:
        raise InvalidInput("image_base64 decodes to an empty image")
    return image_bytes


async def resolve_image_embedding(
    cache: EmbeddingCache,
    image_bytes: bytes,
    normalized_image_ref: str = "",
    degrade: bool = False,
    embedder: Embedder = embed_image,
) -> CacheResolution:
    """
    Resolve the embedding for raw image bytes, normalizing the image only on a cache miss.

    Raises:
        InvalidInput: If the bytes are not a decodable image.
        ProviderFailure: If the embedder fails and ``degrade`` is False.
    """
    image_hash = compute_image_hash(image_bytes)
    existing = await cache.lookup(image_hash)
    if existing is not None:
        return CacheResolution(existing, cached=True)

    normalized = await asyncio.to_thread(normalize_image, image_bytes)
    return await cache.resolve(
        image_bytes,
        lambda _: embedder(normalized),
        normalized_image_ref=normalized_image_ref,
        degrade=degrade,
    )


class EmbeddingService:
    """
    Handles embed requests: fetch or decode the image, resolve its embedding,
    and optionally link it to a product.
    """

    def __init__(
        self,
        cache: EmbeddingCache,
        repository: LinkableRepository,
        fetch_image: Optional[ImageFetcher] = None,
        embedder: Embedder = embed_image,
    ) -> None:
        self.cache = cache
        self.repository = repository
        self.fetch_image = fetch_image
        self.embedder = embedder

    async def _image_bytes(self, request: EmbedRequest) -> bytes:
        if request.image_base64:
            return decode_image(request.image_base64)
        if self.fetch_image is None:
            raise InvalidInput("image_ref given but no image storage is configured")
        return await self.fetch_image(request.image_ref)

    async def embed(self, request: EmbedRequest) -> EmbedResponse:
        """
        Resolve or create the embedding for the requested image.

        A bare ``image_hash`` plus ``image_ref`` is answered from the cache
        without downloading the image when a usable record already exists.

        Raises:
            InvalidInput: If no image is given, the payload is malformed, or the
                supplied hash does not match the image bytes.
            ProductNotFound: If ``product_id`` names an unknown product.
            ProviderFailure: If the embedder fails and ``degrade`` is False.
        """
        if not request.image_base64 and not request.image_ref:
            raise InvalidInput("Either image_base64 or image_ref is required")
        if request.image_hash is not None and not _HASH_RE.match(request.image_hash):
            raise InvalidInput("image_hash must be a 64-character lowercase hex SHA-256 digest")

        if request.image_hash and not request.image_base64:
            existing = await self.cache.lookup(request.image_hash)
            if existing is not None:
                info("Embedding served from cache without download", image_hash=request.image_hash)
                await self._link(request.product_id, existing.image_hash)
                return EmbedResponse(embedding_id=existing.image_hash, cached=True, rankable=True)

        image_bytes = await self._image_bytes(request)
        image_hash = compute_image_hash(image_bytes)
        if request.image_hash and request.image_hash != image_hash:
            raise InvalidInput(
                f"Supplied image_hash {request.image_hash[:16]}... does not match the image content ({image_hash[:16]}...)"
            )

        resolution = await resolve_image_embedding(
            self.cache,
            image_bytes,
            normalized_image_ref=request.image_ref or "",
            degrade=request.degrade,
            embedder=self.embedder,
        )
        if not resolution.record.usable:
            warning("Returning degraded embedding record", image_hash=image_hash)
        await self._link(request.product_id, image_hash)
        info("Embedding resolved", image_hash=image_hash, cached=resolution.cached, rankable=resolution.record.usable)
        return EmbedResponse(embedding_id=image_hash, cached=resolution.cached, rankable=resolution.record.usable)

    async def _link(self, product_id: Optional[str], image_hash: str) -> None:
        if product_id:
            await self.repository.link_embedding(product_id, image_hash)


async def find_similar_products(request: SearchRequest, repository: ProductRepository) -> SearchResponse:
    """
    Rank the products most visually similar to ``request.product_id``.

    Raises:
        InvalidInput: If the limit is below 1.
        ProductNotFound: If the product does not exist.
        NoEmbedding: If the product has no usable embedding yet.
    """
    response = await search_similar(request.product_id, repository, limit=request.limit)
    similarities: List[float] = [result.similarity for result in response.similar_products]
    info(
        "Similarity search completed",
        product_id=request.product_id,
        limit=request.limit,
        results=len(similarities),
        best=similarities[0] if similarities else None,
    )
    return response
