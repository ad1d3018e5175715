"""
Content-addressed embedding cache.

Images are identified by the SHA-256 digest of their raw bytes. The cache
resolves an image to its stored embedding or computes it exactly once through
a caller-supplied provider function, coalescing concurrent requests for the
same image into a single in-flight computation.
"""

import asyncio
import hashlib
import logging
from typing import Awaitable, Callable, Dict, Generic, NamedTuple, Optional, Protocol, Sequence, TypeVar

from fashion_core.errors import DimensionMismatch, InvalidInput, ProviderFailure
from fashion_core.models import EmbeddingRecord
from fashion_core.vector_math import validate_vector

logger = logging.getLogger(__name__)

T = TypeVar("T")

ComputeFn = Callable[[bytes], Awaitable[Sequence[float]]]


def compute_image_hash(image_bytes: bytes) -> str:
    """
    Stable content hash of an image.

    Args:
        image_bytes: The exact image byte sequence.

    Returns:
        str: 64-character lowercase hex SHA-256 digest.

    Raises:
        InvalidInput: If no bytes are given.
    """
    if not image_bytes:
        raise InvalidInput("Image bytes must not be empty")
    return hashlib.sha256(image_bytes).hexdigest()


class EmbeddingStore(Protocol):
    """Record store behind the cache. Implementations must be read-your-writes per hash."""

    async def get(self, image_hash: str) -> Optional[EmbeddingRecord]:
        ...

    async def put(self, record: EmbeddingRecord) -> EmbeddingRecord:
        """Insert the record, or replace an existing record for the same hash."""
        ...


class InMemoryEmbeddingStore:
    """Dictionary-backed store for tests and single-process use."""

    def __init__(self, dimension: Optional[int] = None) -> None:
        self.dimension = dimension
        self._records: Dict[str, EmbeddingRecord] = {}

    async def get(self, image_hash: str) -> Optional[EmbeddingRecord]:
        record = self._records.get(image_hash)
        if record is not None and record.usable:
            validate_vector(record.vector, self.dimension)
        return record

    async def put(self, record: EmbeddingRecord) -> EmbeddingRecord:
        self._records[record.image_hash] = record
        return record

    def __len__(self) -> int:
        return len(self._records)


def _retrieve_exception(task: "asyncio.Task") -> None:
    # Waiters may all be gone by the time the shared task fails
    if not task.cancelled():
        task.exception()


class SingleFlight(Generic[T]):
    """
    Coalesces concurrent calls sharing a key into one in-flight task.

    The first caller for a key starts the work; later callers for the same key
    await the same task until it finishes. The key is released as soon as the
    task completes, so the next call starts fresh.
    """

    def __init__(self) -> None:
        self._inflight: Dict[str, "asyncio.Task[T]"] = {}

    async def do(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._run(key, fn))
            task.add_done_callback(_retrieve_exception)
            self._inflight[key] = task
        else:
            logger.debug("Joining in-flight computation for %s", key[:16])
        # One waiter being cancelled must not cancel the shared work
        return await asyncio.shield(task)

    async def _run(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await fn()
        finally:
            self._inflight.pop(key, None)

    def in_flight(self, key: str) -> bool:
        return key in self._inflight


class CacheResolution(NamedTuple):
    record: EmbeddingRecord
    cached: bool


class EmbeddingCache:
    """
    Get-or-create access to image embeddings.

    Args:
        store: Record store (database-backed or in-memory).
        dimension: Fixed embedding dimensionality; vectors of any other length are rejected.
        timeout: Seconds to wait for the provider before treating the call as failed.
        model_name: Recorded on new records for provenance.
    """

    def __init__(
        self,
        store: EmbeddingStore,
        dimension: Optional[int] = None,
        timeout: Optional[float] = None,
        model_name: Optional[str] = None,
    ) -> None:
        self.store = store
        self.dimension = dimension
        self.timeout = timeout
        self.model_name = model_name
        self._flights: SingleFlight[CacheResolution] = SingleFlight()

    async def lookup(self, image_hash: str) -> Optional[EmbeddingRecord]:
        """Return the usable record for a hash, or None. Never computes."""
        record = await self.store.get(image_hash)
        if record is not None and record.usable:
            return record
        return None

    async def get_or_create(
        self,
        image_bytes: bytes,
        compute_fn: ComputeFn,
        normalized_image_ref: str = "",
        degrade: bool = False,
    ) -> EmbeddingRecord:
        """Resolve the embedding for ``image_bytes``; see :meth:`resolve`."""
        resolution = await self.resolve(
            image_bytes, compute_fn, normalized_image_ref=normalized_image_ref, degrade=degrade
        )
        return resolution.record

    async def resolve(
        self,
        image_bytes: bytes,
        compute_fn: ComputeFn,
        normalized_image_ref: str = "",
        degrade: bool = False,
    ) -> CacheResolution:
        """
        Resolve the embedding for an image, computing it at most once per content hash.

        Args:
            image_bytes: Raw image bytes; their SHA-256 is the cache key.
            compute_fn: Async provider call turning image bytes into a vector.
            normalized_image_ref: Reference to the normalized image stored alongside the vector.
            degrade: On provider failure, store and return a non-rankable sentinel
                record instead of raising.

        Returns:
            CacheResolution: The record and whether it came from the store.

        Raises:
            InvalidInput: If ``image_bytes`` is empty.
            ProviderFailure: If the provider fails, times out or returns a malformed
                vector and ``degrade`` is False.
        """
        image_hash = compute_image_hash(image_bytes)
        return await self._flights.do(
            image_hash,
            lambda: self._resolve(image_hash, image_bytes, compute_fn, normalized_image_ref, degrade),
        )

    async def _resolve(
        self,
        image_hash: str,
        image_bytes: bytes,
        compute_fn: ComputeFn,
        normalized_image_ref: str,
        degrade: bool,
    ) -> CacheResolution:
        existing = await self.store.get(image_hash)
        if existing is not None and existing.usable:
            logger.info("Embedding cache hit for %s", image_hash[:16])
            return CacheResolution(existing, cached=True)

        if existing is not None:
            logger.info("Recomputing degraded embedding for %s", image_hash[:16])
        else:
            logger.info("Embedding cache miss for %s", image_hash[:16])

        try:
            vector = await self._compute(image_hash, image_bytes, compute_fn)
        except ProviderFailure as e:
            if not degrade:
                raise
            logger.warning("Storing degraded embedding for %s: %s", image_hash[:16], e.message)
            if existing is not None:
                return CacheResolution(existing, cached=True)
            sentinel = EmbeddingRecord(
                image_hash=image_hash,
                vector=tuple([0.0] * (self.dimension or 0)),
                normalized_image_ref=normalized_image_ref,
                model=self.model_name,
                rankable=False,
            )
            return CacheResolution(await self._put(sentinel), cached=False)

        record = EmbeddingRecord(
            image_hash=image_hash,
            vector=vector,
            normalized_image_ref=normalized_image_ref or (existing.normalized_image_ref if existing else ""),
            model=self.model_name,
        )
        return CacheResolution(await self._put(record), cached=False)

    async def _compute(self, image_hash: str, image_bytes: bytes, compute_fn: ComputeFn) -> tuple:
        try:
            raw = await asyncio.wait_for(compute_fn(image_bytes), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error("Embedding provider timed out for %s after %ss", image_hash[:16], self.timeout)
            raise ProviderFailure(
                f"Embedding provider timed out after {self.timeout}s", image_hash=image_hash
            ) from e
        except ProviderFailure as e:
            if e.image_hash is None:
                raise ProviderFailure(e.message, image_hash=image_hash) from e
            raise
        except Exception as e:
            logger.error("Embedding provider failed for %s: %s", image_hash[:16], e)
            raise ProviderFailure(f"Embedding provider failed: {e}", image_hash=image_hash) from e

        try:
            array = validate_vector(raw, self.dimension)
        except (InvalidInput, DimensionMismatch) as e:
            logger.error("Embedding provider returned a malformed vector for %s: %s", image_hash[:16], e)
            raise ProviderFailure(
                f"Embedding provider returned a malformed vector: {e}", image_hash=image_hash
            ) from e
        return tuple(float(value) for value in array)

    async def _put(self, record: EmbeddingRecord) -> EmbeddingRecord:
        try:
            return await self.store.put(record)
        except Exception:
            logger.exception("Failed to store embedding for %s", record.image_hash[:16])
            raise
