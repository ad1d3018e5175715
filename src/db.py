# src/db.py
"""
Database connection management for Supabase and data access for embeddings and products.

This module provides a reusable async SQLAlchemy engine configured to connect
to a Supabase Postgres instance (with pgvector), a Supabase client for image
storage, and the database-backed implementations of the embedding store and
product repository used by the cache and similarity search.

Required Environment Variables:
    SUPABASE_URL: The Supabase project URL.
    SUPABASE_SERVICE_KEY: Database password for the postgres role.
    SUPABASE_KEY: The Supabase API key used for storage access.

Usage:
    from src.db import get_async_session, SqlEmbeddingStore, SqlProductRepository

    session_factory = await get_async_session()
    store = SqlEmbeddingStore(session_factory)
"""

import asyncio
import os
import uuid
from typing import Any, AsyncIterator, Dict, Optional, Tuple

import sqlalchemy
from dotenv import load_dotenv
from sqlalchemy import and_, or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from supabase import Client, create_client

from fashion_core.errors import InvalidInput, ProductNotFound, ProviderFailure
from fashion_core.models import EmbeddingRecord, ProductAnalysis, ProductSummary
from fashion_core.search import Candidate
from fashion_core.vector_math import validate_vector
from src.logger import exception, get_logger, info
from src.models import EMBEDDING_DIMENSION, AnalysisProductOrm, Base, ImageEmbeddingOrm

# Load environment variables from .env file for local development
load_dotenv()

logger = get_logger(__name__)

STORAGE_BUCKET = os.getenv("SUPABASE_STORAGE_BUCKET", "product-images")
SEARCH_PAGE_SIZE = int(os.getenv("SEARCH_PAGE_SIZE", "200"))

# Module-level variables to store instances for reuse across requests
_async_engine: Optional[AsyncEngine] = None
_supabase: Optional[Client] = None
_async_session_local: Optional[async_sessionmaker[AsyncSession]] = None


def get_supabase() -> Client:
    """
    Initializes and returns a Supabase client.

    Raises:
        ValueError: If required environment variables are not set.

    Returns:
        A configured Supabase client instance.
    """
    global _supabase

    if _supabase:
        return _supabase

    supabase_url: Optional[str] = os.getenv("SUPABASE_URL")
    supabase_key: Optional[str] = os.getenv("SUPABASE_KEY")

    if not all([supabase_url, supabase_key]):
        error_msg = "Missing required Supabase environment variables: SUPABASE_URL, SUPABASE_KEY"
        logger.error(error_msg)
        raise ValueError(error_msg)

    _supabase = create_client(supabase_url, supabase_key)
    logger.info("Successfully created Supabase client")
    return _supabase


async def download_image(image_ref: str) -> bytes:
    """
    Fetch an image from Supabase storage by its path in the product bucket.

    Raises:
        InvalidInput: If the reference is empty.
        ProviderFailure: If storage cannot return the object.
    """
    if not image_ref:
        raise InvalidInput("image_ref must not be empty")
    try:
        bucket = get_supabase().storage.from_(STORAGE_BUCKET)
        return await asyncio.to_thread(bucket.download, image_ref)
    except Exception as e:
        exception("Failed to download image from storage", exc=e, image_ref=image_ref, bucket=STORAGE_BUCKET)
        raise ProviderFailure(f"Could not download image {image_ref}: {e}") from e


async def get_async_engine() -> AsyncEngine:
    """
    Initializes and returns an asynchronous SQLAlchemy Engine configured for Supabase.

    Creates an async connection pool using the Supabase connection details with asyncpg.
    The engine is created only once per process.

    Raises:
        ValueError: If required environment variables are not set.
        OperationalError: If the database connection fails.
    """
    global _async_engine

    if _async_engine:
        return _async_engine

    supabase_url: Optional[str] = os.getenv("SUPABASE_URL")
    db_password: Optional[str] = os.getenv("SUPABASE_SERVICE_KEY")
    db_host: Optional[str] = None

    if supabase_url:
        try:
            db_host = f"db.{supabase_url.split('//')[1]}"
        except IndexError:
            error_msg = "Invalid SUPABASE_URL format."
            logger.error(error_msg)
            raise ValueError(error_msg)

    if not all([db_host, db_password]):
        error_msg = "Missing required environment variables for DB engine: SUPABASE_URL, SUPABASE_SERVICE_KEY"
        logger.error(error_msg)
        raise ValueError(error_msg)

    db_url = f"postgresql+asyncpg://postgres:{db_password}@{db_host}:5432/postgres"
    logger.info("Initializing async database engine")
    try:
        async_engine = create_async_engine(
            db_url,
            pool_size=5,
            max_overflow=2,
            pool_timeout=30,
            pool_recycle=1800,
        )
        async with async_engine.connect() as connection:
            await connection.execute(sqlalchemy.text("SELECT 1"))
    except OperationalError as e:
        exception("Database connection failed", exc=e)
        raise

    _async_engine = async_engine
    logger.info("Async database engine created successfully.")
    return _async_engine


async def get_async_session() -> async_sessionmaker[AsyncSession]:
    """
    Returns an asynchronous SQLAlchemy sessionmaker bound to the async engine.

    Creates the sessionmaker only once.
    """
    global _async_session_local
    if _async_session_local is None:
        engine = await get_async_engine()
        _async_session_local = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        logger.info("Async session maker created.")
    return _async_session_local


# --- Row conversion ---

def _record_from_row(row: ImageEmbeddingOrm, dimension: Optional[int]) -> EmbeddingRecord:
    vector: Tuple[float, ...] = ()
    if row.embedding is not None and row.rankable:
        # Stored vectors are re-checked on every read; a resized column must not leak into ranking
        vector = tuple(float(value) for value in validate_vector(row.embedding, dimension))
    return EmbeddingRecord(
        image_hash=row.image_hash,
        vector=vector,
        normalized_image_ref=row.normalized_image_url or "",
        model=row.model,
        rankable=bool(row.rankable) and row.embedding is not None,
        created_at=row.created_at,
    )


def _summary_from_row(row: AnalysisProductOrm) -> ProductSummary:
    return ProductSummary(
        product_id=str(row.id),
        analysis_id=row.analysis_id,
        sku=row.sku,
        category=row.category,
        color=row.color,
        fabric=row.fabric,
        image_url=row.image_url,
        demand_score=row.demand_score,
        estimated_price=row.estimated_price,
    )


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


# --- Embedding store ---

class SqlEmbeddingStore:
    """
    Embedding store backed by the 'image_embeddings' table.

    Writes are upserts on ``image_hash``, so a degraded row is replaced in
    place when its embedding is recomputed.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], dimension: Optional[int] = EMBEDDING_DIMENSION) -> None:
        self.session_factory = session_factory
        self.dimension = dimension

    async def get(self, image_hash: str) -> Optional[EmbeddingRecord]:
        async with self.session_factory() as session:
            result = await session.execute(select(ImageEmbeddingOrm).filter_by(image_hash=image_hash))
            row = result.scalars().first()
        if row is None:
            return None
        return _record_from_row(row, self.dimension)

    async def put(self, record: EmbeddingRecord) -> EmbeddingRecord:
        values: Dict[str, Any] = {
            "image_hash": record.image_hash,
            "embedding": list(record.vector) if record.usable else None,
            "rankable": record.usable,
            "normalized_image_url": record.normalized_image_ref,
            "model": record.model,
        }
        stmt = insert(ImageEmbeddingOrm).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[ImageEmbeddingOrm.image_hash],
            set_={key: stmt.excluded[key] for key in ("embedding", "rankable", "normalized_image_url", "model")},
        )
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await session.execute(stmt)
        except Exception as e:
            exception("Error storing embedding", exc=e, image_hash=record.image_hash)
            raise
        info("Stored embedding", image_hash=record.image_hash, rankable=record.usable)
        return record


# --- Product repository ---

class SqlProductRepository:
    """
    Products and their embeddings from 'analysis_products' joined to 'image_embeddings'.

    Candidates are streamed in insertion order (``created_at``, ``id``) one page
    at a time using keyset pagination, so a search never loads the whole table.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dimension: Optional[int] = EMBEDDING_DIMENSION,
        page_size: int = SEARCH_PAGE_SIZE,
    ) -> None:
        self.session_factory = session_factory
        self.dimension = dimension
        self.page_size = page_size

    def _select(self):
        return select(AnalysisProductOrm, ImageEmbeddingOrm).outerjoin(
            ImageEmbeddingOrm, ImageEmbeddingOrm.image_hash == AnalysisProductOrm.image_hash
        )

    def _candidate(self, product: AnalysisProductOrm, embedding: Optional[ImageEmbeddingOrm]) -> Candidate:
        record = _record_from_row(embedding, self.dimension) if embedding is not None else None
        return Candidate(summary=_summary_from_row(product), embedding=record)

    async def get_candidate(self, product_id: str) -> Optional[Candidate]:
        if not _is_uuid(product_id):
            return None
        async with self.session_factory() as session:
            result = await session.execute(self._select().where(AnalysisProductOrm.id == product_id))
            row = result.first()
        if row is None:
            return None
        return self._candidate(row[0], row[1])

    async def iter_candidates(self, exclude_product_id: Optional[str] = None) -> AsyncIterator[Candidate]:
        last: Optional[Tuple[Any, str]] = None
        pages = 0
        while True:
            stmt = self._select().order_by(AnalysisProductOrm.created_at, AnalysisProductOrm.id).limit(self.page_size)
            if last is not None:
                created_at, product_id = last
                stmt = stmt.where(or_(
                    AnalysisProductOrm.created_at > created_at,
                    and_(AnalysisProductOrm.created_at == created_at, AnalysisProductOrm.id > product_id),
                ))
            async with self.session_factory() as session:
                rows = (await session.execute(stmt)).all()
            pages += 1
            for product, embedding in rows:
                if str(product.id) != exclude_product_id:
                    yield self._candidate(product, embedding)
            if len(rows) < self.page_size:
                logger.debug(f"Candidate stream finished after {pages} page(s)")
                return
            last = (rows[-1][0].created_at, rows[-1][0].id)

    async def link_embedding(self, product_id: str, image_hash: str) -> None:
        if not _is_uuid(product_id):
            raise ProductNotFound(product_id)
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(AnalysisProductOrm).where(AnalysisProductOrm.id == product_id).values(image_hash=image_hash)
                )
        if result.rowcount == 0:
            raise ProductNotFound(product_id)
        info("Linked product to embedding", product_id=product_id, image_hash=image_hash)

    async def save_product(self, summary: ProductSummary, image_hash: str, analysis: ProductAnalysis) -> ProductSummary:
        """Insert an analysed product and return its summary with the assigned id."""
        row = AnalysisProductOrm(
            analysis_id=summary.analysis_id,
            sku=summary.sku,
            category=summary.category,
            color=summary.color,
            fabric=summary.fabric,
            image_url=summary.image_url,
            demand_score=summary.demand_score,
            estimated_price=summary.estimated_price,
            image_hash=image_hash,
            analysis=analysis.model_dump(mode="json"),
        )
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(row)
                    await session.flush()
                    product_id = str(row.id)
        except Exception as e:
            exception("Error storing analysed product", exc=e, image_hash=image_hash)
            raise
        return summary.model_copy(update={"product_id": product_id})

    async def find_analysis(self, image_hash: str) -> Optional[Tuple[ProductSummary, ProductAnalysis]]:
        """Most recent stored analysis for an image hash, if any."""
        stmt = (
            select(AnalysisProductOrm)
            .where(AnalysisProductOrm.image_hash == image_hash, AnalysisProductOrm.analysis.isnot(None))
            .order_by(AnalysisProductOrm.created_at.desc())
            .limit(1)
        )
        async with self.session_factory() as session:
            row = (await session.execute(stmt)).scalars().first()
        if row is None:
            return None
        return _summary_from_row(row), ProductAnalysis.model_validate(row.analysis)


async def initialize_database() -> None:
    """
    Initializes the database: enables pgvector and creates tables if they don't exist.

    Should be called during application startup.
    """
    logger.info("Initializing database")
    try:
        engine = await get_async_engine()
        async with engine.begin() as conn:
            await conn.execute(sqlalchemy.text("CREATE EXTENSION IF NOT EXISTS vector"))
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database initialization completed successfully")
    except Exception as e:
        exception("Database initialization failed", exc=e)
        raise
