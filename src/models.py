# src/models.py
"""
SQLAlchemy ORM models for the fashion trend service's Postgres (Supabase) schema.

Pydantic request/response and domain models live in fashion_core.models; these
classes only describe how embeddings and analysed products are persisted.
"""

import os

import sqlalchemy
from pgvector.sqlalchemy import Vector
from sqlalchemy import Boolean, Column, Float, Index, Integer, String, Text, TIMESTAMP, VARCHAR
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import declarative_base

# Dimension of the configured image model (clip-ViT-B-32 outputs 512)
EMBEDDING_DIMENSION = int(os.getenv("EMBEDDING_DIMENSION", "512"))

Base = declarative_base()


class ImageEmbeddingOrm(Base):
    """
    SQLAlchemy ORM model representing the 'image_embeddings' table.

    One row per distinct image content hash. Degraded rows keep a NULL
    embedding and ``rankable = false`` until they are recomputed.
    """
    __tablename__ = 'image_embeddings'

    id: Column[int] = Column(Integer, primary_key=True)
    image_hash: Column[str] = Column(VARCHAR(64), nullable=False, unique=True)
    embedding: Column[Vector] = Column(Vector(EMBEDDING_DIMENSION), nullable=True)
    rankable: Column[bool] = Column(Boolean, nullable=False, server_default=sqlalchemy.true())
    normalized_image_url: Column[str] = Column(Text, nullable=False, server_default="")
    model: Column[str] = Column(String, nullable=True)
    created_at: Column[TIMESTAMP] = Column(TIMESTAMP(timezone=True), server_default=sqlalchemy.func.now())
    updated_at: Column[TIMESTAMP] = Column(TIMESTAMP(timezone=True), server_default=sqlalchemy.func.now(), onupdate=sqlalchemy.func.now())

    def __repr__(self) -> str:
        return f"<ImageEmbeddingOrm(id={self.id}, image_hash='{self.image_hash}', rankable={self.rankable})>"


class AnalysisProductOrm(Base):
    """
    SQLAlchemy ORM model representing the 'analysis_products' table.

    Stores the summary of each analysed product and, once available, the
    content hash of its image so it can be joined to its embedding.
    """
    __tablename__ = 'analysis_products'

    id: Column[str] = Column(UUID(as_uuid=False), primary_key=True, server_default=sqlalchemy.text("gen_random_uuid()"))
    analysis_id: Column[str] = Column(String, nullable=True, index=True)
    sku: Column[str] = Column(String, nullable=True)
    category: Column[str] = Column(String, nullable=True)
    color: Column[str] = Column(String, nullable=True)
    fabric: Column[str] = Column(String, nullable=True)
    image_url: Column[str] = Column(Text, nullable=True)
    demand_score: Column[int] = Column(Integer, nullable=True)
    estimated_price: Column[float] = Column(Float, nullable=True)
    analysis: Column[dict] = Column(JSONB, nullable=True)
    # Content hash of the product photo; joined to image_embeddings.image_hash
    image_hash: Column[str] = Column(VARCHAR(64), nullable=True, index=True)
    created_at: Column[TIMESTAMP] = Column(TIMESTAMP(timezone=True), server_default=sqlalchemy.func.now())

    __table_args__ = (
        # Candidate streaming pages in insertion order
        Index('idx_analysis_products_created_id', 'created_at', 'id'),
    )

    def __repr__(self) -> str:
        return f"<AnalysisProductOrm(id={self.id}, sku='{self.sku}', image_hash='{self.image_hash}')>"
