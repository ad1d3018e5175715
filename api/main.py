"""
FastAPI application for fashion trend scoring and visual similarity.

This module provides HTTP endpoints for scoring products against trend
references, running the model-backed product and trend analyses, resolving
image embeddings and finding visually similar products.
"""

from typing import Dict, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from fashion_core import llm, models
from fashion_core.embedding_cache import EmbeddingCache, SingleFlight
from fashion_core.errors import FashionCoreError
from src.analysis import AnalysisService, score_product
from src.db import SqlEmbeddingStore, SqlProductRepository, download_image, get_async_session
from src.embeddings import EMBEDDING_DIMENSION, EMBEDDING_TIMEOUT_SECONDS, MODEL_NAME
from src.logger import configure_domain_logging, exception, warning
from src.similarity import EmbeddingService, find_similar_products

configure_domain_logging()

# HTTP status for each domain error code
ERROR_STATUS: Dict[str, int] = {
    "invalid_input": 422,
    "not_apparel": 422,
    "product_not_found": 404,
    "no_embedding": 409,
    "parse_failure": 502,
    "provider_failure": 503,
    "dimension_mismatch": 500,
}

app = FastAPI(
    title="Fashion Trend API",
    description="API for scoring fashion products against current trends and finding similar products",
    version="1.0.0"
)

_embedding_cache: Optional[EmbeddingCache] = None
_product_repository: Optional[SqlProductRepository] = None
_analysis_flights: SingleFlight = SingleFlight()


@app.exception_handler(FashionCoreError)
async def fashion_core_error_handler(request: Request, exc: FashionCoreError) -> JSONResponse:
    status_code = ERROR_STATUS.get(exc.code, 500)
    if status_code >= 500:
        exception("Request failed", exc=exc, path=request.url.path, **exc.context)
    else:
        warning("Request rejected", path=request.url.path, code=exc.code, error=exc.message)
    return JSONResponse(
        status_code=status_code,
        content=models.ErrorResponse(error=exc.message, code=exc.code).model_dump(),
    )


# --- Dependencies (overridden in tests) ---

async def get_embedding_cache() -> EmbeddingCache:
    """Process-wide embedding cache backed by the database."""
    global _embedding_cache
    if _embedding_cache is None:
        store = SqlEmbeddingStore(await get_async_session(), dimension=EMBEDDING_DIMENSION)
        _embedding_cache = EmbeddingCache(
            store, dimension=EMBEDDING_DIMENSION, timeout=EMBEDDING_TIMEOUT_SECONDS, model_name=MODEL_NAME
        )
    return _embedding_cache


async def get_product_repository() -> SqlProductRepository:
    global _product_repository
    if _product_repository is None:
        _product_repository = SqlProductRepository(await get_async_session(), dimension=EMBEDDING_DIMENSION)
    return _product_repository


async def get_embedding_service(
    cache: EmbeddingCache = Depends(get_embedding_cache),
    repository: SqlProductRepository = Depends(get_product_repository),
) -> EmbeddingService:
    return EmbeddingService(cache, repository, fetch_image=download_image)


async def get_analysis_service(
    cache: EmbeddingCache = Depends(get_embedding_cache),
    repository: SqlProductRepository = Depends(get_product_repository),
) -> AnalysisService:
    return AnalysisService(repository, cache, flights=_analysis_flights)


# --- Endpoints ---

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok"}


@app.post("/score", response_model=models.ScoreResponse)
async def score(request: models.ScoreRequest) -> models.ScoreResponse:
    """
    Score a product's attributes (or precomputed sub-scores) against trend references.

    Returns the demand assessment merged with the production plan.
    """
    return score_product(request)


@app.post("/analyze", response_model=models.AnalyzeResponse)
async def analyze(
    request: models.AnalyzeRequest,
    service: AnalysisService = Depends(get_analysis_service),
) -> models.AnalyzeResponse:
    """
    Analyse a product photo with the vision model, score it, plan its production
    and index it for similarity search.
    """
    return await service.analyze(request)


@app.post("/embed", response_model=models.EmbedResponse)
async def embed(
    request: models.EmbedRequest,
    service: EmbeddingService = Depends(get_embedding_service),
) -> models.EmbedResponse:
    """Resolve or create the embedding for an image."""
    return await service.embed(request)


@app.post("/search-similar", response_model=models.SearchResponse)
async def search(
    request: models.SearchRequest,
    repository: SqlProductRepository = Depends(get_product_repository),
) -> models.SearchResponse:
    """Return the products most visually similar to the given product."""
    return await find_similar_products(request, repository)


@app.post("/trends", response_model=models.TrendAnalysisResponse)
async def trends(request: models.TrendAnalysisRequest) -> models.TrendAnalysisResponse:
    """Research the current trending colors, fabrics and styles for a collection."""
    return await llm.analyze_trends(request)
