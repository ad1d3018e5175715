# src/analysis.py
"""
Product scoring and analysis orchestration.

Scoring from attributes or precomputed sub-scores is pure. Full analysis
calls the vision model once per distinct photo: analyses are keyed by the
image's content hash, concurrent requests for the same photo share one model
call, and a photo seen before reuses its stored analysis.
"""

from typing import Awaitable, Callable, Optional, Protocol, Tuple

from fashion_core import llm, planner, scoring
from fashion_core.embedding_cache import EmbeddingCache, SingleFlight, compute_image_hash
from fashion_core.errors import FashionCoreError, InvalidInput
from fashion_core.models import (
    AnalyzeRequest,
    AnalyzeResponse,
    DemandAssessment,
    ProductAnalysis,
    ProductSummary,
    ScoreRequest,
    ScoreResponse,
    SubScore,
)
from src.embeddings import embed_image
from src.logger import exception, get_logger, info
from src.similarity import Embedder, decode_image, resolve_image_embedding

logger = get_logger(__name__)

Analyzer = Callable[..., Awaitable[ProductAnalysis]]


class AnalysisCatalog(Protocol):
    async def save_product(self, summary: ProductSummary, image_hash: str, analysis: ProductAnalysis) -> ProductSummary:
        ...

    async def find_analysis(self, image_hash: str) -> Optional[Tuple[ProductSummary, ProductAnalysis]]:
        ...


def score_product(request: ScoreRequest) -> ScoreResponse:
    """
    Score a product and derive its production plan.

    Precomputed sub-scores, when supplied, are combined directly; otherwise the
    detected attributes are matched against the trend references.

    Raises:
        InvalidInput: If the sub-scores, references, price or cost are invalid.
    """
    if request.sub_scores is not None:
        supplied = request.sub_scores
        assessment = scoring.assess(
            SubScore(kind="color", value=supplied.color, reasoning=supplied.color_reasoning),
            SubScore(kind="fabric", value=supplied.fabric, reasoning=supplied.fabric_reasoning),
            SubScore(kind="style", value=supplied.style, reasoning=supplied.style_reasoning),
        )
    else:
        assessment = scoring.score(request.product_attributes, request.trend_references)

    plan = planner.plan(assessment.demand_score, request.estimated_price, request.estimated_production_cost)
    return ScoreResponse.from_parts(assessment, plan)


class AnalysisService:
    """
    Runs the model-backed analysis of product photos.

    Args:
        catalog: Where analysed products are stored and looked up by image hash.
        cache: Embedding cache used to index each analysed photo for similarity search.
        analyzer: Vision model call; defaults to :func:`fashion_core.llm.analyze_product_image`.
        embedder: Image embedder; defaults to the CLIP model.
        flights: Shared coalescing registry, so one process makes one model call per photo
            even when a new service object is built for each request.
    """

    def __init__(
        self,
        catalog: AnalysisCatalog,
        cache: EmbeddingCache,
        analyzer: Analyzer = llm.analyze_product_image,
        embedder: Embedder = embed_image,
        flights: Optional[SingleFlight] = None,
    ) -> None:
        self.catalog = catalog
        self.cache = cache
        self.analyzer = analyzer
        self.embedder = embedder
        self._flights: SingleFlight[Tuple[ProductSummary, ProductAnalysis, bool]] = flights or SingleFlight()

    async def analyze(self, request: AnalyzeRequest) -> AnalyzeResponse:
        """
        Analyse a product photo, score it and plan its production.

        Raises:
            InvalidInput: If the image or references are invalid.
            NotApparel: If the photo does not show a garment.
            ProviderFailure: If the model call fails or times out.
            ParseFailure: If the model reply cannot be parsed.
        """
        if request.trend_references.is_empty():
            raise InvalidInput("Trend reference set is empty")
        image_bytes = decode_image(request.image_base64)
        image_hash = compute_image_hash(image_bytes)

        summary, analysis, reused = await self._flights.do(
            image_hash, lambda: self._analysis_for(image_hash, image_bytes, request)
        )
        assessment = scoring.assess_analysis(analysis)
        plan = planner.plan(assessment.demand_score, analysis.estimated_price, analysis.estimated_production_cost)

        embedding_status = await self._index_image(image_bytes, image_hash, request.image_url)

        info(
            "Product analysis completed",
            product_id=summary.product_id,
            image_hash=image_hash,
            demand_score=assessment.demand_score,
            reused=reused,
            embedding_status=embedding_status,
        )
        return AnalyzeResponse(
            **ScoreResponse.from_parts(assessment, plan).model_dump(),
            product_id=summary.product_id,
            image_hash=image_hash,
            reused=reused,
            embedding_status=embedding_status,
            analysis=analysis,
        )

    async def _analysis_for(
        self, image_hash: str, image_bytes: bytes, request: AnalyzeRequest
    ) -> Tuple[ProductSummary, ProductAnalysis, bool]:
        stored = await self.catalog.find_analysis(image_hash)
        if stored is not None:
            info("Reusing stored analysis", image_hash=image_hash, product_id=stored[0].product_id)
            return stored[0], stored[1], True

        analysis = await self.analyzer(
            image_bytes, request.mime_type, request.trend_references, sku=request.sku, category=request.category
        )
        assessment: DemandAssessment = scoring.assess_analysis(analysis)
        summary = ProductSummary(
            product_id="pending",
            analysis_id=request.analysis_id,
            sku=request.sku,
            category=request.category,
            color=analysis.attributes.detected_color,
            fabric=analysis.attributes.detected_fabric,
            image_url=request.image_url,
            demand_score=assessment.demand_score,
            estimated_price=analysis.estimated_price,
        )
        saved = await self.catalog.save_product(summary, image_hash, analysis)
        return saved, analysis, False

    async def _index_image(self, image_bytes: bytes, image_hash: str, image_ref: Optional[str]) -> str:
        # A failed embedding never fails the analysis; the product just is not searchable yet
        try:
            resolution = await resolve_image_embedding(
                self.cache, image_bytes, normalized_image_ref=image_ref or "", embedder=self.embedder
            )
        except FashionCoreError as e:
            exception("Embedding failed after analysis", exc=e, image_hash=image_hash)
            return "failed"
        return "cached" if resolution.cached else "created"
