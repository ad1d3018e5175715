"""
Single source of truth (SSoT) for all data models in the fashion trend service.

This module defines the core Pydantic models used across the API layer, domain logic,
and tests. These models serve as the canonical schema definitions and should never
be redeclared elsewhere in the codebase.
"""

import re
from datetime import datetime, timezone
from typing import Annotated, FrozenSet, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

TrendKind = Literal["color", "fabric", "style"]
RiskTier = Literal["Low", "Medium", "High"]
TrendLevel = Literal["High", "Medium", "Low"]

TREND_KINDS: Tuple[TrendKind, ...] = ("color", "fabric", "style")

# Popularity labels as they come back from trend research (English and Portuguese)
POPULARITY_LABELS = {
    "very high": 100.0,
    "muito alta": 100.0,
    "high": 90.0,
    "alta": 90.0,
    "alto": 90.0,
    "medium": 60.0,
    "media": 60.0,
    "média": 60.0,
    "medio": 60.0,
    "médio": 60.0,
    "low": 30.0,
    "baixa": 30.0,
    "baixo": 30.0,
}

_NUMBER_RE = re.compile(r"[-+]?\d+(?:[.,]\d+)?")

Score = Annotated[float, Field(ge=0.0, le=100.0)]


def normalize_confidence(value: object) -> float:
    """
    Convert a confidence, trend percentage or popularity label into a number in [0, 100].

    Accepts plain numbers, strings such as ``"95"`` or ``"+35%"`` and labels
    such as ``"alta"`` or ``"medium"``.

    Raises:
        ValueError: If the value cannot be interpreted.
    """
    if isinstance(value, bool):
        raise ValueError("confidence must be a number or popularity label")
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        label = value.strip().lower()
        if label in POPULARITY_LABELS:
            return POPULARITY_LABELS[label]
        match = _NUMBER_RE.search(label)
        if not match:
            raise ValueError(f"Unrecognised confidence value: {value!r}")
        number = float(match.group().replace(",", "."))
    else:
        raise ValueError(f"Unrecognised confidence value: {value!r}")
    return max(0.0, min(100.0, number))


class TrendReference(BaseModel):
    """A single market datum (a color, fabric or style) used as a comparison target."""

    model_config = ConfigDict(frozen=True)

    kind: TrendKind
    name: str = Field(..., min_length=1, description="Trend name, e.g. 'Butter Yellow' or 'Linen'.")
    identifier: str = Field(
        default="",
        description="Hex code for colors, trend percentage for fabrics, popularity label for styles.",
    )
    confidence: Score = Field(
        default=50.0, description="Confidence or popularity normalized to 0-100."
    )
    observed_appearances: int = Field(default=0, ge=0)
    sources: FrozenSet[str] = Field(default_factory=frozenset)

    @field_validator("confidence", mode="before")
    @classmethod
    def _coerce_confidence(cls, value: object) -> float:
        return normalize_confidence(value)


class TrendReferenceSet(BaseModel):
    """The colors, fabrics and styles a product is scored against during one session."""

    model_config = ConfigDict(frozen=True)

    colors: Tuple[TrendReference, ...] = ()
    fabrics: Tuple[TrendReference, ...] = ()
    styles: Tuple[TrendReference, ...] = ()

    @model_validator(mode="before")
    @classmethod
    def _fill_kinds(cls, data: object) -> object:
        # Callers may omit "kind" on entries; the list they sit in decides it
        if not isinstance(data, dict):
            return data
        filled = dict(data)
        for field_name, kind in (("colors", "color"), ("fabrics", "fabric"), ("styles", "style")):
            entries = filled.get(field_name)
            if not entries:
                continue
            filled[field_name] = [
                {"kind": kind, **entry} if isinstance(entry, dict) else entry
                for entry in entries
            ]
        return filled

    @model_validator(mode="after")
    def _check_kinds(self) -> "TrendReferenceSet":
        for kind in TREND_KINDS:
            for reference in self.for_kind(kind):
                if reference.kind != kind:
                    raise ValueError(
                        f"Trend reference '{reference.name}' has kind '{reference.kind}' "
                        f"but was listed under {kind}s"
                    )
        return self

    def for_kind(self, kind: TrendKind) -> Tuple[TrendReference, ...]:
        return {"color": self.colors, "fabric": self.fabrics, "style": self.styles}[kind]

    def top(self, kind: TrendKind) -> Optional[TrendReference]:
        """Highest-confidence reference of a kind; the first one listed wins ties."""
        best: Optional[TrendReference] = None
        for reference in self.for_kind(kind):
            if best is None or reference.confidence > best.confidence:
                best = reference
        return best

    def all(self) -> Tuple[TrendReference, ...]:
        return self.colors + self.fabrics + self.styles

    def is_empty(self) -> bool:
        return not (self.colors or self.fabrics or self.styles)


class ProductAttributes(BaseModel):
    """Attributes extracted from one product photo by the vision collaborator."""

    model_config = ConfigDict(frozen=True)

    detected_color: str = Field(..., min_length=1, description="Color name, optionally with hex code.")
    detected_fabric: str = Field(..., min_length=1)
    detected_style: str = Field(..., min_length=1, description="Silhouette / cut / style description.")


class SubScore(BaseModel):
    """Alignment of one aspect of the product with the trend references."""

    model_config = ConfigDict(frozen=True)

    kind: TrendKind
    value: Score
    reasoning: str = ""


class DemandAssessment(BaseModel):
    """Composite demand score and risk tier derived from three sub-scores."""

    model_config = ConfigDict(frozen=True)

    demand_score: int = Field(..., ge=0, le=100)
    risk_tier: RiskTier
    trend_level: TrendLevel
    sub_scores: Tuple[SubScore, SubScore, SubScore]
    justification: str = ""

    def sub_score(self, kind: TrendKind) -> SubScore:
        return next(score for score in self.sub_scores if score.kind == kind)


class ProductionPlan(BaseModel):
    """Production and financial projections derived from a demand score."""

    model_config = ConfigDict(frozen=True)

    recommended_quantity: int = Field(..., ge=0)
    conversion_rate: float
    target_audience_size: int = Field(..., ge=0)
    projected_revenue: float
    total_production_cost: float
    profit_margin_pct: float


class EmbeddingRecord(BaseModel):
    """
    A content-addressed embedding.

    Identity is ``image_hash`` (SHA-256 of the raw image bytes). Records with
    ``rankable=False`` hold a degraded sentinel vector and must never be ranked.
    """

    model_config = ConfigDict(frozen=True)

    image_hash: str = Field(..., pattern=r"^[0-9a-f]{64}$")
    vector: Tuple[float, ...]
    normalized_image_ref: str = ""
    model: Optional[str] = None
    rankable: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def usable(self) -> bool:
        """True when the record carries a real vector that may be ranked."""
        return self.rankable and len(self.vector) > 0


class ProductSummary(BaseModel):
    """Product fields echoed back by similarity search."""

    product_id: str
    analysis_id: Optional[str] = None
    sku: Optional[str] = None
    category: Optional[str] = None
    color: Optional[str] = None
    fabric: Optional[str] = None
    image_url: Optional[str] = None
    demand_score: Optional[int] = None
    estimated_price: Optional[float] = None


class SimilarityResult(ProductSummary):
    """One ranked neighbour returned by similarity search."""

    similarity: float = Field(..., ge=-1.0, le=1.0)


class Insight(BaseModel):
    """A practical observation about an analysed product."""

    type: str = "improvement"
    title: str = ""
    description: str = ""
    impact: str = "medium"


class ProductAnalysis(BaseModel):
    """
    Parsed output of the vision/language collaborator for one product photo.

    The three sub-scores are always present together; a reply missing any of
    them never becomes a ProductAnalysis.
    """

    attributes: ProductAttributes
    color_score: SubScore
    fabric_score: SubScore
    style_score: SubScore
    estimated_price: float = Field(default=0.0, ge=0.0)
    estimated_production_cost: float = Field(default=0.0, ge=0.0)
    analysis_description: str = ""
    reason: str = ""
    related_trend: str = ""
    current_usage: str = ""
    recommendation: str = ""
    insights: List[Insight] = Field(default_factory=list)


# --- Request / response shapes ---

class SubScoreInput(BaseModel):
    """Sub-scores supplied by a caller that already ran the model."""

    color: Score
    fabric: Score
    style: Score
    color_reasoning: str = ""
    fabric_reasoning: str = ""
    style_reasoning: str = ""


class ScoreRequest(BaseModel):
    """Score a product from its attributes (or precomputed sub-scores) against trends."""

    product_attributes: ProductAttributes
    trend_references: TrendReferenceSet = Field(default_factory=TrendReferenceSet)
    sub_scores: Optional[SubScoreInput] = None
    estimated_price: float = 0.0
    estimated_production_cost: float = 0.0


class ScoreResponse(BaseModel):
    """Demand assessment merged with the production plan."""

    demand_score: int
    risk_tier: RiskTier
    trend_level: TrendLevel
    sub_scores: Tuple[SubScore, SubScore, SubScore]
    justification: str
    recommended_quantity: int
    conversion_rate: float
    target_audience_size: int
    projected_revenue: float
    total_production_cost: float
    profit_margin_pct: float

    @classmethod
    def from_parts(cls, assessment: DemandAssessment, plan: ProductionPlan) -> "ScoreResponse":
        return cls(**assessment.model_dump(), **plan.model_dump())


class EmbedRequest(BaseModel):
    """Resolve or create the embedding for an image given inline or by storage reference."""

    image_base64: Optional[str] = None
    image_ref: Optional[str] = Field(default=None, description="Storage path of the image.")
    image_hash: Optional[str] = None
    product_id: Optional[str] = None
    degrade: bool = False


class EmbedResponse(BaseModel):
    embedding_id: str
    cached: bool
    rankable: bool = True


class SearchRequest(BaseModel):
    product_id: str
    limit: int = 10


class SearchResponse(BaseModel):
    source_product: ProductSummary
    similar_products: List[SimilarityResult]


class AnalyzeRequest(BaseModel):
    """Run the full model-backed analysis on a product photo."""

    image_base64: str = Field(..., min_length=1)
    mime_type: str = "image/jpeg"
    trend_references: TrendReferenceSet
    analysis_id: Optional[str] = None
    sku: Optional[str] = None
    category: Optional[str] = None
    image_url: Optional[str] = Field(default=None, description="Storage path of the uploaded photo, if any.")


class AnalyzeResponse(ScoreResponse):
    product_id: str
    image_hash: str
    reused: bool
    embedding_status: Literal["created", "cached", "failed"]
    analysis: ProductAnalysis


class TrendAnalysisRequest(BaseModel):
    collection_type: str
    collection_name: str
    focus_colors: bool = True
    focus_fabrics: bool = True
    focus_models: bool = True
    analysis_depth: Literal["quick", "standard", "deep"] = "standard"


class SourceCount(BaseModel):
    source: str
    count: int


class TrendAnalysisResponse(BaseModel):
    trend_references: TrendReferenceSet
    market_insights: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    source_counts: List[SourceCount] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    error: str
    code: str
