"""
Demand scoring: three weighted alignment sub-scores combined into one demand score.

The weights are fixed so the same sub-scores always produce the same demand
score and risk tier. Arithmetic is done in Decimal and rounded half-up, so
e.g. 90/75/80 is exactly 82 and never 81.999...
"""

import math
from collections import defaultdict
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Union

from fashion_core import trend_matching
from fashion_core.errors import InvalidInput
from fashion_core.models import (
    DemandAssessment,
    ProductAnalysis,
    ProductAttributes,
    RiskTier,
    SourceCount,
    SubScore,
    TrendKind,
    TrendLevel,
    TrendReferenceSet,
)

COLOR_WEIGHT = Decimal("0.35")
FABRIC_WEIGHT = Decimal("0.30")
STYLE_WEIGHT = Decimal("0.35")

LOW_RISK_ABOVE = 75
MEDIUM_RISK_FROM = 50

HIGH_TREND_FROM = 80
MEDIUM_TREND_FROM = 50

ScoreInput = Union[SubScore, float, int]


def _value(kind: TrendKind, score: ScoreInput) -> float:
    value = score.value if isinstance(score, SubScore) else score
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise InvalidInput(f"{kind} score must be a finite number, got {value!r}")
    if not 0 <= value <= 100:
        raise InvalidInput(f"{kind} score must be within [0, 100], got {value}")
    return float(value)


def compute_demand_score(color: float, fabric: float, style: float) -> int:
    """
    round(color*0.35 + fabric*0.30 + style*0.35), rounding half-up.

    Raises:
        InvalidInput: If any sub-score is outside [0, 100].
    """
    weighted = (
        Decimal(str(_value("color", color))) * COLOR_WEIGHT
        + Decimal(str(_value("fabric", fabric))) * FABRIC_WEIGHT
        + Decimal(str(_value("style", style))) * STYLE_WEIGHT
    )
    return int(weighted.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def risk_tier_for(demand_score: int) -> RiskTier:
    """Low above 75, Medium for 50-75 inclusive, High below 50."""
    if demand_score > LOW_RISK_ABOVE:
        return "Low"
    if demand_score >= MEDIUM_RISK_FROM:
        return "Medium"
    return "High"


def trend_level_for(demand_score: int) -> TrendLevel:
    """High for 80-100, Medium for 50-79, Low below 50."""
    if demand_score >= HIGH_TREND_FROM:
        return "High"
    if demand_score >= MEDIUM_TREND_FROM:
        return "Medium"
    return "Low"


def build_justification(demand_score: int, reason: str = "") -> str:
    status = "Trending" if demand_score >= MEDIUM_TREND_FROM else "Not trending"
    text = f"{status} - level: {trend_level_for(demand_score)}."
    if reason:
        text += f" {reason.strip()}"
    return f"{text} (Score: {demand_score}/100)"


def assess(color: ScoreInput, fabric: ScoreInput, style: ScoreInput, reason: str = "") -> DemandAssessment:
    """
    Combine three sub-scores into a DemandAssessment.

    Sub-scores may be SubScore objects (kept with their reasoning) or bare numbers.

    Raises:
        InvalidInput: If any sub-score is outside [0, 100].
    """
    scores = []
    for kind, score in (("color", color), ("fabric", fabric), ("style", style)):
        if isinstance(score, SubScore):
            if score.kind != kind:
                raise InvalidInput(f"Expected a {kind} sub-score, got {score.kind}")
            _value(kind, score)
            scores.append(score)
        else:
            scores.append(SubScore(kind=kind, value=_value(kind, score)))

    demand_score = compute_demand_score(scores[0].value, scores[1].value, scores[2].value)
    return DemandAssessment(
        demand_score=demand_score,
        risk_tier=risk_tier_for(demand_score),
        trend_level=trend_level_for(demand_score),
        sub_scores=tuple(scores),
        justification=build_justification(demand_score, reason),
    )


def score(attributes: ProductAttributes, references: TrendReferenceSet) -> DemandAssessment:
    """
    Score detected product attributes against a trend reference set.

    Each aspect is matched against the best-aligned reference of its kind
    (see :mod:`fashion_core.trend_matching`), then combined with :func:`assess`.

    Raises:
        InvalidInput: If the reference set, or any of its three kinds, is empty.
    """
    if references.is_empty():
        raise InvalidInput("Trend reference set is empty")
    for kind in ("color", "fabric", "style"):
        if not references.for_kind(kind):
            raise InvalidInput(f"No {kind} trend references to score against")

    color = trend_matching.match_color(attributes.detected_color, references.colors, references.top("color"))
    fabric = trend_matching.match_fabric(attributes.detected_fabric, references.fabrics, references.top("fabric"))
    style = trend_matching.match_style(attributes.detected_style, references.styles, references.top("style"))

    return assess(
        trend_matching.to_sub_score("color", color),
        trend_matching.to_sub_score("fabric", fabric),
        trend_matching.to_sub_score("style", style),
    )


def assess_analysis(analysis: ProductAnalysis) -> DemandAssessment:
    """Assessment from the sub-scores a model collaborator returned."""
    return assess(analysis.color_score, analysis.fabric_score, analysis.style_score, reason=analysis.reason)


def source_counts(references: TrendReferenceSet) -> List[SourceCount]:
    """Total observed appearances per source across all references, largest first."""
    totals: Dict[str, int] = defaultdict(int)
    for reference in references.all():
        for source in reference.sources:
            totals[source] += reference.observed_appearances
    ordered = sorted(totals.items(), key=lambda item: (-item[1], item[0]))
    return [SourceCount(source=source, count=count) for source, count in ordered]
