"""
LLM integration for product photo analysis and trend research.

This module provides integration with Google's Gemini models (via the google-genai
SDK) for two tasks: reading a product photo into attributes plus three alignment
sub-scores, and researching the current trend reference set for a collection.
The model is a replaceable collaborator; everything it returns is parsed and
validated here before any score is computed from it.
"""

import asyncio
import json
import logging
import os
import re
from typing import Any, Dict, List, Optional

import httpx
from google import genai
from google.api_core.exceptions import GoogleAPIError
from google.genai import errors as genai_errors
from google.genai import types
from pydantic import ValidationError

from fashion_core import models
from fashion_core.embedding_cache import compute_image_hash
from fashion_core.errors import NotApparel, ParseFailure, ProviderFailure
from fashion_core.scoring import source_counts
from fashion_core.trend_matching import BANDS, Tier

logger = logging.getLogger(__name__)

DEFAULT_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "60"))

# Product analysis must be as repeatable as the provider allows
ANALYSIS_TEMPERATURE = 0.0
TREND_TEMPERATURE = 0.7
DEFAULT_MAX_OUTPUT_TOKENS = 4096

# Replies the model gives when the photo is not a garment (Portuguese and English)
NOT_APPAREL_MARKERS = ("imagem inválida", "imagem invalida", "invalid image", "not apparel", "not a garment")

DEPTH_INSTRUCTIONS = {
    "quick": "Give a quick analysis with the 3 most important insights.",
    "standard": "Give a balanced analysis with detailed insights and practical recommendations.",
    "deep": "Give a deep, comprehensive analysis with specific data, emerging trends and strategic recommendations.",
}

_FENCE_RE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)

client: Optional[genai.Client] = None


def get_client() -> genai.Client:
    """
    Return the shared Generative AI client, creating it on first use.

    Uses Vertex AI when GOOGLE_GENAI_USE_VERTEXAI is true, otherwise GOOGLE_API_KEY.

    Raises:
        ProviderFailure: If no credentials are configured or the client cannot be built.
    """
    global client
    if client is not None:
        return client

    use_vertexai = os.getenv("GOOGLE_GENAI_USE_VERTEXAI", "").lower() == "true"
    project_id = os.getenv("GOOGLE_CLOUD_PROJECT")
    location = os.getenv("GOOGLE_CLOUD_LOCATION", "us-central1")
    api_key = os.getenv("GOOGLE_API_KEY")

    try:
        if use_vertexai:
            if not project_id:
                raise ValueError("GOOGLE_CLOUD_PROJECT is required when GOOGLE_GENAI_USE_VERTEXAI is true")
            client = genai.Client(vertexai=True, project=project_id, location=location)
            logger.info(f"Initialized Vertex AI client in {location}")
        elif api_key:
            client = genai.Client(api_key=api_key)
            logger.info("Initialized API key client")
        else:
            raise ValueError("Neither GOOGLE_API_KEY nor GOOGLE_CLOUD_PROJECT is configured")
    except ValueError as e:
        logger.error(f"Failed to initialize Google Generative AI client: {e}")
        raise ProviderFailure(f"Model client unavailable: {e}") from e
    return client


def _response_text(response: Any) -> Optional[str]:
    raw_text = getattr(response, "text", None)
    if not raw_text and getattr(response, "candidates", None):
        try:
            raw_text = response.candidates[0].content.parts[0].text
        except (IndexError, AttributeError) as e:
            logger.warning(f"Could not extract raw text from candidate parts: {e}")
            raw_text = None
    return raw_text


def _extract_json(raw_text: Optional[str]) -> Dict[str, Any]:
    """Strip Markdown fences and decode the outermost JSON object in a reply."""
    if not raw_text:
        raise ParseFailure("Model returned an empty reply", raw_text=raw_text)

    cleaned = _FENCE_RE.sub("", raw_text).strip()
    json_start = cleaned.find("{")
    json_end = cleaned.rfind("}")
    if json_start == -1 or json_end == -1 or json_start > json_end:
        raise ParseFailure("No JSON object found in model reply", raw_text=raw_text)

    try:
        data = json.loads(cleaned[json_start:json_end + 1])
    except json.JSONDecodeError as e:
        raise ParseFailure(f"Model reply is not valid JSON: {e}", raw_text=raw_text) from e
    if not isinstance(data, dict):
        raise ParseFailure("Model reply is not a JSON object", raw_text=raw_text)
    return data


def _is_not_apparel(data: Dict[str, Any]) -> bool:
    if data.get("is_apparel") is False:
        return True
    description = str(data.get("analysis_description", "")).strip().lower()
    return any(description.startswith(marker) for marker in NOT_APPAREL_MARKERS)


def _number(data: Dict[str, Any], key: str, raw_text: str) -> float:
    value = data.get(key)
    if isinstance(value, str):
        value = value.strip().replace(",", ".")
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ParseFailure(f"Model reply has a missing or non-numeric '{key}': {value!r}", raw_text=raw_text) from e


def parse_product_analysis(raw_text: Optional[str]) -> models.ProductAnalysis:
    """
    Parse the model's product reply into a ProductAnalysis.

    All three sub-scores and the three detected attributes must be present; a
    reply missing any of them is rejected as a whole.

    Raises:
        NotApparel: If the model reported that the photo is not a garment.
        ParseFailure: If the reply cannot be decoded or lacks a required field.
    """
    data = _extract_json(raw_text)
    if _is_not_apparel(data):
        raise NotApparel(str(data.get("reason") or "The image does not show a garment"))

    scores = {}
    for kind in models.TREND_KINDS:
        value = _number(data, f"{kind}_score", raw_text)
        clamped = max(0.0, min(100.0, value))
        if clamped != value:
            logger.warning(f"Model {kind}_score {value:g} is outside 0-100, clamped to {clamped:g}")
        scores[kind] = models.SubScore(
            kind=kind,
            value=clamped,
            reasoning=str(data.get(f"{kind}_reasoning") or ""),
        )

    try:
        return models.ProductAnalysis(
            attributes=models.ProductAttributes(
                detected_color=data.get("detected_color") or "",
                detected_fabric=data.get("detected_fabric") or "",
                detected_style=data.get("detected_style") or "",
            ),
            color_score=scores["color"],
            fabric_score=scores["fabric"],
            style_score=scores["style"],
            estimated_price=max(0.0, float(data.get("estimated_market_price") or 0)),
            estimated_production_cost=max(0.0, float(data.get("estimated_production_cost") or 0)),
            analysis_description=str(data.get("analysis_description") or ""),
            reason=str(data.get("reason") or ""),
            related_trend=str(data.get("related_trend") or ""),
            current_usage=str(data.get("current_usage") or ""),
            recommendation=str(data.get("recommendation") or ""),
            insights=[item for item in data.get("insights") or [] if isinstance(item, dict)],
        )
    except (ValidationError, TypeError, ValueError) as e:
        raise ParseFailure(f"Model reply failed validation: {e}", raw_text=raw_text) from e


def build_trend_summary(references: models.TrendReferenceSet) -> str:
    lines = ["CURRENT TRENDS TO COMPARE AGAINST:", "", "Trending colors:"]
    lines += [
        f"- {c.name} ({c.identifier}): {c.confidence:g}% confidence, {c.observed_appearances} appearances"
        for c in references.colors
    ]
    lines += ["", "Trending fabrics:"]
    lines += [f"- {f.name}: {f.identifier}, {f.observed_appearances} appearances" for f in references.fabrics]
    lines += ["", "Popular styles:"]
    lines += [f"- {s.name} ({s.identifier}): {s.observed_appearances} appearances" for s in references.styles]
    lines += ["", "DATA SOURCES:"]
    lines += [f"- {count.source}: {count.count} data points" for count in source_counts(references)]
    return "\n".join(lines)


BAND_LABELS = {
    Tier.FAMILY: "same family as a trend",
    Tier.NEUTRAL: "neutral / versatile",
    Tier.OFF_TREND: "off-trend",
    Tier.OPPOSED: "opposed to the trends",
}


def _range(low: float, high: float) -> str:
    return f"{low:g}" if low == high else f"{low:g}-{high:g}"


def _band_text(tier: Tier) -> str:
    bands = {kind: BANDS[kind][tier] for kind in models.TREND_KINDS}
    if len(set(bands.values())) == 1:
        return _range(*next(iter(bands.values())))
    return ", ".join(f"{_range(low, high)} ({kind})" for kind, (low, high) in bands.items())


def build_score_bands() -> str:
    """Scoring bands for the prompt, taken from the deterministic matcher's table."""
    exact = _band_text(Tier.EXACT)
    listed = BANDS["color"][Tier.FAMILY][1]
    lines = [f"- exact match with the top trend: {exact}; exact match with another listed trend: {listed:g}"]
    lines += [f"- {label}: {_band_text(tier)}" for tier, label in BAND_LABELS.items()]
    return "\n    ".join(lines)


def build_product_prompt(
    references: models.TrendReferenceSet,
    sku: Optional[str] = None,
    category: Optional[str] = None,
) -> str:
    header = "Analyse this garment and decide whether it is aligned with current fashion trends."
    details = "\n".join(line for line in (
        f"Category: {category}" if category else "",
        f"SKU: {sku}" if sku else "",
    ) if line)

    return f"""
    {header}
    {details}

    {build_trend_summary(references)}

    Score each aspect against the trends above on a 0-100 scale:
    {build_score_bands()}

    If the image does not show a piece of clothing, reply with
    {{"is_apparel": false, "analysis_description": "invalid image: not a garment", "reason": "<why>"}}.

    Otherwise reply ONLY with a JSON object in this format:
    {{
      "is_apparel": true,
      "analysis_description": "Visual description: colors, fabric, cut, style",
      "detected_color": "Color name + hex code (e.g. 'Navy Blue #1A3B5C')",
      "detected_fabric": "Identified fabric",
      "detected_style": "Detected cut / silhouette / style",
      "color_score": 0-100,
      "color_reasoning": "Which trend color it matches and why",
      "fabric_score": 0-100,
      "fabric_reasoning": "Which trend fabric it matches and why",
      "style_score": 0-100,
      "style_reasoning": "Which trend style it matches and why",
      "reason": "Short explanation of why the piece is or is not trending",
      "related_trend": "Related aesthetic or movement (e.g. Y2K, quiet luxury, athleisure)",
      "current_usage": "Where the trend shows up today",
      "recommendation": "How to use, combine or adapt the piece",
      "estimated_market_price": 89.90,
      "estimated_production_cost": 35.50,
      "insights": [
        {{"type": "positive/negative/improvement", "title": "...", "description": "...", "impact": "high/medium/low"}}
      ]
    }}
    """


async def _generate(contents: Any, config: types.GenerateContentConfig, context: str) -> str:
    try:
        response = await asyncio.wait_for(
            get_client().aio.models.generate_content(model=DEFAULT_MODEL, contents=contents, config=config),
            timeout=LLM_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError as e:
        logger.error(f"Model call timed out after {LLM_TIMEOUT_SECONDS}s ({context})")
        raise ProviderFailure(f"Model call timed out after {LLM_TIMEOUT_SECONDS}s") from e
    except (genai_errors.APIError, GoogleAPIError) as e:
        logger.error(f"Google API error ({context}): {e}")
        raise ProviderFailure(f"Model call failed: {e}") from e
    except httpx.HTTPError as e:
        logger.error(f"Transport error calling the model ({context}): {e}")
        raise ProviderFailure(f"Model call failed: {e}") from e

    raw_text = _response_text(response)
    logger.debug(f"Raw model reply ({context}): {raw_text}")
    return raw_text


async def analyze_product_image(
    image_bytes: bytes,
    mime_type: str,
    references: models.TrendReferenceSet,
    sku: Optional[str] = None,
    category: Optional[str] = None,
) -> models.ProductAnalysis:
    """
    Ask the vision model to analyse a product photo against the trend references.

    The call is pinned (temperature 0, seed derived from the image hash) so the
    same photo gets the same reply as far as the provider is deterministic.

    Raises:
        ProviderFailure: On API errors or timeouts.
        ParseFailure: If the reply cannot be parsed.
        NotApparel: If the photo is not a garment.
    """
    image_hash = compute_image_hash(image_bytes)
    config = types.GenerateContentConfig(
        temperature=ANALYSIS_TEMPERATURE,
        seed=int(image_hash[:7], 16),
        max_output_tokens=DEFAULT_MAX_OUTPUT_TOKENS,
    )
    contents = [
        types.Part.from_bytes(data=image_bytes, mime_type=mime_type),
        build_product_prompt(references, sku=sku, category=category),
    ]

    logger.info(f"Product analysis request - model: {DEFAULT_MODEL}, image: {image_hash[:16]}")
    raw_text = await _generate(contents, config, context=f"product {image_hash[:16]}")
    try:
        return parse_product_analysis(raw_text)
    except ParseFailure:
        logger.error(f"Could not parse product analysis for {image_hash[:16]}: {raw_text}")
        raise


def _trend_items(data: Dict[str, Any], key: str) -> List[Dict[str, Any]]:
    items = data.get(key) or []
    if not isinstance(items, list):
        raise ParseFailure(f"'{key}' must be a list")
    return [item for item in items if isinstance(item, dict) and item.get("name")]


def _sources(item: Dict[str, Any]) -> frozenset:
    sources = item.get("sources") or []
    # A lone source name sometimes comes back as a bare string
    if isinstance(sources, str):
        sources = [sources]
    if not isinstance(sources, list):
        raise ParseFailure(f"Sources of '{item.get('name')}' must be a list of names: {sources!r}")
    return frozenset(str(source).strip() for source in sources if str(source).strip())


def _provenance(item: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "observed_appearances": int(item.get("search_appearances") or item.get("appearances") or 0),
        "sources": _sources(item),
    }


def parse_trend_references(raw_text: Optional[str]) -> models.TrendAnalysisResponse:
    """
    Parse the model's trend research reply into a reference set.

    Raises:
        ParseFailure: If the reply cannot be decoded or an entry is malformed.
    """
    data = _extract_json(raw_text)
    try:
        colors = [
            models.TrendReference(
                kind="color",
                name=item["name"],
                identifier=str(item.get("hex") or ""),
                confidence=item.get("confidence", 50),
                **_provenance(item),
            )
            for item in _trend_items(data, "trending_colors")
        ]
        fabrics = [
            models.TrendReference(
                kind="fabric",
                name=item["name"],
                identifier=str(item.get("trend") or ""),
                confidence=item.get("trend") or 50,
                **_provenance(item),
            )
            for item in _trend_items(data, "trending_fabrics")
        ]
        styles = [
            models.TrendReference(
                kind="style",
                name=item["name"],
                identifier=str(item.get("popularity") or ""),
                confidence=item.get("popularity") or 50,
                **_provenance(item),
            )
            for item in _trend_items(data, "trending_models")
        ]
        references = models.TrendReferenceSet(colors=colors, fabrics=fabrics, styles=styles)
    except (ValidationError, TypeError, ValueError) as e:
        raise ParseFailure(f"Trend reply failed validation: {e}", raw_text=raw_text) from e

    return models.TrendAnalysisResponse(
        trend_references=references,
        market_insights=[str(item) for item in data.get("market_insights") or []],
        recommendations=[str(item) for item in data.get("recommendations") or []],
        source_counts=source_counts(references),
    )


def build_trend_prompt(request: models.TrendAnalysisRequest) -> str:
    focus_areas = []
    if request.focus_colors:
        focus_areas.append("colors and color palettes")
    if request.focus_fabrics:
        focus_areas.append("fabrics and materials")
    if request.focus_models:
        focus_areas.append("cuts, silhouettes and models")

    return f"""
    You are a fashion trend analyst with access to current market data (Google Trends,
    Instagram and TikTok, recent international collections, WGSN reports, Zara / H&M /
    Shein marketplaces, consumer behaviour).

    Focus on: {", ".join(focus_areas) or "the overall market"}.
    {DEPTH_INSTRUCTIONS[request.analysis_depth]}

    Analyse the current trends for a "{request.collection_type}" collection named "{request.collection_name}".

    Reply ONLY with a JSON object in this format:
    {{
      "trending_colors": [
        {{"name": "Color name", "hex": "#HEXCODE", "confidence": 95, "reason": "Why it is trending", "sources": ["..."], "search_appearances": 0}}
      ],
      "trending_fabrics": [
        {{"name": "Fabric name", "trend": "+X%", "reason": "Why it is growing", "sources": ["..."], "search_appearances": 0}}
      ],
      "trending_models": [
        {{"name": "Style", "popularity": "high/medium", "description": "Short description", "sources": ["..."], "search_appearances": 0}}
      ],
      "market_insights": ["Insight about the current market"],
      "recommendations": ["Specific recommendation for the collection"]
    }}
    """


async def analyze_trends(request: models.TrendAnalysisRequest) -> models.TrendAnalysisResponse:
    """
    Research the trending colors, fabrics and styles for a collection.

    Raises:
        ProviderFailure: On API errors or timeouts.
        ParseFailure: If the reply cannot be parsed.
    """
    config = types.GenerateContentConfig(
        temperature=TREND_TEMPERATURE,
        max_output_tokens=DEFAULT_MAX_OUTPUT_TOKENS,
    )
    context = f"trends {request.collection_type}/{request.collection_name}"
    logger.info(f"Trend analysis request - model: {DEFAULT_MODEL}, depth: {request.analysis_depth}")
    raw_text = await _generate(build_trend_prompt(request), config, context=context)
    try:
        return parse_trend_references(raw_text)
    except ParseFailure:
        logger.error(f"Could not parse trend analysis ({context}): {raw_text}")
        raise
