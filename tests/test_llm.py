"""
Tests for the Gemini integration: reply parsing and the pinned product analysis call.

The model client is always mocked; no test talks to the real API.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from google.api_core.exceptions import GoogleAPIError
from google.genai import errors as genai_errors

from fashion_core import llm, models
from fashion_core.embedding_cache import compute_image_hash
from fashion_core.errors import NotApparel, ParseFailure, ProviderFailure
from fashion_core.trend_matching import BANDS

IMAGE = b"\x89PNG\r\n\x1a\n fake product photo"

PRODUCT_REPLY = {
    "is_apparel": True,
    "analysis_description": "Butter yellow linen blazer with a relaxed cut",
    "detected_color": "Butter Yellow #F8E38C",
    "detected_fabric": "Linen",
    "detected_style": "Oversized blazer",
    "color_score": 95,
    "color_reasoning": "Exact match with the top trend color",
    "fabric_score": "85,5",
    "fabric_reasoning": "Linen is a top trending fabric",
    "style_score": 78,
    "style_reasoning": "Tailoring is popular",
    "reason": "Strong alignment with summer trends.",
    "related_trend": "Quiet luxury",
    "estimated_market_price": 289.9,
    "estimated_production_cost": "95.5",
    "insights": [
        {"type": "positive", "title": "Color", "description": "On trend", "impact": "high"},
        "not an insight",
    ],
}

TREND_REPLY = {
    "trending_colors": [
        {"name": "Butter Yellow", "hex": "#F8E38C", "confidence": 95,
         "sources": ["Instagram", "WGSN"], "search_appearances": 120},
        {"hex": "#000000", "confidence": 10},
    ],
    "trending_fabrics": [
        {"name": "Linen", "trend": "+35%", "sources": ["Google Trends"], "search_appearances": 90},
    ],
    "trending_models": [
        {"name": "Wide leg", "popularity": "alta", "sources": ["TikTok"], "search_appearances": 45},
    ],
    "market_insights": ["Summer collections lean on natural fibres"],
    "recommendations": ["Prioritise linen pieces"],
}


def _fenced(data) -> str:
    return f"Here is the analysis:\n```json\n{json.dumps(data)}\n```"


def _client_returning(text: str) -> MagicMock:
    mock_client = MagicMock()
    mock_client.aio.models.generate_content = AsyncMock(return_value=MagicMock(text=text, candidates=[]))
    return mock_client


class TestParseProductAnalysis:
    """Tests for turning the model's product reply into a ProductAnalysis."""

    def test_parses_fenced_reply(self):
        analysis = llm.parse_product_analysis(_fenced(PRODUCT_REPLY))

        assert analysis.attributes.detected_fabric == "Linen"
        assert analysis.color_score == models.SubScore(
            kind="color", value=95, reasoning="Exact match with the top trend color"
        )
        assert analysis.fabric_score.value == 85.5
        assert analysis.style_score.value == 78
        assert analysis.estimated_price == pytest.approx(289.9)
        assert analysis.estimated_production_cost == pytest.approx(95.5)
        assert [insight.title for insight in analysis.insights] == ["Color"]

    def test_out_of_range_score_is_clamped_with_a_warning(self):
        reply = {**PRODUCT_REPLY, "style_score": 120}
        with patch.object(llm.logger, "warning") as warning:
            analysis = llm.parse_product_analysis(json.dumps(reply))

        assert analysis.style_score.value == 100.0
        warning.assert_called_once()
        assert "style_score 120" in warning.call_args.args[0]

    def test_in_range_scores_do_not_warn(self):
        with patch.object(llm.logger, "warning") as warning:
            llm.parse_product_analysis(json.dumps(PRODUCT_REPLY))
        warning.assert_not_called()

    @pytest.mark.parametrize("missing", ["color_score", "fabric_score", "style_score"])
    def test_missing_sub_score_is_rejected(self, missing):
        """A reply lacking any one of the three sub-scores never produces a partial analysis."""
        reply = {key: value for key, value in PRODUCT_REPLY.items() if key != missing}
        with pytest.raises(ParseFailure, match=missing):
            llm.parse_product_analysis(json.dumps(reply))

    def test_missing_attribute_is_rejected(self):
        reply = {**PRODUCT_REPLY, "detected_color": ""}
        with pytest.raises(ParseFailure):
            llm.parse_product_analysis(json.dumps(reply))

    @pytest.mark.parametrize(
        "reply",
        [
            {"is_apparel": False, "reason": "The photo shows a car"},
            {"analysis_description": "Imagem inválida: não é uma peça de roupa", "reason": "Paisagem"},
        ],
    )
    def test_not_apparel(self, reply):
        with pytest.raises(NotApparel) as exc_info:
            llm.parse_product_analysis(json.dumps(reply))
        assert exc_info.value.code == "not_apparel"

    @pytest.mark.parametrize("raw_text", ["", None, "I cannot help with that.", "{not json}", "[1, 2]"])
    def test_unparseable_reply(self, raw_text):
        with pytest.raises(ParseFailure):
            llm.parse_product_analysis(raw_text)


class TestParseTrendReferences:
    """Tests for turning the trend research reply into a reference set."""

    def test_parses_all_kinds(self):
        response = llm.parse_trend_references(_fenced(TREND_REPLY))
        references = response.trend_references

        assert [c.name for c in references.colors] == ["Butter Yellow"]
        assert references.colors[0].identifier == "#F8E38C"
        assert references.colors[0].confidence == 95.0
        assert references.fabrics[0].confidence == 35.0
        assert references.fabrics[0].identifier == "+35%"
        assert references.styles[0].confidence == 90.0
        assert references.styles[0].sources == frozenset({"TikTok"})
        assert response.market_insights == ["Summer collections lean on natural fibres"]
        assert response.recommendations == ["Prioritise linen pieces"]

    def test_source_counts_are_aggregated(self):
        response = llm.parse_trend_references(json.dumps(TREND_REPLY))
        assert [(count.source, count.count) for count in response.source_counts] == [
            ("Instagram", 120),
            ("WGSN", 120),
            ("Google Trends", 90),
            ("TikTok", 45),
        ]

    def test_single_source_string_is_one_source(self):
        color = {"name": "Sage", "hex": "#9CAF88", "sources": "Instagram", "search_appearances": 12}
        reply = {**TREND_REPLY, "trending_colors": [color]}

        response = llm.parse_trend_references(json.dumps(reply))

        assert response.trend_references.colors[0].sources == frozenset({"Instagram"})
        assert ("Instagram", 12) in [(count.source, count.count) for count in response.source_counts]

    def test_non_list_sources_are_rejected(self):
        color = {"name": "Sage", "hex": "#9CAF88", "sources": {"Instagram": 3}}
        reply = {**TREND_REPLY, "trending_colors": [color]}
        with pytest.raises(ParseFailure):
            llm.parse_trend_references(json.dumps(reply))

    def test_malformed_entry_is_rejected(self):
        reply = {**TREND_REPLY, "trending_colors": [{"name": "Sage", "confidence": "unknown"}]}
        with pytest.raises(ParseFailure):
            llm.parse_trend_references(json.dumps(reply))

    def test_non_list_section_is_rejected(self):
        reply = {**TREND_REPLY, "trending_fabrics": "linen"}
        with pytest.raises(ParseFailure):
            llm.parse_trend_references(json.dumps(reply))


class TestProductPrompt:

    def test_prompt_bands_follow_matcher_bands(self, trend_references):
        prompt = llm.build_product_prompt(trend_references)
        lines = {label: next(line for line in prompt.splitlines() if f"- {label}:" in line)
                 for label in llm.BAND_LABELS.values()}

        for tier, label in llm.BAND_LABELS.items():
            for kind in models.TREND_KINDS:
                low, high = BANDS[kind][tier]
                assert f"{low:g}-{high:g}" in lines[label]

    def test_family_and_off_trend_bands(self, trend_references):
        prompt = llm.build_product_prompt(trend_references)
        assert "same family as a trend: 80-90" in prompt
        assert "off-trend: 20-50" in prompt
        assert "neutral / versatile: 50-70 (color), 50-65 (fabric), 60-70 (style)" in prompt
        assert "75-85" not in prompt


class TestAnalyzeProductImage:
    """Tests for the product analysis call against a mocked client."""

    @pytest.mark.asyncio
    async def test_call_is_pinned(self, trend_references):
        """Temperature 0 and a seed derived from the image hash."""
        mock_client = _client_returning(_fenced(PRODUCT_REPLY))

        with patch("fashion_core.llm.client", mock_client):
            analysis = await llm.analyze_product_image(
                IMAGE, "image/png", trend_references, sku="BLZ-01", category="Blazers"
            )

        assert analysis.color_score.value == 95
        call = mock_client.aio.models.generate_content.await_args
        config = call.kwargs["config"]
        assert config.temperature == 0.0
        assert config.seed == int(compute_image_hash(IMAGE)[:7], 16)
        assert call.kwargs["model"] == llm.DEFAULT_MODEL

        prompt = call.kwargs["contents"][1]
        assert "Butter Yellow" in prompt
        assert "SKU: BLZ-01" in prompt
        assert "Category: Blazers" in prompt

    @pytest.mark.asyncio
    async def test_same_image_gets_same_seed(self, trend_references):
        mock_client = _client_returning(json.dumps(PRODUCT_REPLY))

        with patch("fashion_core.llm.client", mock_client):
            await llm.analyze_product_image(IMAGE, "image/png", trend_references)
            await llm.analyze_product_image(IMAGE, "image/png", trend_references)

        seeds = [call.kwargs["config"].seed for call in mock_client.aio.models.generate_content.await_args_list]
        assert seeds[0] == seeds[1]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            genai_errors.ServerError(503, {"error": {"code": 503, "message": "overloaded", "status": "UNAVAILABLE"}}),
            genai_errors.ClientError(429, {"error": {"code": 429, "message": "quota", "status": "RESOURCE_EXHAUSTED"}}),
            httpx.ConnectError("connection refused"),
            GoogleAPIError("quota exceeded"),
        ],
        ids=["server_error", "rate_limited", "transport", "api_core"],
    )
    async def test_api_error_is_a_provider_failure(self, trend_references, error):
        mock_client = MagicMock()
        mock_client.aio.models.generate_content = AsyncMock(side_effect=error)

        with patch("fashion_core.llm.client", mock_client):
            with pytest.raises(ProviderFailure):
                await llm.analyze_product_image(IMAGE, "image/png", trend_references)

    @pytest.mark.asyncio
    async def test_timeout_is_a_provider_failure(self, trend_references):
        async def hanging(**kwargs):
            await asyncio.sleep(10)

        mock_client = MagicMock()
        mock_client.aio.models.generate_content = AsyncMock(side_effect=hanging)

        with patch("fashion_core.llm.client", mock_client), patch("fashion_core.llm.LLM_TIMEOUT_SECONDS", 0.01):
            with pytest.raises(ProviderFailure, match="timed out"):
                await llm.analyze_product_image(IMAGE, "image/png", trend_references)

    @pytest.mark.asyncio
    async def test_unparseable_reply_propagates(self, trend_references):
        with patch("fashion_core.llm.client", _client_returning("Sorry, I can't analyse this.")):
            with pytest.raises(ParseFailure):
                await llm.analyze_product_image(IMAGE, "image/png", trend_references)


class TestAnalyzeTrends:

    @pytest.mark.asyncio
    async def test_trend_research(self):
        mock_client = _client_returning(_fenced(TREND_REPLY))
        request = models.TrendAnalysisRequest(
            collection_type="Verão", collection_name="Resort 2026", focus_fabrics=False, analysis_depth="quick"
        )

        with patch("fashion_core.llm.client", mock_client):
            response = await llm.analyze_trends(request)

        assert response.trend_references.top("color").name == "Butter Yellow"
        call = mock_client.aio.models.generate_content.await_args
        assert call.kwargs["config"].temperature == llm.TREND_TEMPERATURE
        assert "Resort 2026" in call.kwargs["contents"]
        assert "fabrics and materials" not in call.kwargs["contents"]
        assert llm.DEPTH_INSTRUCTIONS["quick"] in call.kwargs["contents"]
