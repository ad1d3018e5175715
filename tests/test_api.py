"""
HTTP endpoint tests.

Database-backed dependencies are overridden with in-memory implementations,
and the model calls are mocked.
"""

import base64
import io
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from google.genai import errors as genai_errors
from PIL import Image

from api.main import app, get_analysis_service, get_embedding_cache, get_embedding_service, get_product_repository
from fashion_core.errors import NotApparel, ProviderFailure
from fashion_core.models import (
    ProductAnalysis,
    ProductAttributes,
    ProductSummary,
    SubScore,
    TrendAnalysisResponse,
)
from src.analysis import AnalysisService
from src.similarity import EmbeddingService

VECTOR = [0.1, 0.2, 0.3, 0.4]

REFERENCES = {
    "colors": [{"name": "Butter Yellow", "identifier": "#F8E38C", "confidence": 95}],
    "fabrics": [{"name": "Linen", "identifier": "+35%", "confidence": "+35%"}],
    "styles": [{"name": "Alfaiataria", "identifier": "alta", "confidence": "alta"}],
}

ATTRIBUTES = {"detected_color": "Butter Yellow", "detected_fabric": "Linen", "detected_style": "Alfaiataria"}


def _png_base64() -> str:
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), "yellow").save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode()


@pytest.fixture
def analyzer() -> AsyncMock:
    return AsyncMock(return_value=ProductAnalysis(
        attributes=ProductAttributes(**ATTRIBUTES),
        color_score=SubScore(kind="color", value=90),
        fabric_score=SubScore(kind="fabric", value=75),
        style_score=SubScore(kind="style", value=80),
        estimated_price=100.0,
        estimated_production_cost=40.0,
    ))


@pytest.fixture
def client(cache, repository, analyzer):
    embedder = AsyncMock(return_value=VECTOR)
    app.dependency_overrides[get_embedding_cache] = lambda: cache
    app.dependency_overrides[get_product_repository] = lambda: repository
    app.dependency_overrides[get_embedding_service] = lambda: EmbeddingService(cache, repository, embedder=embedder)
    app.dependency_overrides[get_analysis_service] = lambda: AnalysisService(
        repository, cache, analyzer=analyzer, embedder=embedder
    )
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestHealth:

    def test_health_check(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestScoreEndpoint:

    def test_score_from_attributes(self, client):
        response = client.post("/score", json={
            "product_attributes": ATTRIBUTES,
            "trend_references": REFERENCES,
            "estimated_price": 100.0,
            "estimated_production_cost": 40.0,
        })
        assert response.status_code == 200
        body = response.json()
        assert body["demand_score"] == 100
        assert body["risk_tier"] == "Low"
        assert body["trend_level"] == "High"
        assert body["recommended_quantity"] == 200
        assert [score["kind"] for score in body["sub_scores"]] == ["color", "fabric", "style"]

    def test_score_from_precomputed_sub_scores(self, client):
        response = client.post("/score", json={
            "product_attributes": ATTRIBUTES,
            "sub_scores": {"color": 90, "fabric": 75, "style": 80},
        })
        assert response.status_code == 200
        assert response.json()["demand_score"] == 82

    def test_empty_references_are_rejected(self, client):
        response = client.post("/score", json={"product_attributes": ATTRIBUTES})
        assert response.status_code == 422
        assert response.json()["code"] == "invalid_input"

    def test_negative_price_is_rejected(self, client):
        response = client.post("/score", json={
            "product_attributes": ATTRIBUTES,
            "trend_references": REFERENCES,
            "estimated_price": -5,
        })
        assert response.status_code == 422
        assert response.json()["code"] == "invalid_input"


class TestAnalyzeEndpoint:

    def test_analyze(self, client, analyzer):
        response = client.post("/analyze", json={
            "image_base64": _png_base64(),
            "mime_type": "image/png",
            "trend_references": REFERENCES,
            "sku": "BLZ-01",
        })
        assert response.status_code == 200
        body = response.json()
        assert body["demand_score"] == 82
        assert body["reused"] is False
        assert body["embedding_status"] == "created"
        analyzer.assert_awaited_once()

    def test_not_apparel(self, client, analyzer):
        analyzer.side_effect = NotApparel("The photo shows a car")
        response = client.post("/analyze", json={"image_base64": _png_base64(), "trend_references": REFERENCES})
        assert response.status_code == 422
        assert response.json() == {"error": "The photo shows a car", "code": "not_apparel"}

    def test_provider_failure(self, client, analyzer):
        analyzer.side_effect = ProviderFailure("Model call timed out after 60.0s")
        response = client.post("/analyze", json={"image_base64": _png_base64(), "trend_references": REFERENCES})
        assert response.status_code == 503
        assert response.json()["code"] == "provider_failure"


class TestEmbedAndSearchEndpoints:

    def test_embed_then_search(self, client, repository):
        repository.add(ProductSummary(product_id="p1"))
        repository.add(ProductSummary(product_id="p2"))
        image_base64 = _png_base64()

        first = client.post("/embed", json={"image_base64": image_base64, "product_id": "p1"})
        second = client.post("/embed", json={"image_base64": image_base64, "product_id": "p2"})
        assert first.status_code == second.status_code == 200
        assert first.json()["cached"] is False
        assert second.json()["cached"] is True
        assert first.json()["embedding_id"] == second.json()["embedding_id"]

        response = client.post("/search-similar", json={"product_id": "p1", "limit": 5})
        assert response.status_code == 200
        body = response.json()
        assert body["source_product"]["product_id"] == "p1"
        assert [result["product_id"] for result in body["similar_products"]] == ["p2"]

    def test_embed_without_image(self, client):
        response = client.post("/embed", json={})
        assert response.status_code == 422
        assert response.json()["code"] == "invalid_input"

    def test_search_without_embedding(self, client, repository):
        repository.add(ProductSummary(product_id="pending"))
        response = client.post("/search-similar", json={"product_id": "pending"})
        assert response.status_code == 409
        assert response.json()["code"] == "no_embedding"

    def test_search_unknown_product(self, client):
        response = client.post("/search-similar", json={"product_id": "missing"})
        assert response.status_code == 404
        assert response.json()["code"] == "product_not_found"

    def test_search_rejects_zero_limit(self, client):
        response = client.post("/search-similar", json={"product_id": "p1", "limit": 0})
        assert response.status_code == 422
        assert response.json()["code"] == "invalid_input"


class TestTrendsEndpoint:

    def test_trends(self, client):
        result = TrendAnalysisResponse.model_validate({
            "trend_references": REFERENCES,
            "market_insights": ["Linen keeps growing"],
        })
        with patch("fashion_core.llm.analyze_trends", AsyncMock(return_value=result)) as analyze_trends:
            response = client.post("/trends", json={"collection_type": "Verão", "collection_name": "Resort"})

        assert response.status_code == 200
        assert response.json()["trend_references"]["colors"][0]["name"] == "Butter Yellow"
        assert analyze_trends.await_args.args[0].analysis_depth == "standard"

    def test_model_server_error_is_a_provider_failure(self, client):
        model_client = MagicMock()
        model_client.aio.models.generate_content = AsyncMock(side_effect=genai_errors.ServerError(
            503, {"error": {"code": 503, "message": "The model is overloaded", "status": "UNAVAILABLE"}}
        ))
        with patch("fashion_core.llm.client", model_client):
            response = client.post("/trends", json={"collection_type": "Verão", "collection_name": "Resort"})

        assert response.status_code == 503
        assert response.json()["code"] == "provider_failure"
