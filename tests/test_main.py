"""
Tests for Main Application.

Exercises the app without its lifespan: no database, no providers.
"""

from unittest.mock import AsyncMock, MagicMock

from fastapi import FastAPI
from fastapi.testclient import TestClient

from clipledger.api.dependencies import get_orchestrator


class TestRootEndpoints:
    """Tests for root and metrics endpoints."""

    def test_root(self, app: FastAPI):
        response = TestClient(app).get("/")

        assert response.status_code == 200
        assert response.json()["status"] == "running"
        assert response.json()["service"] == "ClipLedger API"

    def test_metrics_exposed(self, app: FastAPI):
        client = TestClient(app)
        client.get("/")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "clipledger_http_requests_total" in response.text


class TestValidationHandler:
    """Tests for the request validation error handler."""

    def test_validation_errors_are_serializable(
        self, app: FastAPI, authenticated_client: TestClient
    ):
        """Model validator errors carry exception objects in ctx; they must render."""
        orchestrator = MagicMock(start=AsyncMock())
        app.dependency_overrides[get_orchestrator] = lambda: orchestrator

        response = authenticated_client.post(
            "/v1/generations",
            json={"provider": "veo", "mode": "image-to-video", "prompt": "x"},
        )

        assert response.status_code == 422
        detail = response.json()["detail"]
        assert isinstance(detail, list)
        assert any("image" in error["msg"] for error in detail)
        orchestrator.start.assert_not_awaited()
