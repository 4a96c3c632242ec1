"""
API Tests
=========
Tests for LLM Governor REST API endpoints.
"""

import json
from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from llm_governor.errors import BackendError, ErrorEnvelope
from llm_governor.main import create_app
from llm_governor.schemas.providers import BackendDescriptor, ModelSummary, ProtocolFamily
from llm_governor.services.dispatcher import Dispatcher


@pytest.fixture
def client(context, fake_backend) -> Iterator[TestClient]:
    """Test client with a dispatcher bound to the fake backend."""
    app = create_app(context, dispatcher=Dispatcher(context, backend=fake_backend))
    with TestClient(app) as test_client:
        yield test_client


def generate_body(text: str = "Explain decorators") -> dict:
    return {"messages": [{"role": "user", "content": text}]}


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    def test_health_check(self, client: TestClient):
        """Test liveness probe."""
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert "version" in data

    def test_readiness(self, client: TestClient):
        """Test readiness reports the bound dispatcher and running sweeper."""
        response = client.get("/ready")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["dispatcher_ready"] is True
        assert data["model"] == "anthropic/claude-sonnet-4"
        assert data["fallback_active"] is False
        assert data["cache_enabled"] is True
        assert data["cache_sweeper_running"] is True
        assert data["cache_size"] == 0

    def test_readiness_before_first_request(self, context):
        with TestClient(create_app(context)) as client:
            data = client.get("/ready").json()

        assert data["dispatcher_ready"] is False
        assert data["model"] is None
        assert data["rate_limit_tokens"] > 0


class TestProviderEndpoints:
    """Tests for provider endpoints."""

    def test_list_providers(self, client: TestClient):
        response = client.get("/providers")
        assert response.status_code == 200
        ids = [p["id"] for p in response.json()]
        assert "ollama" in ids
        assert "openrouter" in ids

    def test_get_provider_by_alias(self, client: TestClient):
        response = client.get("/providers/or")
        assert response.status_code == 200
        data = response.json()
        assert data["id"] == "openrouter"
        assert data["protocol"] == "direct-completion"

    def test_unknown_provider(self, client: TestClient):
        response = client.get("/providers/nope")
        assert response.status_code == 404

    def test_availability(self, client: TestClient):
        response = client.get("/providers/openai/available")
        assert response.status_code == 200
        assert response.json() == {"id": "openai", "available": False}

    def test_static_models(self, client: TestClient, context):
        context.registry.add_custom(
            BackendDescriptor(
                id="corp",
                name="Corp",
                protocol=ProtocolFamily.DIRECT_COMPLETION,
                base_url="https://llm.corp.example/v1",
                models=(ModelSummary(id="corp-coder", name="Corp Coder", provider="corp"),),
            )
        )

        response = client.get("/providers/corp/models")

        assert response.status_code == 200
        assert [m["id"] for m in response.json()] == ["corp-coder"]


class TestPricingEndpoints:
    """Tests for pricing endpoints."""

    def test_known_model(self, client: TestClient):
        response = client.get("/pricing/anthropic/claude-sonnet-4")
        assert response.status_code == 200
        data = response.json()
        assert data["model"] == "anthropic/claude-sonnet-4"
        assert data["known"] is True
        assert float(data["prompt_price_per_million"]) == 3.0
        assert data["cost_tier"] == "expensive"
        assert data["is_free"] is False

    def test_free_model(self, client: TestClient):
        data = client.get("/pricing/google/gemini-2.0-flash-exp:free").json()
        assert data["is_free"] is True
        assert data["cost_tier"] == "free"

    def test_unknown_model_reports_fallback(self, client: TestClient):
        data = client.get("/pricing/mystery-model-x").json()
        assert data["known"] is False
        assert float(data["prompt_price_per_million"]) == 15.0
        assert data["is_expensive"] is True


class TestGenerateEndpoint:
    """Tests for governed generation."""

    def test_generate(self, client: TestClient, fake_backend):
        response = client.post("/generate", json=generate_body())
        assert response.status_code == 200
        data = response.json()
        assert data["text"] == "Hello world"
        assert data["cached"] is False
        assert data["usage"]["prompt_tokens"] == 10

        again = client.post("/generate", json=generate_body())
        assert again.json()["cached"] is True
        assert len(fake_backend.calls) == 1

    def test_invalid_request(self, client: TestClient):
        response = client.post("/generate", json={"messages": []})
        assert response.status_code == 422

    def test_budget_enforced(self, make_context, fake_backend):
        context = make_context(budget_session_limit=0.0001)
        app = create_app(context, dispatcher=Dispatcher(context, backend=fake_backend))

        with TestClient(app) as client:
            response = client.post("/generate?enforce_budget=true", json=generate_body())

        assert response.status_code == 402
        assert "budget exceeded" in response.json()["detail"]
        assert fake_backend.calls == []

    def test_budget_estimate_prices_local_models_as_free(self, make_context, fake_backend):
        """Test a local backend model passes a tight budget instead of paying fallback rates."""
        context = make_context(
            provider="lmstudio",
            target_model="qwen2.5-coder-7b-instruct",
            budget_session_limit=0.0001,
        )
        app = create_app(context, dispatcher=Dispatcher(context, backend=fake_backend))

        with TestClient(app) as client:
            response = client.post("/generate?enforce_budget=true", json=generate_body())

        assert response.status_code == 200
        assert fake_backend.calls == ["qwen2.5-coder-7b-instruct"]

    def test_auth_error_maps_to_401(self, make_context, make_backend):
        body = json.dumps({"error": {"code": 401, "message": "Invalid API key"}})
        backend = make_backend(errors=[BackendError(ErrorEnvelope.from_response(401, body))])
        context = make_context()
        app = create_app(context, dispatcher=Dispatcher(context, backend=backend))

        with TestClient(app) as client:
            response = client.post("/generate", json=generate_body())

        assert response.status_code == 401
        assert response.json()["kind"] == "authentication"

    def test_backend_error_maps_to_502(self, make_context, make_backend):
        backend = make_backend(errors=[BackendError(ErrorEnvelope.from_response(500, "boom"))])
        context = make_context()
        app = create_app(context, dispatcher=Dispatcher(context, backend=backend))

        with TestClient(app) as client:
            response = client.post("/generate", json=generate_body())

        assert response.status_code == 502

    def test_missing_credential_maps_to_400(self, make_context):
        context = make_context(api_key=None)

        with TestClient(create_app(context)) as client:
            response = client.post("/generate", json=generate_body())

        assert response.status_code == 400
        assert "OPENROUTER_API_KEY" in response.json()["detail"]


class TestUsageEndpoints:
    """Tests for usage endpoints."""

    def test_session_usage(self, client: TestClient):
        client.post("/generate", json=generate_body())

        response = client.get("/usage/session")

        assert response.status_code == 200
        data = response.json()
        assert data["request_count"] == 1
        assert data["total_tokens"] == 15
        assert data["by_model"][0]["model"] == "anthropic/claude-sonnet-4"
        assert data["summary"].startswith("Session Cost Summary")

    def test_budget_check(self, client: TestClient):
        response = client.get("/usage/budget", params={"estimated_cost": "5"})

        assert response.status_code == 200
        data = response.json()
        assert data["would_exceed"] is True
        assert data["reason"] == "session"

    def test_budget_check_within_limit(self, client: TestClient):
        data = client.get("/usage/budget", params={"estimated_cost": "0.01"}).json()
        assert data["would_exceed"] is False

    def test_negative_estimate_rejected(self, client: TestClient):
        response = client.get("/usage/budget", params={"estimated_cost": "-1"})
        assert response.status_code == 422

    def test_recommendations(self, client: TestClient):
        response = client.get("/usage/recommendations")
        assert response.status_code == 200
        assert response.json() == {"recommendations": []}
