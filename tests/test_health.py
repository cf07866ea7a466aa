"""Health and readiness probes of the orchestration service."""

from fastapi.testclient import TestClient

from app.config import OrchestratorSettings
from app.main import create_app


def test_health_returns_service_status(client) -> None:
    """/health should surface the service identifier and the state backend."""

    response = client.get("/health")

    assert response.status_code == 200
    payload = response.json()
    assert payload["service"] == "genflow-orchestrator-test"
    assert payload["status"] == "ok"
    assert payload["state_backend"] == "memory"


def test_health_reports_redis_backend() -> None:
    settings = OrchestratorSettings(redis_url="redis://localhost:6379/0")

    response = TestClient(create_app(settings)).get("/health")

    assert response.json()["state_backend"] == "redis"


def test_ready_endpoint(client) -> None:
    response = client.get("/ready")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ready"
    assert payload["orchestration_ready"] is True
    assert payload["redis_configured"] is False


def test_routers_are_mounted(app) -> None:
    paths = {getattr(route, "path", None) for route in app.routes}

    assert "/api/v1/workflows/create" in paths
    assert "/api/v1/workflows/runs/{run_id}/status" in paths
    assert "/api/v1/providers/health" in paths
