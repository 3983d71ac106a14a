from __future__ import annotations

from fastapi.testclient import TestClient


def test_health(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["x-request-id"]


def test_request_id_is_echoed(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Request-ID": "trace-42"})
    assert response.headers["x-request-id"] == "trace-42"


def test_swagger_page_loads(client: TestClient) -> None:
    response = client.get("/swagger")
    assert response.status_code == 200
    assert "text/html" in response.headers["content-type"]


def test_openapi_schema_describes_gateway(client: TestClient) -> None:
    response = client.get("/openapi.json")
    assert response.status_code == 200
    body = response.json()
    assert body["info"]["version"] == "1.0.0"
    for path in (
        "/og",
        "/auth/request-link",
        "/auth/callback",
        "/dashboard/api-keys",
        "/dashboard/usage",
        "/webhooks/stripe",
        "/admin/usage/reset",
        "/admin/billing/report-daily",
        "/templates",
        "/templates/{template_id}",
    ):
        assert path in body["paths"]

    assert body["paths"]["/og"]["get"]["security"]
    security_schemes = body["components"]["securitySchemes"]
    assert any(
        scheme.get("type") == "apiKey" and scheme.get("name") == "Authorization"
        for scheme in security_schemes.values()
    )
    assert any(
        scheme.get("type") == "apiKey" and scheme.get("name") == "X-Admin-Secret"
        for scheme in security_schemes.values()
    )
