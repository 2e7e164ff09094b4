"""Tests for OpenAPI schema customizations."""

from fastapi.testclient import TestClient


def test_admin_operations_require_admin_key(client: TestClient) -> None:
    schema = client.get("/openapi.json").json()

    assert "AdminKeyAuth" in schema["components"]["securitySchemes"]
    operation = schema["paths"]["/api/admin/rate-limits"]["get"]
    assert operation["security"] == [{"AdminKeyAuth": []}]
    assert "429" not in operation["responses"]


def test_rate_limited_operations_document_429(client: TestClient) -> None:
    schema = client.get("/openapi.json").json()

    metrics = schema["paths"]["/api/metrics"]["post"]
    health = schema["paths"]["/health"]["get"]
    assert "Retry-After" in metrics["responses"]["429"]["headers"]
    assert "429" not in health["responses"]


def test_tags_metadata_is_registered(client: TestClient) -> None:
    schema = client.get("/openapi.json").json()

    names = [tag["name"] for tag in schema["tags"]]
    assert names.count("Metrics") == 1
    assert "Admin" in names
    assert "Health" in names
