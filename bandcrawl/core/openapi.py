"""OpenAPI customization utilities.

Adds the ``X-Admin-Key`` security scheme to admin operations, documents the
429 response on rate limited operations and registers tag metadata.
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import FastAPI

from bandcrawl.core.rate_limit import RateLimitPolicy

TAGS_METADATA = [
    {"name": "Metrics", "description": "Privacy-first analytics beacon ingestion."},
    {"name": "Admin", "description": "Operator endpoints guarded by X-Admin-Key."},
    {"name": "Health", "description": "Liveness checks."},
]

TOO_MANY_REQUESTS = {
    "description": "Rate limit exceeded. See the Retry-After header.",
    "headers": {
        "Retry-After": {"schema": {"type": "integer"}},
        "X-RateLimit-Limit": {"schema": {"type": "string"}},
        "X-RateLimit-Remaining": {"schema": {"type": "string"}},
        "X-RateLimit-Reset": {"schema": {"type": "string"}},
    },
}


def apply_openapi_customizations(app: FastAPI, policy: RateLimitPolicy) -> None:
    """Patch FastAPI's OpenAPI generation to add security and 429 docs."""

    original_openapi = app.openapi

    def custom_openapi() -> Dict[str, Any]:
        if app.openapi_schema:
            return app.openapi_schema

        schema = original_openapi()

        security_schemes = schema.setdefault("components", {}).setdefault("securitySchemes", {})
        security_schemes.setdefault(
            "AdminKeyAuth",
            {
                "type": "apiKey",
                "in": "header",
                "name": "X-Admin-Key",
                "description": "Admin key for /api/admin endpoints.",
            },
        )

        tags = schema.setdefault("tags", [])
        existing = {t.get("name") for t in tags}
        tags.extend(t for t in TAGS_METADATA if t["name"] not in existing)

        for path, methods in schema.get("paths", {}).items():
            admin = path.startswith("/api/admin/")
            limited = policy.resolve(path) is not None
            for operation in methods.values():
                if not isinstance(operation, dict):
                    continue
                if admin:
                    operation["security"] = [{"AdminKeyAuth": []}]
                if limited:
                    operation.setdefault("responses", {})["429"] = TOO_MANY_REQUESTS

        app.openapi_schema = schema
        return schema

    app.openapi = custom_openapi  # type: ignore[assignment]
