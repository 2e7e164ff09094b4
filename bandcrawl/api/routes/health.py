from __future__ import annotations

from fastapi import APIRouter

from bandcrawl.core.config import settings

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check() -> dict:
    """Liveness check.

    Lives outside the API root, so it is never rate limited and can be
    polled freely by load balancers.
    """

    return {"status": "ok", "rate_limit_backend": settings.app.rate_limit_backend}
