from __future__ import annotations

from bandcrawl.api.routes.admin import router as admin_router
from bandcrawl.api.routes.health import router as health_router
from bandcrawl.api.routes.metrics import router as metrics_router

__all__ = ["admin_router", "health_router", "metrics_router"]
