from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from bandcrawl.core.auth import verify_admin_key
from bandcrawl.core.config import settings
from bandcrawl.core.rate_limit import RateLimitRule, get_rate_limiter
from bandcrawl.schemas.rate_limit import RateLimitRuleSchema, RateLimitTableResponse

router = APIRouter(tags=["Admin"])


def _rule_schema(prefix: str, rule: RateLimitRule) -> RateLimitRuleSchema:
    return RateLimitRuleSchema(prefix=prefix, requests=rule.requests, window_seconds=rule.window)


@router.get(
    "/rate-limits",
    response_model=RateLimitTableResponse,
    dependencies=[Depends(verify_admin_key)],
)
def get_rate_limits(request: Request) -> RateLimitTableResponse:
    """Return the rate limit table enforced on public API routes."""

    policy = get_rate_limiter(request).policy
    return RateLimitTableResponse(
        enabled=settings.app.rate_limit_enabled,
        backend=settings.app.rate_limit_backend,
        api_root=policy.api_root,
        skip_prefixes=list(policy.skip_prefixes),
        rules=[_rule_schema(prefix, rule) for prefix, rule in policy.rules.items()],
        default=_rule_schema("default", policy.default),
    )
