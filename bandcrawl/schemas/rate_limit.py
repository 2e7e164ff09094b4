"""Pydantic schemas for the admin rate limit table."""

from __future__ import annotations

from typing import List

from pydantic import BaseModel, Field


class RateLimitRuleSchema(BaseModel):
    """One path prefix and its budget."""

    prefix: str = Field(..., description="Path prefix the rule applies to.")
    requests: int = Field(..., description="Requests allowed per window.")
    window_seconds: int = Field(..., description="Window length in seconds.")


class RateLimitTableResponse(BaseModel):
    """Static rate limit configuration as enforced by the middleware."""

    enabled: bool = Field(..., description="Whether rate limiting is active.")
    backend: str = Field(..., description="Window store backend (memory or redis).")
    api_root: str = Field(..., description="Only paths under this root are limited.")
    skip_prefixes: List[str] = Field(
        default_factory=list,
        description="Path prefixes exempt from rate limiting.",
    )
    rules: List[RateLimitRuleSchema] = Field(
        default_factory=list,
        description="Prefix rules in match order.",
    )
    default: RateLimitRuleSchema = Field(
        ..., description="Rule applied to API paths no prefix matches."
    )
