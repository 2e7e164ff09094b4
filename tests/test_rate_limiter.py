"""Unit tests for the fixed-window rate limit evaluator."""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from starlette.requests import Request

from bandcrawl.adapters.rate_limit.base import AbstractWindowStore
from bandcrawl.adapters.rate_limit.in_memory import InMemoryWindowStore
from bandcrawl.core.errors import WindowStoreError
from bandcrawl.core.rate_limit import (
    DEFAULT_RULE,
    NOT_LIMITED,
    RateLimiter,
    RateLimitPolicy,
    RateLimitRule,
    build_rate_limit_key,
    check_rate_limit,
    get_client_ip,
    normalize_base_path,
)


def make_request(path: str, headers: dict[str, str] | None = None) -> Request:
    if headers is None:
        headers = {"CF-Connecting-IP": "1.2.3.4"}
    scope = {
        "type": "http",
        "method": "GET",
        "scheme": "https",
        "server": ("example.com", 443),
        "path": path,
        "root_path": "",
        "query_string": b"",
        "headers": [(k.lower().encode(), v.encode()) for k, v in headers.items()],
    }
    return Request(scope)


class TestClientIp:
    def test_prefers_cf_connecting_ip(self) -> None:
        request = make_request(
            "/api/events",
            {"CF-Connecting-IP": "1.1.1.1", "X-Forwarded-For": "2.2.2.2"},
        )
        assert get_client_ip(request) == "1.1.1.1"

    def test_falls_back_to_first_forwarded_for_hop(self) -> None:
        request = make_request("/api/events", {"X-Forwarded-For": " 2.2.2.2 , 3.3.3.3"})
        assert get_client_ip(request) == "2.2.2.2"

    def test_unknown_when_no_headers(self) -> None:
        assert get_client_ip(make_request("/api/events", {})) == "unknown"


class TestKeys:
    @pytest.mark.parametrize(
        ("path", "expected"),
        [
            ("/api/events", "/api/events"),
            ("/api/events/42", "/api/events/42"),
            ("/api/events/42/details", "/api/events/42"),
            ("/api/schedule/build/extra", "/api/schedule/build"),
        ],
    )
    def test_normalize_base_path(self, path: str, expected: str) -> None:
        assert normalize_base_path(path) == expected

    def test_key_combines_ip_and_base_path(self) -> None:
        assert (
            build_rate_limit_key("1.2.3.4", "/api/events/42/details")
            == "rate-limit:1.2.3.4:/api/events/42"
        )


class TestPolicy:
    @pytest.mark.parametrize(
        ("path", "expected"),
        [
            ("/api/events", RateLimitRule(60, 60)),
            ("/api/events/timeline", RateLimitRule(60, 60)),
            ("/api/schedule/build", RateLimitRule(30, 60)),
            ("/api/feeds/ical", RateLimitRule(20, 60)),
            ("/api/subscriptions/verify", RateLimitRule(10, 60)),
            ("/api/metrics", RateLimitRule(100, 60)),
            ("/api/auth/activate", RateLimitRule(10, 60)),
            ("/api/auth/resend-activation", RateLimitRule(3, 300)),
            ("/api/bands/some-band", DEFAULT_RULE),
        ],
    )
    def test_resolves_prefix_rules(self, path: str, expected: RateLimitRule) -> None:
        assert RateLimitPolicy().resolve(path) == expected

    @pytest.mark.parametrize(
        "path",
        ["/api/admin/users", "/api/admin/", "/_internal/health", "/about", "/health", "/"],
    )
    def test_exempt_paths(self, path: str) -> None:
        assert RateLimitPolicy().resolve(path) is None

    def test_first_matching_prefix_wins(self) -> None:
        policy = RateLimitPolicy(
            rules={
                "/api/auth/resend": RateLimitRule(3, 300),
                "/api/auth": RateLimitRule(50, 60),
            }
        )
        assert policy.resolve("/api/auth/resend-activation") == RateLimitRule(3, 300)
        assert policy.resolve("/api/auth/activate") == RateLimitRule(50, 60)

    def test_rule_validation(self) -> None:
        with pytest.raises(ValueError):
            RateLimitRule(requests=0, window=60)
        with pytest.raises(ValueError):
            RateLimitRule(requests=1, window=0)


class TestCheck:
    @pytest.mark.asyncio
    async def test_first_request_is_allowed(self, limiter: RateLimiter, clock) -> None:
        result = await limiter.check(make_request("/api/events"))

        assert result.allowed is True
        assert result.remaining == 59
        assert result.limit == 60
        assert result.reset_at == int(clock()) + 60

    @pytest.mark.asyncio
    async def test_uses_endpoint_specific_limit(self, limiter: RateLimiter) -> None:
        result = await limiter.check(make_request("/api/subscriptions"))

        assert result.allowed is True
        assert result.remaining == 9

    @pytest.mark.asyncio
    async def test_unmatched_api_path_uses_default(self, limiter: RateLimiter) -> None:
        result = await limiter.check(make_request("/api/bands/foo"))

        assert result.remaining == 29
        assert result.limit == 30

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["/api/admin/users", "/about", "/_worker.js"])
    async def test_exempt_paths_are_not_limited(self, path: str) -> None:
        store = AsyncMock(spec=AbstractWindowStore)
        limiter = RateLimiter(store)

        result = await limiter.check(make_request(path))

        assert result == NOT_LIMITED
        assert result.allowed is True
        assert result.remaining == -1
        assert result.reset_at == 0
        store.get.assert_not_called()
        store.put.assert_not_called()

    @pytest.mark.asyncio
    async def test_nth_request_remaining_and_allowed(self, limiter: RateLimiter) -> None:
        limit = 60
        for n in range(1, limit + 3):
            result = await limiter.check(make_request("/api/events"))
            assert result.remaining == max(0, limit - n)
            assert result.allowed is (n <= limit)

    @pytest.mark.asyncio
    async def test_sixty_one_requests_scenario(self, limiter: RateLimiter, clock) -> None:
        results = [await limiter.check(make_request("/api/events")) for _ in range(61)]

        assert all(r.allowed for r in results[:60])
        assert [r.remaining for r in results[:60]] == list(range(59, -1, -1))

        rejected = results[60]
        assert rejected.allowed is False
        assert rejected.remaining == 0
        assert rejected.reset_at - int(clock()) > 0

    @pytest.mark.asyncio
    async def test_window_resets_after_expiry(self, limiter: RateLimiter, clock) -> None:
        for _ in range(10):
            await limiter.check(make_request("/api/subscriptions"))

        clock.advance(61)
        result = await limiter.check(make_request("/api/subscriptions"))

        assert result.allowed is True
        assert result.remaining == 9
        assert result.reset_at == int(clock()) + 60

    @pytest.mark.asyncio
    async def test_window_resets_exactly_at_boundary(self, limiter: RateLimiter, clock) -> None:
        for _ in range(3):
            await limiter.check(make_request("/api/auth/resend-activation"))
        assert (await limiter.check(make_request("/api/auth/resend-activation"))).allowed is False

        clock.advance(300)
        result = await limiter.check(make_request("/api/auth/resend-activation"))

        assert result.allowed is True
        assert result.remaining == 2

    @pytest.mark.asyncio
    async def test_stale_stored_window_is_reset(self, clock) -> None:
        store = InMemoryWindowStore(clock=clock)
        now = int(clock())
        stale = json.dumps({"count": 100, "windowStart": now - 120})
        await store.put("rate-limit:1.2.3.4:/api/events", stale, ttl_seconds=600)
        limiter = RateLimiter(store, clock=clock)

        result = await limiter.check(make_request("/api/events"))

        assert result.allowed is True
        assert result.remaining == 59

    @pytest.mark.asyncio
    async def test_counter_is_persisted_with_window_ttl(self, clock) -> None:
        store = AsyncMock(spec=AbstractWindowStore)
        store.get.return_value = None
        limiter = RateLimiter(store, clock=clock)

        await limiter.check(make_request("/api/feeds/ical"))

        store.put.assert_awaited_once_with(
            "rate-limit:1.2.3.4:/api/feeds/ical",
            json.dumps({"count": 1, "windowStart": int(clock())}),
            ttl_seconds=60,
        )

    @pytest.mark.asyncio
    async def test_sub_resources_share_a_bucket(self, limiter: RateLimiter) -> None:
        await limiter.check(make_request("/api/events/42"))
        result = await limiter.check(make_request("/api/events/42/details"))

        assert result.remaining == 58

    @pytest.mark.asyncio
    async def test_clients_are_isolated(self, limiter: RateLimiter) -> None:
        for _ in range(10):
            await limiter.check(make_request("/api/subscriptions", {"CF-Connecting-IP": "1.1.1.1"}))

        blocked = await limiter.check(
            make_request("/api/subscriptions", {"CF-Connecting-IP": "1.1.1.1"})
        )
        other = await limiter.check(
            make_request("/api/subscriptions", {"CF-Connecting-IP": "9.9.9.9"})
        )

        assert blocked.allowed is False
        assert other.allowed is True
        assert other.remaining == 9

    @pytest.mark.asyncio
    async def test_check_rate_limit_alias(self, limiter: RateLimiter) -> None:
        result = await check_rate_limit(limiter, make_request("/api/metrics"))

        assert result.remaining == 99


class TestFailOpen:
    @pytest.mark.asyncio
    async def test_store_read_failure_fails_open(self) -> None:
        store = AsyncMock(spec=AbstractWindowStore)
        store.get.side_effect = WindowStoreError(code="down", message="cache error")
        limiter = RateLimiter(store)

        result = await limiter.check(make_request("/api/events"))

        assert result.allowed is True
        assert result.remaining == -1
        assert result.reset_at == 0
        store.put.assert_not_called()

    @pytest.mark.asyncio
    async def test_store_write_failure_fails_open(self) -> None:
        store = AsyncMock(spec=AbstractWindowStore)
        store.get.return_value = None
        store.put.side_effect = WindowStoreError(code="down", message="cache error")

        result = await RateLimiter(store).check(make_request("/api/events"))

        assert result == NOT_LIMITED

    @pytest.mark.asyncio
    async def test_corrupt_record_fails_open(self) -> None:
        store = AsyncMock(spec=AbstractWindowStore)
        store.get.return_value = "not-json"

        result = await RateLimiter(store).check(make_request("/api/events"))

        assert result == NOT_LIMITED

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "raw",
        ['{"count": Infinity, "windowStart": 1}', '{"count": 1, "windowStart": NaN}'],
    )
    async def test_non_finite_record_fails_open(self, raw: str) -> None:
        store = AsyncMock(spec=AbstractWindowStore)
        store.get.return_value = raw

        result = await RateLimiter(store).check(make_request("/api/events"))

        assert result == NOT_LIMITED
        store.put.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_hung_store_times_out_and_fails_open(self) -> None:
        class HangingStore(InMemoryWindowStore):
            async def get(self, key: str) -> str | None:
                await asyncio.sleep(10)
                return None

        limiter = RateLimiter(HangingStore(), store_timeout_seconds=0.01)

        result = await limiter.check(make_request("/api/events"))

        assert result == NOT_LIMITED

    @pytest.mark.asyncio
    async def test_unexpected_errors_propagate(self) -> None:
        store = AsyncMock(spec=AbstractWindowStore)
        store.get.side_effect = RuntimeError("bug")

        with pytest.raises(RuntimeError):
            await RateLimiter(store).check(make_request("/api/events"))

    @pytest.mark.asyncio
    async def test_store_failure_is_logged_without_client_ip(self, caplog) -> None:
        store = AsyncMock(spec=AbstractWindowStore)
        store.get.side_effect = WindowStoreError(code="down", message="cache error")

        with caplog.at_level("WARNING", logger="bandcrawl.core.rate_limit"):
            await RateLimiter(store).check(make_request("/api/events"))

        records = [r for r in caplog.records if r.getMessage() == "rate_limit.store_failed"]
        assert len(records) == 1
        assert records[0].base_path == "/api/events"
        assert "1.2.3.4" not in str(records[0].__dict__)
