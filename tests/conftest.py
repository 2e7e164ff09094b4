"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
It sets TESTING so the .env file is not loaded, and provides a fake clock
plus an app factory wired to a deterministic in-memory window store.
"""

import os

# CRITICAL: Set this before any imports that might load settings
os.environ["TESTING"] = "true"

os.environ.setdefault("APP_ADMIN_KEY_REQUIRED", "true")
os.environ.setdefault("APP_ADMIN_API_KEYS", "test-admin-key-123,test-admin-key-456")
os.environ.setdefault("APP_RATE_LIMIT_BACKEND", "memory")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from typing import Callable

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from bandcrawl.adapters.rate_limit.in_memory import InMemoryWindowStore
from bandcrawl.core.app_factory import create_app
from bandcrawl.core.rate_limit import RateLimiter


class FakeClock:
    """Deterministic clock returning UNIX seconds."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.current = start

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryWindowStore:
    return InMemoryWindowStore(clock=clock)


@pytest.fixture
def limiter(store: InMemoryWindowStore, clock: FakeClock) -> RateLimiter:
    return RateLimiter(store, clock=clock)


@pytest.fixture
def app_factory(clock: FakeClock) -> Callable[..., FastAPI]:
    """Build an app whose limiter uses the fake clock."""

    def _build(store=None, **kwargs) -> FastAPI:
        limiter = kwargs.pop("limiter", None) or RateLimiter(
            store or InMemoryWindowStore(clock=clock),
            clock=clock,
        )
        return create_app(limiter=limiter, **kwargs)

    return _build


@pytest.fixture
def app(app_factory) -> FastAPI:
    return app_factory()


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    return TestClient(app)
