"""
Shared fixtures for the shortener test suite.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from shortener.app import create_app
from shortener.config import RateLimitSettings, Settings
from shortener.token_bucket import TokenBucketLimiter
from shortener.url_store import URLStore


class FakeClock:
    """Manually advanced monotonic clock reporting integer nanoseconds."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = round(start * 1_000_000_000)

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += round(seconds * 1_000_000_000)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def limiter(clock: FakeClock) -> TokenBucketLimiter:
    """rate=1 per 1s, burst of 5, idle after 60s."""
    return TokenBucketLimiter(rate=1, interval=1.0, max_tokens=5, idle_ttl=60.0, clock=clock)


@pytest.fixture
def store(tmp_path: Path):
    s = URLStore(tmp_path / "urls.db", max_urls=100)
    s.initialize()
    yield s
    s.close()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_path=tmp_path / "urls.db",
        rate_limit=RateLimitSettings(rate=1, interval=1.0, max_tokens=5),
    )


@pytest.fixture
def app(settings: Settings, limiter: TokenBucketLimiter, store: URLStore):
    return create_app(settings, limiter=limiter, store=store)


@pytest.fixture
def client(app):
    return app.test_client()
