"""Integration tests for the HTTP API using the Flask test client."""

from __future__ import annotations

from pathlib import Path

import pytest
from flask import Flask

from shortener import app as app_module
from shortener.app import create_app
from shortener.config import RateLimitSettings, Settings
from shortener.token_bucket import TokenBucketLimiter
from shortener.url_store import StoreError


def _shorten(client, url="https://example.com", **kwargs):
    return client.post("/urls", json={"url": url}, **kwargs)


@pytest.fixture
def roomy_limiter(clock):
    return TokenBucketLimiter(rate=1, interval=1.0, max_tokens=1000, clock=clock)


@pytest.fixture
def api(settings, roomy_limiter, store):
    """Client whose rate limit is high enough to stay out of the way."""
    return create_app(settings, limiter=roomy_limiter, store=store).test_client()


class TestHealth:
    def test_returns_healthy(self, api):
        resp = api.get("/health")
        assert resp.status_code == 200
        assert resp.get_json() == {"status": "healthy", "urls_stored": 0, "rate_limited_clients": 0}

    def test_is_not_rate_limited(self, client, limiter):
        for _ in range(20):
            assert client.get("/health").status_code == 200
        assert limiter.bucket_count == 0


class TestCreate:
    def test_creates_short_url(self, api):
        resp = _shorten(api, "https://example.com/a")
        assert resp.status_code == 201
        data = resp.get_json()
        assert data["original"] == "https://example.com/a"
        assert data["shortCode"] == "b"
        assert data["accessCount"] == 0
        assert data["createdAt"] == data["updatedAt"]

    def test_codes_are_sequential(self, api):
        codes = [_shorten(api, f"https://example.com/{i}").get_json()["shortCode"] for i in range(3)]
        assert codes == ["b", "c", "d"]

    @pytest.mark.parametrize("body", [None, {}, {"url": ""}, {"url": "   "}, {"url": 42}, ["url"]])
    def test_rejects_invalid_body(self, api, body):
        resp = api.post("/urls", json=body)
        assert resp.status_code == 400
        assert resp.get_json() == {"error": "Invalid request body"}

    def test_rejects_non_json(self, api):
        resp = api.post("/urls", data="url=https://example.com")
        assert resp.status_code == 400


class TestRedirect:
    def test_redirects_and_counts(self, api):
        code = _shorten(api, "https://example.com/target").get_json()["shortCode"]

        resp = api.get(f"/urls/{code}")
        assert resp.status_code == 302
        assert resp.headers["Location"] == "https://example.com/target"

        api.get(f"/urls/{code}")
        stats = api.get(f"/urls/{code}/stats").get_json()
        assert stats["accessCount"] == 2

    def test_unknown_code(self, api):
        resp = api.get("/urls/zzz")
        assert resp.status_code == 404
        assert resp.get_json() == {"error": "Short URL not found"}


class TestUpdateDelete:
    def test_update(self, api):
        code = _shorten(api).get_json()["shortCode"]
        resp = api.put(f"/urls/{code}", json={"url": "https://example.org"})
        assert resp.status_code == 200
        assert resp.get_json() == {"message": "URL updated successfully"}
        assert api.get(f"/urls/{code}/stats").get_json()["original"] == "https://example.org"

    def test_update_unknown(self, api):
        resp = api.put("/urls/nope", json={"url": "https://example.org"})
        assert resp.status_code == 404

    def test_update_invalid_body(self, api):
        code = _shorten(api).get_json()["shortCode"]
        assert api.put(f"/urls/{code}", json={}).status_code == 400

    def test_delete(self, api):
        code = _shorten(api).get_json()["shortCode"]
        resp = api.delete(f"/urls/{code}")
        assert resp.status_code == 200
        assert resp.get_json() == {"message": "URL deleted successfully"}
        assert api.get(f"/urls/{code}/stats").status_code == 404
        assert api.delete(f"/urls/{code}").status_code == 404


class TestList:
    def test_lists_most_recent_seven(self, api):
        for i in range(9):
            _shorten(api, f"https://example.com/{i}")
        data = api.get("/urls").get_json()
        assert len(data) == 7
        assert data[0]["original"] == "https://example.com/8"

    def test_empty(self, api):
        assert api.get("/urls").get_json() == []


class TestRateLimit:
    def test_burst_then_429(self, client):
        for i in range(5):
            assert client.get("/urls").status_code == 200, f"request {i + 1} should pass"

        resp = client.get("/urls")
        assert resp.status_code == 429
        assert resp.get_json() == {"error": "Rate limit exceeded. Try again later."}
        assert resp.headers["Retry-After"] == "1"
        assert resp.headers["X-RateLimit-Remaining"] == "0"

    def test_denied_request_does_not_reach_handler(self, client, store):
        for _ in range(5):
            _shorten(client)
        resp = _shorten(client, "https://example.com/blocked")
        assert resp.status_code == 429
        assert store.count() == 5

    def test_refill_lets_client_back_in(self, client, clock):
        for _ in range(5):
            client.get("/urls")
        assert client.get("/urls").status_code == 429

        clock.advance(1.0)
        assert client.get("/urls").status_code == 200
        assert client.get("/urls").status_code == 429

    def test_headers_on_allowed_response(self, client):
        resp = client.get("/urls")
        assert resp.headers["X-RateLimit-Limit"] == "5"
        assert resp.headers["X-RateLimit-Remaining"] == "4"

    def test_clients_are_keyed_by_address(self, client):
        for _ in range(5):
            client.get("/urls", environ_base={"REMOTE_ADDR": "10.0.0.1"})
        assert client.get("/urls", environ_base={"REMOTE_ADDR": "10.0.0.1"}).status_code == 429
        assert client.get("/urls", environ_base={"REMOTE_ADDR": "10.0.0.2"}).status_code == 200

    def test_forwarded_for_ignored_without_trust_proxy(self, client):
        for i in range(5):
            client.get("/urls", headers={"X-Forwarded-For": f"1.2.3.{i}"})
        assert client.get("/urls", headers={"X-Forwarded-For": "9.9.9.9"}).status_code == 429

    def test_forwarded_for_used_with_trust_proxy(self, tmp_path: Path, limiter, store):
        settings = Settings(database_path=tmp_path / "urls.db", trust_proxy=True)
        client = create_app(settings, limiter=limiter, store=store).test_client()
        for _ in range(5):
            client.get("/urls", headers={"X-Forwarded-For": "1.1.1.1, 10.0.0.1"})
        assert client.get("/urls", headers={"X-Forwarded-For": "1.1.1.1"}).status_code == 429
        assert client.get("/urls", headers={"X-Forwarded-For": "2.2.2.2"}).status_code == 200

    def test_disabled_rate_limit(self, tmp_path: Path, limiter, store):
        settings = Settings(
            database_path=tmp_path / "urls.db",
            rate_limit=RateLimitSettings(enabled=False),
        )
        client = create_app(settings, limiter=limiter, store=store).test_client()
        for _ in range(20):
            assert client.get("/urls").status_code == 200
        assert limiter.bucket_count == 0


class TestErrors:
    def test_store_error_maps_to_500(self, api, store, monkeypatch):
        def boom(*args, **kwargs):
            raise StoreError("disk on fire")

        monkeypatch.setattr(store, "recent", boom)
        resp = api.get("/urls")
        assert resp.status_code == 500
        assert resp.get_json() == {"error": "Database error"}


class TestFactoryDefaults:
    def test_builds_and_starts_limiter_from_settings(self, tmp_path: Path):
        settings = Settings(
            database_path=tmp_path / "urls.db",
            rate_limit=RateLimitSettings(rate=2, interval=5.0, max_tokens=3, sweep_interval=60.0),
        )
        app = create_app(settings)
        limiter = app.extensions["rate_limiter"]
        try:
            assert limiter.is_running
            assert (limiter.rate, limiter.interval, limiter.max_tokens) == (2, 5.0, 3)
            assert app.extensions["url_store"].db_path == tmp_path / "urls.db"
        finally:
            limiter.stop(timeout=1.0)
            app.extensions["url_store"].close()


class TestMain:
    def test_shutdown_stops_reclaimer_and_closes_store(self, monkeypatch, tmp_path: Path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "main.db"))
        monkeypatch.setenv("RATE_LIMIT_ENABLED", "true")
        monkeypatch.setattr("shortener.app.setup_logging", lambda level: None)

        built = []
        real_create_app = app_module.create_app

        def recording_create_app(settings):
            application = real_create_app(settings)
            built.append(application)
            return application

        def failing_run(self, *args, **kwargs):
            assert self.extensions["rate_limiter"].is_running
            raise RuntimeError("server crashed")

        monkeypatch.setattr(app_module, "create_app", recording_create_app)
        monkeypatch.setattr(Flask, "run", failing_run)

        with pytest.raises(RuntimeError, match="server crashed"):
            app_module.main()

        (application,) = built
        assert not application.extensions["rate_limiter"].is_running
        assert application.extensions["url_store"]._conn is None
