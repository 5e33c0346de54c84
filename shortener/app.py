"""URL shortener API with per-client rate limiting.

Every request except the health check is gated by a token bucket keyed on the
client address before it reaches the URL handlers.
"""

import logging
import math
from typing import Optional

from flask import Flask, request, jsonify, redirect, g

from shortener.config import Settings, load_settings
from shortener.logging_config import setup_logging
from shortener.token_bucket import TokenBucketLimiter
from shortener.url_store import StoreError, URLStore

logger = logging.getLogger(__name__)

RATE_LIMIT_EXEMPT = {"health_check", "static"}


def client_key(trust_proxy: bool = False) -> str:
    """Identify the caller for rate limiting purposes."""
    if trust_proxy:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
    return request.remote_addr or "unknown"


def _requested_url() -> Optional[str]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return None
    url = data.get("url")
    if not isinstance(url, str) or not url.strip():
        return None
    return url.strip()


def create_app(
    settings: Optional[Settings] = None,
    limiter: Optional[TokenBucketLimiter] = None,
    store: Optional[URLStore] = None,
) -> Flask:
    """Build the Flask app.

    Args:
        settings: Service settings; loaded from the environment if omitted
        limiter: Rate limiter to use; built from settings and started if omitted
        store: URL store to use; built from settings if omitted
    """
    settings = settings or load_settings()
    limits = settings.rate_limit

    if limiter is None:
        limiter = TokenBucketLimiter(
            rate=limits.rate,
            interval=limits.interval,
            max_tokens=limits.max_tokens,
            idle_ttl=limits.idle_ttl,
            sweep_interval=limits.sweep_interval,
        )
        if limits.enabled:
            limiter.start()

    if store is None:
        store = URLStore(settings.database_path, max_urls=settings.max_stored_urls)
    store.initialize()

    app = Flask(__name__)
    app.extensions["rate_limiter"] = limiter
    app.extensions["url_store"] = store

    @app.before_request
    def enforce_rate_limit():
        if not limits.enabled or request.endpoint in RATE_LIMIT_EXEMPT:
            return None

        key = client_key(settings.trust_proxy)
        if not limiter.allow(key):
            retry_after = max(1, math.ceil(limiter.next_available(key)))
            logger.info("Rate limit exceeded for %s on %s", key, request.path)
            response = jsonify({"error": "Rate limit exceeded. Try again later."})
            response.status_code = 429
            response.headers["Retry-After"] = str(retry_after)
            response.headers["X-RateLimit-Limit"] = str(limiter.max_tokens)
            response.headers["X-RateLimit-Remaining"] = "0"
            return response

        g.rate_limit_key = key
        return None

    @app.after_request
    def add_rate_limit_headers(response):
        key = g.get("rate_limit_key")
        if key is not None:
            response.headers["X-RateLimit-Limit"] = str(limiter.max_tokens)
            response.headers["X-RateLimit-Remaining"] = str(limiter.remaining_tokens(key))
        return response

    @app.errorhandler(StoreError)
    def handle_store_error(exc):
        logger.exception("Database error while handling %s %s", request.method, request.path)
        return jsonify({"error": "Database error"}), 500

    @app.route("/urls", methods=["GET"])
    def list_urls():
        """List the most recently updated short URLs."""
        urls = store.recent(settings.recent_urls_limit)
        return jsonify([url.to_dict() for url in urls])

    @app.route("/urls", methods=["POST"])
    def create_short_url():
        """Create a shortened URL."""
        long_url = _requested_url()
        if long_url is None:
            return jsonify({"error": "Invalid request body"}), 400

        url = store.create(long_url)
        return jsonify(url.to_dict()), 201

    @app.route("/urls/<short_code>", methods=["GET"])
    def redirect_to_url(short_code: str):
        """Redirect to the original URL and count the visit."""
        url = store.resolve(short_code)
        if url is None:
            return jsonify({"error": "Short URL not found"}), 404
        return redirect(url.original, code=302)

    @app.route("/urls/<short_code>", methods=["PUT"])
    def update_short_url(short_code: str):
        long_url = _requested_url()
        if long_url is None:
            return jsonify({"error": "Invalid request body"}), 400

        if not store.update(short_code, long_url):
            return jsonify({"error": "Short URL not found"}), 404
        return jsonify({"message": "URL updated successfully"})

    @app.route("/urls/<short_code>", methods=["DELETE"])
    def delete_short_url(short_code: str):
        if not store.delete(short_code):
            return jsonify({"error": "Short URL not found"}), 404
        return jsonify({"message": "URL deleted successfully"})

    @app.route("/urls/<short_code>/stats", methods=["GET"])
    def get_stats(short_code: str):
        """Get statistics for a shortened URL."""
        url = store.get(short_code)
        if url is None:
            return jsonify({"error": "Short URL not found"}), 404
        return jsonify(url.to_dict())

    @app.route("/health", methods=["GET"])
    def health_check():
        """Health check endpoint."""
        return jsonify({
            "status": "healthy",
            "urls_stored": store.count(),
            "rate_limited_clients": limiter.bucket_count,
        })

    return app


def main() -> None:
    settings = load_settings()
    setup_logging(settings.log_level_number)

    app = create_app(settings)
    logger.info("Server is running on %s:%d", settings.host, settings.port)
    try:
        app.run(host=settings.host, port=settings.port)
    finally:
        app.extensions["rate_limiter"].stop()
        app.extensions["url_store"].close()


if __name__ == "__main__":
    main()
