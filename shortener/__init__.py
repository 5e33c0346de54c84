"""Rate-limited URL shortener service."""

from shortener.token_bucket import TokenBucketLimiter

__all__ = ["TokenBucketLimiter"]
