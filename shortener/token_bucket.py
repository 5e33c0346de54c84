"""Token bucket rate limiter implementation.

Each key owns a bucket of up to ``max_tokens`` permits. A request consumes one
permit; permits come back ``rate`` at a time for every whole ``interval`` that
has passed since the last refill. Refill is lazy: it is computed when a key is
touched, not by a timer per key.

Idle buckets are dropped by a background reclaimer so one-off clients do not
grow the bucket map without bound.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

NS_PER_SECOND = 1_000_000_000


def _to_ns(seconds: float) -> int:
    return round(seconds * NS_PER_SECOND)


@dataclass
class Bucket:
    """Token accounting for a single key."""

    tokens: int
    # Nanoseconds from the limiter clock
    last_refill: int
    last_seen: int


class TokenBucketLimiter:
    """Per-key token bucket rate limiter.

    Args:
        rate: Tokens granted per interval
        interval: Refill interval in seconds
        max_tokens: Bucket capacity (burst size)
        idle_ttl: Seconds after which an untouched bucket is evicted
        sweep_interval: Seconds between background eviction passes
        clock: Monotonic time source, in integer nanoseconds
    """

    def __init__(
        self,
        rate: int,
        interval: float,
        max_tokens: int,
        idle_ttl: float = 3600.0,
        sweep_interval: float = 600.0,
        clock: Callable[[], int] = time.monotonic_ns,
    ):
        if rate < 0:
            raise ValueError(f"rate must be >= 0, got {rate}")
        if interval <= 0:
            raise ValueError(f"interval must be > 0, got {interval}")
        if _to_ns(interval) < 1:
            raise ValueError(f"interval must be at least 1ns, got {interval}")
        if max_tokens < 1:
            raise ValueError(f"max_tokens must be >= 1, got {max_tokens}")
        if idle_ttl < 0:
            raise ValueError(f"idle_ttl must be >= 0, got {idle_ttl}")
        if sweep_interval <= 0:
            raise ValueError(f"sweep_interval must be > 0, got {sweep_interval}")

        self.rate = rate
        self.interval = interval
        self.max_tokens = max_tokens
        self.idle_ttl = idle_ttl
        self.sweep_interval = sweep_interval
        self.clock = clock
        self._interval_ns = _to_ns(interval)
        self._idle_ttl_ns = _to_ns(idle_ttl)
        self.buckets: Dict[str, Bucket] = {}
        self.lock = threading.Lock()

        self._stopped = threading.Event()
        self._reclaimer: Optional[threading.Thread] = None

    def _whole_intervals(self, bucket: Bucket, now: int) -> int:
        elapsed = now - bucket.last_refill
        if elapsed < self._interval_ns:
            return 0
        return elapsed // self._interval_ns

    def allow(self, key: str) -> bool:
        """Check if a request for the given key is allowed.

        Args:
            key: Identifier for the caller (e.g. client address)

        Returns:
            True if a token was consumed, False if the key is rate limited
        """
        with self.lock:
            now = self.clock()
            bucket = self.buckets.get(key)

            if bucket is None:
                # A fresh key starts full and pays for this request right away
                self.buckets[key] = Bucket(
                    tokens=self.max_tokens - 1,
                    last_refill=now,
                    last_seen=now,
                )
                return True

            bucket.last_seen = now

            whole = self._whole_intervals(bucket, now)
            if whole:
                bucket.tokens = min(self.max_tokens, bucket.tokens + whole * self.rate)
                # Advance by whole intervals only so the remainder still counts
                bucket.last_refill += whole * self._interval_ns

            if bucket.tokens > 0:
                bucket.tokens -= 1
                return True
            return False

    def remaining_tokens(self, key: str) -> int:
        """Number of tokens a request for ``key`` would see right now.

        Does not consume a token or advance refill accounting.
        """
        with self.lock:
            bucket = self.buckets.get(key)
            if bucket is None:
                return self.max_tokens
            whole = self._whole_intervals(bucket, self.clock())
            return min(self.max_tokens, bucket.tokens + whole * self.rate)

    def next_available(self, key: str) -> float:
        """Seconds until ``key`` can be allowed again; 0.0 if it can be now."""
        with self.lock:
            bucket = self.buckets.get(key)
            if bucket is None:
                return 0.0

            now = self.clock()
            whole = self._whole_intervals(bucket, now)
            if min(self.max_tokens, bucket.tokens + whole * self.rate) > 0:
                return 0.0

            elapsed = now - bucket.last_refill
            return (self._interval_ns - elapsed % self._interval_ns) / NS_PER_SECOND

    def evict_idle(self) -> int:
        """Remove buckets not seen for longer than ``idle_ttl``.

        Returns:
            Number of buckets evicted
        """
        with self.lock:
            now = self.clock()
            idle_keys = [
                key for key, bucket in self.buckets.items()
                if now - bucket.last_seen > self._idle_ttl_ns
            ]
            for key in idle_keys:
                del self.buckets[key]

        if idle_keys:
            logger.debug("Evicted %d idle rate limit buckets", len(idle_keys))
        return len(idle_keys)

    def reset(self, key: Optional[str] = None) -> None:
        """Forget rate limit state.

        Args:
            key: If provided, reset only this key. If None, reset all keys.
        """
        with self.lock:
            if key is None:
                self.buckets.clear()
            else:
                self.buckets.pop(key, None)

    @property
    def bucket_count(self) -> int:
        """Number of keys currently tracked."""
        with self.lock:
            return len(self.buckets)

    @property
    def is_running(self) -> bool:
        return self._reclaimer is not None and self._reclaimer.is_alive()

    def start(self) -> None:
        """Start the background reclaimer thread."""
        if self.is_running:
            return
        self._stopped.clear()
        self._reclaimer = threading.Thread(
            target=self._reclaim_loop, name="token-bucket-reclaimer", daemon=True
        )
        self._reclaimer.start()
        logger.info(
            "Rate limit reclaimer started (sweep every %ss, idle ttl %ss)",
            self.sweep_interval,
            self.idle_ttl,
        )

    def stop(self, timeout: float = 5.0) -> None:
        """Signal the reclaimer to stop and wait for it to exit."""
        self._stopped.set()
        reclaimer, self._reclaimer = self._reclaimer, None
        if reclaimer is None:
            return
        if reclaimer.is_alive():
            reclaimer.join(timeout=timeout)
        logger.info("Rate limit reclaimer stopped")

    def _reclaim_loop(self) -> None:
        while not self._stopped.wait(self.sweep_interval):
            try:
                self.evict_idle()
            except Exception:
                logger.exception("Rate limit eviction pass failed")

    def __enter__(self) -> "TokenBucketLimiter":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()
