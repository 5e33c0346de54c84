"""
Service configuration.

Values come from the environment, optionally seeded from a ``.env`` file in
the working directory. Settings objects are read-only once loaded.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class ConfigError(ValueError):
    """Raised when an environment variable holds an unusable value."""


@dataclass(frozen=True)
class RateLimitSettings:
    """Settings for the per-client token bucket."""

    enabled: bool = True

    # Tokens granted per interval
    rate: int = 1

    # Refill interval (seconds)
    interval: float = 1.0

    # Bucket capacity, i.e. the largest burst a client can send
    max_tokens: int = 60

    # Drop buckets not seen for this many seconds
    idle_ttl: float = 3600.0

    # How often the idle sweep runs (seconds)
    sweep_interval: float = 600.0


@dataclass(frozen=True)
class Settings:
    """Top-level settings container."""

    host: str = "127.0.0.1"
    port: int = 5000
    database_path: Path = Path("urls.db")

    # Oldest URLs beyond this count are pruned after each insert
    max_stored_urls: int = 100

    # Number of entries returned by GET /urls
    recent_urls_limit: int = 7

    # Take the client address from X-Forwarded-For (only behind a trusted proxy)
    trust_proxy: bool = False

    log_level: str = "INFO"
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)

    @property
    def log_level_number(self) -> int:
        return logging.getLevelName(self.log_level.upper())


def load_settings(env_file: str | Path | None = None) -> Settings:
    """
    Build Settings from the environment.

    Without ``env_file`` the nearest ``.env`` at or above the working
    directory is used.

    Variables already present in the environment win over the ``.env`` file.

    Raises:
        ConfigError: if a variable cannot be parsed.
    """
    load_dotenv(env_file or find_dotenv(usecwd=True))

    rate_limit = RateLimitSettings(
        enabled=_env_bool("RATE_LIMIT_ENABLED", True),
        rate=_env_int("RATE_LIMIT_RATE", 1, minimum=0),
        interval=_env_float("RATE_LIMIT_INTERVAL", 1.0, positive=True),
        max_tokens=_env_int("RATE_LIMIT_MAX_TOKENS", 60, minimum=1),
        idle_ttl=_env_float("RATE_LIMIT_IDLE_TTL", 3600.0),
        sweep_interval=_env_float("RATE_LIMIT_SWEEP_INTERVAL", 600.0, positive=True),
    )

    log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    if not isinstance(logging.getLevelName(log_level), int):
        raise ConfigError(f"LOG_LEVEL must be a logging level name, got {log_level!r}")

    return Settings(
        host=os.getenv("HOST", "127.0.0.1"),
        port=_env_int("PORT", 5000, minimum=1),
        database_path=Path(os.getenv("DATABASE_PATH", "urls.db")),
        max_stored_urls=_env_int("MAX_STORED_URLS", 100, minimum=1),
        trust_proxy=_env_bool("TRUST_PROXY", False),
        log_level=log_level,
        rate_limit=rate_limit,
    )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    value = value.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ConfigError(f"{name} must be a boolean, got {value!r}")


def _env_int(name: str, default: int, minimum: int | None = None) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        number = int(value)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from None
    if minimum is not None and number < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {number}")
    return number


def _env_float(name: str, default: float, positive: bool = False) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        number = float(value)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {value!r}") from None
    if number < 0 or (positive and number == 0):
        raise ConfigError(f"{name} must be {'> 0' if positive else '>= 0'}, got {number}")
    return number
