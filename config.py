"""
Centralized application settings with environment-aware defaults.

Determines whether the service runs in demo or production mode and exposes
typed configuration consumed by the orchestrator, the config store and the
HTTP layer.  All values fall back to safe demo defaults so the app starts
with zero environment variables set.

Workflow content (steps, templates, rules, scenarios) is NOT configured
here; it lives in the config store under ``demo.*`` keys.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import List

logger = logging.getLogger(__name__)


class AppMode(str, Enum):
    DEMO = "demo"
    DEVELOPMENT = "development"
    PRODUCTION = "production"


def _detect_mode() -> AppMode:
    """Derive the application mode from ENVIRONMENT env-var."""
    raw = os.getenv("ENVIRONMENT", "demo").lower().strip()
    if raw in ("production", "prod"):
        return AppMode.PRODUCTION
    if raw == "development":
        return AppMode.DEVELOPMENT
    return AppMode.DEMO


def _env_str(name: str, default: str):
    return field(default_factory=lambda: os.getenv(name, default))


def _env_int(name: str, default: int):
    return field(default_factory=lambda: int(os.getenv(name, str(default))))


def _env_float(name: str, default: float):
    return field(default_factory=lambda: float(os.getenv(name, str(default))))


def _env_flag(name: str, default: bool):
    return field(default_factory=lambda: os.getenv(name, str(default)).lower() in ("1", "true", "yes"))


def _env_list(name: str, default: str):
    return field(default_factory=lambda: [
        item.strip() for item in os.getenv(name, default).split(",") if item.strip()
    ])


@dataclass(frozen=True)
class Settings:
    """Immutable, environment-derived settings."""

    mode: AppMode = field(default_factory=_detect_mode)
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper())

    database_url: str = _env_str("DATABASE_URL", "sqlite:///./control_tower.db")

    # Config lookup cache: "memory" or "redis"
    cache_backend: str = _env_str("CACHE_BACKEND", "memory")
    redis_url: str = _env_str("REDIS_URL", "redis://localhost:6379/0")
    cache_default_ttl: int = _env_int("CACHE_TTL", 300)

    cors_origins: List[str] = _env_list("CORS_ORIGINS", "http://localhost:5173")

    # Built-in step timing, used when no configured tier provides one (ms)
    default_processing_min_ms: int = _env_int("DEFAULT_PROCESSING_MIN_MS", 1000)
    default_processing_max_ms: int = _env_int("DEFAULT_PROCESSING_MAX_MS", 2000)
    default_inter_step_delay_ms: int = _env_int("DEFAULT_INTER_STEP_DELAY_MS", 1000)

    subscriber_wait_timeout_s: float = _env_float("SUBSCRIBER_WAIT_TIMEOUT_S", 10.0)
    subscriber_queue_size: int = _env_int("SUBSCRIBER_QUEUE_SIZE", 256)

    # Rule actions that end an execution, unless demo.workflow.stop_actions is set
    stop_actions: List[str] = _env_list("STOP_ACTIONS", "stop,requires_referral")

    auto_seed: bool = _env_flag("AUTO_SEED", True)
    auto_create_tables: bool = field(
        default_factory=lambda: os.getenv("ENVIRONMENT", "demo").lower() not in ("production", "prod")
    )

    def __post_init__(self) -> None:
        if self.cache_backend not in ("memory", "redis"):
            raise ValueError(f"CACHE_BACKEND must be 'memory' or 'redis', got {self.cache_backend!r}")
        if min(self.default_processing_min_ms, self.default_processing_max_ms, self.default_inter_step_delay_ms) < 0:
            raise ValueError("Default step timings cannot be negative")
        if self.subscriber_queue_size < 1:
            raise ValueError("SUBSCRIBER_QUEUE_SIZE must be at least 1")

    @property
    def is_demo(self) -> bool:
        return self.mode == AppMode.DEMO

    @property
    def is_production(self) -> bool:
        return self.mode == AppMode.PRODUCTION


settings = Settings()

logger.info(f"Settings loaded: mode={settings.mode.value}, cache_backend={settings.cache_backend}")
