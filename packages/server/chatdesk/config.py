"""Engine configuration, read from environment variables."""

import os
from dataclasses import dataclass, field
from typing import Optional


def _env_float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


def _env_int(name: str, default: str) -> int:
    return int(os.getenv(name, default))


@dataclass
class EngineSettings:
    """Process-wide settings. Tenant-scoped values live in the tenants table."""

    database_url: str = field(
        default_factory=lambda: os.getenv(
            "DATABASE_URL", "sqlite+aiosqlite:///./data/chatdesk.db"
        )
    )
    redis_url: str = field(
        default_factory=lambda: os.getenv("REDIS_URL", "redis://localhost:6379")
    )
    # "redis" for multi-process deployments, "memory" for a single process
    change_feed_backend: str = field(
        default_factory=lambda: os.getenv("CHANGE_FEED_BACKEND", "memory").lower()
    )

    # Pairing: how long we wait for a scan, and how often we poll the gateway
    pairing_timeout_seconds: float = field(
        default_factory=lambda: _env_float("PAIRING_TIMEOUT_SECONDS", "90")
    )
    pairing_poll_interval_seconds: float = field(
        default_factory=lambda: _env_float("PAIRING_POLL_INTERVAL_SECONDS", "3")
    )
    gateway_timeout_seconds: float = field(
        default_factory=lambda: _env_float("GATEWAY_TIMEOUT_SECONDS", "15")
    )

    auto_reply_timeout_seconds: float = field(
        default_factory=lambda: _env_float("AUTO_REPLY_TIMEOUT_SECONDS", "12")
    )
    auto_reply_history_limit: int = field(
        default_factory=lambda: _env_int("AUTO_REPLY_HISTORY_LIMIT", "20")
    )

    # Max distance between an optimistic send and its persisted echo
    optimistic_match_window_ms: int = field(
        default_factory=lambda: _env_int("OPTIMISTIC_MATCH_WINDOW_MS", "10000")
    )
    # Backfills start this far before the watermark: rows are stamped before
    # they commit, so a slow writer can land behind a newer row
    backfill_overlap_ms: int = field(
        default_factory=lambda: _env_int("BACKFILL_OVERLAP_MS", "5000")
    )

    # Quotas given to a tenant on first configuration write (free plan)
    default_max_instances: int = field(
        default_factory=lambda: _env_int("DEFAULT_MAX_INSTANCES", "1")
    )
    default_max_agents: int = field(
        default_factory=lambda: _env_int("DEFAULT_MAX_AGENTS", "1")
    )

    log_level: str = field(
        default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper()
    )

    ai_base_url: Optional[str] = field(
        default_factory=lambda: os.getenv("AI_BASE_URL") or None
    )
    ai_api_key: Optional[str] = field(
        default_factory=lambda: os.getenv("AI_API_KEY") or None
    )
    ai_model: str = field(
        default_factory=lambda: os.getenv("AI_MODEL", "gpt-4o-mini")
    )

    def validate(self) -> None:
        """Raise if a setting is outside its usable range."""
        if self.change_feed_backend not in ("redis", "memory"):
            raise RuntimeError(
                f"CHANGE_FEED_BACKEND must be 'redis' or 'memory', got {self.change_feed_backend!r}"
            )
        for name in (
            "pairing_timeout_seconds",
            "pairing_poll_interval_seconds",
            "gateway_timeout_seconds",
            "auto_reply_timeout_seconds",
        ):
            if getattr(self, name) <= 0:
                raise RuntimeError(f"{name.upper()} must be positive")
        if self.auto_reply_history_limit < 1:
            raise RuntimeError("AUTO_REPLY_HISTORY_LIMIT must be at least 1")
        if self.backfill_overlap_ms < 0:
            raise RuntimeError("BACKFILL_OVERLAP_MS cannot be negative")
        if self.default_max_instances < 0 or self.default_max_agents < 0:
            raise RuntimeError("Default quotas cannot be negative")
