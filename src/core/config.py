"""
Service Settings

Environment-driven configuration, read once at startup.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Service settings (see from_env for the variable names)."""
    database_url: str = "sqlite:///credit_rail.db"
    api_key: str = "dev-key-change-in-production"
    stripe_api_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    operation_timeout_seconds: float = 120.0
    reconcile_after_minutes: float = 15.0
    require_paid_plan: bool = True
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    port: int = 8000

    def __post_init__(self):
        # A run younger than the executor timeout may still succeed
        if self.reconcile_after_minutes * 60 <= self.operation_timeout_seconds:
            raise ValueError(
                f"RECONCILE_AFTER_MINUTES ({self.reconcile_after_minutes:g}) must exceed "
                f"OPERATION_TIMEOUT_SECONDS ({self.operation_timeout_seconds:g}s)"
            )

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.environ.get("DATABASE_URL", "sqlite:///credit_rail.db"),
            api_key=os.environ.get("API_KEY", "dev-key-change-in-production"),
            stripe_api_key=os.environ.get("STRIPE_API_KEY"),
            stripe_webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET"),
            operation_timeout_seconds=_env_float("OPERATION_TIMEOUT_SECONDS", 120.0),
            reconcile_after_minutes=_env_float("RECONCILE_AFTER_MINUTES", 15.0),
            require_paid_plan=_env_bool("REQUIRE_PAID_PLAN", True),
            cors_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
            port=int(os.environ.get("PORT", 8000)),
        )
