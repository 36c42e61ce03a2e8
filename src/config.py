"""
Runtime configuration for TradeJournal.

Values come from the environment; anything unset falls back to the
defaults below so the API can boot locally with no infrastructure.
"""
import os
from typing import Optional

from pydantic import BaseModel


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    database_url: Optional[str] = None
    redis_url: Optional[str] = None
    auth_jwt_secret: str = ""
    metrics_cache_ttl: int = 60
    balance_tolerance: float = 0.01
    leaderboard_limit: int = 100
    leaderboard_view_cache: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL") or None,
            redis_url=os.getenv("REDIS_URL") or None,
            auth_jwt_secret=os.getenv("AUTH_JWT_SECRET", ""),
            metrics_cache_ttl=int(os.getenv("METRICS_CACHE_TTL", "60")),
            balance_tolerance=float(os.getenv("BALANCE_TOLERANCE", "0.01")),
            leaderboard_limit=int(os.getenv("LEADERBOARD_LIMIT", "100")),
            leaderboard_view_cache=_env_bool("LEADERBOARD_VIEW_CACHE", True),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
