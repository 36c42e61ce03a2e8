from datetime import datetime, timezone
from typing import Dict, Literal

from pydantic import Field

from src.core.entities.base import CamelModel


class WeekdayStats(CamelModel):
    trades: int = 0
    wins: int = 0
    pnl: float = 0.0


def empty_weekday_stats() -> Dict[str, WeekdayStats]:
    # 0 = Sunday ... 6 = Saturday
    return {str(day): WeekdayStats() for day in range(7)}


class DashboardMetrics(CamelModel):
    """Lightweight aggregate used by the dashboard header and balance sync."""
    total_trades: int = 0
    wins: int = 0
    losses: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0


class AccountMetrics(CamelModel):
    """
    Full per-account trading statistics.
    """
    account_id: str
    user_id: str
    total_trades: int = 0
    wins: int = 0
    losses: int = 0
    breakeven: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    profit_factor: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    sharpe_ratio: float = 0.0
    avg_pnl: float = 0.0
    pnl_std_dev: float = 0.0
    max_win_streak: int = 0
    max_loss_streak: int = 0
    current_streak: int = 0
    current_streak_type: Literal["win", "loss", "none"] = "none"
    weekday_stats: Dict[str, WeekdayStats] = Field(default_factory=empty_weekday_stats)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
