from datetime import datetime
from typing import Optional

from pydantic import Field

from src.core.entities.base import CamelModel


class LeaderboardOptIn(CamelModel):
    user_id: str
    display_name: str
    show_win_rate: bool = True
    show_profit_factor: bool = True
    show_total_trades: bool = True
    show_pnl: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class LeaderboardJoin(CamelModel):
    display_name: str = Field(min_length=1, max_length=50)
    show_win_rate: bool = True
    show_profit_factor: bool = True
    show_total_trades: bool = True
    show_pnl: bool = False


class LeaderboardPreferences(CamelModel):
    """Partial update; fields left as None are not touched."""
    display_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    show_win_rate: Optional[bool] = None
    show_profit_factor: Optional[bool] = None
    show_total_trades: Optional[bool] = None
    show_pnl: Optional[bool] = None


class LeaderboardEntry(CamelModel):
    """
    One ranked row. Stats are None when hidden by the user's
    preferences or when the view could not be read.
    """
    rank: int
    user_id: str
    display_name: str
    show_win_rate: bool = True
    show_profit_factor: bool = True
    show_total_trades: bool = True
    show_pnl: bool = False
    total_trades: Optional[int] = None
    wins: Optional[int] = None
    losses: Optional[int] = None
    win_rate: Optional[float] = None
    profit_factor: Optional[float] = None
    total_pnl: Optional[float] = None
    avg_rr: Optional[float] = Field(default=None, alias="avgRR")
