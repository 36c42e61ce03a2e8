from datetime import date, datetime
from enum import Enum
from typing import List, Optional

from pydantic import Field

from src.core.entities.base import CamelModel


class TradeOutcome(str, Enum):
    WIN = "win"
    LOSS = "loss"
    BREAKEVEN = "breakeven"
    PENDING = "pending"


class TradeType(str, Enum):
    LONG = "Long"
    SHORT = "Short"


class Trade(CamelModel):
    """
    Standardised Trade entity used throughout the core logic.
    Compatible with FastAPI serialisation.
    """
    id: str
    account_id: str
    user_id: str
    symbol: str
    type: TradeType = TradeType.LONG
    entry_date: date
    entry_time: Optional[str] = None
    exit_date: Optional[date] = None
    exit_time: Optional[str] = None
    entry_price: float
    exit_price: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    lot: float = 1.0
    pnl: Optional[float] = None
    outcome: TradeOutcome = TradeOutcome.PENDING
    commission: Optional[float] = None
    swap: Optional[float] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None


class TradeInput(CamelModel):
    """Payload for saving a trade. Omitting outcome derives it from pnl."""
    id: Optional[str] = None
    account_id: str
    symbol: str = Field(min_length=1)
    type: TradeType = TradeType.LONG
    entry_date: date
    entry_time: Optional[str] = None
    exit_date: Optional[date] = None
    exit_time: Optional[str] = None
    entry_price: float
    exit_price: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    lot: float = 1.0
    pnl: Optional[float] = None
    outcome: Optional[TradeOutcome] = None
    commission: Optional[float] = None
    swap: Optional[float] = None
    notes: Optional[str] = None


def derive_outcome(pnl: Optional[float]) -> TradeOutcome:
    if pnl is None:
        return TradeOutcome.PENDING
    if pnl > 0:
        return TradeOutcome.WIN
    if pnl < 0:
        return TradeOutcome.LOSS
    return TradeOutcome.BREAKEVEN


class TradePage(CamelModel):
    data: List[Trade] = Field(default_factory=list)
    count: int = 0
