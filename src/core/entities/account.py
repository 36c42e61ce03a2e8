from datetime import datetime
from typing import Optional

from src.core.entities.base import CamelModel


class Account(CamelModel):
    """
    A user's trading ledger.
    current_balance is derived from initial_balance + sum(trade.pnl)
    and reconciled by the balance synchronizer.
    """
    id: str
    user_id: str
    name: str
    currency: str = "USD"
    initial_balance: float
    current_balance: float
    leverage: str = "1:100"
    max_drawdown: float = 0.0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AccountInput(CamelModel):
    """Payload for creating or updating an account."""
    id: Optional[str] = None
    name: str
    currency: str = "USD"
    initial_balance: float = 0.0
    current_balance: Optional[float] = None
    leverage: str = "1:100"
    max_drawdown: float = 0.0


class BalanceUpdate(CamelModel):
    new_balance: float


class SyncSummary(CamelModel):
    success: bool
    synced_count: int = 0
