from abc import ABC, abstractmethod
from typing import List, Optional

from src.core.entities.account import Account, AccountInput
from src.core.entities.leaderboard import LeaderboardEntry, LeaderboardJoin, LeaderboardOptIn, LeaderboardPreferences
from src.core.entities.metrics import DashboardMetrics
from src.core.entities.result import Result
from src.core.entities.trade import Trade, TradeInput


class IAccountRepository(ABC):
    @abstractmethod
    async def get_by_id(self, account_id: str, user_id: str) -> Result[Account]:
        pass

    @abstractmethod
    async def get_by_user_id(self, user_id: str) -> Result[List[Account]]:
        pass

    @abstractmethod
    async def create(self, user_id: str, data: AccountInput) -> Result[Account]:
        pass

    @abstractmethod
    async def update(self, account_id: str, user_id: str, data: AccountInput) -> Result[Account]:
        pass

    @abstractmethod
    async def delete(self, account_id: str, user_id: str) -> Result[bool]:
        """Deleting an account also removes its trades."""
        pass

    @abstractmethod
    async def update_balance(
        self,
        account_id: str,
        user_id: str,
        new_balance: float,
        expected_balance: Optional[float] = None
    ) -> Result[bool]:
        """
        Writes current_balance. When expected_balance is given the write only
        applies if the stored balance still equals it; otherwise a DB_CONFLICT
        error is returned.
        """
        pass


class ITradeRepository(ABC):
    @abstractmethod
    async def get_by_id(self, trade_id: str, user_id: str) -> Result[Trade]:
        pass

    @abstractmethod
    async def get_by_account_id(
        self,
        account_id: str,
        user_id: str,
        limit: Optional[int] = None,
        offset: int = 0,
        descending: bool = True,
        symbol: Optional[str] = None
    ) -> Result[List[Trade]]:
        pass

    @abstractmethod
    async def count_by_account_id(self, account_id: str, user_id: str, symbol: Optional[str] = None) -> Result[int]:
        pass

    @abstractmethod
    async def create(self, user_id: str, data: TradeInput) -> Result[Trade]:
        pass

    @abstractmethod
    async def create_many(self, user_id: str, data: List[TradeInput]) -> Result[int]:
        pass

    @abstractmethod
    async def update(self, trade_id: str, user_id: str, data: TradeInput) -> Result[Trade]:
        pass

    @abstractmethod
    async def delete(self, trade_id: str, user_id: str) -> Result[bool]:
        pass

    @abstractmethod
    async def delete_by_account_id(self, account_id: str, user_id: str) -> Result[int]:
        pass

    @abstractmethod
    async def get_dashboard_metrics(self, account_id: str, user_id: str) -> Result[DashboardMetrics]:
        pass


class ICommunityRepository(ABC):
    @abstractmethod
    async def get_opt_in(self, user_id: str) -> Result[Optional[LeaderboardOptIn]]:
        pass

    @abstractmethod
    async def upsert_opt_in(self, user_id: str, data: LeaderboardJoin) -> Result[LeaderboardOptIn]:
        pass

    @abstractmethod
    async def delete_opt_in(self, user_id: str) -> Result[bool]:
        pass

    @abstractmethod
    async def update_opt_in(self, user_id: str, prefs: LeaderboardPreferences) -> Result[LeaderboardOptIn]:
        pass

    @abstractmethod
    async def get_opt_ins(self) -> Result[List[LeaderboardOptIn]]:
        pass

    @abstractmethod
    async def get_leaderboard_view(self, limit: int) -> Result[List[LeaderboardEntry]]:
        """Reads the pre-aggregated leaderboard view, already ordered."""
        pass


class ISqlExecutor(ABC):
    """Raw statement escape hatch, used for DDL the repositories don't model."""

    @abstractmethod
    async def execute(self, statement: str) -> None:
        pass
