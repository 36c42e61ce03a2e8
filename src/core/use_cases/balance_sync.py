import asyncio
import logging
from typing import Optional

from src.core.entities.result import ErrorCode
from src.core.interfaces.repositories import IAccountRepository, ITradeRepository

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = 0.01


class BalanceSynchronizer:
    """
    Keeps Account.current_balance equal to initial_balance + total trade pnl.

    The write is guarded by the balance read in the same pass, so a
    concurrent writer turns our update into a logged conflict instead of a
    lost update. Nothing is retried: the next trade mutation resyncs.
    """

    def __init__(self, accounts: IAccountRepository, trades: ITradeRepository, tolerance: float = DEFAULT_TOLERANCE):
        self.accounts = accounts
        self.trades = trades
        self.tolerance = tolerance

    async def sync_balance(self, account_id: str, user_id: str) -> bool:
        """
        Returns True when a new balance was written, False when the stored
        balance was already within tolerance. Data-access failures raise.
        """
        account_res, metrics_res = await asyncio.gather(
            self.accounts.get_by_id(account_id, user_id),
            self.trades.get_dashboard_metrics(account_id, user_id),
        )
        if account_res.error:
            raise account_res.error
        account = account_res.data

        if metrics_res.error:
            # A failed aggregate must not be mistaken for an empty account.
            raise metrics_res.error
        total_pnl = metrics_res.data.total_pnl if metrics_res.data else 0.0

        new_balance = round(account.initial_balance + total_pnl, 2)
        if abs(new_balance - account.current_balance) <= self.tolerance:
            return False

        update_res = await self.accounts.update_balance(
            account_id, user_id, new_balance, expected_balance=account.current_balance
        )
        if update_res.error:
            if update_res.error.code == ErrorCode.DB_CONFLICT:
                logger.warning(f"Balance of account {account_id} changed during sync; skipping write.")
                return False
            raise update_res.error

        logger.info(f"Synced balance of account {account_id}: {account.current_balance} -> {new_balance}")
        return True

    async def sync_balance_safely(self, account_id: Optional[str], user_id: str) -> None:
        """Best-effort variant for trade mutations: failures are only logged."""
        if not account_id:
            return
        try:
            await self.sync_balance(account_id, user_id)
        except Exception as e:
            logger.error(f"Balance sync failed for account {account_id}: {e}")
