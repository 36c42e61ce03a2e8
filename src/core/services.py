import asyncio
import functools
import logging
from typing import Any, Callable, Dict, List, Optional

from src.core.entities.account import Account, AccountInput, SyncSummary
from src.core.entities.leaderboard import LeaderboardEntry, LeaderboardJoin, LeaderboardOptIn, LeaderboardPreferences
from src.core.entities.metrics import AccountMetrics, DashboardMetrics
from src.core.entities.result import UNEXPECTED_ERROR, ActionResult, AppError, ErrorCode, not_authenticated
from src.core.entities.trade import Trade, TradeInput, TradePage, derive_outcome
from src.core.interfaces.repositories import IAccountRepository, ICommunityRepository, ITradeRepository
from src.core.use_cases.balance_sync import BalanceSynchronizer
from src.core.use_cases.leaderboard_view import LeaderboardViewBuilder
from src.core.use_cases.metrics_aggregator import compute_account_metrics

logger = logging.getLogger(__name__)


# --- Action decorators ---
# Every service operation takes the caller's user id as its first argument.
# A missing id short-circuits before touching storage, and unexpected
# exceptions are logged and turned into the operation's empty result.

def read_action(default: Callable[[], Any]):
    def decorator(fn):
        @functools.wraps(fn)
        async def wrapper(self, user_id: Optional[str], *args, **kwargs):
            if not user_id:
                return default()
            try:
                return await fn(self, user_id, *args, **kwargs)
            except Exception:
                logger.exception(f"[{fn.__name__}] Unexpected error")
                return default()
        return wrapper
    return decorator


def write_action(fn):
    @functools.wraps(fn)
    async def wrapper(self, user_id: Optional[str], *args, **kwargs) -> ActionResult:
        if not user_id:
            return not_authenticated()
        try:
            return await fn(self, user_id, *args, **kwargs)
        except Exception:
            logger.exception(f"[{fn.__name__}] Unexpected error")
            return ActionResult.fail(UNEXPECTED_ERROR)
    return wrapper


def _dump(model) -> Dict[str, Any]:
    return model.model_dump(by_alias=True, mode="json")


# --- Business Logic Services ---

class MetricsService:
    """
    Dashboard metrics with a short-lived cache in front of the trade store.
    Trade mutations call invalidate() so the cache never outlives a change.
    """

    def __init__(self, trades: ITradeRepository, cache=None, ttl_seconds: int = 60):
        self.trades = trades
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _dashboard_key(account_id: str, user_id: str) -> str:
        return f"metrics:{user_id}:{account_id}"

    @staticmethod
    def _full_key(account_id: str, user_id: str) -> str:
        return f"account_metrics:{user_id}:{account_id}"

    async def get_dashboard_metrics(self, account_id: str, user_id: str) -> Optional[DashboardMetrics]:
        if self.cache:
            cached = self.cache.get(self._dashboard_key(account_id, user_id))
            if cached:
                return DashboardMetrics(**cached)

        result = await self.trades.get_dashboard_metrics(account_id, user_id)
        if result.error:
            logger.error(f"[get_dashboard_metrics] Error: {result.error}")
            return None

        if self.cache:
            self.cache.set(self._dashboard_key(account_id, user_id), result.data, self.ttl_seconds)
        return result.data

    async def compute_metrics(self, account_id: str, user_id: str) -> Optional[AccountMetrics]:
        """Full statistics from a scan of the account's trades. None on data-access failure."""
        if self.cache:
            cached = self.cache.get(self._full_key(account_id, user_id))
            if cached:
                return AccountMetrics(**cached)

        result = await self.trades.get_by_account_id(account_id, user_id)
        if result.error:
            logger.error(f"[compute_metrics] Error: {result.error}")
            return None

        metrics = compute_account_metrics(account_id, user_id, result.data or [])
        if self.cache:
            self.cache.set(self._full_key(account_id, user_id), metrics, self.ttl_seconds)
        return metrics

    def invalidate(self, account_id: str, user_id: str):
        if self.cache:
            self.cache.delete(self._dashboard_key(account_id, user_id))
            self.cache.delete(self._full_key(account_id, user_id))


class AccountService:
    def __init__(
        self,
        accounts: IAccountRepository,
        trades: ITradeRepository,
        metrics: MetricsService,
        synchronizer: BalanceSynchronizer
    ):
        self.accounts = accounts
        self.trades = trades
        self.metrics = metrics
        self.synchronizer = synchronizer

    @read_action(list)
    async def get_accounts(self, user_id: str) -> List[Account]:
        result = await self.accounts.get_by_user_id(user_id)
        if result.error:
            logger.error(f"[get_accounts] Error: {result.error}")
            return []
        return result.data or []

    @read_action(lambda: None)
    async def get_account(self, user_id: str, account_id: str) -> Optional[Account]:
        result = await self.accounts.get_by_id(account_id, user_id)
        if result.error:
            if result.error.code != ErrorCode.DB_NOT_FOUND:
                logger.error(f"[get_account] Error: {result.error}")
            return None
        return result.data

    @write_action
    async def save_account(self, user_id: str, data: AccountInput) -> ActionResult:
        existing = None
        if data.id:
            existing = (await self.accounts.get_by_id(data.id, user_id)).data

        if existing:
            result = await self.accounts.update(existing.id, user_id, data)
        else:
            result = await self.accounts.create(user_id, data)

        if result.error:
            logger.error(f"[save_account] Error: {result.error}")
            return ActionResult.from_error(result.error)

        account = result.data
        if existing and existing.initial_balance != account.initial_balance:
            await self.synchronizer.sync_balance_safely(account.id, user_id)
            account = (await self.accounts.get_by_id(account.id, user_id)).data or account

        return ActionResult.ok(_dump(account))

    @write_action
    async def delete_account(self, user_id: str, account_id: str) -> ActionResult:
        result = await self.accounts.delete(account_id, user_id)
        if result.error:
            logger.error(f"[delete_account] Error: {result.error}")
            return ActionResult.from_error(result.error)
        self.metrics.invalidate(account_id, user_id)
        return ActionResult.ok()

    @write_action
    async def update_account_balance(self, user_id: str, account_id: str, new_balance: float) -> ActionResult:
        existing = await self.accounts.get_by_id(account_id, user_id)
        if existing.error or not existing.data:
            return ActionResult.fail("Account not found or unauthorized", ErrorCode.DB_NOT_FOUND)

        result = await self.accounts.update_balance(account_id, user_id, new_balance)
        if result.error:
            logger.error(f"[update_account_balance] Error: {result.error}")
            return ActionResult.from_error(result.error)
        return ActionResult.ok()

    @read_action(lambda: False)
    async def check_account_has_trades(self, user_id: str, account_id: str) -> bool:
        result = await self.trades.count_by_account_id(account_id, user_id)
        if result.error:
            logger.error(f"[check_account_has_trades] Error: {result.error}")
            return False
        return (result.data or 0) > 0

    @write_action
    async def sync_account_balance(self, user_id: str, account_id: str) -> ActionResult:
        existing = await self.accounts.get_by_id(account_id, user_id)
        if existing.error or not existing.data:
            return ActionResult.fail("Account not found or unauthorized", ErrorCode.DB_NOT_FOUND)

        try:
            changed = await self.synchronizer.sync_balance(account_id, user_id)
        except AppError as e:
            logger.error(f"[sync_account_balance] Error: {e}")
            return ActionResult.from_error(e)
        self.metrics.invalidate(account_id, user_id)
        return ActionResult.ok({"synced": changed})

    @read_action(lambda: SyncSummary(success=False))
    async def sync_all_balances(self, user_id: str) -> SyncSummary:
        """Recalculates current_balance for every account of the user."""
        accounts = await self.accounts.get_by_user_id(user_id)
        if accounts.error or accounts.data is None:
            return SyncSummary(success=False)

        synced = 0
        for account in accounts.data:
            try:
                if await self.synchronizer.sync_balance(account.id, user_id):
                    synced += 1
            except Exception as e:
                logger.error(f"[sync_all_balances] Error syncing account {account.id}: {e}")

        return SyncSummary(success=True, synced_count=synced)

    @read_action(lambda: None)
    async def get_account_metrics(self, user_id: str, account_id: str) -> Optional[AccountMetrics]:
        owned = await self.accounts.get_by_id(account_id, user_id)
        if owned.error or not owned.data:
            logger.warning(f"[get_account_metrics] User {user_id} has no account {account_id}")
            return None
        return await self.metrics.compute_metrics(account_id, user_id)

    @read_action(lambda: None)
    async def get_dashboard_metrics(self, user_id: str, account_id: str) -> Optional[DashboardMetrics]:
        return await self.metrics.get_dashboard_metrics(account_id, user_id)


class TradeService:
    def __init__(
        self,
        trades: ITradeRepository,
        accounts: IAccountRepository,
        metrics: MetricsService,
        synchronizer: BalanceSynchronizer
    ):
        self.trades = trades
        self.accounts = accounts
        self.metrics = metrics
        self.synchronizer = synchronizer

    async def _after_mutation(self, user_id: str, *account_ids: Optional[str]):
        for account_id in dict.fromkeys(a for a in account_ids if a):
            self.metrics.invalidate(account_id, user_id)
            await self.synchronizer.sync_balance_safely(account_id, user_id)

    async def _owns_account(self, user_id: str, account_id: str) -> bool:
        result = await self.accounts.get_by_id(account_id, user_id)
        return result.error is None and result.data is not None

    @staticmethod
    def _normalize(data: TradeInput) -> TradeInput:
        if data.outcome is None:
            return data.model_copy(update={"outcome": derive_outcome(data.pnl)})
        return data

    @read_action(list)
    async def get_trades(self, user_id: str, account_id: str) -> List[Trade]:
        result = await self.trades.get_by_account_id(account_id, user_id)
        if result.error:
            logger.error(f"[get_trades] Error: {result.error}")
            return []
        return result.data or []

    @read_action(lambda: None)
    async def get_trade(self, user_id: str, trade_id: str) -> Optional[Trade]:
        result = await self.trades.get_by_id(trade_id, user_id)
        if result.error:
            if result.error.code != ErrorCode.DB_NOT_FOUND:
                logger.error(f"[get_trade] Error: {result.error}")
            return None
        return result.data

    @read_action(TradePage)
    async def get_trades_paginated(
        self,
        user_id: str,
        account_id: str,
        page: int = 1,
        page_size: int = 20,
        sort_direction: str = "desc",
        symbol: Optional[str] = None
    ) -> TradePage:
        offset = (max(page, 1) - 1) * page_size
        trades_res, count_res = await asyncio.gather(
            self.trades.get_by_account_id(
                account_id, user_id,
                limit=page_size,
                offset=offset,
                descending=sort_direction != "asc",
                symbol=symbol
            ),
            self.trades.count_by_account_id(account_id, user_id, symbol),
        )
        if trades_res.error or count_res.error:
            logger.error(f"[get_trades_paginated] Error: {trades_res.error or count_res.error}")
            return TradePage()
        return TradePage(data=trades_res.data or [], count=count_res.data or 0)

    @write_action
    async def save_trade(self, user_id: str, data: TradeInput) -> ActionResult:
        if not await self._owns_account(user_id, data.account_id):
            return ActionResult.fail("Account not found or unauthorized", ErrorCode.DB_NOT_FOUND)

        data = self._normalize(data)
        previous = None
        if data.id:
            previous = (await self.trades.get_by_id(data.id, user_id)).data
            if previous is None:
                return ActionResult.fail("Trade not found or unauthorized", ErrorCode.DB_NOT_FOUND)

        if previous:
            result = await self.trades.update(previous.id, user_id, data)
        else:
            result = await self.trades.create(user_id, data)

        if result.error:
            logger.error(f"[save_trade] Error: {result.error}")
            return ActionResult.from_error(result.error)

        await self._after_mutation(user_id, data.account_id, previous.account_id if previous else None)
        return ActionResult.ok(_dump(result.data))

    @write_action
    async def save_trades_batch(self, user_id: str, trades: List[TradeInput]) -> ActionResult:
        if not trades:
            return ActionResult.ok({"count": 0})

        account_ids = list(dict.fromkeys(t.account_id for t in trades))
        for account_id in account_ids:
            if not await self._owns_account(user_id, account_id):
                return ActionResult.fail("Account not found or unauthorized", ErrorCode.DB_NOT_FOUND)

        result = await self.trades.create_many(user_id, [self._normalize(t) for t in trades])
        if result.error:
            logger.error(f"[save_trades_batch] Error: {result.error}")
            return ActionResult.from_error(result.error)

        await self._after_mutation(user_id, *account_ids)
        return ActionResult.ok({"count": result.data or 0})

    @write_action
    async def delete_trade(self, user_id: str, trade_id: str) -> ActionResult:
        # Look the trade up first so we know which account to resync.
        existing = await self.trades.get_by_id(trade_id, user_id)
        account_id = existing.data.account_id if existing.data else None

        result = await self.trades.delete(trade_id, user_id)
        if result.error:
            logger.error(f"[delete_trade] Error: {result.error}")
            return ActionResult.from_error(result.error)

        await self._after_mutation(user_id, account_id)
        return ActionResult.ok()

    @write_action
    async def delete_trades_by_account(self, user_id: str, account_id: str) -> ActionResult:
        result = await self.trades.delete_by_account_id(account_id, user_id)
        if result.error:
            logger.error(f"[delete_trades_by_account] Error: {result.error}")
            return ActionResult.from_error(result.error)

        await self._after_mutation(user_id, account_id)
        return ActionResult.ok({"deletedCount": result.data or 0})


class LeaderboardService:
    def __init__(self, community: ICommunityRepository, view_builder: LeaderboardViewBuilder, limit: int = 100):
        self.community = community
        self.view_builder = view_builder
        self.limit = limit

    async def get_leaderboard(self) -> List[LeaderboardEntry]:
        """
        Ranked entries from the leaderboard view. If the view can't be built
        or read, falls back to the bare opt-in list with no stats.
        """
        try:
            await self.view_builder.ensure()
            result = await self.community.get_leaderboard_view(self.limit)
            if result.error:
                logger.warning(f"[get_leaderboard] View unavailable, using opt-in fallback: {result.error}")
                entries = await self._fallback_entries()
            else:
                entries = result.data or []
        except Exception:
            logger.exception("[get_leaderboard] Unexpected error")
            return []

        # Assign Ranks
        for i, entry in enumerate(entries):
            entry.rank = i + 1
        return entries

    async def _fallback_entries(self) -> List[LeaderboardEntry]:
        result = await self.community.get_opt_ins()
        if result.error:
            logger.error(f"[get_leaderboard] Opt-in fallback failed: {result.error}")
            return []
        return [
            LeaderboardEntry(rank=0, **opt_in.model_dump(exclude={"created_at", "updated_at"}))
            for opt_in in (result.data or [])[:self.limit]
        ]

    @read_action(lambda: None)
    async def get_my_status(self, user_id: str) -> Optional[LeaderboardOptIn]:
        result = await self.community.get_opt_in(user_id)
        if result.error:
            logger.error(f"[get_my_status] Error: {result.error}")
            return None
        return result.data

    @write_action
    async def join(self, user_id: str, data: LeaderboardJoin) -> ActionResult:
        result = await self.community.upsert_opt_in(user_id, data)
        if result.error:
            logger.error(f"[join] Error: {result.error}")
            return ActionResult.from_error(result.error)
        return ActionResult.ok(_dump(result.data))

    @write_action
    async def leave(self, user_id: str) -> ActionResult:
        result = await self.community.delete_opt_in(user_id)
        if result.error:
            logger.error(f"[leave] Error: {result.error}")
            return ActionResult.from_error(result.error)
        return ActionResult.ok()

    @write_action
    async def update_preferences(self, user_id: str, prefs: LeaderboardPreferences) -> ActionResult:
        result = await self.community.update_opt_in(user_id, prefs)
        if result.error:
            logger.error(f"[update_preferences] Error: {result.error}")
            return ActionResult.from_error(result.error)
        return ActionResult.ok(_dump(result.data))

    async def get_opt_ins(self) -> List[LeaderboardOptIn]:
        try:
            result = await self.community.get_opt_ins()
        except Exception:
            logger.exception("[get_opt_ins] Unexpected error")
            return []
        if result.error:
            logger.error(f"[get_opt_ins] Error: {result.error}")
            return []
        return result.data or []

    @read_action(lambda: None)
    async def get_display_name(self, user_id: str, claims: Optional[dict] = None) -> Optional[str]:
        """Existing leaderboard name first, then whatever name the session carries."""
        status = await self.community.get_opt_in(user_id)
        if status.data and status.data.display_name:
            return status.data.display_name

        claims = claims or {}
        for key in ("first_name", "full_name", "name"):
            if claims.get(key):
                return claims[key]
        return None
