"""
In-process implementation of the repository contracts.

Used when DATABASE_URL is not set (local runs) and by the test suite.
It mirrors the Postgres behaviour closely enough that services can't
tell the difference, including the leaderboard view only existing once
its DDL has been executed.
"""
import uuid
from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Set

from src.core.entities.account import Account, AccountInput
from src.core.entities.leaderboard import LeaderboardEntry, LeaderboardJoin, LeaderboardOptIn, LeaderboardPreferences
from src.core.entities.metrics import DashboardMetrics
from src.core.entities.result import ErrorCode, Result
from src.core.entities.trade import Trade, TradeInput, TradeOutcome
from src.core.interfaces.repositories import IAccountRepository, ICommunityRepository, ISqlExecutor, ITradeRepository
from src.core.use_cases.leaderboard_view import LEADERBOARD_VIEW
from src.core.use_cases.metrics_aggregator import average_r_multiple, summarize_dashboard


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryDatabase:
    def __init__(self):
        self.accounts: Dict[str, Account] = {}
        self.trades: Dict[str, Trade] = {}
        self.opt_ins: Dict[str, LeaderboardOptIn] = {}
        self.views: Set[str] = set()


class InMemoryAccountRepository(IAccountRepository):
    def __init__(self, db: InMemoryDatabase):
        self.db = db

    def _owned(self, account_id: str, user_id: str) -> Optional[Account]:
        account = self.db.accounts.get(account_id)
        if account is None or account.user_id != user_id:
            return None
        return account

    async def get_by_id(self, account_id: str, user_id: str) -> Result[Account]:
        account = self._owned(account_id, user_id)
        if account is None:
            return Result.failure("Account not found", ErrorCode.DB_NOT_FOUND, 404)
        return Result.success(account.model_copy())

    async def get_by_user_id(self, user_id: str) -> Result[List[Account]]:
        accounts = [a.model_copy() for a in self.db.accounts.values() if a.user_id == user_id]
        accounts.sort(key=lambda a: a.created_at)
        return Result.success(accounts)

    async def create(self, user_id: str, data: AccountInput) -> Result[Account]:
        now = _now()
        account = Account(
            id=data.id or str(uuid.uuid4()),
            user_id=user_id,
            name=data.name,
            currency=data.currency,
            initial_balance=data.initial_balance,
            current_balance=data.current_balance if data.current_balance is not None else data.initial_balance,
            leverage=data.leverage,
            max_drawdown=data.max_drawdown,
            created_at=now,
            updated_at=now,
        )
        if account.id in self.db.accounts:
            return Result.failure("Account id already in use", ErrorCode.DB_CONFLICT, 409)
        self.db.accounts[account.id] = account
        return Result.success(account.model_copy())

    async def update(self, account_id: str, user_id: str, data: AccountInput) -> Result[Account]:
        account = self._owned(account_id, user_id)
        if account is None:
            return Result.failure("Account not found", ErrorCode.DB_NOT_FOUND, 404)
        changes = data.model_dump(exclude={"id", "current_balance"})
        if data.current_balance is not None:
            changes["current_balance"] = data.current_balance
        updated = account.model_copy(update={**changes, "updated_at": _now()})
        self.db.accounts[account_id] = updated
        return Result.success(updated.model_copy())

    async def delete(self, account_id: str, user_id: str) -> Result[bool]:
        if self._owned(account_id, user_id) is None:
            return Result.failure("Account not found", ErrorCode.DB_NOT_FOUND, 404)
        del self.db.accounts[account_id]
        for trade_id in [t.id for t in self.db.trades.values() if t.account_id == account_id]:
            del self.db.trades[trade_id]
        return Result.success(True)

    async def update_balance(
        self,
        account_id: str,
        user_id: str,
        new_balance: float,
        expected_balance: Optional[float] = None
    ) -> Result[bool]:
        account = self._owned(account_id, user_id)
        if account is None:
            return Result.failure("Account not found", ErrorCode.DB_NOT_FOUND, 404)
        if expected_balance is not None and round(account.current_balance, 2) != round(expected_balance, 2):
            return Result.failure("Balance changed concurrently", ErrorCode.DB_CONFLICT, 409)
        self.db.accounts[account_id] = account.model_copy(
            update={"current_balance": round(new_balance, 2), "updated_at": _now()}
        )
        return Result.success(True)


class InMemoryTradeRepository(ITradeRepository):
    def __init__(self, db: InMemoryDatabase):
        self.db = db

    def _for_account(self, account_id: str, user_id: str, symbol: Optional[str] = None) -> List[Trade]:
        return [
            t for t in self.db.trades.values()
            if t.account_id == account_id and t.user_id == user_id and (symbol is None or t.symbol == symbol)
        ]

    def _build(self, user_id: str, data: TradeInput, trade_id: Optional[str] = None) -> Trade:
        fields = data.model_dump(exclude={"id"})
        fields["outcome"] = data.outcome or TradeOutcome.PENDING
        return Trade(id=trade_id or data.id or str(uuid.uuid4()), user_id=user_id, created_at=_now(), **fields)

    async def get_by_id(self, trade_id: str, user_id: str) -> Result[Trade]:
        trade = self.db.trades.get(trade_id)
        if trade is None or trade.user_id != user_id:
            return Result.failure("Trade not found", ErrorCode.DB_NOT_FOUND, 404)
        return Result.success(trade.model_copy())

    async def get_by_account_id(
        self,
        account_id: str,
        user_id: str,
        limit: Optional[int] = None,
        offset: int = 0,
        descending: bool = True,
        symbol: Optional[str] = None
    ) -> Result[List[Trade]]:
        trades = sorted(
            self._for_account(account_id, user_id, symbol),
            key=lambda t: (t.entry_date, t.entry_time or ""),
            reverse=descending,
        )
        end = offset + limit if limit is not None else None
        return Result.success([t.model_copy() for t in trades[offset:end]])

    async def count_by_account_id(self, account_id: str, user_id: str, symbol: Optional[str] = None) -> Result[int]:
        return Result.success(len(self._for_account(account_id, user_id, symbol)))

    async def create(self, user_id: str, data: TradeInput) -> Result[Trade]:
        trade = self._build(user_id, data)
        if trade.id in self.db.trades:
            return Result.failure("Trade id already in use", ErrorCode.DB_CONFLICT, 409)
        self.db.trades[trade.id] = trade
        return Result.success(trade.model_copy())

    async def create_many(self, user_id: str, data: List[TradeInput]) -> Result[int]:
        # all or nothing, like a single INSERT
        trades = [self._build(user_id, item) for item in data]
        ids = [t.id for t in trades]
        if len(set(ids)) != len(ids) or any(i in self.db.trades for i in ids):
            return Result.failure("Trade id already in use", ErrorCode.DB_CONFLICT, 409)
        for trade in trades:
            self.db.trades[trade.id] = trade
        return Result.success(len(trades))

    async def update(self, trade_id: str, user_id: str, data: TradeInput) -> Result[Trade]:
        existing = self.db.trades.get(trade_id)
        if existing is None or existing.user_id != user_id:
            return Result.failure("Trade not found", ErrorCode.DB_NOT_FOUND, 404)
        trade = self._build(user_id, data, trade_id).model_copy(update={"created_at": existing.created_at})
        self.db.trades[trade_id] = trade
        return Result.success(trade.model_copy())

    async def delete(self, trade_id: str, user_id: str) -> Result[bool]:
        trade = self.db.trades.get(trade_id)
        if trade is None or trade.user_id != user_id:
            return Result.failure("Trade not found", ErrorCode.DB_NOT_FOUND, 404)
        del self.db.trades[trade_id]
        return Result.success(True)

    async def delete_by_account_id(self, account_id: str, user_id: str) -> Result[int]:
        doomed = [t.id for t in self._for_account(account_id, user_id)]
        for trade_id in doomed:
            del self.db.trades[trade_id]
        return Result.success(len(doomed))

    async def get_dashboard_metrics(self, account_id: str, user_id: str) -> Result[DashboardMetrics]:
        return Result.success(summarize_dashboard(self._for_account(account_id, user_id)))


class InMemoryCommunityRepository(ICommunityRepository):
    def __init__(self, db: InMemoryDatabase):
        self.db = db

    async def get_opt_in(self, user_id: str) -> Result[Optional[LeaderboardOptIn]]:
        opt_in = self.db.opt_ins.get(user_id)
        return Result.success(opt_in.model_copy() if opt_in else None)

    async def upsert_opt_in(self, user_id: str, data: LeaderboardJoin) -> Result[LeaderboardOptIn]:
        now = _now()
        existing = self.db.opt_ins.get(user_id)
        opt_in = LeaderboardOptIn(
            user_id=user_id,
            created_at=existing.created_at if existing else now,
            updated_at=now,
            **data.model_dump(),
        )
        self.db.opt_ins[user_id] = opt_in
        return Result.success(opt_in.model_copy())

    async def delete_opt_in(self, user_id: str) -> Result[bool]:
        if user_id not in self.db.opt_ins:
            return Result.failure("Not on the leaderboard", ErrorCode.DB_NOT_FOUND, 404)
        del self.db.opt_ins[user_id]
        return Result.success(True)

    async def update_opt_in(self, user_id: str, prefs: LeaderboardPreferences) -> Result[LeaderboardOptIn]:
        existing = self.db.opt_ins.get(user_id)
        if existing is None:
            return Result.failure("Not on the leaderboard", ErrorCode.DB_NOT_FOUND, 404)
        updated = existing.model_copy(update={**prefs.model_dump(exclude_none=True), "updated_at": _now()})
        self.db.opt_ins[user_id] = updated
        return Result.success(updated.model_copy())

    async def get_opt_ins(self) -> Result[List[LeaderboardOptIn]]:
        opt_ins = sorted(self.db.opt_ins.values(), key=lambda o: o.created_at)
        return Result.success([o.model_copy() for o in opt_ins])

    async def get_leaderboard_view(self, limit: int) -> Result[List[LeaderboardEntry]]:
        if LEADERBOARD_VIEW not in self.db.views:
            return Result.failure(f'relation "{LEADERBOARD_VIEW}" does not exist')

        month_start = date.today().replace(day=1)
        rows = []
        for opt_in in self.db.opt_ins.values():
            trades = [
                t for t in self.db.trades.values()
                if t.user_id == opt_in.user_id and t.entry_date >= month_start
            ]
            total = len(trades)
            wins = sum(1 for t in trades if t.outcome == TradeOutcome.WIN)
            losses = sum(1 for t in trades if t.outcome == TradeOutcome.LOSS)
            gross_win = sum(t.pnl or 0.0 for t in trades if t.outcome == TradeOutcome.WIN)
            gross_loss = abs(sum(t.pnl or 0.0 for t in trades if t.outcome == TradeOutcome.LOSS))
            ratio = wins / total if total else None

            entry = LeaderboardEntry(
                rank=0,
                user_id=opt_in.user_id,
                display_name=opt_in.display_name,
                show_win_rate=opt_in.show_win_rate,
                show_profit_factor=opt_in.show_profit_factor,
                show_total_trades=opt_in.show_total_trades,
                show_pnl=opt_in.show_pnl,
                total_trades=total if opt_in.show_total_trades else None,
                wins=wins if opt_in.show_total_trades else None,
                losses=losses if opt_in.show_total_trades else None,
                win_rate=round(ratio * 100, 1) if opt_in.show_win_rate and ratio is not None else None,
                profit_factor=(
                    round(gross_win / gross_loss, 2) if opt_in.show_profit_factor and gross_loss > 0 else None
                ),
                total_pnl=sum(t.pnl or 0.0 for t in trades) if opt_in.show_pnl else None,
                avg_rr=average_r_multiple(trades),
            )
            rows.append((ratio, opt_in.created_at, entry))

        # win ratio DESC NULLS LAST, then oldest opt-in first
        rows.sort(key=lambda r: (r[0] is None, -(r[0] or 0.0), r[1]))
        return Result.success([entry for _, _, entry in rows[:limit]])


class InMemorySqlExecutor(ISqlExecutor):
    """Records statements; a CREATE ... VIEW makes that view readable."""

    def __init__(self, db: InMemoryDatabase):
        self.db = db
        self.statements: List[str] = []
        self.fail_with: Optional[Exception] = None

    async def execute(self, statement: str) -> None:
        self.statements.append(statement)
        if self.fail_with is not None:
            raise self.fail_with
        if "VIEW" in statement and LEADERBOARD_VIEW in statement:
            self.db.views.add(LEADERBOARD_VIEW)
