import asyncio
import logging
import uuid
from typing import Any, Callable, List, Optional, Sequence

import psycopg2
from psycopg2.extras import RealDictCursor, execute_values

from src.core.entities.account import Account, AccountInput
from src.core.entities.leaderboard import LeaderboardEntry, LeaderboardJoin, LeaderboardOptIn, LeaderboardPreferences
from src.core.entities.metrics import DashboardMetrics
from src.core.entities.result import ErrorCode, Result
from src.core.entities.trade import Trade, TradeInput, TradeOutcome
from src.core.interfaces.repositories import IAccountRepository, ICommunityRepository, ISqlExecutor, ITradeRepository
from src.core.use_cases.leaderboard_view import LEADERBOARD_VIEW

logger = logging.getLogger(__name__)

TRADE_COLUMNS = (
    "id", "account_id", "user_id", "symbol", "type", "entry_date", "entry_time", "exit_date", "exit_time",
    "entry_price", "exit_price", "stop_loss", "take_profit", "lot", "pnl", "outcome", "commission", "swap",
    "notes",
)


def _float(value: Any) -> Optional[float]:
    return float(value) if value is not None else None


class PostgresDatabase:
    """
    Connection handling shared by the Postgres repositories.
    Every call opens its own short-lived connection; blocking work is pushed
    to a thread so the event loop stays free.
    """

    def __init__(self, dsn: str):
        self.dsn = dsn
        self._init_db()

    def _init_db(self):
        conn = psycopg2.connect(self.dsn)
        cur = conn.cursor()

        # Accounts Table
        cur.execute("""
            CREATE TABLE IF NOT EXISTS accounts (
                id VARCHAR PRIMARY KEY,
                user_id VARCHAR NOT NULL,
                name VARCHAR NOT NULL,
                currency VARCHAR(8) DEFAULT 'USD',
                initial_balance NUMERIC(15,2) NOT NULL DEFAULT 0,
                current_balance NUMERIC(15,2) NOT NULL DEFAULT 0,
                leverage VARCHAR DEFAULT '1:100',
                max_drawdown NUMERIC(15,2) DEFAULT 0,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            );
        """)

        # Trades Table
        cur.execute("""
            CREATE TABLE IF NOT EXISTS trades (
                id VARCHAR PRIMARY KEY,
                account_id VARCHAR NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
                user_id VARCHAR NOT NULL,
                symbol VARCHAR NOT NULL,
                type VARCHAR(8) NOT NULL,
                entry_date DATE NOT NULL,
                entry_time VARCHAR,
                exit_date DATE,
                exit_time VARCHAR,
                entry_price NUMERIC NOT NULL,
                exit_price NUMERIC,
                stop_loss NUMERIC,
                take_profit NUMERIC,
                lot NUMERIC DEFAULT 1,
                pnl NUMERIC(15,2),
                outcome VARCHAR(16) DEFAULT 'pending',
                commission NUMERIC,
                swap NUMERIC,
                notes TEXT,
                created_at TIMESTAMPTZ DEFAULT NOW()
            );
        """)
        cur.execute("CREATE INDEX IF NOT EXISTS idx_trades_account_user ON trades (account_id, user_id);")

        # Leaderboard opt-in Table
        cur.execute("""
            CREATE TABLE IF NOT EXISTS leaderboard_opt_in (
                user_id VARCHAR PRIMARY KEY,
                display_name VARCHAR(50) NOT NULL,
                show_win_rate BOOLEAN DEFAULT TRUE,
                show_profit_factor BOOLEAN DEFAULT TRUE,
                show_total_trades BOOLEAN DEFAULT TRUE,
                show_pnl BOOLEAN DEFAULT FALSE,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            );
        """)

        conn.commit()
        cur.close()
        conn.close()

    def _execute(self, query: str, params: Sequence = (), fetch: str = "none") -> Any:
        conn = psycopg2.connect(self.dsn)
        try:
            cur = conn.cursor(cursor_factory=RealDictCursor)
            cur.execute(query, params)
            if fetch == "one":
                rows = cur.fetchone()
            elif fetch == "all":
                rows = cur.fetchall()
            else:
                rows = cur.rowcount
            conn.commit()
            cur.close()
            return rows
        finally:
            conn.close()

    def _execute_values(self, query: str, data: List[tuple]) -> int:
        conn = psycopg2.connect(self.dsn)
        try:
            cur = conn.cursor()
            execute_values(cur, query, data)
            conn.commit()
            cur.close()
            return len(data)
        finally:
            conn.close()

    async def run(self, label: str, fn: Callable, *args, **kwargs) -> Result:
        """Runs a blocking query in a thread and wraps driver errors in a Result."""
        try:
            return Result.success(await asyncio.to_thread(fn, *args, **kwargs))
        except psycopg2.IntegrityError as e:
            logger.warning(f"{label} conflicted: {e}")
            return Result.failure(f"{label} conflicted with an existing row", ErrorCode.DB_CONFLICT, 409)
        except psycopg2.Error as e:
            logger.error(f"{label} failed: {e}")
            return Result.failure(f"{label} failed", ErrorCode.DB_QUERY_FAILED, 500)


def _row_to_account(row: dict) -> Account:
    return Account(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        currency=row["currency"],
        initial_balance=float(row["initial_balance"]),
        current_balance=float(row["current_balance"]),
        leverage=row["leverage"],
        max_drawdown=float(row["max_drawdown"] or 0),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_trade(row: dict) -> Trade:
    return Trade(
        id=row["id"],
        account_id=row["account_id"],
        user_id=row["user_id"],
        symbol=row["symbol"],
        type=row["type"],
        entry_date=row["entry_date"],
        entry_time=row["entry_time"],
        exit_date=row["exit_date"],
        exit_time=row["exit_time"],
        entry_price=float(row["entry_price"]),
        exit_price=_float(row["exit_price"]),
        stop_loss=_float(row["stop_loss"]),
        take_profit=_float(row["take_profit"]),
        lot=float(row["lot"] or 1),
        pnl=_float(row["pnl"]),
        outcome=row["outcome"] or TradeOutcome.PENDING,
        commission=_float(row["commission"]),
        swap=_float(row["swap"]),
        notes=row["notes"],
        created_at=row["created_at"],
    )


def _trade_values(trade_id: str, user_id: str, data: TradeInput) -> tuple:
    outcome = data.outcome or TradeOutcome.PENDING
    return (
        trade_id, data.account_id, user_id, data.symbol, data.type.value, data.entry_date, data.entry_time,
        data.exit_date, data.exit_time, data.entry_price, data.exit_price, data.stop_loss, data.take_profit,
        data.lot, data.pnl, outcome.value, data.commission, data.swap, data.notes,
    )


class PostgresAccountRepository(IAccountRepository):
    def __init__(self, db: PostgresDatabase):
        self.db = db

    async def get_by_id(self, account_id: str, user_id: str) -> Result[Account]:
        res = await self.db.run(
            "get account", self.db._execute,
            "SELECT * FROM accounts WHERE id = %s AND user_id = %s", (account_id, user_id), "one"
        )
        if res.error:
            return res
        if res.data is None:
            return Result.failure("Account not found", ErrorCode.DB_NOT_FOUND, 404)
        return Result.success(_row_to_account(res.data))

    async def get_by_user_id(self, user_id: str) -> Result[List[Account]]:
        res = await self.db.run(
            "list accounts", self.db._execute,
            "SELECT * FROM accounts WHERE user_id = %s ORDER BY created_at", (user_id,), "all"
        )
        if res.error:
            return res
        return Result.success([_row_to_account(r) for r in res.data])

    async def create(self, user_id: str, data: AccountInput) -> Result[Account]:
        current = data.current_balance if data.current_balance is not None else data.initial_balance
        res = await self.db.run(
            "create account", self.db._execute,
            """
            INSERT INTO accounts (id, user_id, name, currency, initial_balance, current_balance, leverage, max_drawdown)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (data.id or str(uuid.uuid4()), user_id, data.name, data.currency, data.initial_balance, current,
             data.leverage, data.max_drawdown),
            "one"
        )
        if res.error:
            return res
        return Result.success(_row_to_account(res.data))

    async def update(self, account_id: str, user_id: str, data: AccountInput) -> Result[Account]:
        res = await self.db.run(
            "update account", self.db._execute,
            """
            UPDATE accounts
            SET name = %s, currency = %s, initial_balance = %s, leverage = %s, max_drawdown = %s,
                current_balance = COALESCE(%s, current_balance), updated_at = NOW()
            WHERE id = %s AND user_id = %s
            RETURNING *
            """,
            (data.name, data.currency, data.initial_balance, data.leverage, data.max_drawdown,
             data.current_balance, account_id, user_id),
            "one"
        )
        if res.error:
            return res
        if res.data is None:
            return Result.failure("Account not found", ErrorCode.DB_NOT_FOUND, 404)
        return Result.success(_row_to_account(res.data))

    async def delete(self, account_id: str, user_id: str) -> Result[bool]:
        # trades go with it via ON DELETE CASCADE
        res = await self.db.run(
            "delete account", self.db._execute,
            "DELETE FROM accounts WHERE id = %s AND user_id = %s", (account_id, user_id)
        )
        if res.error:
            return res
        if res.data == 0:
            return Result.failure("Account not found", ErrorCode.DB_NOT_FOUND, 404)
        return Result.success(True)

    async def update_balance(
        self,
        account_id: str,
        user_id: str,
        new_balance: float,
        expected_balance: Optional[float] = None
    ) -> Result[bool]:
        query = "UPDATE accounts SET current_balance = %s, updated_at = NOW() WHERE id = %s AND user_id = %s"
        params = [new_balance, account_id, user_id]
        if expected_balance is not None:
            query += " AND current_balance = %s"
            params.append(round(expected_balance, 2))

        res = await self.db.run("update balance", self.db._execute, query, params)
        if res.error:
            return res
        if res.data == 0:
            if expected_balance is not None:
                return Result.failure("Balance changed concurrently", ErrorCode.DB_CONFLICT, 409)
            return Result.failure("Account not found", ErrorCode.DB_NOT_FOUND, 404)
        return Result.success(True)


class PostgresTradeRepository(ITradeRepository):
    def __init__(self, db: PostgresDatabase):
        self.db = db

    async def get_by_id(self, trade_id: str, user_id: str) -> Result[Trade]:
        res = await self.db.run(
            "get trade", self.db._execute,
            "SELECT * FROM trades WHERE id = %s AND user_id = %s", (trade_id, user_id), "one"
        )
        if res.error:
            return res
        if res.data is None:
            return Result.failure("Trade not found", ErrorCode.DB_NOT_FOUND, 404)
        return Result.success(_row_to_trade(res.data))

    async def get_by_account_id(
        self,
        account_id: str,
        user_id: str,
        limit: Optional[int] = None,
        offset: int = 0,
        descending: bool = True,
        symbol: Optional[str] = None
    ) -> Result[List[Trade]]:
        direction = "DESC" if descending else "ASC"
        query = "SELECT * FROM trades WHERE account_id = %s AND user_id = %s"
        params: list = [account_id, user_id]

        if symbol:
            query += " AND symbol = %s"
            params.append(symbol)
        query += f" ORDER BY entry_date {direction}, entry_time {direction} NULLS LAST"
        if limit is not None:
            query += " LIMIT %s OFFSET %s"
            params.extend([limit, offset])

        res = await self.db.run("list trades", self.db._execute, query, params, "all")
        if res.error:
            return res
        return Result.success([_row_to_trade(r) for r in res.data])

    async def count_by_account_id(self, account_id: str, user_id: str, symbol: Optional[str] = None) -> Result[int]:
        query = "SELECT COUNT(*) AS n FROM trades WHERE account_id = %s AND user_id = %s"
        params: list = [account_id, user_id]
        if symbol:
            query += " AND symbol = %s"
            params.append(symbol)

        res = await self.db.run("count trades", self.db._execute, query, params, "one")
        if res.error:
            return res
        return Result.success(int(res.data["n"]))

    async def create(self, user_id: str, data: TradeInput) -> Result[Trade]:
        placeholders = ", ".join(["%s"] * len(TRADE_COLUMNS))
        res = await self.db.run(
            "create trade", self.db._execute,
            f"INSERT INTO trades ({', '.join(TRADE_COLUMNS)}) VALUES ({placeholders}) RETURNING *",
            _trade_values(data.id or str(uuid.uuid4()), user_id, data),
            "one"
        )
        if res.error:
            return res
        return Result.success(_row_to_trade(res.data))

    async def create_many(self, user_id: str, data: List[TradeInput]) -> Result[int]:
        rows = [_trade_values(t.id or str(uuid.uuid4()), user_id, t) for t in data]
        return await self.db.run(
            "bulk insert trades", self.db._execute_values,
            f"INSERT INTO trades ({', '.join(TRADE_COLUMNS)}) VALUES %s",
            rows
        )

    async def update(self, trade_id: str, user_id: str, data: TradeInput) -> Result[Trade]:
        values = _trade_values(trade_id, user_id, data)
        assignments = ", ".join(f"{col} = %s" for col in TRADE_COLUMNS[1:])
        res = await self.db.run(
            "update trade", self.db._execute,
            f"UPDATE trades SET {assignments} WHERE id = %s AND user_id = %s RETURNING *",
            (*values[1:], trade_id, user_id),
            "one"
        )
        if res.error:
            return res
        if res.data is None:
            return Result.failure("Trade not found", ErrorCode.DB_NOT_FOUND, 404)
        return Result.success(_row_to_trade(res.data))

    async def delete(self, trade_id: str, user_id: str) -> Result[bool]:
        res = await self.db.run(
            "delete trade", self.db._execute,
            "DELETE FROM trades WHERE id = %s AND user_id = %s", (trade_id, user_id)
        )
        if res.error:
            return res
        if res.data == 0:
            return Result.failure("Trade not found", ErrorCode.DB_NOT_FOUND, 404)
        return Result.success(True)

    async def delete_by_account_id(self, account_id: str, user_id: str) -> Result[int]:
        return await self.db.run(
            "delete account trades", self.db._execute,
            "DELETE FROM trades WHERE account_id = %s AND user_id = %s", (account_id, user_id)
        )

    async def get_dashboard_metrics(self, account_id: str, user_id: str) -> Result[DashboardMetrics]:
        res = await self.db.run(
            "dashboard metrics", self.db._execute,
            """
            SELECT
                COUNT(*) AS total_trades,
                COUNT(*) FILTER (WHERE outcome = 'win') AS wins,
                COUNT(*) FILTER (WHERE outcome = 'loss') AS losses,
                COALESCE(SUM(pnl), 0) AS total_pnl
            FROM trades
            WHERE account_id = %s AND user_id = %s
            """,
            (account_id, user_id),
            "one"
        )
        if res.error:
            return res
        row = res.data
        total = int(row["total_trades"])
        wins = int(row["wins"])
        return Result.success(DashboardMetrics(
            total_trades=total,
            wins=wins,
            losses=int(row["losses"]),
            win_rate=(wins / total) * 100 if total > 0 else 0.0,
            total_pnl=float(row["total_pnl"]),
        ))


def _row_to_opt_in(row: dict) -> LeaderboardOptIn:
    return LeaderboardOptIn(**row)


class PostgresCommunityRepository(ICommunityRepository):
    def __init__(self, db: PostgresDatabase):
        self.db = db

    async def get_opt_in(self, user_id: str) -> Result[Optional[LeaderboardOptIn]]:
        res = await self.db.run(
            "get leaderboard status", self.db._execute,
            "SELECT * FROM leaderboard_opt_in WHERE user_id = %s", (user_id,), "one"
        )
        if res.error:
            return res
        return Result.success(_row_to_opt_in(res.data) if res.data else None)

    async def upsert_opt_in(self, user_id: str, data: LeaderboardJoin) -> Result[LeaderboardOptIn]:
        res = await self.db.run(
            "join leaderboard", self.db._execute,
            """
            INSERT INTO leaderboard_opt_in
                (user_id, display_name, show_win_rate, show_profit_factor, show_total_trades, show_pnl)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id) DO UPDATE SET
                display_name = EXCLUDED.display_name,
                show_win_rate = EXCLUDED.show_win_rate,
                show_profit_factor = EXCLUDED.show_profit_factor,
                show_total_trades = EXCLUDED.show_total_trades,
                show_pnl = EXCLUDED.show_pnl,
                updated_at = NOW()
            RETURNING *
            """,
            (user_id, data.display_name, data.show_win_rate, data.show_profit_factor,
             data.show_total_trades, data.show_pnl),
            "one"
        )
        if res.error:
            return res
        return Result.success(_row_to_opt_in(res.data))

    async def delete_opt_in(self, user_id: str) -> Result[bool]:
        res = await self.db.run(
            "leave leaderboard", self.db._execute,
            "DELETE FROM leaderboard_opt_in WHERE user_id = %s", (user_id,)
        )
        if res.error:
            return res
        if res.data == 0:
            return Result.failure("Not on the leaderboard", ErrorCode.DB_NOT_FOUND, 404)
        return Result.success(True)

    async def update_opt_in(self, user_id: str, prefs: LeaderboardPreferences) -> Result[LeaderboardOptIn]:
        changes = prefs.model_dump(exclude_none=True)
        assignments = "".join(f"{col} = %s, " for col in changes)
        res = await self.db.run(
            "update leaderboard preferences", self.db._execute,
            f"UPDATE leaderboard_opt_in SET {assignments}updated_at = NOW() WHERE user_id = %s RETURNING *",
            (*changes.values(), user_id),
            "one"
        )
        if res.error:
            return res
        if res.data is None:
            return Result.failure("Not on the leaderboard", ErrorCode.DB_NOT_FOUND, 404)
        return Result.success(_row_to_opt_in(res.data))

    async def get_opt_ins(self) -> Result[List[LeaderboardOptIn]]:
        res = await self.db.run(
            "list leaderboard opt-ins", self.db._execute,
            "SELECT * FROM leaderboard_opt_in ORDER BY created_at", (), "all"
        )
        if res.error:
            return res
        return Result.success([_row_to_opt_in(r) for r in res.data])

    async def get_leaderboard_view(self, limit: int) -> Result[List[LeaderboardEntry]]:
        res = await self.db.run(
            "read leaderboard view", self.db._execute,
            f"SELECT * FROM {LEADERBOARD_VIEW} LIMIT %s", (limit,), "all"
        )
        if res.error:
            return res

        entries = []
        for row in res.data:
            entries.append(LeaderboardEntry(
                rank=0,
                user_id=row["user_id"],
                display_name=row["display_name"],
                show_win_rate=row["show_win_rate"],
                show_profit_factor=row["show_profit_factor"],
                show_total_trades=row["show_total_trades"],
                show_pnl=row["show_pnl"],
                total_trades=row["total_trades"],
                wins=row["wins"],
                losses=row["losses"],
                win_rate=_float(row["win_rate"]),
                profit_factor=_float(row["profit_factor"]),
                total_pnl=_float(row["total_pnl"]),
                avg_rr=_float(row["avg_rr"]),
            ))
        return Result.success(entries)


class PostgresSqlExecutor(ISqlExecutor):
    def __init__(self, db: PostgresDatabase):
        self.db = db

    async def execute(self, statement: str) -> None:
        await asyncio.to_thread(self.db._execute, statement)
