import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Body, Depends, FastAPI, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware

# --- Imports ---
from src.api.auth import RequestContext, get_request_context
from src.config import Settings
from src.core.entities.account import Account, AccountInput, BalanceUpdate, SyncSummary
from src.core.entities.leaderboard import LeaderboardEntry, LeaderboardJoin, LeaderboardOptIn, LeaderboardPreferences
from src.core.entities.metrics import AccountMetrics, DashboardMetrics
from src.core.entities.result import ActionResult, ErrorCode
from src.core.entities.trade import Trade, TradeInput, TradePage
from src.core.services import AccountService, LeaderboardService, MetricsService, TradeService
from src.core.use_cases.balance_sync import BalanceSynchronizer
from src.core.use_cases.leaderboard_view import LeaderboardViewBuilder
from src.infrastructure.cache.redis_service import RedisService

settings = Settings.from_env()

# Setup Logging
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger("TradeJournal")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # One container per process; every request shares its repositories.
    app.state.container = build_container(app.state.settings)
    yield


app = FastAPI(
    title="TradeJournal API",
    version="1.0.0",
    description="Trading journal accounts, trades, balance reconciliation & leaderboard",
    lifespan=lifespan
)
app.state.settings = settings

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Dependency Injection ---

class Container:
    """Wires one set of repositories into the services the endpoints use."""

    def __init__(self, accounts, trades, community, executor, cache, settings: Settings):
        self.executor = executor
        self.synchronizer = BalanceSynchronizer(accounts, trades, tolerance=settings.balance_tolerance)
        self.metrics = MetricsService(trades, cache=cache, ttl_seconds=settings.metrics_cache_ttl)
        self.view_builder = LeaderboardViewBuilder(executor, cache_ready=settings.leaderboard_view_cache)

        self.accounts = AccountService(accounts, trades, self.metrics, self.synchronizer)
        self.trades = TradeService(trades, accounts, self.metrics, self.synchronizer)
        self.leaderboard = LeaderboardService(community, self.view_builder, limit=settings.leaderboard_limit)


def build_container(settings: Settings) -> Container:
    cache = RedisService(settings.redis_url)

    if settings.database_url:
        from src.infrastructure.persistence.postgres_repo import (
            PostgresAccountRepository,
            PostgresCommunityRepository,
            PostgresDatabase,
            PostgresSqlExecutor,
            PostgresTradeRepository,
        )
        try:
            db = PostgresDatabase(settings.database_url)
        except Exception as e:
            logger.error(f"Failed to connect to DB: {e}")
            raise
        logger.info("Using Postgres persistence.")
        return Container(
            PostgresAccountRepository(db),
            PostgresTradeRepository(db),
            PostgresCommunityRepository(db),
            PostgresSqlExecutor(db),
            cache,
            settings,
        )

    from src.infrastructure.persistence.memory_repo import (
        InMemoryAccountRepository,
        InMemoryCommunityRepository,
        InMemoryDatabase,
        InMemorySqlExecutor,
        InMemoryTradeRepository,
    )
    logger.warning("DATABASE_URL not set. Using in-memory persistence; data is lost on restart.")
    db = InMemoryDatabase()
    return Container(
        InMemoryAccountRepository(db),
        InMemoryTradeRepository(db),
        InMemoryCommunityRepository(db),
        InMemorySqlExecutor(db),
        cache,
        settings,
    )


def get_container(request: Request) -> Container:
    return request.app.state.container


STATUS_BY_CODE = {
    ErrorCode.AUTH_REQUIRED: 401,
    ErrorCode.DB_NOT_FOUND: 404,
    ErrorCode.DB_CONFLICT: 409,
    ErrorCode.VALIDATION_FAILED: 422,
}


def _respond(result: ActionResult, response: Response) -> ActionResult:
    if not result.success:
        response.status_code = STATUS_BY_CODE.get(result.code, 500)
    return result


# --- Endpoints ---

@app.get("/health")
async def health(container: Container = Depends(get_container)):
    return {"status": "healthy", "leaderboardViewReady": container.view_builder.ready}


# Accounts

@app.get("/v1/accounts", response_model=List[Account])
async def list_accounts(
    ctx: RequestContext = Depends(get_request_context),
    container: Container = Depends(get_container)
):
    return await container.accounts.get_accounts(ctx.user_id)


@app.post("/v1/accounts", response_model=ActionResult)
async def save_account(
    response: Response,
    account: AccountInput,
    ctx: RequestContext = Depends(get_request_context),
    container: Container = Depends(get_container)
):
    """Creates the account, or updates it when the id exists and is yours."""
    return _respond(await container.accounts.save_account(ctx.user_id, account), response)


@app.post("/v1/accounts/sync", response_model=SyncSummary)
async def sync_all_accounts(
    ctx: RequestContext = Depends(get_request_context),
    container: Container = Depends(get_container)
):
    return await container.accounts.sync_all_balances(ctx.user_id)


@app.get("/v1/accounts/{account_id}", response_model=Optional[Account])
async def get_account(
    account_id: str,
    ctx: RequestContext = Depends(get_request_context),
    container: Container = Depends(get_container)
):
    return await container.accounts.get_account(ctx.user_id, account_id)


@app.delete("/v1/accounts/{account_id}", response_model=ActionResult)
async def delete_account(
    response: Response,
    account_id: str,
    ctx: RequestContext = Depends(get_request_context),
    container: Container = Depends(get_container)
):
    return _respond(await container.accounts.delete_account(ctx.user_id, account_id), response)


@app.put("/v1/accounts/{account_id}/balance", response_model=ActionResult)
async def update_account_balance(
    response: Response,
    account_id: str,
    body: BalanceUpdate,
    ctx: RequestContext = Depends(get_request_context),
    container: Container = Depends(get_container)
):
    result = await container.accounts.update_account_balance(ctx.user_id, account_id, body.new_balance)
    return _respond(result, response)


@app.post("/v1/accounts/{account_id}/sync", response_model=ActionResult)
async def sync_account(
    response: Response,
    account_id: str,
    ctx: RequestContext = Depends(get_request_context),
    container: Container = Depends(get_container)
):
    """Recomputes current balance = initial balance + total trade pnl."""
    return _respond(await container.accounts.sync_account_balance(ctx.user_id, account_id), response)


@app.get("/v1/accounts/{account_id}/has-trades")
async def account_has_trades(
    account_id: str,
    ctx: RequestContext = Depends(get_request_context),
    container: Container = Depends(get_container)
):
    return {"hasTrades": await container.accounts.check_account_has_trades(ctx.user_id, account_id)}


@app.get("/v1/accounts/{account_id}/metrics", response_model=Optional[AccountMetrics])
async def get_account_metrics(
    account_id: str,
    ctx: RequestContext = Depends(get_request_context),
    container: Container = Depends(get_container)
):
    return await container.accounts.get_account_metrics(ctx.user_id, account_id)


@app.get("/v1/accounts/{account_id}/dashboard-metrics", response_model=Optional[DashboardMetrics])
async def get_dashboard_metrics(
    account_id: str,
    ctx: RequestContext = Depends(get_request_context),
    container: Container = Depends(get_container)
):
    return await container.accounts.get_dashboard_metrics(ctx.user_id, account_id)


# Trades

@app.get("/v1/accounts/{account_id}/trades", response_model=List[Trade])
async def list_trades(
    account_id: str,
    ctx: RequestContext = Depends(get_request_context),
    container: Container = Depends(get_container)
):
    return await container.trades.get_trades(ctx.user_id, account_id)


@app.get("/v1/accounts/{account_id}/trades/page", response_model=TradePage)
async def list_trades_page(
    account_id: str,
    page: int = Query(1, ge=1),
    pageSize: int = Query(20, ge=1, le=500),
    sort: str = Query("desc", pattern="^(asc|desc)$"),
    symbol: Optional[str] = Query(None),
    ctx: RequestContext = Depends(get_request_context),
    container: Container = Depends(get_container)
):
    return await container.trades.get_trades_paginated(ctx.user_id, account_id, page, pageSize, sort, symbol)


@app.delete("/v1/accounts/{account_id}/trades", response_model=ActionResult)
async def delete_account_trades(
    response: Response,
    account_id: str,
    ctx: RequestContext = Depends(get_request_context),
    container: Container = Depends(get_container)
):
    return _respond(await container.trades.delete_trades_by_account(ctx.user_id, account_id), response)


@app.post("/v1/trades", response_model=ActionResult)
async def save_trade(
    response: Response,
    trade: TradeInput,
    ctx: RequestContext = Depends(get_request_context),
    container: Container = Depends(get_container)
):
    """
    Creates or updates a trade, then resyncs the account balance.
    A failed resync is logged and never fails the save.
    """
    return _respond(await container.trades.save_trade(ctx.user_id, trade), response)


@app.post("/v1/trades/batch", response_model=ActionResult)
async def save_trades_batch(
    response: Response,
    trades: List[TradeInput] = Body(...),
    ctx: RequestContext = Depends(get_request_context),
    container: Container = Depends(get_container)
):
    return _respond(await container.trades.save_trades_batch(ctx.user_id, trades), response)


@app.get("/v1/trades/{trade_id}", response_model=Optional[Trade])
async def get_trade(
    trade_id: str,
    ctx: RequestContext = Depends(get_request_context),
    container: Container = Depends(get_container)
):
    return await container.trades.get_trade(ctx.user_id, trade_id)


@app.delete("/v1/trades/{trade_id}", response_model=ActionResult)
async def delete_trade(
    response: Response,
    trade_id: str,
    ctx: RequestContext = Depends(get_request_context),
    container: Container = Depends(get_container)
):
    return _respond(await container.trades.delete_trade(ctx.user_id, trade_id), response)


# Leaderboard

@app.get("/v1/leaderboard", response_model=List[LeaderboardEntry])
async def get_leaderboard(container: Container = Depends(get_container)):
    """
    Ranked opt-in traders. Degrades to the bare opt-in list if the
    aggregate view can't be built or read.
    """
    return await container.leaderboard.get_leaderboard()


@app.post("/v1/leaderboard", response_model=ActionResult)
async def join_leaderboard(
    response: Response,
    body: LeaderboardJoin,
    ctx: RequestContext = Depends(get_request_context),
    container: Container = Depends(get_container)
):
    return _respond(await container.leaderboard.join(ctx.user_id, body), response)


@app.delete("/v1/leaderboard", response_model=ActionResult)
async def leave_leaderboard(
    response: Response,
    ctx: RequestContext = Depends(get_request_context),
    container: Container = Depends(get_container)
):
    return _respond(await container.leaderboard.leave(ctx.user_id), response)


@app.get("/v1/leaderboard/me", response_model=Optional[LeaderboardOptIn])
async def my_leaderboard_status(
    ctx: RequestContext = Depends(get_request_context),
    container: Container = Depends(get_container)
):
    return await container.leaderboard.get_my_status(ctx.user_id)


@app.patch("/v1/leaderboard/preferences", response_model=ActionResult)
async def update_leaderboard_preferences(
    response: Response,
    body: LeaderboardPreferences,
    ctx: RequestContext = Depends(get_request_context),
    container: Container = Depends(get_container)
):
    return _respond(await container.leaderboard.update_preferences(ctx.user_id, body), response)


@app.get("/v1/leaderboard/opt-ins", response_model=List[LeaderboardOptIn])
async def leaderboard_opt_ins(container: Container = Depends(get_container)):
    return await container.leaderboard.get_opt_ins()


@app.get("/v1/leaderboard/display-name")
async def leaderboard_display_name(
    ctx: RequestContext = Depends(get_request_context),
    container: Container = Depends(get_container)
):
    return {"displayName": await container.leaderboard.get_display_name(ctx.user_id, ctx.claims)}
