"""
Tests for the leaderboard: view build/caching, ranking, hidden stats and the opt-in fallback.
"""
from datetime import date, timedelta

import pytest

from src.core.entities.account import AccountInput
from src.core.entities.leaderboard import LeaderboardJoin, LeaderboardPreferences
from src.core.entities.result import ErrorCode
from src.core.entities.trade import TradeInput
from src.core.use_cases.leaderboard_view import LEADERBOARD_VIEW, LEADERBOARD_VIEW_DDL, LeaderboardViewBuilder
from src.infrastructure.persistence.memory_repo import InMemorySqlExecutor


async def record_trades(container, user_id, pnls, entry_date=None):
    account = await container.accounts.save_account(user_id, AccountInput(name="Main", initial_balance=1000))
    batch = [
        TradeInput(
            account_id=account.data["id"],
            symbol="EURUSD",
            entry_date=entry_date or date.today(),
            entry_price=1.1,
            pnl=pnl,
        )
        for pnl in pnls
    ]
    await container.trades.save_trades_batch(user_id, batch)


def test_ddl_replaces_view():
    assert LEADERBOARD_VIEW_DDL.strip().startswith(f"CREATE OR REPLACE VIEW {LEADERBOARD_VIEW}")


@pytest.mark.asyncio
async def test_leaderboard_ranks_by_win_rate(container):
    await record_trades(container, "alice", [10.0, -5.0])          # 50%
    await record_trades(container, "bob", [10.0, 20.0, -5.0, 8.0])  # 75%
    await container.leaderboard.join("alice", LeaderboardJoin(display_name="Alice"))
    await container.leaderboard.join("bob", LeaderboardJoin(display_name="Bob"))

    entries = await container.leaderboard.get_leaderboard()

    assert [e.display_name for e in entries] == ["Bob", "Alice"]
    assert [e.rank for e in entries] == [1, 2]
    bob = entries[0]
    assert bob.total_trades == 4
    assert bob.wins == 3
    assert bob.losses == 1
    assert bob.win_rate == 75.0
    assert bob.profit_factor == 7.6
    # show_pnl defaults to False
    assert bob.total_pnl is None


@pytest.mark.asyncio
async def test_traders_without_trades_rank_last(container):
    await container.leaderboard.join("newbie", LeaderboardJoin(display_name="Newbie"))
    await record_trades(container, "carol", [-3.0])
    await container.leaderboard.join("carol", LeaderboardJoin(display_name="Carol"))

    entries = await container.leaderboard.get_leaderboard()

    assert [e.display_name for e in entries] == ["Carol", "Newbie"]
    assert entries[0].win_rate == 0.0
    assert entries[1].total_trades == 0
    assert entries[1].win_rate is None


@pytest.mark.asyncio
async def test_hidden_stats_are_null(container):
    await record_trades(container, "dave", [10.0, -5.0])
    await container.leaderboard.join(
        "dave",
        LeaderboardJoin(
            display_name="Dave",
            show_win_rate=False,
            show_profit_factor=False,
            show_total_trades=False,
            show_pnl=True,
        ),
    )

    [entry] = await container.leaderboard.get_leaderboard()

    assert entry.win_rate is None
    assert entry.profit_factor is None
    assert entry.total_trades is None
    assert entry.wins is None
    assert entry.total_pnl == 5.0


@pytest.mark.asyncio
async def test_falls_back_to_opt_ins_when_view_cannot_be_built(container):
    container.executor.fail_with = RuntimeError("permission denied for schema public")
    await record_trades(container, "alice", [10.0])
    await container.leaderboard.join("alice", LeaderboardJoin(display_name="Alice"))
    await container.leaderboard.join("bob", LeaderboardJoin(display_name="Bob"))

    entries = await container.leaderboard.get_leaderboard()

    assert [e.rank for e in entries] == [1, 2]
    assert [e.display_name for e in entries] == ["Alice", "Bob"]
    assert all(e.win_rate is None and e.total_trades is None for e in entries)
    assert container.view_builder.ready is False


@pytest.mark.asyncio
async def test_ready_view_is_not_rebuilt(db):
    executor = InMemorySqlExecutor(db)
    builder = LeaderboardViewBuilder(executor)

    assert await builder.ensure() is True
    assert await builder.ensure() is True
    assert len(executor.statements) == 1

    assert await builder.ensure(force=True) is True
    assert len(executor.statements) == 2


@pytest.mark.asyncio
async def test_view_rebuilt_every_time_without_cache(db):
    executor = InMemorySqlExecutor(db)
    builder = LeaderboardViewBuilder(executor, cache_ready=False)

    await builder.ensure()
    await builder.ensure()

    assert len(executor.statements) == 2


@pytest.mark.asyncio
async def test_failed_build_is_retried(db):
    executor = InMemorySqlExecutor(db)
    executor.fail_with = RuntimeError("connection refused")
    builder = LeaderboardViewBuilder(executor)

    assert await builder.ensure() is False
    assert builder.ready is False

    executor.fail_with = None
    assert await builder.ensure() is True
    assert builder.ready is True
    assert LEADERBOARD_VIEW in db.views


@pytest.mark.asyncio
async def test_join_defaults_and_rejoin_keeps_single_row(container):
    first = await container.leaderboard.join("erin", LeaderboardJoin(display_name="Erin"))
    assert first.success
    assert first.data["showWinRate"] is True
    assert first.data["showPnl"] is False

    await container.leaderboard.join("erin", LeaderboardJoin(display_name="Erin R"))
    opt_ins = await container.leaderboard.get_opt_ins()

    assert len(opt_ins) == 1
    assert opt_ins[0].display_name == "Erin R"


@pytest.mark.asyncio
async def test_preferences_update_only_given_fields(container):
    await container.leaderboard.join("frank", LeaderboardJoin(display_name="Frank"))

    result = await container.leaderboard.update_preferences("frank", LeaderboardPreferences(show_pnl=True))

    assert result.success
    status = await container.leaderboard.get_my_status("frank")
    assert status.show_pnl is True
    assert status.display_name == "Frank"
    assert status.show_win_rate is True


@pytest.mark.asyncio
async def test_preferences_without_opt_in_fail(container):
    result = await container.leaderboard.update_preferences("ghost", LeaderboardPreferences(show_pnl=True))

    assert result.success is False
    assert result.code == ErrorCode.DB_NOT_FOUND


@pytest.mark.asyncio
async def test_leave_removes_opt_in(container):
    await container.leaderboard.join("gina", LeaderboardJoin(display_name="Gina"))

    assert (await container.leaderboard.leave("gina")).success
    assert await container.leaderboard.get_my_status("gina") is None
    assert await container.leaderboard.get_leaderboard() == []


@pytest.mark.asyncio
async def test_writes_require_user(container):
    result = await container.leaderboard.join(None, LeaderboardJoin(display_name="Anon"))

    assert result.success is False
    assert result.code == ErrorCode.AUTH_REQUIRED


@pytest.mark.asyncio
async def test_display_name_prefers_opt_in_then_claims(container):
    assert await container.leaderboard.get_display_name("hank", {"full_name": "Hank Hill", "name": "hh"}) == "Hank Hill"
    assert await container.leaderboard.get_display_name("hank", {}) is None

    await container.leaderboard.join("hank", LeaderboardJoin(display_name="Propane"))
    assert await container.leaderboard.get_display_name("hank", {"first_name": "Hank"}) == "Propane"


@pytest.mark.asyncio
async def test_only_current_month_trades_count(container):
    month_start = date.today().replace(day=1)
    await record_trades(container, "ivan", [25.0], entry_date=month_start - timedelta(days=400))
    await record_trades(container, "ivan", [-5.0], entry_date=month_start)
    await container.leaderboard.join("ivan", LeaderboardJoin(display_name="Ivan", show_pnl=True))

    [entry] = await container.leaderboard.get_leaderboard()

    assert entry.total_trades == 1
    assert entry.wins == 0
    assert entry.win_rate == 0.0
    assert entry.total_pnl == -5.0


@pytest.mark.asyncio
async def test_trader_with_only_old_trades_has_no_win_rate(container):
    await record_trades(container, "jill", [10.0], entry_date=date.today().replace(day=1) - timedelta(days=1))
    await container.leaderboard.join("jill", LeaderboardJoin(display_name="Jill"))

    [entry] = await container.leaderboard.get_leaderboard()

    assert entry.total_trades == 0
    assert entry.win_rate is None


def test_view_filters_to_current_month():
    assert "DATE_TRUNC('month', CURRENT_DATE)" in LEADERBOARD_VIEW_DDL
