"""
Tests for balance reconciliation: current_balance = initial_balance + total pnl.
"""
from datetime import date

import pytest

from src.core.entities.account import AccountInput
from src.core.entities.result import AppError, ErrorCode, Result
from src.core.entities.trade import TradeInput
from src.core.services import AccountService, MetricsService, TradeService
from src.core.use_cases.balance_sync import BalanceSynchronizer
from src.infrastructure.persistence.memory_repo import InMemoryAccountRepository, InMemoryTradeRepository

USER = "user-1"


class CountingAccounts(InMemoryAccountRepository):
    def __init__(self, db):
        super().__init__(db)
        self.balance_writes = 0

    async def update_balance(self, account_id, user_id, new_balance, expected_balance=None):
        self.balance_writes += 1
        return await super().update_balance(account_id, user_id, new_balance, expected_balance)


class RacingAccounts(InMemoryAccountRepository):
    """Another writer changes the balance between our read and our write."""

    async def update_balance(self, account_id, user_id, new_balance, expected_balance=None):
        account = self.db.accounts[account_id]
        self.db.accounts[account_id] = account.model_copy(update={"current_balance": 777.0})
        return await super().update_balance(account_id, user_id, new_balance, expected_balance)


class BrokenMetricsTrades(InMemoryTradeRepository):
    async def get_dashboard_metrics(self, account_id, user_id):
        return Result.failure("connection reset")


def build(db, accounts_cls=CountingAccounts, trades_cls=InMemoryTradeRepository):
    accounts = accounts_cls(db)
    trades = trades_cls(db)
    sync = BalanceSynchronizer(accounts, trades)
    metrics = MetricsService(trades)
    return accounts, trades, sync, TradeService(trades, accounts, metrics, sync), AccountService(accounts, trades, metrics, sync)


async def new_account(accounts, initial=1000.0, current=None) -> str:
    res = await accounts.create(USER, AccountInput(name="Main", initial_balance=initial, current_balance=current))
    return res.data.id


def trade(account_id, pnl, day=1) -> TradeInput:
    return TradeInput(account_id=account_id, symbol="EURUSD", entry_date=date(2024, 1, day), entry_price=1.1, pnl=pnl)


async def balance(accounts, account_id) -> float:
    return (await accounts.get_by_id(account_id, USER)).data.current_balance


@pytest.mark.asyncio
async def test_trade_mutations_resync_balance(db):
    accounts, _, _, trades_svc, _ = build(db)
    account_id = await new_account(accounts)

    first = await trades_svc.save_trade(USER, trade(account_id, 50.0))
    assert first.success
    assert await balance(accounts, account_id) == pytest.approx(1050.0)

    second = await trades_svc.save_trade(USER, trade(account_id, -20.0, day=2))
    assert second.success
    assert await balance(accounts, account_id) == pytest.approx(1030.0)

    deleted = await trades_svc.delete_trade(USER, second.data["id"])
    assert deleted.success
    assert await balance(accounts, account_id) == pytest.approx(1050.0)


@pytest.mark.asyncio
async def test_editing_trade_pnl_resyncs(db):
    accounts, _, _, trades_svc, _ = build(db)
    account_id = await new_account(accounts)

    saved = await trades_svc.save_trade(USER, trade(account_id, 50.0))
    edited = trade(account_id, 80.0).model_copy(update={"id": saved.data["id"]})
    result = await trades_svc.save_trade(USER, edited)

    assert result.success
    assert result.data["outcome"] == "win"
    assert await balance(accounts, account_id) == pytest.approx(1080.0)


@pytest.mark.asyncio
async def test_zero_trade_account_syncs_to_initial_balance(db):
    accounts, _, sync, _, _ = build(db)
    account_id = await new_account(accounts, initial=1000.0, current=940.0)

    assert await sync.sync_balance(account_id, USER) is True
    assert await balance(accounts, account_id) == pytest.approx(1000.0)


@pytest.mark.asyncio
async def test_second_sync_is_a_no_op(db):
    accounts, _, sync, _, _ = build(db)
    account_id = await new_account(accounts, initial=1000.0, current=0.0)

    assert await sync.sync_balance(account_id, USER) is True
    assert await sync.sync_balance(account_id, USER) is False
    assert accounts.balance_writes == 1


@pytest.mark.asyncio
async def test_difference_within_tolerance_is_not_written(db):
    accounts, _, sync, _, _ = build(db)
    account_id = await new_account(accounts, initial=1000.0, current=1000.01)

    assert await sync.sync_balance(account_id, USER) is False
    assert accounts.balance_writes == 0


@pytest.mark.asyncio
async def test_deleting_all_trades_restores_initial_balance(db):
    accounts, _, _, trades_svc, _ = build(db)
    account_id = await new_account(accounts)
    batch = await trades_svc.save_trades_batch(USER, [trade(account_id, 50.0), trade(account_id, 25.0, day=2)])
    assert batch.data == {"count": 2}
    assert await balance(accounts, account_id) == pytest.approx(1075.0)

    result = await trades_svc.delete_trades_by_account(USER, account_id)

    assert result.data == {"deletedCount": 2}
    assert await balance(accounts, account_id) == pytest.approx(1000.0)


@pytest.mark.asyncio
async def test_sync_failure_does_not_fail_trade_save(db):
    accounts, trades, _, trades_svc, _ = build(db, trades_cls=BrokenMetricsTrades)
    account_id = await new_account(accounts)

    result = await trades_svc.save_trade(USER, trade(account_id, 50.0))

    assert result.success
    assert (await trades.count_by_account_id(account_id, USER)).data == 1
    # balance left alone rather than reset from a failed aggregate
    assert await balance(accounts, account_id) == pytest.approx(1000.0)


@pytest.mark.asyncio
async def test_sync_raises_on_metrics_failure_but_safe_variant_swallows(db):
    accounts, _, sync, _, _ = build(db, trades_cls=BrokenMetricsTrades)
    account_id = await new_account(accounts)

    with pytest.raises(AppError):
        await sync.sync_balance(account_id, USER)
    await sync.sync_balance_safely(account_id, USER)


@pytest.mark.asyncio
async def test_missing_account_raises_not_found(db):
    _, _, sync, _, _ = build(db)

    with pytest.raises(AppError) as exc:
        await sync.sync_balance("nope", USER)
    assert exc.value.code == ErrorCode.DB_NOT_FOUND


@pytest.mark.asyncio
async def test_concurrent_write_is_not_overwritten(db):
    accounts, _, sync, _, _ = build(db, accounts_cls=RacingAccounts)
    account_id = await new_account(accounts, initial=1000.0, current=0.0)

    assert await sync.sync_balance(account_id, USER) is False
    assert await balance(accounts, account_id) == pytest.approx(777.0)


@pytest.mark.asyncio
async def test_sync_all_counts_changed_accounts(db):
    accounts, _, _, _, account_svc = build(db)
    await new_account(accounts, initial=1000.0, current=500.0)
    await new_account(accounts, initial=200.0)

    summary = await account_svc.sync_all_balances(USER)

    assert summary.success
    assert summary.synced_count == 1


@pytest.mark.asyncio
async def test_sync_all_requires_user(db):
    _, _, _, _, account_svc = build(db)

    summary = await account_svc.sync_all_balances(None)

    assert summary.success is False
    assert summary.synced_count == 0


@pytest.mark.asyncio
async def test_changing_initial_balance_resyncs(db):
    accounts, _, _, trades_svc, account_svc = build(db)
    account_id = await new_account(accounts)
    await trades_svc.save_trade(USER, trade(account_id, 50.0))

    result = await account_svc.save_account(
        USER, AccountInput(id=account_id, name="Main", initial_balance=2000.0)
    )

    assert result.success
    assert result.data["currentBalance"] == pytest.approx(2050.0)


@pytest.mark.asyncio
async def test_cannot_overwrite_another_users_trade(db):
    accounts, trades, _, trades_svc, _ = build(db)
    account_id = await new_account(accounts)
    saved = await trades_svc.save_trade(USER, trade(account_id, 50.0))
    trade_id = saved.data["id"]

    intruder_account = (await accounts.create("user-2", AccountInput(name="Other", initial_balance=10.0))).data
    hijack = trade(intruder_account.id, -999.0).model_copy(update={"id": trade_id})
    result = await trades_svc.save_trade("user-2", hijack)

    assert result.success is False
    assert result.code == ErrorCode.DB_NOT_FOUND
    kept = (await trades.get_by_id(trade_id, USER)).data
    assert kept is not None
    assert kept.pnl == 50.0
    assert kept.account_id == account_id
    assert await balance(accounts, account_id) == pytest.approx(1050.0)


@pytest.mark.asyncio
async def test_saving_unknown_trade_id_fails(db):
    accounts, trades, _, trades_svc, _ = build(db)
    account_id = await new_account(accounts)

    result = await trades_svc.save_trade(USER, trade(account_id, 5.0).model_copy(update={"id": "missing"}))

    assert result.code == ErrorCode.DB_NOT_FOUND
    assert (await trades.count_by_account_id(account_id, USER)).data == 0


@pytest.mark.asyncio
async def test_create_rejects_existing_trade_id(db):
    accounts, trades, _, _, _ = build(db)
    account_id = await new_account(accounts)
    first = await trades.create(USER, trade(account_id, 5.0).model_copy(update={"id": "t-1"}))
    assert first.ok

    again = await trades.create("user-2", trade(account_id, -5.0).model_copy(update={"id": "t-1"}))
    batch = await trades.create_many(
        USER,
        [trade(account_id, 1.0).model_copy(update={"id": "t-2"}), trade(account_id, 1.0).model_copy(update={"id": "t-1"})],
    )

    assert again.error.code == ErrorCode.DB_CONFLICT
    assert batch.error.code == ErrorCode.DB_CONFLICT
    assert "t-2" not in db.trades
    assert db.trades["t-1"].user_id == USER
