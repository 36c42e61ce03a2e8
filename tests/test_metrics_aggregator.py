"""
Tests for the per-account statistics in metrics_aggregator.
"""
from datetime import date

import pytest

from src.core.entities.trade import Trade, TradeOutcome, TradeType
from src.core.use_cases.metrics_aggregator import (
    PROFIT_FACTOR_CAP,
    compute_account_metrics,
    compute_streaks,
    r_multiple,
    summarize_dashboard,
)

_seq = 0


def make_trade(pnl, outcome=None, day=1, time="10:00", **kwargs) -> Trade:
    global _seq
    _seq += 1
    if outcome is None:
        outcome = TradeOutcome.WIN if pnl > 0 else TradeOutcome.LOSS if pnl < 0 else TradeOutcome.BREAKEVEN
    fields = dict(
        id=f"t{_seq}",
        account_id="acc-1",
        user_id="user-1",
        symbol="EURUSD",
        entry_date=date(2024, 1, day),
        entry_time=time,
        entry_price=100.0,
        pnl=pnl,
        outcome=outcome,
    )
    fields.update(kwargs)
    return Trade(**fields)


def test_empty_account_has_zeroed_metrics():
    metrics = compute_account_metrics("acc-1", "user-1", [])

    assert metrics.total_trades == 0
    assert metrics.total_pnl == 0
    assert metrics.profit_factor == 0
    assert metrics.current_streak_type == "none"
    assert sorted(metrics.weekday_stats.keys()) == [str(d) for d in range(7)]


def test_basic_aggregates():
    trades = [make_trade(50.0, day=1), make_trade(30.0, day=2), make_trade(-20.0, day=3)]

    metrics = compute_account_metrics("acc-1", "user-1", trades)

    assert metrics.total_trades == 3
    assert metrics.wins == 2
    assert metrics.losses == 1
    assert metrics.win_rate == pytest.approx(66.67)
    assert metrics.total_pnl == pytest.approx(60.0)
    assert metrics.profit_factor == pytest.approx(4.0)
    assert metrics.avg_win == pytest.approx(40.0)
    assert metrics.avg_loss == pytest.approx(20.0)
    assert metrics.largest_win == pytest.approx(50.0)
    assert metrics.largest_loss == pytest.approx(20.0)


def test_breakeven_and_pending_do_not_count_toward_win_rate():
    trades = [
        make_trade(10.0, day=1),
        make_trade(0.0, day=2),
        make_trade(None, outcome=TradeOutcome.PENDING, day=3),
    ]

    metrics = compute_account_metrics("acc-1", "user-1", trades)

    assert metrics.breakeven == 1
    assert metrics.win_rate == pytest.approx(100.0)
    assert metrics.total_pnl == pytest.approx(10.0)


def test_profit_factor_is_capped_without_losses():
    metrics = compute_account_metrics("acc-1", "user-1", [make_trade(25.0)])

    assert metrics.profit_factor == PROFIT_FACTOR_CAP


def test_sharpe_ratio_uses_population_std_dev():
    metrics = compute_account_metrics("acc-1", "user-1", [make_trade(10.0, day=1), make_trade(30.0, day=2)])

    assert metrics.avg_pnl == pytest.approx(20.0)
    assert metrics.pnl_std_dev == pytest.approx(10.0)
    assert metrics.sharpe_ratio == pytest.approx(2.0)


def test_trades_without_pnl_are_left_out_of_distribution():
    trades = [
        make_trade(10.0, day=1),
        make_trade(30.0, day=2),
        make_trade(None, outcome=TradeOutcome.PENDING, day=3),
    ]

    metrics = compute_account_metrics("acc-1", "user-1", trades)

    assert metrics.total_trades == 3
    assert metrics.total_pnl == pytest.approx(40.0)
    assert metrics.avg_pnl == pytest.approx(20.0)
    assert metrics.pnl_std_dev == pytest.approx(10.0)
    assert metrics.sharpe_ratio == pytest.approx(2.0)


def test_streaks_follow_chronological_order():
    # Passed out of order on purpose: W W L W W W by date
    trades = [
        make_trade(5.0, day=6),
        make_trade(-5.0, day=3),
        make_trade(5.0, day=1),
        make_trade(5.0, day=4),
        make_trade(5.0, day=2),
        make_trade(5.0, day=5),
    ]

    streaks = compute_streaks(trades)

    assert streaks["max_win_streak"] == 3
    assert streaks["max_loss_streak"] == 1
    assert streaks["current_streak"] == 3
    assert streaks["current_streak_type"] == "win"


def test_streak_resets_when_latest_trade_is_breakeven():
    trades = [make_trade(-5.0, day=1), make_trade(-5.0, day=2), make_trade(0.0, day=3)]

    streaks = compute_streaks(trades)

    assert streaks["max_loss_streak"] == 2
    assert streaks["current_streak"] == 0
    assert streaks["current_streak_type"] == "none"


def test_same_day_trades_ordered_by_entry_time():
    trades = [make_trade(-5.0, day=1, time="15:00"), make_trade(5.0, day=1, time="09:00")]

    streaks = compute_streaks(trades)

    assert streaks["current_streak_type"] == "loss"


def test_weekday_stats_start_on_sunday():
    # 2024-01-07 was a Sunday, 2024-01-01 a Monday
    trades = [make_trade(40.0, day=7), make_trade(-10.0, day=1), make_trade(15.0, day=1)]

    metrics = compute_account_metrics("acc-1", "user-1", trades)

    assert metrics.weekday_stats["0"].trades == 1
    assert metrics.weekday_stats["0"].wins == 1
    assert metrics.weekday_stats["0"].pnl == pytest.approx(40.0)
    assert metrics.weekday_stats["1"].trades == 2
    assert metrics.weekday_stats["1"].pnl == pytest.approx(5.0)
    assert metrics.weekday_stats["3"].trades == 0


def test_r_multiple_long_short_and_no_stop():
    long_trade = make_trade(20.0, entry_price=100.0, stop_loss=90.0, exit_price=120.0)
    short_trade = make_trade(5.0, type=TradeType.SHORT, entry_price=100.0, stop_loss=110.0, exit_price=95.0)
    no_stop = make_trade(5.0, exit_price=120.0)

    assert r_multiple(long_trade) == pytest.approx(2.0)
    assert r_multiple(short_trade) == pytest.approx(0.5)
    assert r_multiple(no_stop) == 0.0


def test_dashboard_summary_win_rate_over_all_trades():
    trades = [make_trade(10.0), make_trade(-10.0), make_trade(0.0), make_trade(10.0)]

    summary = summarize_dashboard(trades)

    assert summary.total_trades == 4
    assert summary.wins == 2
    assert summary.losses == 1
    assert summary.win_rate == pytest.approx(50.0)
    assert summary.total_pnl == pytest.approx(10.0)
