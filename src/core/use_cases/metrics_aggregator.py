"""
Per-account trading statistics.

Everything here is a pure function over a list of trades; fetching the
trades (and enforcing that they belong to the caller) happens in the
services layer.
"""
import statistics
from itertools import groupby
from typing import Iterable, List, Optional

from src.core.entities.metrics import AccountMetrics, DashboardMetrics, WeekdayStats, empty_weekday_stats
from src.core.entities.trade import Trade, TradeOutcome, TradeType

# Reported when an account has winners but no losers.
PROFIT_FACTOR_CAP = 999.99


def _pnl(trade: Trade) -> float:
    return trade.pnl if trade.pnl is not None else 0.0


def _chronological(trades: Iterable[Trade]) -> List[Trade]:
    return sorted(trades, key=lambda t: (t.entry_date, t.entry_time or ""))


def weekday_index(trade: Trade) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return (trade.entry_date.weekday() + 1) % 7


def profit_factor(gross_win: float, gross_loss: float) -> float:
    if gross_loss > 0:
        return round(gross_win / gross_loss, 2)
    if gross_win > 0:
        return PROFIT_FACTOR_CAP
    return 0.0


def r_multiple(trade: Trade) -> float:
    """Result of the trade in units of the risk taken (entry to stop)."""
    if trade.stop_loss is None or trade.entry_price == trade.stop_loss:
        return 0.0
    exit_px = trade.exit_price if trade.exit_price is not None else trade.entry_price
    if trade.type == TradeType.LONG:
        return (exit_px - trade.entry_price) / abs(trade.entry_price - trade.stop_loss)
    return (trade.entry_price - exit_px) / abs(trade.stop_loss - trade.entry_price)


def average_r_multiple(trades: List[Trade]) -> Optional[float]:
    if not trades:
        return None
    return round(sum(r_multiple(t) for t in trades) / len(trades), 2)


def summarize_dashboard(trades: List[Trade]) -> DashboardMetrics:
    total = len(trades)
    wins = sum(1 for t in trades if t.outcome == TradeOutcome.WIN)
    losses = sum(1 for t in trades if t.outcome == TradeOutcome.LOSS)
    return DashboardMetrics(
        total_trades=total,
        wins=wins,
        losses=losses,
        win_rate=(wins / total) * 100 if total > 0 else 0.0,
        total_pnl=sum(_pnl(t) for t in trades),
    )


def compute_streaks(trades: List[Trade]) -> dict:
    """
    Runs of identical outcomes in chronological order. Breakeven and
    pending trades break a run without starting a win/loss streak.
    """
    runs = [(outcome, len(list(group))) for outcome, group in groupby(t.outcome for t in _chronological(trades))]

    max_win = max((n for o, n in runs if o == TradeOutcome.WIN), default=0)
    max_loss = max((n for o, n in runs if o == TradeOutcome.LOSS), default=0)

    current, current_type = 0, "none"
    if runs:
        last_outcome, last_len = runs[-1]
        if last_outcome in (TradeOutcome.WIN, TradeOutcome.LOSS):
            current, current_type = last_len, last_outcome.value

    return {
        "max_win_streak": max_win,
        "max_loss_streak": max_loss,
        "current_streak": current,
        "current_streak_type": current_type,
    }


def compute_account_metrics(account_id: str, user_id: str, trades: List[Trade]) -> AccountMetrics:
    winners = [_pnl(t) for t in trades if t.outcome == TradeOutcome.WIN]
    losers = [_pnl(t) for t in trades if t.outcome == TradeOutcome.LOSS]
    breakeven = sum(1 for t in trades if t.outcome == TradeOutcome.BREAKEVEN)
    pnls = [_pnl(t) for t in trades]
    # trades without a pnl stay out of the distribution
    realized = [t.pnl for t in trades if t.pnl is not None]

    gross_win = sum(winners)
    gross_loss = abs(sum(losers))
    decided = len(winners) + len(losers)

    avg_pnl = statistics.fmean(realized) if realized else 0.0
    std_dev = statistics.pstdev(realized) if realized else 0.0

    weekdays = empty_weekday_stats()
    for t in trades:
        bucket: WeekdayStats = weekdays[str(weekday_index(t))]
        bucket.trades += 1
        bucket.pnl = round(bucket.pnl + _pnl(t), 2)
        if t.outcome == TradeOutcome.WIN:
            bucket.wins += 1

    return AccountMetrics(
        account_id=account_id,
        user_id=user_id,
        total_trades=len(trades),
        wins=len(winners),
        losses=len(losers),
        breakeven=breakeven,
        win_rate=round(len(winners) / decided * 100, 2) if decided > 0 else 0.0,
        total_pnl=round(sum(pnls), 2),
        profit_factor=profit_factor(gross_win, gross_loss),
        avg_win=round(gross_win / len(winners), 2) if winners else 0.0,
        avg_loss=round(gross_loss / len(losers), 2) if losers else 0.0,
        largest_win=round(max(winners), 2) if winners else 0.0,
        largest_loss=round(abs(min(losers)), 2) if losers else 0.0,
        sharpe_ratio=round(avg_pnl / std_dev, 2) if std_dev > 0 else 0.0,
        avg_pnl=round(avg_pnl, 2),
        pnl_std_dev=round(std_dev, 2),
        weekday_stats=weekdays,
        **compute_streaks(trades),
    )
