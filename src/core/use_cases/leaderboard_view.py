import logging

from src.core.interfaces.repositories import ISqlExecutor

logger = logging.getLogger(__name__)

LEADERBOARD_VIEW = "leaderboard_view"

# Per-user aggregates over the current calendar month, joined to the opt-in
# preferences. Stats a user chose to hide come back as NULL.
LEADERBOARD_VIEW_DDL = f"""
CREATE OR REPLACE VIEW {LEADERBOARD_VIEW} AS
WITH stats AS (
    SELECT
        user_id,
        COUNT(*) AS total_trades,
        COUNT(*) FILTER (WHERE outcome = 'win') AS wins,
        COUNT(*) FILTER (WHERE outcome = 'loss') AS losses,
        COALESCE(SUM(pnl), 0) AS total_pnl,
        COALESCE(SUM(pnl) FILTER (WHERE outcome = 'win'), 0) AS gross_win,
        ABS(COALESCE(SUM(pnl) FILTER (WHERE outcome = 'loss'), 0)) AS gross_loss,
        AVG(
            CASE
                WHEN stop_loss IS NULL OR entry_price = stop_loss THEN 0
                WHEN type = 'Long' THEN (COALESCE(exit_price, entry_price) - entry_price) / ABS(entry_price - stop_loss)
                WHEN type = 'Short' THEN (entry_price - COALESCE(exit_price, entry_price)) / ABS(stop_loss - entry_price)
                ELSE 0
            END
        ) AS avg_rr
    FROM trades
    WHERE entry_date >= DATE_TRUNC('month', CURRENT_DATE)
    GROUP BY user_id
)
SELECT
    l.user_id,
    l.display_name,
    l.show_win_rate,
    l.show_profit_factor,
    l.show_total_trades,
    l.show_pnl,
    CASE WHEN l.show_total_trades THEN COALESCE(s.total_trades, 0) END AS total_trades,
    CASE WHEN l.show_total_trades THEN COALESCE(s.wins, 0) END AS wins,
    CASE WHEN l.show_total_trades THEN COALESCE(s.losses, 0) END AS losses,
    CASE WHEN l.show_win_rate THEN
        ROUND(s.wins::numeric / NULLIF(s.total_trades, 0) * 100, 1)
    END AS win_rate,
    CASE WHEN l.show_profit_factor THEN
        ROUND(s.gross_win::numeric / NULLIF(s.gross_loss, 0), 2)
    END AS profit_factor,
    CASE WHEN l.show_pnl THEN COALESCE(s.total_pnl, 0) END AS total_pnl,
    ROUND(s.avg_rr::numeric, 2) AS avg_rr,
    l.created_at
FROM leaderboard_opt_in l
LEFT JOIN stats s ON s.user_id = l.user_id
ORDER BY s.wins::numeric / NULLIF(s.total_trades, 0) DESC NULLS LAST, l.created_at ASC
"""


class LeaderboardViewBuilder:
    """
    (Re)creates the leaderboard view before leaderboard reads.

    With cache_ready=True the DDL is only reissued until one build
    succeeds; a failed build leaves the flag unset so the next read
    tries again.
    """

    def __init__(self, executor: ISqlExecutor, cache_ready: bool = True):
        self.executor = executor
        self.cache_ready = cache_ready
        self.ready = False

    async def ensure(self, force: bool = False) -> bool:
        if self.ready and self.cache_ready and not force:
            return True
        try:
            await self.executor.execute(LEADERBOARD_VIEW_DDL)
        except Exception as e:
            logger.warning(f"Failed to (re)create {LEADERBOARD_VIEW}: {e}")
            self.ready = False
            return False
        self.ready = True
        logger.info(f"{LEADERBOARD_VIEW} is ready.")
        return True
