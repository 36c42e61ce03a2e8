
import sys
import os
from datetime import date

# Add project root to path
sys.path.append(os.getcwd())

try:
    from src.core.entities.trade import Trade, TradeOutcome
    from src.core.use_cases.metrics_aggregator import compute_account_metrics
    from src.core.use_cases.leaderboard_view import LEADERBOARD_VIEW_DDL
    from src.api.main import app
    print("✅ All imports successful.")
except Exception as e:
    print(f"❌ Import failed: {e}")
    sys.exit(1)

# Test Metrics Logic Simple
def test_metrics():
    try:
        t1 = Trade(id="t1", account_id="acc", user_id="u", symbol="EURUSD", entry_date=date(2024, 1, 1),
                   entry_price=1.1, pnl=50.0, outcome=TradeOutcome.WIN)
        t2 = Trade(id="t2", account_id="acc", user_id="u", symbol="EURUSD", entry_date=date(2024, 1, 2),
                   entry_price=1.1, pnl=-20.0, outcome=TradeOutcome.LOSS)

        metrics = compute_account_metrics("acc", "u", [t1, t2])

        if metrics.total_pnl == 30.0 and metrics.profit_factor == 2.5:
            print("✅ Metrics logic basic test passed.")
        else:
            print(f"❌ Metrics logic failed, got pnl={metrics.total_pnl} pf={metrics.profit_factor}")
    except Exception as e:
        print(f"❌ Metrics raised exception: {e}")

if __name__ == "__main__":
    test_metrics()
