from __future__ import annotations

import unittest
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from copytrade_bot.ledger import PositionLedger
from copytrade_bot.models import MarketStatus, MarketToken, OrderResult, Side
from tests.helpers import FakeClob, build_item, memory_storage


def fill(amount: float, price: float, shares: float) -> OrderResult:
    return OrderResult(success=True, amount=amount, price=price, shares=shares)


def closed_market(condition_id: str, winner: str | None) -> MarketStatus:
    return MarketStatus(
        condition_id=condition_id,
        closed=True,
        active=False,
        tokens=[
            MarketToken(token_id="tok-yes", outcome="Yes", winner=winner == "Yes"),
            MarketToken(token_id="tok-no", outcome="No", winner=winner == "No"),
        ],
        question="Will it rain?",
    )


class LedgerFillTests(unittest.TestCase):
    def setUp(self) -> None:
        self.storage = memory_storage()
        self.addCleanup(self.storage.close)
        self.ledger = PositionLedger(self.storage, FakeClob(), clock=lambda: 1_700_000_010.0)

    def test_buys_accumulate_cost_basis_for_bot_and_target(self) -> None:
        self.ledger.record_buy(build_item(size=100, usdc_size=40), fill(4.0, 0.40, 10.0))
        position = self.ledger.record_buy(build_item(size=50, usdc_size=30), fill(6.0, 0.60, 10.0))

        self.assertAlmostEqual(position.total_spend, 10.0)
        self.assertAlmostEqual(position.total_shares, 20.0)
        self.assertAlmostEqual(position.avg_price, 0.5)
        self.assertAlmostEqual(position.target_spend, 70.0)
        self.assertAlmostEqual(position.target_shares, 150.0)
        self.assertEqual(self.storage.count_paper_trades(), 2)

    def test_sells_conserve_cost_basis(self) -> None:
        self.ledger.record_buy(build_item(size=100, usdc_size=50), fill(10.0, 0.50, 20.0))
        position = self.ledger.record_sell(build_item(side=Side.SELL, size=25), fill(3.0, 0.60, 5.0))

        self.assertAlmostEqual(position.total_shares, 15.0)
        self.assertAlmostEqual(position.total_spend, 7.5)
        self.assertAlmostEqual(position.avg_price, 0.5)
        self.assertAlmostEqual(position.target_shares, 75.0)
        self.assertAlmostEqual(position.target_spend, 37.5)

        position = self.ledger.record_sell(build_item(side=Side.SELL, size=500), fill(9.0, 0.60, 15.0))
        self.assertEqual(position.total_shares, 0.0)
        self.assertEqual(position.total_spend, 0.0)
        self.assertEqual(position.avg_price, 0.0)
        self.assertEqual(position.target_shares, 0.0)
        self.assertEqual(position.target_spend, 0.0)

    def test_later_fills_of_one_item_leave_target_columns_alone(self) -> None:
        buy = build_item(size=10, usdc_size=5)
        self.ledger.record_buy(buy, fill(2.0, 0.50, 4.0))
        position = self.ledger.record_buy(buy, fill(3.0, 0.50, 6.0), include_target=False)
        self.assertAlmostEqual(position.total_shares, 10.0)
        self.assertAlmostEqual(position.target_spend, 5.0)
        self.assertAlmostEqual(position.target_shares, 10.0)

        sell = build_item(side=Side.SELL, size=4)
        self.ledger.record_sell(sell, fill(1.0, 0.50, 2.0))
        position = self.ledger.record_sell(sell, fill(1.0, 0.50, 2.0), include_target=False)
        self.assertAlmostEqual(position.total_shares, 6.0)
        self.assertAlmostEqual(position.target_shares, 6.0)
        self.assertAlmostEqual(position.target_spend, 3.0)

    def test_sell_without_position_is_ignored(self) -> None:
        self.assertIsNone(self.ledger.record_sell(build_item(side=Side.SELL), fill(1.0, 0.5, 2.0)))

    def test_fills_update_latency_stats(self) -> None:
        self.ledger.record_buy(build_item(timestamp=1_700_000_000), fill(1.0, 0.5, 2.0))
        self.ledger.record_buy(build_item(timestamp=1_700_000_006), fill(1.0, 0.5, 2.0))
        stats = self.storage.get_stats()
        self.assertEqual(stats.total_trades_with_latency, 2)
        self.assertAlmostEqual(stats.avg_latency, 7.0)


class ResolutionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.storage = memory_storage()
        self.addCleanup(self.storage.close)
        self.clob = FakeClob()
        self.ledger = PositionLedger(self.storage, self.clob)

    def test_winner_pays_shares_and_loser_pays_nothing(self) -> None:
        self.ledger.record_buy(build_item(outcome="YES", size=20, usdc_size=8), fill(4.0, 0.40, 10.0))
        self.ledger.record_buy(
            build_item(asset="tok-no", outcome="No", size=10, usdc_size=6), fill(3.0, 0.60, 5.0)
        )
        self.clob.markets["0xcond"] = closed_market("0xcond", "Yes")

        self.assertEqual(self.ledger.resolve_markets(), 2)

        winner = self.storage.get_position("0xcond", "YES")
        self.assertTrue(winner.is_closed)
        self.assertTrue(winner.is_winner)
        self.assertAlmostEqual(winner.total_return, 10.0)
        self.assertAlmostEqual(winner.pnl, 6.0)
        self.assertAlmostEqual(winner.target_pnl, 12.0)
        loser = self.storage.get_position("0xcond", "No")
        self.assertFalse(loser.is_winner)
        self.assertAlmostEqual(loser.pnl, -3.0)

        stats = self.storage.get_stats()
        self.assertEqual(stats.winning_positions, 1)
        self.assertEqual(stats.losing_positions, 1)
        self.assertAlmostEqual(stats.total_wins, 6.0)
        self.assertAlmostEqual(stats.total_losses, 3.0)
        self.assertAlmostEqual(stats.net_pnl, 3.0)
        self.assertAlmostEqual(stats.total_spend, 7.0)
        self.assertAlmostEqual(stats.total_returns, 10.0)
        self.assertAlmostEqual(stats.target_net_pnl, 12.0 - 6.0)
        self.assertAlmostEqual(stats.largest_market_spend, 7.0)
        self.assertEqual(stats.largest_market_title, "Will it rain?")
        self.assertEqual(self.storage.list_open_positions(), [])

    def test_open_market_leaves_positions_alone(self) -> None:
        self.ledger.record_buy(build_item(), fill(4.0, 0.40, 10.0))
        self.assertEqual(self.ledger.resolve_markets(), 0)
        self.assertEqual(len(self.storage.list_open_positions()), 1)

    def test_closed_without_winner_closes_at_zero_return(self) -> None:
        self.ledger.record_buy(build_item(), fill(4.0, 0.40, 10.0))
        self.clob.markets["0xcond"] = closed_market("0xcond", None)

        with self.assertLogs("copytrade_bot", level="WARNING") as logs:
            self.assertEqual(self.ledger.resolve_markets(), 1)

        position = self.storage.get_position("0xcond", "Yes")
        self.assertTrue(position.is_closed)
        self.assertEqual(position.total_return, 0.0)
        self.assertAlmostEqual(position.pnl, -4.0)
        self.assertTrue(any("market_closed_without_winner" in line for line in logs.output))

    def test_failed_query_does_not_block_other_markets(self) -> None:
        self.ledger.record_buy(build_item(condition_id="0xa"), fill(2.0, 0.5, 4.0))
        self.ledger.record_buy(build_item(condition_id="0xb", asset="tok-b"), fill(2.0, 0.5, 4.0))
        self.clob.markets["0xa"] = RuntimeError("timeout")
        self.clob.markets["0xb"] = closed_market("0xb", "Yes")

        self.assertEqual(self.ledger.resolve_markets(), 1)
        self.assertFalse(self.storage.get_position("0xa", "Yes").is_closed)
        self.assertTrue(self.storage.get_position("0xb", "Yes").is_winner)

    def test_resolution_is_applied_once(self) -> None:
        self.ledger.record_buy(build_item(), fill(4.0, 0.40, 10.0))
        self.clob.markets["0xcond"] = closed_market("0xcond", "Yes")
        self.assertEqual(self.ledger.resolve_markets(), 1)
        self.assertEqual(self.ledger.resolve_markets(), 0)
        self.assertEqual(self.storage.get_stats().winning_positions, 1)


if __name__ == "__main__":
    unittest.main()
