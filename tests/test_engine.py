from __future__ import annotations

import threading
import unittest
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from copytrade_bot.aggregator import aggregate_pending
from copytrade_bot.engine import ExecutionEngine
from copytrade_bot.execution import PaperExecutor
from copytrade_bot.ledger import PositionLedger
from copytrade_bot.models import ExecutionState, OrderResult, Side
from tests.helpers import (
    TARGET,
    FakeActivityClient,
    FakeClob,
    build_book,
    build_record,
    memory_storage,
    test_config,
)


class RejectingExecutor(PaperExecutor):
    def __init__(self) -> None:
        self.calls = 0

    def submit(self, asset, side, amount, price):
        self.calls += 1
        return OrderResult(success=False, amount=amount, price=price, shares=0.0, error="not enough liquidity")


class FlakyExecutor(PaperExecutor):
    def __init__(self, failures: int) -> None:
        self.failures = failures

    def submit(self, asset, side, amount, price):
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("connection reset")
        return super().submit(asset, side, amount, price)


class FakeBalances:
    def __init__(self, balances: dict[str, float]) -> None:
        self.balances = balances
        self.refreshed: list[str] = []

    def get(self, address: str) -> float:
        return self.balances[address]

    def refresh(self, address: str) -> float:
        self.refreshed.append(address)
        return self.balances[address]


class FailingBalances(FakeBalances):
    def __init__(self) -> None:
        super().__init__({})

    def get(self, address: str) -> float:
        raise RuntimeError("rpc down")


class EngineTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.storage = memory_storage()
        self.addCleanup(self.storage.close)

    def build(self, books, *, executor=None, activity=None, balances=None, **config_overrides) -> ExecutionEngine:
        self.config = test_config(**config_overrides)
        self.clob = FakeClob(books)
        self.ledger = PositionLedger(self.storage, self.clob, clock=lambda: 1_700_000_002.0)
        return ExecutionEngine(
            self.config,
            self.storage,
            executor or PaperExecutor(),
            self.clob,
            activity or FakeActivityClient(),
            ledger=self.ledger,
            balances=balances,
        )

    def pending_item(self, *records):
        for record in records:
            self.storage.insert_discovery(TARGET, record)
        items = aggregate_pending(self.storage.find_pending(TARGET, self.config.retry_limit))
        self.assertEqual(len(items), 1)
        return items[0]


class BuyExecutionTests(EngineTestCase):
    def test_buy_is_capped_at_max_trade_amount(self) -> None:
        engine = self.build([build_book(asks=[(0.50, 1000)])], max_trade_amount=10.0)
        item = self.pending_item(build_record("0x01", size=1000, usdc_size=500.0))

        outcome = engine.execute(item)

        self.assertEqual(outcome.state, ExecutionState.FILLED)
        self.assertAlmostEqual(outcome.requested, 10.0)
        self.assertAlmostEqual(outcome.filled, 10.0)
        position = self.storage.get_position("0xcond", "Yes")
        self.assertAlmostEqual(position.total_spend, 10.0)
        self.assertAlmostEqual(position.total_shares, 20.0)
        self.assertEqual(self.storage.find_pending(TARGET, 3), [])

    def test_walks_book_across_levels(self) -> None:
        books = [build_book(asks=[(0.50, 4), (0.55, 100)]), build_book(asks=[(0.52, 100)])]
        engine = self.build(books)
        item = self.pending_item(build_record("0x01", size=10, usdc_size=5.0))

        outcome = engine.execute(item)

        self.assertEqual(outcome.state, ExecutionState.FILLED)
        self.assertEqual([round(fill.amount, 6) for fill in outcome.fills], [2.0, 3.0])
        self.assertEqual(self.storage.count_orders(success=True), 2)

    def test_multi_fill_buy_counts_target_trade_once(self) -> None:
        books = [build_book(asks=[(0.50, 4), (0.55, 100)]), build_book(asks=[(0.52, 100)])]
        engine = self.build(books)
        item = self.pending_item(build_record("0x01", size=10, usdc_size=5.0))

        outcome = engine.execute(item)

        self.assertEqual(len(outcome.fills), 2)
        position = self.storage.get_position("0xcond", "Yes")
        self.assertAlmostEqual(position.total_spend, 5.0)
        self.assertAlmostEqual(position.target_spend, 5.0)
        self.assertAlmostEqual(position.target_shares, 10.0)
        self.assertAlmostEqual(position.target_avg_price, 0.5)
        self.assertEqual(self.storage.count_paper_trades(), 2)

    def test_price_drift_skips_without_ordering(self) -> None:
        engine = self.build([build_book(asks=[(0.50, 1000)])])
        item = self.pending_item(build_record("0x01", size=10, usdc_size=4.0))

        outcome = engine.execute(item)

        self.assertEqual(outcome.state, ExecutionState.SKIPPED)
        self.assertIn("price drift", outcome.reason)
        self.assertEqual(self.storage.count_orders(), 0)
        self.assertEqual(self.storage.find_pending(TARGET, 3), [])

    def test_empty_book_skips(self) -> None:
        engine = self.build([build_book(asks=[])])
        outcome = engine.execute(self.pending_item(build_record("0x01")))
        self.assertEqual(outcome.state, ExecutionState.SKIPPED)
        self.assertEqual(outcome.reason, "empty book")

    def test_retry_exhaustion_marks_attempts_and_is_not_reconsidered(self) -> None:
        executor = RejectingExecutor()
        engine = self.build([build_book(asks=[(0.50, 1000)])], executor=executor, retry_limit=3)
        self.pending_item(build_record("0x01", size=10, usdc_size=5.0))

        outcomes = engine.dispatch_cycle()

        self.assertEqual([outcome.state for outcome in outcomes], [ExecutionState.RETRY_EXHAUSTED])
        self.assertEqual(outcomes[0].attempts, 3)
        self.assertEqual(executor.calls, 3)
        record = self.storage.get_discovery(TARGET, "0x01")
        self.assertTrue(record.dispatched)
        self.assertEqual(record.attempts, 3)
        self.assertEqual(engine.dispatch_cycle(), [])
        self.assertEqual(executor.calls, 3)

    def test_success_resets_retry_counter(self) -> None:
        books = [build_book(asks=[(0.50, 4)]), build_book(asks=[(0.50, 4)]), build_book(asks=[(0.50, 100)])]
        engine = self.build(books, executor=FlakyExecutor(failures=2), retry_limit=3)
        item = self.pending_item(build_record("0x01", size=10, usdc_size=5.0))
        outcome = engine.execute(item)
        self.assertEqual(outcome.state, ExecutionState.FILLED)
        self.assertEqual(self.storage.count_orders(success=False), 2)

    def test_paper_item_without_market_is_skipped(self) -> None:
        engine = self.build([build_book(asks=[(0.50, 100)])])
        outcome = engine.execute(self.pending_item(build_record("0x01", condition_id="")))
        self.assertEqual(outcome.state, ExecutionState.SKIPPED)
        self.assertEqual(outcome.reason, "market unresolved")

    def test_sizing_failure_is_retried_a_bounded_number_of_times(self) -> None:
        engine = self.build(
            [build_book(asks=[(0.50, 1000)])],
            balances=FailingBalances(),
            sizing_policy="proportional",
            retry_limit=3,
        )
        self.pending_item(build_record("0x01", size=10, usdc_size=5.0))

        states = [[outcome.state for outcome in engine.dispatch_cycle()] for _ in range(3)]

        self.assertEqual(
            states,
            [[ExecutionState.PENDING], [ExecutionState.PENDING], [ExecutionState.RETRY_EXHAUSTED]],
        )
        record = self.storage.get_discovery(TARGET, "0x01")
        self.assertTrue(record.dispatched)
        self.assertEqual(record.attempts, 3)
        self.assertEqual(engine.dispatch_cycle(), [])
        self.assertEqual(self.storage.count_orders(), 0)

    def test_proportional_paper_sizing_uses_bankroll(self) -> None:
        balances = FakeBalances({TARGET: 900.0})
        engine = self.build(
            [build_book(asks=[(0.50, 1000)])],
            balances=balances,
            sizing_policy="proportional",
            paper_bankroll_usdc=50.0,
        )
        outcome = engine.execute(self.pending_item(build_record("0x01", size=200, usdc_size=100.0)))
        self.assertAlmostEqual(outcome.requested, 5.0)
        self.assertEqual(balances.refreshed, [])


class SellExecutionTests(EngineTestCase):
    def seed_position(self, engine: ExecutionEngine) -> None:
        engine.clob.books = [build_book(asks=[(0.50, 1000)])]
        self.assertEqual(engine.execute(self.pending_item(build_record("0xbuy", size=40, usdc_size=20.0))).state, ExecutionState.FILLED)

    def test_sell_without_position_is_skipped(self) -> None:
        engine = self.build([build_book(bids=[(0.50, 100)])])
        outcome = engine.execute(self.pending_item(build_record("0x01", side=Side.SELL)))
        self.assertEqual(outcome.state, ExecutionState.SKIPPED)
        self.assertEqual(outcome.reason, "no position")

    def test_sell_mirrors_target_fraction(self) -> None:
        activity = FakeActivityClient(positions={(TARGET, "tok-yes"): 30.0})
        engine = self.build([], activity=activity)
        self.seed_position(engine)
        engine.clob.books = [build_book(bids=[(0.50, 1000)])]

        outcome = engine.execute(self.pending_item(build_record("0xsell", side=Side.SELL, size=10, usdc_size=5.0)))

        self.assertEqual(outcome.state, ExecutionState.FILLED)
        # 10 / (30 + 10) of the bot's 40 shares.
        self.assertAlmostEqual(outcome.filled, 10.0)
        position = self.storage.get_position("0xcond", "Yes")
        self.assertAlmostEqual(position.total_shares, 30.0)
        self.assertAlmostEqual(position.total_spend, 15.0)
        self.assertAlmostEqual(position.target_shares, 30.0)

    def test_merge_sells_whole_position(self) -> None:
        activity = FakeActivityClient(positions={(TARGET, "tok-yes"): 1000.0})
        engine = self.build([], activity=activity)
        self.seed_position(engine)
        engine.clob.books = [build_book(bids=[(0.52, 1000)])]

        outcome = engine.execute(self.pending_item(build_record("0xmerge", side=Side.MERGE, size=1, usdc_size=0.5)))

        self.assertEqual(outcome.state, ExecutionState.FILLED)
        self.assertAlmostEqual(outcome.filled, 40.0)
        position = self.storage.get_position("0xcond", "Yes")
        self.assertEqual(position.total_shares, 0.0)
        self.assertEqual(position.total_spend, 0.0)


class BlockingClob(FakeClob):
    def __init__(self) -> None:
        super().__init__([build_book(asks=[(0.50, 1000)])])
        self.entered = threading.Event()
        self.release = threading.Event()

    def get_book(self, token_id):
        self.entered.set()
        self.release.wait(5.0)
        return super().get_book(token_id)


class SingleFlightTests(EngineTestCase):
    def test_reentrant_trigger_returns_immediately(self) -> None:
        engine = self.build([])
        engine.clob = BlockingClob()
        self.pending_item(build_record("0x01", size=10, usdc_size=5.0))

        results: list[object] = []
        worker = threading.Thread(target=lambda: results.append(engine.dispatch_cycle()))
        worker.start()
        self.assertTrue(engine.clob.entered.wait(5.0))

        self.assertIsNone(engine.dispatch_cycle())

        engine.clob.release.set()
        worker.join(5.0)
        self.assertEqual([outcome.state for outcome in results[0]], [ExecutionState.FILLED])
        self.assertEqual(self.storage.count_orders(), 1)


if __name__ == "__main__":
    unittest.main()
