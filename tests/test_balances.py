from __future__ import annotations

import unittest
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from copytrade_bot.balances import BalanceCache
from copytrade_bot.rpc_pool import ProviderPool
from tests.helpers import BOT, NO_WAIT, USDC, FakeWeb3


class BalanceCacheTests(unittest.TestCase):
    def setUp(self) -> None:
        self.now = 1000.0
        self.web3 = FakeWeb3({("balanceOf", BOT): 12_500_000})
        self.pool = ProviderPool([("http://a", self.web3)])
        self.addCleanup(self.pool.close)
        self.cache = BalanceCache(self.pool, USDC, ttl_seconds=30, retry=NO_WAIT, clock=lambda: self.now)

    def balance_reads(self) -> int:
        return sum(1 for method, _ in self.web3.calls if method == "balanceOf")

    def test_reads_usdc_with_six_decimals_and_caches(self) -> None:
        self.assertAlmostEqual(self.cache.get(BOT), 12.5)
        self.assertAlmostEqual(self.cache.get(BOT.upper().replace("0X", "0x")), 12.5)
        self.assertEqual(self.balance_reads(), 1)

    def test_expired_entry_is_reread(self) -> None:
        self.cache.get(BOT)
        self.web3.responses[("balanceOf", BOT)] = 20_000_000
        self.now += 31
        self.assertAlmostEqual(self.cache.get(BOT), 20.0)
        self.assertEqual(self.balance_reads(), 2)

    def test_refresh_bypasses_ttl(self) -> None:
        self.cache.get(BOT)
        self.web3.responses[("balanceOf", BOT)] = 1_000_000
        self.assertAlmostEqual(self.cache.refresh(BOT), 1.0)
        self.assertAlmostEqual(self.cache.get(BOT), 1.0)

    def test_invalidate_forces_next_read(self) -> None:
        self.cache.get(BOT)
        self.cache.invalidate(BOT)
        self.cache.get(BOT)
        self.assertEqual(self.balance_reads(), 2)


if __name__ == "__main__":
    unittest.main()
