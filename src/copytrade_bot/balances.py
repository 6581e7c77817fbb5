from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

from web3 import Web3

from copytrade_bot.retry import RetryPolicy
from copytrade_bot.rpc_pool import ProviderPool

LOGGER = logging.getLogger("copytrade_bot")

ERC20_BALANCE_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    }
]
USDC_DECIMALS = 6


class BalanceCache:
    """USDC balances per wallet, re-read from chain once ``ttl_seconds`` have passed."""

    def __init__(
        self,
        pool: ProviderPool,
        usdc_address: str,
        *,
        ttl_seconds: float = 30.0,
        retry: RetryPolicy | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.pool = pool
        self.usdc_address = Web3.to_checksum_address(usdc_address)
        self.ttl_seconds = float(ttl_seconds)
        self.retry = retry or RetryPolicy(max_attempts=3, base_delay=0.5, max_delay=4.0)
        self._clock = clock
        self._cache: dict[str, tuple[float, float]] = {}
        self._lock = threading.Lock()

    def get(self, address: str) -> float:
        key = address.strip().lower()
        now = self._clock()
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None and now - cached[1] < self.ttl_seconds:
            return cached[0]
        return self.refresh(key)

    def refresh(self, address: str) -> float:
        key = address.strip().lower()
        owner = Web3.to_checksum_address(key)

        def _read(w3: Any) -> int:
            contract = w3.eth.contract(address=self.usdc_address, abi=ERC20_BALANCE_ABI)
            return int(contract.functions.balanceOf(owner).call())

        raw = self.retry.call(lambda: self.pool.race(_read, label="usdc_balance"), label="usdc_balance")
        balance = raw / float(10**USDC_DECIMALS)
        with self._lock:
            self._cache[key] = (balance, self._clock())
        LOGGER.debug("balance_refreshed address=%s usdc=%.6f", key, balance)
        return balance

    def invalidate(self, address: str | None = None) -> None:
        with self._lock:
            if address is None:
                self._cache.clear()
            else:
                self._cache.pop(address.strip().lower(), None)
