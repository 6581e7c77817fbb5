from __future__ import annotations

from dataclasses import replace
from pathlib import Path
import sys
from typing import Any

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from eth_abi import encode  # noqa: E402

from copytrade_bot.chain_decoder import (  # noqa: E402
    ERC20_TRANSFER_TOPIC,
    TRANSFER_BATCH_TOPIC,
    TRANSFER_SINGLE_TOPIC,
)
from copytrade_bot.clients_clob import ClobClient  # noqa: E402
from copytrade_bot.clients_data import ActivityClient  # noqa: E402
from copytrade_bot.config import POLYGON_USDC_ADDRESS, load_config  # noqa: E402
from copytrade_bot.models import (  # noqa: E402
    DiscoveryRecord,
    MarketStatus,
    OrderBookLevel,
    OrderBookSnapshot,
    Origin,
    Side,
    WorkItem,
)
from copytrade_bot.retry import RetryPolicy  # noqa: E402
from copytrade_bot.storage import Storage  # noqa: E402

TARGET = "0x" + "aa" * 20
PROXY = "0x" + "bb" * 20
BOT = "0x" + "cc" * 20
EXCHANGE = "0x" + "dd" * 20
USDC = POLYGON_USDC_ADDRESS.lower()
CTF = "0x" + "4d" * 20

NO_WAIT = RetryPolicy(max_attempts=1, sleep=lambda _: None)


def test_config(**kwargs):
    cfg = replace(
        load_config(),
        mode="paper",
        target_address=TARGET,
        target_proxy_address="",
        bot_address=BOT,
        rpc_urls=("http://rpc-a", "http://rpc-b"),
        usdc_address=USDC,
        database_path=":memory:",
        title_filter="",
        sizing_policy="exact",
        trade_scale=1.0,
        max_trade_amount=100.0,
        max_price_diff=0.05,
        retry_limit=3,
        too_old_minutes=24,
        paper_bankroll_usdc=1000.0,
        poly_private_key="",
    )
    return replace(cfg, **kwargs)


def memory_storage() -> Storage:
    return Storage(":memory:")


def build_record(
    tx_hash: str,
    *,
    asset: str = "tok-yes",
    side: Side = Side.BUY,
    size: float = 10.0,
    usdc_size: float = 4.0,
    price: float | None = None,
    title: str = "Will it rain?",
    outcome: str = "Yes",
    condition_id: str = "0xcond",
    timestamp: int = 1_700_000_000,
    origin: Origin = Origin.REST,
) -> DiscoveryRecord:
    return DiscoveryRecord(
        transaction_hash=tx_hash,
        condition_id=condition_id,
        asset=asset,
        side=side,
        size=size,
        usdc_size=usdc_size,
        price=usdc_size / size if price is None else price,
        title=title,
        outcome=outcome,
        timestamp=timestamp,
        origin=origin,
    )


def build_item(
    *,
    asset: str = "tok-yes",
    side: Side = Side.BUY,
    size: float = 10.0,
    usdc_size: float = 5.0,
    price: float = 0.50,
    outcome: str = "Yes",
    condition_id: str = "0xcond",
    title: str = "Will it rain?",
    timestamp: int = 1_700_000_000,
    record_ids: list[int] | None = None,
) -> WorkItem:
    return WorkItem(
        asset=asset,
        side=side,
        outcome=outcome,
        condition_id=condition_id,
        title=title,
        size=size,
        usdc_size=usdc_size,
        price=price,
        timestamp=timestamp,
        record_ids=list(record_ids or []),
    )


def build_book(
    token_id: str = "tok-yes",
    *,
    bids: list[tuple[float, float]] | None = None,
    asks: list[tuple[float, float]] | None = None,
) -> OrderBookSnapshot:
    return OrderBookSnapshot(
        token_id=token_id,
        timestamp_ms=0,
        bids=[OrderBookLevel(price=price, size=size) for price, size in (bids or [])],
        asks=[OrderBookLevel(price=price, size=size) for price, size in (asks or [])],
    )


def address_topic(address: str) -> str:
    return "0x" + "0" * 24 + address[2:].lower()


def transfer_single_log(sender: str, receiver: str, token_id: int, value: int) -> dict[str, Any]:
    return {
        "address": CTF,
        "topics": [TRANSFER_SINGLE_TOPIC, address_topic(EXCHANGE), address_topic(sender), address_topic(receiver)],
        "data": "0x" + encode(["uint256", "uint256"], [token_id, value]).hex(),
    }


def transfer_batch_log(sender: str, receiver: str, token_ids: list[int], values: list[int]) -> dict[str, Any]:
    return {
        "address": CTF,
        "topics": [TRANSFER_BATCH_TOPIC, address_topic(EXCHANGE), address_topic(sender), address_topic(receiver)],
        "data": "0x" + encode(["uint256[]", "uint256[]"], [token_ids, values]).hex(),
    }


def usdc_transfer_log(sender: str, receiver: str, value: int, contract: str = USDC) -> dict[str, Any]:
    return {
        "address": contract,
        "topics": [ERC20_TRANSFER_TOPIC, address_topic(sender), address_topic(receiver)],
        "data": "0x" + encode(["uint256"], [value]).hex(),
    }


class FakeEth:
    def __init__(self, web3: "FakeWeb3") -> None:
        self._web3 = web3

    @property
    def block_number(self) -> int:
        return self._web3.call("block_number")

    def get_block(self, number: int, full_transactions: bool = False) -> Any:
        return self._web3.call("get_block", number)

    def get_transaction_receipt(self, tx_hash: str) -> Any:
        return self._web3.call("get_transaction_receipt", tx_hash)

    def contract(self, address: str, abi: Any) -> "FakeContract":
        return FakeContract(self._web3, address)


class FakeContract:
    def __init__(self, web3: "FakeWeb3", address: str) -> None:
        self.functions = self
        self._web3 = web3
        self._address = address

    def balanceOf(self, owner: str) -> "FakeCall":
        return FakeCall(lambda: self._web3.call("balanceOf", owner.lower()))


class FakeCall:
    def __init__(self, fn) -> None:
        self._fn = fn

    def call(self) -> Any:
        return self._fn()


class FakeWeb3:
    """Duck-typed stand-in for ``web3.Web3``; ``responses`` maps (method, arg) to a value or exception."""

    def __init__(self, responses: dict[tuple[str, Any], Any] | None = None, default: Any = None) -> None:
        self.responses = dict(responses or {})
        self.default = default
        self.calls: list[tuple[str, Any]] = []
        self.eth = FakeEth(self)

    def call(self, method: str, arg: Any = None) -> Any:
        self.calls.append((method, arg))
        value = self.responses.get((method, arg), self.default)
        if isinstance(value, BaseException):
            raise value
        if callable(value):
            return value()
        return value


class FakeActivityClient(ActivityClient):
    def __init__(
        self,
        pages: list[list[dict]] | None = None,
        positions: dict[tuple[str, str], float] | None = None,
    ) -> None:
        super().__init__(base_url="https://data-api.polymarket.com", timeout_seconds=1.0, retry=NO_WAIT)
        self.pages = list(pages or [])
        self.positions = dict(positions or {})
        self.requests: list[tuple[str, int, int]] = []

    def list_activity(self, user, limit=50, offset=0, types=("TRADE",)):
        self.requests.append((user, limit, offset))
        page = offset // max(1, limit)
        return list(self.pages[page]) if page < len(self.pages) else []

    def position_size(self, user: str, asset: str) -> float:
        return self.positions.get((user, asset), 0.0)


class FakeClob(ClobClient):
    def __init__(
        self,
        books: list[Any] | None = None,
        markets: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(base_url="https://clob.polymarket.com", timeout_seconds=1.0, retry=NO_WAIT)
        self.books = list(books or [])
        self.markets = dict(markets or {})
        self.book_requests = 0

    def get_book(self, token_id: str) -> OrderBookSnapshot:
        self.book_requests += 1
        book = self.books.pop(0) if len(self.books) > 1 else (self.books[0] if self.books else build_book(token_id))
        if isinstance(book, BaseException):
            raise book
        return book

    def get_market(self, condition_id: str) -> MarketStatus:
        market = self.markets.get(condition_id)
        if isinstance(market, BaseException):
            raise market
        if market is None:
            return MarketStatus(condition_id=condition_id, closed=False, active=True)
        return market
