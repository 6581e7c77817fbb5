from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import json
from typing import Any


def parse_float(raw: Any, default: float = 0.0) -> float:
    if raw is None:
        return default
    if isinstance(raw, (int, float)):
        return float(raw)
    if isinstance(raw, str) and raw.strip() == "":
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def parse_timestamp(raw: Any) -> int | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        ts = raw
    elif isinstance(raw, float):
        ts = int(raw)
    elif isinstance(raw, str):
        text = raw.strip()
        if not text:
            return None
        try:
            ts = int(float(text))
        except ValueError:
            return None
    else:
        return None
    if ts <= 0:
        return None
    # Millisecond timestamps show up in some feeds.
    if ts > 10_000_000_000:
        ts //= 1000
    return ts


def parse_token_ids(raw: Any) -> list[str]:
    if isinstance(raw, list):
        return [str(x) for x in raw]
    if isinstance(raw, str):
        stripped = raw.strip()
        if stripped.startswith("["):
            try:
                data = json.loads(stripped)
                return [str(x) for x in data]
            except json.JSONDecodeError:
                return []
        if stripped:
            return [stripped]
    return []


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    MERGE = "MERGE"

    @staticmethod
    def parse(raw: Any) -> "Side | None":
        text = str(raw or "").strip().upper()
        for side in Side:
            if side.value == text:
                return side
        return None


class Origin(str, Enum):
    REST = "REST"
    CHAIN = "CHAIN"


class ExecutionState(str, Enum):
    PENDING = "PENDING"
    SIZING = "SIZING"
    BOOK_WALK = "BOOK_WALK"
    FILLED = "FILLED"
    SKIPPED = "SKIPPED"
    RETRY_EXHAUSTED = "RETRY_EXHAUSTED"


@dataclass
class DiscoveryRecord:
    transaction_hash: str
    condition_id: str
    asset: str
    side: Side
    size: float
    usdc_size: float
    price: float
    title: str
    outcome: str
    timestamp: int
    origin: Origin
    copy: bool = True
    attempts: int = 0
    dispatched: bool = False
    record_id: int | None = None


@dataclass
class DecodedTrade:
    transaction_hash: str
    side: Side
    asset: str
    size: float
    usdc_size: float
    price: float
    timestamp: int


@dataclass
class WorkItem:
    asset: str
    side: Side
    outcome: str
    condition_id: str
    title: str
    size: float
    usdc_size: float
    price: float
    timestamp: int
    record_ids: list[int] = field(default_factory=list)


@dataclass
class MarketRef:
    condition_id: str
    title: str
    outcome: str
    token_id: str


@dataclass
class OrderBookLevel:
    price: float
    size: float

    @property
    def notional(self) -> float:
        return self.price * self.size


@dataclass
class OrderBookSnapshot:
    token_id: str
    timestamp_ms: int
    bids: list[OrderBookLevel] = field(default_factory=list)
    asks: list[OrderBookLevel] = field(default_factory=list)

    @property
    def best_bid_level(self) -> OrderBookLevel | None:
        if not self.bids:
            return None
        return max(self.bids, key=lambda level: level.price)

    @property
    def best_ask_level(self) -> OrderBookLevel | None:
        if not self.asks:
            return None
        return min(self.asks, key=lambda level: level.price)


@dataclass
class MarketToken:
    token_id: str
    outcome: str
    winner: bool = False


@dataclass
class MarketStatus:
    condition_id: str
    closed: bool
    active: bool
    tokens: list[MarketToken] = field(default_factory=list)
    question: str = ""

    @property
    def winning_token(self) -> MarketToken | None:
        for token in self.tokens:
            if token.winner:
                return token
        return None


@dataclass
class ProviderHealth:
    url: str
    healthy: bool = True
    cooldown_until: float = 0.0
    last_error_at: float = 0.0
    last_error: str = ""


@dataclass
class OrderResult:
    success: bool
    amount: float
    price: float
    shares: float
    error: str = ""
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class Position:
    condition_id: str
    outcome: str
    title: str = ""
    asset: str = ""
    total_spend: float = 0.0
    total_shares: float = 0.0
    avg_price: float = 0.0
    target_spend: float = 0.0
    target_shares: float = 0.0
    target_avg_price: float = 0.0
    total_return: float = 0.0
    target_return: float = 0.0
    is_closed: bool = False
    is_winner: bool = False
    pnl: float = 0.0
    target_pnl: float = 0.0


@dataclass
class Stats:
    total_spend: float = 0.0
    total_returns: float = 0.0
    total_wins: float = 0.0
    total_losses: float = 0.0
    winning_positions: int = 0
    losing_positions: int = 0
    net_pnl: float = 0.0
    target_total_spend: float = 0.0
    target_total_returns: float = 0.0
    target_net_pnl: float = 0.0
    largest_market_spend: float = 0.0
    largest_market_title: str = ""
    avg_latency: float = 0.0
    total_trades_with_latency: int = 0
    last_updated: str = ""

    @property
    def win_rate(self) -> float:
        closed = self.winning_positions + self.losing_positions
        if closed <= 0:
            return 0.0
        return self.winning_positions / closed

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_spend": round(self.total_spend, 6),
            "total_returns": round(self.total_returns, 6),
            "total_wins": round(self.total_wins, 6),
            "total_losses": round(self.total_losses, 6),
            "winning_positions": self.winning_positions,
            "losing_positions": self.losing_positions,
            "win_rate": round(self.win_rate, 4),
            "net_pnl": round(self.net_pnl, 6),
            "target_total_spend": round(self.target_total_spend, 6),
            "target_total_returns": round(self.target_total_returns, 6),
            "target_net_pnl": round(self.target_net_pnl, 6),
            "largest_market_spend": round(self.largest_market_spend, 6),
            "largest_market_title": self.largest_market_title,
            "avg_latency": round(self.avg_latency, 3),
            "total_trades_with_latency": self.total_trades_with_latency,
            "last_updated": self.last_updated,
        }
