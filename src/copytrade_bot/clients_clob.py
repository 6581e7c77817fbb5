from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any

from copytrade_bot.http_utils import get_json
from copytrade_bot.models import MarketStatus, MarketToken, OrderBookLevel, OrderBookSnapshot, parse_float
from copytrade_bot.retry import RetryPolicy

LOGGER = logging.getLogger("copytrade_bot")


def _levels(raw: Any) -> list[OrderBookLevel]:
    if not isinstance(raw, list):
        return []
    levels: list[OrderBookLevel] = []
    for level in raw:
        if not isinstance(level, dict):
            continue
        price = parse_float(level.get("price"))
        size = parse_float(level.get("size"))
        if size <= 0:
            continue
        levels.append(OrderBookLevel(price=price, size=size))
    return levels


@dataclass
class ClobClient:
    base_url: str
    timeout_seconds: float = 10.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def get_book(self, token_id: str) -> OrderBookSnapshot:
        payload = self.retry.call(
            lambda: get_json(f"{self.base_url}/book", params={"token_id": token_id}, timeout=self.timeout_seconds),
            label="clob_book",
        )
        if not isinstance(payload, dict):
            raise RuntimeError("CLOB /book response must be a JSON object")
        return OrderBookSnapshot(
            token_id=token_id,
            timestamp_ms=int(parse_float(payload.get("timestamp"))),
            bids=_levels(payload.get("bids")),
            asks=_levels(payload.get("asks")),
        )

    def get_market(self, condition_id: str) -> MarketStatus:
        payload = self.retry.call(
            lambda: get_json(f"{self.base_url}/markets/{condition_id}", timeout=self.timeout_seconds),
            label="clob_market",
        )
        if not isinstance(payload, dict):
            raise RuntimeError("CLOB /markets response must be a JSON object")
        tokens = []
        for token in payload.get("tokens") or []:
            if not isinstance(token, dict):
                continue
            tokens.append(
                MarketToken(
                    token_id=str(token.get("token_id") or ""),
                    outcome=str(token.get("outcome") or ""),
                    winner=bool(token.get("winner")),
                )
            )
        return MarketStatus(
            condition_id=str(payload.get("condition_id") or condition_id).lower(),
            closed=bool(payload.get("closed")),
            active=bool(payload.get("active")),
            tokens=tokens,
            question=str(payload.get("question") or ""),
        )
