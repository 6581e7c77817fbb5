from __future__ import annotations

from dataclasses import dataclass, field
from typing import TypedDict, cast

from copytrade_bot.http_utils import get_json
from copytrade_bot.models import parse_float
from copytrade_bot.retry import RetryPolicy


class ActivityEvent(TypedDict, total=False):
    proxyWallet: str
    timestamp: int | float | str
    conditionId: str
    type: str
    side: str
    size: object
    usdcSize: object
    price: object
    transactionHash: str
    asset: str
    outcome: str
    outcomeIndex: object
    title: str
    slug: str


class PositionPayload(TypedDict, total=False):
    proxyWallet: str
    asset: str
    conditionId: str
    size: object
    avgPrice: object
    outcome: str
    title: str


@dataclass
class ActivityClient:
    base_url: str
    timeout_seconds: float = 10.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def list_activity(
        self,
        user: str,
        limit: int = 50,
        offset: int = 0,
        types: tuple[str, ...] = ("TRADE",),
    ) -> list[ActivityEvent]:
        params = {
            "user": user,
            "limit": str(max(1, int(limit))),
            "offset": str(max(0, int(offset))),
        }
        if types:
            params["type"] = ",".join(types)
        payload = self.retry.call(
            lambda: get_json(f"{self.base_url}/activity", params=params, timeout=self.timeout_seconds),
            label="activity",
        )
        if not isinstance(payload, list):
            raise RuntimeError("Data API /activity response must be a JSON array")
        return [cast(ActivityEvent, item) for item in payload if isinstance(item, dict)]

    def list_positions(self, user: str) -> list[PositionPayload]:
        payload = self.retry.call(
            lambda: get_json(
                f"{self.base_url}/positions",
                params={"user": user, "sizeThreshold": "0"},
                timeout=self.timeout_seconds,
            ),
            label="positions",
        )
        if not isinstance(payload, list):
            raise RuntimeError("Data API /positions response must be a JSON array")
        return [cast(PositionPayload, item) for item in payload if isinstance(item, dict)]

    def position_size(self, user: str, asset: str) -> float:
        for position in self.list_positions(user):
            if str(position.get("asset") or "") == asset:
                return max(0.0, parse_float(position.get("size")))
        return 0.0
