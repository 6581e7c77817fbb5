from __future__ import annotations

from dataclasses import dataclass, field
import logging
import threading
import time
from typing import Callable, TypedDict, cast

from copytrade_bot.http_utils import get_json
from copytrade_bot.models import MarketRef, parse_token_ids
from copytrade_bot.retry import RetryPolicy

LOGGER = logging.getLogger("copytrade_bot")


class GammaMarketPayload(TypedDict, total=False):
    id: str | int
    slug: str
    question: str
    conditionId: str
    clobTokenIds: list[str] | str
    outcomes: list[str] | str


@dataclass
class GammaClient:
    base_url: str
    timeout_seconds: float = 10.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def fetch_markets_by_token(self, token_id: str) -> list[GammaMarketPayload]:
        payload = self.retry.call(
            lambda: get_json(
                f"{self.base_url}/markets",
                params={"clob_token_ids": token_id},
                timeout=self.timeout_seconds,
            ),
            label="gamma_markets",
        )
        if not isinstance(payload, list):
            raise RuntimeError("Gamma /markets response must be a JSON array")
        return [cast(GammaMarketPayload, item) for item in payload if isinstance(item, dict)]

    def fetch_market_by_token(self, token_id: str) -> MarketRef | None:
        for item in self.fetch_markets_by_token(token_id):
            token_ids = parse_token_ids(item.get("clobTokenIds"))
            if token_id not in token_ids:
                continue
            outcomes = parse_token_ids(item.get("outcomes"))
            index = token_ids.index(token_id)
            outcome = outcomes[index] if index < len(outcomes) else ""
            question_raw = item.get("question")
            condition_raw = item.get("conditionId")
            return MarketRef(
                condition_id=condition_raw.strip().lower() if isinstance(condition_raw, str) else "",
                title=question_raw.strip() if isinstance(question_raw, str) else "",
                outcome=outcome,
                token_id=token_id,
            )
        return None


class MarketTitleCache:
    """Token id -> market lookup, shared by every discovery producer."""

    def __init__(
        self,
        gamma: GammaClient,
        *,
        miss_ttl_seconds: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.gamma = gamma
        self.miss_ttl_seconds = float(miss_ttl_seconds)
        self._clock = clock
        self._hits: dict[str, MarketRef] = {}
        self._misses: dict[str, float] = {}
        self._lock = threading.Lock()

    def remember(self, ref: MarketRef) -> None:
        if not ref.token_id or not ref.title:
            return
        with self._lock:
            self._hits[ref.token_id] = ref
            self._misses.pop(ref.token_id, None)

    def lookup(self, token_id: str) -> MarketRef | None:
        now = self._clock()
        with self._lock:
            cached = self._hits.get(token_id)
            if cached is not None:
                return cached
            missed_at = self._misses.get(token_id)
            if missed_at is not None and now - missed_at < self.miss_ttl_seconds:
                return None
        try:
            ref = self.gamma.fetch_market_by_token(token_id)
        except Exception as exc:
            LOGGER.warning("title_lookup_failed token=%s error=%s", token_id, exc)
            ref = None
        with self._lock:
            if ref is None or not ref.title:
                self._misses[token_id] = now
                return ref
            self._hits[token_id] = ref
        return ref
