from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FuturesTimeout, as_completed
import logging
import threading
import time
from typing import Any, Callable, Sequence, TypeVar
from urllib.error import HTTPError

from copytrade_bot.models import ProviderHealth

LOGGER = logging.getLogger("copytrade_bot")

T = TypeVar("T")

_RATE_LIMIT_MARKERS = ("429", "rate limit", "rate-limit", "ratelimit", "too many requests")


class ProviderPoolError(RuntimeError):
    def __init__(self, label: str, errors: list[str]) -> None:
        self.label = label
        self.errors = list(errors)
        detail = "; ".join(errors[:5]) if errors else "no endpoints attempted"
        super().__init__(f"all rpc endpoints failed op={label}: {detail}")


def is_rate_limited(exc: BaseException) -> bool:
    if isinstance(exc, HTTPError) and exc.code == 429:
        return True
    response = getattr(exc, "response", None)
    if response is not None and getattr(response, "status_code", None) == 429:
        return True
    args = getattr(exc, "args", ())
    if args and isinstance(args[0], dict) and args[0].get("code") == -32005:
        return True
    text = str(exc).lower()
    return any(marker in text for marker in _RATE_LIMIT_MARKERS)


def build_web3(url: str, timeout_seconds: float):
    from web3 import Web3
    from web3.middleware import ExtraDataToPOAMiddleware

    w3 = Web3(Web3.HTTPProvider(url, request_kwargs={"timeout": timeout_seconds}))
    # Polygon headers carry extra data beyond 32 bytes.
    w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
    return w3


class TimedDedupCache:
    """Remembers keys for ``ttl_seconds`` so overlapping notifications are handled once."""

    def __init__(
        self,
        ttl_seconds: float,
        *,
        clock: Callable[[], float] = time.time,
        max_entries: int = 20_000,
    ) -> None:
        self.ttl_seconds = float(ttl_seconds)
        self.max_entries = max(1, int(max_entries))
        self._clock = clock
        self._entries: dict[str, float] = {}
        self._lock = threading.Lock()

    def seen_or_add(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            self._evict(now)
            expires_at = self._entries.get(key)
            if expires_at is not None and expires_at > now:
                return True
            self._entries[key] = now + self.ttl_seconds
            return False

    def discard(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            self._evict(self._clock())
            return len(self._entries)

    def _evict(self, now: float) -> None:
        expired = [key for key, expires_at in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        overflow = len(self._entries) - self.max_entries
        if overflow > 0:
            for key in sorted(self._entries, key=self._entries.__getitem__)[:overflow]:
                del self._entries[key]


class ProviderPool:
    """Races read-only RPC calls across healthy endpoints and keeps the first answer."""

    def __init__(
        self,
        endpoints: Sequence[tuple[str, Any]],
        *,
        race_width: int = 5,
        cooldown_seconds: float = 60.0,
        call_timeout_seconds: float = 10.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not endpoints:
            raise ValueError("ProviderPool requires at least one endpoint")
        self._clients = [client for _, client in endpoints]
        self._health = [ProviderHealth(url=url) for url, _ in endpoints]
        self.race_width = max(1, int(race_width))
        self.cooldown_seconds = float(cooldown_seconds)
        self.call_timeout_seconds = float(call_timeout_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=max(4, min(len(self._clients), self.race_width) * 2),
            thread_name_prefix="rpc-race",
        )

    @classmethod
    def from_urls(
        cls,
        urls: Sequence[str],
        *,
        timeout_seconds: float,
        race_width: int = 5,
        cooldown_seconds: float = 60.0,
    ) -> "ProviderPool":
        endpoints = [(url, build_web3(url, timeout_seconds)) for url in urls]
        return cls(
            endpoints,
            race_width=race_width,
            cooldown_seconds=cooldown_seconds,
            call_timeout_seconds=timeout_seconds + 2.0,
        )

    def __len__(self) -> int:
        return len(self._clients)

    def endpoints(self) -> list[tuple[int, str, Any]]:
        return [(idx, self._health[idx].url, client) for idx, client in enumerate(self._clients)]

    def health(self) -> list[ProviderHealth]:
        with self._lock:
            return [
                ProviderHealth(
                    url=item.url,
                    healthy=item.healthy,
                    cooldown_until=item.cooldown_until,
                    last_error_at=item.last_error_at,
                    last_error=item.last_error,
                )
                for item in self._health
            ]

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def race(self, operation: Callable[[Any], T], label: str = "rpc") -> T:
        candidates = self._select_candidates()
        futures: dict[Future, int] = {
            self._executor.submit(operation, self._clients[idx]): idx for idx in candidates
        }
        pending = set(futures)
        errors: list[str] = []
        try:
            for future in as_completed(futures, timeout=self.call_timeout_seconds):
                pending.discard(future)
                idx = futures[future]
                try:
                    result = future.result()
                except Exception as exc:
                    self.record_failure(idx, exc)
                    errors.append(f"{self._health[idx].url}: {exc}")
                    continue
                self.record_success(idx)
                for straggler in pending:
                    straggler.add_done_callback(self._late_outcome_recorder(futures[straggler]))
                return result
        except FuturesTimeout:
            for future in pending:
                errors.append(f"{self._health[futures[future]].url}: timeout")
                future.add_done_callback(self._late_outcome_recorder(futures[future]))
        raise ProviderPoolError(label, errors)

    def call_on(self, index: int, operation: Callable[[Any], T]) -> T:
        """Runs ``operation`` against one endpoint, recording the outcome in its health."""
        try:
            result = operation(self._clients[index])
        except Exception as exc:
            self.record_failure(index, exc)
            raise
        self.record_success(index)
        return result

    def is_available(self, index: int) -> bool:
        now = self._clock()
        with self._lock:
            item = self._health[index]
            return item.healthy or item.cooldown_until <= now

    def record_success(self, index: int) -> None:
        with self._lock:
            item = self._health[index]
            item.healthy = True
            item.cooldown_until = 0.0

    def record_failure(self, index: int, exc: BaseException) -> None:
        now = self._clock()
        with self._lock:
            item = self._health[index]
            item.last_error_at = now
            item.last_error = str(exc)[:240]
            if not is_rate_limited(exc):
                return
            item.healthy = False
            item.cooldown_until = now + self.cooldown_seconds
        LOGGER.warning(
            "rpc_cooldown url=%s seconds=%.0f error=%s",
            item.url,
            self.cooldown_seconds,
            item.last_error,
        )

    def _late_outcome_recorder(self, index: int) -> Callable[[Future], None]:
        def _record(future: Future) -> None:
            if future.cancelled():
                return
            exc = future.exception()
            if exc is None:
                self.record_success(index)
            else:
                self.record_failure(index, exc)

        return _record

    def _select_candidates(self) -> list[int]:
        now = self._clock()
        with self._lock:
            for item in self._health:
                if not item.healthy and item.cooldown_until <= now:
                    item.healthy = True
                    item.cooldown_until = 0.0
            healthy = [idx for idx, item in enumerate(self._health) if item.healthy]
            if not healthy:
                for item in self._health:
                    item.healthy = True
                    item.cooldown_until = 0.0
                healthy = list(range(len(self._health)))
                fail_open = True
            else:
                fail_open = False
        if fail_open:
            LOGGER.warning("rpc_pool_fail_open endpoints=%s", len(healthy))
        return healthy[: self.race_width]
