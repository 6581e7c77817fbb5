"""Bounded retry with exponential backoff for transient network failures."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import random
import socket
import time
from typing import Callable, TypeVar
from urllib.error import HTTPError, URLError

LOGGER = logging.getLogger("copytrade_bot")

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


def is_transient_error(exc: BaseException) -> bool:
    """Timeouts, connection resets and rate limiting are worth retrying."""
    if isinstance(exc, HTTPError):
        return exc.code in RETRYABLE_STATUS_CODES
    if isinstance(exc, (URLError, TimeoutError, socket.timeout, ConnectionError)):
        return True
    text = str(exc).lower()
    return any(
        marker in text
        for marker in ("timed out", "timeout", "connection reset", "too many requests", "rate limit", "429")
    )


@dataclass
class RetryPolicy:
    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 8.0
    exponential_base: float = 2.0
    jitter: float = 0.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def delay_for(self, attempt: int) -> float:
        delay = min(self.max_delay, self.base_delay * (self.exponential_base**attempt))
        if self.jitter > 0:
            delay += random.uniform(-self.jitter, self.jitter) * delay
        return max(0.0, delay)

    def call(
        self,
        fn: Callable[[], T],
        *,
        label: str,
        retry_on: Callable[[BaseException], bool] = is_transient_error,
    ) -> T:
        attempts = max(1, int(self.max_attempts))
        for attempt in range(attempts):
            try:
                return fn()
            except Exception as exc:
                if attempt + 1 >= attempts or not retry_on(exc):
                    raise
                delay = self.delay_for(attempt)
                LOGGER.warning(
                    "retry op=%s attempt=%s/%s delay=%.2fs error=%s",
                    label,
                    attempt + 1,
                    attempts,
                    delay,
                    exc,
                )
                self.sleep(delay)
        raise RuntimeError(f"retry loop exited without result op={label}")
