"""
RestPriceSource: REST price fallback for when the stream is stale.

Architecture:
    Primary source (the venue's own ticker) is tried first through the
    RetryExecutor, then the secondary public source. Consecutive failures
    push the next allowed fetch further out:

        delay = min(backoff_cap_sec, retry_interval_sec * 1.5 ** (failures - 1))

    and no two fetches run closer than ``min_interval_sec`` unless forced.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

from ladderbot.infra.retry import RetryExecutor

log = logging.getLogger("ladderbot")

QuoteFn = Callable[[str], Awaitable[Decimal]]


@dataclass
class RestPriceConfig:
    """Configuration for RestPriceSource."""
    min_interval_sec: float = 5.0
    retry_interval_sec: float = 30.0
    backoff_cap_sec: float = 300.0
    max_attempts: int = 2


@dataclass
class RestQuote:
    """Result of a successful REST fetch."""
    price: Decimal
    source: str  # "rest-primary" or "rest-fallback"
    fetched_at: float
    duration_ms: float = 0.0


class RestPriceSource:
    """
    Usage:
        source = RestPriceSource(
            symbol="SOL_USDC_PERP",
            primary=primary_quote,
            fallback=quotes.get_price,
            retry=RetryExecutor(max_attempts=2),
        )
        quote = await source.fetch()
        if quote is None:
            ...  # both failed or backing off; use last known price
    """

    def __init__(
        self,
        symbol: str,
        primary: QuoteFn,
        fallback: Optional[QuoteFn] = None,
        retry: Optional[RetryExecutor] = None,
        config: Optional[RestPriceConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.symbol = symbol
        self._primary = primary
        self._fallback = fallback
        self.config = config or RestPriceConfig()
        self.retry = retry or RetryExecutor(max_attempts=self.config.max_attempts)
        self._clock = clock
        self._log_event = log_event or self._default_log

        self._last_attempt_at: Optional[float] = None
        self._next_allowed_at: float = 0.0
        self.consecutive_failures: int = 0
        self._stats = {"primary_ok": 0, "fallback_ok": 0, "failures": 0, "skipped": 0}

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, "symbol": self.symbol, **kwargs}, default=str))

    def is_due(self) -> bool:
        now = self._clock()
        if now < self._next_allowed_at:
            return False
        if self._last_attempt_at is not None and now - self._last_attempt_at < self.config.min_interval_sec:
            return False
        return True

    def backoff_delay(self) -> float:
        if self.consecutive_failures <= 0:
            return 0.0
        return min(
            self.config.backoff_cap_sec,
            self.config.retry_interval_sec * (1.5 ** (self.consecutive_failures - 1)),
        )

    async def fetch(self, force: bool = False) -> Optional[RestQuote]:
        """Return a quote, or None if throttled/backing off or both sources failed."""
        if not force and not self.is_due():
            self._stats["skipped"] += 1
            return None

        started = self._clock()
        self._last_attempt_at = started

        price = await self._try("rest-primary", self._primary)
        source = "rest-primary"
        if price is None and self._fallback is not None:
            price = await self._try("rest-fallback", self._fallback)
            source = "rest-fallback"

        if price is None:
            self.consecutive_failures += 1
            self._stats["failures"] += 1
            delay = self.backoff_delay()
            self._next_allowed_at = self._clock() + delay
            self._log_event("rest_price_backoff", failures=self.consecutive_failures, delay_sec=delay)
            return None

        self.consecutive_failures = 0
        self._next_allowed_at = 0.0
        self._stats["primary_ok" if source == "rest-primary" else "fallback_ok"] += 1
        now = self._clock()
        return RestQuote(price=price, source=source, fetched_at=now, duration_ms=(now - started) * 1000)

    async def _try(self, source: str, fn: QuoteFn) -> Optional[Decimal]:
        try:
            price = await self.retry.execute(lambda: fn(self.symbol), label=source)
        except Exception as exc:
            self._log_event("rest_price_failed", source=source, err=str(exc), err_type=type(exc).__name__)
            return None
        if price is None or price <= 0:
            self._log_event("rest_price_failed", source=source, err=f"invalid price {price}")
            return None
        return price

    def get_stats(self) -> dict:
        return {
            **self._stats,
            "consecutive_failures": self.consecutive_failures,
            "backoff_sec": self.backoff_delay(),
        }
