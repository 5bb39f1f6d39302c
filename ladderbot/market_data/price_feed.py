"""
PriceFeed: canonical PriceUpdate stream for one symbol.

- Normalizes stream payloads (see normalizer.py) into PriceUpdate
- Drops duplicate (source, symbol, server time) updates
- Throttles unchanged prices; the first update after a (re)start or
  reconnect always passes
- Falls back to REST (primary, then secondary, then last known price)
  when the stream goes quiet, and nudges the ConnectionManager to
  resubscribe or reconnect when it stays quiet
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from ladderbot.infra.errors import ProtocolError, StaleDataError
from ladderbot.infra.logging_cfg import should_sample
from ladderbot.market_data.connection import (
    ConnectionConfig,
    ConnectionManager,
    ConnectionState,
    TransportFactory,
)
from ladderbot.market_data.dedup import DedupCache
from ladderbot.market_data.normalizer import parse_ticker, symbols_match
from ladderbot.market_data.protocol import StreamProtocol
from ladderbot.market_data.rest_price import RestPriceSource

log = logging.getLogger("ladderbot")


class PriceSource(str, Enum):
    STREAM = "stream"
    REST_PRIMARY = "rest-primary"
    REST_FALLBACK = "rest-fallback"
    CACHE = "cache"


@dataclass(frozen=True)
class PriceUpdate:
    symbol: str
    price: Decimal
    observed_at: float
    source: PriceSource
    event_time: Optional[int] = None

    def age(self, now: float) -> float:
        return max(0.0, now - self.observed_at)


PriceObserver = Callable[[PriceUpdate], None]


@dataclass
class PriceFeedConfig:
    """Configuration for PriceFeed."""
    # Unchanged-price throttle
    throttle_interval_sec: float = 0.5
    restart_throttle_interval_sec: float = 1.0
    restart_settle_sec: float = 5.0

    # Staleness checker
    first_check_delay_sec: float = 5.0
    check_interval_sec: float = 10.0
    startup_rest_after_sec: float = 20.0
    rest_after_sec: float = 45.0
    reconnect_after_sec: float = 120.0
    failed_retry_after_sec: float = 300.0

    # Default freshness bound for get_price()
    max_price_age_sec: float = 60.0

    dedup_ttl_sec: float = 600.0
    dedup_max_entries: int = 1000
    unparsed_log_rate: float = 0.01


class PriceFeed:
    """
    Usage:
        feed = PriceFeed("SOL_USDC_PERP", rest_source=rest_source)
        unsubscribe = feed.subscribe(lambda update: print(update.price))
        await feed.start()
        await feed.wait_for_first_price(timeout=15)
        ...
        await feed.stop()
    """

    def __init__(
        self,
        symbol: str,
        rest_source: RestPriceSource,
        config: Optional[PriceFeedConfig] = None,
        connection_config: Optional[ConnectionConfig] = None,
        protocol: Optional[StreamProtocol] = None,
        transport_factory: Optional[TransportFactory] = None,
        on_degraded: Optional[Callable[[Dict[str, Any]], Awaitable[Any]]] = None,
        clock: Callable[[], float] = time.time,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.symbol = symbol
        self.rest_source = rest_source
        self.config = config or PriceFeedConfig()
        self._clock = clock
        self._log_event = log_event or self._default_log
        self._on_degraded = on_degraded

        self.connection = ConnectionManager(
            symbol=symbol,
            on_message=self.handle_stream_message,
            config=connection_config,
            protocol=protocol,
            transport_factory=transport_factory,
            on_status=self.handle_connection_status,
            log_event=log_event,
        )
        self._dedup = DedupCache(ttl_sec=self.config.dedup_ttl_sec, max_entries=self.config.dedup_max_entries)

        self._observers: List[PriceObserver] = []
        self._last: Optional[PriceUpdate] = None
        self._last_delivered_at: Optional[float] = None
        self._last_stream_at: Optional[float] = None
        self._started_at: float = clock()
        self._first_pending = True
        self._first_price = asyncio.Event()
        self._failed_since: Optional[float] = None
        self._last_recovery_at: Optional[float] = None

        self._running = False
        self._check_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._stats = {"delivered": 0, "duplicates": 0, "throttled": 0, "unparsed": 0, "foreign_symbol": 0, "rest_updates": 0}

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, "symbol": self.symbol, **kwargs}, default=str))

    # ------------------------------------------------------------------
    # Observers and queries
    # ------------------------------------------------------------------

    def subscribe(self, observer: PriceObserver) -> Callable[[], None]:
        """Register an observer; returns a callable that unregisters it."""
        self._observers.append(observer)

        def _unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _unsubscribe

    @property
    def current_update(self) -> Optional[PriceUpdate]:
        return self._last

    @property
    def current_price(self) -> Optional[Decimal]:
        return self._last.price if self._last else None

    @property
    def last_update_time(self) -> Optional[float]:
        return self._last.observed_at if self._last else None

    def data_age(self) -> Optional[float]:
        if self._last is None:
            return None
        return self._last.age(self._clock())

    def fresh_update(self, max_age: Optional[float] = None) -> Optional[PriceUpdate]:
        limit = self.config.max_price_age_sec if max_age is None else max_age
        if self._last is None or self._last.age(self._clock()) > limit:
            return None
        return self._last

    def last_known(self) -> Optional[PriceUpdate]:
        """Last delivered price re-labelled as cache, or None before any price."""
        if self._last is None:
            return None
        return replace(self._last, source=PriceSource.CACHE)

    def require_fresh(self, max_age: Optional[float] = None) -> PriceUpdate:
        """Like fresh_update(), but raises StaleDataError instead of returning None."""
        update = self.fresh_update(max_age)
        if update is None:
            limit = self.config.max_price_age_sec if max_age is None else max_age
            raise StaleDataError(f"no {self.symbol} price newer than {limit}s", age_sec=self.data_age())
        return update

    async def get_fresh_price(self, max_age: Optional[float] = None) -> PriceUpdate:
        """Fresh stream price, else a REST fetch; StaleDataError when neither is available."""
        try:
            return self.require_fresh(max_age)
        except StaleDataError as exc:
            update = await self.refresh_from_rest()
            if update is None:
                raise
            self._log_event("price_refreshed_from_rest", source=update.source.value, stale_age_sec=exc.age_sec)
            return update

    async def get_price(self, max_age: Optional[float] = None) -> Optional[PriceUpdate]:
        """Fresh stream price, else a REST fetch, else the last known price (source=cache)."""
        try:
            return await self.get_fresh_price(max_age)
        except StaleDataError:
            return self.last_known()

    async def wait_for_first_price(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._first_price.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def status(self) -> Dict[str, Any]:
        return {
            "price": self._last.price if self._last else None,
            "source": self._last.source.value if self._last else None,
            "age_sec": self.data_age(),
            "stream_age_sec": (self._clock() - self._last_stream_at) if self._last_stream_at else None,
            "connection": self.connection.status(),
            "rest": self.rest_source.get_stats(),
            **self._stats,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._started_at = self._clock()
        self._first_pending = True
        self._first_price.clear()
        self._last_stream_at = None
        self._failed_since = None
        self._last_recovery_at = None
        await self.connection.start()
        self._check_task = asyncio.create_task(self._staleness_loop(), name="price-staleness")
        self._log_event("price_feed_started")

    async def stop(self) -> None:
        """Stop the staleness timer and close the connection. Safe to call twice."""
        if not self._running:
            return
        self._running = False
        tasks = [t for t in [self._check_task, *self._background] if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._check_task = None
        self._background.clear()
        await self.connection.stop()
        self._log_event("price_feed_stopped", **self._stats)

    async def restart(self) -> None:
        await self.stop()
        await self.start()

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def handle_stream_message(self, message: Dict[str, Any]) -> None:
        try:
            ticker = parse_ticker(message)
        except ProtocolError as exc:
            self._stats["unparsed"] += 1
            if should_sample(self.config.unparsed_log_rate):
                self._log_event("ws_payload_unparsed", err=str(exc))
            return
        if not symbols_match(ticker.symbol, self.symbol):
            self._stats["foreign_symbol"] += 1
            return
        now = self._clock()
        self._last_stream_at = now
        self._ingest(PriceUpdate(
            symbol=self.symbol,
            price=ticker.price,
            observed_at=now,
            source=PriceSource.STREAM,
            event_time=ticker.event_time,
        ))

    def handle_connection_status(self, state: ConnectionState) -> None:
        if state is ConnectionState.OPEN:
            self._first_pending = True
            self._failed_since = None
        elif state is ConnectionState.FAILED:
            self._failed_since = self._clock()
            status = self.connection.status()
            self._log_event("price_feed_degraded", reason="reconnect_exhausted", attempts=status["reconnect_attempts"])
            if self._on_degraded is not None:
                self._spawn(self._on_degraded(status))

    async def refresh_from_rest(self, force: bool = False) -> Optional[PriceUpdate]:
        quote = await self.rest_source.fetch(force=force)
        if quote is None:
            return None
        update = PriceUpdate(
            symbol=self.symbol,
            price=quote.price,
            observed_at=self._clock(),
            source=PriceSource(quote.source),
        )
        self._stats["rest_updates"] += 1
        self._ingest(update)
        return self._last if self._last is not None and self._last.price == update.price else update

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _ingest(self, update: PriceUpdate) -> bool:
        if update.price <= 0:
            return False

        if update.event_time is not None:
            key = DedupCache.make_key(update.source.value, update.symbol, update.event_time)
            if not self._dedup.check_and_add(key):
                self._stats["duplicates"] += 1
                return False

        now = update.observed_at
        last = self._last
        if not self._first_pending and last is not None and update.price == last.price:
            interval = self.config.throttle_interval_sec
            if now - self._started_at < self.config.restart_settle_sec:
                interval = self.config.restart_throttle_interval_sec
            if self._last_delivered_at is not None and now - self._last_delivered_at < interval:
                self._stats["throttled"] += 1
                return False

        if last is not None and update.observed_at < last.observed_at:
            # Wall clock stepped back; keep observed_at non-decreasing
            update = replace(update, observed_at=last.observed_at)

        self._last = update
        self._last_delivered_at = update.observed_at
        if self._first_pending:
            self._first_pending = False
            self._log_event("price_first_update", price=update.price, source=update.source.value)
        self._first_price.set()
        self._stats["delivered"] += 1
        self._log_event("price_update", price=update.price, source=update.source.value)

        for observer in list(self._observers):
            try:
                observer(update)
            except Exception as exc:
                self._log_event("price_observer_error", err=str(exc), err_type=type(exc).__name__)
        return True

    # ------------------------------------------------------------------
    # Staleness
    # ------------------------------------------------------------------

    async def _staleness_loop(self) -> None:
        await asyncio.sleep(self.config.first_check_delay_sec)
        while True:
            try:
                await self.check_staleness()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._log_event("price_feed_check_error", err=str(exc), err_type=type(exc).__name__)
            await asyncio.sleep(self.config.check_interval_sec)

    async def check_staleness(self) -> None:
        now = self._clock()
        conn = self.connection

        if conn.failed:
            await self.refresh_from_rest()
            if self._failed_since is not None and now - self._failed_since >= self.config.failed_retry_after_sec:
                self._failed_since = now
                self._log_event("price_feed_reset_connection")
                conn.reset()
                conn.connect()
            return

        reference = self._last_stream_at if self._last_stream_at is not None else self._started_at
        stream_age = now - reference
        threshold = self.config.rest_after_sec if self._last_stream_at is not None else self.config.startup_rest_after_sec
        if stream_age < threshold:
            return

        self._log_event(
            "ws_stale_detected",
            stream_age_sec=round(stream_age, 1),
            connected=conn.is_connected,
            subscribed=conn.is_subscribed,
        )
        await self.refresh_from_rest()

        if stream_age < self.config.reconnect_after_sec:
            return
        if self._last_recovery_at is not None and now - self._last_recovery_at < self.config.reconnect_after_sec:
            return
        if conn.connect_in_progress or conn.reconnect_scheduled:
            return
        self._last_recovery_at = now
        if conn.is_connected and not conn.is_subscribed:
            self._log_event("price_feed_resubscribe", stream_age_sec=round(stream_age, 1))
            await conn.subscribe()
        else:
            self._spawn(conn.force_reconnect("stale_data"))

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task
