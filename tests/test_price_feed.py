"""
Tests for PriceFeed: normalization, dedup, throttle, REST fallback and
staleness recovery.
"""
import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from ladderbot.infra.errors import StaleDataError
from ladderbot.market_data.connection import ConnectionState
from ladderbot.market_data.price_feed import PriceFeed, PriceFeedConfig, PriceSource
from ladderbot.market_data.rest_price import RestQuote

SYMBOL = "SOL_USDC_PERP"


def ticker(event_time, price="100", symbol=SYMBOL):
    return {"stream": f"ticker.{symbol}", "data": {"e": "ticker", "s": symbol, "E": event_time, "c": price}}


def make_rest(price=None, source="rest-primary"):
    rest = MagicMock()
    quote = None if price is None else RestQuote(price=Decimal(price), source=source, fetched_at=0.0)
    rest.fetch = AsyncMock(return_value=quote)
    rest.get_stats = MagicMock(return_value={})
    return rest


def make_connection(**attrs):
    conn = MagicMock()
    conn.failed = False
    conn.is_connected = True
    conn.is_subscribed = True
    conn.connect_in_progress = False
    conn.reconnect_scheduled = False
    conn.subscribe = AsyncMock(return_value=True)
    conn.force_reconnect = AsyncMock()
    conn.status = MagicMock(return_value={"reconnect_attempts": 5})
    for key, value in attrs.items():
        setattr(conn, key, value)
    return conn


@pytest.fixture
def rest():
    return make_rest()


@pytest.fixture
def feed(clock, events, rest):
    return PriceFeed(SYMBOL, rest_source=rest, config=PriceFeedConfig(), clock=clock, log_event=events)


class TestStreamIngest:

    @pytest.mark.asyncio
    async def test_stream_update_delivered(self, feed):
        received = []
        feed.subscribe(received.append)
        feed.handle_stream_message(ticker(1, "101.5"))
        assert len(received) == 1
        update = received[0]
        assert update.price == Decimal("101.5")
        assert update.source is PriceSource.STREAM
        assert update.event_time == 1
        assert feed.current_price == Decimal("101.5")
        assert await feed.wait_for_first_price(0.1)

    @pytest.mark.asyncio
    async def test_wait_for_first_price_times_out(self, feed):
        assert await feed.wait_for_first_price(0.01) is False

    @pytest.mark.asyncio
    async def test_duplicate_event_dropped(self, feed):
        received = []
        feed.subscribe(received.append)
        feed.handle_stream_message(ticker(1, "100"))
        feed.handle_stream_message(ticker(1, "100.5"))
        assert len(received) == 1
        assert feed.status()["duplicates"] == 1

    @pytest.mark.asyncio
    async def test_foreign_symbol_and_garbage_dropped(self, feed):
        received = []
        feed.subscribe(received.append)
        feed.handle_stream_message(ticker(1, "65000", symbol="BTC_USDC_PERP"))
        feed.handle_stream_message({"symbol": SYMBOL})
        assert received == []
        stats = feed.status()
        assert stats["foreign_symbol"] == 1
        assert stats["unparsed"] == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("price", ["Infinity", "NaN", "-Infinity", "sNaN"])
    async def test_non_finite_price_dropped(self, feed, price):
        received = []
        feed.subscribe(received.append)
        feed.handle_stream_message(ticker(1, price))
        assert received == []
        assert feed.current_price is None
        assert feed.status()["unparsed"] == 1

    @pytest.mark.asyncio
    async def test_unchanged_price_throttled(self, feed, clock):
        received = []
        feed.subscribe(received.append)
        feed.handle_stream_message(ticker(1, "100"))
        clock.advance(0.1)
        feed.handle_stream_message(ticker(2, "100"))
        assert len(received) == 1
        assert feed.status()["throttled"] == 1

        clock.advance(0.01)
        feed.handle_stream_message(ticker(3, "100.01"))
        assert len(received) == 2

        clock.advance(2.0)
        feed.handle_stream_message(ticker(4, "100.01"))
        assert len(received) == 3

    @pytest.mark.asyncio
    async def test_first_update_after_reconnect_bypasses_throttle(self, feed, clock):
        received = []
        feed.subscribe(received.append)
        feed.handle_stream_message(ticker(1, "100"))
        feed.handle_connection_status(ConnectionState.OPEN)
        clock.advance(0.01)
        feed.handle_stream_message(ticker(2, "100"))
        assert len(received) == 2

    @pytest.mark.asyncio
    async def test_observed_at_never_goes_backwards(self, feed, clock):
        feed.handle_stream_message(ticker(1, "100"))
        first = feed.last_update_time
        clock.now -= 10
        feed.handle_stream_message(ticker(2, "101"))
        assert feed.current_price == Decimal("101")
        assert feed.last_update_time == first

    @pytest.mark.asyncio
    async def test_observer_error_isolated(self, feed, events):
        received = []

        def broken(update):
            raise RuntimeError("boom")

        feed.subscribe(broken)
        feed.subscribe(received.append)
        feed.handle_stream_message(ticker(1, "100"))
        assert len(received) == 1
        assert "price_observer_error" in events.names()

    @pytest.mark.asyncio
    async def test_unsubscribe(self, feed):
        received = []
        unsubscribe = feed.subscribe(received.append)
        unsubscribe()
        unsubscribe()
        feed.handle_stream_message(ticker(1, "100"))
        assert received == []


class TestPriceQueries:

    @pytest.mark.asyncio
    async def test_fresh_price_served_without_rest(self, feed, rest):
        feed.handle_stream_message(ticker(1, "100"))
        update = await feed.get_price(max_age=60)
        assert update.source is PriceSource.STREAM
        rest.fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stale_price_refreshed_from_rest(self, clock, events):
        rest = make_rest("99.5")
        feed = PriceFeed(SYMBOL, rest_source=rest, clock=clock, log_event=events)
        feed.handle_stream_message(ticker(1, "100"))
        clock.advance(61)
        update = await feed.get_price(max_age=60)
        assert update.price == Decimal("99.5")
        assert update.source is PriceSource.REST_PRIMARY
        assert feed.current_price == Decimal("99.5")

    @pytest.mark.asyncio
    async def test_falls_back_to_last_known(self, feed, clock):
        feed.handle_stream_message(ticker(1, "100"))
        clock.advance(61)
        update = await feed.get_price(max_age=60)
        assert update.price == Decimal("100")
        assert update.source is PriceSource.CACHE
        assert feed.fresh_update(60) is None

    @pytest.mark.asyncio
    async def test_no_price_at_all(self, feed):
        assert await feed.get_price() is None
        assert feed.data_age() is None
        assert feed.last_known() is None

    @pytest.mark.asyncio
    async def test_require_fresh_raises_stale_data(self, feed, clock):
        feed.handle_stream_message(ticker(1, "100"))
        assert feed.require_fresh(60).price == Decimal("100")
        clock.advance(61)
        with pytest.raises(StaleDataError) as exc_info:
            feed.require_fresh(60)
        assert exc_info.value.age_sec == pytest.approx(61)

    @pytest.mark.asyncio
    async def test_get_fresh_price_raises_when_rest_also_fails(self, feed, rest, clock):
        feed.handle_stream_message(ticker(1, "100"))
        clock.advance(61)
        with pytest.raises(StaleDataError):
            await feed.get_fresh_price(60)
        rest.fetch.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_get_fresh_price_uses_rest(self, clock, events):
        feed = PriceFeed(SYMBOL, rest_source=make_rest("99.5"), clock=clock, log_event=events)
        update = await feed.get_fresh_price(60)
        assert update.price == Decimal("99.5")
        assert "price_refreshed_from_rest" in events.names()


class TestStaleness:

    @pytest.mark.asyncio
    async def test_startup_grace_before_rest(self, feed, rest, clock, events):
        feed.connection = make_connection(is_subscribed=False)
        clock.advance(10)
        await feed.check_staleness()
        rest.fetch.assert_not_awaited()
        clock.advance(15)
        await feed.check_staleness()
        rest.fetch.assert_awaited_once()
        assert "ws_stale_detected" in events.names()

    @pytest.mark.asyncio
    async def test_quiet_stream_refreshes_then_reconnects(self, feed, rest, clock):
        conn = make_connection()
        feed.connection = conn
        feed.handle_stream_message(ticker(1, "100"))

        clock.advance(50)
        await feed.check_staleness()
        rest.fetch.assert_awaited_once()
        conn.force_reconnect.assert_not_called()

        clock.advance(80)
        await feed.check_staleness()
        await asyncio.sleep(0)
        conn.force_reconnect.assert_awaited_once_with("stale_data")

        clock.advance(10)
        await feed.check_staleness()
        await asyncio.sleep(0)
        assert conn.force_reconnect.await_count == 1

    @pytest.mark.asyncio
    async def test_connected_but_unsubscribed_resubscribes(self, feed, clock):
        conn = make_connection(is_subscribed=False)
        feed.connection = conn
        feed.handle_stream_message(ticker(1, "100"))
        clock.advance(125)
        await feed.check_staleness()
        conn.subscribe.assert_awaited_once()
        conn.force_reconnect.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_recovery_while_connect_in_progress(self, feed, clock):
        conn = make_connection(connect_in_progress=True)
        feed.connection = conn
        feed.handle_stream_message(ticker(1, "100"))
        clock.advance(125)
        await feed.check_staleness()
        conn.force_reconnect.assert_not_called()
        conn.subscribe.assert_not_called()

    @pytest.mark.asyncio
    async def test_rest_updates_do_not_mask_dead_stream(self, clock, events):
        rest = make_rest("100")
        feed = PriceFeed(SYMBOL, rest_source=rest, clock=clock, log_event=events)
        conn = make_connection()
        feed.connection = conn
        feed.handle_stream_message(ticker(1, "100"))
        for _ in range(13):
            clock.advance(10)
            await feed.check_staleness()
        await asyncio.sleep(0)
        conn.force_reconnect.assert_awaited_once_with("stale_data")

    @pytest.mark.asyncio
    async def test_failed_connection_polls_rest_and_retries_later(self, clock, events):
        rest = make_rest("98")
        on_degraded = AsyncMock()
        feed = PriceFeed(SYMBOL, rest_source=rest, clock=clock, log_event=events, on_degraded=on_degraded)
        conn = make_connection(failed=True)
        feed.connection = conn

        feed.handle_connection_status(ConnectionState.FAILED)
        await asyncio.sleep(0)
        on_degraded.assert_awaited_once_with({"reconnect_attempts": 5})
        assert "price_feed_degraded" in events.names()

        await feed.check_staleness()
        rest.fetch.assert_awaited_once()
        conn.reset.assert_not_called()

        clock.advance(300)
        await feed.check_staleness()
        conn.reset.assert_called_once()
        conn.connect.assert_called_once()
