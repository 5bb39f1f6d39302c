"""
Tests for RestPriceSource: primary/fallback order, throttle and backoff.
"""
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from ladderbot.infra.errors import TransportError
from ladderbot.infra.retry import RetryExecutor
from ladderbot.market_data.rest_price import RestPriceConfig, RestPriceSource


def make_source(clock, events, primary, fallback=None):
    return RestPriceSource(
        symbol="SOL_USDC_PERP",
        primary=primary,
        fallback=fallback,
        retry=RetryExecutor(max_attempts=1, sleep=AsyncMock()),
        config=RestPriceConfig(min_interval_sec=5, retry_interval_sec=30, backoff_cap_sec=300),
        clock=clock,
        log_event=events,
    )


class TestRestPriceSource:

    @pytest.mark.asyncio
    async def test_primary_used_first(self, clock, events):
        primary = AsyncMock(return_value=Decimal("100"))
        fallback = AsyncMock(return_value=Decimal("99"))
        source = make_source(clock, events, primary, fallback)
        quote = await source.fetch()
        assert quote.price == Decimal("100")
        assert quote.source == "rest-primary"
        primary.assert_awaited_once_with("SOL_USDC_PERP")
        fallback.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fallback_when_primary_fails(self, clock, events):
        primary = AsyncMock(side_effect=TransportError("down"))
        fallback = AsyncMock(return_value=Decimal("99"))
        source = make_source(clock, events, primary, fallback)
        quote = await source.fetch()
        assert quote.price == Decimal("99")
        assert quote.source == "rest-fallback"
        assert "rest_price_failed" in events.names()

    @pytest.mark.asyncio
    async def test_non_positive_price_rejected(self, clock, events):
        primary = AsyncMock(return_value=Decimal("0"))
        source = make_source(clock, events, primary)
        assert await source.fetch() is None
        assert source.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_min_interval_throttles(self, clock, events):
        primary = AsyncMock(return_value=Decimal("100"))
        source = make_source(clock, events, primary)
        assert await source.fetch() is not None
        clock.advance(1)
        assert await source.fetch() is None
        assert primary.await_count == 1
        assert await source.fetch(force=True) is not None
        assert primary.await_count == 2

    @pytest.mark.asyncio
    async def test_backoff_grows_and_resets(self, clock, events):
        primary = AsyncMock(side_effect=TransportError("down"))
        source = make_source(clock, events, primary)
        assert await source.fetch() is None
        assert source.backoff_delay() == 30
        clock.advance(10)
        assert not source.is_due()
        clock.advance(25)
        assert await source.fetch() is None
        assert source.backoff_delay() == 45

        primary.side_effect = None
        primary.return_value = Decimal("101")
        clock.advance(50)
        assert (await source.fetch()).price == Decimal("101")
        assert source.consecutive_failures == 0
        assert source.backoff_delay() == 0

    def test_backoff_capped(self, clock, events):
        source = make_source(clock, events, AsyncMock())
        source.consecutive_failures = 50
        assert source.backoff_delay() == 300
