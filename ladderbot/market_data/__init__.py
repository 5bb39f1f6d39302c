"""
Market data package.

Stream connection lifecycle, payload normalization, dedup and the
PriceFeed that turns all of it (plus REST fallback) into PriceUpdates.
"""

from ladderbot.market_data.connection import (
    ConnectionConfig,
    ConnectionManager,
    ConnectionState,
    SubscriptionState,
)
from ladderbot.market_data.dedup import DedupCache
from ladderbot.market_data.normalizer import TickerEvent, parse_ticker, symbols_match
from ladderbot.market_data.price_feed import PriceFeed, PriceFeedConfig, PriceSource, PriceUpdate
from ladderbot.market_data.protocol import BackpackStreamProtocol, StreamProtocol
from ladderbot.market_data.rest_price import RestPriceConfig, RestPriceSource, RestQuote
from ladderbot.market_data.transport import StreamTransport, WebsocketsTransport

__all__ = [
    "ConnectionConfig",
    "ConnectionManager",
    "ConnectionState",
    "SubscriptionState",
    "DedupCache",
    "TickerEvent",
    "parse_ticker",
    "symbols_match",
    "PriceFeed",
    "PriceFeedConfig",
    "PriceSource",
    "PriceUpdate",
    "BackpackStreamProtocol",
    "StreamProtocol",
    "RestPriceConfig",
    "RestPriceSource",
    "RestQuote",
    "StreamTransport",
    "WebsocketsTransport",
]
