"""
Ticker payload normalization.

Stream payloads come in several shapes depending on venue and channel:

    {"stream": "ticker.SOL_USDC_PERP", "data": {"e": "ticker", "s": "SOL_USDC_PERP", "c": "101.2", "E": 1700000000000000}}
    {"symbol": "SOL_USDC_PERP", "price": "101.2"}
    {"s": "SOLUSDC", "bid": "101.1", "ask": "101.3"}

parse_ticker() maps all of them onto a TickerEvent or raises ProtocolError.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from ladderbot.exchange.models import to_decimal
from ladderbot.infra.errors import ProtocolError
from ladderbot.market_data.protocol import unwrap

# Checked in order; the first positive value wins
PRICE_FIELDS = ("price", "p", "c", "close", "lastPrice", "last")
BID_FIELDS = ("bid", "b", "bestBid")
ASK_FIELDS = ("ask", "a", "bestAsk")
SYMBOL_FIELDS = ("symbol", "s")


@dataclass(frozen=True)
class TickerEvent:
    symbol: str
    price: Decimal
    source: str
    event_time: Optional[int] = None


def normalize_symbol(symbol: str) -> str:
    return symbol.replace("_", "").replace("-", "").lower()


def symbols_match(a: str, b: str) -> bool:
    return normalize_symbol(a) == normalize_symbol(b)


def _first_price(data: Dict[str, Any], fields) -> Optional[Decimal]:
    for name in fields:
        value = to_decimal(data.get(name))
        if value is not None and value > 0:
            return value
    return None


def resolve_symbol(message: Dict[str, Any], data: Dict[str, Any]) -> Optional[str]:
    for source in (data, message):
        for name in SYMBOL_FIELDS:
            value = source.get(name)
            if isinstance(value, str) and value:
                return value
    stream = message.get("stream")
    if isinstance(stream, str) and "." in stream:
        return stream.split(".", 1)[1]
    return None


def resolve_price(data: Dict[str, Any]) -> Optional[Decimal]:
    price = _first_price(data, PRICE_FIELDS)
    if price is not None:
        return price
    bid = _first_price(data, BID_FIELDS)
    ask = _first_price(data, ASK_FIELDS)
    if bid is not None and ask is not None:
        return (bid + ask) / 2
    return None


def parse_ticker(message: Dict[str, Any]) -> TickerEvent:
    data = unwrap(message)
    symbol = resolve_symbol(message, data)
    if symbol is None:
        raise ProtocolError("payload has no resolvable symbol")
    price = resolve_price(data)
    if price is None:
        raise ProtocolError(f"payload for {symbol} has no resolvable price")
    event_time = data.get("E")
    try:
        event_time = int(event_time) if event_time is not None else None
    except (TypeError, ValueError):
        event_time = None
    return TickerEvent(
        symbol=symbol,
        price=price,
        source=str(data.get("e") or "stream"),
        event_time=event_time,
    )
