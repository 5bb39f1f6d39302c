"""
Exchange package.

Venue adapters (REST client, request signer, secondary quotes) and the value
types they exchange with the trading core.
"""

from ladderbot.exchange.backpack_client import BackpackClient, ExchangeClient
from ladderbot.exchange.models import (
    OpenOrder,
    OrderAck,
    OrderSide,
    OrderSpec,
    OrderType,
    Position,
    PositionSide,
    Ticker,
)
from ladderbot.exchange.public_quotes import PublicQuoteClient
from ladderbot.exchange.signer import Ed25519Signer

__all__ = [
    "BackpackClient",
    "ExchangeClient",
    "OpenOrder",
    "OrderAck",
    "OrderSide",
    "OrderSpec",
    "OrderType",
    "Position",
    "PositionSide",
    "Ticker",
    "PublicQuoteClient",
    "Ed25519Signer",
]
