"""
Exchange-facing value types: sides, order specs, acks, positions, open orders.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional


class OrderSide(str, Enum):
    BUY = "Bid"
    SELL = "Ask"


class OrderType(str, Enum):
    LIMIT = "Limit"
    MARKET = "Market"


class PositionSide(str, Enum):
    """
    Direction of the ladder. All direction-dependent math goes through ``sign``.
    """
    LONG = "long"
    SHORT = "short"

    @property
    def sign(self) -> int:
        return 1 if self is PositionSide.LONG else -1

    @property
    def entry_side(self) -> OrderSide:
        return OrderSide.BUY if self is PositionSide.LONG else OrderSide.SELL

    @property
    def close_side(self) -> OrderSide:
        return OrderSide.SELL if self is PositionSide.LONG else OrderSide.BUY

    @classmethod
    def parse(cls, raw: str) -> "PositionSide":
        value = (raw or "").strip().lower()
        if value in ("long", "buy", "bid"):
            return cls.LONG
        if value in ("short", "sell", "ask"):
            return cls.SHORT
        raise ValueError(f"unknown side {raw!r}")


def to_decimal(value: Any, default: Optional[Decimal] = None) -> Optional[Decimal]:
    """Parse exchange numbers (usually strings) into Decimal. NaN and infinities give ``default``."""
    if value is None or value == "":
        return default
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default
    if not number.is_finite():
        return default
    return number


@dataclass(frozen=True)
class OrderSpec:
    symbol: str
    side: OrderSide
    order_type: OrderType
    quantity: Decimal
    price: Optional[Decimal] = None
    reduce_only: bool = False
    post_only: bool = False
    time_in_force: Optional[str] = None
    client_id: Optional[int] = None

    def to_payload(self) -> Dict[str, Any]:
        """Request body in the venue's field names; None values are omitted."""
        payload: Dict[str, Any] = {
            "symbol": self.symbol,
            "side": self.side.value,
            "orderType": self.order_type.value,
            "quantity": str(self.quantity),
        }
        if self.price is not None and self.order_type is OrderType.LIMIT:
            payload["price"] = str(self.price)
        if self.reduce_only:
            payload["reduceOnly"] = True
        if self.post_only:
            payload["postOnly"] = True
        if self.time_in_force:
            payload["timeInForce"] = self.time_in_force
        if self.client_id is not None:
            payload["clientId"] = self.client_id
        return payload


@dataclass(frozen=True)
class OrderAck:
    id: str
    status: str
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class OpenOrder:
    id: str
    symbol: str
    side: str
    price: Optional[Decimal]
    quantity: Optional[Decimal]
    status: str = ""

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "OpenOrder":
        return cls(
            id=str(data.get("id", "")),
            symbol=str(data.get("symbol", "")),
            side=str(data.get("side", "")),
            price=to_decimal(data.get("price")),
            quantity=to_decimal(data.get("quantity")),
            status=str(data.get("status", "")),
        )


@dataclass(frozen=True)
class Position:
    """
    Snapshot of an exchange position at ``fetched_at``.

    ``quantity`` is always positive; the direction lives in ``side``.
    """
    symbol: str
    side: PositionSide
    quantity: Decimal
    entry_price: Decimal
    unrealized_pnl: Decimal = Decimal("0")
    mark_price: Optional[Decimal] = None
    fetched_at: float = field(default_factory=time.time)

    @classmethod
    def from_payload(cls, data: Dict[str, Any], fetched_at: Optional[float] = None) -> Optional["Position"]:
        """Build from a venue payload; returns None for flat or unusable entries."""
        net = to_decimal(data.get("netQuantity"))
        if net is None:
            net = to_decimal(data.get("netExposureQuantity"))
        entry = to_decimal(data.get("entryPrice"))
        if net is None or net == 0 or entry is None or entry <= 0:
            return None
        return cls(
            symbol=str(data.get("symbol", "")),
            side=PositionSide.LONG if net > 0 else PositionSide.SHORT,
            quantity=abs(net),
            entry_price=entry,
            unrealized_pnl=to_decimal(data.get("pnlUnrealized"), Decimal("0")),
            mark_price=to_decimal(data.get("markPrice")),
            fetched_at=fetched_at if fetched_at is not None else time.time(),
        )


@dataclass(frozen=True)
class Ticker:
    symbol: str
    last_price: Decimal
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)


def pick_position(positions: List[Position], symbol: str) -> Optional[Position]:
    for pos in positions:
        if pos.symbol == symbol:
            return pos
    return None
