"""
OrderLadderPlanner - pure entry-ladder computation.

Given the current price and ladder parameters, produce the priced and sized
rungs of one trading cycle:
- Prices are spaced linearly from the current price towards
  ``current_price * (1 -/+ max_move_percent/100)`` and snapped to the tick
- Amounts grow geometrically by ``1 + increment_percent/100`` per rung and
  are solved so that they sum to the total amount
- Quantities are rounded down to the venue step; rungs that end up below
  the minimum order amount are dropped, never enlarged

No I/O and no state: the same inputs always give the same ladder.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from typing import List, Optional

from ladderbot.exchange.models import OrderSide, PositionSide

HUNDRED = Decimal(100)


@dataclass(frozen=True)
class Precision:
    """Venue increments for one market."""
    price_tick: Decimal
    quantity_step: Decimal


@dataclass(frozen=True)
class LadderOrder:
    index: int
    price: Decimal
    quantity: Decimal
    amount: Decimal  # price * quantity after rounding
    side: OrderSide
    position_side: PositionSide


@dataclass
class LadderPlan:
    """Result of a ladder build, with the intermediate figures for logging."""
    orders: List[LadderOrder]
    base_amount: Decimal
    scale: Decimal
    total_amount: Decimal
    min_order_amount: Decimal
    dropped: List[int] = field(default_factory=list)

    @property
    def planned_amount(self) -> Decimal:
        return sum((o.amount for o in self.orders), Decimal(0))

    @property
    def empty(self) -> bool:
        return not self.orders


def round_to_step(value: Decimal, step: Decimal, rounding: str = ROUND_DOWN) -> Decimal:
    if step <= 0:
        return value
    return (value / step).to_integral_value(rounding=rounding) * step


def rung_prices(current_price: Decimal, side: PositionSide, max_move_percent: Decimal, rung_count: int) -> List[Decimal]:
    """Unrounded, evenly spaced prices; the first rung sits at the current price."""
    if rung_count == 1:
        return [current_price]
    step = max_move_percent / HUNDRED / (rung_count - 1)
    return [current_price * (1 - side.sign * step * i) for i in range(rung_count)]


def rung_amounts(total_amount: Decimal, rung_count: int, increment_percent: Decimal, min_order_amount: Decimal):
    """
    Geometric rung amounts summing to at most ``total_amount``.

    Returns (amounts, base, scale).
    """
    r = 1 + increment_percent / HUNDRED
    if r == 1:
        base = total_amount / rung_count
    else:
        base = total_amount * (r - 1) / (r ** rung_count - 1)
    if base < min_order_amount:
        base = min_order_amount

    amounts = [base * r ** i for i in range(rung_count)]
    achieved = sum(amounts, Decimal(0))
    scale = Decimal(1)
    if achieved > total_amount:
        scale = total_amount / achieved
        amounts = [a * scale for a in amounts]
    return amounts, base, scale


def build_ladder(
    current_price: Decimal,
    side: PositionSide,
    max_move_percent: Decimal,
    total_amount: Decimal,
    rung_count: int,
    increment_percent: Decimal,
    min_order_amount: Decimal,
    precision: Precision,
) -> LadderPlan:
    if current_price <= 0:
        raise ValueError(f"current_price must be > 0, got {current_price}")
    if rung_count < 1:
        raise ValueError(f"rung_count must be >= 1, got {rung_count}")
    if total_amount <= 0:
        raise ValueError(f"total_amount must be > 0, got {total_amount}")
    if max_move_percent < 0 or (side is PositionSide.LONG and max_move_percent >= HUNDRED):
        raise ValueError(f"max_move_percent out of range: {max_move_percent}")
    if increment_percent < 0:
        raise ValueError(f"increment_percent must be >= 0, got {increment_percent}")

    prices = rung_prices(current_price, side, max_move_percent, rung_count)
    amounts, base, scale = rung_amounts(total_amount, rung_count, increment_percent, min_order_amount)

    orders: List[LadderOrder] = []
    dropped: List[int] = []
    for index, (raw_price, amount) in enumerate(zip(prices, amounts)):
        price = round_to_step(raw_price, precision.price_tick, ROUND_HALF_UP)
        if price <= 0:
            dropped.append(index)
            continue
        quantity = round_to_step(amount / price, precision.quantity_step, ROUND_DOWN)
        actual = quantity * price
        if quantity <= 0 or actual < min_order_amount:
            dropped.append(index)
            continue
        orders.append(LadderOrder(
            index=index,
            price=price,
            quantity=quantity,
            amount=actual,
            side=side.entry_side,
            position_side=side,
        ))

    # Rounding can only shrink rungs, but never hand back more than asked for
    while orders and sum((o.amount for o in orders), Decimal(0)) > total_amount:
        dropped.append(orders.pop().index)

    return LadderPlan(
        orders=orders,
        base_amount=base,
        scale=scale,
        total_amount=total_amount,
        min_order_amount=min_order_amount,
        dropped=dropped,
    )


def plan_ladder(
    current_price: Decimal,
    side: PositionSide,
    max_move_percent: Decimal,
    total_amount: Decimal,
    rung_count: int,
    increment_percent: Decimal,
    min_order_amount: Decimal,
    precision: Precision,
) -> List[LadderOrder]:
    """Ordered rungs for one cycle. An empty list means the cycle cannot trade."""
    return build_ladder(
        current_price, side, max_move_percent, total_amount, rung_count,
        increment_percent, min_order_amount, precision,
    ).orders


class OrderLadderPlanner:
    """
    Binds the static ladder parameters so callers only pass a price.

    ``total_amount`` is margin; the ladder notional is ``total_amount * leverage``.
    The per-rung minimum is the larger of ``min_order_amount`` and the
    notional of one ``min_quantity`` at the current price.

    Usage:
        planner = OrderLadderPlanner(
            side=PositionSide.LONG,
            max_move_percent=Decimal("3"),
            total_amount=Decimal("100"),
            rung_count=3,
            increment_percent=Decimal("50"),
            min_order_amount=Decimal("10"),
            precision=Precision(Decimal("0.01"), Decimal("0.01")),
        )
        plan = planner.build(Decimal("100"))
    """

    def __init__(
        self,
        side: PositionSide,
        max_move_percent: Decimal,
        total_amount: Decimal,
        rung_count: int,
        increment_percent: Decimal,
        min_order_amount: Decimal,
        precision: Precision,
        leverage: Decimal = Decimal(1),
        min_quantity: Optional[Decimal] = None,
    ) -> None:
        self.side = side
        self.max_move_percent = max_move_percent
        self.total_amount = total_amount
        self.rung_count = rung_count
        self.increment_percent = increment_percent
        self.min_order_amount = min_order_amount
        self.precision = precision
        self.leverage = leverage
        self.min_quantity = min_quantity

    @property
    def notional(self) -> Decimal:
        return self.total_amount * self.leverage

    def effective_min_amount(self, current_price: Decimal) -> Decimal:
        if self.min_quantity is None or self.min_quantity <= 0:
            return self.min_order_amount
        return max(self.min_order_amount, current_price * self.min_quantity)

    def build(self, current_price: Decimal) -> LadderPlan:
        return build_ladder(
            current_price=current_price,
            side=self.side,
            max_move_percent=self.max_move_percent,
            total_amount=self.notional,
            rung_count=self.rung_count,
            increment_percent=self.increment_percent,
            min_order_amount=self.effective_min_amount(current_price),
            precision=self.precision,
        )

    def plan(self, current_price: Decimal) -> List[LadderOrder]:
        return self.build(current_price).orders
