"""
Exit rules for an open position: take-profit, stop-loss and trailing stop.

All direction-dependent math goes through ``PositionSide.sign``:

    profit %   = sign * (current - entry) / entry * 100
    stop price = entry * (1 - sign * stop_loss_percent / 100)
    trailing   = current * (1 - sign * distance_percent / 100), only ever tightened
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional

from ladderbot.exchange.models import PositionSide

HUNDRED = Decimal(100)


class ExitReason(str, Enum):
    TAKE_PROFIT = "take_profit"
    STOP_LOSS = "stop_loss"
    TRAILING_STOP = "trailing_stop"
    EXTERNAL = "external"  # position disappeared without our close


def profit_percent(side: PositionSide, entry_price: Decimal, current_price: Decimal) -> Decimal:
    if entry_price <= 0:
        raise ValueError(f"entry_price must be > 0, got {entry_price}")
    return side.sign * (current_price - entry_price) / entry_price * HUNDRED


def stop_loss_price(side: PositionSide, entry_price: Decimal, stop_loss_percent: Decimal) -> Decimal:
    return entry_price * (1 - side.sign * stop_loss_percent / HUNDRED)


def crossed(side: PositionSide, price: Decimal, stop_price: Decimal) -> bool:
    """True once price is at or beyond the stop on the losing side."""
    if side is PositionSide.LONG:
        return price <= stop_price
    return price >= stop_price


@dataclass
class TrailingStop:
    side: PositionSide
    activation_percent: Decimal
    distance_percent: Decimal
    stop_price: Optional[Decimal] = None

    @property
    def active(self) -> bool:
        return self.stop_price is not None

    def update(self, entry_price: Decimal, current_price: Decimal) -> Optional[Decimal]:
        """Ratchet the stop towards the price once profit reached activation."""
        if profit_percent(self.side, entry_price, current_price) < self.activation_percent:
            return self.stop_price
        candidate = current_price * (1 - self.side.sign * self.distance_percent / HUNDRED)
        if self.stop_price is None:
            self.stop_price = candidate
        elif self.side is PositionSide.LONG and candidate > self.stop_price:
            self.stop_price = candidate
        elif self.side is PositionSide.SHORT and candidate < self.stop_price:
            self.stop_price = candidate
        return self.stop_price

    def reset(self) -> None:
        self.stop_price = None


@dataclass
class ExitRules:
    take_profit_percent: Decimal = Decimal("0.5")
    stop_loss_percent: Decimal = Decimal("3")
    trailing_enabled: bool = False
    trailing_activation_percent: Decimal = Decimal("1")
    trailing_distance_percent: Decimal = Decimal("0.5")


@dataclass(frozen=True)
class ExitDecision:
    reason: ExitReason
    price: Decimal
    profit_percent: Decimal
    trigger_price: Optional[Decimal] = None


class ExitEvaluator:
    """
    Decides whether an open position should be closed at the given price.

    Holds the trailing-stop ratchet, so one evaluator belongs to one cycle;
    call reset() between cycles.
    """

    def __init__(self, side: PositionSide, rules: ExitRules) -> None:
        self.side = side
        self.rules = rules
        self.trailing: Optional[TrailingStop] = None
        if rules.trailing_enabled:
            self.trailing = TrailingStop(
                side=side,
                activation_percent=rules.trailing_activation_percent,
                distance_percent=rules.trailing_distance_percent,
            )

    def evaluate(self, entry_price: Decimal, current_price: Decimal) -> Optional[ExitDecision]:
        profit = profit_percent(self.side, entry_price, current_price)

        if profit >= self.rules.take_profit_percent:
            return ExitDecision(ExitReason.TAKE_PROFIT, current_price, profit)

        stop = stop_loss_price(self.side, entry_price, self.rules.stop_loss_percent)
        if crossed(self.side, current_price, stop):
            return ExitDecision(ExitReason.STOP_LOSS, current_price, profit, trigger_price=stop)

        if self.trailing is not None:
            # Compare against the stop set by earlier prices before ratcheting
            previous = self.trailing.stop_price
            if previous is not None and crossed(self.side, current_price, previous):
                return ExitDecision(ExitReason.TRAILING_STOP, current_price, profit, trigger_price=previous)
            self.trailing.update(entry_price, current_price)

        return None

    @property
    def trailing_stop_price(self) -> Optional[Decimal]:
        return self.trailing.stop_price if self.trailing else None

    def reset(self) -> None:
        if self.trailing is not None:
            self.trailing.reset()
