"""
Tests for exit rules: take-profit, stop-loss and trailing stop, both directions.
"""
from decimal import Decimal

import pytest

from ladderbot.exchange.models import PositionSide
from ladderbot.strategy.exit_rules import (
    ExitEvaluator,
    ExitReason,
    ExitRules,
    TrailingStop,
    profit_percent,
    stop_loss_price,
)

D = Decimal


class TestProfitMath:

    def test_long_profit(self):
        assert profit_percent(PositionSide.LONG, D("100"), D("101")) == D("1")

    def test_short_profit(self):
        assert profit_percent(PositionSide.SHORT, D("100"), D("99")) == D("1")
        assert profit_percent(PositionSide.SHORT, D("100"), D("101")) == D("-1")

    def test_zero_entry_rejected(self):
        with pytest.raises(ValueError):
            profit_percent(PositionSide.LONG, D("0"), D("1"))

    def test_stop_prices(self):
        assert stop_loss_price(PositionSide.LONG, D("100"), D("3")) == D("97")
        assert stop_loss_price(PositionSide.SHORT, D("100"), D("3")) == D("103")


class TestExitEvaluator:

    def test_take_profit_long(self):
        evaluator = ExitEvaluator(PositionSide.LONG, ExitRules(take_profit_percent=D("0.5")))
        decision = evaluator.evaluate(D("100"), D("100.6"))
        assert decision.reason is ExitReason.TAKE_PROFIT
        assert decision.price == D("100.6")
        assert evaluator.evaluate(D("100"), D("99.9")) is None

    def test_take_profit_exact_threshold(self):
        evaluator = ExitEvaluator(PositionSide.LONG, ExitRules(take_profit_percent=D("0.5")))
        assert evaluator.evaluate(D("100"), D("100.5")).reason is ExitReason.TAKE_PROFIT

    def test_stop_loss_long(self):
        evaluator = ExitEvaluator(PositionSide.LONG, ExitRules(stop_loss_percent=D("3")))
        assert evaluator.evaluate(D("100"), D("97.01")) is None
        decision = evaluator.evaluate(D("100"), D("97"))
        assert decision.reason is ExitReason.STOP_LOSS
        assert decision.trigger_price == D("97")

    def test_short_direction(self):
        evaluator = ExitEvaluator(PositionSide.SHORT, ExitRules(take_profit_percent=D("0.5"), stop_loss_percent=D("3")))
        assert evaluator.evaluate(D("100"), D("99.4")).reason is ExitReason.TAKE_PROFIT
        assert evaluator.evaluate(D("100"), D("100.6")) is None
        assert evaluator.evaluate(D("100"), D("103.5")).reason is ExitReason.STOP_LOSS

    def test_trailing_stop_ratchets_and_fires(self):
        rules = ExitRules(
            take_profit_percent=D("5"),
            stop_loss_percent=D("3"),
            trailing_enabled=True,
            trailing_activation_percent=D("1"),
            trailing_distance_percent=D("0.5"),
        )
        evaluator = ExitEvaluator(PositionSide.LONG, rules)
        assert evaluator.evaluate(D("100"), D("100.5")) is None
        assert evaluator.trailing_stop_price is None

        assert evaluator.evaluate(D("100"), D("101")) is None
        assert evaluator.trailing_stop_price == D("100.495")

        assert evaluator.evaluate(D("100"), D("102")) is None
        assert evaluator.trailing_stop_price == D("101.490")

        assert evaluator.evaluate(D("100"), D("101.8")) is None
        assert evaluator.trailing_stop_price == D("101.490")

        decision = evaluator.evaluate(D("100"), D("101.4"))
        assert decision.reason is ExitReason.TRAILING_STOP
        assert decision.trigger_price == D("101.490")

        evaluator.reset()
        assert evaluator.trailing_stop_price is None

    def test_trailing_disabled_by_default(self):
        evaluator = ExitEvaluator(PositionSide.LONG, ExitRules())
        assert evaluator.trailing is None
        assert evaluator.trailing_stop_price is None


class TestTrailingStopShort:

    def test_short_trailing_only_tightens(self):
        trail = TrailingStop(PositionSide.SHORT, activation_percent=D("1"), distance_percent=D("0.5"))
        assert trail.update(D("100"), D("99.5")) is None
        assert trail.update(D("100"), D("99")) == D("99.495")
        assert trail.update(D("100"), D("98")) == D("98.490")
        assert trail.update(D("100"), D("98.9")) == D("98.490")
        assert trail.active
