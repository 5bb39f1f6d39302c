"""
Strategy package - ladder math and exit rules.

Pure computation only; placing and closing orders lives in ladderbot.execution.
"""

from ladderbot.strategy.exit_rules import (
    ExitDecision,
    ExitEvaluator,
    ExitReason,
    ExitRules,
    TrailingStop,
    profit_percent,
    stop_loss_price,
)
from ladderbot.strategy.ladder_planner import (
    LadderOrder,
    LadderPlan,
    OrderLadderPlanner,
    Precision,
    build_ladder,
    plan_ladder,
)

__all__ = [
    "ExitDecision",
    "ExitEvaluator",
    "ExitReason",
    "ExitRules",
    "TrailingStop",
    "profit_percent",
    "stop_loss_price",
    "LadderOrder",
    "LadderPlan",
    "OrderLadderPlanner",
    "Precision",
    "build_ladder",
    "plan_ladder",
]
