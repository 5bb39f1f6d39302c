"""
Execution layer: the trading cycle state machine and the controller that
drives it against the exchange client.
"""

from ladderbot.execution.cycle_controller import (
    CloseRecord,
    ControllerConfig,
    ControllerEvent,
    ControllerEventKind,
    TradingCycleController,
)
from ladderbot.execution.cycle_state import (
    VALID_TRANSITIONS,
    CycleState,
    CycleStateMachine,
    CycleTransition,
    InvalidTransitionError,
)

__all__ = [
    "CloseRecord",
    "ControllerConfig",
    "ControllerEvent",
    "ControllerEventKind",
    "TradingCycleController",
    "VALID_TRANSITIONS",
    "CycleState",
    "CycleStateMachine",
    "CycleTransition",
    "InvalidTransitionError",
]
