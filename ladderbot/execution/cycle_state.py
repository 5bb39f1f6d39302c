"""
Cycle State Machine - explicit trading-cycle lifecycle.

Provides:
- States: IDLE, PLACING, AWAITING_FILL, POSITION_OPEN, CLOSING, RESETTING
- A table of valid transitions; anything else raises InvalidTransitionError
- Audit trail of the most recent transitions

The cycle is closed: RESETTING always leads back to IDLE or PLACING and there
is no terminal state short of shutdown.
"""

from __future__ import annotations

import json
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Deque, Dict, List, Optional

from ladderbot.infra.errors import LadderBotError

log = logging.getLogger("ladderbot")


class CycleState(Enum):
    """
    State Diagram:

    IDLE ──> PLACING ──> AWAITING_FILL ──> POSITION_OPEN ──> CLOSING ──> RESETTING
     ▲ │        │  ▲          │  │               ▲             │            │
     │ │        │  └──────────┘  │ (no fill)     └─────────────┘            │
     │ │        ▼                ▼                (close failed)            │
     │ └──────> IDLE            IDLE                                        │
     │   (existing position: IDLE ──> POSITION_OPEN)                        │
     └────────────────────────────── IDLE / PLACING (auto restart) <────────┘
    """
    IDLE = auto()           # No orders, no position; waiting for a usable price
    PLACING = auto()        # Cancelling leftovers and submitting ladder rungs
    AWAITING_FILL = auto()  # Ladder resting; polling for a position
    POSITION_OPEN = auto()  # Position held; evaluating exit rules
    CLOSING = auto()        # Submitting the market close
    RESETTING = auto()      # Clearing per-cycle state before the next cycle


VALID_TRANSITIONS: Dict[CycleState, List[CycleState]] = {
    CycleState.IDLE: [
        CycleState.PLACING,        # Usable price, no position
        CycleState.POSITION_OPEN,  # Adopted a position found on startup
    ],
    CycleState.PLACING: [
        CycleState.AWAITING_FILL,  # At least one rung placed, or orders kept
        CycleState.IDLE,           # Nothing placed
    ],
    CycleState.AWAITING_FILL: [
        CycleState.POSITION_OPEN,  # Fill detected
        CycleState.PLACING,        # No-fill timeout reprice
        CycleState.IDLE,           # Orders vanished without a position
    ],
    CycleState.POSITION_OPEN: [
        CycleState.CLOSING,        # Exit rule triggered
        CycleState.RESETTING,      # Position closed externally
    ],
    CycleState.CLOSING: [
        CycleState.RESETTING,      # Close submitted
        CycleState.POSITION_OPEN,  # Position still there after a failed close
    ],
    CycleState.RESETTING: [
        CycleState.IDLE,           # Cooldown before the next cycle
        CycleState.PLACING,        # Auto restart
    ],
}


class InvalidTransitionError(LadderBotError):
    def __init__(self, from_state: CycleState, to_state: CycleState) -> None:
        super().__init__(f"invalid cycle transition {from_state.name} -> {to_state.name}")
        self.from_state = from_state
        self.to_state = to_state


@dataclass
class CycleTransition:
    """Record of a state transition."""
    from_state: CycleState
    to_state: CycleState
    timestamp_ms: int
    reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.from_state.name,
            "to": self.to_state.name,
            "ts_ms": self.timestamp_ms,
            "reason": self.reason,
            **self.metadata,
        }


class CycleStateMachine:
    """
    Holds the current CycleState and validates every change.

    Owned by TradingCycleController and mutated only from its control loop.
    """

    def __init__(
        self,
        initial: CycleState = CycleState.IDLE,
        history_size: int = 100,
        on_change: Optional[Callable[[CycleTransition], None]] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._state = initial
        self._entered_at = time.monotonic()
        self.history: Deque[CycleTransition] = deque(maxlen=history_size)
        self._on_change = on_change
        self._log_event = log_event or self._default_log
        self._counts: Dict[str, int] = {}

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, **kwargs}, default=str))

    @property
    def state(self) -> CycleState:
        return self._state

    def time_in_state(self) -> float:
        return time.monotonic() - self._entered_at

    def can_transition(self, to_state: CycleState) -> bool:
        return to_state in VALID_TRANSITIONS.get(self._state, [])

    def transition(self, to_state: CycleState, reason: Optional[str] = None, **metadata: Any) -> CycleTransition:
        """Move to ``to_state`` or raise InvalidTransitionError."""
        from_state = self._state
        if not self.can_transition(to_state):
            self._log_event(
                "cycle_invalid_transition",
                from_state=from_state.name,
                to_state=to_state.name,
                reason=reason,
            )
            raise InvalidTransitionError(from_state, to_state)

        record = CycleTransition(
            from_state=from_state,
            to_state=to_state,
            timestamp_ms=int(time.time() * 1000),
            reason=reason,
            metadata=metadata,
        )
        self._state = to_state
        self._entered_at = time.monotonic()
        self.history.append(record)
        key = f"{from_state.name}->{to_state.name}"
        self._counts[key] = self._counts.get(key, 0) + 1

        self._log_event(
            "cycle_transition",
            from_state=from_state.name,
            to_state=to_state.name,
            reason=reason,
            **metadata,
        )
        if self._on_change is not None:
            self._on_change(record)
        return record

    def recent(self, limit: int = 10) -> List[Dict[str, Any]]:
        return [t.to_dict() for t in list(self.history)[-limit:]]

    def get_stats(self) -> Dict[str, Any]:
        return {
            "state": self._state.name,
            "time_in_state_sec": round(self.time_in_state(), 1),
            "transitions": dict(self._counts),
        }
