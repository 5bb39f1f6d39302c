"""
Tests for the cycle state machine.
"""
import pytest

from ladderbot.execution.cycle_state import (
    VALID_TRANSITIONS,
    CycleState,
    CycleStateMachine,
    InvalidTransitionError,
)


class TestCycleStateMachine:

    def test_starts_idle(self):
        assert CycleStateMachine().state is CycleState.IDLE

    def test_full_cycle(self, events):
        machine = CycleStateMachine(log_event=events)
        for state in (
            CycleState.PLACING,
            CycleState.AWAITING_FILL,
            CycleState.POSITION_OPEN,
            CycleState.CLOSING,
            CycleState.RESETTING,
            CycleState.IDLE,
        ):
            machine.transition(state, reason="test")
        assert machine.state is CycleState.IDLE
        assert events.names().count("cycle_transition") == 6
        assert machine.get_stats()["transitions"]["CLOSING->RESETTING"] == 1

    def test_invalid_transition_raises_and_keeps_state(self, events):
        machine = CycleStateMachine(log_event=events)
        with pytest.raises(InvalidTransitionError) as info:
            machine.transition(CycleState.CLOSING)
        assert info.value.from_state is CycleState.IDLE
        assert info.value.to_state is CycleState.CLOSING
        assert machine.state is CycleState.IDLE
        assert events.names() == ["cycle_invalid_transition"]

    def test_on_change_receives_record(self):
        seen = []
        machine = CycleStateMachine(on_change=seen.append, log_event=lambda *a, **k: None)
        machine.transition(CycleState.PLACING, reason="price", price="100")
        assert len(seen) == 1
        record = seen[0].to_dict()
        assert record["from"] == "IDLE"
        assert record["to"] == "PLACING"
        assert record["reason"] == "price"
        assert record["price"] == "100"

    def test_history_bounded(self):
        machine = CycleStateMachine(history_size=3, log_event=lambda *a, **k: None)
        for _ in range(3):
            machine.transition(CycleState.PLACING)
            machine.transition(CycleState.IDLE)
        assert len(machine.history) == 3
        assert len(machine.recent(2)) == 2

    def test_no_self_transitions(self):
        for state, targets in VALID_TRANSITIONS.items():
            assert state not in targets

    def test_every_state_reachable(self):
        reachable = {t for targets in VALID_TRANSITIONS.values() for t in targets}
        assert reachable == set(CycleState)
