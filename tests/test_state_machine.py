"""
Tests for the conversation state machines and signals.
"""

import pytest

from vbot_voice.errors import InvalidTransitionError
from vbot_voice.orchestrator.signals import Signal
from vbot_voice.orchestrator.state_machine import (
    LIVE_TRANSITIONS,
    TURN_TRANSITIONS,
    LiveState,
    StateMachine,
    VoiceState,
)


class TestStateMachine:
    """Tests for StateMachine."""

    def test_turn_cycle(self) -> None:
        machine = StateMachine(VoiceState.IDLE, TURN_TRANSITIONS)
        for state in (VoiceState.LISTENING, VoiceState.PROCESSING, VoiceState.SPEAKING, VoiceState.IDLE):
            machine.transition(state)
        assert machine.state is VoiceState.IDLE

    def test_illegal_edge_raises_and_keeps_state(self) -> None:
        machine = StateMachine(VoiceState.IDLE, TURN_TRANSITIONS)
        with pytest.raises(InvalidTransitionError, match="idle -> speaking"):
            machine.transition(VoiceState.SPEAKING)
        assert machine.state is VoiceState.IDLE

    def test_every_turn_state_can_be_cancelled_to_idle(self) -> None:
        for state in VoiceState:
            assert VoiceState.IDLE in TURN_TRANSITIONS[state]

    def test_every_live_state_can_disconnect(self) -> None:
        for state in LiveState:
            assert LiveState.DISCONNECTED in LIVE_TRANSITIONS[state]

    def test_error_only_recovers_by_reconnecting(self) -> None:
        machine = StateMachine(LiveState.ERROR, LIVE_TRANSITIONS)
        assert not machine.can_transition(LiveState.LISTENING)
        assert machine.can_transition(LiveState.CONNECTING)

    def test_incomplete_table_is_rejected(self) -> None:
        table = {VoiceState.IDLE: frozenset({VoiceState.LISTENING})}
        with pytest.raises(InvalidTransitionError, match="no entry"):
            StateMachine(VoiceState.IDLE, table)

    def test_transition_returns_previous_and_notifies(self) -> None:
        machine = StateMachine(VoiceState.IDLE, TURN_TRANSITIONS)
        seen: list[VoiceState] = []
        machine.signal.subscribe(seen.append)

        previous = machine.transition(VoiceState.LISTENING)

        assert previous is VoiceState.IDLE
        assert seen == [VoiceState.LISTENING]


class TestSignal:
    """Tests for Signal."""

    def test_subscribers_see_changes_only(self) -> None:
        signal: Signal[str] = Signal("", name="t")
        seen: list[str] = []
        signal.subscribe(seen.append)

        signal._set("a")
        signal._set("a")
        signal._set("b")

        assert seen == ["a", "b"]

    def test_unsubscribe(self) -> None:
        signal: Signal[int] = Signal(0)
        seen: list[int] = []
        unsubscribe = signal.subscribe(seen.append)
        unsubscribe()
        unsubscribe()
        signal._set(1)
        assert seen == []

    def test_failing_subscriber_does_not_block_others(self) -> None:
        signal: Signal[int] = Signal(0)
        seen: list[int] = []

        def _boom(_: int) -> None:
            raise RuntimeError("boom")

        signal.subscribe(_boom)
        signal.subscribe(seen.append)
        signal._set(3)

        assert signal.value == 3
        assert seen == [3]
