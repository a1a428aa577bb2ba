"""
Explicit state machines for the two conversation controllers.

Each machine is built from a transition table that must name every state.
Asking for an edge that is not in the table raises InvalidTransitionError,
so an illegal transition fails loudly instead of leaving a controller in a
half-updated state.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Generic, Mapping, TypeVar

from vbot_voice.errors import InvalidTransitionError
from vbot_voice.orchestrator.signals import Signal

logger = logging.getLogger(__name__)

S = TypeVar("S", bound=Enum)


class VoiceState(str, Enum):
    """Push-to-talk conversation states."""

    IDLE = "idle"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"
    ERROR = "error"


class LiveState(str, Enum):
    """Live duplex session states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    IDLE = "idle"
    LISTENING = "listening"
    RESPONDING = "responding"
    ERROR = "error"


# Every state can reach IDLE: that edge is cancelConversation.
TURN_TRANSITIONS: dict[VoiceState, frozenset[VoiceState]] = {
    VoiceState.IDLE: frozenset({VoiceState.LISTENING, VoiceState.IDLE}),
    VoiceState.LISTENING: frozenset({VoiceState.PROCESSING, VoiceState.ERROR, VoiceState.IDLE}),
    VoiceState.PROCESSING: frozenset({VoiceState.SPEAKING, VoiceState.ERROR, VoiceState.IDLE}),
    VoiceState.SPEAKING: frozenset({VoiceState.IDLE, VoiceState.ERROR}),
    VoiceState.ERROR: frozenset({VoiceState.LISTENING, VoiceState.IDLE}),
}

# Every state can reach DISCONNECTED: that edge is disconnect().
LIVE_TRANSITIONS: dict[LiveState, frozenset[LiveState]] = {
    LiveState.DISCONNECTED: frozenset({LiveState.CONNECTING, LiveState.DISCONNECTED}),
    LiveState.CONNECTING: frozenset({LiveState.IDLE, LiveState.ERROR, LiveState.DISCONNECTED}),
    LiveState.IDLE: frozenset(
        {LiveState.LISTENING, LiveState.RESPONDING, LiveState.ERROR, LiveState.DISCONNECTED}
    ),
    LiveState.LISTENING: frozenset(
        {LiveState.RESPONDING, LiveState.IDLE, LiveState.ERROR, LiveState.DISCONNECTED}
    ),
    LiveState.RESPONDING: frozenset({LiveState.LISTENING, LiveState.ERROR, LiveState.DISCONNECTED}),
    LiveState.ERROR: frozenset({LiveState.CONNECTING, LiveState.DISCONNECTED}),
}


class StateMachine(Generic[S]):
    """A current state, a transition table, and a signal announcing changes."""

    def __init__(
        self,
        initial: S,
        transitions: Mapping[S, frozenset[S]],
        *,
        name: str = "state",
    ) -> None:
        """
        Build a machine over ``type(initial)``.

        Args:
            initial: Starting state.
            transitions: Allowed next states for every state of the enum.
            name: Label used in logs and on the published signal.

        Raises:
            InvalidTransitionError: If the table does not cover every state or
                refers to a state outside the enum.
        """
        states = set(type(initial))
        missing = states - set(transitions)
        if missing:
            raise InvalidTransitionError(
                f"Transition table for {name} has no entry for: {sorted(s.value for s in missing)}"
            )
        for source, targets in transitions.items():
            stray = set(targets) - states
            if stray:
                raise InvalidTransitionError(f"{name}: {source.value} points at unknown states {stray}")

        self._name = name
        self._transitions = dict(transitions)
        self._signal: Signal[S] = Signal(initial, name=name)

    @property
    def state(self) -> S:
        return self._signal.value

    @property
    def signal(self) -> Signal[S]:
        return self._signal

    def can_transition(self, to: S) -> bool:
        return to in self._transitions[self.state]

    def transition(self, to: S) -> S:
        """Move to ``to``. Returns the previous state."""
        previous = self.state
        if to not in self._transitions[previous]:
            raise InvalidTransitionError(f"{self._name}: illegal transition {previous.value} -> {to.value}")
        if previous is not to:
            logger.debug(f"[VOICE][STATE] {self._name} {previous.value} -> {to.value}")
        self._signal._set(to)
        return previous
