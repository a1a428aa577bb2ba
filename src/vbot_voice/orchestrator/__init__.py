"""
Orchestrator module for the turn-based and live conversation controllers.
"""

from vbot_voice.orchestrator.live_controller import LiveSessionController
from vbot_voice.orchestrator.signals import Signal
from vbot_voice.orchestrator.state_machine import LiveState, StateMachine, VoiceState
from vbot_voice.orchestrator.turn_controller import TurnConversationController, TurnControllerConfig

__all__ = [
    "LiveSessionController",
    "LiveState",
    "Signal",
    "StateMachine",
    "TurnConversationController",
    "TurnControllerConfig",
    "VoiceState",
]
