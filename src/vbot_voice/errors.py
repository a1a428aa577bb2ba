"""
Error taxonomy for the voice pipeline.

Every failure a controller can surface maps to one of these types. The
string form of each exception is the human-readable message shown to the
user.
"""

from __future__ import annotations

from enum import Enum


class VoiceError(Exception):
    """Base class for all voice pipeline errors."""


class DeviceErrorKind(str, Enum):
    """Why a microphone or speaker could not be used."""

    PERMISSION_DENIED = "permission_denied"
    NOT_FOUND = "not_found"
    UNSUPPORTED = "unsupported"
    DEVICE = "device"


_DEVICE_GUIDANCE = {
    DeviceErrorKind.PERMISSION_DENIED: (
        "Microphone access denied. Please allow microphone access in your system settings."
    ),
    DeviceErrorKind.NOT_FOUND: "No microphone found. Please connect a microphone and try again.",
    DeviceErrorKind.UNSUPPORTED: "Audio recording is not supported on this system.",
}


class DeviceError(VoiceError):
    """Exception raised when an audio device cannot be opened or fails mid-stream."""

    def __init__(self, message: str | None = None, kind: DeviceErrorKind = DeviceErrorKind.DEVICE) -> None:
        if message is None:
            message = _DEVICE_GUIDANCE.get(kind, "Microphone error")
        super().__init__(message)
        self.kind = kind


class _ServiceError(VoiceError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TranscriptionError(_ServiceError):
    """Exception raised when the speech-to-text service fails."""


class ChatError(_ServiceError):
    """Exception raised when the chat-completion service fails."""


class SynthesisError(_ServiceError):
    """Exception raised when the text-to-speech service fails."""


class PlaybackError(VoiceError):
    """Exception raised when audio cannot be decoded or rendered."""


class LiveConnectionError(VoiceError, ConnectionError):
    """Exception raised when the live channel fails its handshake or drops."""


class ProtocolError(VoiceError):
    """Exception raised for a malformed frame on the live channel."""


class InvalidTransitionError(VoiceError):
    """Exception raised when a state machine is asked to take an undocumented edge."""
