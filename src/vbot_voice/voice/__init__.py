"""Voice I/O subsystem.

This package provides the hardware and network edges of the conversation
pipeline:

mic -> STT -> chat -> TTS -> speaker    (turn mode)
mic <-> live speech-to-speech service   (live mode)

None of these components know about conversation state; the controllers in
``vbot_voice.orchestrator`` own that.
"""

from vbot_voice.voice.audio_capture import AudioCapture, AudioCaptureConfig
from vbot_voice.voice.audio_playback import AudioPlayback, AudioPlaybackConfig
from vbot_voice.voice.device_guard import DeviceClass, DeviceGuard, device_guard
from vbot_voice.voice.live_client import LiveClient, LiveConfig
from vbot_voice.voice.schemas import AudioChunk, AudioClip, AudioEncoding, Utterance
from vbot_voice.voice.stt import (
    HttpTranscriptionClient,
    STTConfig,
    STTProvider,
    TranscriptionResult,
    WhisperSTT,
)
from vbot_voice.voice.tts import HttpSynthesisClient, PiperTTS, TTSConfig, TTSProvider

__all__ = [
    "AudioCapture",
    "AudioCaptureConfig",
    "AudioPlayback",
    "AudioPlaybackConfig",
    "AudioChunk",
    "AudioClip",
    "AudioEncoding",
    "Utterance",
    "DeviceClass",
    "DeviceGuard",
    "device_guard",
    "HttpTranscriptionClient",
    "STTConfig",
    "STTProvider",
    "TranscriptionResult",
    "WhisperSTT",
    "HttpSynthesisClient",
    "PiperTTS",
    "TTSConfig",
    "TTSProvider",
    "LiveClient",
    "LiveConfig",
]
