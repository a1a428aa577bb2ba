"""Audio data types shared by capture, playback and the service clients."""

from __future__ import annotations

import io
import wave
from dataclasses import dataclass
from enum import Enum


class AudioEncoding(str, Enum):
    PCM16 = "pcm16"
    WAV = "wav"
    WEBM_OPUS = "webm_opus"
    MP3 = "mp3"

    def mime_type(self, sample_rate: int | None = None) -> str:
        if self is AudioEncoding.PCM16:
            return f"audio/pcm;rate={sample_rate or 16000}"
        return _MIME_TYPES[self]

    @property
    def file_extension(self) -> str:
        return _EXTENSIONS[self]


_MIME_TYPES = {
    AudioEncoding.WAV: "audio/wav",
    AudioEncoding.WEBM_OPUS: "audio/webm;codecs=opus",
    AudioEncoding.MP3: "audio/mpeg",
}

_EXTENSIONS = {
    AudioEncoding.PCM16: "pcm",
    AudioEncoding.WAV: "wav",
    AudioEncoding.WEBM_OPUS: "webm",
    AudioEncoding.MP3: "mp3",
}


@dataclass(frozen=True)
class AudioChunk:
    """One slice of captured or received audio."""

    data: bytes
    sample_rate: int
    encoding: AudioEncoding = AudioEncoding.PCM16
    seq: int = 0

    def __len__(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class AudioClip:
    """A complete, self-describing piece of audio."""

    data: bytes
    mime_type: str = "audio/wav"

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def is_empty(self) -> bool:
        return not self.data

    @property
    def encoding(self) -> AudioEncoding:
        mime = self.mime_type.lower()
        if mime.startswith("audio/pcm") or mime.startswith("audio/l16"):
            return AudioEncoding.PCM16
        if "webm" in mime or "opus" in mime:
            return AudioEncoding.WEBM_OPUS
        if "mpeg" in mime or "mp3" in mime:
            return AudioEncoding.MP3
        return AudioEncoding.WAV

    @classmethod
    def from_pcm16(cls, pcm: bytes, *, sample_rate: int, channels: int = 1) -> "AudioClip":
        """Wrap raw little-endian int16 PCM in a WAV container."""
        buf = io.BytesIO()
        with wave.open(buf, "wb") as wf:
            wf.setnchannels(channels)
            wf.setsampwidth(2)  # int16
            wf.setframerate(sample_rate)
            wf.writeframes(pcm)
        return cls(data=buf.getvalue(), mime_type=AudioEncoding.WAV.mime_type())


@dataclass(frozen=True)
class Utterance:
    """A finalized, non-empty recording ready for transcription."""

    clip: AudioClip
    duration_s: float
    chunk_count: int = 0
