"""Speaker playback: whole clips for turn mode, a gapless PCM stream for live mode."""

from __future__ import annotations

import asyncio
import io
import logging
import re
import time
import wave
from dataclasses import dataclass
from typing import Callable

import numpy as np

from vbot_voice.errors import PlaybackError
from vbot_voice.orchestrator.signals import Signal
from vbot_voice.voice.device_guard import DeviceClass, DeviceGuard, DeviceLease, device_guard
from vbot_voice.voice.schemas import AudioClip, AudioEncoding

logger = logging.getLogger(__name__)

_RATE_RE = re.compile(r"rate=(\d+)")


@dataclass(frozen=True)
class AudioPlaybackConfig:
    # Raw PCM without a declared rate (live replies, unwrapped TTS output).
    pcm_sample_rate: int = 24000
    channels: int = 1
    max_clip_s: float = 120.0


class AudioPlayback:
    def __init__(
        self,
        config: AudioPlaybackConfig | None = None,
        *,
        guard: DeviceGuard | None = None,
        owner: str = "playback",
        on_error: Callable[[PlaybackError], None] | None = None,
    ) -> None:
        self._config = config or AudioPlaybackConfig()
        self._guard = guard or device_guard
        self._owner = owner
        self.on_error = on_error

        self._is_playing: Signal[bool] = Signal(False, name="is_playing")
        self._volume = 1.0
        self._lease: DeviceLease | None = None

        # Clip mode
        self._clip_token: object | None = None
        self._duration = 0.0
        self._started_at: float | None = None

        # Stream mode
        self._stream = None
        self._queue: asyncio.Queue[bytes | None] | None = None
        self._writer: asyncio.Task | None = None

    @property
    def config(self) -> AudioPlaybackConfig:
        return self._config

    @property
    def is_playing(self) -> Signal[bool]:
        return self._is_playing

    @property
    def streaming(self) -> bool:
        return self._stream is not None

    @property
    def holds_device(self) -> bool:
        return self._lease is not None and not self._lease.released

    @property
    def volume(self) -> float:
        return self._volume

    @volume.setter
    def volume(self, value: float) -> None:
        self._volume = max(0.0, min(1.0, float(value)))

    @property
    def duration(self) -> float:
        return self._duration

    @property
    def position(self) -> float:
        if self._started_at is None:
            return 0.0
        return min(self._duration, time.monotonic() - self._started_at)

    def _require_sounddevice(self):
        try:
            import sounddevice as sd  # type: ignore

            return sd
        except Exception as e:  # pragma: no cover
            raise PlaybackError(
                "sounddevice is required for audio playback. Install Python deps with: pip install -e '.[voice]'."
            ) from e

    def decode(self, clip: AudioClip) -> tuple[np.ndarray, int]:
        """Decode a clip to float32 samples in [-1, 1] and its sample rate."""
        if clip.is_empty:
            raise PlaybackError("Failed to load audio: empty clip")

        encoding = clip.encoding
        if encoding is AudioEncoding.WAV and not clip.data.startswith(b"RIFF"):
            # Some synthesis backends label bare PCM as WAV.
            encoding = AudioEncoding.PCM16

        if encoding is AudioEncoding.WAV:
            try:
                with wave.open(io.BytesIO(clip.data), "rb") as wf:
                    sr = wf.getframerate()
                    n_channels = wf.getnchannels()
                    sampwidth = wf.getsampwidth()
                    frames = wf.readframes(wf.getnframes())
            except (wave.Error, EOFError) as e:
                raise PlaybackError(f"Failed to load audio: {e}") from e
            if sampwidth != 2:
                raise PlaybackError(f"Failed to load audio: only 16-bit WAV supported, got sampwidth={sampwidth}")
        elif encoding is AudioEncoding.PCM16:
            match = _RATE_RE.search(clip.mime_type)
            sr = int(match.group(1)) if match else self._config.pcm_sample_rate
            n_channels = self._config.channels
            frames = clip.data
        else:
            raise PlaybackError(f"Failed to load audio: unsupported format {clip.mime_type}")

        usable = len(frames) - (len(frames) % (2 * n_channels))
        audio = np.frombuffer(frames[:usable], dtype=np.int16)
        if audio.size == 0:
            raise PlaybackError("Failed to load audio: no samples")
        audio = audio.reshape(-1, n_channels)
        audio_f32 = (audio.astype(np.float32) / 32768.0) * self._volume
        if n_channels == 1:
            audio_f32 = audio_f32.squeeze(-1)
        return audio_f32, sr

    async def play(self, clip: AudioClip) -> None:
        """Play ``clip`` to completion, replacing anything currently playing."""
        self.stop()
        audio, sr = self.decode(clip)
        sd = self._require_sounddevice()

        token = object()
        self._clip_token = token
        self._lease = self._guard.acquire(DeviceClass.OUTPUT, self._owner, on_preempt=self.stop)
        self._duration = len(audio) / float(sr)

        try:
            sd.play(audio, samplerate=sr, blocking=False)
        except Exception as e:
            self._finish_clip(token)
            raise PlaybackError(f"Failed to play audio: {e}") from e

        self._started_at = time.monotonic()
        self._is_playing._set(True)
        logger.info(f"[VOICE][AUDIO] playback started dur={self._duration:.2f}s rate={sr}")

        try:
            await asyncio.wait_for(asyncio.to_thread(sd.wait), timeout=self._config.max_clip_s)
        except asyncio.TimeoutError:
            logger.warning(f"[VOICE][AUDIO] playback exceeded {self._config.max_clip_s:.0f}s; stopping")
            self.stop()
        except asyncio.CancelledError:
            if self._clip_token is token:
                self.stop()
            raise
        except Exception as e:
            if self._clip_token is token:
                self.stop()
            raise PlaybackError(f"Failed to play audio: {e}") from e
        finally:
            self._finish_clip(token)

    def start_stream(self, sample_rate: int | None = None) -> None:
        """Open the output for incremental PCM16 chunks (live mode)."""
        if self._stream is not None:
            return
        self.stop()
        sd = self._require_sounddevice()
        rate = sample_rate or self._config.pcm_sample_rate

        self._lease = self._guard.acquire(DeviceClass.OUTPUT, self._owner, on_preempt=self.stop)
        try:
            stream = sd.RawOutputStream(samplerate=rate, channels=self._config.channels, dtype="int16")
            stream.start()
        except Exception as e:
            self._release()
            raise PlaybackError(f"Failed to open audio output: {e}") from e

        self._stream = stream
        self._queue = asyncio.Queue()
        self._writer = asyncio.create_task(self._drain(stream, self._queue))
        logger.info(f"[VOICE][AUDIO] output stream opened rate={rate}")

    def feed(self, data: bytes) -> None:
        """Queue PCM16 bytes for the open stream (opening it if needed)."""
        if not data:
            return
        if self._stream is None:
            self.start_stream()
        if self._queue is None:
            raise PlaybackError("Audio output stream is not open")
        self._queue.put_nowait(data)

    async def end_stream(self) -> None:
        """Let queued chunks finish, then close the stream."""
        if self._queue is None or self._writer is None:
            return
        writer = self._writer
        self._queue.put_nowait(None)
        try:
            await writer
        finally:
            self.stop()

    def stop(self) -> None:
        """Halt clip or stream playback immediately. Safe when idle."""
        if self._clip_token is not None:
            self._clip_token = None
            try:
                sd = self._require_sounddevice()
                sd.stop()
            except Exception as e:
                logger.debug(f"[VOICE][AUDIO] sd.stop failed: {e}")

        writer = self._writer
        self._writer = None
        self._queue = None
        if writer is not None and not writer.done() and writer is not asyncio.current_task():
            writer.cancel()

        stream = self._stream
        self._stream = None
        if stream is not None:
            try:
                stream.abort()
                stream.close()
            except Exception as e:
                logger.debug(f"[VOICE][AUDIO] error while closing output stream: {e}")

        self._started_at = None
        self._release()
        self._is_playing._set(False)

    async def _drain(self, stream, queue: asyncio.Queue[bytes | None]) -> None:  # noqa: ANN001
        while True:
            data = await queue.get()
            if data is None:
                break
            self._is_playing._set(True)
            try:
                await asyncio.to_thread(stream.write, data)
            except Exception as e:
                error = PlaybackError(f"Audio output failed: {e}")
                logger.warning(f"[VOICE][AUDIO] {error}")
                if self._stream is stream:
                    self.stop()
                if self.on_error is not None:
                    self.on_error(error)
                return
            if queue.empty():
                self._is_playing._set(False)
        self._is_playing._set(False)

    def _finish_clip(self, token: object) -> None:
        if self._clip_token is not token:
            return
        self._clip_token = None
        self._started_at = None
        self._release()
        self._is_playing._set(False)

    def _release(self) -> None:
        if self._lease is not None:
            self._lease.release()
            self._lease = None
