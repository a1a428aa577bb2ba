"""Microphone capture (LLM-agnostic).

This module is "dumb hardware I/O": it knows nothing about transcripts,
prompts, or conversations.

It provides:
- push-to-talk capture (start/stop) finalized into a WAV Utterance
- a live chunk stream (~100ms cadence) for the duplex session
- cancel/reset that releases the device without producing anything
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable

from vbot_voice.errors import DeviceError, DeviceErrorKind
from vbot_voice.voice.device_guard import DeviceClass, DeviceGuard, DeviceLease, device_guard
from vbot_voice.voice.schemas import AudioChunk, AudioClip, AudioEncoding, Utterance

logger = logging.getLogger(__name__)

_PERMISSION_MARKERS = ("permission", "denied", "not allowed", "notallowed")
_NOT_FOUND_MARKERS = ("no default", "invalid device", "querying device -1", "not found", "no such device")


def classify_device_error(exc: BaseException) -> DeviceError:
    """Map a PortAudio/OS failure onto an actionable DeviceError."""
    if isinstance(exc, DeviceError):
        return exc
    text = str(exc).lower()
    if any(m in text for m in _PERMISSION_MARKERS):
        return DeviceError(kind=DeviceErrorKind.PERMISSION_DENIED)
    if any(m in text for m in _NOT_FOUND_MARKERS):
        return DeviceError(kind=DeviceErrorKind.NOT_FOUND)
    return DeviceError(f"Microphone error: {exc}", kind=DeviceErrorKind.DEVICE)


@dataclass(frozen=True)
class AudioCaptureConfig:
    sample_rate: int = 16000
    channels: int = 1
    dtype: str = "int16"  # sounddevice dtype and WAV sample width
    chunk_ms: int = 100

    @property
    def blocksize(self) -> int:
        return max(1, self.sample_rate * self.chunk_ms // 1000)

    @property
    def bytes_per_second(self) -> int:
        return self.sample_rate * self.channels * 2


class AudioCapture:
    def __init__(
        self,
        config: AudioCaptureConfig | None = None,
        *,
        guard: DeviceGuard | None = None,
        owner: str = "capture",
        on_error: Callable[[DeviceError], None] | None = None,
    ) -> None:
        self._config = config or AudioCaptureConfig()
        self._guard = guard or device_guard
        self._owner = owner
        self.on_error = on_error

        self._supported: bool | None = None
        self._stream = None
        self._lease: DeviceLease | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

        # Incremented per session; callbacks from an older session are dropped.
        self._session = 0
        self._active: int | None = None
        self._stopping = False
        self._paused = False
        self._frames: list[bytes] = []
        self._frame_count = 0
        self._seq = 0
        self._listeners: list[asyncio.Queue[AudioChunk | None]] = []

    @property
    def config(self) -> AudioCaptureConfig:
        return self._config

    @property
    def is_recording(self) -> bool:
        return self._active is not None

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def elapsed(self) -> float:
        """Seconds of audio captured in the current session."""
        return self._frame_count / float(self._config.sample_rate)

    @property
    def holds_device(self) -> bool:
        return self._lease is not None and not self._lease.released

    def _require_sounddevice(self):
        try:
            import sounddevice as sd  # type: ignore

            return sd
        except Exception as e:  # pragma: no cover
            raise RuntimeError(
                "sounddevice is required for voice mode. Install Python deps with: pip install -e '.[voice]'. "
                "If you see 'PortAudio library not found', install PortAudio (Debian/Ubuntu: sudo apt-get install portaudio19-dev)."
            ) from e

    def is_supported(self) -> bool:
        """Whether a microphone can be used at all. Queried once and cached."""
        if self._supported is None:
            try:
                sd = self._require_sounddevice()
                sd.query_devices(kind="input")
                self._supported = True
            except Exception as e:
                logger.info(f"[VOICE][AUDIO] capture unsupported: {e}")
                self._supported = False
        return self._supported

    async def start(self) -> None:
        """Acquire the microphone and begin producing chunks."""
        if self._active is not None:
            raise DeviceError("Recording already in progress", kind=DeviceErrorKind.DEVICE)
        if not self.is_supported():
            raise DeviceError(kind=DeviceErrorKind.UNSUPPORTED)

        sd = self._require_sounddevice()
        self._loop = asyncio.get_running_loop()
        self._lease = self._guard.acquire(DeviceClass.INPUT, self._owner, on_preempt=self.cancel)

        self._session += 1
        session = self._session
        self._active = session
        self._stopping = False
        self._paused = False
        self._frames = []
        self._frame_count = 0
        self._seq = 0

        loop = self._loop

        def callback(indata, frames, time, status):  # noqa: ANN001
            if status:
                logger.debug(f"Input status: {status}")
            data = bytes(indata)
            try:
                loop.call_soon_threadsafe(self._on_chunk, session, data, frames)
            except RuntimeError:
                # Loop already closed; nothing left to deliver to.
                pass

        def finished_callback() -> None:
            try:
                loop.call_soon_threadsafe(self._on_stream_finished, session)
            except RuntimeError:
                pass

        try:
            stream = sd.RawInputStream(
                samplerate=self._config.sample_rate,
                channels=self._config.channels,
                dtype=self._config.dtype,
                blocksize=self._config.blocksize,
                callback=callback,
                finished_callback=finished_callback,
            )
            self._stream = stream
            await asyncio.to_thread(stream.start)
        except Exception as e:
            error = classify_device_error(e)
            logger.warning(f"[VOICE][AUDIO] capture start failed kind={error.kind.value}: {e}")
            self.cancel()
            raise error from e

        if self._active != session:
            # Cancelled while the device was opening.
            return
        logger.info(
            f"[VOICE][AUDIO] capture started rate={self._config.sample_rate} chunk_ms={self._config.chunk_ms}"
        )

    def chunks(self) -> AsyncIterator[AudioChunk]:
        """
        Iterate chunks of the current session as they are produced.

        The subscription starts when this is called, not on first iteration,
        so nothing produced in between is lost. Iteration ends when the
        session stops or is cancelled.
        """
        queue: asyncio.Queue[AudioChunk | None] = asyncio.Queue()
        if self._active is None:
            queue.put_nowait(None)
        else:
            self._listeners.append(queue)
        return self._drain_chunks(queue)

    async def _drain_chunks(self, queue: asyncio.Queue[AudioChunk | None]) -> AsyncIterator[AudioChunk]:
        try:
            while True:
                chunk = await queue.get()
                if chunk is None:
                    return
                yield chunk
        finally:
            if queue in self._listeners:
                self._listeners.remove(queue)

    def pause(self) -> None:
        if self._active is not None:
            self._paused = True

    def resume(self) -> None:
        self._paused = False

    async def stop(self) -> Utterance | None:
        """Finalize the session. Returns None when nothing was captured."""
        if self._active is None:
            return None

        # The stream stays in self._stream until closed, so cancel() can still
        # abort it while stream.stop() is running in a worker thread.
        stream = self._stream
        self._stopping = True

        if stream is not None:
            try:
                await asyncio.to_thread(stream.stop)
            except asyncio.CancelledError:
                self.cancel()
                raise
            except Exception as e:
                logger.warning(f"[VOICE][AUDIO] error while stopping input stream: {e}")
            finally:
                self._close_stream(stream)

        # Let chunk callbacks already queued from the device thread land.
        await asyncio.sleep(0)

        pcm = b"".join(self._frames)
        chunk_count = self._seq
        self._end_session()

        if not pcm:
            logger.info("[VOICE][AUDIO] capture stopped with no audio")
            return None

        duration = len(pcm) / float(self._config.bytes_per_second)
        logger.info(f"[VOICE][AUDIO] capture stopped bytes={len(pcm)} dur={duration:.2f}s chunks={chunk_count}")
        clip = AudioClip.from_pcm16(pcm, sample_rate=self._config.sample_rate, channels=self._config.channels)
        return Utterance(clip=clip, duration_s=duration, chunk_count=chunk_count)

    def cancel(self) -> None:
        """Discard buffered audio and release the device. Safe from any state."""
        stream = self._stream
        self._stream = None
        was_active = self._active is not None
        self._end_session()

        if stream is not None:
            try:
                stream.abort()
                stream.close()
            except Exception as e:
                logger.debug(f"[VOICE][AUDIO] error while aborting input stream: {e}")
        if was_active:
            logger.info("[VOICE][AUDIO] capture cancelled")

    reset = cancel

    def _close_stream(self, stream) -> None:  # noqa: ANN001
        if self._stream is not stream:
            # Already aborted and closed by cancel().
            return
        self._stream = None
        try:
            stream.close()
        except Exception as e:
            logger.warning(f"[VOICE][AUDIO] error while closing input stream: {e}")

    def _end_session(self) -> None:
        self._active = None
        self._stopping = False
        self._paused = False
        self._frames = []
        for queue in self._listeners:
            queue.put_nowait(None)
        self._listeners = []
        if self._lease is not None:
            self._lease.release()
            self._lease = None

    def _on_chunk(self, session: int, data: bytes, frames: int) -> None:
        if session != self._active or self._paused or not data:
            return
        self._frames.append(data)
        self._frame_count += frames
        chunk = AudioChunk(
            data=data,
            sample_rate=self._config.sample_rate,
            encoding=AudioEncoding.PCM16,
            seq=self._seq,
        )
        self._seq += 1
        for queue in self._listeners:
            queue.put_nowait(chunk)

    def _on_stream_finished(self, session: int) -> None:
        if session != self._active or self._stopping:
            return
        # The device stopped without being asked to: unplugged or revoked.
        logger.warning("[VOICE][AUDIO] input stream ended unexpectedly")
        self.cancel()
        if self.on_error is not None:
            self.on_error(DeviceError("Microphone stopped unexpectedly", kind=DeviceErrorKind.DEVICE))
