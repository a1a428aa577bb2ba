import asyncio
import time

import pytest

from vbot_voice.errors import DeviceError, DeviceErrorKind
from vbot_voice.orchestrator.state_machine import VoiceState
from vbot_voice.orchestrator.turn_controller import TurnConversationController, TurnControllerConfig
from vbot_voice.voice.audio_capture import AudioCapture, classify_device_error
from vbot_voice.voice.device_guard import DeviceClass, DeviceGuard

CHUNK = b"\x01\x00" * 1600  # 100ms of 16kHz mono int16


class FakeInputStream:
    def __init__(self, *, samplerate, channels, dtype, blocksize, callback, finished_callback) -> None:
        self.samplerate = samplerate
        self.blocksize = blocksize
        self.callback = callback
        self.finished_callback = finished_callback
        self.started = False
        self.stopped = False
        self.aborted = False
        self.closed = False
        self.stop_delay = 0.0
        self.stop_error: Exception | None = None

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        if self.stop_delay:
            time.sleep(self.stop_delay)
        self.stopped = True
        if self.stop_error is not None:
            raise self.stop_error

    def abort(self) -> None:
        self.aborted = True

    def close(self) -> None:
        self.closed = True

    def push(self, data: bytes) -> None:
        self.callback(data, len(data) // 2, None, None)


class FakeSoundDevice:
    def __init__(self, *, has_input: bool = True, open_error: Exception | None = None) -> None:
        self.has_input = has_input
        self.open_error = open_error
        self.streams: list[FakeInputStream] = []

    def query_devices(self, kind=None):
        if not self.has_input:
            raise ValueError("No input device matching ''")
        return {"name": "fake mic", "max_input_channels": 1}

    def RawInputStream(self, **kwargs):
        if self.open_error is not None:
            raise self.open_error
        stream = FakeInputStream(**kwargs)
        self.streams.append(stream)
        return stream


def _capture(sd: FakeSoundDevice, guard: DeviceGuard, monkeypatch, **kwargs) -> AudioCapture:
    capture = AudioCapture(guard=guard, **kwargs)
    monkeypatch.setattr(capture, "_require_sounddevice", lambda: sd)
    return capture


@pytest.mark.asyncio
async def test_stop_returns_wav_utterance_and_releases_mic(monkeypatch):
    sd = FakeSoundDevice()
    guard = DeviceGuard()
    capture = _capture(sd, guard, monkeypatch)

    await capture.start()
    assert capture.is_recording
    assert guard.held() == {DeviceClass.INPUT: "capture"}
    assert sd.streams[0].blocksize == 1600

    sd.streams[0].push(CHUNK)
    sd.streams[0].push(CHUNK)
    await asyncio.sleep(0)
    assert capture.elapsed == pytest.approx(0.2)

    utterance = await capture.stop()

    assert utterance is not None
    assert utterance.clip.data.startswith(b"RIFF")
    assert utterance.clip.mime_type == "audio/wav"
    assert utterance.duration_s == pytest.approx(0.2)
    assert utterance.chunk_count == 2
    assert not capture.is_recording
    assert guard.held() == {}
    assert sd.streams[0].stopped and sd.streams[0].closed


@pytest.mark.asyncio
async def test_stop_without_audio_returns_none(monkeypatch):
    guard = DeviceGuard()
    capture = _capture(FakeSoundDevice(), guard, monkeypatch)
    await capture.start()
    assert await capture.stop() is None
    assert guard.held() == {}


@pytest.mark.asyncio
async def test_chunks_stream_until_cancel(monkeypatch):
    sd = FakeSoundDevice()
    capture = _capture(sd, DeviceGuard(), monkeypatch)
    await capture.start()

    chunks = capture.chunks()
    sd.streams[0].push(CHUNK)
    await asyncio.sleep(0)

    first = await chunks.__anext__()
    assert first.data == CHUNK
    assert first.sample_rate == 16000
    assert first.seq == 0

    capture.cancel()
    with pytest.raises(StopAsyncIteration):
        await chunks.__anext__()
    assert sd.streams[0].aborted


@pytest.mark.asyncio
async def test_paused_audio_is_dropped(monkeypatch):
    sd = FakeSoundDevice()
    capture = _capture(sd, DeviceGuard(), monkeypatch)
    await capture.start()

    capture.pause()
    sd.streams[0].push(CHUNK)
    await asyncio.sleep(0)
    capture.resume()
    sd.streams[0].push(CHUNK)
    await asyncio.sleep(0)

    utterance = await capture.stop()
    assert utterance is not None
    assert utterance.chunk_count == 1


@pytest.mark.asyncio
async def test_permission_failure_is_classified_and_releases(monkeypatch):
    sd = FakeSoundDevice(open_error=OSError("Error opening InputStream: Permission denied"))
    guard = DeviceGuard()
    capture = _capture(sd, guard, monkeypatch)

    with pytest.raises(DeviceError) as exc_info:
        await capture.start()

    assert exc_info.value.kind is DeviceErrorKind.PERMISSION_DENIED
    assert "allow microphone access" in str(exc_info.value)
    assert not capture.is_recording
    assert guard.held() == {}


@pytest.mark.asyncio
async def test_missing_input_device_is_unsupported(monkeypatch):
    capture = _capture(FakeSoundDevice(has_input=False), DeviceGuard(), monkeypatch)
    assert capture.is_supported() is False
    with pytest.raises(DeviceError) as exc_info:
        await capture.start()
    assert exc_info.value.kind is DeviceErrorKind.UNSUPPORTED


@pytest.mark.asyncio
async def test_second_capture_preempts_first(monkeypatch):
    sd = FakeSoundDevice()
    guard = DeviceGuard()
    first = _capture(sd, guard, monkeypatch, owner="first")
    second = _capture(sd, guard, monkeypatch, owner="second")

    await first.start()
    await second.start()

    assert not first.is_recording
    assert sd.streams[0].aborted
    assert second.is_recording
    assert guard.held() == {DeviceClass.INPUT: "second"}


@pytest.mark.asyncio
async def test_unexpected_stream_end_reports_device_error(monkeypatch):
    sd = FakeSoundDevice()
    errors: list[DeviceError] = []
    guard = DeviceGuard()
    capture = _capture(sd, guard, monkeypatch, on_error=errors.append)
    await capture.start()

    sd.streams[0].finished_callback()
    await asyncio.sleep(0)

    assert not capture.is_recording
    assert guard.held() == {}
    assert [str(e) for e in errors] == ["Microphone stopped unexpectedly"]


def test_classify_device_error():
    assert classify_device_error(OSError("No Default Input Device Available")).kind is DeviceErrorKind.NOT_FOUND
    generic = classify_device_error(OSError("Internal PortAudio error"))
    assert generic.kind is DeviceErrorKind.DEVICE
    assert "Internal PortAudio error" in str(generic)


@pytest.mark.asyncio
async def test_stop_closes_stream_when_device_stop_fails(monkeypatch):
    sd = FakeSoundDevice()
    guard = DeviceGuard()
    capture = _capture(sd, guard, monkeypatch)
    await capture.start()
    sd.streams[0].stop_error = OSError("Unanticipated host error")

    assert await capture.stop() is None

    assert sd.streams[0].closed
    assert not capture.is_recording
    assert guard.held() == {}


@pytest.mark.asyncio
async def test_cancel_during_slow_stop_closes_stream(monkeypatch):
    sd = FakeSoundDevice()
    guard = DeviceGuard()
    capture = _capture(sd, guard, monkeypatch)
    await capture.start()
    sd.streams[0].stop_delay = 0.2

    stopping = asyncio.create_task(capture.stop())
    await asyncio.sleep(0.05)
    capture.cancel()

    assert sd.streams[0].aborted
    assert sd.streams[0].closed
    assert guard.held() == {}
    assert await stopping is None


@pytest.mark.asyncio
async def test_stop_task_cancelled_mid_stop_releases_mic(monkeypatch):
    sd = FakeSoundDevice()
    guard = DeviceGuard()
    capture = _capture(sd, guard, monkeypatch)
    await capture.start()
    sd.streams[0].stop_delay = 0.2

    stopping = asyncio.create_task(capture.stop())
    await asyncio.sleep(0.05)
    stopping.cancel()
    with pytest.raises(asyncio.CancelledError):
        await stopping

    assert sd.streams[0].closed
    assert not capture.is_recording
    assert guard.held() == {}


class _UnusedPipeline:
    async def transcribe(self, clip):
        raise AssertionError("turn was cancelled before transcription")

    async def complete(self, messages, conversation_id=None, on_delta=None):
        raise AssertionError("turn was cancelled before chat")

    async def synthesize(self, text, voice="Kore"):
        raise AssertionError("turn was cancelled before synthesis")

    async def play(self, clip):
        raise AssertionError("turn was cancelled before playback")

    def stop(self) -> None:
        pass


@pytest.mark.asyncio
async def test_cancel_conversation_while_mic_is_stopping(monkeypatch):
    sd = FakeSoundDevice()
    guard = DeviceGuard()
    capture = _capture(sd, guard, monkeypatch)
    unused = _UnusedPipeline()
    controller = TurnConversationController(
        capture=capture,
        playback=unused,
        stt=unused,
        chat=unused,
        tts=unused,
        config=TurnControllerConfig(settle_delay_s=0.01),
    )

    await controller.start_listening()
    sd.streams[0].push(CHUNK)
    await asyncio.sleep(0)
    sd.streams[0].stop_delay = 0.2

    turn = asyncio.create_task(controller.stop_listening())
    await asyncio.sleep(0.05)
    assert controller.state is VoiceState.PROCESSING

    controller.cancel_conversation()
    await asyncio.wait_for(turn, timeout=1)

    assert controller.state is VoiceState.IDLE
    assert sd.streams[0].closed
    assert guard.held() == {}
