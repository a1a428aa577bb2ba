"""
Tests for the live duplex session controller.
"""

import asyncio

import pytest

from vbot_voice.errors import DeviceError, LiveConnectionError, ProtocolError
from vbot_voice.orchestrator.live_controller import LiveSessionController
from vbot_voice.orchestrator.state_machine import LiveState
from vbot_voice.voice.live_client import (
    LiveAudio,
    LiveClosed,
    LiveError,
    LiveInputTranscript,
    LiveInterrupted,
    LiveTranscript,
)
from vbot_voice.voice.schemas import AudioChunk


class FakeLiveClient:
    def __init__(self, fail: Exception | None = None) -> None:
        self.connected = False
        self.closed = False
        self.audio: list[AudioChunk] = []
        self.texts: list[str] = []
        self._fail = fail
        self._events: asyncio.Queue = asyncio.Queue()

    async def connect(self) -> None:
        if self._fail is not None:
            raise self._fail
        self.connected = True

    def send_audio(self, chunk) -> None:
        if not self.connected:
            raise LiveConnectionError("Not connected")
        self.audio.append(chunk)

    def send_text(self, text: str) -> None:
        if not self.connected:
            raise LiveConnectionError("Not connected")
        self.texts.append(text)

    def push(self, event) -> None:
        self._events.put_nowait(event)

    async def events(self):
        while True:
            event = await self._events.get()
            yield event
            if isinstance(event, LiveClosed):
                return

    async def close(self) -> None:
        self.closed = True
        self.connected = False


class FakeCapture:
    def __init__(self) -> None:
        self.on_error = None
        self.is_recording = False
        self.supported = True
        self._queue: asyncio.Queue | None = None

    def is_supported(self) -> bool:
        return self.supported

    async def start(self) -> None:
        self.is_recording = True
        self._queue = asyncio.Queue()

    def chunks(self):
        queue = self._queue

        async def _iter():
            while True:
                chunk = await queue.get()
                if chunk is None:
                    return
                yield chunk

        return _iter()

    def push(self, data: bytes) -> None:
        self._queue.put_nowait(AudioChunk(data=data, sample_rate=16000))

    def cancel(self) -> None:
        if self._queue is not None:
            self._queue.put_nowait(None)
            self._queue = None
        self.is_recording = False


class FakeStreamPlayback:
    def __init__(self) -> None:
        self.streaming = False
        self.rates: list[int | None] = []
        self.fed: list[bytes] = []
        self.stops = 0

    def start_stream(self, sample_rate=None) -> None:
        self.streaming = True
        self.rates.append(sample_rate)

    def feed(self, data: bytes) -> None:
        self.streaming = True
        self.fed.append(data)

    def stop(self) -> None:
        self.streaming = False
        self.stops += 1


class Harness:
    def __init__(self, *clients: FakeLiveClient) -> None:
        self.clients = list(clients)
        self.made: list[FakeLiveClient] = []
        self.capture = FakeCapture()
        self.playback = FakeStreamPlayback()
        self.finals: list[str] = []
        self.controller = LiveSessionController(
            client_factory=self._make,
            capture=self.capture,
            playback=self.playback,
            on_transcript=self.finals.append,
        )

    def _make(self) -> FakeLiveClient:
        client = self.clients.pop(0) if self.clients else FakeLiveClient()
        self.made.append(client)
        return client

    @property
    def client(self) -> FakeLiveClient:
        return self.made[-1]


async def _settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def _assert_released(harness: Harness) -> None:
    assert harness.controller.resources() == {
        "client": False,
        "capture": False,
        "playback_stream": False,
        "tasks": [],
    }


@pytest.mark.asyncio
async def test_connect_reaches_idle():
    harness = Harness()
    await harness.controller.connect()

    assert harness.controller.state is LiveState.IDLE
    assert harness.controller.connected
    assert harness.controller.resources()["tasks"] == ["events"]


@pytest.mark.asyncio
async def test_microphone_audio_is_forwarded():
    harness = Harness()
    await harness.controller.connect()

    await harness.controller.start_listening()
    assert harness.controller.state is LiveState.LISTENING

    harness.capture.push(b"\x01\x00" * 4)
    harness.capture.push(b"\x02\x00" * 4)
    await _settle()

    assert [chunk.data for chunk in harness.client.audio] == [b"\x01\x00" * 4, b"\x02\x00" * 4]

    harness.controller.stop_listening()
    await _settle()
    assert harness.controller.state is LiveState.IDLE
    assert not harness.capture.is_recording


@pytest.mark.asyncio
async def test_reply_audio_and_transcript_then_back_to_listening():
    harness = Harness()
    await harness.controller.connect()
    await harness.controller.start_listening()
    states: list[LiveState] = []
    harness.controller.signals.state.subscribe(states.append)

    harness.client.push(LiveInputTranscript("How far "))
    harness.client.push(LiveInputTranscript("did I run?"))
    harness.client.push(LiveAudio(b"\x05\x00" * 8, sample_rate=24000))
    harness.client.push(LiveTranscript("You ran ", is_final=False))
    harness.client.push(LiveTranscript("5k.", is_final=False))
    harness.client.push(LiveTranscript("You ran 5k.", is_final=True))
    await _settle()

    assert harness.controller.transcript == "How far did I run?"
    assert harness.playback.rates == [24000]
    assert harness.playback.fed == [b"\x05\x00" * 8]
    assert harness.controller.response == "You ran 5k."
    assert harness.finals == ["You ran 5k."]
    assert states == [LiveState.RESPONDING, LiveState.LISTENING]


@pytest.mark.asyncio
async def test_next_reply_replaces_previous_response():
    harness = Harness()
    await harness.controller.connect()

    harness.client.push(LiveTranscript("First.", is_final=False))
    harness.client.push(LiveTranscript("First.", is_final=True))
    harness.client.push(LiveTranscript("Second.", is_final=False))
    await _settle()

    assert harness.controller.response == "Second."
    assert harness.controller.state is LiveState.RESPONDING


@pytest.mark.asyncio
async def test_send_text_starts_a_reply():
    harness = Harness()
    await harness.controller.connect()

    harness.controller.send_text("  Plan my workout  ")

    assert harness.client.texts == ["Plan my workout"]
    assert harness.controller.transcript == "Plan my workout"
    assert harness.controller.state is LiveState.RESPONDING

    harness.client.push(LiveTranscript("Squats.", is_final=True))
    await _settle()
    assert harness.controller.state is LiveState.LISTENING


@pytest.mark.asyncio
async def test_actions_while_disconnected_report_not_connected():
    harness = Harness()

    harness.controller.send_text("hello")
    assert harness.controller.error == "Not connected"
    assert harness.controller.state is LiveState.DISCONNECTED

    await harness.controller.start_listening()
    assert harness.controller.state is LiveState.DISCONNECTED
    assert not harness.capture.is_recording


@pytest.mark.asyncio
async def test_interruption_drops_queued_audio():
    harness = Harness()
    await harness.controller.connect()
    stops_before = harness.playback.stops

    harness.client.push(LiveAudio(b"\x01\x00", sample_rate=24000))
    harness.client.push(LiveInterrupted())
    await _settle()

    assert harness.playback.stops == stops_before + 1
    assert not harness.playback.streaming


@pytest.mark.asyncio
async def test_connection_drop_tears_down_and_reconnects_fresh():
    harness = Harness()
    await harness.controller.connect()
    await harness.controller.start_listening()
    assert harness.controller.state is LiveState.LISTENING
    harness.client.push(LiveClosed(reason="going away", clean=False))
    await _settle()

    first = harness.client
    assert harness.controller.state is LiveState.ERROR
    assert harness.controller.error == "Connection lost: going away"
    assert first.closed
    _assert_released(harness)

    await harness.controller.connect()

    assert harness.controller.state is LiveState.IDLE
    assert harness.controller.error is None
    assert len(harness.made) == 2
    assert harness.client is not first


@pytest.mark.asyncio
async def test_protocol_error_ends_session():
    harness = Harness()
    await harness.controller.connect()

    harness.client.push(LiveError(ProtocolError("Malformed frame from live service")))
    await _settle()

    assert harness.controller.state is LiveState.ERROR
    assert harness.controller.error == "Malformed frame from live service"
    _assert_released(harness)


@pytest.mark.asyncio
async def test_failed_handshake():
    harness = Harness(FakeLiveClient(fail=LiveConnectionError("Timed out connecting to live service after 10s")))

    await harness.controller.connect()

    assert harness.controller.state is LiveState.ERROR
    assert harness.controller.error == "Timed out connecting to live service after 10s"
    assert harness.made[0].closed
    _assert_released(harness)


@pytest.mark.asyncio
async def test_disconnect_releases_everything():
    harness = Harness()
    await harness.controller.connect()
    await harness.controller.start_listening()
    harness.client.push(LiveAudio(b"\x01\x00", sample_rate=24000))
    await _settle()
    assert harness.controller.resources()["capture"]

    await harness.controller.disconnect()
    await _settle()

    assert harness.controller.state is LiveState.DISCONNECTED
    assert harness.client.closed
    assert harness.controller.response == ""
    _assert_released(harness)


@pytest.mark.asyncio
async def test_disconnect_during_handshake():
    gate = asyncio.Event()

    class SlowClient(FakeLiveClient):
        async def connect(self) -> None:
            await gate.wait()
            await super().connect()

    harness = Harness(SlowClient())
    connecting = asyncio.create_task(harness.controller.connect())
    await _settle()
    assert harness.controller.state is LiveState.CONNECTING

    await harness.controller.disconnect()
    await asyncio.wait_for(connecting, timeout=1)

    assert harness.controller.state is LiveState.DISCONNECTED
    assert harness.made[0].closed
    _assert_released(harness)


@pytest.mark.asyncio
async def test_microphone_failure_mid_session():
    harness = Harness()
    await harness.controller.connect()
    await harness.controller.start_listening()

    harness.capture.on_error(DeviceError("Microphone stopped unexpectedly"))
    await _settle()

    assert harness.controller.state is LiveState.ERROR
    assert harness.controller.error == "Microphone stopped unexpectedly"
    _assert_released(harness)


@pytest.mark.asyncio
async def test_device_error_teardown_task_is_tracked():
    harness = Harness()
    await harness.controller.connect()
    await harness.controller.start_listening()

    harness.capture.on_error(DeviceError("Microphone stopped unexpectedly"))
    assert "teardown" in harness.controller.resources()["tasks"]

    await _settle()

    assert harness.controller.state is LiveState.ERROR
    _assert_released(harness)


@pytest.mark.asyncio
async def test_disconnect_cancels_pending_device_error_teardown():
    harness = Harness()
    await harness.controller.connect()
    await harness.controller.start_listening()

    harness.capture.on_error(DeviceError("Microphone stopped unexpectedly"))
    await harness.controller.disconnect()
    await _settle()

    assert harness.controller.state is LiveState.DISCONNECTED
    assert harness.controller.error is None
    _assert_released(harness)


@pytest.mark.asyncio
async def test_supported_reflects_capture():
    harness = Harness()
    harness.capture.supported = False

    await harness.controller.connect()

    assert harness.controller.supported is False
    harness.controller.send_text("Text still works")
    assert harness.client.texts == ["Text still works"]
