"""Live duplex session loop (glue layer).

One consumer task applies inbound live events in arrival order; a separate
forwarder task streams microphone chunks out. Every way out of a session
(disconnect, drop, protocol error, device failure) goes through one teardown
path, so nothing is left holding the microphone, the speaker, or the socket.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Protocol

from vbot_voice.errors import DeviceError, LiveConnectionError, PlaybackError, VoiceError
from vbot_voice.orchestrator.signals import Signal
from vbot_voice.orchestrator.state_machine import LIVE_TRANSITIONS, LiveState, StateMachine
from vbot_voice.voice.live_client import (
    LiveAudio,
    LiveClient,
    LiveClosed,
    LiveError,
    LiveEvent,
    LiveInputTranscript,
    LiveInterrupted,
    LiveReady,
    LiveTranscript,
)
from vbot_voice.voice.schemas import AudioChunk

logger = logging.getLogger(__name__)

NOT_CONNECTED_MESSAGE = "Not connected"


class LiveCaptureProtocol(Protocol):
    on_error: Callable[[DeviceError], None] | None

    @property
    def is_recording(self) -> bool: ...

    def is_supported(self) -> bool: ...

    async def start(self) -> None: ...

    def chunks(self) -> AsyncIterator[AudioChunk]: ...

    def cancel(self) -> None: ...


class StreamPlaybackProtocol(Protocol):
    @property
    def streaming(self) -> bool: ...

    def start_stream(self, sample_rate: int | None = None) -> None: ...

    def feed(self, data: bytes) -> None: ...

    def stop(self) -> None: ...


@dataclass(frozen=True)
class LiveSignals:
    state: Signal[LiveState]
    transcript: Signal[str]
    response: Signal[str]
    error: Signal[str | None]


class LiveSessionController:
    def __init__(
        self,
        *,
        client_factory: Callable[[], LiveClient],
        capture: LiveCaptureProtocol,
        playback: StreamPlaybackProtocol,
        on_transcript: Callable[[str], None] | None = None,
    ) -> None:
        self._client_factory = client_factory
        self._capture = capture
        self._playback = playback
        self._on_transcript = on_transcript

        self._machine: StateMachine[LiveState] = StateMachine(
            LiveState.DISCONNECTED, LIVE_TRANSITIONS, name="live_state"
        )
        self._transcript: Signal[str] = Signal("", name="transcript")
        self._response: Signal[str] = Signal("", name="response")
        self._error: Signal[str | None] = Signal(None, name="error")
        self.signals = LiveSignals(
            state=self._machine.signal,
            transcript=self._transcript,
            response=self._response,
            error=self._error,
        )

        self._client: LiveClient | None = None
        self._generation = 0
        self._connect_task: asyncio.Task | None = None
        self._event_task: asyncio.Task | None = None
        self._forward_task: asyncio.Task | None = None
        self._fail_task: asyncio.Task | None = None

        # Set once a reply (or user utterance) has finished, so the next
        # fragment starts a fresh text instead of appending to the old one.
        self._reply_done = True
        self._input_done = True

        self._capture.on_error = self._on_device_error

    @property
    def state(self) -> LiveState:
        return self._machine.state

    @property
    def transcript(self) -> str:
        return self._transcript.value

    @property
    def response(self) -> str:
        return self._response.value

    @property
    def error(self) -> str | None:
        return self._error.value

    @property
    def connected(self) -> bool:
        return self._client is not None and self._client.connected

    @property
    def supported(self) -> bool:
        """Whether the microphone can be streamed. Text turns work either way."""
        return self._capture.is_supported()

    @property
    def is_listening(self) -> bool:
        return self._capture.is_recording

    def resources(self) -> dict[str, Any]:
        """What the session currently holds. Empty values after a teardown."""
        tasks = [
            name
            for name, task in (
                ("connect", self._connect_task),
                ("events", self._event_task),
                ("forward", self._forward_task),
                ("teardown", self._fail_task),
            )
            if task is not None and not task.done()
        ]
        return {
            "client": self._client is not None,
            "capture": self._capture.is_recording,
            "playback_stream": self._playback.streaming,
            "tasks": tasks,
        }

    # Operations --------------------------------------------------------------

    async def connect(self) -> None:
        """Open a fresh session. Ignored unless disconnected or in error."""
        if self.state not in (LiveState.DISCONNECTED, LiveState.ERROR):
            logger.debug(f"[VOICE][LIVE] connect ignored in state={self.state.value}")
            return

        await self._close_client(self._release())
        self._error._set(None)
        self._transcript._set("")
        self._response._set("")
        self._machine.transition(LiveState.CONNECTING)

        generation = self._generation
        client = self._client_factory()
        self._client = client
        task = asyncio.create_task(client.connect())
        self._connect_task = task
        try:
            await asyncio.wait([task])
        except asyncio.CancelledError:
            if self._is_current(generation):
                await self._abandon()
            raise

        if not self._is_current(generation):
            # disconnect() ran while the handshake was in flight.
            return
        self._connect_task = None

        error = task.exception() if not task.cancelled() else None
        if task.cancelled() or error is not None:
            message = str(error) if isinstance(error, VoiceError) else f"Failed to connect: {error}"
            if error is not None and not isinstance(error, VoiceError):
                logger.error(f"[VOICE][LIVE] connect failed: {error}")
            await self._fail(message)
            return

        self._reply_done = True
        self._input_done = True
        self._machine.transition(LiveState.IDLE)
        self._event_task = asyncio.create_task(self._consume(client, generation))
        logger.info("[VOICE][LIVE] session ready")

    async def disconnect(self) -> None:
        """Tear the session down from any state and end in disconnected."""
        client = self._release()
        self._transcript._set("")
        self._response._set("")
        self._error._set(None)
        self._machine.transition(LiveState.DISCONNECTED)
        await self._close_client(client)
        logger.info("[VOICE][LIVE] disconnected")

    async def start_listening(self) -> None:
        """Open the microphone and stream it to the live service."""
        client = self._client
        if client is None or not client.connected:
            self._error._set(NOT_CONNECTED_MESSAGE)
            return
        if self._capture.is_recording:
            return
        if self.state not in (LiveState.IDLE, LiveState.LISTENING, LiveState.RESPONDING):
            logger.debug(f"[VOICE][LIVE] start_listening ignored in state={self.state.value}")
            return

        generation = self._generation
        if self.state is LiveState.IDLE:
            self._machine.transition(LiveState.LISTENING)
        try:
            await self._capture.start()
        except DeviceError as e:
            if self._is_current(generation):
                await self._fail(str(e))
            return
        if not self._is_current(generation) or not self._capture.is_recording:
            return

        chunks = self._capture.chunks()
        self._forward_task = asyncio.create_task(self._forward_audio(client, chunks, generation))
        logger.info("[VOICE][LIVE] microphone streaming")

    def stop_listening(self) -> None:
        """Close the microphone. The session stays connected."""
        task = self._forward_task
        self._forward_task = None
        if task is not None and not task.done():
            task.cancel()
        self._capture.cancel()
        if self.state is LiveState.LISTENING:
            self._machine.transition(LiveState.IDLE)

    def send_text(self, text: str) -> None:
        """Send a typed user turn over the live session."""
        client = self._client
        if client is None or not client.connected:
            self._error._set(NOT_CONNECTED_MESSAGE)
            return
        text = (text or "").strip()
        if not text:
            return
        try:
            client.send_text(text)
        except LiveConnectionError as e:
            self._error._set(str(e))
            return
        self._transcript._set(text)
        self._input_done = True
        self._response._set("")
        self._reply_done = False
        if self.state in (LiveState.IDLE, LiveState.LISTENING):
            self._machine.transition(LiveState.RESPONDING)

    # Internals ---------------------------------------------------------------

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _release(self) -> LiveClient | None:
        """
        Stop every task and device the session holds. Synchronous.

        Returns the client so the caller can await its close.
        """
        self._generation += 1
        current = asyncio.current_task()
        for task in (self._connect_task, self._event_task, self._forward_task, self._fail_task):
            if task is not None and not task.done() and task is not current:
                task.cancel()
        self._connect_task = None
        self._event_task = None
        self._forward_task = None
        if self._fail_task is not current:
            self._fail_task = None

        self._capture.cancel()
        self._playback.stop()

        client = self._client
        self._client = None
        return client

    async def _close_client(self, client: LiveClient | None) -> None:
        if client is None:
            return
        try:
            await client.close()
        except Exception as e:
            logger.warning(f"[VOICE][LIVE] error closing client: {e}")

    async def _fail(self, message: str) -> None:
        """Tear down, then land in error with ``message``."""
        logger.warning(f"[VOICE][LIVE] error in state={self.state.value}: {message}")
        client = self._release()
        self._error._set(message)
        if self._machine.can_transition(LiveState.ERROR):
            self._machine.transition(LiveState.ERROR)
        await self._close_client(client)

    async def _abandon(self) -> None:
        client = self._release()
        if self._machine.can_transition(LiveState.DISCONNECTED):
            self._machine.transition(LiveState.DISCONNECTED)
        await self._close_client(client)

    def _on_device_error(self, error: DeviceError) -> None:
        if self._client is None:
            return
        task = asyncio.get_running_loop().create_task(self._fail(str(error)))
        self._fail_task = task
        task.add_done_callback(self._on_fail_done)

    def _on_fail_done(self, task: asyncio.Task) -> None:
        if self._fail_task is task:
            self._fail_task = None
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[VOICE][LIVE] teardown after device error failed: {task.exception()}")

    async def _forward_audio(
        self,
        client: LiveClient,
        chunks: AsyncIterator[AudioChunk],
        generation: int,
    ) -> None:
        sent = 0
        try:
            async for chunk in chunks:
                if not self._is_current(generation):
                    return
                client.send_audio(chunk)
                sent += 1
        except LiveConnectionError as e:
            logger.info(f"[VOICE][LIVE] stopped forwarding audio: {e}")
        finally:
            logger.debug(f"[VOICE][LIVE] forwarded {sent} chunks")

    async def _consume(self, client: LiveClient, generation: int) -> None:
        async for event in client.events():
            if not self._is_current(generation):
                return
            stop = await self._handle_event(event)
            if stop:
                return

    async def _handle_event(self, event: LiveEvent) -> bool:
        """Apply one inbound event. Returns True once the session has ended."""
        if isinstance(event, LiveAudio):
            try:
                if not self._playback.streaming:
                    self._playback.start_stream(event.sample_rate)
                self._playback.feed(event.data)
            except PlaybackError as e:
                await self._fail(f"Playback failed: {e}")
                return True
            self._begin_reply()
        elif isinstance(event, LiveTranscript):
            if event.is_final:
                self._finish_reply(event.text)
            else:
                self._begin_reply()
                self._response._set(self._response.value + event.text)
        elif isinstance(event, LiveInputTranscript):
            if self._input_done:
                self._transcript._set("")
                self._input_done = False
            self._transcript._set(self._transcript.value + event.text)
        elif isinstance(event, LiveInterrupted):
            logger.info("[VOICE][LIVE] reply interrupted")
            self._playback.stop()
        elif isinstance(event, LiveError):
            await self._fail(str(event.error))
            return True
        elif isinstance(event, LiveClosed):
            reason = event.reason or "connection closed"
            await self._fail(f"Connection lost: {reason}")
            return True
        elif isinstance(event, LiveReady):
            pass
        return False

    def _begin_reply(self) -> None:
        if self._reply_done:
            self._response._set("")
            self._reply_done = False
        if self.state in (LiveState.IDLE, LiveState.LISTENING):
            self._machine.transition(LiveState.RESPONDING)

    def _finish_reply(self, text: str) -> None:
        if text:
            self._response._set(text)
        final = self._response.value
        self._reply_done = True
        self._input_done = True
        if final and self._on_transcript is not None:
            self._on_transcript(final)
        if self.state is not LiveState.LISTENING:
            self._machine.transition(LiveState.LISTENING)
        logger.info(f"[VOICE][LIVE] reply complete chars={len(final)}")
