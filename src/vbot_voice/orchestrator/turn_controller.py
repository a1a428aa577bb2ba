"""Push-to-talk conversation loop (glue layer).

This module orchestrates one turn at a time:
mic -> STT -> chat (streamed) -> TTS -> playback

It owns the conversation history and identity; the collaborators own nothing
but their own I/O.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from vbot_voice.config import DEFAULT_VOICE, get_settings
from vbot_voice.errors import (
    ChatError,
    DeviceError,
    DeviceErrorKind,
    PlaybackError,
    SynthesisError,
    TranscriptionError,
)
from vbot_voice.models.chat_client import ChatClientBase, Message, Role
from vbot_voice.orchestrator.signals import Signal
from vbot_voice.orchestrator.state_machine import TURN_TRANSITIONS, StateMachine, VoiceState
from vbot_voice.voice.schemas import AudioClip, Utterance
from vbot_voice.voice.stt import STTProvider
from vbot_voice.voice.tts import TTSProvider

logger = logging.getLogger(__name__)

NO_AUDIO_MESSAGE = "No audio recorded"
NO_SPEECH_MESSAGE = "Could not understand audio"


class CaptureProtocol(Protocol):
    on_error: Callable[[DeviceError], None] | None

    @property
    def is_recording(self) -> bool: ...

    @property
    def elapsed(self) -> float: ...

    def is_supported(self) -> bool: ...

    async def start(self) -> None: ...

    async def stop(self) -> Utterance | None: ...

    def cancel(self) -> None: ...


class PlaybackProtocol(Protocol):
    async def play(self, clip: AudioClip) -> None: ...

    def stop(self) -> None: ...


@dataclass(frozen=True)
class TurnControllerConfig:
    voice: str = DEFAULT_VOICE
    settle_delay_s: float = 0.5
    # When false an empty recording just returns to idle with a notice.
    empty_audio_is_error: bool = False

    @classmethod
    def from_settings(cls, **overrides: Any) -> "TurnControllerConfig":
        settings = get_settings()
        values: dict[str, Any] = dict(voice=settings.voice, settle_delay_s=settings.settle_delay)
        values.update(overrides)
        return cls(**values)


@dataclass(frozen=True)
class TurnSignals:
    state: Signal[VoiceState]
    user_transcript: Signal[str]
    assistant_response: Signal[str]
    error: Signal[str | None]
    notice: Signal[str | None]


class TurnConversationController:
    def __init__(
        self,
        *,
        capture: CaptureProtocol,
        playback: PlaybackProtocol,
        stt: STTProvider,
        chat: ChatClientBase,
        tts: TTSProvider,
        config: TurnControllerConfig | None = None,
        conversation_id: str | None = None,
        messages: list[Message] | None = None,
        on_conversation_id_change: Callable[[str], None] | None = None,
        on_messages_update: Callable[[list[Message]], None] | None = None,
    ) -> None:
        self._capture = capture
        self._playback = playback
        self._stt = stt
        self._chat = chat
        self._tts = tts
        self._config = config or TurnControllerConfig()
        self._on_conversation_id_change = on_conversation_id_change
        self._on_messages_update = on_messages_update

        self._machine: StateMachine[VoiceState] = StateMachine(VoiceState.IDLE, TURN_TRANSITIONS, name="voice_state")
        self._user_transcript: Signal[str] = Signal("", name="user_transcript")
        self._assistant_response: Signal[str] = Signal("", name="assistant_response")
        self._error: Signal[str | None] = Signal(None, name="error")
        self._notice: Signal[str | None] = Signal(None, name="notice")
        self.signals = TurnSignals(
            state=self._machine.signal,
            user_transcript=self._user_transcript,
            assistant_response=self._assistant_response,
            error=self._error,
            notice=self._notice,
        )

        self._messages: list[Message] = list(messages or [])
        self._conversation_id = conversation_id

        # Bumped on cancel; work tagged with an older generation is discarded.
        self._generation = 0
        self._turn_task: asyncio.Task | None = None
        self._settle_handle: asyncio.TimerHandle | None = None
        self._capture_ready = asyncio.Event()
        self._capture_ready.set()

        self._capture.on_error = self._on_device_error

    # Observable state --------------------------------------------------------

    @property
    def state(self) -> VoiceState:
        return self._machine.state

    @property
    def user_transcript(self) -> str:
        return self._user_transcript.value

    @property
    def assistant_response(self) -> str:
        return self._assistant_response.value

    @property
    def error(self) -> str | None:
        return self._error.value

    @property
    def notice(self) -> str | None:
        return self._notice.value

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def conversation_id(self) -> str | None:
        return self._conversation_id

    @property
    def supported(self) -> bool:
        """Whether push-to-talk can be offered at all. Checked once by the capture."""
        return self._capture.is_supported()

    @property
    def is_recording(self) -> bool:
        return self._capture.is_recording

    @property
    def recording_time(self) -> float:
        return self._capture.elapsed

    @property
    def busy(self) -> bool:
        return self._turn_task is not None and not self._turn_task.done()

    # Operations --------------------------------------------------------------

    async def start_listening(self) -> None:
        """Begin recording a user turn. Ignored unless idle or in error."""
        if self.state not in (VoiceState.IDLE, VoiceState.ERROR):
            logger.debug(f"[VOICE][TURN] start_listening ignored in state={self.state.value}")
            return

        self._cancel_settle()
        self._clear_turn_fields()
        self._machine.transition(VoiceState.LISTENING)
        generation = self._generation

        self._capture_ready.clear()
        try:
            if not self._capture.is_supported():
                raise DeviceError(kind=DeviceErrorKind.UNSUPPORTED)
            await self._capture.start()
        except DeviceError as e:
            if generation == self._generation:
                self._fail(str(e))
            return
        finally:
            self._capture_ready.set()

        if generation == self._generation:
            logger.info("[VOICE][TURN] listening")

    async def stop_listening(self) -> None:
        """Finish the recording and run transcription, chat, synthesis and playback."""
        await self._capture_ready.wait()
        if self.state is not VoiceState.LISTENING:
            logger.debug(f"[VOICE][TURN] stop_listening ignored in state={self.state.value}")
            return

        self._machine.transition(VoiceState.PROCESSING)
        task = asyncio.create_task(self._run_turn(self._generation))
        self._turn_task = task
        try:
            await asyncio.wait([task])
        except asyncio.CancelledError:
            self.cancel_conversation()
            raise
        finally:
            if self._turn_task is task:
                self._turn_task = None

    def cancel_conversation(self) -> None:
        """
        Abandon whatever is in flight and return to idle.

        Synchronous, so no other coroutine can observe a half-cancelled
        controller. Results of the abandoned turn that arrive later are dropped.
        """
        self._generation += 1
        task = self._turn_task
        self._turn_task = None
        if task is not None and not task.done():
            task.cancel()
        self._cancel_settle()
        self._capture.cancel()
        self._playback.stop()
        self._clear_turn_fields()
        self._machine.transition(VoiceState.IDLE)
        logger.info("[VOICE][TURN] conversation cancelled")

    cancel = cancel_conversation

    async def aclose(self) -> None:
        """Cancel any turn and wait for its task to unwind."""
        task = self._turn_task
        self.cancel_conversation()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    # Turn pipeline -----------------------------------------------------------

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    async def _run_turn(self, generation: int) -> None:
        t0 = time.perf_counter()
        try:
            await self._pipeline(generation)
        except asyncio.CancelledError:
            logger.debug("[VOICE][TURN] turn task cancelled")
            raise
        except Exception as e:
            logger.exception("[VOICE][TURN] unexpected failure")
            if self._is_current(generation):
                self._fail(f"Something went wrong: {e}")
        finally:
            logger.debug(f"[VOICE][TURN] turn finished dur={time.perf_counter() - t0:.2f}s")

    async def _pipeline(self, generation: int) -> None:
        utterance = await self._capture.stop()
        if not self._is_current(generation):
            return
        if utterance is None or utterance.clip.is_empty:
            self._empty_outcome(NO_AUDIO_MESSAGE)
            return

        # Transcription
        try:
            result = await self._stt.transcribe(utterance.clip)
        except TranscriptionError as e:
            if self._is_current(generation):
                self._fail(f"Transcription failed: {e}")
            return
        if not self._is_current(generation):
            return

        transcript = (result.text or "").strip()
        if not transcript:
            self._empty_outcome(NO_SPEECH_MESSAGE)
            return
        logger.info(f"[VOICE][TURN] user said \"{transcript[:80]}\"")
        self._user_transcript._set(transcript)
        self._append(Message(role=Role.USER, content=transcript))

        # Chat; only the finished reply moves on to synthesis.
        def _on_delta(aggregate: str) -> None:
            if self._is_current(generation):
                self._assistant_response._set(aggregate)

        try:
            reply = await self._chat.complete(self.messages, self._conversation_id, on_delta=_on_delta)
        except ChatError as e:
            if self._is_current(generation):
                self._fail(f"Chat failed: {e}")
            return
        if not self._is_current(generation):
            return

        self._adopt_conversation_id(reply.conversation_id)
        text = reply.text.strip()
        if not text:
            self._fail("Chat failed: empty response")
            return
        self._assistant_response._set(text)
        self._append(Message(role=Role.ASSISTANT, content=text))

        # Synthesis
        try:
            clip = await self._tts.synthesize(text, self._config.voice)
        except SynthesisError as e:
            if self._is_current(generation):
                self._fail(f"Speech synthesis failed: {e}")
            return
        if not self._is_current(generation):
            return

        # Playback
        self._machine.transition(VoiceState.SPEAKING)
        try:
            await self._playback.play(clip)
        except PlaybackError as e:
            if self._is_current(generation):
                self._fail(f"Playback failed: {e}")
            return
        if not self._is_current(generation):
            return

        self._schedule_settle(generation)

    def _append(self, message: Message) -> None:
        self._messages.append(message)
        if self._on_messages_update is not None:
            self._on_messages_update(self.messages)

    def _adopt_conversation_id(self, reported: str | None) -> None:
        new_id = reported or self._conversation_id or uuid.uuid4().hex
        if new_id == self._conversation_id:
            return
        logger.info(f"[VOICE][TURN] conversation id {self._conversation_id} -> {new_id}")
        self._conversation_id = new_id
        if self._on_conversation_id_change is not None:
            self._on_conversation_id_change(new_id)

    def _empty_outcome(self, message: str) -> None:
        if self._config.empty_audio_is_error:
            self._fail(message)
            return
        logger.info(f"[VOICE][TURN] {message}")
        self._notice._set(message)
        self._machine.transition(VoiceState.IDLE)

    def _fail(self, message: str) -> None:
        logger.warning(f"[VOICE][TURN] error in state={self.state.value}: {message}")
        self._cancel_settle()
        self._capture.cancel()
        self._playback.stop()
        self._error._set(message)
        if self.state is not VoiceState.ERROR:
            self._machine.transition(VoiceState.ERROR)

    def _on_device_error(self, error: DeviceError) -> None:
        if self.state is VoiceState.LISTENING:
            self._fail(str(error))

    # Settle timer ------------------------------------------------------------

    def _schedule_settle(self, generation: int) -> None:
        loop = asyncio.get_running_loop()
        self._cancel_settle()
        self._settle_handle = loop.call_later(self._config.settle_delay_s, self._settle, generation)

    def _settle(self, generation: int) -> None:
        self._settle_handle = None
        if not self._is_current(generation) or self.state is not VoiceState.SPEAKING:
            return
        self._machine.transition(VoiceState.IDLE)
        self._user_transcript._set("")
        self._assistant_response._set("")

    def _cancel_settle(self) -> None:
        if self._settle_handle is not None:
            self._settle_handle.cancel()
            self._settle_handle = None

    def _clear_turn_fields(self) -> None:
        self._user_transcript._set("")
        self._assistant_response._set("")
        self._error._set(None)
        self._notice._set(None)
