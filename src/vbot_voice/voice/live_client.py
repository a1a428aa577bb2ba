"""
Live speech-to-speech channel.

Wraps a persistent websocket to the Gemini Live BidiGenerateContent endpoint:
- one ``setup`` frame negotiates voice and system instruction at connect time
- outgoing audio/text frames go through a queue drained by a sender task
- incoming frames are parsed by a reader task into LiveEvents, consumed in
  arrival order through ``events()``

Sending never waits on receiving and vice versa.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Union

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, WebSocketException

from vbot_voice.config import DEFAULT_SYSTEM_INSTRUCTION, DEFAULT_VOICE, get_settings
from vbot_voice.errors import LiveConnectionError, ProtocolError, VoiceError
from vbot_voice.voice.schemas import AudioChunk

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LiveConfig:
    url: str = (
        "wss://generativelanguage.googleapis.com/ws/"
        "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
    )
    api_key: str | None = None
    model: str = "gemini-2.0-flash-live-preview-04-09"
    voice: str = DEFAULT_VOICE
    system_instruction: str = DEFAULT_SYSTEM_INSTRUCTION
    connect_timeout_s: float = 10.0
    input_sample_rate: int = 16000
    output_sample_rate: int = 24000

    @classmethod
    def from_settings(cls, **overrides: Any) -> "LiveConfig":
        settings = get_settings()
        values = dict(
            url=settings.live_url,
            api_key=settings.google_api_key,
            model=settings.live_model,
            voice=settings.voice,
            system_instruction=settings.system_instruction,
            connect_timeout_s=settings.live_connect_timeout,
            input_sample_rate=settings.capture_sample_rate,
            output_sample_rate=settings.live_output_sample_rate,
        )
        values.update(overrides)
        return cls(**values)


# Events --------------------------------------------------------------------


@dataclass(frozen=True)
class LiveReady:
    pass


@dataclass(frozen=True)
class LiveAudio:
    data: bytes
    sample_rate: int = 24000


@dataclass(frozen=True)
class LiveTranscript:
    """Assistant reply text. The final event carries the whole turn's text."""

    text: str
    is_final: bool = False


@dataclass(frozen=True)
class LiveInputTranscript:
    """What the service heard the user say."""

    text: str


@dataclass(frozen=True)
class LiveInterrupted:
    """The user barged in; queued reply audio should be dropped."""


@dataclass(frozen=True)
class LiveError:
    error: VoiceError


@dataclass(frozen=True)
class LiveClosed:
    reason: str = ""
    clean: bool = True


LiveEvent = Union[LiveReady, LiveAudio, LiveTranscript, LiveInputTranscript, LiveInterrupted, LiveError, LiveClosed]


def build_setup_frame(config: LiveConfig) -> dict[str, Any]:
    return {
        "setup": {
            "model": f"models/{config.model}",
            "generationConfig": {
                "responseModalities": ["AUDIO"],
                "speechConfig": {
                    "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": config.voice}},
                },
            },
            "systemInstruction": {"parts": [{"text": config.system_instruction}]},
            "inputAudioTranscription": {},
            "outputAudioTranscription": {},
        }
    }


def build_audio_frame(data: bytes, sample_rate: int) -> dict[str, Any]:
    return {
        "realtimeInput": {
            "mediaChunks": [
                {
                    "mimeType": f"audio/pcm;rate={sample_rate}",
                    "data": base64.b64encode(data).decode("ascii"),
                }
            ]
        }
    }


def build_text_frame(text: str) -> dict[str, Any]:
    return {
        "clientContent": {
            "turns": [{"role": "user", "parts": [{"text": text}]}],
            "turnComplete": True,
        }
    }


class FrameParser:
    """Turns server frames into events; remembers the text of the reply in progress."""

    def __init__(self, output_sample_rate: int = 24000) -> None:
        self._output_sample_rate = output_sample_rate
        self._turn_text: list[str] = []

    def parse(self, raw: str | bytes) -> list[LiveEvent]:
        """
        Parse one websocket message.

        Binary messages that are not JSON are treated as raw PCM reply audio.

        Raises:
            ProtocolError: If a text frame is not a JSON object or carries
                undecodable audio.
        """
        if isinstance(raw, (bytes, bytearray)):
            try:
                text = bytes(raw).decode("utf-8")
                message = json.loads(text)
            except (UnicodeDecodeError, ValueError):
                return [LiveAudio(data=bytes(raw), sample_rate=self._output_sample_rate)]
        else:
            try:
                message = json.loads(raw)
            except ValueError as e:
                raise ProtocolError(f"Malformed frame from live service: {e}") from e

        if not isinstance(message, dict):
            raise ProtocolError(f"Unexpected frame type from live service: {type(message).__name__}")
        return self.parse_message(message)

    def parse_message(self, message: dict[str, Any]) -> list[LiveEvent]:
        events: list[LiveEvent] = []

        if "setupComplete" in message:
            events.append(LiveReady())

        content = message.get("serverContent")
        if isinstance(content, dict):
            if content.get("interrupted"):
                self._turn_text = []
                events.append(LiveInterrupted())

            model_turn = content.get("modelTurn") or {}
            for part in model_turn.get("parts") or []:
                inline = part.get("inlineData") or {}
                if "audio" in (inline.get("mimeType") or ""):
                    try:
                        data = base64.b64decode(inline.get("data") or "", validate=True)
                    except (binascii.Error, ValueError) as e:
                        raise ProtocolError(f"Undecodable audio in live frame: {e}") from e
                    if data:
                        events.append(LiveAudio(data=data, sample_rate=self._output_sample_rate))
                if part.get("text"):
                    events.append(self._partial(part["text"]))

            output_tx = content.get("outputTranscription") or {}
            if output_tx.get("text"):
                events.append(self._partial(output_tx["text"]))

            input_tx = content.get("inputTranscription") or {}
            if input_tx.get("text"):
                events.append(LiveInputTranscript(text=input_tx["text"]))

            if content.get("turnComplete"):
                events.append(LiveTranscript(text="".join(self._turn_text), is_final=True))
                self._turn_text = []

        if "toolCall" in message:
            logger.info(f"[VOICE][LIVE] tool call ignored: {str(message['toolCall'])[:200]}")
        if "goAway" in message:
            logger.info(f"[VOICE][LIVE] server going away: {message['goAway']}")

        return events

    def _partial(self, text: str) -> LiveTranscript:
        self._turn_text.append(text)
        return LiveTranscript(text=text, is_final=False)


ConnectFactory = Callable[..., Awaitable[Any]]


class LiveClient:
    def __init__(self, config: LiveConfig | None = None, *, connect: ConnectFactory | None = None) -> None:
        self._config = config or LiveConfig.from_settings()
        self._connect = connect or websockets.connect
        self._ws = None
        self._parser = FrameParser(self._config.output_sample_rate)
        self._outgoing: asyncio.Queue[str | None] = asyncio.Queue()
        self._events: asyncio.Queue[LiveEvent] = asyncio.Queue()
        self._reader: asyncio.Task | None = None
        self._sender: asyncio.Task | None = None
        self._connected = False
        self._closing = False
        self._closed_emitted = False

    @property
    def config(self) -> LiveConfig:
        return self._config

    @property
    def connected(self) -> bool:
        return self._connected

    def _url(self) -> str:
        if not self._config.api_key:
            return self._config.url
        sep = "&" if "?" in self._config.url else "?"
        return f"{self._config.url}{sep}key={self._config.api_key}"

    async def connect(self) -> None:
        """Open the socket and complete the setup handshake."""
        if self._connected:
            return
        if not self._config.api_key and "key=" not in self._config.url:
            raise LiveConnectionError("VBOT_GOOGLE_API_KEY not configured")

        timeout = self._config.connect_timeout_s
        t0 = time.perf_counter()
        logger.info(f"[VOICE][LIVE] connecting model={self._config.model} voice={self._config.voice}")
        try:
            self._ws = await asyncio.wait_for(
                self._connect(self._url(), max_size=None, ping_interval=20, close_timeout=5),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise LiveConnectionError(f"Timed out connecting to live service after {timeout:.0f}s") from e
        except (OSError, WebSocketException) as e:
            raise LiveConnectionError(f"Failed to connect: {e}") from e

        try:
            await self._ws.send(json.dumps(build_setup_frame(self._config)))
            await asyncio.wait_for(self._await_setup_complete(), timeout=timeout)
        except asyncio.TimeoutError as e:
            await self._abort_socket()
            raise LiveConnectionError(f"Live service did not finish setup within {timeout:.0f}s") from e
        except ConnectionClosed as e:
            await self._abort_socket()
            raise LiveConnectionError(f"Live service closed during setup: {e}") from e
        except ProtocolError as e:
            await self._abort_socket()
            raise LiveConnectionError(f"Live service sent an invalid setup reply: {e}") from e
        except asyncio.CancelledError:
            await self._abort_socket()
            raise

        self._connected = True
        self._reader = asyncio.create_task(self._read_loop())
        self._sender = asyncio.create_task(self._send_loop())
        logger.info(f"[VOICE][LIVE] connected dur={time.perf_counter() - t0:.2f}s")

    async def _await_setup_complete(self) -> None:
        while True:
            raw = await self._ws.recv()
            for event in self._parser.parse(raw):
                if isinstance(event, LiveReady):
                    return

    def send_audio(self, chunk: AudioChunk | bytes) -> None:
        """Queue one chunk of PCM16 microphone audio."""
        if not self._connected:
            raise LiveConnectionError("Not connected")
        if isinstance(chunk, AudioChunk):
            data, rate = chunk.data, chunk.sample_rate
        else:
            data, rate = bytes(chunk), self._config.input_sample_rate
        self._outgoing.put_nowait(json.dumps(build_audio_frame(data, rate)))

    def send_text(self, text: str) -> None:
        """Queue a complete user text turn."""
        if not self._connected:
            raise LiveConnectionError("Not connected")
        logger.info(f"[VOICE][LIVE] sending text \"{text[:80]}\"")
        self._outgoing.put_nowait(json.dumps(build_text_frame(text)))

    async def events(self) -> AsyncIterator[LiveEvent]:
        """Yield inbound events in arrival order, ending after LiveClosed."""
        while True:
            event = await self._events.get()
            yield event
            if isinstance(event, LiveClosed):
                return

    async def close(self) -> None:
        """Stop both pumps and close the socket. Idempotent."""
        self._closing = True
        self._connected = False
        tasks = [t for t in (self._reader, self._sender) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._reader = None
        self._sender = None
        await self._abort_socket()
        self._emit_closed("client closed", clean=True)

    async def _abort_socket(self) -> None:
        ws = self._ws
        self._ws = None
        if ws is None:
            return
        try:
            await ws.close()
        except Exception as e:
            logger.debug(f"[VOICE][LIVE] error closing socket: {e}")

    def _emit_closed(self, reason: str, *, clean: bool) -> None:
        if self._closed_emitted:
            return
        self._closed_emitted = True
        self._connected = False
        self._events.put_nowait(LiveClosed(reason=reason, clean=clean))

    async def _read_loop(self) -> None:
        ws = self._ws
        try:
            async for raw in ws:
                try:
                    events = self._parser.parse(raw)
                except ProtocolError as e:
                    logger.warning(f"[VOICE][LIVE] {e}")
                    self._events.put_nowait(LiveError(error=e))
                    continue
                for event in events:
                    self._events.put_nowait(event)
        except ConnectionClosedOK as e:
            self._emit_closed(str(e) or "closed", clean=True)
            return
        except ConnectionClosed as e:
            logger.warning(f"[VOICE][LIVE] connection dropped: {e}")
            self._emit_closed(str(e) or "connection dropped", clean=False)
            return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"[VOICE][LIVE] reader failed: {e}")
            self._emit_closed(f"reader failed: {e}", clean=False)
            return
        self._emit_closed("closed by server", clean=self._closing)

    async def _send_loop(self) -> None:
        sent = 0
        while True:
            frame = await self._outgoing.get()
            if frame is None:
                return
            ws = self._ws
            if ws is None:
                return
            try:
                await ws.send(frame)
            except ConnectionClosed as e:
                logger.warning(f"[VOICE][LIVE] send failed, connection closed: {e}")
                self._emit_closed(str(e) or "connection dropped", clean=False)
                return
            sent += 1
            if sent % 100 == 0:
                logger.debug(f"[VOICE][LIVE] sent {sent} frames")
