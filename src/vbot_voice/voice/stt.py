"""Speech-to-text.

The default provider posts the recorded clip to the transcription route.
``WhisperSTT`` runs `faster-whisper` locally instead, if installed.
"""

from __future__ import annotations

import asyncio
import logging
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path

import httpx

from vbot_voice.config import get_settings
from vbot_voice.errors import TranscriptionError
from vbot_voice.voice.schemas import AudioClip

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class STTConfig:
    base_url: str = "http://localhost:3000"
    path: str = "/api/vbot-stt"
    timeout_s: float = 30.0
    auth_token: str | None = None

    @classmethod
    def from_settings(cls) -> "STTConfig":
        settings = get_settings()
        return cls(
            base_url=settings.api_base_url,
            path=settings.stt_path,
            timeout_s=settings.stt_timeout,
            auth_token=settings.auth_token,
        )


@dataclass(frozen=True)
class TranscriptionResult:
    text: str
    avg_logprob: float | None = None
    no_speech_prob: float | None = None


class STTProvider:
    async def transcribe(self, clip: AudioClip) -> TranscriptionResult:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class HttpTranscriptionClient(STTProvider):
    """Client for the transcription route: multipart ``audio`` in, ``{"transcript": ...}`` out."""

    def __init__(
        self,
        config: STTConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config or STTConfig.from_settings()
        self._client = client
        self._owns_client = client is None

    @property
    def config(self) -> STTConfig:
        return self._config

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            headers = {}
            if self._config.auth_token:
                headers["Authorization"] = f"Bearer {self._config.auth_token}"
            self._client = httpx.AsyncClient(
                base_url=self._config.base_url,
                timeout=self._config.timeout_s,
                headers=headers,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def transcribe(self, clip: AudioClip) -> TranscriptionResult:
        if clip.is_empty:
            return TranscriptionResult(text="")

        client = await self._get_client()
        filename = f"recording.{clip.encoding.file_extension}"
        files = {"audio": (filename, clip.data, clip.mime_type)}

        t0 = time.perf_counter()
        try:
            response = await client.post(self._config.path, files=files, timeout=self._config.timeout_s)
        except httpx.TimeoutException as e:
            raise TranscriptionError(f"Transcription timed out after {self._config.timeout_s:.0f}s") from e
        except httpx.HTTPError as e:
            raise TranscriptionError(f"Transcription request failed: {e}") from e

        dur = time.perf_counter() - t0
        logger.info(f"[VOICE][STT] bytes={clip.size} status={response.status_code} dur={dur:.2f}s")

        if response.status_code >= 400:
            raise TranscriptionError(
                f"Transcription failed ({response.status_code}): {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise TranscriptionError("Transcription service returned invalid JSON") from e

        if not isinstance(payload, dict):
            raise TranscriptionError("Transcription service returned an unexpected payload")
        transcript = payload.get("transcript") or ""
        if not isinstance(transcript, str):
            raise TranscriptionError("Transcription service returned a non-text transcript")
        return TranscriptionResult(text=transcript.strip())


@dataclass(frozen=True)
class WhisperConfig:
    model_size: str = "small"
    # Default to CPU to avoid hard crashes when CUDA/cuDNN aren't present.
    device: str = "cpu"  # cpu|cuda|auto
    compute_type: str | None = None  # e.g. int8, float16
    language: str | None = None
    vad_filter: bool = True


class WhisperSTT(STTProvider):
    """faster-whisper wrapper for offline transcription."""

    def __init__(self, config: WhisperConfig | None = None) -> None:
        self._config = config or WhisperConfig()
        self._model = None

    @property
    def config(self) -> WhisperConfig:
        return self._config

    def _load_model(self):
        if self._model is not None:
            return self._model

        try:
            from faster_whisper import WhisperModel  # type: ignore
        except Exception as e:  # pragma: no cover
            raise TranscriptionError(
                "faster-whisper is required for local STT. Install with: pip install -e '.[local]'"
            ) from e

        device = self._config.device
        if device == "auto":
            device = "cpu"

        kwargs = {}
        if self._config.compute_type:
            kwargs["compute_type"] = self._config.compute_type

        self._model = WhisperModel(self._config.model_size, device=device, **kwargs)
        return self._model

    async def transcribe(self, clip: AudioClip) -> TranscriptionResult:
        if clip.is_empty:
            return TranscriptionResult(text="")

        def _run() -> TranscriptionResult:
            model = self._load_model()
            suffix = f".{clip.encoding.file_extension}"
            with tempfile.TemporaryDirectory() as tmp:
                audio_path = Path(tmp) / f"utterance{suffix}"
                audio_path.write_bytes(clip.data)
                segments, info = model.transcribe(
                    str(audio_path),
                    language=self._config.language,
                    vad_filter=self._config.vad_filter,
                )
                text = " ".join(s.text.strip() for s in segments if s.text).strip()
            return TranscriptionResult(
                text=text,
                avg_logprob=getattr(info, "avg_logprob", None),
                no_speech_prob=getattr(info, "no_speech_prob", None),
            )

        try:
            return await asyncio.to_thread(_run)
        except TranscriptionError:
            raise
        except Exception as e:
            raise TranscriptionError(f"Local transcription failed: {e}") from e
