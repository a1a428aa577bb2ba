"""Text-to-speech.

The default provider posts ``{text, voice}`` to the synthesis route and returns
the audio body as a clip. ``PiperTTS`` runs the `piper` CLI locally instead.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import subprocess
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path

import httpx

from vbot_voice.config import DEFAULT_VOICE, get_settings
from vbot_voice.errors import SynthesisError
from vbot_voice.voice.schemas import AudioClip

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TTSConfig:
    base_url: str = "http://localhost:3000"
    path: str = "/api/vbot-tts"
    timeout_s: float = 60.0
    max_chars: int = 4000
    auth_token: str | None = None

    @classmethod
    def from_settings(cls) -> "TTSConfig":
        settings = get_settings()
        return cls(
            base_url=settings.api_base_url,
            path=settings.tts_path,
            timeout_s=settings.tts_timeout,
            max_chars=settings.tts_max_chars,
            auth_token=settings.auth_token,
        )


class TTSProvider:
    async def synthesize(self, text: str, voice: str = DEFAULT_VOICE) -> AudioClip:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class HttpSynthesisClient(TTSProvider):
    def __init__(
        self,
        config: TTSConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config or TTSConfig.from_settings()
        self._client = client
        self._owns_client = client is None

    @property
    def config(self) -> TTSConfig:
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

    async def synthesize(self, text: str, voice: str = DEFAULT_VOICE) -> AudioClip:
        t = (text or "").strip()
        if not t:
            raise SynthesisError("Text is required for speech synthesis")
        if len(t) > self._config.max_chars:
            logger.info(f"[VOICE][TTS] truncating text len={len(t)} max={self._config.max_chars}")
            t = t[: self._config.max_chars]

        client = await self._get_client()
        t0 = time.perf_counter()
        try:
            response = await client.post(
                self._config.path,
                json={"text": t, "voice": voice},
                timeout=self._config.timeout_s,
            )
        except httpx.TimeoutException as e:
            raise SynthesisError(f"Speech synthesis timed out after {self._config.timeout_s:.0f}s") from e
        except httpx.HTTPError as e:
            raise SynthesisError(f"Speech synthesis request failed: {e}") from e

        dur = time.perf_counter() - t0
        if response.status_code >= 400:
            raise SynthesisError(
                f"TTS failed: {response.status_code}",
                status_code=response.status_code,
            )

        body = response.content
        if not body:
            raise SynthesisError("Speech synthesis returned no audio")

        mime_type = response.headers.get("content-type", "audio/wav").split(",")[0].strip()
        excerpt = t[:80].replace("\n", " ")
        logger.info(
            f"[VOICE][TTS] speak len={len(t)} voice={voice} bytes={len(body)} dur={dur:.2f}s text=\"{excerpt}\""
        )
        return AudioClip(data=body, mime_type=mime_type)


@dataclass(frozen=True)
class PiperConfig:
    piper_bin: str = "piper"
    model_path: str | None = None  # path to *.onnx
    speaker_id: int | None = None
    timeout_s: float = 60.0


class PiperTTS(TTSProvider):
    """Offline synthesis through the Piper CLI. ``voice`` is ignored; the model decides."""

    def __init__(self, config: PiperConfig | None = None) -> None:
        self._config = config or PiperConfig()
        self._validated_piper_path: str | None = None

    @property
    def config(self) -> PiperConfig:
        return self._config

    def is_available(self) -> tuple[bool, str]:
        try:
            _ = self._require_piper()
            return True, "ok"
        except SynthesisError as e:
            return False, str(e)

    def _require_piper(self) -> str:
        if self._validated_piper_path:
            return self._validated_piper_path

        p = shutil.which(self._config.piper_bin)
        if not p:
            raise SynthesisError(
                "piper CLI not found. Install piper (binary) and ensure it's on PATH, "
                "or set PiperConfig(piper_bin=...)."
            )
        if not self._config.model_path:
            raise SynthesisError(
                "Piper model path not configured. Set PiperConfig(model_path='/path/to/voice.onnx')."
            )

        self._validated_piper_path = p
        return p

    async def synthesize(self, text: str, voice: str = DEFAULT_VOICE) -> AudioClip:
        t = (text or "").strip()
        if not t:
            raise SynthesisError("Text is required for speech synthesis")
        piper_bin = self._require_piper()

        def _call() -> bytes:
            with tempfile.TemporaryDirectory() as tmp:
                wav_path = Path(tmp) / "reply.wav"
                cmd = [piper_bin, "--model", str(self._config.model_path), "--output_file", str(wav_path)]
                if self._config.speaker_id is not None:
                    cmd += ["--speaker", str(self._config.speaker_id)]
                try:
                    subprocess.run(
                        cmd,
                        input=t,
                        text=True,
                        check=True,
                        stdout=subprocess.DEVNULL,
                        stderr=subprocess.PIPE,
                        timeout=self._config.timeout_s,
                    )
                except subprocess.TimeoutExpired as e:
                    raise SynthesisError(
                        f"piper timed out after {self._config.timeout_s:.1f}s. model={self._config.model_path!s}."
                    ) from e
                except subprocess.CalledProcessError as e:
                    stderr = (e.stderr or "").strip()
                    raise SynthesisError(
                        f"piper failed (exit={e.returncode}). stderr={stderr or '<empty>'}"
                    ) from e
                return wav_path.read_bytes()

        t0 = time.perf_counter()
        data = await asyncio.to_thread(_call)
        logger.info(f"[VOICE][TTS] piper len={len(t)} bytes={len(data)} dur={time.perf_counter() - t0:.2f}s")
        return AudioClip(data=data, mime_type="audio/wav")
