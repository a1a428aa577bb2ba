"""
Application configuration using pydantic-settings.

Loads configuration from environment variables (prefixed ``VBOT_``) and .env files.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Prebuilt voices accepted by both the synthesis service and the live channel.
GEMINI_VOICES: dict[str, str] = {
    "Zephyr": "Bright",
    "Puck": "Upbeat",
    "Charon": "Informative",
    "Kore": "Firm",
    "Fenrir": "Excitable",
    "Leda": "Youthful",
    "Orus": "Firm",
    "Aoede": "Breezy",
    "Callirrhoe": "Easy-going",
    "Autonoe": "Bright",
    "Enceladus": "Breathy",
    "Iapetus": "Clear",
    "Umbriel": "Easy-going",
    "Algieba": "Smooth",
    "Despina": "Smooth",
    "Erinome": "Clear",
    "Algenib": "Gravelly",
    "Rasalgethi": "Informative",
    "Laomedeia": "Upbeat",
    "Achernar": "Soft",
    "Alnilam": "Firm",
    "Schedar": "Even",
    "Gacrux": "Mature",
    "Pulcherrima": "Forward",
    "Achird": "Friendly",
    "Zubenelgenubi": "Casual",
    "Vindemiatrix": "Gentle",
    "Sadachbia": "Lively",
    "Sadaltager": "Knowledgeable",
    "Sulafat": "Warm",
}

DEFAULT_VOICE = "Kore"

DEFAULT_SYSTEM_INSTRUCTION = (
    "You are VBot, a helpful AI fitness coach for V-Life. Keep responses brief and "
    "conversational - 1-2 sentences maximum. Be encouraging, supportive, and reference "
    "the user's fitness data when relevant."
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="VBOT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Request/response collaborators
    api_base_url: str = Field(
        default="http://localhost:3000",
        description="Base URL hosting the speech-to-text and text-to-speech routes",
    )
    stt_path: str = Field(default="/api/vbot-stt", description="Speech-to-text route")
    tts_path: str = Field(default="/api/vbot-tts", description="Text-to-speech route")
    chat_url: str = Field(
        default="http://localhost:54321/functions/v1/vbot",
        description="Streaming chat-completion endpoint",
    )
    auth_token: str | None = Field(
        default=None,
        description="Bearer token sent to every collaborator",
    )
    stt_timeout: float = Field(default=30.0, description="Timeout in seconds for transcription")
    chat_timeout: float = Field(default=60.0, description="Timeout in seconds for chat streaming")
    tts_timeout: float = Field(default=60.0, description="Timeout in seconds for synthesis")

    # Voice
    voice: str = Field(default=DEFAULT_VOICE, description="Prebuilt voice name")
    tts_max_chars: int = Field(
        default=4000,
        description="Synthesis input is truncated to this many characters",
    )

    # Microphone
    capture_sample_rate: int = Field(default=16000, description="Microphone sample rate (Hz)")
    capture_chunk_ms: int = Field(default=100, description="Microphone chunk cadence (ms)")

    # Live channel
    live_url: str = Field(
        default=(
            "wss://generativelanguage.googleapis.com/ws/"
            "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
        ),
        description="Live speech-to-speech websocket endpoint",
    )
    google_api_key: str | None = Field(default=None, description="API key for the live channel")
    live_model: str = Field(
        default="gemini-2.0-flash-live-preview-04-09",
        description="Live model name",
    )
    live_output_sample_rate: int = Field(default=24000, description="Sample rate of live audio replies")
    live_connect_timeout: float = Field(default=10.0, description="Handshake timeout in seconds")
    system_instruction: str = Field(
        default=DEFAULT_SYSTEM_INSTRUCTION,
        description="System instruction negotiated at live connect time",
    )

    # Turn pacing
    settle_delay: float = Field(
        default=0.5,
        description="Pause after playback ends before returning to idle",
    )

    # Application
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    @field_validator("voice")
    @classmethod
    def _known_voice(cls, value: str) -> str:
        if value not in GEMINI_VOICES:
            raise ValueError(f"Unknown voice '{value}'. Choose one of: {', '.join(GEMINI_VOICES)}")
        return value


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Returns:
        Settings: Application settings instance.
    """
    return Settings()
