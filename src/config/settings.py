"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    environment: Literal["local", "dev", "prod"] = Field(default="local")
    log_level: str = Field(default="INFO")

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/calls.db",
        description="SQLAlchemy connection string.",
    )
    auto_create_db_schema: bool = Field(
        default=True,
        description="If true, creates tables automatically on startup (useful for local/dev).",
    )

    # Speech recognition
    stt_provider: Literal["openai", "local"] = Field(default="openai")
    stt_api_key: str | None = Field(
        default=None,
        description="API key for hosted transcription. Falls back to LLM_API_KEY.",
    )
    stt_model: str = Field(default="whisper-1")
    stt_language: str = Field(default="en")
    whisper_model_size: str = Field(default="Systran/faster-whisper-small.en")
    whisper_compute_type: str = Field(default="auto")
    whisper_device: str = Field(default="auto")
    stt_silence_ms: int = Field(default=1200, description="Trailing silence that ends an utterance.")
    stt_min_speech_ms: int = Field(default=300, description="Shorter utterances are discarded.")

    # Text to speech (ElevenLabs)
    elevenlabs_api_key: str | None = Field(default=None)
    elevenlabs_base_url: str = Field(default="https://api.elevenlabs.io")
    elevenlabs_voice_id: str = Field(default="21m00Tcm4TlvDq8ikWAM")
    elevenlabs_model: str = Field(default="eleven_turbo_v2")
    elevenlabs_output_format: str = Field(
        default="mp3_44100_128",
        description="mp3_* formats need ffmpeg; pcm_<rate> formats are transcoded in-process.",
    )
    ffmpeg_path: str = Field(default="ffmpeg")

    # LLM connectivity
    llm_provider: Literal["openai", "self_hosted_vllm"] = Field(default="openai")
    llm_endpoint: str | None = Field(
        default=None, description="Base URL for the inference server (optional for OpenAI)."
    )
    llm_api_key: str | None = Field(default=None)
    llm_model: str = Field(default="gpt-4o-mini")

    # Streaming pipeline
    chunk_min_length: int = Field(default=30, ge=1)
    assistant_name: str = Field(default="Sarah")
    practice_name: str = Field(default="Aiva Health")
    call_timezone: str = Field(default="Africa/Nairobi")

    # Notifications
    notification_endpoint: str | None = Field(
        default=None,
        description="HTTP endpoint that delivers push notifications to the booking user.",
    )
    notification_api_key: str | None = Field(default=None)

    # Twilio (Voice)
    twilio_account_sid: str | None = Field(default=None)
    twilio_auth_token: str | None = Field(default=None)
    twilio_from_number: str | None = Field(default=None, description="E.164, e.g. +2547...")
    public_base_url: str | None = Field(
        default=None,
        description="Public base URL for Twilio webhooks (e.g. https://<ngrok>.ngrok-free.app).",
    )
    twilio_say_voice: str = Field(default="alice")
    twilio_say_language: str = Field(default="en-US")
    twilio_gather_timeout_seconds: int = Field(default=5)
    twilio_enable_media_streams: bool = Field(
        default=True,
        description="If false, calls always use the gather/say dialog flow.",
    )
    twilio_stream_pause_seconds: int = Field(
        default=20,
        description="Pause issued after <Connect><Stream> to keep the call alive during setup.",
    )
    calls_api_key: str | None = Field(
        default=None,
        description="Optional API key required to place outbound calls.",
    )

    @property
    def transcription_api_key(self) -> str | None:
        return self.stt_api_key or self.llm_api_key


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
