"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
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
        default="sqlite+aiosqlite:///./data/call_relay.db",
        description="SQLAlchemy connection string.",
    )
    auto_create_db_schema: bool = Field(
        default=True,
        description="If true, creates tables automatically on startup (useful for local/dev).",
    )

    # OpenAI Realtime engine
    openai_api_key: str | None = Field(default=None)
    openai_realtime_url: str = Field(default="wss://api.openai.com/v1/realtime")
    openai_realtime_model: str = Field(default="gpt-4o-realtime-preview")
    realtime_voice: str = Field(default="alloy")
    realtime_audio_format: Literal["g711_ulaw", "g711_alaw", "pcm16"] = Field(
        default="g711_ulaw",
        description="Negotiated once per session; Twilio Media Streams carry 8kHz mu-law.",
    )
    realtime_transcription_model: str = Field(default="whisper-1")
    engine_connect_timeout_seconds: float = Field(default=10.0, gt=0)
    engine_handshake_timeout_seconds: float = Field(default=10.0, gt=0)
    audio_commit_interval_ms: int = Field(
        default=500,
        ge=1,
        description="Quiet gap after the last inbound frame before the input buffer is committed.",
    )
    tool_drain_timeout_seconds: float = Field(
        default=5.0,
        ge=0,
        description="How long teardown waits for an in-flight tool call to finish.",
    )

    # Post-call summary
    summary_model: str = Field(default="gpt-4o-mini")
    telegram_bot_token: str | None = Field(default=None)
    telegram_chat_id: str | None = Field(default=None)
    telegram_api_base: str = Field(default="https://api.telegram.org")

    # Persona
    assistant_name: str = Field(default="Maya")
    owner_name: str = Field(default="Aston")

    # Twilio (Voice)
    twilio_account_sid: str | None = Field(default=None)
    twilio_auth_token: str | None = Field(default=None)
    twilio_from_number: str | None = Field(default=None, description="E.164, e.g. +4144...")
    public_base_url: str | None = Field(
        default=None,
        description="Public base URL for Twilio webhooks (e.g. https://<ngrok>.ngrok-free.app).",
    )
    twilio_greeting: str | None = Field(
        default=None,
        description="Optional <Say> played before the media stream connects.",
    )

    data_dir: Path = Field(default=Path("./data"), validate_default=True)

    @field_validator("data_dir")
    @classmethod
    def ensure_data_dir(cls, value: Path) -> Path:
        value.mkdir(parents=True, exist_ok=True)
        return value

    @property
    def realtime_ws_url(self) -> str:
        return f"{self.openai_realtime_url.rstrip('/')}?model={self.openai_realtime_model}"

    @property
    def audio_commit_interval_seconds(self) -> float:
        return self.audio_commit_interval_ms / 1000


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
