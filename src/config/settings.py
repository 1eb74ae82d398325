"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache
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

    # Twilio (Voice)
    twilio_account_sid: str | None = Field(default=None)
    twilio_auth_token: str | None = Field(default=None)
    twilio_from_number: str | None = Field(
        default=None,
        description="Default caller id (E.164) when a call request does not name one.",
    )
    public_base_url: str | None = Field(
        default=None,
        description="Public base URL for Twilio webhooks (e.g. https://<ngrok>.ngrok-free.app).",
    )
    twilio_machine_detection: bool = Field(
        default=True,
        description="Ask Twilio for asynchronous answering-machine detection.",
    )

    # OpenAI Realtime
    openai_api_key: str | None = Field(default=None)
    realtime_url: str = Field(
        default="wss://api.openai.com/v1/realtime?model=gpt-4o-realtime-preview-2024-12-17",
    )
    realtime_voice: str = Field(default="ash")
    realtime_transcription_model: str = Field(default="whisper-1")

    # Call lifecycle
    default_call_timeout_seconds: int = Field(default=180, gt=0)

    # Session bridge
    max_concurrent_sessions: int = Field(
        default=1,
        ge=1,
        description="How many calls may hold a live session bridge at once.",
    )
    max_pending_function_calls: int = Field(default=4, ge=1)

    @field_validator("public_base_url")
    @classmethod
    def strip_trailing_slash(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.rstrip("/") or None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
