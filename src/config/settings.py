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
        default="sqlite+aiosqlite:///./data/intercom.db",
        description="SQLAlchemy connection string.",
    )

    # Migrations / schema
    auto_create_db_schema: bool = Field(
        default=True,
        description="If true, creates tables automatically on startup (useful for local/dev).",
    )

    # Device identity
    device_id: str = Field(default="intercom-device", description="Identity used for media rooms.")
    app_version: str = Field(default="0.1.0")

    # Backend-as-a-service (Supabase-compatible)
    backend_url: str = Field(default="http://localhost:54321")
    backend_anon_key: str | None = Field(default=None)
    backend_timeout_seconds: float = Field(default=10.0, gt=0)
    facility_id: str | None = Field(
        default=None,
        description="Facility whose channels are cached when no user profile is loaded.",
    )

    # Media / SFU (LiveKit)
    media_url: str = Field(default="ws://localhost:7880")
    media_token_function: str = Field(
        default="media-token",
        description="Backend edge function that mints short-lived room tokens.",
    )
    media_join_timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Optional upper bound for joining a room. Unset means no timeout.",
    )

    # Native telephony bridge
    telephony_platform: Literal["ios", "android", "in_app"] = Field(default="in_app")
    telephony_bridge_url: str = Field(
        default="ws://127.0.0.1:8765/telephony",
        description="Websocket exposed by the native shell hosting CallKit / Telecom.",
    )
    telephony_display_name: str = Field(default="Facility Intercom")
    telephony_account_id: str = Field(default="facility_intercom")
    telephony_registration_attempts: int = Field(default=3, ge=1)
    telephony_registration_retry_seconds: float = Field(default=2.0, ge=0)
    telephony_request_timeout_seconds: float = Field(default=5.0, gt=0)

    # Push-to-talk
    ptt_max_seconds: float = Field(default=30.0, gt=0)
    ptt_min_seconds: float = Field(default=0.5, ge=0)

    # Push entry
    push_api_key: str | None = Field(
        default=None,
        description="Optional API key required by the push entry endpoint.",
    )

    data_dir: Path = Field(default=Path("./data"))

    @field_validator("data_dir")
    @classmethod
    def ensure_data_dir(cls, value: Path) -> Path:
        value.mkdir(parents=True, exist_ok=True)
        return value

    @field_validator("backend_url", "media_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
