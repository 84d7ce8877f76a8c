"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    log_level: str = Field(default="INFO")

    # Signaling transport
    connect_timeout: float = Field(
        default=3.0,
        gt=0.0,
        description="Seconds to wait for the outbound attempt before falling back to listening.",
    )
    accept_timeout: float | None = Field(
        default=None,
        description="Seconds the listen fallback waits for the peer. None waits until cancelled.",
    )
    listen_host: str = Field(default="0.0.0.0", description="Interface bound by the listen fallback.")
    outgoing_queue_maxsize: int = Field(
        default=0,
        ge=0,
        description="Bound of the outgoing signaling queue. 0 means unbounded.",
    )
    max_frame_bytes: int = Field(
        default=1024 * 1024,
        ge=1024,
        description="Longest accepted incoming signaling line, in bytes.",
    )

    # Media (aiortc adapter)
    stun_servers: list[str] = Field(default_factory=lambda: ["stun:stun.l.google.com:19302"])
    audio_source: str | None = Field(
        default=None,
        description="Optional aiortc MediaPlayer input for the microphone, e.g. 'default' with pulse.",
    )
    video_source: str | None = Field(
        default=None,
        description="Optional aiortc MediaPlayer input for the camera, e.g. /dev/video0.",
    )
    media_format: str | None = Field(default=None, description="MediaPlayer format, e.g. v4l2 or pulse.")

    @field_validator("accept_timeout")
    @classmethod
    def positive_or_none(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            raise ValueError("Timeout must be positive or unset.")
        return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
