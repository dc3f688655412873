"""Centralized application settings using pydantic-settings."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SUBFOLDERS = ["script", "audio", "final", "images", "video", "subtitles"]


class Settings(BaseSettings):
    """Environment-driven configuration shared by the API and the workers."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Queue backing store
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")
    redis_prefix: str = Field(default="reelsmith", alias="REDIS_PREFIX")
    result_ttl_seconds: int = Field(
        default=7 * 24 * 3600,
        ge=60,
        alias="RESULT_TTL_SECONDS",
        description="Expiry applied to terminal job records",
    )

    # Leases and stall handling
    lease_seconds: float = Field(
        default=600.0,
        gt=0,
        alias="LEASE_SECONDS",
        description="Must exceed the slowest single stage",
    )
    heartbeat_seconds: float | None = Field(
        default=None,
        gt=0,
        alias="HEARTBEAT_SECONDS",
        description="Heartbeat interval (defaults to a third of the lease)",
    )
    max_stalled_retries: int = Field(default=3, ge=0, alias="MAX_STALLED_RETRIES")
    stall_sweep_seconds: float = Field(default=30.0, gt=0, alias="STALL_SWEEP_SECONDS")

    # Worker loop
    poll_interval_seconds: float = Field(default=1.0, gt=0, alias="POLL_INTERVAL_SECONDS")
    max_backoff_seconds: int = Field(default=30, ge=1, alias="MAX_BACKOFF_SECONDS")

    # Output layout
    output_dir: Path = Field(default=Path("results"), alias="OUTPUT_DIR")
    output_subfolders: list[str] = Field(
        default_factory=lambda: list(DEFAULT_SUBFOLDERS), alias="OUTPUT_SUBFOLDERS"
    )

    # Service
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    service_name: str = Field(default="reelsmith", alias="SERVICE_NAME")
    api_prefix: str = Field(default="", alias="API_PREFIX")
    debug: bool = Field(default=False, alias="DEBUG")
    log_json: bool = Field(default=False, alias="LOG_JSON")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_dir: Path | None = Field(default=None, alias="LOG_DIR")

    # External generators
    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    openai_base_url: str = Field(
        default="https://api.openai.com/v1", alias="OPENAI_BASE_URL"
    )
    script_model: str = Field(default="gpt-4.1-nano", alias="SCRIPT_MODEL")
    anthropic_api_key: str | None = Field(default=None, alias="ANTHROPIC_API_KEY")
    anthropic_base_url: str = Field(
        default="https://api.anthropic.com/v1", alias="ANTHROPIC_BASE_URL"
    )
    anthropic_model: str = Field(default="claude-3-5-haiku-latest", alias="ANTHROPIC_MODEL")
    google_api_key: str | None = Field(default=None, alias="GOOGLE_GENERATIVE_AI_API_KEY")
    google_base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta", alias="GOOGLE_BASE_URL"
    )
    google_model: str = Field(default="gemini-1.5-flash", alias="GOOGLE_MODEL")
    cohere_api_key: str | None = Field(default=None, alias="COHERE_API_KEY")
    cohere_base_url: str = Field(default="https://api.cohere.com/v2", alias="COHERE_BASE_URL")
    cohere_model: str = Field(default="command-r", alias="COHERE_MODEL")
    tts_model: str = Field(default="tts-1", alias="TTS_MODEL")
    tts_voice: str = Field(default="sage", alias="TTS_VOICE")
    transcription_model: str = Field(default="whisper-1", alias="TRANSCRIPTION_MODEL")
    image_model: str = Field(default="dall-e-3", alias="IMAGE_MODEL")
    images_per_job: int = Field(default=4, ge=1, le=20, alias="IMAGES_PER_JOB")
    ffmpeg_binary: str = Field(default="ffmpeg", alias="FFMPEG_BINARY")
    background_music: Path | None = Field(default=None, alias="BACKGROUND_MUSIC")
    music_volume_db: float = Field(default=-15.0, alias="MUSIC_VOLUME_DB")
    generator_timeout_seconds: float = Field(
        default=300.0, gt=0, alias="GENERATOR_TIMEOUT_SECONDS"
    )

    @property
    def heartbeat_interval(self) -> float:
        """Seconds between lease renewals."""
        if self.heartbeat_seconds:
            return self.heartbeat_seconds
        return self.lease_seconds / 3

    @property
    def progress_channel(self) -> str:
        return f"{self.redis_prefix}:progress"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()
