from __future__ import annotations

import logging

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class ServiceSettings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 8000
    fragment_ms: int = 5000
    retry_tick_s: float = 5.0
    retry_base_delay_s: float = 1.0
    max_retries: int = 3
    max_retry_queue: int = 50
    request_timeout_s: float = 60.0
    max_display_sessions: int = 10
    mime_type: str = "audio/webm"
    gemini_base_url: str = "https://generativelanguage.googleapis.com"
    gemini_model: str = "gemini-2.0-flash-exp"
    openai_base_url: str = "https://api.openai.com"
    whisper_model: str = "whisper-1"
    deepgram_base_url: str = "https://api.deepgram.com"
    deepgram_model: str = "nova-2"

    model_config = {"env_prefix": "TRANSCRIBER_"}


class SessionSettings(BaseSettings):
    """User-level settings owned by the configuration collaborator."""

    api_provider: str = "gemini"
    gemini_api_key: str = ""
    whisper_api_key: str = ""
    deepgram_api_key: str = ""
    fireworks_api_key: str = ""
    cadence_ms: int = 30000
    overlap_ms: int = 3000

    model_config = {"env_prefix": "SESSION_", "frozen": True}

    @field_validator("api_provider")
    @classmethod
    def _normalize_provider(cls, value: str) -> str:
        return value.strip().lower() or "gemini"

    @model_validator(mode="after")
    def _check_window(self) -> "SessionSettings":
        if self.cadence_ms <= 0:
            raise ValueError("cadence_ms must be positive")
        if self.overlap_ms < 0:
            raise ValueError("overlap_ms must not be negative")
        if self.overlap_ms >= self.cadence_ms:
            raise ValueError("overlap_ms must be shorter than cadence_ms")
        return self

    def credential_for(self, provider: str) -> str:
        return getattr(self, f"{provider}_api_key", "") or ""


class ConfigStore:
    """Process-wide holder of the current SessionSettings.

    Readers call get() on every use; update() swaps in a new validated
    snapshot so a reader never observes a half-applied change.
    """

    def __init__(self, settings: SessionSettings | None = None) -> None:
        self._settings = settings or SessionSettings()

    def get(self) -> SessionSettings:
        return self._settings

    def update(self, **changes) -> SessionSettings:
        merged = self._settings.model_dump()
        merged.update({k: v for k, v in changes.items() if v is not None})
        self._settings = SessionSettings(**merged)
        logger.info(
            "Configuration updated: %s",
            ", ".join(sorted(k for k in changes if changes[k] is not None)) or "nothing",
        )
        return self._settings
