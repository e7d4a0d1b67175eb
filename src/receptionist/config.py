"""
Configuration management for the realtime receptionist bridge.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)


DEFAULT_INSTRUCTIONS = (
    "You are an AI receptionist for Bart's Automotive. Your job is to politely engage "
    "with the client and obtain their name, availability, and service/work required. "
    "Ask one question at a time. Do not ask for other contact information, and do not "
    "check availability, assume we are free. Ensure the conversation remains friendly "
    "and professional, and guide the user to provide these details naturally. If "
    "necessary, ask follow-up questions to gather the required information."
)

DEFAULT_GREETING = "Hi, you have called Bart's Automotive Centre. How can we help?"


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    openai_api_key: str
    port: int = 5050
    log_level: str = "INFO"
    public_host: str = ""
    greeting: str = DEFAULT_GREETING

    # OpenAI Realtime (upstream)
    openai_realtime_url: str = "wss://api.openai.com/v1/realtime"
    openai_realtime_model: str = "gpt-4o-realtime-preview-2024-10-01"
    openai_realtime_voice: str = "alloy"
    openai_realtime_temperature: float = 0.8
    openai_realtime_transcription_model: str = "whisper-1"
    openai_realtime_instructions: str = DEFAULT_INSTRUCTIONS
    session_update_delay_ms: int = 250

    # Post-call extraction
    extraction_model: str = "gpt-4o-2024-08-06"
    extraction_timeout_seconds: float = 30.0
    webhook_url: str = ""
    webhook_timeout_seconds: float = 10.0

    @property
    def realtime_ws_url(self) -> str:
        """Get the OpenAI Realtime WebSocket URL including the model."""
        return f"{self.openai_realtime_url}?model={self.openai_realtime_model}"

    def media_stream_url(self, host: str) -> str:
        """Get the Twilio Media Streams URL, preferring PUBLIC_HOST over the request host."""
        return f"wss://{self.public_host or host}/media-stream"

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if not self.openai_realtime_model:
            missing.append("OPENAI_REALTIME_MODEL")
        if not self.extraction_model:
            missing.append("EXTRACTION_MODEL")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

        if self.session_update_delay_ms < 0:
            raise ConfigError("SESSION_UPDATE_DELAY_MS must not be negative")
        if self.extraction_timeout_seconds <= 0 or self.webhook_timeout_seconds <= 0:
            raise ConfigError("EXTRACTION_TIMEOUT_SECONDS and WEBHOOK_TIMEOUT_SECONDS must be positive")

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            port=self.port,
            log_level=self.log_level,
            public_host=self.public_host or None,
            realtime_model=self.openai_realtime_model,
            realtime_voice=self.openai_realtime_voice,
            realtime_temperature=self.openai_realtime_temperature,
            transcription_model=self.openai_realtime_transcription_model,
            session_update_delay_ms=self.session_update_delay_ms,
            extraction_model=self.extraction_model,
            webhook_configured=bool(self.webhook_url),
            openai_key_set=bool(self.openai_api_key),
        )

        if not self.webhook_url:
            logger.warning("WEBHOOK_URL not set; extracted customer details will not be delivered")


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    return Config(
        # Server
        openai_api_key=os.getenv("OPENAI_API_KEY", "").strip(),
        port=_get_int("PORT", 5050),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        public_host=os.getenv("PUBLIC_HOST", "").strip(),
        greeting=os.getenv("GREETING", DEFAULT_GREETING),

        # OpenAI Realtime
        openai_realtime_url=os.getenv("OPENAI_REALTIME_URL", "wss://api.openai.com/v1/realtime"),
        openai_realtime_model=os.getenv("OPENAI_REALTIME_MODEL", "gpt-4o-realtime-preview-2024-10-01"),
        openai_realtime_voice=os.getenv("OPENAI_REALTIME_VOICE", "alloy"),
        openai_realtime_temperature=_get_float("OPENAI_REALTIME_TEMPERATURE", 0.8),
        openai_realtime_transcription_model=os.getenv("OPENAI_REALTIME_TRANSCRIPTION_MODEL", "whisper-1"),
        openai_realtime_instructions=os.getenv("OPENAI_REALTIME_INSTRUCTIONS", "").strip() or DEFAULT_INSTRUCTIONS,
        session_update_delay_ms=_get_int("SESSION_UPDATE_DELAY_MS", 250),

        # Extraction
        extraction_model=os.getenv("EXTRACTION_MODEL", "gpt-4o-2024-08-06"),
        extraction_timeout_seconds=_get_float("EXTRACTION_TIMEOUT_SECONDS", 30.0),
        webhook_url=os.getenv("WEBHOOK_URL", "").strip(),
        webhook_timeout_seconds=_get_float("WEBHOOK_TIMEOUT_SECONDS", 10.0),
    )


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
