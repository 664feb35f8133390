"""
Configuration management for the Twilio voice bot.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import List

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)

DEFAULT_AGENT_PROMPT = "You are a helpful assistant."
DEFAULT_GREETING = "Hello, how can I help you today?"


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


class MissingCredentialsError(ConfigError):
    """Raised when a provider credential needed for a call is missing."""

    def __init__(self, missing: List[str]):
        super().__init__(f"Missing provider credentials: {', '.join(missing)}")
        self.missing = missing


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str = ""
    base_url_override: str = ""
    base_ws_url_override: str = ""
    port: int = 3000
    log_level: str = "INFO"

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""

    # Deepgram (STT)
    deepgram_api_key: str = ""
    deepgram_model: str = "nova-3"
    deepgram_language: str = "multi"

    # LLM Provider (OpenAI/Groq, both OpenAI-compatible)
    llm_provider: str = "openai"  # "openai" | "groq"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"

    # ElevenLabs (TTS)
    elevenlabs_api_key: str = ""
    elevenlabs_voice_id: str = "cjVigY5qzO86Huf0OWal"
    elevenlabs_model_id: str = "eleven_multilingual_v2"
    elevenlabs_output_format: str = "ulaw_8000"
    elevenlabs_with_timestamps: bool = True

    # Agent settings
    agent_system_prompt: str = DEFAULT_AGENT_PROMPT
    greeting_text: str = DEFAULT_GREETING
    max_history_turns: int = 10
    filler_enabled: bool = True
    suppress_stale_filler: bool = True

    # Pipeline sizing
    max_inflight_responses: int = 2
    tts_max_concurrency: int = 2
    audio_channel_size: int = 8
    frame_channel_size: int = 8
    provider_timeout_seconds: float = 15.0

    @property
    def llm_api_key(self) -> str:
        return self.groq_api_key if self.llm_provider == "groq" else self.openai_api_key

    @property
    def llm_model(self) -> str:
        return self.groq_model if self.llm_provider == "groq" else self.openai_model

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL (always ends with '/')."""
        if self.base_url_override:
            return self.base_url_override.rstrip("/") + "/"
        return f"https://{self.public_host}/"

    @property
    def ws_url(self) -> str:
        """Get the WebSocket base URL for Twilio (always ends with '/')."""
        if self.base_ws_url_override:
            return self.base_ws_url_override.rstrip("/") + "/"
        return f"wss://{self.public_host}/"

    def missing_provider_credentials(self) -> List[str]:
        missing = []
        if not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")
        if not self.llm_api_key:
            missing.append("GROQ_API_KEY" if self.llm_provider == "groq" else "OPENAI_API_KEY")
        if not self.elevenlabs_api_key:
            missing.append("ELEVENLABS_API_KEY")
        return missing

    def require_provider_credentials(self) -> None:
        """Raise MissingCredentialsError unless every provider key is set."""
        missing = self.missing_provider_credentials()
        if missing:
            raise MissingCredentialsError(missing)

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not (self.public_host or (self.base_url_override and self.base_ws_url_override)):
            missing.append("PUBLIC_HOST (or BASE_URL and BASE_WS_URL)")
        if not self.twilio_account_sid:
            missing.append("TWILIO_ACCOUNT_SID")
        if not self.twilio_auth_token:
            missing.append("TWILIO_AUTH_TOKEN")

        provider = (self.llm_provider or "openai").strip().lower()
        if provider not in ("groq", "openai"):
            raise ConfigError(
                f"Invalid LLM_PROVIDER '{self.llm_provider}'. Expected 'openai' or 'groq'."
            )

        missing.extend(self.missing_provider_credentials())
        if not self.llm_model:
            missing.append("GROQ_MODEL" if provider == "groq" else "OPENAI_MODEL")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

        if self.audio_channel_size < 1 or self.frame_channel_size < 1:
            raise ConfigError("AUDIO_CHANNEL_SIZE and FRAME_CHANNEL_SIZE must be at least 1")
        if self.max_inflight_responses < 1 or self.tts_max_concurrency < 1:
            raise ConfigError("MAX_INFLIGHT_RESPONSES and TTS_MAX_CONCURRENCY must be at least 1")

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            base_url=self.base_url,
            ws_url=self.ws_url,
            port=self.port,
            log_level=self.log_level,
            deepgram_model=self.deepgram_model,
            deepgram_language=self.deepgram_language,
            llm_provider=self.llm_provider,
            llm_model=self.llm_model,
            elevenlabs_voice_id=self.elevenlabs_voice_id,
            elevenlabs_model_id=self.elevenlabs_model_id,
            filler_enabled=self.filler_enabled,
            max_inflight_responses=self.max_inflight_responses,
            tts_max_concurrency=self.tts_max_concurrency,
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            twilio_from_number_set=bool(self.twilio_from_number),
            deepgram_key_set=bool(self.deepgram_api_key),
            openai_key_set=bool(self.openai_api_key),
            groq_key_set=bool(self.groq_api_key),
            elevenlabs_key_set=bool(self.elevenlabs_api_key),
        )


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


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
        public_host=os.getenv("PUBLIC_HOST", ""),
        base_url_override=os.getenv("BASE_URL", ""),
        base_ws_url_override=os.getenv("BASE_WS_URL", ""),
        port=_get_int("PORT", 3000),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Twilio
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_from_number=os.getenv("TWILIO_FROM_NUMBER", ""),

        # Deepgram
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_model=os.getenv("DEEPGRAM_MODEL", "nova-3"),
        deepgram_language=os.getenv("DEEPGRAM_LANGUAGE", "multi"),

        # LLM
        llm_provider=os.getenv("LLM_PROVIDER", "openai").strip().lower(),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),

        # ElevenLabs
        elevenlabs_api_key=os.getenv("ELEVENLABS_API_KEY", ""),
        elevenlabs_voice_id=os.getenv("ELEVENLABS_VOICE_ID", "cjVigY5qzO86Huf0OWal"),
        elevenlabs_model_id=os.getenv("ELEVENLABS_MODEL_ID", "eleven_multilingual_v2"),
        elevenlabs_output_format=os.getenv("ELEVENLABS_OUTPUT_FORMAT", "ulaw_8000"),
        elevenlabs_with_timestamps=_get_bool("ELEVENLABS_WITH_TIMESTAMPS", True),

        # Agent settings
        agent_system_prompt=os.getenv("AGENT_SYSTEM_PROMPT", DEFAULT_AGENT_PROMPT),
        greeting_text=os.getenv("GREETING_TEXT", DEFAULT_GREETING),
        max_history_turns=_get_int("MAX_HISTORY_TURNS", 10),
        filler_enabled=_get_bool("FILLER_ENABLED", True),
        suppress_stale_filler=_get_bool("SUPPRESS_STALE_FILLER", True),

        # Pipeline sizing
        max_inflight_responses=_get_int("MAX_INFLIGHT_RESPONSES", 2),
        tts_max_concurrency=_get_int("TTS_MAX_CONCURRENCY", 2),
        audio_channel_size=_get_int("AUDIO_CHANNEL_SIZE", 8),
        frame_channel_size=_get_int("FRAME_CHANNEL_SIZE", 8),
        provider_timeout_seconds=_get_float("PROVIDER_TIMEOUT_SECONDS", 15.0),
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
