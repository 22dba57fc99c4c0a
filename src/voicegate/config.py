"""
Gateway settings, read once from the environment (and `.env` when present).

`init_config()` is called from the server lifespan so a bad deployment fails
before Twilio connects.
"""

import json
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, Optional

from dotenv import load_dotenv
import structlog

from src.voicegate.vad import VoiceActivityThresholds

load_dotenv()

logger = structlog.get_logger(__name__)


class ConfigError(Exception):
    """Missing or contradictory settings."""
    pass


@dataclass(frozen=True)
class Config:
    """Every tunable of the gateway. Field names mirror the environment variables."""

    # Server
    public_host: str
    port: int = 7860
    log_level: str = "INFO"
    websocket_url: str = ""

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""
    twiml_app_sid: str = ""

    # Assistant selection
    # - default_assistant_type is used when the called number has no mapping
    # - phone_assistant_mapping maps a called number (E.164) to an assistant type
    default_assistant_type: str = "general"
    phone_assistant_mapping: Dict[str, str] = field(default_factory=dict)

    # LLM Provider (Groq/OpenAI)
    llm_provider: str = "groq"  # "groq" | "openai"
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    max_history_turns: int = 10

    # Speech (OpenAI audio endpoints)
    openai_stt_model: str = "whisper-1"
    openai_tts_model: str = "gpt-4o-mini-tts"
    openai_tts_voice: str = "alloy"

    # Voice activity / endpointing (see src.voicegate.vad)
    silence_threshold: int = 500
    silence_chunks: int = 50
    min_chunks: int = 40
    min_active_chunks: int = 10
    interrupt_threshold: int = 800
    interrupt_chunk_count: int = 3
    interrupt_cooldown_ms: int = 1000
    playback_buffer_ms: int = 200

    # Playback pacing
    playback_frame_interval_ms: int = 20
    playback_restart_delay_ms: int = 100

    # Housekeeping
    pending_queue_max: int = 500
    event_retention_seconds: float = 300.0
    conversation_log_dir: str = ""

    @property
    def ws_url(self) -> str:
        """Media Streams URL handed to Twilio in TwiML."""
        if self.websocket_url:
            return self.websocket_url
        return f"wss://{self.public_host}/ws"

    @property
    def base_url(self) -> str:
        return f"https://{self.public_host}"

    @property
    def thresholds(self) -> VoiceActivityThresholds:
        """Voice activity thresholds used by every call session."""
        return VoiceActivityThresholds(
            silence_threshold=self.silence_threshold,
            silence_chunks_to_end_utterance=self.silence_chunks,
            min_total_chunks=self.min_chunks,
            min_active_chunks=self.min_active_chunks,
            interrupt_threshold=self.interrupt_threshold,
            interrupt_chunk_count=self.interrupt_chunk_count,
            interrupt_cooldown_ms=self.interrupt_cooldown_ms,
            playback_buffer_ms=self.playback_buffer_ms,
        )

    @property
    def twilio_configured(self) -> bool:
        """Whether outbound call control via the Twilio REST API is possible."""
        return bool(
            self.twilio_account_sid
            and self.twilio_auth_token
            and self.twilio_phone_number
            and self.twiml_app_sid
        )

    def assistant_type_for(self, phone_number: Optional[str]) -> str:
        """Resolve the assistant type for a called number."""
        if phone_number and phone_number in self.phone_assistant_mapping:
            return self.phone_assistant_mapping[phone_number]
        logger.debug(
            "No assistant mapping for number, using default",
            phone_number=phone_number,
            default_assistant_type=self.default_assistant_type,
        )
        return self.default_assistant_type

    def _required_settings(self, provider: str) -> Dict[str, str]:
        # Speech-to-text and text-to-speech always go through OpenAI.
        required = {
            "PUBLIC_HOST": self.public_host or self.websocket_url,
            "OPENAI_API_KEY": self.openai_api_key,
        }
        if provider == "groq":
            required["GROQ_API_KEY"] = self.groq_api_key
            required["GROQ_MODEL"] = self.groq_model
        else:
            required["OPENAI_MODEL"] = self.openai_model
        return required

    def validate(self) -> None:
        """
        Raises:
            ConfigError: unknown LLM provider, missing keys, or unusable thresholds
        """
        provider = (self.llm_provider or "groq").strip().lower()
        if provider not in ("groq", "openai"):
            raise ConfigError(f"LLM_PROVIDER must be 'groq' or 'openai', got '{self.llm_provider}'")

        missing = [name for name, value in self._required_settings(provider).items() if not value]
        if missing:
            raise ConfigError(f"Missing required environment variables: {', '.join(missing)} (see .env)")

        try:
            self.thresholds
        except ValueError as e:
            raise ConfigError(f"Invalid voice activity thresholds: {e}")

        if self.playback_frame_interval_ms < 0 or self.playback_restart_delay_ms < 0:
            raise ConfigError("Playback delays must not be negative")

    def log_config(self) -> None:
        """Log the effective settings. Secrets are reported as set/unset only."""
        logger.info(
            "Gateway configuration",
            public_host=self.public_host,
            port=self.port,
            ws_url=self.ws_url,
            log_level=self.log_level,
            default_assistant_type=self.default_assistant_type,
            mapped_numbers=len(self.phone_assistant_mapping),
            llm=f"{self.llm_provider}:{self.openai_model if self.llm_provider == 'openai' else self.groq_model}",
            stt_model=self.openai_stt_model,
            tts=f"{self.openai_tts_model}:{self.openai_tts_voice}",
            thresholds=self.thresholds,
            twilio_call_control=self.twilio_configured,
            secrets_set={
                "groq": bool(self.groq_api_key),
                "openai": bool(self.openai_api_key),
                "twilio": bool(self.twilio_auth_token),
            },
        )


def _get_int(key: str, default: int) -> int:
    """Integer env var; unparsable values fall back to `default`."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_mapping(key: str) -> Dict[str, str]:
    """Get a JSON object of string -> string from environment variable."""
    raw = os.getenv(key, "").strip()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        logger.warning("Ignoring malformed JSON mapping", key=key)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring non-object JSON mapping", key=key)
        return {}
    return {str(k): str(v) for k, v in data.items()}


@lru_cache(maxsize=1)
def get_config() -> Config:
    """Settings for this process. Cached; tests call `get_config.cache_clear()`."""
    config = Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 7860),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        websocket_url=os.getenv("WEBSOCKET_URL", ""),

        # Twilio
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_phone_number=os.getenv("TWILIO_PHONE_NUMBER", ""),
        twiml_app_sid=os.getenv("TWIML_APP_SID", ""),

        # Assistant selection
        default_assistant_type=os.getenv("DEFAULT_ASSISTANT_TYPE", "general").strip() or "general",
        phone_assistant_mapping=_get_mapping("PHONE_ASSISTANT_MAPPING"),

        # LLM
        llm_provider=os.getenv("LLM_PROVIDER", "groq").strip().lower(),
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        max_history_turns=_get_int("MAX_HISTORY_TURNS", 10),

        # Speech
        openai_stt_model=os.getenv("OPENAI_STT_MODEL", "whisper-1"),
        openai_tts_model=os.getenv("OPENAI_TTS_MODEL", "gpt-4o-mini-tts"),
        openai_tts_voice=os.getenv("OPENAI_TTS_VOICE", "alloy"),

        # Voice activity
        silence_threshold=_get_int("SILENCE_THRESHOLD", 500),
        silence_chunks=_get_int("SILENCE_CHUNKS", 50),
        min_chunks=_get_int("MIN_CHUNKS", 40),
        min_active_chunks=_get_int("MIN_ACTIVE_CHUNKS", 10),
        interrupt_threshold=_get_int("INTERRUPT_THRESHOLD", 800),
        interrupt_chunk_count=_get_int("INTERRUPT_CHUNK_COUNT", 3),
        interrupt_cooldown_ms=_get_int("INTERRUPT_COOLDOWN_MS", 1000),
        playback_buffer_ms=_get_int("PLAYBACK_BUFFER_MS", 200),

        # Playback
        playback_frame_interval_ms=_get_int("PLAYBACK_FRAME_INTERVAL_MS", 20),
        playback_restart_delay_ms=_get_int("PLAYBACK_RESTART_DELAY_MS", 100),

        # Housekeeping
        pending_queue_max=_get_int("PENDING_QUEUE_MAX", 500),
        event_retention_seconds=_get_float("EVENT_RETENTION_SECONDS", 300.0),
        conversation_log_dir=os.getenv("CONVERSATION_LOG_DIR", ""),
    )

    return config


def init_config() -> Config:
    """Load, validate and log the settings."""
    config = get_config()
    config.validate()
    config.log_config()
    return config
