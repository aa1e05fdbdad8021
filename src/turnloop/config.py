"""
Configuration management for the turnloop voice server.

Loads environment variables and provides a strongly-typed configuration object.
Validates provider selection and required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)

STT_PROVIDERS = ("openai", "deepgram", "assemblyai")
LLM_PROVIDERS = ("openai", "groq")
TTS_PROVIDERS = ("openai", "cartesia", "elevenlabs", "deepgram")
BUSY_POLICIES = ("interrupt", "queue", "reject")

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful voice assistant. Your replies are spoken aloud, so keep them "
    "short (one to three sentences), conversational and free of markdown, lists or "
    "emoji. Use the available tools when they help answer the question."
)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    host: str = "0.0.0.0"
    port: int = 7860
    log_level: str = "INFO"

    # Provider selection
    stt_provider: str = "openai"  # "openai" | "deepgram" | "assemblyai"
    stt_model: str = "gpt-4o-mini-transcribe"
    llm_provider: str = "openai"  # "openai" | "groq"
    llm_model: str = "gpt-4o-mini"
    llm_temperature: float = 0.7
    llm_max_tokens: int = 256
    tts_provider: str = "openai"  # "openai" | "cartesia" | "elevenlabs" | "deepgram"
    tts_model: str = "gpt-4o-mini-tts"
    tts_voice: str = "alloy"

    # Credentials
    openai_api_key: str = ""
    groq_api_key: str = ""
    deepgram_api_key: str = ""
    cartesia_api_key: str = ""
    cartesia_voice_id: str = "a0e99841-438c-4a64-b679-ae501e7d6091"
    cartesia_model: str = "sonic-2"
    elevenlabs_api_key: str = ""
    elevenlabs_voice_id: str = "21m00Tcm4TlvDq8ikWAM"
    elevenlabs_model: str = "eleven_turbo_v2_5"
    assemblyai_api_key: str = ""
    deepgram_tts_model: str = "aura-2-thalia-en"
    validate_models: bool = False

    # Audio (16-bit little-endian mono PCM in both directions)
    sample_rate: int = 16000

    # Voice activity detection
    vad_threshold: float = 0.02
    vad_min_speech_ms: int = 200
    vad_min_silence_ms: int = 700
    vad_window_frames: int = 3
    preroll_ms: int = 300

    # Turn handling
    # - busy_policy decides what happens to new input while a turn is active
    busy_policy: str = "interrupt"  # "interrupt" | "queue" | "reject"
    max_tool_calls: int = 5
    sentence_max_chars: int = 200
    tts_queue_size: int = 2
    provider_timeout_s: float = 15.0
    tool_timeout_s: float = 10.0
    max_consecutive_failures: int = 3

    # Session
    max_history_messages: int = 40
    event_queue_size: int = 256
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    @property
    def ws_path(self) -> str:
        """WebSocket path served by the transport."""
        return "/v1/realtime"

    def validate(self) -> None:
        """Validate provider names, numeric bounds and required credentials."""
        for label, value, allowed in (
            ("STT_PROVIDER", self.stt_provider, STT_PROVIDERS),
            ("LLM_PROVIDER", self.llm_provider, LLM_PROVIDERS),
            ("TTS_PROVIDER", self.tts_provider, TTS_PROVIDERS),
            ("BUSY_POLICY", self.busy_policy, BUSY_POLICIES),
        ):
            if value not in allowed:
                raise ConfigError(
                    f"Invalid {label} '{value}'. Expected one of: {', '.join(allowed)}."
                )

        if not 1 <= self.tts_queue_size <= 2:
            raise ConfigError("TTS_QUEUE_SIZE must be 1 or 2.")
        if self.max_tool_calls < 0:
            raise ConfigError("MAX_TOOL_CALLS must be >= 0.")
        if self.sentence_max_chars < 20:
            raise ConfigError("SENTENCE_MAX_CHARS must be >= 20.")
        if self.provider_timeout_s <= 0 or self.tool_timeout_s <= 0:
            raise ConfigError("PROVIDER_TIMEOUT_S and TOOL_TIMEOUT_S must be positive.")
        if not 0.0 < self.vad_threshold < 1.0:
            raise ConfigError("VAD_THRESHOLD must be between 0 and 1.")
        if self.sample_rate not in (8000, 16000, 24000, 48000):
            raise ConfigError(f"Unsupported SAMPLE_RATE {self.sample_rate}.")

        missing = []
        needs_openai = (
            self.stt_provider == "openai"
            or self.llm_provider == "openai"
            or self.tts_provider == "openai"
        )
        if needs_openai and not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if self.llm_provider == "groq" and not self.groq_api_key:
            missing.append("GROQ_API_KEY")
        if "deepgram" in (self.stt_provider, self.tts_provider) and not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")
        if self.tts_provider == "cartesia" and not self.cartesia_api_key:
            missing.append("CARTESIA_API_KEY")
        if self.tts_provider == "elevenlabs" and not self.elevenlabs_api_key:
            missing.append("ELEVENLABS_API_KEY")
        if self.stt_provider == "assemblyai" and not self.assemblyai_api_key:
            missing.append("ASSEMBLYAI_API_KEY")
        if not self.llm_model:
            missing.append("LLM_MODEL")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            host=self.host,
            port=self.port,
            log_level=self.log_level,
            stt_provider=self.stt_provider,
            stt_model=self.stt_model,
            llm_provider=self.llm_provider,
            llm_model=self.llm_model,
            tts_provider=self.tts_provider,
            tts_model=self.tts_model,
            sample_rate=self.sample_rate,
            busy_policy=self.busy_policy,
            max_tool_calls=self.max_tool_calls,
            tts_queue_size=self.tts_queue_size,
            provider_timeout_s=self.provider_timeout_s,
            openai_key_set=bool(self.openai_api_key),
            groq_key_set=bool(self.groq_api_key),
            deepgram_key_set=bool(self.deepgram_api_key),
            cartesia_key_set=bool(self.cartesia_api_key),
            elevenlabs_key_set=bool(self.elevenlabs_api_key),
            assemblyai_key_set=bool(self.assemblyai_api_key),
        )


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


def _get_bool(key: str, default: bool) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _get_choice(key: str, default: str) -> str:
    return os.getenv(key, default).strip().lower()


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    return Config(
        # Server
        host=os.getenv("HOST", "0.0.0.0"),
        port=_get_int("PORT", 7860),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Providers
        stt_provider=_get_choice("STT_PROVIDER", "openai"),
        stt_model=os.getenv("STT_MODEL", "gpt-4o-mini-transcribe"),
        llm_provider=_get_choice("LLM_PROVIDER", "openai"),
        llm_model=os.getenv("LLM_MODEL", "gpt-4o-mini"),
        llm_temperature=_get_float("LLM_TEMPERATURE", 0.7),
        llm_max_tokens=_get_int("LLM_MAX_TOKENS", 256),
        tts_provider=_get_choice("TTS_PROVIDER", "openai"),
        tts_model=os.getenv("TTS_MODEL", "gpt-4o-mini-tts"),
        tts_voice=os.getenv("TTS_VOICE", "alloy"),

        # Credentials
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        cartesia_api_key=os.getenv("CARTESIA_API_KEY", ""),
        cartesia_voice_id=os.getenv("CARTESIA_VOICE_ID", "a0e99841-438c-4a64-b679-ae501e7d6091"),
        cartesia_model=os.getenv("CARTESIA_MODEL", "sonic-2"),
        elevenlabs_api_key=os.getenv("ELEVENLABS_API_KEY", ""),
        elevenlabs_voice_id=os.getenv("ELEVENLABS_VOICE_ID", "21m00Tcm4TlvDq8ikWAM"),
        elevenlabs_model=os.getenv("ELEVENLABS_MODEL", "eleven_turbo_v2_5"),
        assemblyai_api_key=os.getenv("ASSEMBLYAI_API_KEY", ""),
        deepgram_tts_model=os.getenv("DEEPGRAM_TTS_MODEL", "aura-2-thalia-en"),
        validate_models=_get_bool("VALIDATE_MODELS", False),

        # Audio / VAD
        sample_rate=_get_int("SAMPLE_RATE", 16000),
        vad_threshold=_get_float("VAD_THRESHOLD", 0.02),
        vad_min_speech_ms=_get_int("VAD_MIN_SPEECH_MS", 200),
        vad_min_silence_ms=_get_int("VAD_MIN_SILENCE_MS", 700),
        vad_window_frames=_get_int("VAD_WINDOW_FRAMES", 3),
        preroll_ms=_get_int("PREROLL_MS", 300),

        # Turn handling
        busy_policy=_get_choice("BUSY_POLICY", "interrupt"),
        max_tool_calls=_get_int("MAX_TOOL_CALLS", 5),
        sentence_max_chars=_get_int("SENTENCE_MAX_CHARS", 200),
        tts_queue_size=_get_int("TTS_QUEUE_SIZE", 2),
        provider_timeout_s=_get_float("PROVIDER_TIMEOUT_S", 15.0),
        tool_timeout_s=_get_float("TOOL_TIMEOUT_S", 10.0),
        max_consecutive_failures=_get_int("MAX_CONSECUTIVE_FAILURES", 3),

        # Session
        max_history_messages=_get_int("MAX_HISTORY_MESSAGES", 40),
        event_queue_size=_get_int("EVENT_QUEUE_SIZE", 256),
        system_prompt=os.getenv("SYSTEM_PROMPT", DEFAULT_SYSTEM_PROMPT),
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
