"""
Configuration management for the Twilio <-> Realtime voice bridge.

Loads environment variables and provides a strongly-typed configuration object.
The object is built once at startup and handed to every call; nothing in the
per-call core reads the environment directly.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

from src.bridge.audio import FRAME_DURATION_MS, PROTOCOL_MIN_COMMIT_MS, duration_ms_to_bytes

load_dotenv()

logger = structlog.get_logger(__name__)

REPLY_MODES = ("engine", "local_first")


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class BridgeConfig:
    """Strongly-typed configuration object."""

    # Server
    public_host: str
    port: int = 8080
    log_level: str = "INFO"
    stream_path: str = "/call"
    twiml_pause_seconds: int = 600

    # OpenAI Realtime
    openai_api_key: str = ""
    openai_realtime_url: str = "wss://api.openai.com/v1/realtime"
    openai_realtime_model: str = "gpt-4o-realtime-preview-2024-12-17"
    openai_realtime_voice: str = "shimmer"
    openai_transcription_model: str = "gpt-4o-mini-transcribe"
    transcription_language: str = "en"
    input_audio_format: str = "g711_ulaw"
    output_audio_format: str = "g711_ulaw"
    connect_timeout_seconds: float = 10.0

    # OpenAI TTS (local fallback replies only)
    openai_tts_model: str = "gpt-4o-mini-tts"
    openai_tts_voice: str = "shimmer"

    # Persona
    agent_name: str = "Anna"
    persona_instructions: str = ""
    persona_instructions_file: str = ""
    greeting_enabled: bool = True
    greeting_text: str = "Hi, this is {AGENT_NAME}. How can I help you right now?"

    # Voice activity detection
    vad_energy_threshold: float = 12.0
    vad_hangover_ms: int = 300
    vad_calibration_ms: int = 0
    vad_calibration_offset: float = 6.0

    # Turn-taking / commit gate
    silence_duration_ms: int = 700
    max_turn_ms: int = 8000
    preroll_ms: int = 200
    min_commit_bytes: int = 1600
    commit_cooldown_ms: int = 300
    commit_ack_timeout_ms: int = 2000
    empty_commit_backoff_ms: int = 1500
    trickle_enabled: bool = True
    trickle_interval_ms: int = 400
    trickle_min_bytes: int = 1600
    scheduler_interval_ms: int = 50

    # Playback pacing
    playback_frame_ms: int = 20
    prebuffer_frames: int = 6
    high_water_frames: int = 25
    max_burst_frames: int = 3
    max_queue_frames: int = 500

    # Anti-repetition / replies
    reply_cooldown_ms: int = 8000
    heard_check_cooldown_ms: int = 8000
    reply_mode: str = "engine"  # "engine" | "local_first"
    greet_on_hello: bool = False  # local_first only: answer a bare "hello" once

    # Barge-in
    barge_in_enabled: bool = True
    barge_in_frames: int = 10

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL Twilio should stream to."""
        return f"wss://{self.public_host}{self.stream_path}"

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL."""
        return f"https://{self.public_host}"

    @property
    def realtime_ws_url(self) -> str:
        """Full Realtime endpoint including the model query parameter."""
        return f"{self.openai_realtime_url}?model={self.openai_realtime_model}"

    def validate(self) -> None:
        """Validate that all required configuration is present and consistent."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if not self.openai_realtime_model:
            missing.append("OPENAI_REALTIME_MODEL")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

        if self.reply_mode not in REPLY_MODES:
            raise ConfigError(
                f"Invalid REPLY_MODE '{self.reply_mode}'. Expected one of: {', '.join(REPLY_MODES)}."
            )

        protocol_min_bytes = duration_ms_to_bytes(PROTOCOL_MIN_COMMIT_MS)
        if self.min_commit_bytes < protocol_min_bytes:
            raise ConfigError(
                f"MIN_COMMIT_BYTES must be at least {protocol_min_bytes} "
                f"({PROTOCOL_MIN_COMMIT_MS}ms of audio)."
            )

        if self.max_burst_frames < 1:
            raise ConfigError("PLAYBACK_MAX_BURST_FRAMES must be >= 1.")
        if self.prebuffer_frames > self.max_queue_frames:
            raise ConfigError("PLAYBACK_PREBUFFER_FRAMES cannot exceed PLAYBACK_MAX_QUEUE_FRAMES.")
        if self.high_water_frames >= self.max_queue_frames:
            raise ConfigError("PLAYBACK_HIGH_WATER_FRAMES must be below PLAYBACK_MAX_QUEUE_FRAMES.")
        # Outbound frames are always 160 bytes; the pacing interval must match them.
        if self.playback_frame_ms != FRAME_DURATION_MS:
            raise ConfigError(f"PLAYBACK_FRAME_MS must be {FRAME_DURATION_MS} (one Twilio frame).")
        if self.scheduler_interval_ms <= 0:
            raise ConfigError("SCHEDULER_INTERVAL_MS must be positive.")

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            stream_path=self.stream_path,
            realtime_model=self.openai_realtime_model,
            realtime_voice=self.openai_realtime_voice,
            transcription_model=self.openai_transcription_model,
            agent_name=self.agent_name,
            reply_mode=self.reply_mode,
            greet_on_hello=self.greet_on_hello,
            vad_energy_threshold=self.vad_energy_threshold,
            vad_calibration_ms=self.vad_calibration_ms,
            silence_duration_ms=self.silence_duration_ms,
            max_turn_ms=self.max_turn_ms,
            min_commit_bytes=self.min_commit_bytes,
            commit_cooldown_ms=self.commit_cooldown_ms,
            empty_commit_backoff_ms=self.empty_commit_backoff_ms,
            trickle_enabled=self.trickle_enabled,
            prebuffer_frames=self.prebuffer_frames,
            max_queue_frames=self.max_queue_frames,
            barge_in_enabled=self.barge_in_enabled,
            openai_key_set=bool(self.openai_api_key),
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
def get_config() -> BridgeConfig:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    stream_path = os.getenv("TWILIO_STREAM_PATH", "/call").strip() or "/call"
    if not stream_path.startswith("/"):
        stream_path = "/" + stream_path

    return BridgeConfig(
        # Server
        public_host=os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 8080),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        stream_path=stream_path,
        twiml_pause_seconds=_get_int("TWIML_PAUSE_LEN", 600),

        # OpenAI Realtime
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_realtime_url=os.getenv("OPENAI_REALTIME_URL", "wss://api.openai.com/v1/realtime"),
        openai_realtime_model=os.getenv("OPENAI_REALTIME_MODEL", "gpt-4o-realtime-preview-2024-12-17"),
        openai_realtime_voice=os.getenv("OPENAI_REALTIME_VOICE", "shimmer"),
        openai_transcription_model=os.getenv("OPENAI_TRANSCRIPTION_MODEL", "gpt-4o-mini-transcribe"),
        transcription_language=os.getenv("TRANSCRIPTION_LANGUAGE", "en"),
        input_audio_format=os.getenv("INPUT_AUDIO_FORMAT", "g711_ulaw"),
        output_audio_format=os.getenv("OUTPUT_AUDIO_FORMAT", "g711_ulaw"),
        connect_timeout_seconds=_get_float("OPENAI_CONNECT_TIMEOUT_SECONDS", 10.0),

        # OpenAI TTS
        openai_tts_model=os.getenv("OPENAI_TTS_MODEL", "gpt-4o-mini-tts"),
        openai_tts_voice=os.getenv("OPENAI_TTS_VOICE", "shimmer"),

        # Persona
        agent_name=os.getenv("AGENT_NAME", "Anna"),
        persona_instructions=os.getenv("PERSONA_INSTRUCTIONS", ""),
        persona_instructions_file=os.getenv("PERSONA_INSTRUCTIONS_FILE", ""),
        greeting_enabled=_get_bool("GREETING_ENABLED", True),
        greeting_text=os.getenv(
            "GREETING_TEXT", "Hi, this is {AGENT_NAME}. How can I help you right now?"
        ),

        # VAD
        vad_energy_threshold=_get_float("VAD_ENERGY_THRESHOLD", 12.0),
        vad_hangover_ms=_get_int("VAD_HANGOVER_MS", 300),
        vad_calibration_ms=_get_int("VAD_CALIBRATION_MS", 0),
        vad_calibration_offset=_get_float("VAD_CALIBRATION_OFFSET", 6.0),

        # Turn-taking
        silence_duration_ms=_get_int("SILENCE_DURATION_MS", 700),
        max_turn_ms=_get_int("MAX_TURN_MS", 8000),
        preroll_ms=_get_int("PREROLL_MS", 200),
        min_commit_bytes=_get_int("MIN_COMMIT_BYTES", 1600),
        commit_cooldown_ms=_get_int("COMMIT_COOLDOWN_MS", 300),
        commit_ack_timeout_ms=_get_int("COMMIT_ACK_TIMEOUT_MS", 2000),
        empty_commit_backoff_ms=_get_int("EMPTY_COMMIT_BACKOFF_MS", 1500),
        trickle_enabled=_get_bool("TRICKLE_ENABLED", True),
        trickle_interval_ms=_get_int("TRICKLE_INTERVAL_MS", 400),
        trickle_min_bytes=_get_int("TRICKLE_MIN_BYTES", 1600),
        scheduler_interval_ms=_get_int("SCHEDULER_INTERVAL_MS", 50),

        # Playback
        playback_frame_ms=_get_int("PLAYBACK_FRAME_MS", 20),
        prebuffer_frames=_get_int("PLAYBACK_PREBUFFER_FRAMES", 6),
        high_water_frames=_get_int("PLAYBACK_HIGH_WATER_FRAMES", 25),
        max_burst_frames=_get_int("PLAYBACK_MAX_BURST_FRAMES", 3),
        max_queue_frames=_get_int("PLAYBACK_MAX_QUEUE_FRAMES", 500),

        # Replies
        reply_cooldown_ms=_get_int("REPLY_COOLDOWN_MS", 8000),
        heard_check_cooldown_ms=_get_int("HEARD_CHECK_COOLDOWN_MS", 8000),
        reply_mode=os.getenv("REPLY_MODE", "engine").strip().lower(),
        greet_on_hello=_get_bool("GREET_ON_HELLO", False),

        # Barge-in
        barge_in_enabled=_get_bool("BARGE_IN_ENABLED", True),
        barge_in_frames=_get_int("BARGE_IN_FRAMES", 10),
    )


def init_config() -> BridgeConfig:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
