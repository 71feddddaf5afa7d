"""
Configuration Management for narration-ms.

This module provides centralized configuration handling with:
    - Default values (Defaults class)
    - Dataclass-based configuration objects
    - YAML file loading with environment variable overrides
    - Validation with meaningful error messages
    - Clamping for the runtime-mutable audio settings

Configuration Hierarchy (highest priority first):
    1. Environment variables (AWS_ACCESS_KEY_ID, AWS_REGION, NARRATION_MS_VOICE, ...)
    2. YAML config file (config/settings.yaml)
    3. Defaults class values

Example settings.yaml:
    polly:
      region: eu-west-1
      voice_id: Matthew
      engine: neural

    audio:
      max_concurrent_audio: 3
      default_volume: 0.7

    logging:
      level: 2  # NORMAL
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping
import math
import os
import yaml


class ConfigValidationError(Exception):
    """
    Raised when configuration validation fails.

    Structural values (timeouts, read bounds, thresholds) outside their
    bounds raise this. Audio settings are clamped instead, but a
    non-numeric or non-finite audio value still raises.
    """
    pass


class Defaults:
    """
    Centralized default configuration values.

    Sections:
        - Polly: Remote synthesis endpoint and voice
        - Synthesis: Request timeout and text limit
        - Stream: Response body read bounds
        - Circuit: Failure breaker threshold and cooldown
        - Audio: Runtime-mutable playback settings (clamped)
        - Autoplay: Gesture wait window
        - Logging: Log level and previews
    """

    # ─────────────────────────────────────────────────────────────────────────
    # Polly
    # ─────────────────────────────────────────────────────────────────────────
    POLLY_REGION = "us-east-1"          # Fallback when region is blank
    POLLY_VOICE_ID = "Matthew"
    POLLY_OUTPUT_FORMAT = "mp3"
    POLLY_ENGINE = "neural"

    # ─────────────────────────────────────────────────────────────────────────
    # Synthesis
    # ─────────────────────────────────────────────────────────────────────────
    SYNTHESIS_TIMEOUT_S = 10.0          # Remote call deadline
    SYNTHESIS_MAX_TEXT_LENGTH = 3000    # Longer text is truncated

    # ─────────────────────────────────────────────────────────────────────────
    # Stream assembly
    # ─────────────────────────────────────────────────────────────────────────
    STREAM_MAX_READS = 1000             # Guard against unterminated bodies
    STREAM_CHUNK_BYTES = 8192

    # ─────────────────────────────────────────────────────────────────────────
    # Circuit breaker
    # ─────────────────────────────────────────────────────────────────────────
    CIRCUIT_FAILURE_THRESHOLD = 5
    CIRCUIT_COOLDOWN_MS = 300_000       # 5 minutes

    # ─────────────────────────────────────────────────────────────────────────
    # Audio settings (mutable at runtime)
    # ─────────────────────────────────────────────────────────────────────────
    AUDIO_MAX_CONCURRENT = 3
    AUDIO_DEFAULT_VOLUME = 0.7
    AUDIO_FADE_OUT_MS = 500
    AUDIO_QUEUE_DELAY_MS = 100
    AUDIO_FADE_STEPS = 20

    # ─────────────────────────────────────────────────────────────────────────
    # Autoplay recovery
    # ─────────────────────────────────────────────────────────────────────────
    AUTOPLAY_GESTURE_TIMEOUT_S = 30.0

    # ─────────────────────────────────────────────────────────────────────────
    # Logging
    # ─────────────────────────────────────────────────────────────────────────
    LOGGING_TEXT_PREVIEW_CHARS = 50
    LOGGING_LEVEL = 2                   # 1=MINIMAL, 2=NORMAL, 3=VERBOSE, 4=DEBUG


# (min, max) for each clamped audio setting; None means unbounded
AUDIO_BOUNDS: Dict[str, tuple] = {
    "max_concurrent_audio": (1, 10),
    "default_volume": (0.0, 1.0),
    "fade_out_duration_ms": (0, 5000),
    "queue_processing_delay_ms": (0, None),
}


def clamp_audio_value(name: str, value: Any) -> int | float:
    """
    Clamp one audio setting into its allowed range.

    Raises:
        ConfigValidationError: Unknown setting name, or a non-numeric or
            non-finite value.
    """
    if name not in AUDIO_BOUNDS:
        raise ConfigValidationError(f"unknown audio setting: {name}")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        try:
            value = float(value)
        except (TypeError, ValueError):
            raise ConfigValidationError(f"audio.{name} must be a number, got {value!r}") from None
    if not math.isfinite(value):
        raise ConfigValidationError(f"audio.{name} must be finite, got {value!r}")

    lo, hi = AUDIO_BOUNDS[name]
    if value < lo:
        value = lo
    if hi is not None and value > hi:
        value = hi

    if name == "default_volume":
        return float(value)
    return int(value)


@dataclass
class PollyConfig:
    """
    Remote synthesis configuration.

    Credentials are mandatory; a blank region falls back to us-east-1.
    """
    region: str = Defaults.POLLY_REGION
    voice_id: str = Defaults.POLLY_VOICE_ID
    output_format: str = Defaults.POLLY_OUTPUT_FORMAT
    engine: str = Defaults.POLLY_ENGINE
    access_key_id: str = ""
    secret_access_key: str = field(default="", repr=False)

    @property
    def credentials_configured(self) -> bool:
        return bool(self.access_key_id.strip() and self.secret_access_key.strip())


@dataclass
class SynthesisConfig:
    timeout_s: float = Defaults.SYNTHESIS_TIMEOUT_S
    max_text_length: int = Defaults.SYNTHESIS_MAX_TEXT_LENGTH


@dataclass
class StreamConfig:
    max_reads: int = Defaults.STREAM_MAX_READS
    chunk_bytes: int = Defaults.STREAM_CHUNK_BYTES


@dataclass
class CircuitConfig:
    failure_threshold: int = Defaults.CIRCUIT_FAILURE_THRESHOLD
    cooldown_ms: int = Defaults.CIRCUIT_COOLDOWN_MS


@dataclass
class AudioSettings:
    """
    Playback settings, mutable at runtime and clamped on every write.

        max_concurrent_audio      in [1, 10]    caps the active set
        default_volume            in [0, 1]     base volume for new resources
        fade_out_duration_ms      in [0, 5000]  eviction ramp length
        queue_processing_delay_ms >= 0          drain pacing and reschedule base
    """
    max_concurrent_audio: int = Defaults.AUDIO_MAX_CONCURRENT
    default_volume: float = Defaults.AUDIO_DEFAULT_VOLUME
    fade_out_duration_ms: int = Defaults.AUDIO_FADE_OUT_MS
    queue_processing_delay_ms: int = Defaults.AUDIO_QUEUE_DELAY_MS

    def __setattr__(self, name: str, value: Any) -> None:
        if name in AUDIO_BOUNDS:
            value = clamp_audio_value(name, value)
        object.__setattr__(self, name, value)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "AudioSettings":
        known = {k: v for k, v in raw.items() if k in AUDIO_BOUNDS}
        return cls(**known)

    def update(self, **partial: Any) -> Dict[str, Any]:
        """
        Apply a partial update, clamping each value.

        Unknown keys and non-numeric or non-finite values are rejected
        before anything is written.

        Returns:
            The settings that actually changed, with their new values.
        """
        unknown = sorted(set(partial) - set(AUDIO_BOUNDS))
        if unknown:
            raise ConfigValidationError(f"unknown audio setting(s): {', '.join(unknown)}")

        clamped = {
            name: clamp_audio_value(name, value)
            for name, value in partial.items()
            if value is not None
        }

        changed: Dict[str, Any] = {}
        for name, value in clamped.items():
            before = getattr(self, name)
            setattr(self, name, value)
            after = getattr(self, name)
            if after != before:
                changed[name] = after
        return changed

    @property
    def queue_delay_s(self) -> float:
        return self.queue_processing_delay_ms / 1000.0

    @property
    def fade_out_s(self) -> float:
        return self.fade_out_duration_ms / 1000.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AutoplayConfig:
    gesture_timeout_s: float = Defaults.AUTOPLAY_GESTURE_TIMEOUT_S


@dataclass
class LoggingConfig:
    """
    Logging configuration.

    Log levels:
        1 = MINIMAL: Startup, shutdown, breaker and client state
        2 = NORMAL: Request lifecycle, queue and playback (default)
        3 = VERBOSE: Stream reads, fade steps, drain pacing
        4 = DEBUG: Internal state
    """
    text_preview_chars: int = Defaults.LOGGING_TEXT_PREVIEW_CHARS
    level: int = Defaults.LOGGING_LEVEL


@dataclass
class NarrationConfig:
    """
    Validated configuration for NarrationManager.

    Usage:
        settings = load_settings("config/settings.yaml")
        config = NarrationConfig.from_settings(settings)
        print(config.audio.max_concurrent_audio)
    """
    polly: PollyConfig = field(default_factory=PollyConfig)
    synthesis: SynthesisConfig = field(default_factory=SynthesisConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)
    circuit: CircuitConfig = field(default_factory=CircuitConfig)
    audio: AudioSettings = field(default_factory=AudioSettings)
    autoplay: AutoplayConfig = field(default_factory=AutoplayConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_settings(cls, settings: "Settings") -> "NarrationConfig":
        """
        Create NarrationConfig from Settings with validation.

        Raises:
            ConfigValidationError: If any structural value fails validation.
        """
        raw = settings.raw

        # ─────────────────────────────────────────────────────────────────────
        # Polly
        # ─────────────────────────────────────────────────────────────────────
        polly_raw = raw.get("polly", {}) or {}
        polly = PollyConfig(
            region=str(polly_raw.get("region") or "").strip(),
            voice_id=str(polly_raw.get("voice_id", Defaults.POLLY_VOICE_ID)),
            output_format=str(polly_raw.get("output_format", Defaults.POLLY_OUTPUT_FORMAT)),
            engine=str(polly_raw.get("engine", Defaults.POLLY_ENGINE)),
            access_key_id=str(polly_raw.get("access_key_id") or ""),
            secret_access_key=str(polly_raw.get("secret_access_key") or ""),
        )
        if not polly.voice_id:
            raise ConfigValidationError("polly.voice_id must not be empty")

        # ─────────────────────────────────────────────────────────────────────
        # Synthesis
        # ─────────────────────────────────────────────────────────────────────
        synthesis_raw = raw.get("synthesis", {}) or {}
        synthesis = SynthesisConfig(
            timeout_s=float(synthesis_raw.get("timeout_s", Defaults.SYNTHESIS_TIMEOUT_S)),
            max_text_length=int(synthesis_raw.get("max_text_length", Defaults.SYNTHESIS_MAX_TEXT_LENGTH)),
        )
        cls._validate_positive("synthesis.timeout_s", synthesis.timeout_s)
        cls._validate_positive("synthesis.max_text_length", synthesis.max_text_length)

        # ─────────────────────────────────────────────────────────────────────
        # Stream
        # ─────────────────────────────────────────────────────────────────────
        stream_raw = raw.get("stream", {}) or {}
        stream = StreamConfig(
            max_reads=int(stream_raw.get("max_reads", Defaults.STREAM_MAX_READS)),
            chunk_bytes=int(stream_raw.get("chunk_bytes", Defaults.STREAM_CHUNK_BYTES)),
        )
        cls._validate_positive("stream.max_reads", stream.max_reads)
        cls._validate_positive("stream.chunk_bytes", stream.chunk_bytes)

        # ─────────────────────────────────────────────────────────────────────
        # Circuit breaker
        # ─────────────────────────────────────────────────────────────────────
        circuit_raw = raw.get("circuit", {}) or {}
        circuit = CircuitConfig(
            failure_threshold=int(circuit_raw.get("failure_threshold", Defaults.CIRCUIT_FAILURE_THRESHOLD)),
            cooldown_ms=int(circuit_raw.get("cooldown_ms", Defaults.CIRCUIT_COOLDOWN_MS)),
        )
        cls._validate_positive("circuit.failure_threshold", circuit.failure_threshold)
        cls._validate_non_negative("circuit.cooldown_ms", circuit.cooldown_ms)

        # ─────────────────────────────────────────────────────────────────────
        # Audio (clamped, never rejected)
        # ─────────────────────────────────────────────────────────────────────
        audio = AudioSettings.from_mapping(raw.get("audio", {}) or {})

        # ─────────────────────────────────────────────────────────────────────
        # Autoplay
        # ─────────────────────────────────────────────────────────────────────
        autoplay_raw = raw.get("autoplay", {}) or {}
        autoplay = AutoplayConfig(
            gesture_timeout_s=float(autoplay_raw.get("gesture_timeout_s", Defaults.AUTOPLAY_GESTURE_TIMEOUT_S)),
        )
        cls._validate_positive("autoplay.gesture_timeout_s", autoplay.gesture_timeout_s)

        # ─────────────────────────────────────────────────────────────────────
        # Logging
        # ─────────────────────────────────────────────────────────────────────
        logging_raw = raw.get("logging", {}) or {}
        log_level_raw = logging_raw.get("level", Defaults.LOGGING_LEVEL)

        # Handle string log levels (e.g., "INFO", "DEBUG")
        if isinstance(log_level_raw, str):
            level_map = {
                "MINIMAL": 1, "1": 1,
                "NORMAL": 2, "INFO": 2, "2": 2,
                "VERBOSE": 3, "3": 3,
                "DEBUG": 4, "TRACE": 4, "4": 4,
            }
            log_level = level_map.get(log_level_raw.upper(), Defaults.LOGGING_LEVEL)
        else:
            log_level = int(log_level_raw)

        logging_cfg = LoggingConfig(
            text_preview_chars=int(logging_raw.get("text_preview_chars", Defaults.LOGGING_TEXT_PREVIEW_CHARS)),
            level=log_level,
        )
        cls._validate_non_negative("logging.text_preview_chars", logging_cfg.text_preview_chars)
        cls._validate_range("logging.level", logging_cfg.level, 1, 4)

        return cls(
            polly=polly,
            synthesis=synthesis,
            stream=stream,
            circuit=circuit,
            audio=audio,
            autoplay=autoplay,
            logging=logging_cfg,
        )

    @staticmethod
    def _validate_positive(name: str, value: int | float) -> None:
        """Validate that a value is positive (> 0)."""
        if value <= 0:
            raise ConfigValidationError(f"{name} must be positive, got {value}")

    @staticmethod
    def _validate_non_negative(name: str, value: int | float) -> None:
        """Validate that a value is non-negative (>= 0)."""
        if value < 0:
            raise ConfigValidationError(f"{name} must be non-negative, got {value}")

    @staticmethod
    def _validate_range(name: str, value: int | float, min_val: int | float, max_val: int | float) -> None:
        """Validate that a value is within a range [min_val, max_val]."""
        if not (min_val <= value <= max_val):
            raise ConfigValidationError(f"{name} must be between {min_val} and {max_val}, got {value}")


@dataclass(frozen=True)
class Settings:
    """
    Immutable settings container loaded from YAML.

    This is the raw settings object before validation. Use
    get_config() to get a validated NarrationConfig.
    """
    raw: Dict[str, Any]

    @property
    def region(self) -> str:
        return str((self.raw.get("polly", {}) or {}).get("region") or "")

    @property
    def voice_id(self) -> str:
        return str((self.raw.get("polly", {}) or {}).get("voice_id", Defaults.POLLY_VOICE_ID))

    def get_config(self) -> NarrationConfig:
        """
        Get validated NarrationConfig from these settings.

        Raises:
            ConfigValidationError: If validation fails.
        """
        return NarrationConfig.from_settings(self)


def apply_env_overrides(raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Overlay credential, region and voice environment variables onto raw config.

    Environment variable overrides:
        - AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY: polly credentials
        - AWS_REGION (or AWS_DEFAULT_REGION): polly.region
        - NARRATION_MS_VOICE: polly.voice_id
    """
    polly = raw.setdefault("polly", {})
    if polly is None:
        polly = raw["polly"] = {}

    env_map = {
        "access_key_id": os.getenv("AWS_ACCESS_KEY_ID"),
        "secret_access_key": os.getenv("AWS_SECRET_ACCESS_KEY"),
        "region": os.getenv("AWS_REGION") or os.getenv("AWS_DEFAULT_REGION"),
        "voice_id": os.getenv("NARRATION_MS_VOICE"),
    }
    for key, value in env_map.items():
        if value:
            polly[key] = value
    return raw


def load_settings(path: str = "config/settings.yaml") -> Settings:
    """
    Load settings from a YAML configuration file.

    Raises:
        FileNotFoundError: If the settings file doesn't exist.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"settings file not found: {p.resolve()}")

    with p.open("r", encoding="utf-8") as f:
        raw: Dict[str, Any] = yaml.safe_load(f) or {}

    return Settings(raw=apply_env_overrides(raw))
