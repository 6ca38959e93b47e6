"""
config/settings.py — voiceturn Runtime Settings

Merges config.yaml (defaults/structure) with .env (secrets).
Pydantic-powered — all fields are validated and typed.

  - VoiceConfig is immutable; a session swaps in a new copy whenever a
    caller changes a setting
  - Range validators reject bad values at parse time; the runtime setters
    on ConversationSession clamp instead (see clamp_silence_threshold)
  - validate_all() performs full startup validation and raises ConfigError
    with a clear, human-readable message listing every problem found
  - load_settings() respects VOICETURN_CONFIG env var as a fallback
    when no explicit config_path argument is given
"""

from __future__ import annotations

import os
import threading as _threading
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from brain.prompts import DIFFICULTY_GUIDELINES
from speech.voices import PERSONA_VOICES


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(Exception):
    """Raised by validate_all() when one or more config problems are found."""


# ─────────────────────────────────────────────────────────────────────────────
# Bounds
# ─────────────────────────────────────────────────────────────────────────────

SILENCE_THRESHOLD_MIN_MS = 300
SILENCE_THRESHOLD_MAX_MS = 2000
MUTE_DELAY_MIN_MS = 200
MUTE_DELAY_MAX_MS = 1000

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_VALID_RESPONDERS = {"groq", "openai", "offline"}
_VALID_SYNTHESIZERS = {"elevenlabs", "none"}


def clamp_silence_threshold(ms: int) -> int:
    return max(SILENCE_THRESHOLD_MIN_MS, min(SILENCE_THRESHOLD_MAX_MS, int(ms)))


def clamp_mute_delay(ms: int) -> int:
    return max(MUTE_DELAY_MIN_MS, min(MUTE_DELAY_MAX_MS, int(ms)))


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class VoiceConfig(BaseModel):
    """Turn-taking timings and capture options for one session."""

    model_config = ConfigDict(frozen=True)

    silence_threshold_ms: int = 600
    noise_threshold_chars: int = 3
    post_speech_mute_delay_ms: int = 500
    feedback_prevention_enabled: bool = True
    recognition_language: str = "en-US"
    continuous: bool = True
    interim_results: bool = True
    final_debounce_ms: int = 500
    capture_restart_delay_ms: int = 300
    gain_ramp_ms: int = 100
    max_input_chars: int = 2000
    visualization_interval_ms: int = 16
    output_volume: float = 0.8

    @field_validator("silence_threshold_ms")
    @classmethod
    def _silence_in_range(cls, v: int) -> int:
        if not (SILENCE_THRESHOLD_MIN_MS <= v <= SILENCE_THRESHOLD_MAX_MS):
            raise ValueError(
                f"voice.silence_threshold_ms must be between "
                f"{SILENCE_THRESHOLD_MIN_MS} and {SILENCE_THRESHOLD_MAX_MS}, got {v}"
            )
        return v

    @field_validator("post_speech_mute_delay_ms")
    @classmethod
    def _mute_delay_in_range(cls, v: int) -> int:
        if not (MUTE_DELAY_MIN_MS <= v <= MUTE_DELAY_MAX_MS):
            raise ValueError(
                f"voice.post_speech_mute_delay_ms must be between "
                f"{MUTE_DELAY_MIN_MS} and {MUTE_DELAY_MAX_MS}, got {v}"
            )
        return v

    @field_validator("noise_threshold_chars")
    @classmethod
    def _non_negative_noise(cls, v: int) -> int:
        if v < 0:
            raise ValueError("voice.noise_threshold_chars must be >= 0")
        return v

    @field_validator("final_debounce_ms", "capture_restart_delay_ms", "gain_ramp_ms")
    @classmethod
    def _non_negative_delay(cls, v: int) -> int:
        if v < 0:
            raise ValueError("voice timing values must be >= 0")
        return v

    @field_validator("visualization_interval_ms", "max_input_chars")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("voice.visualization_interval_ms and voice.max_input_chars must be >= 1")
        return v

    @field_validator("output_volume")
    @classmethod
    def _valid_volume(cls, v: float) -> float:
        if not (0.0 <= v <= 1.0):
            raise ValueError("voice.output_volume must be between 0.0 and 1.0")
        return v

    @field_validator("recognition_language")
    @classmethod
    def _non_empty_language(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("voice.recognition_language must not be empty")
        return v.strip()


class ResponderConfig(BaseModel):
    provider: str = "groq"
    model: str = "llama-3.3-70b-versatile"
    base_url: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 1024
    timeout_seconds: float = 30.0
    history_window: int = 10
    history_max: int = 20
    study_mode: bool = False

    @field_validator("provider")
    @classmethod
    def _known_provider(cls, v: str) -> str:
        if v not in _VALID_RESPONDERS:
            raise ValueError(
                f"responder.provider '{v}' is not supported. "
                f"Supported: {sorted(_VALID_RESPONDERS)}"
            )
        return v

    @field_validator("temperature")
    @classmethod
    def _valid_temperature(cls, v: float) -> float:
        if not (0.0 <= v <= 2.0):
            raise ValueError("responder.temperature must be between 0.0 and 2.0")
        return v

    @field_validator("max_tokens", "history_window", "history_max")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("responder.max_tokens, history_window and history_max must be >= 1")
        return v

    @field_validator("timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("responder.timeout_seconds must be > 0")
        return v

    @property
    def resolved_base_url(self) -> Optional[str]:
        if self.base_url:
            return self.base_url
        if self.provider == "groq":
            return "https://api.groq.com/openai/v1"
        return None


class SynthesisConfig(BaseModel):
    provider: str = "elevenlabs"
    base_url: str = "https://api.elevenlabs.io/v1"
    model_id: str = "eleven_monolingual_v1"
    stability: float = 0.5
    similarity_boost: float = 0.75
    style: float = 0.5
    use_speaker_boost: bool = True
    timeout_seconds: float = 15.0
    min_audio_bytes: int = 1000
    max_consecutive_failures: int = 3
    chunk_chars: int = 300
    piper_model_path: str = ""

    @field_validator("provider")
    @classmethod
    def _known_provider(cls, v: str) -> str:
        if v not in _VALID_SYNTHESIZERS:
            raise ValueError(
                f"synthesis.provider '{v}' is not supported. "
                f"Supported: {sorted(_VALID_SYNTHESIZERS)}"
            )
        return v

    @field_validator("stability", "similarity_boost", "style")
    @classmethod
    def _unit_interval(cls, v: float) -> float:
        if not (0.0 <= v <= 1.0):
            raise ValueError("synthesis.stability, similarity_boost and style must be between 0.0 and 1.0")
        return v

    @field_validator("max_consecutive_failures", "chunk_chars")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("synthesis.max_consecutive_failures and chunk_chars must be >= 1")
        return v

    @field_validator("timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("synthesis.timeout_seconds must be > 0")
        return v


class PersonaConfig(BaseModel):
    """Who the tutor is, and what it is tutoring, for sessions opened by the CLI."""
    user_id: str = "local_user"
    subject: str = "General Knowledge"
    persona: str = "encouraging-emma"
    difficulty: str = "High School"

    @field_validator("persona")
    @classmethod
    def _known_persona(cls, v: str) -> str:
        if v not in PERSONA_VOICES:
            raise ValueError(
                f"persona.persona '{v}' is unknown. Known: {sorted(PERSONA_VOICES)}"
            )
        return v

    @field_validator("difficulty")
    @classmethod
    def _known_difficulty(cls, v: str) -> str:
        if v not in DIFFICULTY_GUIDELINES:
            raise ValueError(
                f"persona.difficulty '{v}' is unknown. Known: {sorted(DIFFICULTY_GUIDELINES)}"
            )
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 100
    backup_count: int = 5
    console_output: bool = False
    json_format: bool = True

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

class Settings(BaseSettings):
    """
    voiceturn runtime settings.

    Priority (highest to lowest):
      1. Environment variables
      2. .env file
      3. config.yaml
      4. Field defaults
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    # -- Secrets from .env ---------------------------------------------------
    groq_api_key: Optional[str] = Field(default=None, alias="GROQ_API_KEY")
    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")
    elevenlabs_api_key: Optional[str] = Field(default=None, alias="ELEVENLABS_API_KEY")

    # -- Structured config (from config.yaml) --------------------------------
    voice: VoiceConfig = Field(default_factory=VoiceConfig)
    responder: ResponderConfig = Field(default_factory=ResponderConfig)
    synthesis: SynthesisConfig = Field(default_factory=SynthesisConfig)
    persona: PersonaConfig = Field(default_factory=PersonaConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("groq_api_key", "openai_api_key", "elevenlabs_api_key", mode="before")
    @classmethod
    def _blank_key_is_none(cls, v: Any) -> Optional[str]:
        if v in (None, "", "null"):
            return None
        return v

    @field_validator("voice", mode="before")
    @classmethod
    def _coerce_voice(cls, v: Any) -> Any:
        return VoiceConfig(**v) if isinstance(v, dict) else v

    @field_validator("responder", mode="before")
    @classmethod
    def _coerce_responder(cls, v: Any) -> Any:
        return ResponderConfig(**v) if isinstance(v, dict) else v

    @field_validator("synthesis", mode="before")
    @classmethod
    def _coerce_synthesis(cls, v: Any) -> Any:
        return SynthesisConfig(**v) if isinstance(v, dict) else v

    @field_validator("persona", mode="before")
    @classmethod
    def _coerce_persona(cls, v: Any) -> Any:
        return PersonaConfig(**v) if isinstance(v, dict) else v

    @field_validator("logging", mode="before")
    @classmethod
    def _coerce_logging(cls, v: Any) -> Any:
        return LoggingConfig(**v) if isinstance(v, dict) else v

    # -- Convenience properties ----------------------------------------------

    @property
    def responder_api_key(self) -> Optional[str]:
        if self.responder.provider == "groq":
            return self.groq_api_key
        if self.responder.provider == "openai":
            return self.openai_api_key
        return None

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> Path:
        return Path(self.logging.log_dir)

    @property
    def log_json_format(self) -> bool:
        return self.logging.json_format

    @property
    def log_console_output(self) -> bool:
        return self.logging.console_output

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Pydantic field validators catch type/value errors at parse time; this
        method catches cross-field and runtime problems (explicitly chosen
        providers with no key, model files that don't exist, timings that
        can never fire in the intended order).
        """
        errors: list[str] = []

        # ── Responder key ────────────────────────────────────────────────────
        # groq without a key degrades to the offline responder; an explicit
        # openai choice must be backed by a key.
        if self.responder.provider == "openai" and not self.openai_api_key:
            errors.append(
                "responder.provider 'openai' requires OPENAI_API_KEY to be set "
                "in your .env file."
            )

        # ── Piper model path ─────────────────────────────────────────────────
        piper = self.synthesis.piper_model_path
        if piper and not Path(piper).expanduser().exists():
            errors.append(
                f"synthesis.piper_model_path '{piper}' does not exist. "
                f"Download a Piper .onnx voice or clear the setting."
            )

        # ── History window must fit in the retained history ──────────────────
        if self.responder.history_window > self.responder.history_max:
            errors.append(
                f"responder.history_window ({self.responder.history_window}) "
                f"cannot exceed responder.history_max ({self.responder.history_max})."
            )

        # ── Final debounce must beat the silence timer ───────────────────────
        if self.voice.final_debounce_ms > SILENCE_THRESHOLD_MAX_MS:
            errors.append(
                f"voice.final_debounce_ms ({self.voice.final_debounce_ms}) exceeds "
                f"the maximum silence threshold ({SILENCE_THRESHOLD_MAX_MS} ms)."
            )

        # ── Report all errors together ───────────────────────────────────────
        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\nvoiceturn startup failed — {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or your .env file "
                f"and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_singleton: Optional[Settings] = None
_singleton_lock = _threading.RLock()

_KNOWN_SECTIONS = {"voice", "responder", "synthesis", "persona", "logging"}


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument (from --config CLI flag)
      2. VOICETURN_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("VOICETURN_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings by merging config.yaml with environment variables."""
    global _singleton
    yaml_data = _load_yaml(_resolve_config_path(config_path))
    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}

    instance = Settings(**init_kwargs)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """
    Return the global Settings singleton, loading from the default config
    path on first use.
    """
    global _singleton
    if _singleton is not None:
        return _singleton
    with _singleton_lock:
        if _singleton is None:
            load_settings()
        return _singleton  # type: ignore[return-value]
