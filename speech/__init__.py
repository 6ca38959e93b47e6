"""
speech/__init__.py — voiceturn speech synthesis
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from speech.chain import (
    LocalTier,
    ServiceTier,
    SilenceTier,
    SynthesisChain,
    SynthesisOutcome,
    SynthesisResult,
    SynthesisTier,
)
from speech.synthesizer import BaseLocalSynthesizer, BaseSynthesizer, silent_audio
from speech.voices import PERSONA_VOICES, PersonaVoice, voice_for
from observability.logger import get_logger

if TYPE_CHECKING:
    from config.settings import Settings

__all__ = [
    "build_synthesis_chain",
    "SynthesisChain",
    "SynthesisOutcome",
    "SynthesisResult",
    "SynthesisTier",
    "ServiceTier",
    "LocalTier",
    "SilenceTier",
    "BaseSynthesizer",
    "BaseLocalSynthesizer",
    "silent_audio",
    "PERSONA_VOICES",
    "PersonaVoice",
    "voice_for",
]

log = get_logger(__name__)


def build_synthesis_chain(settings: "Settings") -> SynthesisChain:
    """
    Assemble the tier list from settings. Each session gets its own chain,
    so the service tier's failure circuit is session-scoped.
    """
    cfg = settings.synthesis
    tiers: list[SynthesisTier] = []

    if cfg.provider == "elevenlabs" and settings.elevenlabs_api_key:
        from speech.elevenlabs import ElevenLabsSynthesizer
        tiers.append(ServiceTier(
            ElevenLabsSynthesizer(
                api_key=settings.elevenlabs_api_key,
                base_url=cfg.base_url,
                model_id=cfg.model_id,
                stability=cfg.stability,
                similarity_boost=cfg.similarity_boost,
                style=cfg.style,
                use_speaker_boost=cfg.use_speaker_boost,
                timeout_seconds=cfg.timeout_seconds,
            ),
            timeout_seconds=cfg.timeout_seconds,
            min_audio_bytes=cfg.min_audio_bytes,
            max_consecutive_failures=cfg.max_consecutive_failures,
            chunk_chars=cfg.chunk_chars,
        ))
    elif cfg.provider == "elevenlabs":
        log.warning("synthesis.no_api_key", provider="elevenlabs", fallback="local")

    if cfg.piper_model_path:
        from speech.piper import PiperSynthesizer
        tiers.append(LocalTier(PiperSynthesizer(cfg.piper_model_path)))

    tiers.append(SilenceTier())
    return SynthesisChain(tiers)
