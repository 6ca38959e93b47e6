"""
speech/voices.py — Persona → voice table

Each tutor persona maps to an ElevenLabs voice id and a speaking rate
used by the local synthesizer.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class PersonaVoice:
    persona: str
    voice_id: str
    rate: float = 1.0


PERSONA_VOICES: dict[str, PersonaVoice] = {
    "encouraging-emma":   PersonaVoice("encouraging-emma",   "EXAVITQu4vr4xnSDxMaL", rate=0.9),
    "challenge-charlie":  PersonaVoice("challenge-charlie",  "VR6AewLTigWG4xSOukaG", rate=1.1),
    "fun-freddy":         PersonaVoice("fun-freddy",         "pNInz6obpgDQGcFmaJgB", rate=1.2),
    "professor-patricia": PersonaVoice("professor-patricia", "ThT5KcBeYPX3keUQqHPh", rate=0.85),
    "buddy-ben":          PersonaVoice("buddy-ben",          "yoZ06aMxZJJ28mfd3POQ", rate=1.0),
}

DEFAULT_PERSONA = "encouraging-emma"


def voice_for(persona: str) -> PersonaVoice:
    """Voice for `persona`, falling back to the default persona's voice."""
    return PERSONA_VOICES.get(persona, PERSONA_VOICES[DEFAULT_PERSONA])
