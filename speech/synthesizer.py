"""
speech/synthesizer.py — Abstract synthesizers + silent placeholder

Two kinds of synthesizer feed the synthesis chain (speech/chain.py):

  - BaseSynthesizer       — a remote service (ElevenLabs); may fail in
                            many ways, all reported as SynthesisError
  - BaseLocalSynthesizer  — an offline engine on this machine (Piper)

silent_audio() is the last resort: a 44-byte WAV header with no samples.
"""

from __future__ import annotations

import struct
from abc import ABC, abstractmethod
from typing import Optional

from speech.voices import PersonaVoice

SILENT_WAV_SAMPLE_RATE = 22050


class BaseSynthesizer(ABC):
    """
    Abstract base for remote speech synthesis services.

    Subclasses must implement:
      - synthesize()   -> encoded audio bytes for `text` in `voice`
      - health_check() -> verify the API key / connectivity
    """

    name: str = "service"

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None):
        self.api_key = api_key
        self.base_url = base_url

    @abstractmethod
    async def synthesize(self, text: str, voice: PersonaVoice) -> bytes:
        """Return encoded audio. Raise a SynthesisError subclass on failure."""
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"


class BaseLocalSynthesizer(ABC):
    """Offline synthesizer. Blocking work must run off the event loop."""

    name: str = "local"

    @abstractmethod
    async def synthesize_locally(self, text: str, voice: PersonaVoice) -> bytes:
        ...


def silent_audio() -> bytes:
    """A zero-duration mono 16-bit PCM WAV file (header only, 44 bytes)."""
    byte_rate = SILENT_WAV_SAMPLE_RATE * 2
    return struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF", 36, b"WAVE",
        b"fmt ", 16, 1, 1, SILENT_WAV_SAMPLE_RATE, byte_rate, 2, 16,
        b"data", 0,
    )
