"""
speech/chain.py — Ordered synthesis fallback chain

Speech output degrades through tiers until one produces audio:

    1. ServiceTier  — remote synthesizer (ElevenLabs), chunked, bounded by a
                      timeout; undersized audio counts as a failure
    2. LocalTier    — offline synthesizer (Piper), if configured
    3. SilenceTier  — 44-byte silent WAV; always succeeds

The chain refuses to be built without a SilenceTier at the end, so
SynthesisChain.synthesize() never raises for synthesis failures. A tier
that crashes with anything other than a SynthesisError is logged with its
traceback and treated as unavailable.

ServiceTier trips a session-long circuit after `max_consecutive_failures`
consecutive failed turns, or immediately on quota exhaustion. While
tripped the tier reports available=False and the chain skips it.

Usage:
    chain = SynthesisChain([
        ServiceTier(ElevenLabsSynthesizer(api_key=...)),
        LocalTier(PiperSynthesizer("~/voices/en_US-lessac-medium.onnx")),
        SilenceTier(),
    ])
    outcome = await chain.synthesize(reply_text, voice_for("fun-freddy"))
    if outcome.degraded:
        ...  # tell the user voice output failed
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from exceptions import (
    SynthesisError,
    SynthesisQuotaExceededError,
    SynthesisUnavailableError,
    SynthesisValidationError,
)
from observability.logger import get_logger
from speech.synthesizer import BaseLocalSynthesizer, BaseSynthesizer, silent_audio
from speech.text import split_into_chunks
from speech.voices import PersonaVoice

log = get_logger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Results
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class SynthesisResult:
    """What one tier did for one request."""
    tier: str
    audio: Optional[bytes] = None
    error: Optional[str] = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.audio is not None


@dataclass
class SynthesisOutcome:
    """Final result of a chain run: the audio that will be played and how it was obtained."""
    audio: bytes
    tier: str
    attempts: list[SynthesisResult] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        """True when only the silent placeholder could be produced."""
        return self.tier == SilenceTier.name


# ─────────────────────────────────────────────────────────────────────────────
# Tiers
# ─────────────────────────────────────────────────────────────────────────────


def _unexpected_failure(tier: str, error: Exception) -> SynthesisUnavailableError:
    log.error(
        "synthesis.tier_crashed",
        tier=tier,
        error=str(error),
        error_type=type(error).__name__,
        exc_info=True,
    )
    return SynthesisUnavailableError(
        f"{tier} failed unexpectedly: {type(error).__name__}: {error}", provider=tier,
    )


class SynthesisTier(ABC):

    name: str = "tier"

    @property
    def available(self) -> bool:
        return True

    @abstractmethod
    async def attempt(self, text: str, voice: PersonaVoice) -> bytes:
        """Produce audio or raise SynthesisError."""
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.name}>"


class ServiceTier(SynthesisTier):

    def __init__(
        self,
        synthesizer: BaseSynthesizer,
        timeout_seconds: float = 15.0,
        min_audio_bytes: int = 1000,
        max_consecutive_failures: int = 3,
        chunk_chars: int = 300,
    ):
        self._synth = synthesizer
        self.name = synthesizer.name
        self._timeout = timeout_seconds
        self._min_audio_bytes = min_audio_bytes
        self._max_failures = max_consecutive_failures
        self._chunk_chars = chunk_chars
        self.consecutive_failures = 0
        self.quota_exhausted = False

    @property
    def available(self) -> bool:
        return not self.quota_exhausted and self.consecutive_failures < self._max_failures

    async def attempt(self, text: str, voice: PersonaVoice) -> bytes:
        try:
            audio = await self._synthesize_chunks(text, voice)
        except SynthesisQuotaExceededError:
            self.quota_exhausted = True
            log.warning("synthesis.circuit_open", tier=self.name, reason="quota_exceeded")
            raise
        except SynthesisError:
            self._record_failure()
            raise
        except Exception as e:
            self._record_failure()
            raise _unexpected_failure(self.name, e) from e
        self.consecutive_failures = 0
        return audio

    def _record_failure(self) -> None:
        self.consecutive_failures += 1
        if not self.available:
            log.warning(
                "synthesis.circuit_open",
                tier=self.name,
                reason="consecutive_failures",
                failures=self.consecutive_failures,
            )

    async def _synthesize_chunks(self, text: str, voice: PersonaVoice) -> bytes:
        chunks = split_into_chunks(text, self._chunk_chars)
        if not chunks:
            raise SynthesisValidationError("Nothing to synthesize", provider=self.name)

        parts: list[bytes] = []
        for chunk in chunks:
            try:
                audio = await asyncio.wait_for(
                    self._synth.synthesize(chunk, voice), timeout=self._timeout,
                )
            except asyncio.TimeoutError as e:
                raise SynthesisUnavailableError(
                    f"{self.name} timed out after {self._timeout}s", provider=self.name,
                ) from e
            if len(audio) < self._min_audio_bytes:
                raise SynthesisValidationError(
                    f"{self.name} returned {len(audio)} bytes of audio "
                    f"(minimum {self._min_audio_bytes})",
                    provider=self.name,
                )
            parts.append(audio)
        # MP3 frames are self-delimiting; concatenated chunks play back in order.
        return b"".join(parts)


class LocalTier(SynthesisTier):

    def __init__(self, synthesizer: BaseLocalSynthesizer, timeout_seconds: Optional[float] = None):
        self._synth = synthesizer
        self.name = synthesizer.name
        self._timeout = timeout_seconds

    async def attempt(self, text: str, voice: PersonaVoice) -> bytes:
        try:
            audio = await asyncio.wait_for(
                self._synth.synthesize_locally(text, voice), timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            raise SynthesisUnavailableError(f"{self.name} timed out", provider=self.name) from e
        except SynthesisError:
            raise
        except Exception as e:
            raise _unexpected_failure(self.name, e) from e
        if not audio:
            raise SynthesisValidationError(f"{self.name} produced no audio", provider=self.name)
        return audio


class SilenceTier(SynthesisTier):

    name = "silence"

    async def attempt(self, text: str, voice: PersonaVoice) -> bytes:
        return silent_audio()


# ─────────────────────────────────────────────────────────────────────────────
# Chain
# ─────────────────────────────────────────────────────────────────────────────


class SynthesisChain:

    def __init__(self, tiers: list[SynthesisTier]):
        if not tiers or not isinstance(tiers[-1], SilenceTier):
            raise ValueError("SynthesisChain must end with a SilenceTier")
        self._tiers = list(tiers)

    @property
    def tiers(self) -> list[SynthesisTier]:
        return list(self._tiers)

    async def synthesize(self, text: str, voice: PersonaVoice) -> SynthesisOutcome:
        attempts: list[SynthesisResult] = []

        for i, tier in enumerate(self._tiers):
            if not tier.available:
                attempts.append(SynthesisResult(tier=tier.name, skipped=True))
                log.debug("synthesis.tier_skipped", tier=tier.name)
                continue

            try:
                audio = await tier.attempt(text, voice)
            except Exception as exc:
                e = exc if isinstance(exc, SynthesisError) else _unexpected_failure(tier.name, exc)
                attempts.append(SynthesisResult(tier=tier.name, error=str(e)))
                log.warning(
                    "synthesis.tier_failed",
                    tier=tier.name,
                    error=str(e),
                    error_type=type(e).__name__,
                    will_try_fallback=i < len(self._tiers) - 1,
                )
                continue

            attempts.append(SynthesisResult(tier=tier.name, audio=audio))
            log.debug("synthesis.complete", tier=tier.name, bytes=len(audio))
            return SynthesisOutcome(audio=audio, tier=tier.name, attempts=attempts)

        # Unreachable while SilenceTier is last; kept so the return type holds.
        return SynthesisOutcome(audio=silent_audio(), tier=SilenceTier.name, attempts=attempts)

    def __repr__(self) -> str:
        return f"<SynthesisChain {' -> '.join(t.name for t in self._tiers)}>"
