"""
exceptions.py — voiceturn Unified Error Hierarchy

All voiceturn-specific exceptions live here. Every layer of the stack
raises typed subclasses of VoiceTurnError — never bare Exception.

Import from here, not from individual modules:
    from exceptions import GenerationRateLimitError, SynthesisQuotaExceededError

Hierarchy:
    VoiceTurnError
    ├── GenerationError
    │   ├── GenerationAuthError
    │   ├── GenerationRateLimitError
    │   ├── GenerationBadRequestError
    │   └── GenerationUnavailableError
    ├── SynthesisError
    │   ├── SynthesisAuthError
    │   ├── SynthesisQuotaExceededError
    │   ├── SynthesisRateLimitError
    │   ├── SynthesisValidationError
    │   └── SynthesisUnavailableError
    ├── PlaybackError
    └── SessionError
        ├── InvalidTransitionError
        └── SessionDisposedError
"""

from __future__ import annotations

from typing import Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class VoiceTurnError(Exception):
    """Base class for all voiceturn exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Generation layer (text replies)
# ─────────────────────────────────────────────────────────────────────────────

class GenerationError(VoiceTurnError):
    """Base for responder failures. `user_message` is safe to show."""

    user_message = "Something went wrong. Please try again later."

    def __init__(self, message: str, provider: str = "", status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class GenerationAuthError(GenerationError):
    """Missing or rejected API key for the text-generation backend."""

    user_message = "AI service configuration error. Please contact support."


class GenerationRateLimitError(GenerationError):
    """The text-generation backend is throttling requests."""

    user_message = "Too many requests. Please wait a moment before trying again."

    def __init__(self, message: str, provider: str = "", retry_after: Optional[float] = None) -> None:
        super().__init__(message, provider=provider, status_code=429)
        self.retry_after = retry_after


class GenerationBadRequestError(GenerationError):
    """The request (usually the user's text) was rejected as malformed."""

    user_message = "Invalid request. Please try a different question."


class GenerationUnavailableError(GenerationError):
    """Backend unreachable, timed out or returned a server error."""

    user_message = "Voice service is temporarily unavailable. Please try text mode instead."


# ─────────────────────────────────────────────────────────────────────────────
# Synthesis layer (speech output)
# ─────────────────────────────────────────────────────────────────────────────

class SynthesisError(VoiceTurnError):
    """Base for speech synthesis failures."""

    def __init__(self, message: str, provider: str = "", status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class SynthesisAuthError(SynthesisError):
    """API key missing or invalid."""


class SynthesisQuotaExceededError(SynthesisError):
    """Character quota used up; the service tier should not be retried."""


class SynthesisRateLimitError(SynthesisError):
    """Too many synthesis requests."""


class SynthesisValidationError(SynthesisError):
    """The backend rejected the text/voice combination, or returned unusable audio."""


class SynthesisUnavailableError(SynthesisError):
    """Network failure, timeout or 5xx from the synthesis backend."""


# ─────────────────────────────────────────────────────────────────────────────
# Playback + session
# ─────────────────────────────────────────────────────────────────────────────

class PlaybackError(VoiceTurnError):
    """Audio output failed after it was started."""


class SessionError(VoiceTurnError):
    """Base for conversation session errors."""


class InvalidTransitionError(SessionError):
    """The turn state machine was asked to make a transition it does not allow."""

    def __init__(self, source: str, target: str) -> None:
        self.source = source
        self.target = target
        super().__init__(f"Invalid turn transition: {source} -> {target}")


class SessionDisposedError(SessionError):
    """An operation was attempted on a disposed session."""


# ─────────────────────────────────────────────────────────────────────────────
# Convenience: all public names
# ─────────────────────────────────────────────────────────────────────────────

__all__ = [
    "VoiceTurnError",
    # Generation
    "GenerationError",
    "GenerationAuthError",
    "GenerationRateLimitError",
    "GenerationBadRequestError",
    "GenerationUnavailableError",
    # Synthesis
    "SynthesisError",
    "SynthesisAuthError",
    "SynthesisQuotaExceededError",
    "SynthesisRateLimitError",
    "SynthesisValidationError",
    "SynthesisUnavailableError",
    # Playback / session
    "PlaybackError",
    "SessionError",
    "InvalidTransitionError",
    "SessionDisposedError",
]
