"""
brain/responder.py — Abstract Responder + input sanitisation

A responder turns one finalized utterance (plus the session's recent
history) into one text reply. Implementations:

  - OpenAICompatibleResponder (brain/openai_responder.py) — Groq or OpenAI
    through the openai SDK
  - OfflineResponder (below) — used when no API key is configured

Every implementation raises only GenerationError subclasses
(exceptions.py), so the reply pipeline can map failures to user-facing
messages without knowing which backend produced them.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Optional

from brain.types import Provider, TurnContext
from exceptions import GenerationBadRequestError

_TAG_RE = re.compile(r"<[^>]*>")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def sanitize_input(text: str, max_chars: int = 2000) -> str:
    """
    Strip markup tags and control characters, then trim.

    Raises GenerationBadRequestError when nothing is left or the result is
    longer than max_chars; such input never reaches a backend.
    """
    cleaned = _CONTROL_RE.sub("", _TAG_RE.sub("", text or "")).strip()
    if not cleaned:
        raise GenerationBadRequestError("Input is empty after sanitisation")
    if len(cleaned) > max_chars:
        raise GenerationBadRequestError(
            f"Input is {len(cleaned)} characters; the limit is {max_chars}"
        )
    return cleaned


class BaseResponder(ABC):
    """
    Abstract base for all responders.

    Subclasses must implement:
      - generate()     -> reply text for a sanitized utterance
      - health_check() -> verify connectivity to the backend
    """

    provider: Provider = Provider.OFFLINE

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None):
        self.api_key = api_key
        self.base_url = base_url

    @abstractmethod
    async def generate(self, text: str, context: TurnContext) -> str:
        """Return the reply to `text`. Raise a GenerationError subclass on failure."""
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"


class OfflineResponder(BaseResponder):
    """Echo responder for sessions without a text-generation key."""

    provider = Provider.OFFLINE

    async def generate(self, text: str, context: TurnContext) -> str:
        return (
            f'I heard you say: "{text}". However, I\'m currently operating in '
            f"fallback mode because the AI service is not fully configured. "
            f"Please check your API keys in the .env file."
        )

    async def health_check(self) -> bool:
        return True
