"""
brain/__init__.py — voiceturn text generation
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from brain.prompts import build_system_prompt
from brain.responder import BaseResponder, OfflineResponder, sanitize_input
from brain.types import GenerationParams, Message, Provider, Role, TurnContext
from observability.logger import get_logger

if TYPE_CHECKING:
    from config.settings import Settings

__all__ = [
    "ResponderFactory",
    "BaseResponder",
    "OfflineResponder",
    "sanitize_input",
    "build_system_prompt",
    "GenerationParams",
    "Message",
    "Provider",
    "Role",
    "TurnContext",
]

log = get_logger(__name__)


class ResponderFactory:

    @staticmethod
    def create(provider: str, api_key: str | None, params: GenerationParams) -> BaseResponder:
        """
        Build a responder for `provider`.

        A remote provider with no key degrades to OfflineResponder instead
        of failing, so the voice loop still runs end to end.
        """
        provider = provider.lower().strip()

        if provider == "offline":
            return OfflineResponder()

        if provider in ("groq", "openai"):
            if not api_key:
                log.warning("responder.no_api_key", provider=provider, fallback="offline")
                return OfflineResponder()
            from brain.openai_responder import OpenAICompatibleResponder
            return OpenAICompatibleResponder(
                api_key=api_key,
                params=params,
                provider=Provider(provider),
            )

        raise ValueError(
            f"Unknown responder provider: '{provider}'. "
            f"Supported: groq, openai, offline"
        )

    @staticmethod
    def from_settings(settings: "Settings") -> BaseResponder:
        cfg = settings.responder
        params = GenerationParams(
            model=cfg.model,
            temperature=cfg.temperature,
            max_tokens=cfg.max_tokens,
            timeout_seconds=cfg.timeout_seconds,
            base_url=cfg.resolved_base_url,
        )
        return ResponderFactory.create(cfg.provider, settings.responder_api_key, params)
