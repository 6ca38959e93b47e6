"""
brain/openai_responder.py — OpenAI-compatible Responder

Talks to any OpenAI-compatible chat completions endpoint. Groq is the
default (base_url https://api.groq.com/openai/v1, model
llama-3.3-70b-versatile); plain OpenAI works with base_url=None.
Handles prompt assembly and error normalisation.
"""

from __future__ import annotations

from typing import Optional

import openai
from openai import AsyncOpenAI

from brain.prompts import build_system_prompt
from brain.responder import BaseResponder
from brain.types import GenerationParams, Message, Provider, TurnContext
from exceptions import (
    GenerationAuthError,
    GenerationBadRequestError,
    GenerationError,
    GenerationRateLimitError,
    GenerationUnavailableError,
)
from observability.logger import get_logger

log = get_logger(__name__)

# Study mode trades creativity for longer, more structured replies.
_STUDY_MODE_TEMPERATURE = 0.5
_STUDY_MODE_MAX_TOKENS = 1500


class OpenAICompatibleResponder(BaseResponder):
    """
    Responder backed by the openai SDK.

    The SDK's own retries are disabled (max_retries=0). A failed call
    surfaces once per turn; the student simply speaks again.
    """

    def __init__(
        self,
        api_key: str,
        params: GenerationParams,
        provider: Provider = Provider.GROQ,
        client: Optional[AsyncOpenAI] = None,
    ):
        super().__init__(api_key=api_key, base_url=params.base_url)
        self.provider = provider
        self._params = params
        self._client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=params.base_url,
            max_retries=0,
        )

    # ── Public API ────────────────────────────────────────────────────────────

    async def generate(self, text: str, context: TurnContext) -> str:
        messages = self._build_messages(text, context)
        temperature = _STUDY_MODE_TEMPERATURE if context.study_mode else self._params.temperature
        max_tokens = _STUDY_MODE_MAX_TOKENS if context.study_mode else self._params.max_tokens

        log.debug(
            "responder.generate.start",
            provider=self.provider.value,
            model=self._params.model,
            message_count=len(messages),
        )

        name = self.provider.value
        try:
            response = await self._client.chat.completions.create(
                model=self._params.model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                timeout=self._params.timeout_seconds,
            )
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            raise GenerationAuthError(str(e), provider=name, status_code=e.status_code) from e
        except openai.RateLimitError as e:
            raise GenerationRateLimitError(
                str(e), provider=name, retry_after=_retry_after(e),
            ) from e
        except (openai.BadRequestError, openai.UnprocessableEntityError) as e:
            raise GenerationBadRequestError(str(e), provider=name, status_code=e.status_code) from e
        except openai.APIConnectionError as e:
            # includes APITimeoutError
            raise GenerationUnavailableError(str(e), provider=name) from e
        except openai.InternalServerError as e:
            raise GenerationUnavailableError(str(e), provider=name, status_code=e.status_code) from e
        except openai.APIError as e:
            raise GenerationError(
                str(e), provider=name, status_code=getattr(e, "status_code", None),
            ) from e

        content = ""
        if response.choices:
            content = (response.choices[0].message.content or "").strip()
        if not content:
            raise GenerationError(f"No response received from {name}", provider=name)

        log.debug("responder.generate.complete", provider=name, chars=len(content))
        return content

    async def health_check(self) -> bool:
        try:
            await self._client.models.list()
            return True
        except openai.APIError as e:
            log.warning("responder.health_check.failed", error=str(e), error_type=type(e).__name__)
            return False

    # ── Private helpers ───────────────────────────────────────────────────────

    def _build_messages(self, text: str, context: TurnContext) -> list[dict]:
        system = Message.system(build_system_prompt(
            subject=context.subject,
            persona=context.persona,
            difficulty=context.difficulty,
            study_mode=context.study_mode,
        ))
        ordered = [system, *context.history, Message.user(text)]
        return [{"role": m.role.value, "content": m.content} for m in ordered]


def _retry_after(error: openai.RateLimitError) -> Optional[float]:
    response = getattr(error, "response", None)
    if response is None:
        return None
    raw = response.headers.get("retry-after")
    try:
        return float(raw) if raw is not None else None
    except ValueError:
        return None
