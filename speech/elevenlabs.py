"""
speech/elevenlabs.py — ElevenLabs text-to-speech client

POST {base_url}/text-to-speech/{voice_id} with the persona's voice id and
returns MP3 bytes. HTTP failures are normalised into the SynthesisError
family:

    401 + "quota_exceeded" in body → SynthesisQuotaExceededError
    401 otherwise                  → SynthesisAuthError
    429                            → SynthesisRateLimitError
    422                            → SynthesisValidationError
    5xx, timeouts, network errors  → SynthesisUnavailableError
    empty body                     → SynthesisValidationError
"""

from __future__ import annotations

from typing import Optional

import httpx

from exceptions import (
    SynthesisAuthError,
    SynthesisError,
    SynthesisQuotaExceededError,
    SynthesisRateLimitError,
    SynthesisUnavailableError,
    SynthesisValidationError,
)
from observability.logger import get_logger
from speech.synthesizer import BaseSynthesizer
from speech.voices import PersonaVoice

log = get_logger(__name__)

_PROVIDER = "elevenlabs"


class ElevenLabsSynthesizer(BaseSynthesizer):

    name = _PROVIDER

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.elevenlabs.io/v1",
        model_id: str = "eleven_monolingual_v1",
        stability: float = 0.5,
        similarity_boost: float = 0.75,
        style: float = 0.5,
        use_speaker_boost: bool = True,
        timeout_seconds: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(api_key=api_key, base_url=base_url.rstrip("/"))
        self._model_id = model_id
        self._voice_settings = {
            "stability": stability,
            "similarity_boost": similarity_boost,
            "style": style,
            "use_speaker_boost": use_speaker_boost,
        }
        self._timeout = timeout_seconds
        self._transport = transport

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "xi-api-key": self.api_key or "",
            "Content-Type": "application/json",
            "Accept": "audio/mpeg",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers=self._headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    async def synthesize(self, text: str, voice: PersonaVoice) -> bytes:
        text = text.strip()
        if not text:
            raise SynthesisValidationError("Text cannot be empty", provider=_PROVIDER)

        url = f"{self.base_url}/text-to-speech/{voice.voice_id}"
        body = {
            "text": text,
            "model_id": self._model_id,
            "voice_settings": self._voice_settings,
        }
        log.debug("elevenlabs.request", voice_id=voice.voice_id, chars=len(text))

        try:
            async with self._client() as client:
                response = await client.post(url, json=body)
        except httpx.TimeoutException as e:
            raise SynthesisUnavailableError(f"ElevenLabs request timed out: {e}", provider=_PROVIDER) from e
        except httpx.HTTPError as e:
            raise SynthesisUnavailableError(f"ElevenLabs request failed: {e}", provider=_PROVIDER) from e

        if response.status_code >= 400:
            _raise_for_status(response)

        audio = response.content
        if not audio:
            raise SynthesisValidationError(
                "Received empty audio response from ElevenLabs", provider=_PROVIDER,
            )
        log.debug("elevenlabs.response", bytes=len(audio))
        return audio

    async def health_check(self) -> bool:
        try:
            async with self._client() as client:
                response = await client.get(f"{self.base_url}/user")
            return response.status_code == 200
        except httpx.HTTPError as e:
            log.warning("elevenlabs.health_check.failed", error=str(e), error_type=type(e).__name__)
            return False


def _raise_for_status(response: httpx.Response) -> None:
    status = response.status_code
    detail = response.text[:500]

    if status == 401:
        if "quota_exceeded" in detail:
            raise SynthesisQuotaExceededError(
                "ElevenLabs quota exceeded", provider=_PROVIDER, status_code=status,
            )
        raise SynthesisAuthError(
            "ElevenLabs API key is invalid or expired", provider=_PROVIDER, status_code=status,
        )
    if status == 429:
        raise SynthesisRateLimitError(
            "ElevenLabs API rate limit exceeded", provider=_PROVIDER, status_code=status,
        )
    if status == 422:
        raise SynthesisValidationError(
            "ElevenLabs validation error. Text may be too long or contain invalid characters.",
            provider=_PROVIDER, status_code=status,
        )
    if status >= 500:
        raise SynthesisUnavailableError(
            f"ElevenLabs service error: {status}", provider=_PROVIDER, status_code=status,
        )
    raise SynthesisError(
        f"ElevenLabs API error: {status} - {detail}", provider=_PROVIDER, status_code=status,
    )
