"""
speech/piper.py — Offline Piper TTS

Second synthesis tier. The voice model is loaded once, lazily, in an
executor thread; synthesis also runs in the executor so it never blocks
the event loop. Output is a complete WAV file.

Requires the optional `piper-tts` package and a .onnx voice model
(synthesis.piper_model_path).
"""

from __future__ import annotations

import asyncio
import io
import time
import wave
from pathlib import Path
from typing import Any, Optional

from exceptions import SynthesisUnavailableError
from observability.logger import get_logger
from speech.synthesizer import BaseLocalSynthesizer
from speech.voices import PersonaVoice

log = get_logger(__name__)


class PiperSynthesizer(BaseLocalSynthesizer):

    name = "piper"

    def __init__(self, model_path: str):
        self._model_path = model_path
        self._voice: Optional[Any] = None   # piper.voice.PiperVoice
        self._load_lock = asyncio.Lock()

    async def synthesize_locally(self, text: str, voice: PersonaVoice) -> bytes:
        loop = asyncio.get_running_loop()
        piper_voice = await self._ensure_loaded()
        try:
            return await loop.run_in_executor(None, self._run_piper, piper_voice, text, voice.rate)
        except (OSError, RuntimeError, ValueError, KeyError) as e:
            raise SynthesisUnavailableError(f"Piper synthesis failed: {e}", provider=self.name) from e

    async def _ensure_loaded(self) -> Any:
        async with self._load_lock:
            if self._voice is None:
                loop = asyncio.get_running_loop()
                log.info("piper.loading", path=self._model_path)
                t0 = time.monotonic()
                try:
                    self._voice = await loop.run_in_executor(None, self._load_piper)
                except ImportError as e:
                    raise SynthesisUnavailableError(
                        f"piper-tts not installed. Run: pip install piper-tts\n{e}",
                        provider=self.name,
                    ) from e
                except (OSError, RuntimeError, ValueError, KeyError) as e:
                    raise SynthesisUnavailableError(
                        f"Piper model failed to load: {e}", provider=self.name,
                    ) from e
                log.info("piper.loaded", duration_ms=round((time.monotonic() - t0) * 1000))
            return self._voice

    def _load_piper(self) -> Any:
        """Blocking — runs in executor."""
        from piper.voice import PiperVoice
        model_path = str(Path(self._model_path).expanduser().resolve())
        return PiperVoice.load(model_path)

    @staticmethod
    def _run_piper(piper_voice: Any, text: str, rate: float) -> bytes:
        """Blocking Piper synthesis — runs in executor. Returns WAV bytes."""
        buf = io.BytesIO()
        with wave.open(buf, "wb") as wav_file:
            # length_scale > 1 is slower speech
            piper_voice.synthesize(text, wav_file, length_scale=1.0 / max(rate, 0.1))
        return buf.getvalue()
