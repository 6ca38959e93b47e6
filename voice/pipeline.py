"""
voice/pipeline.py — Reply Pipeline

One finalized utterance in, one spoken reply out:

    1. generate     sanitize, then responder.generate() under a timeout
    2. synthesize   SynthesisChain: service → local → silence
    3. play         PlaybackSession around AudioPlayer.play()

Stage failures stay inside their stage. A generation failure ends the turn
before synthesis (with a taxonomy-specific message); synthesis failures
fall through the tier chain and only surface when nothing but silence was
produced; playback failures are reported and end the turn. None of these
propagate out of run().
"""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

from brain.responder import BaseResponder, sanitize_input
from brain.types import TurnContext
from config.settings import VoiceConfig
from exceptions import GenerationError, GenerationUnavailableError, PlaybackError
from observability.logger import get_logger
from speech.chain import SynthesisChain
from speech.text import strip_markdown
from speech.voices import PersonaVoice
from voice.playback import AudioPlayer
from voice.timers import Scheduler
from voice.types import PlaybackSession, TurnResult, TurnState, TurnStatus

log = get_logger(__name__)

VOICE_OUTPUT_FAILED = "Voice output failed. The reply is shown as text only."
PLAYBACK_FAILED = "Audio playback failed."


class ReplyPipeline:

    def __init__(
        self,
        responder: BaseResponder,
        chain: SynthesisChain,
        player: AudioPlayer,
        scheduler: Scheduler,
        config: Callable[[], VoiceConfig],
        responder_timeout: float = 30.0,
    ):
        self._responder = responder
        self._chain = chain
        self._player = player
        self._scheduler = scheduler
        self._config = config
        self._responder_timeout = responder_timeout
        self.playback: Optional[PlaybackSession] = None

        self.on_stage: Optional[Callable[[TurnState], None]] = None
        self.on_response: Optional[Callable[[str], None]] = None
        self.on_error: Optional[Callable[[str], None]] = None
        self.on_audio_start: Optional[Callable[[], None]] = None
        self.on_audio_end: Optional[Callable[[], None]] = None

    async def run(self, utterance: str, context: TurnContext, voice: PersonaVoice) -> TurnResult:
        cfg = self._config()

        # ── 1. Text generation ───────────────────────────────────────────────
        try:
            clean = sanitize_input(utterance, cfg.max_input_chars)
            reply = await self._generate(clean, context)
        except GenerationError as e:
            log.warning(
                "pipeline.generation_failed",
                error=str(e),
                error_type=type(e).__name__,
                provider=e.provider,
            )
            self._emit(self.on_error, e.user_message)
            return TurnResult(
                utterance=utterance,
                status=TurnStatus.GENERATION_FAILED,
                error_message=e.user_message,
            )

        log.info("pipeline.reply_ready", chars=len(reply))
        self._emit(self.on_response, reply)

        # ── 2. Synthesis ─────────────────────────────────────────────────────
        self._emit(self.on_stage, TurnState.SYNTHESIZING)
        spoken = strip_markdown(reply) or reply
        outcome = await self._chain.synthesize(spoken, voice)
        if outcome.degraded:
            self._emit(self.on_error, VOICE_OUTPUT_FAILED)

        # ── 3. Playback ──────────────────────────────────────────────────────
        self._emit(self.on_stage, TurnState.PLAYING)
        result = TurnResult(
            utterance=clean,
            status=TurnStatus.COMPLETED,
            reply_text=reply,
            tier=outcome.tier,
            voice_degraded=outcome.degraded,
        )
        failure = await self._play(outcome.audio, outcome.tier, cfg.output_volume)
        if failure is not None:
            result.status = TurnStatus.PLAYBACK_FAILED
            result.error_message = PLAYBACK_FAILED
        return result

    async def _generate(self, text: str, context: TurnContext) -> str:
        try:
            return await asyncio.wait_for(
                self._responder.generate(text, context),
                timeout=self._responder_timeout,
            )
        except asyncio.TimeoutError as e:
            raise GenerationUnavailableError(
                f"Responder timed out after {self._responder_timeout}s",
                provider=self._responder.provider.value,
            ) from e

    async def _play(self, audio: bytes, tier: str, volume: float) -> Optional[str]:
        """Returns the failure reason, or None on a natural end."""
        session = PlaybackSession(audio=audio, tier=tier, started_at=self._scheduler.now())
        self.playback = session
        self._emit(self.on_audio_start)

        def _on_play() -> None:
            session.started_at = self._scheduler.now()

        try:
            await self._player.play(audio, volume, _on_play)
        except PlaybackError as e:
            session.failure_reason = str(e)
            log.warning("pipeline.playback_failed", error=str(e), tier=tier)
            self._emit(self.on_error, PLAYBACK_FAILED)
        except asyncio.CancelledError:
            session.failure_reason = "stopped"
            raise
        finally:
            session.ended_at = self._scheduler.now()
            self.playback = None
            self._emit(self.on_audio_end)
            log.debug(
                "pipeline.playback_ended",
                playback_id=session.id,
                duration_ms=session.duration_ms,
                failure=session.failure_reason,
            )
        return session.failure_reason

    def stop_playback(self) -> None:
        if self.playback is not None and self.playback.active:
            self._player.stop()

    @staticmethod
    def _emit(callback: Optional[Callable], *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            # observer bugs must not break the turn
            log.error("pipeline.callback_error", error=str(e), error_type=type(e).__name__)
