"""
voice/orchestrator.py — Turn Orchestrator

The state machine that wires segmenter, feedback guard and reply pipeline
into the repeating cycle:

    Idle ──start()──► Listening ──finalize──► Finalizing ──► Generating
    Generating ──► Synthesizing ──► Playing ──end──► CoolingDown ──delay──► Listening
    Generating ──failure──► CoolingDown
    any ──pause()──► Idle          any ──dispose()──► Disposed

`state` is the single authoritative field; _transition() rejects moves
that are not in _TRANSITIONS. At most one turn runs at a time: entering
Generating requires is_processing to be False, and the turn task clears
it in a finally.

Every turn that finishes on its own, whatever the exit path, schedules
exactly one delayed unmute. A turn cancelled by pause() or dispose() does
not: pause() holds the guard muted until resume(), and a disposed session
never listens again.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

from brain.types import TurnContext
from config.settings import VoiceConfig
from exceptions import GenerationError, InvalidTransitionError, SessionDisposedError
from observability.logger import bind_session, clear_session, get_logger, new_turn_id, set_turn_state
from speech.voices import PersonaVoice
from voice.capture import CaptureEngine, GainControl, capture_error_message
from voice.feedback_guard import FeedbackGuard
from voice.pipeline import ReplyPipeline
from voice.segmenter import UtteranceSegmenter
from voice.timers import Scheduler, Timer
from voice.types import TurnResult, TurnState

log = get_logger(__name__)

S = TurnState

_TRANSITIONS: dict[TurnState, frozenset[TurnState]] = {
    S.IDLE:         frozenset({S.LISTENING, S.DISPOSED}),
    S.LISTENING:    frozenset({S.FINALIZING, S.IDLE, S.DISPOSED}),
    S.FINALIZING:   frozenset({S.GENERATING, S.LISTENING, S.IDLE, S.DISPOSED}),
    S.GENERATING:   frozenset({S.SYNTHESIZING, S.COOLING_DOWN, S.IDLE, S.DISPOSED}),
    S.SYNTHESIZING: frozenset({S.PLAYING, S.COOLING_DOWN, S.IDLE, S.DISPOSED}),
    S.PLAYING:      frozenset({S.COOLING_DOWN, S.IDLE, S.DISPOSED}),
    S.COOLING_DOWN: frozenset({S.LISTENING, S.IDLE, S.DISPOSED}),
    S.DISPOSED:     frozenset(),
}

StateObserver = Callable[[TurnState, TurnState], None]


class TurnOrchestrator:

    def __init__(
        self,
        capture: CaptureEngine,
        pipeline: ReplyPipeline,
        scheduler: Scheduler,
        config: Callable[[], VoiceConfig],
        context: Callable[[], TurnContext],
        voice: Callable[[], PersonaVoice],
        gain: Optional[GainControl] = None,
        session_id: str = "",
        user_id: str = "",
    ):
        self._capture = capture
        self._pipeline = pipeline
        self._config = config
        self._context = context
        self._voice = voice
        self._session_id = session_id
        self._user_id = user_id

        self.state = TurnState.IDLE
        self.is_processing = False
        self._paused = False
        self._stopped = False
        self._turn_task: Optional[asyncio.Task] = None
        self.last_turn_id: Optional[str] = None
        self._restart_timer = Timer(scheduler, "capture_restart")

        self.guard = FeedbackGuard(
            capture,
            scheduler,
            gain=gain,
            ramp_ms=config().gain_ramp_ms,
            is_paused=lambda: self.held,
        )
        self.segmenter = UtteranceSegmenter(
            scheduler,
            config,
            on_finalize=self._on_utterance,
            is_muted=lambda: self.guard.muted,
            is_busy=lambda: self.is_processing or self.state != TurnState.LISTENING,
            is_paused=lambda: self.held,
        )

        self.on_state_change: Optional[StateObserver] = None
        self.on_error: Optional[Callable[[str], None]] = None
        self.on_utterance: Optional[Callable[[str], None]] = None
        self.on_turn_complete: Optional[Callable[[TurnResult], None]] = None

        pipeline.on_stage = self._on_stage
        capture.bind(self._on_capture_result, self._on_capture_error, self._on_capture_end)

    # ── State ────────────────────────────────────────────────────────────────

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def held(self) -> bool:
        """True while automatic capture restarts are suppressed (paused or stopped)."""
        return self._paused or self._stopped

    @property
    def ai_speaking(self) -> bool:
        return self.state == TurnState.PLAYING

    def _transition(self, target: TurnState) -> None:
        source = self.state
        if source == target:
            return
        if target not in _TRANSITIONS[source]:
            raise InvalidTransitionError(source.value, target.value)
        self.state = target
        set_turn_state(target.value)
        log.debug("turn.state_changed", source=source.value, target=target.value)
        self._emit(self.on_state_change, source, target)

    def _require_live(self) -> None:
        if self.state == TurnState.DISPOSED:
            raise SessionDisposedError("Session has been disposed")

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def start(self) -> bool:
        """Begin listening. Returns False if the session is paused."""
        self._require_live()
        if self._paused:
            log.debug("turn.start_ignored", reason="paused")
            return False
        self._stopped = False
        if self.state != TurnState.IDLE:
            # a turn is in flight; its cooldown resumes listening
            return True
        self.guard.unmute()
        self._transition(TurnState.LISTENING)
        log.info("turn.listening", language=self._capture.language)
        return True

    def stop(self) -> None:
        """
        Stop listening without the sticky pause.

        The trailing buffer is offered to finalize first; if that starts a
        turn, the turn completes and the session then settles in Idle.
        """
        self._require_live()
        self._restart_timer.cancel()
        if self.state == TurnState.LISTENING:
            self.segmenter.on_capture_end()
        self._stopped = True
        if self.state in (TurnState.LISTENING, TurnState.IDLE):
            self.segmenter.reset()
            self.guard.stop_capture()
            self._transition(TurnState.IDLE)
        log.info("turn.stopped", state=self.state.value)

    def pause(self) -> None:
        if self.state == TurnState.DISPOSED:
            return
        self._paused = True
        self._halt()
        self.guard.mute()
        self.segmenter.reset(forget_last=True)
        self._transition(TurnState.IDLE)
        log.info("turn.paused")

    def resume(self) -> bool:
        self._require_live()
        if not self._paused:
            return False
        self._paused = False
        self._stopped = False
        self.guard.cancel_pending()
        self.segmenter.reset(forget_last=True)
        if not self.guard.unmute():
            return False
        self._transition(TurnState.LISTENING)
        log.info("turn.resumed")
        return True

    def force_finalize(self) -> bool:
        """Submit the buffered transcript now, bypassing the silence and debounce timers."""
        self._require_live()
        return self.segmenter.force_finalize()

    def dispose(self) -> None:
        if self.state == TurnState.DISPOSED:
            return
        self._transition(TurnState.DISPOSED)
        self._halt()
        self.segmenter.reset(forget_last=True)
        self.guard.release()
        log.info("turn.disposed")

    async def wait_for_turn(self) -> None:
        """Wait until the in-flight turn task (if any) has finished."""
        task = self._turn_task
        if task is not None:
            await asyncio.wait({task})

    def _halt(self) -> None:
        self._restart_timer.cancel()
        self.segmenter.cancel_timers()
        self.guard.cancel_pending()
        self._pipeline.stop_playback()
        task = self._turn_task
        if task is not None and not task.done():
            task.cancel()
        self.is_processing = False

    # ── Capture events ───────────────────────────────────────────────────────

    def _on_capture_result(self, transcript: str, is_final: bool) -> None:
        if self.state == TurnState.DISPOSED:
            return
        self.segmenter.on_speech_event(transcript, is_final)

    def _on_capture_error(self, code: str) -> None:
        message = capture_error_message(code)
        if message is None:
            log.debug("capture.aborted")
            return
        log.warning("capture.error", code=code)
        self._emit(self.on_error, message)

    def _on_capture_end(self) -> None:
        if self.state == TurnState.DISPOSED:
            return
        if self.segmenter.on_capture_end():
            return
        if self._restart_eligible():
            self._restart_timer.arm(self._config().capture_restart_delay_ms, self._restart_capture)

    def _restart_eligible(self) -> bool:
        return (
            self.state == TurnState.LISTENING
            and not self.held
            and not self.guard.muted
            and not self.is_processing
        )

    def _restart_capture(self) -> None:
        if not self._restart_eligible() or self.guard.capturing:
            return
        if self.guard.start_capture():
            log.debug("capture.restarted")

    # ── Turn ─────────────────────────────────────────────────────────────────

    def _on_utterance(self, text: str) -> None:
        if self.state != TurnState.LISTENING or self.is_processing:
            log.debug(
                "turn.utterance_dropped",
                state=self.state.value,
                processing=self.is_processing,
            )
            return

        self._transition(TurnState.FINALIZING)
        self._emit(self.on_utterance, text)

        self.is_processing = True
        self._transition(TurnState.GENERATING)
        self._restart_timer.cancel()
        if self._config().feedback_prevention_enabled:
            self.guard.mute()

        loop = asyncio.get_running_loop()
        self._turn_task = loop.create_task(self._run_turn(text))

    async def _run_turn(self, text: str) -> None:
        cancelled = False
        self.last_turn_id = new_turn_id()
        bind_session(self._session_id, self._user_id, turn_id=self.last_turn_id, turn_state=self.state.value)
        log.info("turn.started", chars=len(text))
        try:
            result = await self._pipeline.run(text, self._context(), self._voice())
            log.info(
                "turn.finished",
                status=result.status.value,
                tier=result.tier or None,
                voice_degraded=result.voice_degraded,
            )
            self._emit(self.on_turn_complete, result)
        except asyncio.CancelledError:
            cancelled = True
            log.info("turn.cancelled")
            raise
        except Exception as e:
            log.error("turn.failed", error=str(e), error_type=type(e).__name__, exc_info=True)
            self._emit(self.on_error, GenerationError.user_message)
        finally:
            self.is_processing = False
            if self._turn_task is asyncio.current_task():
                self._turn_task = None
            if not cancelled:
                self._cool_down()
            clear_session()

    def _on_stage(self, stage: TurnState) -> None:
        if self.state == TurnState.DISPOSED:
            return
        self._transition(stage)

    def _cool_down(self) -> None:
        if self.state == TurnState.DISPOSED:
            return
        self._transition(TurnState.COOLING_DOWN)
        self.guard.schedule_unmute(
            self._config().post_speech_mute_delay_ms,
            then=self._on_cooldown_elapsed,
        )

    def _on_cooldown_elapsed(self, resumed: bool) -> None:
        if self.state != TurnState.COOLING_DOWN:
            return
        if resumed:
            self._transition(TurnState.LISTENING)
        else:
            self._transition(TurnState.IDLE)

    @staticmethod
    def _emit(callback: Optional[Callable], *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            log.error("turn.callback_error", error=str(e), error_type=type(e).__name__)
