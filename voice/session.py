"""
voice/session.py — Conversation Session

One ConversationSession exists per (user, subject, difficulty). It owns:

  - the voice configuration (an immutable VoiceConfig, swapped whole by
    the setters so timers always read a consistent snapshot)
  - the conversation history handed to the responder
  - the turn orchestrator (and through it segmenter, guard, pipeline)
  - the acoustic feedback detector fed with microphone and output PCM
  - the visualization sampler

SessionRegistry replaces a process-wide conversation map: callers look
sessions up by key and close them explicitly.
"""

from __future__ import annotations

import time
import uuid
from collections import deque
from typing import TYPE_CHECKING, Callable, Optional

from brain.responder import BaseResponder
from brain.types import Message, TurnContext
from config.settings import VoiceConfig, clamp_mute_delay, clamp_silence_threshold
from observability.logger import get_logger
from speech.chain import SynthesisChain
from speech.voices import PersonaVoice, voice_for
from voice.capture import CaptureEngine, GainControl
from voice.feedback_detector import FeedbackDetector
from voice.orchestrator import TurnOrchestrator
from voice.pipeline import ReplyPipeline
from voice.playback import AudioPlayer
from voice.timers import LoopScheduler, Scheduler
from voice.types import TurnResult, TurnState
from voice.visualizer import EnergySource, FrameObserver, VisualizationSampler

if TYPE_CHECKING:
    from config.settings import Settings

log = get_logger(__name__)

SessionKey = tuple[str, str, str]


class ConversationSession:
    """All runtime state for one voice conversation."""

    def __init__(
        self,
        session_id: str,
        settings: "Settings",
        responder: BaseResponder,
        chain: SynthesisChain,
        capture: CaptureEngine,
        player: AudioPlayer,
        scheduler: Optional[Scheduler] = None,
        gain: Optional[GainControl] = None,
        energy_source: Optional[EnergySource] = None,
        speaker_gain: Optional[GainControl] = None,
    ):
        self.id = session_id
        self.settings = settings
        self.user_id = settings.persona.user_id
        self.subject = settings.persona.subject
        self.persona = settings.persona.persona
        self.difficulty = settings.persona.difficulty
        self.created_at = time.time()

        self.config: VoiceConfig = settings.voice
        self.history: deque[Message] = deque(maxlen=settings.responder.history_max)
        self.turn_count = 0

        self.capture = capture
        capture.language = self.config.recognition_language
        capture.continuous = self.config.continuous
        capture.interim_results = self.config.interim_results

        scheduler = scheduler or LoopScheduler()
        self.pipeline = ReplyPipeline(
            responder,
            chain,
            player,
            scheduler,
            config=lambda: self.config,
            responder_timeout=settings.responder.timeout_seconds,
        )
        self.orchestrator = TurnOrchestrator(
            capture,
            self.pipeline,
            scheduler,
            config=lambda: self.config,
            context=self._turn_context,
            voice=self._voice,
            gain=gain,
            session_id=session_id,
            user_id=self.user_id,
        )
        self.orchestrator.on_turn_complete = self._record_turn
        self.detector = FeedbackDetector(
            self.orchestrator.guard,
            scheduler,
            config=lambda: self.config,
            ai_speaking=lambda: self.orchestrator.ai_speaking,
            may_unmute=lambda: self.state == TurnState.LISTENING,
            speaker_gain=speaker_gain,
        )
        self.sampler = VisualizationSampler(energy_source, self.config.visualization_interval_ms)

        self._on_turn_complete: Optional[Callable[[TurnResult], None]] = None

        log.debug("session.created", session_id=session_id, user_id=self.user_id, subject=self.subject)

    # ── Factory ──────────────────────────────────────────────────────────────

    @classmethod
    def create(
        cls,
        settings: "Settings",
        capture: CaptureEngine,
        player: AudioPlayer,
        responder: Optional[BaseResponder] = None,
        chain: Optional[SynthesisChain] = None,
        scheduler: Optional[Scheduler] = None,
        gain: Optional[GainControl] = None,
        energy_source: Optional[EnergySource] = None,
        speaker_gain: Optional[GainControl] = None,
    ) -> "ConversationSession":
        if responder is None:
            from brain import ResponderFactory
            responder = ResponderFactory.from_settings(settings)
        if chain is None:
            from speech import build_synthesis_chain
            chain = build_synthesis_chain(settings)
        return cls(
            session_id=f"sess_{uuid.uuid4().hex[:12]}",
            settings=settings,
            responder=responder,
            chain=chain,
            capture=capture,
            player=player,
            scheduler=scheduler,
            gain=gain,
            energy_source=energy_source,
            speaker_gain=speaker_gain,
        )

    @property
    def key(self) -> SessionKey:
        return (self.user_id, self.subject, self.difficulty)

    @property
    def state(self) -> TurnState:
        return self.orchestrator.state

    @property
    def disposed(self) -> bool:
        return self.orchestrator.state == TurnState.DISPOSED

    # ── Callbacks ────────────────────────────────────────────────────────────

    def set_callbacks(
        self,
        on_transcript: Optional[Callable[[str, bool], None]] = None,
        on_utterance: Optional[Callable[[str], None]] = None,
        on_response: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
        on_state_change: Optional[Callable[[TurnState, TurnState], None]] = None,
        on_audio_start: Optional[Callable[[], None]] = None,
        on_audio_end: Optional[Callable[[], None]] = None,
        on_turn_complete: Optional[Callable[[TurnResult], None]] = None,
    ) -> None:
        self.orchestrator.segmenter.set_observer(on_transcript)
        self.orchestrator.on_utterance = on_utterance
        self.orchestrator.on_state_change = on_state_change
        self.orchestrator.on_error = on_error
        self.pipeline.on_error = on_error
        self.pipeline.on_response = on_response
        self.pipeline.on_audio_start = on_audio_start
        self.pipeline.on_audio_end = on_audio_end
        self._on_turn_complete = on_turn_complete

    # ── Configuration surface ────────────────────────────────────────────────

    def set_language(self, code: str) -> None:
        """Takes effect the next time capture starts."""
        self._update_config(recognition_language=code)
        self.capture.language = self.config.recognition_language

    def set_silence_threshold(self, ms: int) -> int:
        value = clamp_silence_threshold(ms)
        self._update_config(silence_threshold_ms=value)
        return value

    def set_delay_after_speaking(self, ms: int) -> int:
        value = clamp_mute_delay(ms)
        self._update_config(post_speech_mute_delay_ms=value)
        return value

    def set_feedback_prevention(self, enabled: bool) -> None:
        self._update_config(feedback_prevention_enabled=enabled)
        self.orchestrator.guard.apply_prevention(enabled, self.orchestrator.ai_speaking)
        self.detector.reset()

    def set_visualization_observer(self, observer: Optional[FrameObserver]) -> None:
        self.sampler.set_observer(observer)

    def _update_config(self, **changes) -> None:
        self.config = VoiceConfig.model_validate({**self.config.model_dump(), **changes})
        log.info("session.config_changed", session_id=self.id, **changes)

    # ── Raw audio ────────────────────────────────────────────────────────────

    def feed_microphone(self, pcm) -> bool:
        """Microphone PCM frame for feedback detection. True if feedback was handled."""
        if self.disposed:
            return False
        return self.detector.process(pcm)

    def feed_output(self, pcm) -> None:
        """Decoded reply audio as it is handed to the speaker."""
        if self.disposed:
            return
        self.detector.observe_output(pcm)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def start(self) -> bool:
        """Start listening and the visualization loop. Needs a running event loop."""
        started = self.orchestrator.start()
        self.sampler.start()
        return started

    def stop(self) -> None:
        self.orchestrator.stop()

    def pause(self) -> None:
        self.orchestrator.pause()
        self.detector.reset()

    def resume(self) -> bool:
        return self.orchestrator.resume()

    def submit(self) -> bool:
        """Push-to-submit: finalize whatever is buffered right now."""
        return self.orchestrator.force_finalize()

    async def wait_for_turn(self) -> None:
        await self.orchestrator.wait_for_turn()

    async def dispose(self) -> None:
        if self.disposed:
            return
        self.orchestrator.dispose()
        self.detector.release()
        await self.sampler.stop()
        log.info("session.disposed", session_id=self.id, turns=self.turn_count)

    # ── History ──────────────────────────────────────────────────────────────

    def _turn_context(self) -> TurnContext:
        window = self.settings.responder.history_window
        recent = list(self.history)[-window:] if window else []
        return TurnContext(
            subject=self.subject,
            persona=self.persona,
            difficulty=self.difficulty,
            session_id=self.id,
            study_mode=self.settings.responder.study_mode,
            history=recent,
        )

    def _voice(self) -> PersonaVoice:
        return voice_for(self.persona)

    def _record_turn(self, result: TurnResult) -> None:
        self.detector.clear_output()
        if result.reply_text:
            self.history.append(Message.user(result.utterance))
            self.history.append(Message.assistant(result.reply_text))
            self.turn_count += 1
        if self._on_turn_complete is not None:
            self._on_turn_complete(result)

    def clear_history(self) -> None:
        self.history.clear()

    # ── Summary ──────────────────────────────────────────────────────────────

    def status_summary(self) -> dict:
        cfg = self.config
        return {
            "session_id": self.id,
            "state": self.state.value,
            "paused": self.orchestrator.paused,
            "muted": self.orchestrator.guard.muted,
            "subject": self.subject,
            "persona": self.persona,
            "difficulty": self.difficulty,
            "language": cfg.recognition_language,
            "silence_threshold_ms": cfg.silence_threshold_ms,
            "post_speech_mute_delay_ms": cfg.post_speech_mute_delay_ms,
            "feedback_prevention": cfg.feedback_prevention_enabled,
            "turns": self.turn_count,
            "history_messages": len(self.history),
            "uptime_seconds": round(time.time() - self.created_at, 1),
        }

    def __repr__(self) -> str:
        return f"<ConversationSession id={self.id} state={self.state.value} turns={self.turn_count}>"


class SessionRegistry:
    """Sessions keyed by (user_id, subject, difficulty)."""

    def __init__(self) -> None:
        self._sessions: dict[SessionKey, ConversationSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, key: SessionKey) -> bool:
        return key in self._sessions

    def get(self, key: SessionKey) -> Optional[ConversationSession]:
        return self._sessions.get(key)

    def get_or_create(
        self,
        key: SessionKey,
        factory: Callable[[], ConversationSession],
    ) -> ConversationSession:
        session = self._sessions.get(key)
        if session is None or session.disposed:
            session = factory()
            self._sessions[key] = session
            log.debug("registry.session_added", key=key, session_id=session.id)
        return session

    async def close(self, key: SessionKey) -> bool:
        session = self._sessions.pop(key, None)
        if session is None:
            return False
        await session.dispose()
        return True

    async def close_all(self) -> None:
        for key in list(self._sessions):
            await self.close(key)
