"""
tests/unit/test_session.py — Conversation session + registry

Covers:
  - factory wiring: id format, capture configured from settings
  - runtime setters clamp and swap the config snapshot
  - history: recorded per completed turn, bounded by history_max,
    responder sees only the last history_window messages
  - dispose is terminal and idempotent
  - raw microphone/output audio reaches the feedback detector
  - SessionRegistry lookup, replacement of disposed sessions, close_all
"""

from __future__ import annotations

import numpy as np
import pytest

from config.settings import Settings
from speech.chain import ServiceTier, SilenceTier, SynthesisChain
from voice.capture import ManualCapture
from voice.session import ConversationSession, SessionRegistry
from voice.types import TurnState, TurnStatus

from fakes import FakePlayer, FakeResponder, FakeSynthesizer


# ── Helpers ───────────────────────────────────────────────────────────────────

def _session(scheduler, fake=None, **settings_overrides) -> ConversationSession:
    settings = Settings(**settings_overrides)
    return ConversationSession.create(
        settings,
        capture=ManualCapture(),
        player=FakePlayer(),
        responder=fake or FakeResponder(),
        chain=SynthesisChain([ServiceTier(FakeSynthesizer()), SilenceTier()]),
        scheduler=scheduler,
    )


async def _speak(session: ConversationSession, scheduler, text: str) -> None:
    session.capture.feed(text, is_final=True)
    scheduler.advance(500)
    await session.wait_for_turn()
    scheduler.advance(session.config.post_speech_mute_delay_ms)


# ── Construction ──────────────────────────────────────────────────────────────

class TestCreate:
    def test_identity_from_settings(self, scheduler):
        session = _session(scheduler, persona={"subject": "Biology", "difficulty": "College", "user_id": "u1"})
        assert session.id.startswith("sess_") and len(session.id) == 17
        assert session.key == ("u1", "Biology", "College")
        assert session.state == TurnState.IDLE
        assert not session.disposed

    def test_capture_configured(self, scheduler):
        session = _session(scheduler, voice={"recognition_language": "fr-FR", "interim_results": False})
        assert session.capture.language == "fr-FR"
        assert session.capture.interim_results is False
        assert session.capture.continuous is True

    def test_repr(self, scheduler):
        assert "state=idle turns=0" in repr(_session(scheduler))


# ── Configuration surface ─────────────────────────────────────────────────────

class TestSetters:
    @pytest.mark.parametrize("requested, applied", [(100, 300), (900, 900), (5000, 2000)])
    def test_silence_threshold_clamped(self, scheduler, requested, applied):
        session = _session(scheduler)
        assert session.set_silence_threshold(requested) == applied
        assert session.config.silence_threshold_ms == applied

    @pytest.mark.parametrize("requested, applied", [(0, 200), (750, 750), (3000, 1000)])
    def test_delay_after_speaking_clamped(self, scheduler, requested, applied):
        session = _session(scheduler)
        assert session.set_delay_after_speaking(requested) == applied
        assert session.config.post_speech_mute_delay_ms == applied

    def test_config_snapshot_is_replaced(self, scheduler):
        session = _session(scheduler)
        before = session.config
        session.set_silence_threshold(1200)
        assert before.silence_threshold_ms == 600
        assert session.config is not before

    def test_language_applies_to_capture(self, scheduler):
        session = _session(scheduler)
        session.set_language("es-ES")
        assert session.config.recognition_language == "es-ES"
        assert session.capture.language == "es-ES"

    def test_feedback_prevention_idle_does_not_mute(self, scheduler):
        session = _session(scheduler)
        session.set_feedback_prevention(False)
        assert session.config.feedback_prevention_enabled is False
        assert session.orchestrator.guard.muted is False

    @pytest.mark.asyncio
    async def test_new_threshold_used_by_next_utterance(self, scheduler):
        session = _session(scheduler)
        session.start()
        session.set_silence_threshold(1000)

        session.capture.feed("What is osmosis", is_final=False)
        scheduler.advance(999)
        assert session.state == TurnState.LISTENING
        scheduler.advance(1)
        assert session.state == TurnState.GENERATING
        await session.wait_for_turn()


# ── History ───────────────────────────────────────────────────────────────────

class TestHistory:
    @pytest.mark.asyncio
    async def test_completed_turn_recorded(self, scheduler):
        responder = FakeResponder(reply="Osmosis moves water.")
        session = _session(scheduler, fake=responder)
        results = []
        session.set_callbacks(on_turn_complete=results.append)
        session.start()

        await _speak(session, scheduler, "What is osmosis")

        assert [(m.role.value, m.content) for m in session.history] == [
            ("user", "What is osmosis"),
            ("assistant", "Osmosis moves water."),
        ]
        assert session.turn_count == 1
        assert results[0].status == TurnStatus.COMPLETED
        assert session.state == TurnState.LISTENING

    @pytest.mark.asyncio
    async def test_failed_turn_not_recorded(self, scheduler):
        from exceptions import GenerationUnavailableError
        session = _session(scheduler, fake=FakeResponder(error=GenerationUnavailableError("down")))
        errors = []
        session.set_callbacks(on_error=errors.append)
        session.start()

        await _speak(session, scheduler, "What is osmosis")

        assert list(session.history) == []
        assert session.turn_count == 0
        assert errors == ["Voice service is temporarily unavailable. Please try text mode instead."]

    @pytest.mark.asyncio
    async def test_window_and_cap(self, scheduler):
        responder = FakeResponder()
        session = _session(scheduler, fake=responder, responder={"history_window": 2, "history_max": 4})
        session.start()

        for text in ("first question", "second question", "third question", "fourth question"):
            await _speak(session, scheduler, text)

        assert len(session.history) == 4
        assert session.history[0].content == "third question"
        sent = responder.calls[-1][1].history
        assert [m.content for m in sent] == ["third question", responder.reply]

    @pytest.mark.asyncio
    async def test_study_mode_in_context(self, scheduler):
        responder = FakeResponder()
        session = _session(scheduler, fake=responder, responder={"study_mode": True})
        session.start()
        await _speak(session, scheduler, "Explain mitosis")
        assert responder.calls[0][1].study_mode is True
        assert responder.calls[0][1].session_id == session.id

    @pytest.mark.asyncio
    async def test_clear_history(self, scheduler):
        session = _session(scheduler)
        session.start()
        await _speak(session, scheduler, "What is osmosis")
        session.clear_history()
        assert len(session.history) == 0


# ── Lifecycle ─────────────────────────────────────────────────────────────────

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_pause_resume_submit(self, scheduler):
        session = _session(scheduler)
        session.start()
        session.pause()
        assert session.status_summary()["paused"] is True
        assert session.resume() is True

        session.capture.feed("What is osmosis", is_final=False)
        assert session.submit() is True
        await session.wait_for_turn()
        assert session.turn_count == 1

    @pytest.mark.asyncio
    async def test_dispose_is_terminal(self, scheduler):
        session = _session(scheduler)
        session.start()
        await session.dispose()
        await session.dispose()
        assert session.disposed
        assert session.state == TurnState.DISPOSED
        assert session.sampler.running is False

    def test_status_summary(self, scheduler):
        summary = _session(scheduler, persona={"persona": "fun-freddy"}).status_summary()
        assert summary["state"] == "idle"
        assert summary["persona"] == "fun-freddy"
        assert summary["silence_threshold_ms"] == 600
        assert summary["feedback_prevention"] is True
        assert summary["turns"] == 0


# ── Raw audio ─────────────────────────────────────────────────────────────────

def _rising_frames(start: float, count: int) -> list[np.ndarray]:
    return [np.full(512, start + 0.01 * i, dtype=np.float32) for i in range(count)]


class TestRawAudio:
    @pytest.mark.asyncio
    async def test_microphone_feedback_mutes_then_recovers(self, scheduler):
        session = _session(scheduler)
        session.start()
        assert session.orchestrator.guard.muted is False

        handled = [session.feed_microphone(f) for f in _rising_frames(0.11, 10)]
        for level in (0.21, 0.22):
            scheduler.advance(2001)
            handled.append(session.feed_microphone(np.full(512, level, dtype=np.float32)))

        assert handled[-1] is True and not any(handled[:-1])
        assert session.orchestrator.guard.muted is True
        assert session.detector.detections == 1

        scheduler.advance(2000)
        assert session.orchestrator.guard.muted is False
        assert session.capture.active is True
        assert session.state == TurnState.LISTENING

    @pytest.mark.asyncio
    async def test_output_fingerprint_cleared_after_turn(self, scheduler):
        session = _session(scheduler)
        session.start()
        session.feed_output(np.sin(np.linspace(0, 128 * np.pi, 1024)).astype(np.float32))
        assert session.detector.fingerprint is not None

        await _speak(session, scheduler, "What is osmosis")

        assert session.detector.fingerprint is None

    @pytest.mark.asyncio
    async def test_disposed_session_ignores_audio(self, scheduler):
        session = _session(scheduler)
        session.start()
        await session.dispose()

        assert session.feed_microphone(np.full(512, 0.5, dtype=np.float32)) is False
        session.feed_output(np.full(1024, 0.5, dtype=np.float32))
        assert session.detector.fingerprint is None

    def test_prevention_toggle_resets_counters(self, scheduler):
        session = _session(scheduler)
        for frame in _rising_frames(0.11, 10):
            session.feed_microphone(frame)
        assert session.detector.occurrences == 1
        session.set_feedback_prevention(True)
        assert session.detector.occurrences == 0


# ── Registry ──────────────────────────────────────────────────────────────────

class TestSessionRegistry:
    def test_get_or_create_reuses(self, scheduler):
        registry = SessionRegistry()
        first = registry.get_or_create(("u", "Bio", "College"), lambda: _session(scheduler))
        again = registry.get_or_create(("u", "Bio", "College"), lambda: _session(scheduler))
        assert first is again
        assert len(registry) == 1
        assert ("u", "Bio", "College") in registry
        assert registry.get(("u", "Chem", "College")) is None

    @pytest.mark.asyncio
    async def test_disposed_session_replaced(self, scheduler):
        registry = SessionRegistry()
        key = ("u", "Bio", "College")
        first = registry.get_or_create(key, lambda: _session(scheduler))
        await first.dispose()
        second = registry.get_or_create(key, lambda: _session(scheduler))
        assert second is not first
        assert registry.get(key) is second

    @pytest.mark.asyncio
    async def test_close_and_close_all(self, scheduler):
        registry = SessionRegistry()
        a = registry.get_or_create(("u", "A", "x"), lambda: _session(scheduler))
        b = registry.get_or_create(("u", "B", "x"), lambda: _session(scheduler))

        assert await registry.close(("u", "A", "x")) is True
        assert await registry.close(("u", "A", "x")) is False
        assert a.disposed and not b.disposed

        await registry.close_all()
        assert len(registry) == 0
        assert b.disposed
