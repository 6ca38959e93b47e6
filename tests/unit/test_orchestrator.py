"""
tests/unit/test_orchestrator.py — Turn Orchestrator Tests

Drives the whole engine (capture → segmenter → orchestrator → pipeline →
guard) with a ManualCapture, a FakePlayer and a ManualScheduler.

Test groups
-----------
  scenarios       — silence finalize, final debounce, rate-limited responder,
                    all synthesis tiers failing
  properties      — no double submission, idempotent finalize, guard
                    symmetry on every exit path, noise rejection
  state machine   — transition table, observer, unexpected exceptions
  lifecycle       — pause / resume / stop / dispose / force_finalize
  capture events  — restart after end, error messages, trailing flush
"""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest
import structlog

from brain.types import TurnContext
from config.settings import VoiceConfig
from exceptions import (
    GenerationRateLimitError,
    InvalidTransitionError,
    PlaybackError,
    SessionDisposedError,
    SynthesisUnavailableError,
)
from speech.chain import LocalTier, ServiceTier, SilenceTier, SynthesisChain
from speech.voices import voice_for
from voice.capture import ManualCapture
from voice.orchestrator import TurnOrchestrator
from voice.pipeline import ReplyPipeline, VOICE_OUTPUT_FAILED
from voice.types import TurnState, TurnStatus

from fakes import FakeLocalSynthesizer, FakePlayer, FakeResponder, FakeSynthesizer, RecordingGain

S = TurnState


# ─────────────────────────────────────────────────────────────────────────────
# Harness
# ─────────────────────────────────────────────────────────────────────────────

class _Engine:

    def __init__(self, scheduler, responder=None, player=None, config=None, tiers=None):
        self.scheduler = scheduler
        self.config = config or VoiceConfig()
        self.responder = responder or FakeResponder()
        self.player = player or FakePlayer()
        self.capture = ManualCapture()
        self.gain = RecordingGain()
        self.service = FakeSynthesizer()
        chain = SynthesisChain(tiers if tiers is not None else [ServiceTier(self.service), SilenceTier()])
        self.pipeline = ReplyPipeline(
            self.responder, chain, self.player, scheduler, lambda: self.config,
        )
        self.orch = TurnOrchestrator(
            self.capture,
            self.pipeline,
            scheduler,
            config=lambda: self.config,
            context=lambda: TurnContext(subject="Biology", persona="buddy-ben", difficulty="College"),
            voice=lambda: voice_for("buddy-ben"),
            gain=self.gain,
            session_id="sess_test",
        )
        self.errors: list[str] = []
        self.results = []
        self.transitions: list[tuple[TurnState, TurnState]] = []
        self.pipeline.on_error = self.errors.append
        self.orch.on_error = self.errors.append
        self.orch.on_turn_complete = self.results.append
        self.orch.on_state_change = lambda a, b: self.transitions.append((a, b))

        self.mute = MagicMock(wraps=self.orch.guard.mute)
        self.schedule_unmute = MagicMock(wraps=self.orch.guard.schedule_unmute)
        self.orch.guard.mute = self.mute
        self.orch.guard.schedule_unmute = self.schedule_unmute

    @property
    def state(self) -> TurnState:
        return self.orch.state


async def _settle(engine: _Engine) -> None:
    await engine.orch.wait_for_turn()
    await asyncio.sleep(0)


# ─────────────────────────────────────────────────────────────────────────────
# Scenarios
# ─────────────────────────────────────────────────────────────────────────────

class TestScenarios:
    @pytest.mark.asyncio
    async def test_silence_finalize_then_back_to_listening(self, scheduler):
        e = _Engine(scheduler)
        e.orch.start()

        e.capture.feed("What is", is_final=False)
        scheduler.advance(599)
        assert e.state == S.LISTENING
        scheduler.advance(1)
        assert e.state == S.GENERATING

        await _settle(e)
        assert [c[0] for c in e.responder.calls] == ["What is"]
        assert e.state == S.COOLING_DOWN
        assert e.orch.guard.muted is True

        scheduler.advance(499)
        assert e.state == S.COOLING_DOWN
        scheduler.advance(1)
        assert e.state == S.LISTENING
        assert e.capture.active is True
        assert e.orch.guard.muted is False

    @pytest.mark.asyncio
    async def test_final_debounce_with_duplicate_final(self, scheduler):
        e = _Engine(scheduler)
        e.orch.start()

        e.capture.feed("Explain photosynthesis", is_final=True)
        scheduler.advance(50)
        e.capture.feed("Explain photosynthesis", is_final=True)
        scheduler.advance(449)
        assert e.responder.calls == []
        scheduler.advance(1)
        await _settle(e)

        assert [c[0] for c in e.responder.calls] == ["Explain photosynthesis"]
        scheduler.advance(5000)
        assert len(e.responder.calls) == 1

    @pytest.mark.asyncio
    async def test_rate_limited_responder(self, scheduler):
        responder = FakeResponder(error=GenerationRateLimitError("429", provider="groq"))
        e = _Engine(scheduler, responder=responder)
        e.orch.start()

        e.capture.feed("Explain photosynthesis", is_final=True)
        scheduler.advance(500)
        await _settle(e)

        assert e.service.calls == []
        assert e.player.played == []
        assert e.errors == ["Too many requests. Please wait a moment before trying again."]
        assert e.results[0].status == TurnStatus.GENERATION_FAILED
        e.schedule_unmute.assert_called_once()
        assert e.state == S.COOLING_DOWN

        scheduler.advance(500)
        assert e.state == S.LISTENING

    @pytest.mark.asyncio
    async def test_all_synthesis_tiers_fail(self, scheduler):
        service = FakeSynthesizer(error=SynthesisUnavailableError("down"))
        local = FakeLocalSynthesizer(error=SynthesisUnavailableError("no model"))
        e = _Engine(scheduler, tiers=[ServiceTier(service), LocalTier(local), SilenceTier()])
        starts, ends = [], []
        e.pipeline.on_audio_start = lambda: starts.append(1)
        e.pipeline.on_audio_end = lambda: ends.append(1)
        e.orch.start()

        e.capture.feed("Explain photosynthesis", is_final=True)
        scheduler.advance(500)
        await _settle(e)

        assert e.player.on_play_calls == 1
        assert starts == [1] and ends == [1]
        assert e.results[0].tier == "silence"
        assert e.errors == [VOICE_OUTPUT_FAILED]
        e.schedule_unmute.assert_called_once()

        scheduler.advance(500)
        assert e.state == S.LISTENING


# ─────────────────────────────────────────────────────────────────────────────
# Properties
# ─────────────────────────────────────────────────────────────────────────────

class TestProperties:
    @pytest.mark.asyncio
    async def test_no_double_submission_while_in_turn(self, scheduler):
        responder = FakeResponder()
        responder.gate = asyncio.Event()
        e = _Engine(scheduler, responder=responder, config=VoiceConfig(feedback_prevention_enabled=False))
        e.orch.start()

        e.capture.feed("Explain photosynthesis", is_final=True)
        scheduler.advance(500)
        await asyncio.sleep(0)
        assert e.state == S.GENERATING

        for _ in range(5):
            e.capture.feed("Explain photosynthesis", is_final=True)
            e.orch.segmenter.finalize("Explain photosynthesis")
            e.orch.force_finalize()
            scheduler.advance(600)
        e.capture.feed("Something else entirely", is_final=True)
        scheduler.advance(600)

        responder.gate.set()
        await _settle(e)
        assert len(responder.calls) == 1

    @pytest.mark.asyncio
    async def test_idempotent_finalize(self, scheduler):
        e = _Engine(scheduler)
        e.orch.start()

        e.orch.segmenter.finalize("What is light")
        e.orch.segmenter.finalize("What is light")
        await _settle(e)

        assert len(e.responder.calls) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["generation_failure", "synthesis_failure", "playback_success", "playback_error"])
    async def test_guard_symmetry(self, scheduler, path):
        responder = FakeResponder()
        player = FakePlayer()
        tiers = None
        if path == "generation_failure":
            responder.error = GenerationRateLimitError("429")
        elif path == "synthesis_failure":
            tiers = [ServiceTier(FakeSynthesizer(error=SynthesisUnavailableError("down"))), SilenceTier()]
        elif path == "playback_error":
            player.fail = PlaybackError("device gone")
        e = _Engine(scheduler, responder=responder, player=player, tiers=tiers)
        e.orch.start()

        e.capture.feed("Explain photosynthesis", is_final=True)
        scheduler.advance(500)
        await _settle(e)
        scheduler.advance(1000)

        assert e.mute.call_count == 1
        assert e.schedule_unmute.call_count == 1
        assert e.orch.is_processing is False
        assert e.state == S.LISTENING

    @pytest.mark.asyncio
    async def test_noise_never_finalizes(self, scheduler):
        e = _Engine(scheduler)
        e.orch.start()

        e.capture.feed("uh", is_final=False)
        e.capture.feed("ok", is_final=True)
        scheduler.advance(5000)

        assert e.orch.segmenter.buffer.empty
        assert e.responder.calls == []
        assert e.state == S.LISTENING


# ─────────────────────────────────────────────────────────────────────────────
# State machine
# ─────────────────────────────────────────────────────────────────────────────

class TestStateMachine:
    @pytest.mark.asyncio
    async def test_full_turn_transitions(self, scheduler):
        e = _Engine(scheduler)
        e.orch.start()
        e.capture.feed("Explain photosynthesis", is_final=True)
        scheduler.advance(500)
        await _settle(e)
        scheduler.advance(500)

        assert e.transitions == [
            (S.IDLE, S.LISTENING),
            (S.LISTENING, S.FINALIZING),
            (S.FINALIZING, S.GENERATING),
            (S.GENERATING, S.SYNTHESIZING),
            (S.SYNTHESIZING, S.PLAYING),
            (S.PLAYING, S.COOLING_DOWN),
            (S.COOLING_DOWN, S.LISTENING),
        ]

    @pytest.mark.asyncio
    async def test_turn_log_context_follows_stages(self, scheduler):
        seen = {}

        class _ContextResponder(FakeResponder):
            async def generate(self, text, context):
                seen["generate"] = structlog.contextvars.get_contextvars()
                return await super().generate(text, context)

        class _ContextSynthesizer(FakeSynthesizer):
            async def synthesize(self, text, voice):
                seen["synthesize"] = structlog.contextvars.get_contextvars()
                return await super().synthesize(text, voice)

        synth = _ContextSynthesizer()
        e = _Engine(scheduler, responder=_ContextResponder(), tiers=[ServiceTier(synth), SilenceTier()])
        e.orch.start()
        e.capture.feed("Explain photosynthesis", is_final=True)
        scheduler.advance(500)
        await _settle(e)

        turn_id = e.orch.last_turn_id
        assert turn_id.startswith("trn_")
        assert seen["generate"]["turn_id"] == turn_id
        assert seen["generate"]["session_id"] == "sess_test"
        assert seen["generate"]["turn_state"] == "generating"
        assert seen["synthesize"]["turn_state"] == "synthesizing"
        assert "turn_id" not in structlog.contextvars.get_contextvars()

    def test_invalid_transition_raises(self, scheduler):
        e = _Engine(scheduler)
        with pytest.raises(InvalidTransitionError) as exc_info:
            e.orch._transition(S.PLAYING)
        assert "idle -> playing" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_unexpected_exception_still_cools_down(self, scheduler):
        responder = FakeResponder(error=RuntimeError("bug"))
        e = _Engine(scheduler, responder=responder)
        e.orch.start()
        e.capture.feed("Explain photosynthesis", is_final=True)
        scheduler.advance(500)
        await _settle(e)

        assert e.errors == ["Something went wrong. Please try again later."]
        assert e.orch.is_processing is False
        e.schedule_unmute.assert_called_once()
        scheduler.advance(500)
        assert e.state == S.LISTENING

    @pytest.mark.asyncio
    async def test_prevention_disabled_keeps_capture_running(self, scheduler):
        e = _Engine(scheduler, config=VoiceConfig(feedback_prevention_enabled=False))
        e.orch.start()
        e.capture.feed("Explain photosynthesis", is_final=True)
        scheduler.advance(500)
        assert e.capture.active is True
        await _settle(e)

        e.mute.assert_not_called()
        e.schedule_unmute.assert_called_once()

    @pytest.mark.asyncio
    async def test_ai_speaking_only_while_playing(self, scheduler):
        player = FakePlayer()
        player.hold = True
        e = _Engine(scheduler, player=player)
        e.orch.start()
        assert e.orch.ai_speaking is False
        e.capture.feed("Explain photosynthesis", is_final=True)
        scheduler.advance(500)
        while e.state != S.PLAYING:
            await asyncio.sleep(0)
        assert e.orch.ai_speaking is True
        player.stop()
        await _settle(e)
        assert e.orch.ai_speaking is False


# ─────────────────────────────────────────────────────────────────────────────
# Lifecycle
# ─────────────────────────────────────────────────────────────────────────────

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_pause_mid_turn_is_sticky(self, scheduler):
        responder = FakeResponder()
        responder.gate = asyncio.Event()
        e = _Engine(scheduler, responder=responder)
        e.orch.start()
        e.capture.feed("Explain photosynthesis", is_final=True)
        scheduler.advance(500)
        await asyncio.sleep(0)

        e.orch.pause()
        await _settle(e)

        assert e.state == S.IDLE
        assert e.orch.is_processing is False
        assert e.orch.guard.muted is True
        e.schedule_unmute.assert_not_called()
        assert e.results == []

        scheduler.advance(10_000)
        assert e.state == S.IDLE
        assert e.capture.active is False
        assert e.orch.start() is False

    @pytest.mark.asyncio
    async def test_pause_clears_pending_timers(self, scheduler):
        e = _Engine(scheduler)
        e.orch.start()
        e.capture.feed("What is", is_final=False)
        e.orch.pause()
        scheduler.advance(5000)
        assert e.responder.calls == []
        assert not e.orch.segmenter.timers_pending

    @pytest.mark.asyncio
    async def test_resume_restarts_listening(self, scheduler):
        e = _Engine(scheduler)
        e.orch.start()
        e.orch.pause()

        assert e.orch.resume() is True
        assert e.state == S.LISTENING
        assert e.capture.active is True
        assert e.orch.guard.muted is False

    def test_resume_when_not_paused(self, scheduler):
        e = _Engine(scheduler)
        assert e.orch.resume() is False

    @pytest.mark.asyncio
    async def test_pause_during_cooldown_cancels_unmute(self, scheduler):
        e = _Engine(scheduler)
        e.orch.start()
        e.capture.feed("Explain photosynthesis", is_final=True)
        scheduler.advance(500)
        await _settle(e)
        assert e.state == S.COOLING_DOWN

        e.orch.pause()
        scheduler.advance(1000)
        assert e.state == S.IDLE
        assert e.capture.active is False

    @pytest.mark.asyncio
    async def test_stop_offers_trailing_buffer(self, scheduler):
        e = _Engine(scheduler)
        e.orch.start()
        e.capture.feed("What is", is_final=False)

        e.orch.stop()
        await _settle(e)
        assert [c[0] for c in e.responder.calls] == ["What is"]

        scheduler.advance(500)
        assert e.state == S.IDLE
        assert e.capture.active is False
        assert e.orch.paused is False

    def test_stop_without_buffer_goes_idle(self, scheduler):
        e = _Engine(scheduler)
        e.orch.start()
        e.orch.stop()
        scheduler.advance(1000)
        assert e.state == S.IDLE
        assert e.capture.active is False
        assert e.orch.start() is True
        assert e.capture.active is True

    @pytest.mark.asyncio
    async def test_force_finalize_bypasses_timers(self, scheduler):
        e = _Engine(scheduler)
        e.orch.start()
        e.capture.feed("What is", is_final=False)
        assert e.orch.force_finalize() is True
        await _settle(e)
        assert [c[0] for c in e.responder.calls] == ["What is"]

    @pytest.mark.asyncio
    async def test_dispose_stops_playback_and_is_terminal(self, scheduler):
        player = FakePlayer()
        player.hold = True
        e = _Engine(scheduler, player=player)
        e.orch.start()
        e.capture.feed("Explain photosynthesis", is_final=True)
        scheduler.advance(500)
        while e.state != S.PLAYING:
            await asyncio.sleep(0)

        e.orch.dispose()
        await _settle(e)

        assert e.state == S.DISPOSED
        assert player.stop_calls == 1
        assert e.capture.active is False
        assert e.gain.cancelled == 1
        assert scheduler.pending == 0
        with pytest.raises(SessionDisposedError):
            e.orch.start()
        e.orch.dispose()
        e.orch.pause()
        assert e.state == S.DISPOSED


# ─────────────────────────────────────────────────────────────────────────────
# Capture events
# ─────────────────────────────────────────────────────────────────────────────

class TestCaptureEvents:
    def test_restart_after_spontaneous_end(self, scheduler):
        e = _Engine(scheduler)
        e.orch.start()
        e.capture.end()
        assert e.capture.active is False

        scheduler.advance(299)
        assert e.capture.active is False
        scheduler.advance(1)
        assert e.capture.active is True

    def test_network_error_reported_and_restarted(self, scheduler):
        e = _Engine(scheduler)
        e.orch.start()
        e.capture.fail("network")
        assert e.errors == ["Network error occurred. Please check your connection."]
        scheduler.advance(300)
        assert e.capture.active is True

    def test_abort_is_silent(self, scheduler):
        e = _Engine(scheduler)
        e.orch.start()
        e.capture.fail("aborted")
        assert e.errors == []

    def test_unknown_error_code_reported_generically(self, scheduler):
        e = _Engine(scheduler)
        e.orch.start()
        e.capture.fail("bad-grammar")
        assert e.errors == ["Speech recognition error: bad-grammar"]
        assert e.orch.state == TurnState.LISTENING

    def test_no_restart_while_paused(self, scheduler):
        e = _Engine(scheduler)
        e.orch.start()
        e.orch.pause()
        e.capture.end()
        scheduler.advance(1000)
        assert e.capture.active is False

    @pytest.mark.asyncio
    async def test_trailing_buffer_flushed_on_end(self, scheduler):
        e = _Engine(scheduler)
        e.orch.start()
        e.capture.feed("What is", is_final=False)
        e.capture.end()
        await _settle(e)
        assert [c[0] for c in e.responder.calls] == ["What is"]
