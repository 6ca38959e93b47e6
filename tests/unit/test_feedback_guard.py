"""
tests/unit/test_feedback_guard.py — Feedback Guard + capture primitives

Covers:
  - mute(): flag first, capture stopped, exponential ramp down, idempotent
  - unmute(): restarts capture, linear ramp up, refused while paused
  - schedule_unmute(): never immediate, replaced by a newer call, cancellable
  - apply_prevention(): runtime toggle while the AI is speaking
  - ManualCapture lifecycle and SoftwareGain ramps
"""

from __future__ import annotations

import pytest

from voice.capture import GainCurve, ManualCapture, SoftwareGain, capture_error_message
from voice.feedback_guard import FeedbackGuard

from fakes import RecordingGain


# ── Helpers ───────────────────────────────────────────────────────────────────

def _make_guard(scheduler, paused: list[bool] | None = None):
    capture = ManualCapture()
    gain = RecordingGain()
    flag = paused if paused is not None else [False]
    guard = FeedbackGuard(capture, scheduler, gain=gain, ramp_ms=100, is_paused=lambda: flag[0])
    return guard, capture, gain


# ── mute / unmute ─────────────────────────────────────────────────────────────

class TestMute:
    def test_mute_stops_capture_and_ramps_down(self, scheduler):
        guard, capture, gain = _make_guard(scheduler)
        guard.start_capture()

        guard.mute()

        assert guard.muted is True
        assert capture.active is False
        assert gain.ramps[-1] == (0.0, 100, "exponential")

    def test_muted_flag_set_before_end_event(self, scheduler):
        guard, capture, _ = _make_guard(scheduler)
        seen = []
        capture.bind(lambda t, f: None, lambda c: None, lambda: seen.append(guard.muted))
        guard.start_capture()
        guard.mute()
        assert seen == [True]

    def test_mute_is_noop_when_muted(self, scheduler):
        guard, capture, gain = _make_guard(scheduler)
        guard.mute()
        guard.mute()
        assert len(gain.ramps) == 1

    def test_start_capture_refused_while_muted(self, scheduler):
        guard, capture, _ = _make_guard(scheduler)
        guard.mute()
        assert guard.start_capture() is False
        assert capture.active is False


class TestUnmute:
    def test_unmute_restarts_capture_and_ramps_up(self, scheduler):
        guard, capture, gain = _make_guard(scheduler)
        guard.mute()

        assert guard.unmute() is True

        assert guard.muted is False
        assert capture.active is True
        assert gain.ramps[-1] == (1.0, 100, "linear")

    def test_unmute_refused_while_paused(self, scheduler):
        paused = [False]
        guard, capture, _ = _make_guard(scheduler, paused)
        guard.mute()
        paused[0] = True

        assert guard.unmute() is False
        assert guard.muted is True
        assert capture.active is False


class TestScheduleUnmute:
    def test_fires_after_delay_never_immediately(self, scheduler):
        guard, capture, _ = _make_guard(scheduler)
        guard.mute()
        resumed = []
        guard.schedule_unmute(500, then=resumed.append)

        assert guard.muted is True
        scheduler.advance(499)
        assert guard.muted is True
        scheduler.advance(1)
        assert guard.muted is False
        assert resumed == [True]

    def test_zero_delay_still_deferred(self, scheduler):
        guard, _, _ = _make_guard(scheduler)
        guard.mute()
        guard.schedule_unmute(0)
        assert guard.muted is True
        scheduler.advance(1)
        assert guard.muted is False

    def test_newer_call_replaces_pending(self, scheduler):
        guard, _, _ = _make_guard(scheduler)
        guard.mute()
        calls = []
        guard.schedule_unmute(500, then=lambda r: calls.append("first"))
        guard.schedule_unmute(800, then=lambda r: calls.append("second"))
        scheduler.advance(1000)
        assert calls == ["second"]

    def test_cancel_pending(self, scheduler):
        guard, _, _ = _make_guard(scheduler)
        guard.mute()
        guard.schedule_unmute(500)
        assert guard.unmute_pending
        guard.cancel_pending()
        scheduler.advance(1000)
        assert guard.muted is True

    def test_mute_cancels_pending_unmute(self, scheduler):
        guard, _, _ = _make_guard(scheduler)
        guard.schedule_unmute(500)
        guard.mute()
        scheduler.advance(1000)
        assert guard.muted is True

    def test_paused_when_fired_reports_not_resumed(self, scheduler):
        paused = [False]
        guard, _, _ = _make_guard(scheduler, paused)
        guard.mute()
        resumed = []
        guard.schedule_unmute(500, then=resumed.append)
        paused[0] = True
        scheduler.advance(500)
        assert resumed == [False]
        assert guard.muted is True


class TestPreventionToggle:
    def test_enable_while_speaking_mutes(self, scheduler):
        guard, capture, _ = _make_guard(scheduler)
        guard.start_capture()
        guard.apply_prevention(True, ai_speaking=True)
        assert guard.muted is True

    def test_disable_while_speaking_unmutes(self, scheduler):
        guard, capture, _ = _make_guard(scheduler)
        guard.mute()
        guard.apply_prevention(False, ai_speaking=True)
        assert guard.muted is False
        assert capture.active is True

    def test_no_effect_when_not_speaking(self, scheduler):
        guard, _, gain = _make_guard(scheduler)
        guard.apply_prevention(True, ai_speaking=False)
        assert guard.muted is False
        assert gain.ramps == []

    def test_release_cancels_everything(self, scheduler):
        guard, capture, gain = _make_guard(scheduler)
        guard.start_capture()
        guard.schedule_unmute(500)
        guard.release()
        scheduler.advance(1000)
        assert guard.muted is True
        assert capture.active is False
        assert gain.cancelled == 1


# ── Capture primitive ─────────────────────────────────────────────────────────

class TestManualCapture:
    def test_feed_dropped_when_inactive(self):
        capture = ManualCapture()
        got = []
        capture.bind(lambda t, f: got.append(t), lambda c: None, lambda: None)
        assert capture.feed("hello there") is False
        capture.start()
        assert capture.feed("hello there") is True
        assert got == ["hello there"]

    def test_interim_dropped_when_interim_results_off(self):
        capture = ManualCapture(interim_results=False)
        capture.start()
        assert capture.feed("partial", is_final=False) is False

    def test_fail_reports_error_then_end(self):
        capture = ManualCapture()
        events = []
        capture.bind(lambda t, f: None, lambda c: events.append(("error", c)), lambda: events.append(("end",)))
        capture.start()
        capture.fail("network")
        assert events == [("error", "network"), ("end",)]
        assert capture.active is False

    def test_error_messages(self):
        assert capture_error_message("aborted") is None
        assert "Network error" in capture_error_message("network")
        assert "Microphone access denied" in capture_error_message("not-allowed")
        assert "No microphone detected" in capture_error_message("audio-capture")
        assert capture_error_message("bad-grammar") == "Speech recognition error: bad-grammar"


class TestSoftwareGain:
    def test_linear_ramp_reaches_target(self, scheduler):
        values = []
        gain = SoftwareGain(scheduler, initial=0.0, on_change=values.append)
        gain.ramp(1.0, 100, GainCurve.LINEAR)
        scheduler.advance(50)
        assert 0.0 < gain.value < 1.0
        scheduler.advance(50)
        assert gain.value == 1.0
        assert values == sorted(values)

    def test_exponential_ramp_reaches_zero(self, scheduler):
        gain = SoftwareGain(scheduler, initial=1.0)
        gain.ramp(0.0, 100, GainCurve.EXPONENTIAL)
        scheduler.advance(10)
        assert 0.0 < gain.value < 1.0
        scheduler.advance(90)
        assert gain.value == 0.0
        assert not gain.ramping

    def test_zero_duration_is_immediate(self, scheduler):
        gain = SoftwareGain(scheduler, initial=1.0)
        gain.ramp(0.25, 0)
        assert gain.value == pytest.approx(0.25)

    def test_new_ramp_replaces_old(self, scheduler):
        gain = SoftwareGain(scheduler, initial=1.0)
        gain.ramp(0.0, 100, GainCurve.EXPONENTIAL)
        scheduler.advance(20)
        gain.ramp(1.0, 100)
        scheduler.advance(200)
        assert gain.value == 1.0
