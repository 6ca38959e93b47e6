"""
voice/feedback_guard.py — Feedback Guard

Keeps the engine from hearing itself. The guard is the only component
that starts or stops the capture engine and the only one that moves the
input gain.

    mute()              muted flag first, then stop capture, then an
                        exponential gain ramp to 0 (~100 ms)
    unmute()            refused while the session is paused; otherwise
                        restart capture and ramp gain linearly back to 1
    schedule_unmute(d)  unmute d ms from now (never immediately); a newer
                        call replaces a pending one

The muted flag is raised before capture is stopped, so the end-of-stream
event that stopping produces is already seen as muted by the segmenter.
"""

from __future__ import annotations

from typing import Callable, Optional

from observability.logger import get_logger
from voice.capture import CaptureEngine, GainControl, GainCurve
from voice.timers import Scheduler, Timer

log = get_logger(__name__)


class FeedbackGuard:

    def __init__(
        self,
        capture: CaptureEngine,
        scheduler: Scheduler,
        gain: Optional[GainControl] = None,
        ramp_ms: float = 100.0,
        is_paused: Callable[[], bool] = lambda: False,
    ):
        self._capture = capture
        self._gain = gain
        self._ramp_ms = ramp_ms
        self._is_paused = is_paused
        self._unmute_timer = Timer(scheduler, "unmute_delay")
        self.muted = False

    # ── Capture ownership ────────────────────────────────────────────────────

    @property
    def capturing(self) -> bool:
        return self._capture.active

    def start_capture(self) -> bool:
        """Start capture unless muted or paused. Returns True if capture is running."""
        if self.muted or self._is_paused():
            return False
        self._capture.start()
        return self._capture.active

    def stop_capture(self) -> None:
        self._capture.stop()

    # ── Mute / unmute ────────────────────────────────────────────────────────

    def mute(self) -> None:
        if self.muted:
            return
        self.muted = True
        self._unmute_timer.cancel()
        self._capture.stop()
        if self._gain is not None:
            self._gain.ramp(0.0, self._ramp_ms, GainCurve.EXPONENTIAL)
        log.debug("guard.muted")

    def unmute(self) -> bool:
        """Returns False when refused because the session is paused."""
        if self._is_paused():
            log.debug("guard.unmute_skipped", reason="paused")
            return False
        was_muted = self.muted
        self.muted = False
        self._capture.start()
        if self._gain is not None:
            self._gain.ramp(1.0, self._ramp_ms, GainCurve.LINEAR)
        if was_muted:
            log.debug("guard.unmuted")
        return True

    def schedule_unmute(self, delay_ms: float, then: Optional[Callable[[bool], None]] = None) -> None:
        """
        Unmute after `delay_ms`. `then` receives unmute()'s result once
        the delay has elapsed.
        """
        def _fire() -> None:
            resumed = self.unmute()
            if then is not None:
                then(resumed)

        self._unmute_timer.arm(max(delay_ms, 1.0), _fire)
        log.debug("guard.unmute_scheduled", delay_ms=delay_ms)

    @property
    def unmute_pending(self) -> bool:
        return self._unmute_timer.pending

    def cancel_pending(self) -> None:
        self._unmute_timer.cancel()

    def release(self) -> None:
        """Final teardown: stop capture and drop every pending timer, gain ramp included."""
        self.muted = True
        self._unmute_timer.cancel()
        self._capture.stop()
        if self._gain is not None:
            self._gain.cancel()
        log.debug("guard.released")

    # ── Runtime toggle ───────────────────────────────────────────────────────

    def apply_prevention(self, enabled: bool, ai_speaking: bool) -> None:
        """Enabling mid-speech mutes now; disabling mid-speech unmutes now."""
        if not ai_speaking:
            return
        if enabled:
            self.mute()
        else:
            self.unmute()
