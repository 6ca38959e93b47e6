"""
voice/capture.py — Capture and gain primitives

The engine never talks to a microphone or a speech recogniser directly.
It consumes two narrow capabilities:

    CaptureEngine  — continuous speech recognition producing transcript
                     snapshots (start/stop, bind(on_result, on_error, on_end))
    GainControl    — an input gain that can be ramped (click-free mute)

ManualCapture is the in-process CaptureEngine: something else (the
terminal interface, a test, a recogniser running in another thread via
loop.call_soon_threadsafe) pushes transcript events into it with feed().

SoftwareGain ramps a float gain in small scheduler steps and reports each
step to an optional sink, e.g. a sounddevice input callback multiplying
samples by the current value.
"""

from __future__ import annotations

import math
from enum import Enum
from typing import Callable, Optional, Protocol

from observability.logger import get_logger
from voice.timers import Scheduler, Timer

log = get_logger(__name__)

ResultCallback = Callable[[str, bool], None]
ErrorCallback = Callable[[str], None]
EndCallback = Callable[[], None]


# ─────────────────────────────────────────────────────────────────────────────
# Error codes
# ─────────────────────────────────────────────────────────────────────────────


class CaptureErrorCode(str, Enum):
    ABORTED = "aborted"
    NETWORK = "network"
    NOT_ALLOWED = "not-allowed"
    AUDIO_CAPTURE = "audio-capture"
    SERVICE_NOT_ALLOWED = "service-not-allowed"
    NO_SPEECH = "no-speech"


_CAPTURE_ERROR_MESSAGES: dict[str, str] = {
    CaptureErrorCode.NETWORK.value:
        "Network error occurred. Please check your connection.",
    CaptureErrorCode.NOT_ALLOWED.value:
        "Microphone access denied. Please enable microphone permissions.",
    CaptureErrorCode.AUDIO_CAPTURE.value:
        "No microphone detected. Please connect a microphone.",
    CaptureErrorCode.SERVICE_NOT_ALLOWED.value:
        "Speech recognition service not allowed. Try using a different browser.",
}


def capture_error_message(code: str) -> Optional[str]:
    """User-facing message for a capture error code; None for a user abort."""
    if code == CaptureErrorCode.ABORTED.value:
        return None
    return _CAPTURE_ERROR_MESSAGES.get(code, f"Speech recognition error: {code}")


# ─────────────────────────────────────────────────────────────────────────────
# Capture engine
# ─────────────────────────────────────────────────────────────────────────────


class CaptureEngine(Protocol):
    language: str
    continuous: bool
    interim_results: bool

    @property
    def active(self) -> bool: ...

    def bind(self, on_result: ResultCallback, on_error: ErrorCallback, on_end: EndCallback) -> None: ...

    def start(self) -> None: ...

    def stop(self) -> None: ...


class ManualCapture:
    """
    CaptureEngine fed by hand.

    Mirrors a browser-style recogniser's lifecycle: results are delivered
    only while active, stop() and fail() are followed by an end event.
    """

    def __init__(self, language: str = "en-US", continuous: bool = True, interim_results: bool = True):
        self.language = language
        self.continuous = continuous
        self.interim_results = interim_results
        self._active = False
        self._on_result: Optional[ResultCallback] = None
        self._on_error: Optional[ErrorCallback] = None
        self._on_end: Optional[EndCallback] = None
        self.start_count = 0
        self.stop_count = 0

    @property
    def active(self) -> bool:
        return self._active

    def bind(self, on_result: ResultCallback, on_error: ErrorCallback, on_end: EndCallback) -> None:
        self._on_result = on_result
        self._on_error = on_error
        self._on_end = on_end

    def start(self) -> None:
        if self._active:
            return
        self._active = True
        self.start_count += 1
        log.debug("capture.started", language=self.language)

    def stop(self) -> None:
        if not self._active:
            return
        self._active = False
        self.stop_count += 1
        log.debug("capture.stopped")
        self._emit_end()

    # ── Event injection ──────────────────────────────────────────────────────

    def feed(self, transcript: str, is_final: bool = False) -> bool:
        """Deliver a transcript snapshot. Returns False if capture is not active."""
        if not self._active:
            log.debug("capture.result_dropped", reason="inactive")
            return False
        if not is_final and not self.interim_results:
            return False
        if self._on_result is not None:
            self._on_result(transcript, is_final)
        return True

    def end(self) -> None:
        """The recogniser ended on its own (silence timeout, stream closed)."""
        if not self._active:
            return
        self._active = False
        self._emit_end()

    def fail(self, code: str) -> None:
        """Report an error; the recogniser then ends."""
        if self._on_error is not None:
            self._on_error(code)
        self.end()

    def _emit_end(self) -> None:
        if self._on_end is not None:
            self._on_end()


# ─────────────────────────────────────────────────────────────────────────────
# Gain
# ─────────────────────────────────────────────────────────────────────────────


class GainCurve(str, Enum):
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class GainControl(Protocol):
    @property
    def value(self) -> float: ...

    def ramp(self, target: float, duration_ms: float, curve: GainCurve = GainCurve.LINEAR) -> None: ...

    def cancel(self) -> None: ...


class SoftwareGain:
    """
    A gain value in [0, 1] ramped in fixed steps on the scheduler.

    The exponential curve decays towards a small floor and then snaps to
    the exact target on the final step, since an exponential never reaches 0.
    """

    STEP_MS = 10.0
    _EXP_FLOOR = 1e-4

    def __init__(
        self,
        scheduler: Scheduler,
        initial: float = 1.0,
        on_change: Optional[Callable[[float], None]] = None,
    ):
        self._scheduler = scheduler
        self._value = initial
        self._on_change = on_change
        self._timer = Timer(scheduler, "gain_ramp")

    @property
    def value(self) -> float:
        return self._value

    @property
    def ramping(self) -> bool:
        return self._timer.pending

    def cancel(self) -> None:
        self._timer.cancel()

    def ramp(self, target: float, duration_ms: float, curve: GainCurve = GainCurve.LINEAR) -> None:
        self._timer.cancel()
        target = max(0.0, min(1.0, target))
        if duration_ms <= 0:
            self._set(target)
            return

        start = self._value
        steps = max(1, int(math.ceil(duration_ms / self.STEP_MS)))
        step_ms = duration_ms / steps

        def _value_at(i: int) -> float:
            frac = i / steps
            if curve == GainCurve.EXPONENTIAL:
                lo = max(min(start, target), self._EXP_FLOOR)
                hi = max(max(start, target), self._EXP_FLOOR)
                if start >= target:
                    return hi * (lo / hi) ** frac
                return lo * (hi / lo) ** frac
            return start + (target - start) * frac

        def _step(i: int) -> None:
            if i >= steps:
                self._set(target)
                return
            self._set(_value_at(i))
            self._timer.arm(step_ms, lambda: _step(i + 1))

        self._timer.arm(step_ms, lambda: _step(1))

    def _set(self, value: float) -> None:
        self._value = value
        if self._on_change is not None:
            self._on_change(value)
