"""
voice/feedback_detector.py — Acoustic feedback detection

FeedbackGuard keeps the engine deaf while it speaks; this catches the cases
that slip through (prevention raced, speakers loud, mic live in Listening)
by listening to the raw microphone PCM. Two triggers:

  rising level   the last `level_history` RMS readings rise strictly, the
                 newest is above `high_level_rms`, and that has happened
                 `max_occurrences` times (at most once per
                 `occurrence_cooldown_ms`). Quiet frames decay the count.

  output match   while the reply is playing, the mic spectrum matches the
                 fingerprint of the played audio: more than
                 `similarity_threshold` of the bins within `bin_tolerance`,
                 with the mic louder than `similarity_min_db`.

On a trigger the guard mutes, the speaker gain (if one is wired) drops to
half and ramps back over `duck_ms`, and the mic is unmuted `unmute_delay_ms`
later unless the orchestrator has since taken ownership of the guard.

Detection only runs while feedback prevention is enabled.
"""

from __future__ import annotations

from collections import deque
from typing import Callable, Optional

import numpy as np

from config.settings import VoiceConfig
from observability.logger import get_logger
from voice.capture import GainControl, GainCurve
from voice.feedback_guard import FeedbackGuard
from voice.timers import Scheduler, Timer
from voice.visualizer import SpectrumAnalyser

log = get_logger(__name__)


def _to_float(pcm: bytes | np.ndarray) -> np.ndarray:
    if isinstance(pcm, (bytes, bytearray, memoryview)):
        return np.frombuffer(pcm, dtype=np.int16).astype(np.float32) / 32768.0
    samples = np.asarray(pcm)
    if samples.dtype == np.int16:
        samples = samples.astype(np.float32) / 32768.0
    if samples.ndim > 1:
        samples = samples.mean(axis=1)
    return samples.astype(np.float32)


def spectrum_similarity(current: bytes, pattern: bytes, tolerance: int = 20) -> float:
    """Fraction of byte-scaled bins that differ by less than `tolerance`."""
    n = min(len(current), len(pattern))
    if n == 0:
        return 0.0
    a = np.frombuffer(current[:n], dtype=np.uint8).astype(np.int16)
    b = np.frombuffer(pattern[:n], dtype=np.uint8).astype(np.int16)
    return float(np.count_nonzero(np.abs(a - b) < tolerance)) / n


class FeedbackDetector:

    def __init__(
        self,
        guard: FeedbackGuard,
        scheduler: Scheduler,
        config: Callable[[], VoiceConfig],
        ai_speaking: Callable[[], bool],
        may_unmute: Callable[[], bool] = lambda: True,
        speaker_gain: Optional[GainControl] = None,
        *,
        fft_size: int = 1024,
        level_history: int = 10,
        high_level_rms: float = 0.1,
        max_occurrences: int = 3,
        occurrence_cooldown_ms: float = 2000.0,
        similarity_threshold: float = 0.7,
        similarity_min_db: float = -40.0,
        bin_tolerance: int = 20,
        fingerprint_weight: float = 0.2,
        duck_ms: float = 1000.0,
        unmute_delay_ms: float = 2000.0,
    ):
        self._guard = guard
        self._scheduler = scheduler
        self._config = config
        self._ai_speaking = ai_speaking
        self._may_unmute = may_unmute
        self._speaker_gain = speaker_gain

        self._high_level_rms = high_level_rms
        self._max_occurrences = max_occurrences
        self._occurrence_cooldown_ms = occurrence_cooldown_ms
        self._similarity_threshold = similarity_threshold
        self._similarity_min_db = similarity_min_db
        self._bin_tolerance = bin_tolerance
        self._fingerprint_weight = fingerprint_weight
        self._duck_ms = duck_ms
        self._unmute_delay_ms = unmute_delay_ms

        self._mic = SpectrumAnalyser(fft_size=fft_size, smoothing=0.0)
        self._output = SpectrumAnalyser(fft_size=fft_size, smoothing=0.0)
        self._levels: deque[float] = deque(maxlen=level_history)
        self._occurrences = 0
        self._last_occurrence_at: Optional[float] = None
        self._fingerprint: Optional[np.ndarray] = None

        self._unmute_timer = Timer(scheduler, "feedback_unmute")
        self._restore_timer = Timer(scheduler, "speaker_restore")
        self.detections = 0

    @property
    def occurrences(self) -> int:
        return self._occurrences

    @property
    def fingerprint(self) -> Optional[bytes]:
        if self._fingerprint is None:
            return None
        return np.clip(self._fingerprint, 0, 255).astype(np.uint8).tobytes()

    # ── Output side ──────────────────────────────────────────────────────────

    def observe_output(self, pcm: bytes | np.ndarray) -> None:
        """
        Fold audio being played into the output fingerprint, one analysis
        window at a time, as an 80/20 running average.
        """
        samples = _to_float(pcm)
        size = self._output.fft_size
        w = self._fingerprint_weight
        for start in range(0, samples.size, size):
            self._output.push(samples[start:start + size])
            current = np.frombuffer(self._output.frequency_data(), dtype=np.uint8).astype(np.float32)
            if self._fingerprint is None:
                self._fingerprint = current
            else:
                self._fingerprint = self._fingerprint * (1.0 - w) + current * w

    def clear_output(self) -> None:
        self._fingerprint = None

    # ── Microphone side ──────────────────────────────────────────────────────

    def process(self, pcm: bytes | np.ndarray) -> bool:
        """Analyse one microphone frame. Returns True when feedback was handled."""
        samples = _to_float(pcm)
        if samples.size == 0:
            return False
        self._mic.push(samples)
        if not self._config().feedback_prevention_enabled:
            return False

        rms = float(np.sqrt(np.mean(np.square(samples))))
        db = 20.0 * np.log10(max(rms, 1e-10))
        self._levels.append(rms)

        if self._rising_level(rms):
            self._handle("rising_level", rms=round(rms, 3))
            return True
        if self._ai_speaking() and self._fingerprint is not None and db > self._similarity_min_db:
            similarity = spectrum_similarity(self._mic.frequency_data(), self.fingerprint, self._bin_tolerance)
            if similarity > self._similarity_threshold:
                self._handle("output_match", similarity=round(similarity, 2), db=round(db, 1))
                return True
        return False

    def _rising_level(self, rms: float) -> bool:
        if len(self._levels) < self._levels.maxlen:
            return False
        if rms <= self._high_level_rms:
            self._occurrences = max(0, self._occurrences - 1)
            return False
        levels = list(self._levels)
        if any(b <= a for a, b in zip(levels, levels[1:])):
            return False

        now = self._scheduler.now()
        if self._last_occurrence_at is not None and now - self._last_occurrence_at <= self._occurrence_cooldown_ms:
            return False
        self._last_occurrence_at = now
        self._occurrences += 1
        if self._occurrences < self._max_occurrences:
            log.debug("feedback.suspected", occurrences=self._occurrences, rms=round(rms, 3))
            return False
        self._occurrences = 0
        return True

    # ── Reaction ─────────────────────────────────────────────────────────────

    def _handle(self, trigger: str, **fields) -> None:
        self.detections += 1
        log.warning("feedback.detected", trigger=trigger, **fields)
        self._guard.mute()

        gain = self._speaker_gain
        if gain is not None:
            level = gain.value
            gain.ramp(level * 0.5, 0)
            self._restore_timer.arm(
                self._duck_ms, lambda: gain.ramp(level, self._duck_ms, GainCurve.LINEAR),
            )
        self._unmute_timer.arm(self._unmute_delay_ms, self._release_mic)

    def _release_mic(self) -> None:
        if self._ai_speaking() or not self._may_unmute():
            log.debug("feedback.unmute_skipped")
            return
        self._guard.unmute()

    def reset(self) -> None:
        """Drop counters and history; pending unmute and gain restore are kept."""
        self._levels.clear()
        self._occurrences = 0
        self._last_occurrence_at = None

    def release(self) -> None:
        self.reset()
        self.clear_output()
        self._unmute_timer.cancel()
        self._restore_timer.cancel()
