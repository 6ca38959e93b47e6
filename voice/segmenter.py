"""
voice/segmenter.py — Utterance Segmenter

Turns the capture engine's stream of transcript snapshots into discrete
finalized utterances. Two timing paths end an utterance:

  1. Final-flag path — the recogniser marked the snapshot final; wait a
     short fixed debounce (final_debounce_ms, 500 ms) and finalize. An
     identical final snapshot arriving inside the debounce does not
     restart it.
  2. Silence path — every interim snapshot (re)arms a silence_threshold_ms
     timer; when it fires and no newer snapshot arrived in the meantime,
     finalize the buffered text.

Both paths end in finalize(text), which never hands the same literal text
downstream twice in a row and is ignored while a turn is underway.

Snapshots are dropped while the feedback guard is muted, and when their
stripped length is <= noise_threshold_chars.
"""

from __future__ import annotations

from typing import Callable, Optional

from config.settings import VoiceConfig
from observability.logger import get_logger
from voice.timers import Scheduler, Timer
from voice.types import UtteranceBuffer

log = get_logger(__name__)

TranscriptObserver = Callable[[str, bool], None]


class UtteranceSegmenter:

    def __init__(
        self,
        scheduler: Scheduler,
        config: Callable[[], VoiceConfig],
        on_finalize: Callable[[str], None],
        is_muted: Callable[[], bool] = lambda: False,
        is_busy: Callable[[], bool] = lambda: False,
        is_paused: Callable[[], bool] = lambda: False,
    ):
        self._scheduler = scheduler
        self._config = config
        self._on_finalize = on_finalize
        self._is_muted = is_muted
        self._is_busy = is_busy
        self._is_paused = is_paused
        self._observer: Optional[TranscriptObserver] = None

        self.buffer = UtteranceBuffer()
        self.last_processed_transcript = ""
        self._silence_timer = Timer(scheduler, "silence")
        self._debounce_timer = Timer(scheduler, "final_debounce")

    def set_observer(self, observer: Optional[TranscriptObserver]) -> None:
        self._observer = observer

    @property
    def timers_pending(self) -> bool:
        return self._silence_timer.pending or self._debounce_timer.pending

    # ── Input ────────────────────────────────────────────────────────────────

    def on_speech_event(self, snapshot: str, is_final: bool) -> None:
        text = (snapshot or "").strip()
        cfg = self._config()

        if self._is_muted():
            log.debug("segmenter.ignored", reason="muted", chars=len(text))
            return
        if len(text) <= cfg.noise_threshold_chars:
            return

        repeat_final = (
            is_final
            and self._debounce_timer.pending
            and self.buffer.is_final
            and self.buffer.text == text
        )

        self.buffer.update(text, self._scheduler.now(), is_final)
        if self._observer is not None:
            self._observer(text, is_final)

        if repeat_final:
            return

        self._silence_timer.cancel()
        self._debounce_timer.cancel()
        if is_final:
            self._debounce_timer.arm(cfg.final_debounce_ms, lambda: self._on_debounce(text))
        else:
            self._silence_timer.arm(cfg.silence_threshold_ms, self._on_silence)

    def on_capture_end(self) -> bool:
        """
        Offer the trailing buffer to finalize when the capture stream ends.
        Returns True if it was finalized.
        """
        text = self.buffer.text
        if not text or self._is_muted() or self._is_paused():
            return False
        if len(text) <= self._config().noise_threshold_chars:
            return False
        if text == self.last_processed_transcript:
            return False
        log.debug("segmenter.flush_on_end", chars=len(text))
        return self.finalize(text)

    def force_finalize(self) -> bool:
        """Finalize whatever unprocessed text is buffered, bypassing both timers."""
        text = self.buffer.text
        if not text or text == self.last_processed_transcript:
            return False
        return self.finalize(text)

    # ── Timers ───────────────────────────────────────────────────────────────

    def _on_debounce(self, text: str) -> None:
        self.finalize(text)

    def _on_silence(self) -> None:
        if self.buffer.empty:
            return
        threshold = self._config().silence_threshold_ms
        elapsed = self._scheduler.now() - self.buffer.last_update_time
        if elapsed < threshold:
            # fired early (loop clock granularity); wait out the remainder
            self._silence_timer.arm(threshold - elapsed, self._on_silence)
            return
        log.debug("segmenter.silence_detected", silence_ms=round(elapsed))
        self.finalize(self.buffer.text)

    # ── Finalize ─────────────────────────────────────────────────────────────

    def finalize(self, text: str) -> bool:
        text = (text or "").strip()
        if not text:
            return False
        if self._is_busy():
            log.debug("segmenter.finalize_ignored", reason="busy")
            return False
        if text == self.last_processed_transcript:
            log.debug("segmenter.finalize_ignored", reason="duplicate")
            return False

        self.last_processed_transcript = text
        self.cancel_timers()
        self.buffer.reset()
        log.info("segmenter.finalize", chars=len(text))
        self._on_finalize(text)
        return True

    # ── Housekeeping ─────────────────────────────────────────────────────────

    def cancel_timers(self) -> None:
        self._silence_timer.cancel()
        self._debounce_timer.cancel()

    def reset(self, forget_last: bool = False) -> None:
        self.cancel_timers()
        self.buffer.reset()
        if forget_last:
            self.last_processed_transcript = ""
