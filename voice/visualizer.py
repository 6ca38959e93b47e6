"""
voice/visualizer.py — Visualization Sampler

A fixed-rate asyncio loop that reads frequency energy from an EnergySource
and hands VisualizationFrame values to a single observer. It never touches
capture, playback or turn state, so a slow or failing observer can only
cost frames.

SpectrumAnalyser is the EnergySource for raw microphone PCM. It mimics an
analyser node: Blackman window over the newest fft_size samples, magnitude
spectrum, exponential smoothing across frames, then dB values mapped
linearly from [min_db, max_db] onto 0..255.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Optional, Protocol

import numpy as np

from observability.logger import get_logger
from voice.types import VisualizationFrame

log = get_logger(__name__)

FrameObserver = Callable[[VisualizationFrame], None]


class EnergySource(Protocol):
    def frequency_data(self) -> Optional[bytes]:
        """Byte-scaled magnitudes for the newest window, or None before any audio."""
        ...


# ─────────────────────────────────────────────────────────────────────────────
# Spectrum analyser
# ─────────────────────────────────────────────────────────────────────────────


class SpectrumAnalyser:

    def __init__(
        self,
        fft_size: int = 1024,
        smoothing: float = 0.8,
        min_db: float = -100.0,
        max_db: float = -30.0,
    ):
        if fft_size < 32 or fft_size & (fft_size - 1):
            raise ValueError(f"fft_size must be a power of two >= 32, got {fft_size}")
        if not 0.0 <= smoothing < 1.0:
            raise ValueError(f"smoothing must be in [0, 1), got {smoothing}")
        if min_db >= max_db:
            raise ValueError("min_db must be below max_db")

        self.fft_size = fft_size
        self.smoothing = smoothing
        self.min_db = min_db
        self.max_db = max_db

        self._window = np.blackman(fft_size).astype(np.float32)
        self._samples = np.zeros(fft_size, dtype=np.float32)
        self._smoothed = np.zeros(fft_size // 2, dtype=np.float32)
        self._received = 0

    @property
    def bin_count(self) -> int:
        return self.fft_size // 2

    def push(self, pcm: bytes | np.ndarray) -> None:
        """Append int16 PCM (bytes or ndarray) or float samples in [-1, 1]."""
        if isinstance(pcm, (bytes, bytearray, memoryview)):
            chunk = np.frombuffer(pcm, dtype=np.int16).astype(np.float32) / 32768.0
        else:
            chunk = np.asarray(pcm)
            if chunk.dtype == np.int16:
                chunk = chunk.astype(np.float32) / 32768.0
            else:
                chunk = chunk.astype(np.float32)
        if chunk.ndim > 1:
            chunk = chunk.mean(axis=1)
        if chunk.size == 0:
            return

        if chunk.size >= self.fft_size:
            self._samples = chunk[-self.fft_size:].copy()
        else:
            self._samples = np.roll(self._samples, -chunk.size)
            self._samples[-chunk.size:] = chunk
        self._received += chunk.size

    def frequency_data(self) -> Optional[bytes]:
        if self._received == 0:
            return None
        spectrum = np.fft.rfft(self._samples * self._window)[: self.bin_count]
        magnitude = np.abs(spectrum) / self.fft_size
        self._smoothed = self.smoothing * self._smoothed + (1.0 - self.smoothing) * magnitude

        with np.errstate(divide="ignore"):
            db = 20.0 * np.log10(self._smoothed)
        scaled = (db - self.min_db) * (255.0 / (self.max_db - self.min_db))
        return np.clip(np.nan_to_num(scaled, neginf=0.0), 0, 255).astype(np.uint8).tobytes()


# ─────────────────────────────────────────────────────────────────────────────
# Sampler loop
# ─────────────────────────────────────────────────────────────────────────────


class VisualizationSampler:

    def __init__(self, source: Optional[EnergySource] = None, interval_ms: float = 16.0):
        self._source = source
        self._interval = interval_ms / 1000.0
        self._observer: Optional[FrameObserver] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def set_observer(self, observer: Optional[FrameObserver]) -> None:
        """Replace the observer. None detaches it; the loop keeps sampling."""
        self._observer = observer

    def start(self) -> None:
        if self._source is None:
            log.debug("visualizer.no_source")
            return
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def sample(self) -> Optional[VisualizationFrame]:
        if self._source is None:
            return None
        data = self._source.frequency_data()
        if not data:
            return None
        level = sum(data) / (len(data) * 255.0)
        return VisualizationFrame(
            bins=data,
            level=level,
            captured_at=asyncio.get_running_loop().time() * 1000.0,
        )

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            observer = self._observer
            if observer is None:
                continue
            try:
                frame = self.sample()
                if frame is not None:
                    observer(frame)
            except Exception as e:
                log.warning("visualizer.frame_error", error=str(e), error_type=type(e).__name__)
