"""
voice/playback.py — Audio output primitive

AudioPlayer is the narrow capability the reply pipeline plays through:

    await player.play(audio_bytes, volume, on_play)   # returns at natural end
    player.stop()                                     # interrupts play()

SoundDevicePlayer decodes with soundfile (WAV, MP3, FLAC, OGG) and plays
with sounddevice. Decoding and the blocking sd.wait() both run in an
executor thread so the event loop stays free. A header-only WAV (the
silent placeholder) decodes to zero frames and "plays" instantly.
"""

from __future__ import annotations

import asyncio
import io
from typing import Any, Callable, Protocol

from exceptions import PlaybackError
from observability.logger import get_logger

log = get_logger(__name__)


class AudioPlayer(Protocol):
    async def play(self, audio: bytes, volume: float, on_play: Callable[[], None]) -> None: ...

    def stop(self) -> None: ...


class SoundDevicePlayer:

    def __init__(self, device: int | None = None, on_output: Callable[[Any], None] | None = None):
        self._device = device
        self._playing = False
        # receives the scaled float32 samples just before they are played
        self.on_output = on_output

    async def play(self, audio: bytes, volume: float, on_play: Callable[[], None]) -> None:
        loop = asyncio.get_running_loop()
        try:
            data, sample_rate = await loop.run_in_executor(None, self._decode, audio)
        except (RuntimeError, OSError) as e:
            # soundfile.LibsndfileError derives from RuntimeError; OSError when libsndfile is missing
            raise PlaybackError(f"Could not decode audio: {e}") from e

        on_play()
        if len(data) == 0:
            return

        data = data * volume
        if self.on_output is not None:
            self.on_output(data)

        self._playing = True
        try:
            await loop.run_in_executor(None, self._play_blocking, data, sample_rate)
        except Exception as e:
            raise PlaybackError(f"Audio output failed: {e}") from e
        finally:
            self._playing = False

    def stop(self) -> None:
        if not self._playing:
            return
        import sounddevice as sd
        sd.stop()
        log.debug("playback.stopped")

    @staticmethod
    def _decode(audio: bytes):
        """Blocking — runs in executor. Returns (float32 ndarray, sample_rate)."""
        import soundfile as sf
        data, sample_rate = sf.read(io.BytesIO(audio), dtype="float32")
        return data, sample_rate

    def _play_blocking(self, data, sample_rate: int) -> None:
        """Blocking — runs in executor."""
        import sounddevice as sd
        sd.play(data, sample_rate, device=self._device)
        sd.wait()
