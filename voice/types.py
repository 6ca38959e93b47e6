"""
voice/types.py — Turn-taking data model
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class TurnState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    FINALIZING = "finalizing"
    GENERATING = "generating"
    SYNTHESIZING = "synthesizing"
    PLAYING = "playing"
    COOLING_DOWN = "cooling_down"
    DISPOSED = "disposed"

    @property
    def in_turn(self) -> bool:
        return self in _IN_TURN


_IN_TURN = {
    TurnState.FINALIZING,
    TurnState.GENERATING,
    TurnState.SYNTHESIZING,
    TurnState.PLAYING,
}


@dataclass
class UtteranceBuffer:
    """Latest transcript snapshot for the current speech span."""
    text: str = ""
    last_update_time: float = 0.0
    is_final: bool = False

    def update(self, text: str, now: float, is_final: bool) -> None:
        self.text = text
        self.last_update_time = now
        self.is_final = is_final

    def reset(self) -> None:
        self.text = ""
        self.last_update_time = 0.0
        self.is_final = False

    @property
    def empty(self) -> bool:
        return not self.text


@dataclass
class PlaybackSession:
    """One audio-output instance for one reply."""
    audio: bytes
    tier: str
    started_at: float
    id: str = field(default_factory=lambda: f"play_{uuid.uuid4().hex[:8]}")
    ended_at: Optional[float] = None
    failure_reason: Optional[str] = None

    @property
    def active(self) -> bool:
        return self.ended_at is None

    @property
    def duration_ms(self) -> Optional[float]:
        if self.ended_at is None:
            return None
        return self.ended_at - self.started_at


@dataclass(frozen=True)
class VisualizationFrame:
    """
    Byte-scaled frequency magnitudes (0-255 per bin) and their mean,
    normalised to [0, 1].
    """
    bins: bytes
    level: float
    captured_at: float


class TurnStatus(str, Enum):
    COMPLETED = "completed"
    GENERATION_FAILED = "generation_failed"
    PLAYBACK_FAILED = "playback_failed"


@dataclass
class TurnResult:
    """Outcome of one pipeline run."""
    utterance: str
    status: TurnStatus
    reply_text: str = ""
    tier: str = ""
    error_message: Optional[str] = None
    voice_degraded: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == TurnStatus.COMPLETED
