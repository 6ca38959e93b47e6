"""
voice/ — voiceturn Turn-Taking Engine

Public API:
    from voice import ConversationSession, SessionRegistry

Component overview:
    UtteranceSegmenter   Transcript snapshots → finalized utterances (silence + final-flag paths)
    FeedbackGuard        Owns capture start/stop and input gain; mute during replies
    FeedbackDetector     Raw mic PCM → acoustic feedback triggers (rising level, output match)
    ReplyPipeline        Generate → synthesize (tiered) → play, failures contained per stage
    TurnOrchestrator     The turn state machine; at most one turn in flight
    VisualizationSampler Fixed-rate spectrum frames for the UI
    ConversationSession  Config, history and components for one conversation
"""

from voice.capture import CaptureEngine, GainControl, GainCurve, ManualCapture, SoftwareGain
from voice.feedback_detector import FeedbackDetector
from voice.feedback_guard import FeedbackGuard
from voice.orchestrator import TurnOrchestrator
from voice.pipeline import ReplyPipeline
from voice.playback import AudioPlayer, SoundDevicePlayer
from voice.segmenter import UtteranceSegmenter
from voice.session import ConversationSession, SessionRegistry
from voice.timers import LoopScheduler, ManualScheduler, Scheduler, Timer
from voice.types import (
    PlaybackSession,
    TurnResult,
    TurnState,
    TurnStatus,
    UtteranceBuffer,
    VisualizationFrame,
)
from voice.visualizer import SpectrumAnalyser, VisualizationSampler

__all__ = [
    "ConversationSession",
    "SessionRegistry",
    "TurnOrchestrator",
    "ReplyPipeline",
    "UtteranceSegmenter",
    "FeedbackGuard",
    "FeedbackDetector",
    "VisualizationSampler",
    "SpectrumAnalyser",
    "CaptureEngine",
    "ManualCapture",
    "GainControl",
    "GainCurve",
    "SoftwareGain",
    "AudioPlayer",
    "SoundDevicePlayer",
    "Scheduler",
    "LoopScheduler",
    "ManualScheduler",
    "Timer",
    "TurnState",
    "TurnStatus",
    "TurnResult",
    "PlaybackSession",
    "UtteranceBuffer",
    "VisualizationFrame",
]
