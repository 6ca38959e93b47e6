"""
Shared fixtures for the turn-taking unit tests.

Timers run on a ManualScheduler so timing assertions are exact; turn tasks
still run on the pytest-asyncio event loop.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

_ROOT = Path(__file__).parent.parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from brain.types import TurnContext
from config.settings import VoiceConfig
from speech.voices import PersonaVoice
from voice.timers import ManualScheduler

from fakes import FakePlayer, FakeResponder


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def voice_config() -> VoiceConfig:
    return VoiceConfig()


@pytest.fixture
def persona_voice() -> PersonaVoice:
    return PersonaVoice("encouraging-emma", "EXAVITQu4vr4xnSDxMaL", rate=0.9)


@pytest.fixture
def turn_context() -> TurnContext:
    return TurnContext(subject="Biology", persona="encouraging-emma", difficulty="High School", session_id="sess_test")


@pytest.fixture
def responder() -> FakeResponder:
    return FakeResponder()


@pytest.fixture
def player() -> FakePlayer:
    return FakePlayer()
