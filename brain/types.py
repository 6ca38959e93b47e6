"""
brain/types.py — voiceturn Brain Data Models

Shared types used by the responders and the conversation session.
Providers map their native request/response shapes to and from these.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


# ─────────────────────────────────────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────────────────────────────────────


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class Provider(str, Enum):
    GROQ = "groq"
    OPENAI = "openai"
    OFFLINE = "offline"


# ─────────────────────────────────────────────────────────────────────────────
# Message types
# ─────────────────────────────────────────────────────────────────────────────


class Message(BaseModel):
    """A single message in the conversation history."""
    role: Role
    content: str = ""

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str) -> "Message":
        return cls(role=Role.ASSISTANT, content=content)


# ─────────────────────────────────────────────────────────────────────────────
# Per-turn context
# ─────────────────────────────────────────────────────────────────────────────


class TurnContext(BaseModel):
    """
    Everything a responder needs besides the utterance itself.

    `history` is the session-owned transcript window (already trimmed to
    the responder's history window). Responders must not mutate it.
    """
    subject: str
    persona: str
    difficulty: str
    session_id: str = ""
    study_mode: bool = False
    history: list[Message] = Field(default_factory=list)


class GenerationParams(BaseModel):
    """Per-request generation knobs, built from ResponderConfig."""
    model: str
    temperature: float = 0.7
    max_tokens: int = 1024
    timeout_seconds: float = 30.0
    base_url: Optional[str] = None
