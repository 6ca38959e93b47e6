"""
observability/logger.py — voiceturn Structured Logger

structlog on top of stdlib logging. Every line goes to a rotating JSON file
(voiceturn.log); the console copy goes to stderr, because the terminal
interface owns stdout.

Turn context: a turn task calls bind_session() with a fresh turn id, and
from then on every line it emits, directly or from the pipeline, synthesis
chain and responder it awaits, carries

    session_id, user_id   who the turn belongs to
    turn_id               trn_xxxxxxxx, one per utterance handed to the pipeline
    turn_state            generating | synthesizing | playing | cooling_down
    turn_ms               milliseconds since the turn started

The orchestrator calls set_turn_state() on each transition, so a failed
synthesis line shows which stage it happened in without the caller passing
it. Outside a turn none of these fields are present.

Usage:
    setup_logging(level="INFO", log_dir="./data/logs")   # once, in main.py
    log = get_logger(__name__)
    log.info("segmenter.finalize", path="silence", chars=42)
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
import time
import uuid
from contextvars import ContextVar
from pathlib import Path
from typing import Any, Optional

import structlog

LOG_FILENAME = "voiceturn.log"

# HTTP clients log every request at INFO; a turn makes several.
_NOISY_LOGGERS = ("httpx", "httpcore", "openai")

_turn_started: ContextVar[Optional[float]] = ContextVar("voiceturn_turn_started", default=None)

_TURN_KEYS = ("session_id", "user_id", "turn_id", "turn_state")


# ─────────────────────────────────────────────────────────────────────────────
# Setup
# ─────────────────────────────────────────────────────────────────────────────


def setup_logging(
    level: str = "INFO",
    log_dir: str | Path = "./data/logs",
    json_format: bool = True,
    console_output: bool = True,
    max_bytes: int = 100 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """
    Configure logging once at startup. `json_format` only affects the
    console; the file is always JSON.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    shared = _shared_processors()

    file_handler = _file_handler(Path(log_dir), max_bytes, backup_count)
    file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), shared))
    handlers: list[logging.Handler] = [file_handler]

    if console_output:
        console_handler = logging.StreamHandler(sys.stderr)
        console_renderer = (
            structlog.processors.JSONRenderer() if json_format
            else structlog.dev.ConsoleRenderer(colors=True)
        )
        console_handler.setFormatter(_formatter(console_renderer, shared))
        handlers.append(console_handler)

    for handler in handlers:
        handler.setLevel(numeric_level)
    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    structlog.configure(
        processors=shared + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _shared_processors() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        add_turn_elapsed,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def _formatter(renderer: Any, shared: list[Any]) -> logging.Formatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=shared,
    )


def _file_handler(log_dir: Path, max_bytes: int, backup_count: int) -> logging.Handler:
    log_dir.mkdir(parents=True, exist_ok=True)
    return logging.handlers.RotatingFileHandler(
        filename=log_dir / LOG_FILENAME,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )


def add_turn_elapsed(logger: Any, method_name: str, event_dict: dict) -> dict:
    """structlog processor: stamp turn_ms on lines emitted inside a turn."""
    started = _turn_started.get()
    if started is not None:
        event_dict.setdefault("turn_ms", round((time.monotonic() - started) * 1000))
    return event_dict


def get_logger(name: str = "voiceturn", **initial_values: Any) -> structlog.stdlib.BoundLogger:
    logger = structlog.get_logger(name)
    if initial_values:
        logger = logger.bind(**initial_values)
    return logger


# ─────────────────────────────────────────────────────────────────────────────
# Turn context
# ─────────────────────────────────────────────────────────────────────────────


def new_turn_id() -> str:
    return f"trn_{uuid.uuid4().hex[:8]}"


def bind_session(
    session_id: str,
    user_id: str,
    turn_id: Optional[str] = None,
    turn_state: Optional[str] = None,
) -> None:
    """
    Bind session (and, inside a turn task, turn) fields to every log line
    emitted from the current async context. Passing a turn_id also starts
    the turn_ms clock.
    """
    fields: dict[str, Any] = {"session_id": session_id, "user_id": user_id}
    if turn_id is not None:
        fields["turn_id"] = turn_id
        _turn_started.set(time.monotonic())
    if turn_state is not None:
        fields["turn_state"] = turn_state
    structlog.contextvars.bind_contextvars(**fields)


def set_turn_state(state: str) -> None:
    """Record the stage a turn moved into. No-op outside a turn."""
    if _turn_started.get() is None:
        return
    structlog.contextvars.bind_contextvars(turn_state=state)


def clear_session() -> None:
    structlog.contextvars.unbind_contextvars(*_TURN_KEYS)
    _turn_started.set(None)
