"""
interfaces/cli.py — voiceturn Terminal Interface

Interactive front-end for one ConversationSession. Uses rich for terminal
rendering and aioconsole for async input, so turns keep running on the
event loop while the prompt waits.

Every typed line stands in for the speech recogniser:
  - a plain line is delivered as a final transcript
  - a line starting with `~` is delivered as an interim transcript, so the
    silence timer decides when the utterance ends
  - lines starting with `/` are commands (see /help)

Replies are printed as text and played through the default output device.

Usage:
    python main.py
    python main.py --subject Biology --persona fun-freddy --log-level DEBUG
"""

from __future__ import annotations

import asyncio
from typing import Optional

import aioconsole
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table
from rich import box

from brain.responder import BaseResponder
from config.settings import Settings
from exceptions import SessionDisposedError
from observability.logger import get_logger
from voice.capture import ManualCapture
from voice.playback import SoundDevicePlayer
from voice.session import ConversationSession
from voice.types import TurnResult, TurnState

log = get_logger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

_HELP_TEXT = """
## voiceturn Commands

| Command | Description |
|---------|-------------|
| `<text>` | Speak a final transcript (finalized after the debounce) |
| `~<text>` | Speak an interim transcript (finalized after the silence threshold) |
| `/submit` | Finalize the buffered transcript now |
| `/pause` | Stop listening until `/resume` |
| `/resume` | Resume listening after `/pause` |
| `/start` / `/stop` | Start or stop listening (no sticky pause) |
| `/silence <ms>` | Set the silence threshold (300-2000 ms) |
| `/delay <ms>` | Set the delay after speaking (200-1000 ms) |
| `/feedback on\\|off` | Toggle feedback prevention |
| `/language <code>` | Set the recognition language, e.g. `en-GB` |
| `/clear` | Clear conversation history |
| `/status` | Show session status |
| `/help` | Show this help message |
| `/quit` / Ctrl+D | Exit |
"""

_STATE_COLOURS = {
    TurnState.IDLE: "dim",
    TurnState.LISTENING: "green",
    TurnState.FINALIZING: "cyan",
    TurnState.GENERATING: "cyan",
    TurnState.SYNTHESIZING: "magenta",
    TurnState.PLAYING: "magenta",
    TurnState.COOLING_DOWN: "yellow",
    TurnState.DISPOSED: "red",
}


# ── CLI Runner ────────────────────────────────────────────────────────────────


class CLIInterface:

    def __init__(self, settings: Settings, responder: Optional[BaseResponder] = None):
        self.settings = settings
        self.responder = responder
        self.console = Console()
        self.capture = ManualCapture(
            language=settings.voice.recognition_language,
            continuous=settings.voice.continuous,
            interim_results=settings.voice.interim_results,
        )
        self._session: Optional[ConversationSession] = None
        self._shutdown = asyncio.Event()

    # ── Startup ───────────────────────────────────────────────────────────────

    async def start(self) -> None:
        player = SoundDevicePlayer()
        self._session = ConversationSession.create(
            self.settings,
            capture=self.capture,
            player=player,
            responder=self.responder,
        )
        player.on_output = self._session.feed_output
        self._session.set_callbacks(
            on_transcript=self._on_transcript,
            on_utterance=self._on_utterance,
            on_response=self._on_response,
            on_error=self._on_error,
            on_audio_start=lambda: self.console.print("  [dim magenta]🔊 speaking…[/]"),
            on_turn_complete=self._on_turn_complete,
        )
        log.info("cli.initialized", session_id=self._session.id)

        self._print_banner()
        self._session.start()
        try:
            await self._repl_loop()
        finally:
            await self._cleanup()

    def _print_banner(self) -> None:
        s = self._session
        self.console.print(
            Panel(
                f"[bold cyan]voiceturn[/]  ·  "
                f"Subject: [cyan]{s.subject}[/]  ·  "
                f"Persona: [magenta]{s.persona}[/]  ·  "
                f"Level: [cyan]{s.difficulty}[/]\n"
                f"Session: [dim]{s.id}[/]\n\n"
                f"Type what you would say, or [bold]/help[/] for commands. "
                f"[bold]/quit[/] or Ctrl+D to exit.",
                border_style="cyan",
                padding=(0, 2),
            )
        )

    def _print_help(self) -> None:
        self.console.print(Markdown(_HELP_TEXT))

    # ── REPL Loop ─────────────────────────────────────────────────────────────

    async def _repl_loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                line = await aioconsole.ainput(self._build_prompt())
            except (EOFError, KeyboardInterrupt):
                self.console.print("\n[dim]Goodbye.[/]")
                break

            line = line.strip()
            if not line:
                continue
            if line.lower() in ("exit", "quit"):
                self.console.print("[dim]Goodbye.[/]")
                break

            try:
                await self._dispatch(line)
            except SessionDisposedError:
                break

    def _build_prompt(self) -> str:
        state = self._session.state
        colours = {"green": "\033[32m", "yellow": "\033[33m", "cyan": "\033[36m", "magenta": "\033[35m"}
        reset = "\033[0m"
        colour = colours.get(_STATE_COLOURS.get(state, ""), reset)
        return f"{colour}voiceturn[{state.value}][{self._session.turn_count}]{reset}> "

    # ── Command Dispatch ──────────────────────────────────────────────────────

    async def _dispatch(self, raw: str) -> None:
        if raw.startswith("/"):
            parts = raw.split(maxsplit=1)
            cmd = parts[0].lower()
            arg = parts[1].strip() if len(parts) > 1 else ""

            handlers = {
                "/help":     lambda _: self._print_help(),
                "/status":   lambda _: self._cmd_status(),
                "/submit":   lambda _: self._cmd_submit(),
                "/pause":    lambda _: self._cmd_pause(),
                "/resume":   lambda _: self._cmd_resume(),
                "/start":    lambda _: self._cmd_start(),
                "/stop":     lambda _: self._cmd_stop(),
                "/silence":  self._cmd_silence,
                "/delay":    self._cmd_delay,
                "/feedback": self._cmd_feedback,
                "/language": self._cmd_language,
                "/clear":    lambda _: self._cmd_clear(),
                "/quit":     lambda _: self._shutdown.set(),
            }
            handler = handlers.get(cmd)
            if handler:
                result = handler(arg)
                if asyncio.iscoroutine(result):
                    await result
            else:
                self.console.print(f"[yellow]Unknown command: {cmd}. Type /help for commands.[/]")
        elif raw.startswith("~"):
            self._speak(raw[1:], is_final=False)
        else:
            self._speak(raw, is_final=True)

    def _speak(self, text: str, is_final: bool) -> None:
        if not self.capture.feed(text, is_final=is_final):
            self.console.print(f"[dim]Not listening ({self._session.state.value}).[/]")

    # ── Commands ──────────────────────────────────────────────────────────────

    def _cmd_submit(self) -> None:
        if not self._session.submit():
            self.console.print("[dim]Nothing to submit.[/]")

    def _cmd_pause(self) -> None:
        self._session.pause()
        self.console.print("[yellow]⏸ Paused.[/]")

    def _cmd_resume(self) -> None:
        if self._session.resume():
            self.console.print("[green]▶ Listening.[/]")
        else:
            self.console.print("[dim]Not paused.[/]")

    def _cmd_start(self) -> None:
        if self._session.start():
            self.console.print("[green]▶ Listening.[/]")
        else:
            self.console.print("[yellow]Paused. Use /resume.[/]")

    def _cmd_stop(self) -> None:
        self._session.stop()
        self.console.print("[dim]⏹ Stopped listening.[/]")

    def _cmd_silence(self, arg: str) -> None:
        ms = self._parse_ms(arg, "/silence")
        if ms is not None:
            value = self._session.set_silence_threshold(ms)
            self.console.print(f"[green]✓ Silence threshold: {value} ms[/]")

    def _cmd_delay(self, arg: str) -> None:
        ms = self._parse_ms(arg, "/delay")
        if ms is not None:
            value = self._session.set_delay_after_speaking(ms)
            self.console.print(f"[green]✓ Delay after speaking: {value} ms[/]")

    def _cmd_feedback(self, arg: str) -> None:
        choice = arg.lower()
        if choice not in ("on", "off"):
            self.console.print("[yellow]Usage: /feedback on|off[/]")
            return
        self._session.set_feedback_prevention(choice == "on")
        self.console.print(f"[green]✓ Feedback prevention {choice}[/]")

    def _cmd_language(self, arg: str) -> None:
        if not arg:
            self.console.print(f"[dim]Language: {self._session.config.recognition_language}[/]")
            return
        self._session.set_language(arg)
        self.console.print(f"[green]✓ Language: {arg}[/]")

    def _cmd_clear(self) -> None:
        self._session.clear_history()
        self.console.print("[dim]Conversation history cleared.[/]")

    def _cmd_status(self) -> None:
        table = Table(box=box.SIMPLE, show_header=False)
        table.add_column("key", style="dim")
        table.add_column("value")
        for key, value in self._session.status_summary().items():
            table.add_row(key, str(value))
        self.console.print(table)

    def _parse_ms(self, arg: str, usage: str) -> Optional[int]:
        try:
            return int(arg)
        except ValueError:
            self.console.print(f"[yellow]Usage: {usage} <milliseconds>[/]")
            return None

    # ── Session callbacks ─────────────────────────────────────────────────────

    def _on_transcript(self, text: str, is_final: bool) -> None:
        if not is_final:
            self.console.print(f"  [dim]… {text}[/]")

    def _on_utterance(self, text: str) -> None:
        self.console.print(f"[bold green]You:[/] {text}")

    def _on_response(self, text: str) -> None:
        if text.strip():
            self.console.print(Panel(Markdown(text), border_style="cyan", padding=(0, 2)))

    def _on_error(self, message: str) -> None:
        self.console.print(f"[yellow]⚠ {message}[/]")

    def _on_turn_complete(self, result: TurnResult) -> None:
        log.debug("cli.turn_complete", status=result.status.value, tier=result.tier)

    # ── Cleanup ───────────────────────────────────────────────────────────────

    async def _cleanup(self) -> None:
        if self._session is not None:
            await self._session.dispose()
        log.info("cli.shutdown", session_id=self._session.id if self._session else None)


# ── Public entry point ────────────────────────────────────────────────────────


async def run_cli(settings: Settings, log, responder: Optional[BaseResponder] = None) -> None:
    """
    Entry point called from main.py.

    Args:
        settings:  Loaded voiceturn settings.
        log:       Application-level logger.
        responder: Responder already built (and health-checked) by main.py;
                   built from settings when omitted.
    """
    cli = CLIInterface(settings=settings, responder=responder)

    log.info("cli.starting")
    try:
        await cli.start()
    except KeyboardInterrupt:
        log.info("cli.interrupted")
    finally:
        log.info("cli.stopped")
