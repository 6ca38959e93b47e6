"""
main.py — voiceturn Entry Point

Usage:
    python main.py                          # terminal session, default settings
    python main.py --subject Biology --persona professor-patricia
    python main.py --difficulty College --language en-GB
    python main.py --log-level DEBUG        # Verbose logging
    python main.py --config path/to/config.yaml
"""

from __future__ import annotations
# ─────────────────────────────────────────────────────────────────────────────
# Load environment variables first so pydantic-settings sees the API keys
# ─────────────────────────────────────────────────────────────────────────────

from dotenv import load_dotenv
from pathlib import Path

ENV_PATH = Path(__file__).parent / ".env"
load_dotenv(dotenv_path=ENV_PATH)

# ─────────────────────────────────────────────────────────────────────────────
import argparse
import asyncio
import sys


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="voiceturn",
        description="voiceturn — voice turn-taking tutor session in the terminal",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $VOICETURN_CONFIG or config/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )
    parser.add_argument("--subject", default=None, help="Tutoring subject (overrides persona.subject)")
    parser.add_argument("--persona", default=None, help="Tutor persona, e.g. encouraging-emma")
    parser.add_argument("--difficulty", default=None, help="Elementary, High School, College or Advanced")
    parser.add_argument("--language", default=None, help="Recognition language tag, e.g. en-US")
    return parser.parse_args(argv)


def apply_overrides(settings, args: argparse.Namespace):
    """
    Fold command-line overrides into the loaded settings. Values go through
    the same pydantic validators as config.yaml.
    """
    from config.settings import PersonaConfig, VoiceConfig

    persona = {
        key: value
        for key, value in (
            ("subject", args.subject),
            ("persona", args.persona),
            ("difficulty", args.difficulty),
        )
        if value is not None
    }
    if persona:
        settings.persona = PersonaConfig.model_validate({**settings.persona.model_dump(), **persona})
    if args.language:
        settings.voice = VoiceConfig.model_validate(
            {**settings.voice.model_dump(), "recognition_language": args.language}
        )
    return settings


def bootstrap(args: argparse.Namespace):
    """
    Load config, validate it fully, and set up logging.
    Returns (settings, log) ready for use.

    Exits with code 1 (after printing a clear message) if:
      - config.yaml or a command-line override has an invalid value (ValidationError)
      - cross-field problems are found (ConfigError from validate_all())
    """
    from config.settings import load_settings, ConfigError
    from observability.logger import setup_logging, get_logger
    from pydantic import ValidationError

    # -- Load and parse -------------------------------------------------------
    try:
        settings = apply_overrides(load_settings(args.config), args)
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {e['loc'][-1] if e['loc'] else '?'}: {e['msg']}"
            for e in exc.errors()
        )
        print(
            f"\n❌  Config validation failed:\n\n{problems}\n\n"
            f"    Fix config/config.yaml, your .env file or the command line and restart.\n",
            file=sys.stderr,
        )
        sys.exit(1)
    except (OSError, ValueError, TypeError) as exc:
        print(
            f"\n❌  Failed to load config: {type(exc).__name__}: {exc}\n",
            file=sys.stderr,
        )
        sys.exit(1)

    # -- Cross-field validation -----------------------------------------------
    try:
        settings.validate_all()
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)

    # -- Logging --------------------------------------------------------------
    log_level = args.log_level or settings.log_level

    setup_logging(
        level=log_level,
        log_dir=settings.log_dir,
        json_format=settings.log_json_format,
        console_output=settings.log_console_output,
    )

    log = get_logger("voiceturn.main")
    return settings, log


async def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings, log = bootstrap(args)

    log.info(
        "voiceturn.starting",
        responder=settings.responder.provider,
        model=settings.responder.model,
        synthesis=settings.synthesis.provider,
        subject=settings.persona.subject,
        persona=settings.persona.persona,
    )

    # ── Responder reachability ────────────────────────────────────────────────
    # A failed check is not fatal: turns degrade to the per-turn error messages.
    from brain import ResponderFactory
    responder = ResponderFactory.from_settings(settings)
    if not await responder.health_check():
        log.warning("voiceturn.responder_unhealthy", provider=responder.provider.value)
        print(
            f"\n⚠  Text generation provider '{responder.provider.value}' did not answer a health check.\n"
            f"    Check your API key and network connection.\n",
            file=sys.stderr,
        )

    Path(settings.log_dir).expanduser().mkdir(parents=True, exist_ok=True)

    log.info("voiceturn.interface_starting", interface="cli")
    await _run_cli(settings, log, responder)
    return 0


async def _run_cli(settings, log, responder) -> None:
    """Delegates to interfaces/cli.py."""
    from interfaces.cli import run_cli
    await run_cli(settings, log, responder=responder)


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
