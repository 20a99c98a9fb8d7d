"""Command-line entry point for the collaborative canvas."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import sys
from pathlib import Path
from typing import Sequence, TextIO

from collabcanvas import (
    CanvasRoom,
    CanvasSettings,
    ChatMessage,
    LLMProviderRegistry,
    SessionStateError,
    TranscriptLogger,
    configure_logging,
    describe_elements,
    model_factory_from_settings,
)
from collabcanvas.llm_providers import register_builtin_providers

_SYSTEM_COMMANDS = {
    "scene": "List the elements currently on the canvas.",
    "clear": "Remove everything from the canvas.",
    "export <path>": "Write the canvas to an SVG file.",
    "help": "Show this overview.",
    "quit": "Leave the canvas.",
}


def _print_help() -> None:
    print("\n=== Help ===")
    print("Type a drawing request (for example 'draw a red circle in the middle').")
    print("The model checks its own drawing before the canvas is updated.")
    print("\nSystem commands:")
    for usage, description in _SYSTEM_COMMANDS.items():
        print(f"  {usage} - {description}")
    print()


def _print_model_message(message: ChatMessage) -> None:
    if message.role == "model":
        print(f"\nModel: {message.text}")


async def run_cli(
    room: CanvasRoom,
    *,
    transcript_logger: TranscriptLogger | None = None,
) -> None:
    """Drive a small interactive loop using ``input``/``print``."""

    room.transcript.add_listener(_print_model_message)
    if transcript_logger is not None:
        room.transcript.add_listener(transcript_logger)

    print("Welcome to the collaborative canvas!")
    if not room.has_model:
        print(
            "No model is configured, so drawing requests are disabled. "
            "Use --llm-provider or --llm-config to enable them."
        )
    print("Type 'help' for a command overview or 'quit' to leave.")

    try:
        while True:
            try:
                raw_input = input("\n> ")
            except EOFError:
                print("\n\nReached end of input. Goodbye!")
                break
            except KeyboardInterrupt:
                print("\n\nInterrupted. Goodbye!")
                break

            line = raw_input.strip()
            if not line:
                continue

            command, _, argument = line.partition(" ")
            command_lower = command.lower()

            if command_lower in {"quit", "exit"}:
                print("\nGoodbye!")
                break

            if command_lower == "help":
                _print_help()
                continue

            if command_lower == "scene":
                lines = describe_elements(room.elements)
                if not lines:
                    print("\n(The canvas is empty.)")
                else:
                    print()
                    for entry in lines:
                        print(f"  {entry}")
                continue

            if command_lower == "clear":
                room.clear_scene()
                print("\nCanvas cleared.")
                continue

            if command_lower == "export":
                target = argument.strip()
                if not target:
                    print("\nUsage: export <path>")
                    continue
                path = Path(target).expanduser()
                try:
                    path.write_text(room.render_svg(), encoding="utf-8")
                except OSError as exc:
                    print(f"\nFailed to export the canvas: {exc}")
                    continue
                print(f"\nExported the canvas to '{path}'.")
                continue

            if not room.has_model:
                print("\nNo model is configured. Drawing requests are unavailable.")
                continue

            try:
                outcome = await room.submit_instruction(line)
            except SessionStateError as exc:
                print(f"\nCould not reach the model: {exc}")
                continue

            rounds = "round" if outcome.iterations == 1 else "rounds"
            print(
                f"[{outcome.iterations} verification {rounds}, "
                f"{len(outcome.elements)} element(s) on the canvas]"
            )
    finally:
        await room.close()


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Collaborative canvas")
    parser.add_argument(
        "--llm-provider",
        type=str,
        help=(
            "Identifier of the model provider that draws on the canvas. "
            "Accepts registered names or module paths (module:factory)."
        ),
    )
    parser.add_argument(
        "--llm-config",
        type=Path,
        help=(
            "Path to a JSON file describing the model provider and options. "
            "Cannot be combined with --llm-provider/--llm-option."
        ),
    )
    parser.add_argument(
        "--llm-option",
        dest="llm_options",
        action="append",
        metavar="KEY=VALUE",
        help=(
            "Additional option to pass to the provider factory. "
            "May be supplied multiple times."
        ),
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        help="Maximum self-check rounds per request (default: 5).",
    )
    parser.add_argument(
        "--settle-delay",
        type=float,
        help="Seconds to wait before capturing each snapshot (default: 0.8).",
    )
    parser.add_argument(
        "--transcript-log",
        type=Path,
        help="Append the conversation to this file.",
    )
    parser.add_argument(
        "--serve",
        action="store_true",
        help="Serve the canvas over HTTP/WebSocket instead of the prompt.",
    )
    parser.add_argument("--host", default="127.0.0.1", help="Host for --serve.")
    parser.add_argument("--port", type=int, default=8000, help="Port for --serve.")
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Emit debug logging on stderr.",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Emit logs as JSON lines.",
    )
    return parser.parse_args(argv)


def _resolve_settings(args: argparse.Namespace) -> CanvasSettings:
    try:
        settings = CanvasSettings.from_env()
    except ValueError as exc:
        print(f"Invalid environment configuration: {exc}")
        raise SystemExit(2) from exc

    overrides: dict[str, object] = {}
    if args.max_iterations is not None:
        if args.max_iterations < 1:
            print("--max-iterations must be at least 1.")
            raise SystemExit(2)
        overrides["max_iterations"] = args.max_iterations
    if args.settle_delay is not None:
        if args.settle_delay < 0:
            print("--settle-delay must not be negative.")
            raise SystemExit(2)
        overrides["settle_delay"] = args.settle_delay
    if args.llm_provider:
        overrides["llm_provider"] = args.llm_provider
        overrides["llm_config_path"] = None
    if args.llm_config:
        overrides["llm_config_path"] = args.llm_config
    return dataclasses.replace(settings, **overrides)


def main(argv: Sequence[str] | None = None) -> None:
    """Start the interactive canvas or the web service."""

    args = _parse_args(argv)
    configure_logging(verbose=args.verbose, log_json=args.log_json)

    if args.llm_config and args.llm_provider:
        print(
            "Both --llm-config and --llm-provider were supplied. "
            "Please choose one configuration style."
        )
        raise SystemExit(2)

    if args.llm_config and args.llm_options:
        print(
            "--llm-option cannot be combined with --llm-config. "
            "Encode additional options within the JSON file."
        )
        raise SystemExit(2)

    if args.llm_options and not args.llm_provider:
        print(
            "--llm-option was provided but no --llm-provider was specified. "
            "The canvas cannot start with provider options alone."
        )
        raise SystemExit(2)

    settings = _resolve_settings(args)
    registry = LLMProviderRegistry()
    register_builtin_providers(registry)
    client_factory = model_factory_from_settings(
        settings,
        registry=registry,
        option_strings=tuple(args.llm_options or ()),
    )
    room = CanvasRoom(settings=settings, client_factory=client_factory)

    if args.serve:
        import uvicorn

        from collabcanvas.api import create_app

        uvicorn.run(create_app(room), host=args.host, port=args.port, log_config=None)
        return

    log_handle: TextIO | None = None
    transcript_logger: TranscriptLogger | None = None
    try:
        if args.transcript_log is not None:
            args.transcript_log.parent.mkdir(parents=True, exist_ok=True)
            log_handle = args.transcript_log.open("a", encoding="utf-8")
            transcript_logger = TranscriptLogger(log_handle)
        asyncio.run(run_cli(room, transcript_logger=transcript_logger))
    finally:
        if log_handle is not None:
            log_handle.close()


if __name__ == "__main__":
    main(sys.argv[1:])
