"""CLI entry point for the agent bridge.

Usage:
    agentbridge "Summarise the drafts folder"
    agentbridge --json --model gemini-2.5-pro "List open TODOs"
    agentbridge --prompt-file prompts/cleanup.md --config agentbridge.yaml
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.prompt import Confirm

from .config import EngineConfig
from .engine import AgentBridgeEngine
from .models import (
    ClassifiedError,
    ConfirmationRequestEvent,
    OperationResult,
    OutputEvent,
    ReasoningEvent,
    StructuredEvent,
    TextEvent,
    ToolCallEvent,
)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentbridge",
        description="Drive a local agent CLI with approval-gated actions",
    )
    parser.add_argument(
        "prompt",
        nargs="?",
        default=None,
        help="The prompt to send (inline string)",
    )
    parser.add_argument(
        "--prompt-file", "-f",
        default=None,
        help="Read the prompt from a file",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="YAML config file (default: AGENTBRIDGE_* env vars)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Run the agent in structured JSON output mode",
    )
    parser.add_argument(
        "--model",
        default=None,
        help="Model id passed through to the agent",
    )
    parser.add_argument(
        "--max-concurrency",
        type=int,
        default=None,
        help="Maximum concurrent agent processes (default: 4)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Hard per-process timeout in seconds (default: 60)",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Write logs to this file (rotated at 2 MB)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def configure_logging(level_name: str, log_file: str | None) -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(_LOG_FORMAT)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            path, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


def load_config(args: argparse.Namespace) -> EngineConfig:
    config = EngineConfig.from_env()
    if args.config:
        from .yaml_config import load_yaml_config

        config = load_yaml_config(args.config, base=config)
    if args.json:
        config.json_mode = True
    if args.model is not None:
        config.model = args.model
    if args.max_concurrency is not None:
        config.max_concurrency = args.max_concurrency
    if args.timeout is not None:
        config.process_timeout_seconds = args.timeout
    if args.log_file is not None:
        config.log_file = args.log_file
    if args.verbose:
        config.log_level = "DEBUG"
    config.validate()
    return config


def render_event(console: Console, event: OutputEvent) -> None:
    if isinstance(event, ReasoningEvent):
        console.print(f"[dim italic]thinking: {escape(event.content)}[/]")
    elif isinstance(event, ToolCallEvent):
        style = "bold red" if event.dangerous else "cyan"
        note = ""
        if event.decision is not None:
            note = " [green](approved)[/]" if event.decision.approved else " [red](denied)[/]"
        console.print(f"[{style}]tool: {escape(event.action)}[/]{note}")
    elif isinstance(event, ConfirmationRequestEvent):
        console.print(f"[yellow]{escape(event.prompt)}[/]")
    elif isinstance(event, StructuredEvent):
        console.print_json(data=event.value)
    elif isinstance(event, TextEvent):
        console.print(escape(event.text), highlight=False)
        if event.warning:
            console.print(f"[yellow]warning: {escape(event.warning)}[/]")


async def run(config: EngineConfig, prompt: str, console: Console) -> int:
    async def ask_approval(action: str) -> bool:
        return await asyncio.to_thread(
            Confirm.ask,
            f"[bold red]Allow the agent to run[/] [white]{escape(action)}[/]?",
            console=console,
            default=False,
        )

    engine = AgentBridgeEngine(config=config, approval_callback=ask_approval)
    stream = engine.submit(prompt)
    try:
        async for item in stream:
            if isinstance(item, OperationResult):
                if config.json_mode and item.text:
                    console.rule("result")
                    console.print(escape(item.text), highlight=False)
                for warning in item.warnings:
                    console.print(f"[yellow]warning: {escape(warning)}[/]")
                console.print(
                    f"[dim]tokens in/out: {item.usage.input_tokens}/"
                    f"{item.usage.output_tokens}  id: {item.correlation_id}[/]"
                )
                return 0
            if isinstance(item, ClassifiedError):
                console.print(f"[bold red]{escape(item.user_message)}[/]")
                console.print(f"[dim]correlation id: {item.correlation_id}[/]")
                return 1
            render_event(console, item)
    finally:
        await stream.aclose()
        await engine.shutdown()
    return 1


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args)
    except (OSError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(2)
    configure_logging(config.log_level, config.log_file)

    prompt = _resolve_prompt(args.prompt, args.prompt_file)
    console = Console()
    try:
        code = asyncio.run(run(config, prompt, console))
    except KeyboardInterrupt:
        console.print("\nInterrupted.")
        sys.exit(130)
    sys.exit(code)


def _resolve_prompt(inline: str | None, file_path: str | None) -> str:
    """Get the prompt from the inline arg or a file. Exactly one must be provided."""
    if inline and file_path:
        print("Error: Provide either a prompt or --prompt-file, not both.", file=sys.stderr)
        sys.exit(2)

    if file_path:
        p = Path(file_path)
        if not p.is_file():
            print(f"Error: Prompt file not found: {file_path}", file=sys.stderr)
            sys.exit(2)
        return p.read_text(encoding="utf-8").strip()

    if inline:
        return inline

    print("Error: Provide a prompt or --prompt-file.", file=sys.stderr)
    sys.exit(2)


if __name__ == "__main__":
    main()
