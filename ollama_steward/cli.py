"""CLI entry point for ollama-steward.

Operator commands over the client core: inspect the server, start it,
list and pull models, run a completion, or watch status transitions.

Entry point:
    ollama-steward status
    ollama-steward models [--json]
    ollama-steward start
    ollama-steward generate MODEL PROMPT [--stream]
    ollama-steward pull MODEL
    ollama-steward watch
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

from dotenv import load_dotenv

from ollama_steward.client import OllamaClient
from ollama_steward.config import load_config_from_env
from ollama_steward.errors import OllamaError, ServerUnreachable, format_error
from ollama_steward.poller import StatusUpdate
from ollama_steward.schema import AvailabilityReason, PullProgress

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────
# ARGUMENT PARSING
# ─────────────────────────────────────────────────────────────────────


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ollama-steward",
        description="Check, start and use a local Ollama server.",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Enable debug logging"
    )
    parser.add_argument("--url", default=None, help="Ollama API URL (overrides OLLAMA_API_URL)")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("status", help="Report server health")

    models_p = sub.add_parser("models", help="List installed models")
    models_p.add_argument(
        "--json", action="store_true", dest="json_output",
        help="Full JSON output (name, size, modified)",
    )

    sub.add_parser("start", help="Start the local server if it is not running")

    gen_p = sub.add_parser("generate", help="Run a completion")
    gen_p.add_argument("model", help="Model name, e.g. llama3:8b")
    gen_p.add_argument("prompt", help="Prompt text")
    gen_p.add_argument("--stream", action="store_true", help="Stream the response as it arrives")

    pull_p = sub.add_parser("pull", help="Download a model")
    pull_p.add_argument("model", help="Model name, e.g. llama3:8b")

    sub.add_parser("watch", help="Print server status changes until interrupted")

    return parser


# ─────────────────────────────────────────────────────────────────────
# COMMANDS
# ─────────────────────────────────────────────────────────────────────


async def _cmd_status(client: OllamaClient) -> int:
    """Print health and model presence. Returns exit code."""
    model = client.config.default_model
    try:
        report = await client.check_health(model, bypass_cache=True)
    except ServerUnreachable as e:
        print(f"Ollama: not running ({e})")
        return 1

    print(f"Ollama: running at {client.config.base_url} ({len(report.models)} models)")
    if model:
        state = "installed" if report.model_present else "not installed"
        print(f"Default model {model}: {state}")
    return 0


async def _cmd_models(client: OllamaClient, json_output: bool = False) -> int:
    """List installed models. Returns exit code."""
    models = await client.list_models(bypass_cache=True)

    if json_output:
        json.dump(
            [m.model_dump(mode="json", by_alias=True) for m in models],
            sys.stdout,
            indent=2,
        )
        sys.stdout.write("\n")
    else:
        if not models:
            print("No models installed. Try: ollama-steward pull llama3:8b", file=sys.stderr)
        for model in models:
            print(f"{model.name}\t{model.size_gb:.1f} GB")
    return 0


async def _cmd_start(client: OllamaClient) -> int:
    """Start the server if needed. Returns exit code."""
    result = await client.ensure_available()
    if not result.ok and result.reason == AvailabilityReason.AUTO_START_DISABLED:
        result = await client.start_server()

    if result.ok:
        print("Ollama server started." if result.started_server else "Ollama server is already running.")
        return 0

    print(f"Error: {result.message}", file=sys.stderr)
    if result.install_hint:
        print(f"{result.install_hint.title}: {result.install_hint.url}", file=sys.stderr)
    return 1


async def _cmd_generate(client: OllamaClient, model: str, prompt: str, stream: bool = False) -> int:
    """Run one completion. Returns exit code."""
    if not stream:
        print(await client.generate_once(prompt, model=model))
        return 0

    def on_chunk(text: str) -> None:
        sys.stdout.write(text)
        sys.stdout.flush()

    await client.generate_stream(prompt, on_chunk, model=model, request_id="cli")
    sys.stdout.write("\n")
    return 0


async def _cmd_pull(client: OllamaClient, model: str) -> int:
    """Pull a model with progress on stderr. Returns exit code."""
    last_line: Optional[str] = None

    def on_progress(progress: PullProgress) -> None:
        nonlocal last_line
        percent = f" {progress.percent}%" if progress.percent is not None else ""
        line = f"{progress.stage}: {progress.status}{percent}"
        if line != last_line:
            print(line, file=sys.stderr)
            last_line = line

    final = await client.pull_model(model, on_progress=on_progress)
    if final is not None and final.stage == "success":
        print(f"Pulled {model}")
        return 0
    print(f"Error: pull of {model} did not complete", file=sys.stderr)
    return 1


async def _cmd_watch(client: OllamaClient) -> int:
    """Print status transitions until interrupted."""

    def on_change(update: StatusUpdate) -> None:
        models = f", {update.model_count} models" if update.model_count is not None else ""
        print(f"{update.status.value} ({update.phase.value}{models}, next check in {update.interval_seconds:g}s)")

    poller = client.create_poller(on_change)
    await poller.start()
    if not poller.running:
        return 0
    try:
        await asyncio.Event().wait()
    finally:
        await poller.stop()
    return 0


async def _run(args: argparse.Namespace) -> int:
    config = load_config_from_env()
    if args.url:
        config = config.model_copy(update={"api_url": args.url})

    async with OllamaClient(config, sink=lambda line: logger.info(line)) as client:
        try:
            if args.command == "status":
                return await _cmd_status(client)
            if args.command == "models":
                return await _cmd_models(client, json_output=args.json_output)
            if args.command == "start":
                return await _cmd_start(client)
            if args.command == "generate":
                return await _cmd_generate(client, args.model, args.prompt, stream=args.stream)
            if args.command == "pull":
                return await _cmd_pull(client, args.model)
            if args.command == "watch":
                return await _cmd_watch(client)
        except OllamaError as e:
            print(f"Error: {format_error(e, config.request_timeout_seconds)}", file=sys.stderr)
            return 1
    return 1


# ─────────────────────────────────────────────────────────────────────
# ENTRY POINT
# ─────────────────────────────────────────────────────────────────────


def main(argv: Optional[list[str]] = None):
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    # Logging
    level = logging.DEBUG if args.verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(name)s %(message)s", stream=sys.stderr)

    load_dotenv()

    try:
        code = asyncio.run(_run(args))
    except KeyboardInterrupt:
        code = 130

    sys.exit(code)


if __name__ == "__main__":
    main()
