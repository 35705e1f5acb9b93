"""Application bootstrap and command-line entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Sequence, TextIO, get_args, get_origin, get_type_hints

from .ai.client import ModelProvider, build_provider
from .ai.driver import ResponseDriver
from .ai.prompts import DEFAULT_LANGUAGE, QUICK_ACTIONS
from .chat.message_model import ChatSender, ChatTranscript
from .errors import ButlerError, ProviderError
from .mcp.catalog import build_tool_catalog
from .mcp.events import EventBus, ServerStatusChanged
from .mcp.models import FILESYSTEM_SERVER, ServerStatus, server_templates
from .mcp.registry import ServerRegistry
from .mcp.transport import McpStdioTransport, TransportAdapter
from .services.settings import Settings, active_env_overrides, load_settings, redact_secret
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_LOGGER = logging.getLogger(__name__)
_EXIT_PROMPTS = {"exit", "quit", ":q"}
_LANGUAGES_BY_SUFFIX: Mapping[str, str] = {
    ".py": "python",
    ".js": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".rs": "rust",
    ".go": "go",
    ".java": "java",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".cs": "csharp",
    ".rb": "ruby",
    ".php": "php",
    ".sh": "bash",
    ".sql": "sql",
    ".html": "html",
    ".css": "css",
    ".json": "json",
    ".md": "markdown",
    ".toml": "toml",
    ".yaml": "yaml",
    ".yml": "yaml",
}


@dataclass(slots=True)
class ButlerRuntime:
    """Objects wired together by :func:`build_runtime`."""

    settings: Settings
    bus: EventBus
    transport: TransportAdapter
    registry: ServerRegistry
    provider: ModelProvider
    driver: ResponseDriver

    async def aclose(self) -> None:
        """Stop every server, then release provider and transport resources."""

        await self.registry.cleanup()
        try:
            await self.provider.aclose()
        except Exception as exc:  # pragma: no cover - defensive logging
            _LOGGER.debug("Provider shutdown failed: %s", exc)
        close = getattr(self.transport, "aclose", None)
        if close is not None:
            await close()


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def build_runtime(
    settings: Settings,
    *,
    transport: TransportAdapter | None = None,
    provider: ModelProvider | None = None,
    bus: EventBus | None = None,
) -> ButlerRuntime:
    """Composition root: one bus, one registry and one driver per process."""

    active_bus = bus or EventBus()
    active_transport = transport or McpStdioTransport(
        connect_timeout=settings.connect_timeout,
        request_timeout=settings.request_timeout,
    )
    registry = ServerRegistry(
        active_transport,
        bus=active_bus,
        restart_delay=settings.restart_delay,
        workspace_root=settings.workspace_root,
    )
    active_provider = provider or build_provider(settings)
    driver = ResponseDriver(
        active_provider,
        registry,
        max_tokens=settings.max_tokens,
        temperature=settings.temperature,
    )
    return ButlerRuntime(
        settings=settings,
        bus=active_bus,
        transport=active_transport,
        registry=registry,
        provider=active_provider,
        driver=driver,
    )


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the ``butler`` console script."""

    args = _parse_cli_args(argv)

    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return 2
    if args.workspace:
        cli_overrides["workspace_root"] = str(Path(args.workspace).expanduser().resolve())

    try:
        settings = load_settings(cli_overrides or None)
    except ValueError as exc:
        print(f"Invalid settings: {exc}", file=sys.stderr)
        return 2

    if args.dump_settings:
        _dump_settings(settings, overrides=cli_overrides)
        return 0
    if args.list_templates:
        _print_templates()
        return 0

    debug = _env_flag("BUTLER_DEBUG", default=False) or settings.debug_logging
    configure_logging(debug)

    try:
        runtime = build_runtime(settings)
    except Exception as exc:
        print(f"Unable to start butler: {exc}", file=sys.stderr)
        return 1

    try:
        return asyncio.run(run_cli(args, runtime))
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Shutdown requested by user.")
        return 130


async def run_cli(
    args: argparse.Namespace,
    runtime: ButlerRuntime,
    *,
    stdin: TextIO | None = None,
    stdout: TextIO | None = None,
    stderr: TextIO | None = None,
) -> int:
    """Run the requested command against ``runtime`` and always tear it down."""

    out = stdout or sys.stdout
    err = stderr or sys.stderr
    reporter = _StatusReporter(err)
    runtime.registry.add_event_listener(ServerStatusChanged, reporter.on_status_changed)
    try:
        if runtime.settings.autostart_filesystem:
            root = runtime.settings.workspace_root or os.getcwd()
            await runtime.registry.set_workspace_root(root)

        if args.list_tools:
            _print_tools(runtime.registry, out)
            return 0

        code, language, file_name = _load_file_context(args)
        driver = runtime.driver
        if args.generate:
            _write(out, await driver.generate_code(args.generate, language))
        elif args.action:
            _write(out, await driver.run_quick_action(args.action, code, language, file_name))
        elif args.ask:
            await _answer(driver, code, language, args.ask, file_name, stream=not args.no_stream, out=out)
        else:
            await _interactive(driver, code, language, file_name, stream=not args.no_stream, stdin=stdin, out=out)
        return 0
    except ProviderError as exc:
        print(exc.message, file=err)
        return 1
    except ButlerError as exc:
        print(f"Error: {exc.message}", file=err)
        return 1
    except OSError as exc:
        print(f"Error: {exc}", file=err)
        return 1
    finally:
        await runtime.aclose()


class _StatusReporter:
    """Surfaces lifecycle failures on stderr."""

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream

    def on_status_changed(self, event: ServerStatusChanged) -> None:
        if event.status is ServerStatus.ERROR:
            print(f"[{event.server_name}] {event.error}", file=self._stream)


async def _answer(
    driver: ResponseDriver,
    code: str,
    language: str,
    message: str,
    file_name: str | None,
    *,
    stream: bool,
    out: TextIO,
    transcript: ChatTranscript | None = None,
) -> str:
    history = []
    entry_id: str | None = None
    if transcript is not None:
        history = list(transcript)
        transcript.add_message(ChatSender.USER, message)
        entry_id = transcript.add_message(ChatSender.ASSISTANT).id

    if not stream:
        reply = await driver.respond(code, language, message, file_name, history=history)
        _write(out, reply)
        if transcript is not None and entry_id is not None:
            transcript.update_message(entry_id, reply)
        return reply

    parts: list[str] = []
    async for fragment in driver.stream_respond(code, language, message, file_name, history=history):
        parts.append(fragment)
        out.write(fragment)
        out.flush()
        if transcript is not None and entry_id is not None:
            transcript.append_to(entry_id, fragment)
    out.write("\n")
    return "".join(parts)


async def _interactive(
    driver: ResponseDriver,
    code: str,
    language: str,
    file_name: str | None,
    *,
    stream: bool,
    stdin: TextIO | None,
    out: TextIO,
) -> ChatTranscript:
    source = stdin or sys.stdin
    transcript = ChatTranscript()
    while True:
        out.write("> ")
        out.flush()
        line = await asyncio.to_thread(source.readline)
        if not line:
            break
        message = line.strip()
        if not message:
            continue
        if message.lower() in _EXIT_PROMPTS:
            break
        await _answer(driver, code, language, message, file_name, stream=stream, out=out, transcript=transcript)
    return transcript


def _load_file_context(args: argparse.Namespace) -> tuple[str, str, str | None]:
    if not args.file:
        return "", args.language or DEFAULT_LANGUAGE, None
    path = Path(args.file).expanduser()
    code = path.read_text(encoding="utf-8")
    language = args.language or _LANGUAGES_BY_SUFFIX.get(path.suffix.lower(), DEFAULT_LANGUAGE)
    return code, language, path.name


def _print_tools(registry: ServerRegistry, out: TextIO) -> None:
    entries = build_tool_catalog(registry.get_available_tools())
    if not entries:
        error = registry.get_server_error(FILESYSTEM_SERVER)
        out.write("No tools available.\n" if not error else f"No tools available ({error}).\n")
        return
    for entry in entries:
        out.write(f"{entry.qualified_name}\t{entry.description}\n")


def _print_templates(stream: TextIO | None = None) -> None:
    destination = stream or sys.stdout
    json.dump([template.to_dict() for template in server_templates()], destination, indent=2)
    destination.write("\n")


def _write(out: TextIO, text: str) -> None:
    out.write(text)
    if not text.endswith("\n"):
        out.write("\n")
    out.flush()


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="butler",
        description="Ask a language model about your code, with tools served by MCP servers.",
    )
    parser.add_argument("--file", metavar="PATH", help="Source file to use as code context.")
    parser.add_argument("--language", help="Language of the code context (detected from --file when omitted).")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--ask", metavar="MESSAGE", help="Ask one question and exit.")
    mode.add_argument("--action", choices=sorted(QUICK_ACTIONS), help="Run a quick action on --file and exit.")
    mode.add_argument("--generate", metavar="PROMPT", help="Generate code for PROMPT and exit.")
    mode.add_argument("--list-tools", action="store_true", help="Start servers, list available tools and exit.")
    mode.add_argument("--list-templates", action="store_true", help="Print the built-in server templates and exit.")
    mode.add_argument("--interactive", action="store_true", help="Chat until EOF or 'exit' (the default).")
    parser.add_argument("--workspace", metavar="PATH", help="Root directory served by the filesystem server.")
    parser.add_argument("--no-stream", action="store_true", help="Wait for the complete reply instead of streaming.")
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override settings for this run (repeatable).",
    )
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        annotation = type_hints.get(key, fields[key].type)
        overrides[key] = _coerce_value(annotation, raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    target = _resolve_annotation(annotation)
    normalized = raw_value.strip()

    if _is_optional(annotation) and normalized.lower() in {"none", "null"}:
        return None
    if target is str or target is Any:
        return normalized
    if target is bool:
        return _parse_bool(normalized)
    if target is int:
        return int(normalized, 10)
    if target is float:
        return float(normalized)
    return normalized


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    if not args:
        return origin
    return args[0]


def _is_optional(annotation: Any) -> bool:
    return type(None) in get_args(annotation)


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["api_key"] = redact_secret(settings.api_key)
    metadata = {
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": active_env_overrides(),
    }
    json.dump({"settings": payload, "meta": metadata}, destination, indent=2)
    destination.write("\n")


if __name__ == "__main__":  # pragma: no cover - manual invocation
    raise SystemExit(main())
