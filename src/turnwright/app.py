"""Command-line bootstrap and line-oriented REPL for turnwright."""

from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import logging
import os
import sys
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Sequence, TextIO

from .ai.chat import ChatSession, ChatSessionConfig
from .ai.client import AIClient, ClientSettings
from .ai.orchestration.cancellation import CancellationSignal
from .ai.orchestration.checkpoints import CheckpointRecorder, GitSnapshotService, default_history_dir
from .ai.orchestration.coordinator import CoordinatorConfig, TurnCoordinator
from .ai.orchestration.query import HandledCommand, SlashCommandRouter
from .ai.orchestration.scheduler import LocalToolScheduler, SchedulerConfig, ToolSpec
from .ai.orchestration.transcript import EntryType, TranscriptEntry
from .ai.orchestration.types import ToolCallRequest
from .services.settings import (
    Settings,
    SettingsStore,
    default_settings_dir,
    parse_override,
    redact_secret,
    validate_auth_method,
)
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_LOGGER = logging.getLogger(__name__)
_PROMPT = "> "


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure logging for the CLI."""

    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Path | None = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        return active_store.load(overrides=overrides)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        return Settings()


def build_client_settings(settings: Settings) -> ClientSettings:
    return ClientSettings(
        base_url=settings.base_url,
        api_key=settings.api_key,
        model=settings.model,
        organization=settings.organization,
        embedding_model=settings.embedding_model,
        temperature=settings.temperature,
        max_output_tokens=settings.max_output_tokens,
        request_timeout=settings.request_timeout,
        max_retries=settings.max_retries,
        retry_min_seconds=settings.retry_min_seconds,
        retry_max_seconds=settings.retry_max_seconds,
        default_headers=settings.default_headers or None,
        metadata=settings.metadata or None,
        debug_logging=settings.debug_logging,
    )


# -----------------------------------------------------------------------------
# Built-in tools
# -----------------------------------------------------------------------------


def builtin_tools(project_root: Path) -> list[ToolSpec]:
    """File tools scoped to ``project_root``; ``write_file`` asks for approval."""

    root = project_root.resolve()

    def _resolve(raw: str) -> Path:
        target = (root / raw).resolve()
        if target != root and root not in target.parents:
            raise ValueError(f"Path {raw!r} is outside the project root")
        return target

    def read_file(args: Mapping[str, Any]) -> str:
        return _resolve(str(args["file_path"])).read_text(encoding="utf-8")

    def write_file(args: Mapping[str, Any]) -> str:
        target = _resolve(str(args["file_path"]))
        target.parent.mkdir(parents=True, exist_ok=True)
        content = str(args.get("content", ""))
        target.write_text(content, encoding="utf-8")
        return f"Wrote {len(content)} characters to {args['file_path']}"

    path_schema = {"type": "string", "minLength": 1, "description": "Path relative to the project root."}
    return [
        ToolSpec(
            "read_file",
            handler=read_file,
            description="Read a UTF-8 text file from the project.",
            parameters={"type": "object", "properties": {"file_path": path_schema}, "required": ["file_path"]},
        ),
        ToolSpec(
            "write_file",
            handler=write_file,
            description="Create or overwrite a UTF-8 text file in the project.",
            parameters={
                "type": "object",
                "properties": {"file_path": path_schema, "content": {"type": "string"}},
                "required": ["file_path", "content"],
            },
            requires_approval=True,
        ),
    ]


async def _confirm_tool(request: ToolCallRequest) -> bool:
    arguments = json.dumps(dict(request.args), ensure_ascii=False, default=str)
    answer = await asyncio.to_thread(input, f"Allow {request.name} {arguments}? [y/N] ")
    return answer.strip().lower() in {"y", "yes"}


async def _run_shell(text: str, signal: CancellationSignal) -> bool:
    process = await asyncio.create_subprocess_shell(
        text,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    remove = signal.add_callback(process.kill)
    try:
        output, _ = await process.communicate()
    finally:
        remove()
    sys.stdout.write(output.decode("utf-8", errors="replace"))
    if process.returncode:
        print(f"[exit {process.returncode}]")
    return True


# -----------------------------------------------------------------------------
# Runtime wiring
# -----------------------------------------------------------------------------


def format_entry(entry: TranscriptEntry) -> str:
    if entry.type is EntryType.USER:
        return ""
    if entry.type is EntryType.TOOL_GROUP:
        lines: list[str] = []
        for tool in entry.tools:
            lines.append(f"[{tool.status.value}] {tool.name} {tool.description}".rstrip())
            if tool.result_display:
                lines.append(tool.result_display)
        return "\n".join(lines)
    if entry.type is EntryType.ERROR:
        return f"Error: {entry.text}"
    return entry.text


@dataclass(slots=True)
class Runtime:
    """Container returned by :func:`build_runtime`."""

    coordinator: TurnCoordinator
    session: ChatSession
    scheduler: LocalToolScheduler
    client: AIClient

    async def aclose(self) -> None:
        self.coordinator.shutdown()
        await self.scheduler.aclose()
        await self.client.aclose()


def build_runtime(
    settings: Settings,
    *,
    client: AIClient | None = None,
    output: TextIO | None = None,
) -> Runtime:
    """Wire the backend, scheduler, recorder and coordinator for ``settings``."""

    stream = output or sys.stdout
    project_root = settings.resolved_project_root()
    ai_client = client or AIClient(build_client_settings(settings))
    scheduler = LocalToolScheduler(
        builtin_tools(project_root),
        approval_handler=_confirm_tool,
        config=SchedulerConfig(default_timeout=settings.tool_timeout, log_arguments=settings.debug_logging),
    )
    session = ChatSession(
        ai_client,
        config=ChatSessionConfig(
            system_prompt=settings.system_prompt,
            max_session_turns=settings.max_session_turns,
            compression_token_threshold=settings.compression_token_threshold,
        ),
        tools=scheduler.function_declarations,
    )

    transcript_entries: list[TranscriptEntry] = []
    recorder: CheckpointRecorder | None = None
    if settings.checkpointing_enabled:
        snapshots = GitSnapshotService(project_root, default_history_dir(project_root, default_settings_dir()))
        recorder = CheckpointRecorder(
            settings.resolved_checkpoint_dir(),
            snapshots,
            history_provider=lambda: [entry.to_dict() for entry in transcript_entries],
            client_history_provider=session.get_history,
        )

    router = SlashCommandRouter()
    coordinator = TurnCoordinator(
        session,
        scheduler,
        config=CoordinatorConfig(
            model_name=settings.model,
            fallback_model=settings.fallback_model,
            max_session_turns=settings.max_session_turns,
            fragment_mode=session.fragment_mode,
            shell_mode=settings.shell_mode,
        ),
        slash_commands=router,
        shell_handler=_run_shell,
        checkpoint_recorder=recorder,
        on_auth_error=lambda: print("Authentication failed; check your API key.", file=stream),
    )

    def _clear(_: str) -> HandledCommand:
        session.clear_history()
        coordinator.transcript.clear()
        transcript_entries.clear()
        print("Conversation cleared.", file=stream)
        return HandledCommand()

    def _toggle_shell(_: str) -> HandledCommand:
        coordinator.shell_mode = not coordinator.shell_mode
        print(f"Shell mode {'on' if coordinator.shell_mode else 'off'}.", file=stream)
        return HandledCommand()

    router.register("clear", _clear)
    router.register("shell", _toggle_shell)

    def _on_entry(entry: TranscriptEntry) -> None:
        transcript_entries.append(entry)
        text = format_entry(entry)
        if text:
            print(text, file=stream, flush=True)

    coordinator.transcript.add_listener(_on_entry)
    return Runtime(coordinator, session, scheduler, ai_client)


# -----------------------------------------------------------------------------
# REPL
# -----------------------------------------------------------------------------


async def run_repl(runtime: Runtime, *, input_stream: TextIO | None = None) -> int:
    """Read lines from ``input_stream`` and submit each one as a turn.

    Ctrl-C while a turn is running cancels that turn and keeps the REPL open.
    """

    source = input_stream or sys.stdin
    coordinator = runtime.coordinator
    loop = asyncio.get_running_loop()
    try:
        while True:
            line = await loop.run_in_executor(None, _read_line, source)
            if line is None:
                break
            text = line.strip()
            if text in {"/quit", "/exit"}:
                break
            if not text:
                continue
            task = asyncio.ensure_future(coordinator.submit_query(text))
            try:
                await asyncio.shield(task)
                await runtime.scheduler.wait_idle()
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if current is not None:
                    current.uncancel()
                coordinator.cancel_ongoing_request()
                await task
    finally:
        await runtime.aclose()
    return 0


def _read_line(source: TextIO) -> str | None:
    if source.isatty():
        try:
            return input(_PROMPT)
        except EOFError:
            return None
    line = source.readline()
    return line if line else None


# -----------------------------------------------------------------------------
# Entry point
# -----------------------------------------------------------------------------


def main(argv: Sequence[str] | None = None) -> int:
    """Console entry point."""

    args = _parse_cli_args(argv)
    debug = bool(args.debug) or _env_flag("TURNWRIGHT_DEBUG")
    configure_logging(debug)

    settings_path = Path(args.settings_path).expanduser() if args.settings_path else None
    store = SettingsStore(settings_path)
    try:
        overrides = _coerce_cli_overrides(args.overrides)
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc
    if args.shell_mode:
        overrides["shell_mode"] = True

    settings = load_settings(store=store, overrides=overrides)
    if args.dump_settings:
        _dump_settings(settings, store, overrides=overrides)
        return 0
    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    settings, error = validate_auth_method(settings, prompt=getpass.getpass if sys.stdin.isatty() else None)
    if error:
        print(error, file=sys.stderr)
        return 1

    async def _run() -> int:
        return await run_repl(build_runtime(settings))

    try:
        return asyncio.run(_run())
    except KeyboardInterrupt:
        _LOGGER.info("Interrupted")
        return 130


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="turnwright",
        description="Chat with an OpenAI-compatible model from the terminal.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.turnwright/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this run (repeatable; values parsed as JSON when possible).",
    )
    parser.add_argument("--debug", action="store_true", help="Enable DEBUG logging.")
    parser.add_argument("--shell-mode", action="store_true", help="Start with shell mode active.")
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    allowed = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    for entry in items:
        key, value = parse_override(entry)
        if key not in allowed:
            raise ValueError(f"Unknown setting '{key}'.")
        overrides[key] = value
    return overrides


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["api_key"] = redact_secret(payload.get("api_key") or "")
    metadata = {
        "path": str(store.path),
        "secret_backend": store.vault.strategy,
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": sorted(name for name in os.environ if name.startswith("TURNWRIGHT_")),
    }
    json.dump({"settings": payload, "meta": metadata}, destination, indent=2)
    destination.write("\n")


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in _TRUE_VALUES


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
