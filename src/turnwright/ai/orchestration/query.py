"""Query pre-processing before a turn is sent to the backend.

Raw user text may be a slash command, a shell command (in shell mode) or
contain ``@`` file references. Each of those is handled by a collaborator
implementing the matching protocol here; :class:`QueryPreprocessor` decides
which one applies and what, if anything, goes to the model.
"""

from __future__ import annotations

import inspect
import logging
import re
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Protocol, Sequence, Union, assert_never

from .cancellation import CancellationSignal
from .transcript import Transcript, TranscriptEntry
from .types import ToolCallRequest

LOGGER = logging.getLogger(__name__)

__all__ = [
    "Query",
    "ScheduleToolCommand",
    "SubmitPromptCommand",
    "HandledCommand",
    "SlashCommandResult",
    "SlashCommandProcessor",
    "ShellCommandHandler",
    "AtCommandResult",
    "AtCommandHandler",
    "SlashCommandRouter",
    "PreparedQuery",
    "QueryPreprocessor",
    "is_at_command",
    "make_client_call_id",
]

Query = Union[str, Sequence[Mapping[str, Any]]]

_AT_COMMAND = re.compile(r"\s@")


# -----------------------------------------------------------------------------
# Collaborator results and protocols
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ScheduleToolCommand:
    """Run ``tool_name`` directly on behalf of the user."""

    tool_name: str
    tool_args: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class SubmitPromptCommand:
    """Send ``content`` to the model instead of the typed text."""

    content: Query


@dataclass(slots=True, frozen=True)
class HandledCommand:
    """The command was fully handled locally."""


SlashCommandResult = Union[ScheduleToolCommand, SubmitPromptCommand, HandledCommand]


class SlashCommandProcessor(Protocol):
    async def __call__(self, text: str) -> SlashCommandResult | None: ...


class ShellCommandHandler(Protocol):
    def __call__(self, text: str, signal: CancellationSignal) -> bool | Awaitable[bool]: ...


@dataclass(slots=True, frozen=True)
class AtCommandResult:
    processed_query: Query | None
    should_proceed: bool


class AtCommandHandler(Protocol):
    async def __call__(
        self,
        text: str,
        *,
        transcript: Transcript,
        signal: CancellationSignal,
        timestamp: float,
    ) -> AtCommandResult: ...


def is_at_command(text: str) -> bool:
    """True when ``text`` starts with ``@`` or contains a whitespace-prefixed ``@``."""

    return text.startswith("@") or bool(_AT_COMMAND.search(text))


def make_client_call_id(tool_name: str) -> str:
    return f"{tool_name}-{int(time.time() * 1000)}-{secrets.token_hex(6)}"


# -----------------------------------------------------------------------------
# Slash command router
# -----------------------------------------------------------------------------

SlashHandler = Callable[[str], Union[SlashCommandResult, Awaitable[SlashCommandResult]]]


class SlashCommandRouter:
    """Dispatch ``/name args`` text to registered handlers.

    Unknown commands and text without a leading ``/`` return ``None`` so the
    text continues through normal processing.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, SlashHandler] = {}

    def register(self, name: str, handler: SlashHandler) -> None:
        key = name.lstrip("/").lower()
        if not key:
            raise ValueError("Slash command name must not be empty")
        self._handlers[key] = handler

    @property
    def commands(self) -> tuple[str, ...]:
        return tuple(sorted(self._handlers))

    async def __call__(self, text: str) -> SlashCommandResult | None:
        if not text.startswith("/"):
            return None
        name, _, args = text[1:].partition(" ")
        handler = self._handlers.get(name.lower())
        if handler is None:
            return None
        result = handler(args.strip())
        if inspect.isawaitable(result):
            result = await result
        return result


# -----------------------------------------------------------------------------
# Preprocessor
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class PreparedQuery:
    query: Query | None
    should_proceed: bool

    @classmethod
    def stop(cls) -> "PreparedQuery":
        return cls(None, False)


ToolRequestSink = Callable[[Sequence[ToolCallRequest], CancellationSignal], object]


class QueryPreprocessor:
    """Decide what part of a user query reaches the model.

    Args:
        transcript: Transcript receiving the user entry.
        schedule_tools: Sink for client-initiated tool calls.
        slash_commands: Optional slash command processor.
        shell_handler: Optional shell command handler, used in shell mode.
        at_handler: Optional ``@`` reference handler.
        shell_mode: Callable reporting whether shell mode is active.
        on_debug_message: Receives short diagnostic strings for the host.
    """

    def __init__(
        self,
        transcript: Transcript,
        schedule_tools: ToolRequestSink,
        *,
        slash_commands: SlashCommandProcessor | None = None,
        shell_handler: ShellCommandHandler | None = None,
        at_handler: AtCommandHandler | None = None,
        shell_mode: Callable[[], bool] = lambda: False,
        on_debug_message: Callable[[str], None] | None = None,
    ) -> None:
        self._transcript = transcript
        self._schedule_tools = schedule_tools
        self._slash_commands = slash_commands
        self._shell_handler = shell_handler
        self._at_handler = at_handler
        self._shell_mode = shell_mode
        self._on_debug_message = on_debug_message

    async def prepare(
        self,
        query: Query,
        *,
        signal: CancellationSignal,
        prompt_id: str,
        timestamp: float,
    ) -> PreparedQuery:
        """Classify ``query`` and run the matching collaborator.

        Returns:
            The query to send, or a result with ``should_proceed`` False when
            nothing should go to the model.
        """

        if signal.is_set:
            return PreparedQuery.stop()
        if not isinstance(query, str):
            return PreparedQuery(query, True)

        text = query.strip()
        if not text:
            return PreparedQuery.stop()

        LOGGER.info("User prompt %s (%d chars)", prompt_id, len(text))
        self._debug(f"User query: '{text}'")

        if self._slash_commands is not None:
            command = await self._slash_commands(text)
            if command is not None:
                return self._apply_slash_result(command, signal, prompt_id)

        if self._shell_handler is not None and self._shell_mode():
            handled = self._shell_handler(text, signal)
            if inspect.isawaitable(handled):
                handled = await handled
            if handled:
                return PreparedQuery.stop()

        if self._at_handler is not None and is_at_command(text):
            result = await self._at_handler(text, transcript=self._transcript, signal=signal, timestamp=timestamp)
            self._transcript.add(TranscriptEntry.user(text), timestamp=timestamp)
            if not result.should_proceed or result.processed_query is None:
                return PreparedQuery.stop()
            return PreparedQuery(result.processed_query, True)

        self._transcript.add(TranscriptEntry.user(text), timestamp=timestamp)
        return PreparedQuery(text, True)

    def _apply_slash_result(
        self,
        command: SlashCommandResult,
        signal: CancellationSignal,
        prompt_id: str,
    ) -> PreparedQuery:
        match command:
            case ScheduleToolCommand():
                request = ToolCallRequest(
                    call_id=make_client_call_id(command.tool_name),
                    name=command.tool_name,
                    args=dict(command.tool_args),
                    is_client_initiated=True,
                    prompt_id=prompt_id,
                )
                self._schedule_tools([request], signal)
                return PreparedQuery.stop()
            case SubmitPromptCommand():
                return PreparedQuery(command.content, True)
            case HandledCommand():
                return PreparedQuery.stop()
            case _:
                assert_never(command)

    def _debug(self, message: str) -> None:
        LOGGER.debug(message)
        if self._on_debug_message is not None:
            self._on_debug_message(message)
