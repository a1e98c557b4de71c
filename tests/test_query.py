"""Tests for query pre-processing."""

from __future__ import annotations

from typing import Any

import pytest

from turnwright.ai.orchestration.cancellation import CancellationSignal
from turnwright.ai.orchestration.query import (
    AtCommandResult,
    HandledCommand,
    QueryPreprocessor,
    ScheduleToolCommand,
    SlashCommandRouter,
    SubmitPromptCommand,
    is_at_command,
    make_client_call_id,
)
from turnwright.ai.orchestration.transcript import EntryType, Transcript


class _Sink:
    def __init__(self) -> None:
        self.batches: list[list[Any]] = []

    def __call__(self, requests: Any, signal: CancellationSignal) -> None:
        self.batches.append(list(requests))


async def _prepare(preprocessor: QueryPreprocessor, query: Any, signal: CancellationSignal | None = None) -> Any:
    return await preprocessor.prepare(query, signal=signal or CancellationSignal(), prompt_id="p-1", timestamp=1.0)


def test_is_at_command() -> None:
    assert is_at_command("@README.md summarize")
    assert is_at_command("summarize @README.md")
    assert not is_at_command("mail me at user@example.com")


def test_client_call_id_format() -> None:
    call_id = make_client_call_id("read_file")

    name, millis, suffix = call_id.rsplit("-", 2)
    assert name == "read_file"
    assert millis.isdigit()
    assert len(suffix) == 12


@pytest.mark.asyncio
async def test_slash_router_dispatch() -> None:
    router = SlashCommandRouter()

    async def _async_handler(args: str) -> SubmitPromptCommand:
        return SubmitPromptCommand(f"expanded {args}")

    router.register("/Expand", _async_handler)
    router.register("done", lambda args: HandledCommand())

    assert router.commands == ("done", "expand")
    assert await router("/expand this") == SubmitPromptCommand("expanded this")
    assert await router("/DONE") == HandledCommand()
    assert await router("/unknown") is None
    assert await router("plain text") is None
    with pytest.raises(ValueError):
        router.register("/", lambda args: HandledCommand())


@pytest.mark.asyncio
async def test_plain_text_adds_user_entry(transcript: Transcript) -> None:
    debug: list[str] = []
    preprocessor = QueryPreprocessor(transcript, _Sink(), on_debug_message=debug.append)

    prepared = await _prepare(preprocessor, "  hello  ")

    assert prepared.should_proceed and prepared.query == "hello"
    assert [(entry.type, entry.text, entry.timestamp) for entry in transcript.entries] == [
        (EntryType.USER, "hello", 1.0)
    ]
    assert debug == ["User query: 'hello'"]


@pytest.mark.asyncio
async def test_parts_pass_through_untouched(transcript: Transcript) -> None:
    parts = [{"functionResponse": {"id": "c1", "name": "x", "response": {}}}]
    preprocessor = QueryPreprocessor(transcript, _Sink())

    prepared = await _prepare(preprocessor, parts)

    assert prepared.query is parts
    assert transcript.entries == ()


@pytest.mark.asyncio
async def test_cancelled_signal_or_blank_text_stops(transcript: Transcript) -> None:
    preprocessor = QueryPreprocessor(transcript, _Sink())
    signal = CancellationSignal()
    signal.cancel()

    assert not (await _prepare(preprocessor, "hi", signal)).should_proceed
    assert not (await _prepare(preprocessor, "   ")).should_proceed


@pytest.mark.asyncio
async def test_slash_results(transcript: Transcript) -> None:
    router = SlashCommandRouter()
    router.register("run", lambda args: ScheduleToolCommand("shell", {"command": args}))
    router.register("ask", lambda args: SubmitPromptCommand([{"text": args}]))
    sink = _Sink()
    preprocessor = QueryPreprocessor(transcript, sink, slash_commands=router)

    scheduled = await _prepare(preprocessor, "/run ls")
    submitted = await _prepare(preprocessor, "/ask why")

    assert not scheduled.should_proceed
    request = sink.batches[0][0]
    assert request.is_client_initiated and request.prompt_id == "p-1"
    assert request.args == {"command": "ls"}
    assert submitted.query == [{"text": "why"}]
    assert transcript.entries == ()


@pytest.mark.asyncio
async def test_shell_mode_routes_to_shell_handler(transcript: Transcript) -> None:
    seen: list[str] = []

    async def _shell(text: str, signal: CancellationSignal) -> bool:
        seen.append(text)
        return True

    shell_on = {"value": False}
    preprocessor = QueryPreprocessor(transcript, _Sink(), shell_handler=_shell, shell_mode=lambda: shell_on["value"])

    assert (await _prepare(preprocessor, "ls -la")).should_proceed
    shell_on["value"] = True
    assert not (await _prepare(preprocessor, "ls -la")).should_proceed
    assert seen == ["ls -la"]


@pytest.mark.asyncio
async def test_at_command_handler_rewrites_query(transcript: Transcript) -> None:
    async def _at(text: str, *, transcript: Transcript, signal: CancellationSignal, timestamp: float) -> AtCommandResult:
        return AtCommandResult([{"text": text}, {"text": "file contents"}], True)

    preprocessor = QueryPreprocessor(transcript, _Sink(), at_handler=_at)

    prepared = await _prepare(preprocessor, "explain @main.py")

    assert prepared.query == [{"text": "explain @main.py"}, {"text": "file contents"}]
    assert transcript.entries[0].text == "explain @main.py"


@pytest.mark.asyncio
async def test_at_command_handler_can_stop(transcript: Transcript) -> None:
    async def _at(text: str, **_: Any) -> AtCommandResult:
        return AtCommandResult(None, False)

    preprocessor = QueryPreprocessor(transcript, _Sink(), at_handler=_at)

    assert not (await _prepare(preprocessor, "@missing.txt")).should_proceed
