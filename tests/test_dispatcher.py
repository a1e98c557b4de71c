"""Tests for stream event dispatch."""

from __future__ import annotations

from typing import Any, AsyncIterator, Iterable

import pytest

from turnwright.ai.orchestration.dispatcher import (
    LOOP_DETECTED_MESSAGE,
    USER_CANCELLED_MESSAGE,
    DispatcherConfig,
    StreamEventDispatcher,
    StreamStatus,
    event_identity,
)
from turnwright.ai.orchestration.events import (
    ChatCompressedEvent,
    ContentEvent,
    ErrorEvent,
    FinishedEvent,
    LoopDetectedEvent,
    MaxSessionTurnsEvent,
    StreamEvent,
    ThoughtEvent,
    ToolCallRequestEvent,
    UserCancelledEvent,
)
from turnwright.ai.orchestration.tool_tracker import ToolCallTracker
from turnwright.ai.orchestration.transcript import EntryType, Transcript, ToolDisplayStatus
from turnwright.ai.orchestration.types import (
    ChatCompressionInfo,
    ErrorInfo,
    FinishReason,
    ThoughtSummary,
    ToolCallStatus,
    Turn,
)
from tests.helpers import RecordingScheduler, make_request


async def _stream(events: Iterable[StreamEvent]) -> AsyncIterator[StreamEvent]:
    for event in events:
        yield event


class _Sink:
    def __init__(self) -> None:
        self.batches: list[list[Any]] = []
        self.thoughts: list[ThoughtSummary | None] = []

    def schedule(self, requests: Any, signal: Any) -> None:
        self.batches.append(list(requests))

    def thought(self, value: ThoughtSummary | None) -> None:
        self.thoughts.append(value)


def _dispatcher(transcript: Transcript, turn: Turn, sink: _Sink, **config: Any) -> StreamEventDispatcher:
    return StreamEventDispatcher(
        transcript,
        turn,
        schedule_tools=sink.schedule,
        on_thought=sink.thought,
        config=DispatcherConfig(**config),
    )


def _texts(transcript: Transcript) -> list[tuple[EntryType, str]]:
    return [(entry.type, entry.text) for entry in transcript.entries]


@pytest.mark.asyncio
async def test_content_builds_pending_assistant_entry(transcript: Transcript, turn: Turn) -> None:
    sink = _Sink()

    outcome = await _dispatcher(transcript, turn, sink).run(_stream([ContentEvent("Hi"), ContentEvent(" there")]))

    assert outcome.status is StreamStatus.COMPLETED
    assert transcript.pending is not None and transcript.pending.text == "Hi there"
    assert sink.batches == []


@pytest.mark.asyncio
async def test_redelivered_snapshot_is_dropped(transcript: Transcript, turn: Turn) -> None:
    sink = _Sink()
    events = [ContentEvent("Hello"), ContentEvent("Hello"), ContentEvent("Hello world")]

    await _dispatcher(transcript, turn, sink).run(_stream(events))

    assert transcript.pending is not None and transcript.pending.text == "Hello world"


def test_event_identity_uses_length_tail_and_generation_id() -> None:
    assert event_identity(ContentEvent("abcdefghijklmnop")) == "content-16-ghijklmnop"
    assert event_identity(FinishedEvent(FinishReason.STOP, event_id="gen-1")) == "finished-gen-1"
    assert event_identity(UserCancelledEvent()) != event_identity(UserCancelledEvent())


@pytest.mark.asyncio
async def test_tool_requests_are_scheduled_once_after_stream_ends(transcript: Transcript, turn: Turn) -> None:
    sink = _Sink()
    first = make_request("call-1")
    second = make_request("call-2", name="write_file")
    events = [
        ToolCallRequestEvent(first),
        ToolCallRequestEvent(first, event_id="retry"),
        ToolCallRequestEvent(second),
        FinishedEvent(FinishReason.STOP),
    ]

    outcome = await _dispatcher(transcript, turn, sink).run(_stream(events))

    assert [request.call_id for request in outcome.tool_requests] == ["call-1", "call-2"]
    assert sink.batches == [[first, second]]


@pytest.mark.asyncio
async def test_user_cancelled_finalizes_pending_and_skips_tools(transcript: Transcript, turn: Turn) -> None:
    sink = _Sink()
    events = [ContentEvent("partial"), ToolCallRequestEvent(make_request("call-1")), UserCancelledEvent()]

    outcome = await _dispatcher(transcript, turn, sink).run(_stream(events))

    assert outcome.status is StreamStatus.USER_CANCELLED
    assert sink.batches == []
    assert _texts(transcript) == [
        (EntryType.ASSISTANT, "partial"),
        (EntryType.INFO, USER_CANCELLED_MESSAGE),
    ]
    assert transcript.pending is None
    assert sink.thoughts == [None]


@pytest.mark.asyncio
async def test_user_cancelled_shows_unfinished_tool_calls_as_cancelled(transcript: Transcript, turn: Turn) -> None:
    scheduler = RecordingScheduler()
    tracker = ToolCallTracker(scheduler, transcript)
    running, done = make_request("call-1"), make_request("call-2")
    tracker.schedule([running, done], turn.signal)
    await scheduler.report(running, ToolCallStatus.EXECUTING)
    await scheduler.report(done, ToolCallStatus.SUCCESS)
    dispatcher = StreamEventDispatcher(transcript, turn, cancelled_tools=tracker.cancelled_display)

    await dispatcher.run(_stream([ContentEvent("Partial"), UserCancelledEvent()]))

    assert _texts(transcript) == [
        (EntryType.ASSISTANT, "Partial"),
        (EntryType.TOOL_GROUP, ""),
        (EntryType.INFO, USER_CANCELLED_MESSAGE),
    ]
    assert [(tool.call_id, tool.status) for tool in transcript.entries[1].tools] == [
        ("call-1", ToolDisplayStatus.CANCELLED)
    ]


@pytest.mark.asyncio
async def test_error_event_drops_blank_pending_text(transcript: Transcript, turn: Turn) -> None:
    events = [ContentEvent("  \n"), ErrorEvent(ErrorInfo("boom"))]

    await _dispatcher(transcript, turn, _Sink()).run(_stream(events))

    assert _texts(transcript) == [(EntryType.ERROR, "[API Error: boom]")]
    assert transcript.pending is None



@pytest.mark.asyncio
async def test_content_after_local_cancellation_is_ignored(transcript: Transcript, turn: Turn) -> None:
    turn.signal.cancel("user")

    await _dispatcher(transcript, turn, _Sink()).run(_stream([ContentEvent("late"), ThoughtEvent(ThoughtSummary("x"))]))

    assert transcript.pending is None
    assert transcript.entries == ()


@pytest.mark.asyncio
async def test_error_event_flushes_pending_and_adds_error(transcript: Transcript, turn: Turn) -> None:
    sink = _Sink()
    events = [
        ContentEvent("so far"),
        ErrorEvent(ErrorInfo('{"error": {"message": "Too many requests"}}', status=429)),
    ]

    outcome = await _dispatcher(transcript, turn, sink, model_name="gpt-4o", fallback_model="gpt-4o-mini").run(
        _stream(events)
    )

    assert outcome.status is StreamStatus.ERROR
    assert transcript.entries[0].text == "so far"
    error = transcript.entries[1]
    assert error.type is EntryType.ERROR
    assert error.text.startswith("[API Error: Too many requests]")
    assert "Possible quota limitations" in error.text
    assert "gpt-4o-mini" in error.text


@pytest.mark.asyncio
async def test_chat_compressed_info_message(transcript: Transcript, turn: Turn) -> None:
    events = [ChatCompressedEvent(ChatCompressionInfo(1200, 300)), ChatCompressedEvent(None, event_id="again")]

    await _dispatcher(transcript, turn, _Sink(), model_name="gpt-4o").run(_stream(events))

    first, second = (entry.text for entry in transcript.entries)
    assert first == (
        "IMPORTANT: This conversation approached the input token limit for gpt-4o. "
        "A compressed context will be sent for future messages (compressed from: 1200 to 300 tokens)."
    )
    assert "compressed from: unknown to unknown tokens" in second


@pytest.mark.asyncio
async def test_max_session_turns_sets_flag(transcript: Transcript, turn: Turn) -> None:
    outcome = await _dispatcher(transcript, turn, _Sink(), max_session_turns=3).run(_stream([MaxSessionTurnsEvent()]))

    assert outcome.max_session_turns_reached
    assert transcript.entries[0].text == (
        "The session has reached the maximum number of turns: 3. Please update this limit in your settings file."
    )


@pytest.mark.asyncio
async def test_finish_reason_message_emitted_exactly_once(transcript: Transcript, turn: Turn) -> None:
    events = [
        FinishedEvent(FinishReason.MAX_TOKENS, event_id="gen-1"),
        FinishedEvent(FinishReason.MAX_TOKENS, event_id="gen-1"),
    ]

    outcome = await _dispatcher(transcript, turn, _Sink()).run(_stream(events))

    assert outcome.finish_reason is FinishReason.MAX_TOKENS
    assert _texts(transcript) == [(EntryType.INFO, "⚠️  Response truncated due to token limits.")]


@pytest.mark.asyncio
async def test_stop_finish_reason_adds_nothing(transcript: Transcript, turn: Turn) -> None:
    await _dispatcher(transcript, turn, _Sink()).run(_stream([FinishedEvent(FinishReason.STOP)]))

    assert transcript.entries == ()


@pytest.mark.asyncio
async def test_thought_and_loop_detection(transcript: Transcript, turn: Turn) -> None:
    sink = _Sink()
    thought = ThoughtSummary("Planning", "reading files")

    outcome = await _dispatcher(transcript, turn, sink).run(_stream([ThoughtEvent(thought), LoopDetectedEvent()]))

    assert sink.thoughts == [thought]
    assert outcome.loop_detected
    # The coordinator, not the dispatcher, reports the loop.
    assert all(entry.text != LOOP_DETECTED_MESSAGE for entry in transcript.entries)
