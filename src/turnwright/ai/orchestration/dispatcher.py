"""Route the stream events of one turn to their handlers."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterable, Callable, Sequence, assert_never

from ..errors import format_api_error
from .cancellation import CancellationSignal
from .events import (
    ChatCompressedEvent,
    ContentEvent,
    ErrorEvent,
    FinishedEvent,
    LoopDetectedEvent,
    MaxSessionTurnsEvent,
    StreamEvent,
    ThoughtEvent,
    ToolCallConfirmationEvent,
    ToolCallRequestEvent,
    ToolCallResponseEvent,
    UserCancelledEvent,
)
from .reassembler import ContentReassembler, FragmentMode
from .transcript import Transcript, TranscriptEntry
from .types import ChatCompressionInfo, FinishReason, ThoughtSummary, ToolCallRequest, Turn

LOGGER = logging.getLogger(__name__)

__all__ = [
    "StreamStatus",
    "StreamOutcome",
    "DispatcherConfig",
    "StreamEventDispatcher",
    "event_identity",
    "FINISH_REASON_MESSAGES",
    "USER_CANCELLED_MESSAGE",
    "LOOP_DETECTED_MESSAGE",
]

USER_CANCELLED_MESSAGE = "User cancelled the request."
LOOP_DETECTED_MESSAGE = (
    "A potential loop was detected. This can happen due to repetitive tool calls "
    "or other model behavior. The request has been halted."
)

FINISH_REASON_MESSAGES: dict[FinishReason, str | None] = {
    FinishReason.FINISH_REASON_UNSPECIFIED: None,
    FinishReason.STOP: None,
    FinishReason.MAX_TOKENS: "Response truncated due to token limits.",
    FinishReason.SAFETY: "Response stopped due to safety reasons.",
    FinishReason.RECITATION: "Response stopped due to recitation policy.",
    FinishReason.LANGUAGE: "Response stopped due to unsupported language.",
    FinishReason.BLOCKLIST: "Response stopped due to forbidden terms.",
    FinishReason.PROHIBITED_CONTENT: "Response stopped due to prohibited content.",
    FinishReason.SPII: "Response stopped due to sensitive personally identifiable information.",
    FinishReason.OTHER: "Response stopped for other reasons.",
    FinishReason.MALFORMED_FUNCTION_CALL: "Response stopped due to malformed function call.",
    FinishReason.IMAGE_SAFETY: "Response stopped due to image safety violations.",
    FinishReason.UNEXPECTED_TOOL_CALL: "Response stopped due to unexpected tool call.",
}

ToolRequestSink = Callable[[Sequence[ToolCallRequest], CancellationSignal], object]
ThoughtSink = Callable[[ThoughtSummary | None], None]
ToolDisplaySource = Callable[[], TranscriptEntry | None]


class StreamStatus(str, Enum):
    COMPLETED = "completed"
    USER_CANCELLED = "user_cancelled"
    ERROR = "error"


@dataclass(slots=True)
class StreamOutcome:
    """Summary of a dispatched stream, returned to the coordinator."""

    status: StreamStatus = StreamStatus.COMPLETED
    loop_detected: bool = False
    max_session_turns_reached: bool = False
    finish_reason: FinishReason | None = None
    tool_requests: list[ToolCallRequest] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class DispatcherConfig:
    model_name: str = ""
    fallback_model: str | None = None
    max_session_turns: int | None = None
    fragment_mode: FragmentMode = FragmentMode.AUTO


def event_identity(event: StreamEvent) -> str:
    """Key used to drop repeated events.

    Content is identified by its length and last ten characters, which
    catches replays of the same fragment. Other events are identified by the
    backend generation id when one is present; otherwise they get a fresh id
    and are never treated as duplicates.
    """

    if isinstance(event, ContentEvent):
        value = event.value
        return f"{event.type.value}-{len(value)}-{value[-10:]}"
    if event.event_id:
        return f"{event.type.value}-{event.event_id}"
    return f"{event.type.value}-{uuid.uuid4().hex}"


class StreamEventDispatcher:
    """Consume one turn's event stream and update the transcript.

    The dispatcher is single-use: create one per stream pass.
    """

    def __init__(
        self,
        transcript: Transcript,
        turn: Turn,
        *,
        schedule_tools: ToolRequestSink | None = None,
        on_thought: ThoughtSink | None = None,
        cancelled_tools: ToolDisplaySource | None = None,
        config: DispatcherConfig | None = None,
        reassembler: ContentReassembler | None = None,
    ) -> None:
        self._transcript = transcript
        self._turn = turn
        self._schedule_tools = schedule_tools
        self._on_thought = on_thought
        self._cancelled_tools = cancelled_tools
        self._config = config or DispatcherConfig()
        self._reassembler = reassembler or ContentReassembler(transcript, mode=self._config.fragment_mode)
        self._seen: set[str] = set()
        self._request_ids: set[str] = set()
        self._outcome = StreamOutcome()
        self._timestamp = turn.started_at

    @property
    def outcome(self) -> StreamOutcome:
        return self._outcome

    @property
    def reassembler(self) -> ContentReassembler:
        return self._reassembler

    async def run(self, stream: AsyncIterable[StreamEvent]) -> StreamOutcome:
        """Dispatch every event of ``stream`` and schedule collected tool requests.

        Returns:
            The stream outcome. When the backend reported a user cancellation
            no tool requests are scheduled.
        """

        async for event in stream:
            self.dispatch(event)
            if self._outcome.status is StreamStatus.USER_CANCELLED:
                return self._outcome

        requests = self._outcome.tool_requests
        if requests and self._schedule_tools is not None:
            LOGGER.debug("Scheduling %d tool call(s) for prompt %s", len(requests), self._turn.prompt_id)
            self._schedule_tools(list(requests), self._turn.signal)
        return self._outcome

    def dispatch(self, event: StreamEvent) -> None:
        identity = event_identity(event)
        if identity in self._seen:
            LOGGER.debug("Dropping duplicate stream event %s", identity)
            return
        self._seen.add(identity)

        match event:
            case ThoughtEvent():
                if not self._turn.cancelled:
                    self._set_thought(event.value)
            case ContentEvent():
                if not self._turn.cancelled:
                    self._reassembler.feed(event.value, timestamp=self._timestamp)
            case ToolCallRequestEvent():
                self._handle_tool_request(event.value)
            case UserCancelledEvent():
                self._handle_user_cancelled()
            case ErrorEvent():
                self._handle_error(event)
            case ChatCompressedEvent():
                self._handle_chat_compressed(event.value)
            case ToolCallConfirmationEvent() | ToolCallResponseEvent():
                pass
            case MaxSessionTurnsEvent():
                self._handle_max_session_turns()
            case FinishedEvent():
                self._handle_finished(event.value)
            case LoopDetectedEvent():
                self._outcome.loop_detected = True
            case _:
                assert_never(event)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------
    def _handle_tool_request(self, request: ToolCallRequest) -> None:
        if request.call_id in self._request_ids:
            LOGGER.debug("Ignoring repeated tool call request %s", request.call_id)
            return
        self._request_ids.add(request.call_id)
        self._outcome.tool_requests.append(request)

    def _handle_user_cancelled(self) -> None:
        self._outcome.status = StreamStatus.USER_CANCELLED
        if self._turn.cancelled:
            # The coordinator already flushed and reported the cancellation.
            return
        self._transcript.finalize_pending(cancel_in_flight=True, timestamp=self._timestamp)
        tools = self._cancelled_tools() if self._cancelled_tools is not None else None
        if tools is not None:
            self._transcript.add(tools, timestamp=self._timestamp)
        self._transcript.add(TranscriptEntry.info(USER_CANCELLED_MESSAGE), timestamp=self._timestamp)
        self._set_thought(None)

    def _handle_error(self, event: ErrorEvent) -> None:
        self._outcome.status = StreamStatus.ERROR
        self._transcript.flush_pending(timestamp=self._timestamp)
        text = format_api_error(
            event.value.message,
            status_code=event.value.status,
            model=self._config.model_name,
            fallback_model=self._config.fallback_model,
        )
        self._transcript.add(TranscriptEntry.error(text), timestamp=self._timestamp)
        self._set_thought(None)

    def _handle_chat_compressed(self, info: ChatCompressionInfo | None) -> None:
        original = info.original_token_count if info and info.original_token_count else "unknown"
        new = info.new_token_count if info and info.new_token_count else "unknown"
        text = (
            f"IMPORTANT: This conversation approached the input token limit for {self._config.model_name}. "
            "A compressed context will be sent for future messages "
            f"(compressed from: {original} to {new} tokens)."
        )
        self._transcript.add(TranscriptEntry.info(text), timestamp=self._timestamp)

    def _handle_max_session_turns(self) -> None:
        self._outcome.max_session_turns_reached = True
        text = (
            f"The session has reached the maximum number of turns: {self._config.max_session_turns}. "
            "Please update this limit in your settings file."
        )
        self._transcript.add(TranscriptEntry.info(text), timestamp=self._timestamp)

    def _handle_finished(self, reason: FinishReason) -> None:
        self._outcome.finish_reason = reason
        message = FINISH_REASON_MESSAGES.get(reason)
        if message:
            self._transcript.add(TranscriptEntry.info(f"⚠️  {message}"), timestamp=self._timestamp)

    def _set_thought(self, thought: ThoughtSummary | None) -> None:
        if self._on_thought is not None:
            self._on_thought(thought)
