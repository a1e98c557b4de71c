"""Stream events produced by a backend session for one turn.

Each event kind is its own frozen dataclass and :data:`StreamEvent` is the
closed union of them, so dispatch code can ``match`` on the class and end
with :func:`typing.assert_never`.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Union

from .types import (
    ChatCompressionInfo,
    ErrorInfo,
    FinishReason,
    ThoughtSummary,
    ToolCallRequest,
    ToolCallResponse,
)

__all__ = [
    "StreamEventType",
    "ThoughtEvent",
    "ContentEvent",
    "ToolCallRequestEvent",
    "UserCancelledEvent",
    "ErrorEvent",
    "ChatCompressedEvent",
    "ToolCallConfirmationEvent",
    "ToolCallResponseEvent",
    "MaxSessionTurnsEvent",
    "FinishedEvent",
    "LoopDetectedEvent",
    "StreamEvent",
]


class StreamEventType(str, Enum):
    THOUGHT = "thought"
    CONTENT = "content"
    TOOL_CALL_REQUEST = "tool_call_request"
    USER_CANCELLED = "user_cancelled"
    ERROR = "error"
    CHAT_COMPRESSED = "chat_compressed"
    TOOL_CALL_CONFIRMATION = "tool_call_confirmation"
    TOOL_CALL_RESPONSE = "tool_call_response"
    MAX_SESSION_TURNS = "max_session_turns"
    FINISHED = "finished"
    LOOP_DETECTED = "loop_detected"


@dataclass(slots=True, frozen=True)
class ThoughtEvent:
    value: ThoughtSummary
    event_id: str | None = None
    type: ClassVar[StreamEventType] = StreamEventType.THOUGHT


@dataclass(slots=True, frozen=True)
class ContentEvent:
    """A text fragment; either a delta or a full snapshot of the message."""

    value: str
    event_id: str | None = None
    type: ClassVar[StreamEventType] = StreamEventType.CONTENT


@dataclass(slots=True, frozen=True)
class ToolCallRequestEvent:
    value: ToolCallRequest
    event_id: str | None = None
    type: ClassVar[StreamEventType] = StreamEventType.TOOL_CALL_REQUEST


@dataclass(slots=True, frozen=True)
class UserCancelledEvent:
    event_id: str | None = None
    type: ClassVar[StreamEventType] = StreamEventType.USER_CANCELLED


@dataclass(slots=True, frozen=True)
class ErrorEvent:
    value: ErrorInfo
    event_id: str | None = None
    type: ClassVar[StreamEventType] = StreamEventType.ERROR


@dataclass(slots=True, frozen=True)
class ChatCompressedEvent:
    value: ChatCompressionInfo | None = None
    event_id: str | None = None
    type: ClassVar[StreamEventType] = StreamEventType.CHAT_COMPRESSED


@dataclass(slots=True, frozen=True)
class ToolCallConfirmationEvent:
    value: Any = None
    event_id: str | None = None
    type: ClassVar[StreamEventType] = StreamEventType.TOOL_CALL_CONFIRMATION


@dataclass(slots=True, frozen=True)
class ToolCallResponseEvent:
    value: ToolCallResponse | None = None
    event_id: str | None = None
    type: ClassVar[StreamEventType] = StreamEventType.TOOL_CALL_RESPONSE


@dataclass(slots=True, frozen=True)
class MaxSessionTurnsEvent:
    event_id: str | None = None
    type: ClassVar[StreamEventType] = StreamEventType.MAX_SESSION_TURNS


@dataclass(slots=True, frozen=True)
class FinishedEvent:
    value: FinishReason
    event_id: str | None = None
    type: ClassVar[StreamEventType] = StreamEventType.FINISHED


@dataclass(slots=True, frozen=True)
class LoopDetectedEvent:
    event_id: str | None = None
    type: ClassVar[StreamEventType] = StreamEventType.LOOP_DETECTED


StreamEvent = Union[
    ThoughtEvent,
    ContentEvent,
    ToolCallRequestEvent,
    UserCancelledEvent,
    ErrorEvent,
    ChatCompressedEvent,
    ToolCallConfirmationEvent,
    ToolCallResponseEvent,
    MaxSessionTurnsEvent,
    FinishedEvent,
    LoopDetectedEvent,
]
