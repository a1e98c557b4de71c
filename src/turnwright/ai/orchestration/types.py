"""Core type definitions for turn orchestration.

This module defines the value objects that flow between the stream
dispatcher, the tool call tracker and the turn coordinator. Requests and
responses are frozen; :class:`TrackedToolCall` is the one mutable record and
is owned exclusively by the tool call tracker.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Sequence

from .cancellation import CancellationSignal

__all__ = [
    "ToolCallStatus",
    "ToolCallRequest",
    "ToolCallResponse",
    "TrackedToolCall",
    "ThoughtSummary",
    "ErrorInfo",
    "ChatCompressionInfo",
    "FinishReason",
    "StreamingState",
    "Turn",
    "TERMINAL_STATUSES",
    "function_response_part",
    "collect_response_parts",
]


# -----------------------------------------------------------------------------
# Tool call lifecycle
# -----------------------------------------------------------------------------


class ToolCallStatus(str, Enum):
    """Lifecycle states reported by the tool scheduler."""

    SCHEDULED = "scheduled"
    VALIDATING = "validating"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: frozenset[ToolCallStatus] = frozenset(
    {ToolCallStatus.SUCCESS, ToolCallStatus.ERROR, ToolCallStatus.CANCELLED}
)


@dataclass(slots=True, frozen=True)
class ToolCallRequest:
    """A tool invocation requested by the model or by the client.

    Attributes:
        call_id: Identifier unique within a turn.
        name: Registered tool name.
        args: Argument mapping passed to the tool.
        is_client_initiated: True when the user (e.g. a slash command) asked
            for the call; such results are never resubmitted to the model.
        prompt_id: Prompt identifier of the turn that spawned the call.
    """

    call_id: str
    name: str
    args: Mapping[str, Any] = field(default_factory=dict)
    is_client_initiated: bool = False
    prompt_id: str = ""


def function_response_part(call_id: str, name: str, response: Mapping[str, Any]) -> dict[str, Any]:
    """Build the model-visible payload describing one tool result."""

    return {
        "functionResponse": {
            "id": call_id,
            "name": name,
            "response": dict(response),
        }
    }


@dataclass(slots=True, frozen=True)
class ToolCallResponse:
    """Outcome of a tool call as reported by the scheduler.

    Attributes:
        call_id: Identifier of the request this response belongs to.
        response_parts: Payloads to send back to the model, in order.
        result_display: Optional human-readable rendering of the result.
        error: Error message when the call failed.
    """

    call_id: str
    response_parts: tuple[Mapping[str, Any], ...] = ()
    result_display: str | None = None
    error: str | None = None


@dataclass(slots=True)
class TrackedToolCall:
    """A tool call request plus its current lifecycle state."""

    request: ToolCallRequest
    status: ToolCallStatus = ToolCallStatus.SCHEDULED
    response: ToolCallResponse | None = None
    response_submitted: bool = False
    description: str = ""
    updated_at: float = field(default_factory=time.time)

    @property
    def call_id(self) -> str:
        return self.request.call_id

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_submittable(self) -> bool:
        """Terminal calls with a populated response may go back to the model."""
        return self.is_terminal and self.response is not None

    @property
    def awaiting_submission(self) -> bool:
        return self.is_terminal and not self.response_submitted


# -----------------------------------------------------------------------------
# Stream payloads
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ThoughtSummary:
    """Short reasoning summary streamed by thinking-capable models."""

    subject: str
    description: str = ""


@dataclass(slots=True, frozen=True)
class ErrorInfo:
    """Backend error carried by an error stream event."""

    message: str
    status: int | None = None


@dataclass(slots=True, frozen=True)
class ChatCompressionInfo:
    """Token counts before and after history compression."""

    original_token_count: int | None = None
    new_token_count: int | None = None


class FinishReason(str, Enum):
    """Reasons a backend gives for ending a response."""

    FINISH_REASON_UNSPECIFIED = "FINISH_REASON_UNSPECIFIED"
    STOP = "STOP"
    MAX_TOKENS = "MAX_TOKENS"
    SAFETY = "SAFETY"
    RECITATION = "RECITATION"
    LANGUAGE = "LANGUAGE"
    BLOCKLIST = "BLOCKLIST"
    PROHIBITED_CONTENT = "PROHIBITED_CONTENT"
    SPII = "SPII"
    OTHER = "OTHER"
    MALFORMED_FUNCTION_CALL = "MALFORMED_FUNCTION_CALL"
    IMAGE_SAFETY = "IMAGE_SAFETY"
    UNEXPECTED_TOOL_CALL = "UNEXPECTED_TOOL_CALL"


class StreamingState(str, Enum):
    """Coarse activity state derived from the turn and its tool calls."""

    IDLE = "idle"
    RESPONDING = "responding"
    WAITING_FOR_CONFIRMATION = "waiting_for_confirmation"


# -----------------------------------------------------------------------------
# Turn
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class Turn:
    """One request/response cycle, fresh or continuation.

    Attributes:
        prompt_id: Identifier shared by the turn and its continuations.
        signal: Cancellation signal advertised to the backend and tools.
        is_continuation: True when the turn carries tool results.
        started_at: Wall-clock start time.
    """

    prompt_id: str
    signal: CancellationSignal = field(default_factory=CancellationSignal)
    is_continuation: bool = False
    started_at: float = field(default_factory=time.time)

    @property
    def cancelled(self) -> bool:
        return self.signal.is_set


def collect_response_parts(calls: Sequence[TrackedToolCall]) -> list[Mapping[str, Any]]:
    """Flatten response parts of ``calls`` in their given order."""

    parts: list[Mapping[str, Any]] = []
    for call in calls:
        if call.response is not None:
            parts.extend(call.response.response_parts)
    return parts
