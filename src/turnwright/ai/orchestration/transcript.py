"""Ordered transcript of committed entries plus one pending entry."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Sequence

from .types import ToolCallStatus, TrackedToolCall

LOGGER = logging.getLogger(__name__)

__all__ = [
    "EntryType",
    "ToolDisplayStatus",
    "ToolDisplay",
    "TranscriptEntry",
    "Transcript",
    "TranscriptListener",
    "map_to_display",
    "mark_in_flight_cancelled",
]


class EntryType(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    ASSISTANT_CONTENT = "assistant_content"
    TOOL_GROUP = "tool_group"
    INFO = "info"
    ERROR = "error"


class ToolDisplayStatus(str, Enum):
    PENDING = "pending"
    CONFIRMING = "confirming"
    EXECUTING = "executing"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


_IN_FLIGHT_DISPLAY = frozenset(
    {ToolDisplayStatus.PENDING, ToolDisplayStatus.CONFIRMING, ToolDisplayStatus.EXECUTING}
)

_STATUS_TO_DISPLAY = {
    ToolCallStatus.SCHEDULED: ToolDisplayStatus.PENDING,
    ToolCallStatus.VALIDATING: ToolDisplayStatus.PENDING,
    ToolCallStatus.AWAITING_APPROVAL: ToolDisplayStatus.CONFIRMING,
    ToolCallStatus.EXECUTING: ToolDisplayStatus.EXECUTING,
    ToolCallStatus.SUCCESS: ToolDisplayStatus.SUCCESS,
    ToolCallStatus.ERROR: ToolDisplayStatus.ERROR,
    ToolCallStatus.CANCELLED: ToolDisplayStatus.CANCELLED,
}


@dataclass(slots=True, frozen=True)
class ToolDisplay:
    """One row of a tool group entry."""

    call_id: str
    name: str
    description: str = ""
    status: ToolDisplayStatus = ToolDisplayStatus.PENDING
    result_display: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "callId": self.call_id,
            "name": self.name,
            "description": self.description,
            "status": self.status.value,
            "resultDisplay": self.result_display,
        }


@dataclass(slots=True, frozen=True)
class TranscriptEntry:
    """A renderable transcript item.

    ``entry_id`` and ``timestamp`` are assigned when the entry is committed;
    pending entries carry ``None``.
    """

    type: EntryType
    text: str = ""
    tools: tuple[ToolDisplay, ...] = ()
    entry_id: int | None = None
    timestamp: float | None = None

    def with_text(self, text: str) -> "TranscriptEntry":
        return replace(self, text=text)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"id": self.entry_id, "type": self.type.value}
        if self.type is EntryType.TOOL_GROUP:
            payload["tools"] = [tool.to_dict() for tool in self.tools]
        else:
            payload["text"] = self.text
        return payload

    @classmethod
    def user(cls, text: str) -> "TranscriptEntry":
        return cls(EntryType.USER, text)

    @classmethod
    def info(cls, text: str) -> "TranscriptEntry":
        return cls(EntryType.INFO, text)

    @classmethod
    def error(cls, text: str) -> "TranscriptEntry":
        return cls(EntryType.ERROR, text)


def map_to_display(calls: Sequence[TrackedToolCall]) -> TranscriptEntry:
    """Render tracked calls as a ``tool_group`` entry."""

    rows = []
    for call in calls:
        response = call.response
        result = None
        if response is not None:
            result = response.result_display if response.result_display is not None else response.error
        rows.append(
            ToolDisplay(
                call_id=call.call_id,
                name=call.request.name,
                description=call.description or _describe_args(call.request.args),
                status=_STATUS_TO_DISPLAY[call.status],
                result_display=result,
            )
        )
    return TranscriptEntry(EntryType.TOOL_GROUP, tools=tuple(rows))


def mark_in_flight_cancelled(entry: TranscriptEntry) -> TranscriptEntry:
    """Return ``entry`` with its unfinished tool rows shown as cancelled."""

    if entry.type is not EntryType.TOOL_GROUP:
        return entry
    tools = tuple(
        replace(tool, status=ToolDisplayStatus.CANCELLED) if tool.status in _IN_FLIGHT_DISPLAY else tool
        for tool in entry.tools
    )
    return replace(entry, tools=tools)



def _describe_args(args: Any) -> str:
    if not args:
        return ""
    try:
        return ", ".join(f"{key}={value!r}" for key, value in dict(args).items())
    except (TypeError, ValueError):
        return str(args)


TranscriptListener = Callable[[TranscriptEntry], None]


class Transcript:
    """Committed entries in commit order plus at most one pending entry.

    A pending entry is either committed (moved to the end of the list with a
    fresh id) or discarded; never both.
    """

    def __init__(self, listener: TranscriptListener | None = None) -> None:
        self._entries: list[TranscriptEntry] = []
        self._pending: TranscriptEntry | None = None
        self._next_id = 1
        self._listeners: list[TranscriptListener] = [listener] if listener else []

    # ------------------------------------------------------------------
    # Committed entries
    # ------------------------------------------------------------------
    @property
    def entries(self) -> tuple[TranscriptEntry, ...]:
        return tuple(self._entries)

    def add(self, entry: TranscriptEntry, *, timestamp: float | None = None) -> TranscriptEntry:
        """Commit ``entry`` and notify listeners."""

        committed = replace(
            entry,
            entry_id=self._next_id,
            timestamp=timestamp if timestamp is not None else time.time(),
        )
        self._next_id += 1
        self._entries.append(committed)
        for listener in list(self._listeners):
            try:
                listener(committed)
            except Exception:  # pragma: no cover - listener bugs stay local
                LOGGER.exception("Transcript listener failed for entry %s", committed.entry_id)
        return committed

    def add_listener(self, listener: TranscriptListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def clear(self) -> None:
        self._entries.clear()
        self._pending = None

    # ------------------------------------------------------------------
    # Pending entry
    # ------------------------------------------------------------------
    @property
    def pending(self) -> TranscriptEntry | None:
        return self._pending

    def set_pending(self, entry: TranscriptEntry | None) -> None:
        self._pending = entry

    def update_pending(self, text: str) -> None:
        if self._pending is None:
            raise RuntimeError("No pending entry to update")
        self._pending = self._pending.with_text(text)

    def commit_pending(self, *, timestamp: float | None = None) -> TranscriptEntry | None:
        """Commit the pending entry, if any, and clear the slot."""

        pending, self._pending = self._pending, None
        if pending is None:
            return None
        return self.add(pending, timestamp=timestamp)

    def flush_pending(self, *, timestamp: float | None = None) -> TranscriptEntry | None:
        """Commit the pending entry, dropping it instead when it holds only whitespace."""

        pending = self._pending
        if pending is None:
            return None
        if pending.type is not EntryType.TOOL_GROUP and not pending.text.strip():
            self._pending = None
            return None
        return self.commit_pending(timestamp=timestamp)

    def discard_pending(self) -> TranscriptEntry | None:
        pending, self._pending = self._pending, None
        return pending

    def finalize_pending(self, *, cancel_in_flight: bool = False, timestamp: float | None = None) -> TranscriptEntry | None:
        """Flush the pending entry, optionally marking unfinished tool rows cancelled."""

        pending = self._pending
        if pending is None:
            return None
        if cancel_in_flight:
            self._pending = mark_in_flight_cancelled(pending)
        return self.flush_pending(timestamp=timestamp)

