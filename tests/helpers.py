"""Shared test helpers and stub classes.

Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

from typing import Any, AsyncIterator, Mapping, Sequence

from turnwright.ai.orchestration.cancellation import CancellationSignal
from turnwright.ai.orchestration.events import StreamEvent
from turnwright.ai.orchestration.scheduler import ToolSchedulerListener
from turnwright.ai.orchestration.types import (
    ToolCallRequest,
    ToolCallResponse,
    ToolCallStatus,
    function_response_part,
)


class RecordingScheduler:
    """Scheduler stub that records batches; tests drive the listener by hand.

    Example:
        scheduler = RecordingScheduler()
        tracker = ToolCallTracker(scheduler, transcript)
        tracker.schedule([request], signal)
        await scheduler.complete(request)
    """

    def __init__(self) -> None:
        self.listener: ToolSchedulerListener | None = None
        self.batches: list[list[ToolCallRequest]] = []
        self.signals: list[CancellationSignal] = []

    def bind(self, listener: ToolSchedulerListener) -> None:
        self.listener = listener

    def schedule(self, requests: Sequence[ToolCallRequest], signal: CancellationSignal) -> None:
        self.batches.append(list(requests))
        self.signals.append(signal)

    async def report(
        self,
        request: ToolCallRequest,
        status: ToolCallStatus,
        output: Mapping[str, Any] | None = None,
    ) -> None:
        assert self.listener is not None
        response = None
        if status.is_terminal:
            response = make_response(request, output or {"output": "ok"})
        await self.listener.on_tool_update(request.call_id, status, response)

    async def complete(
        self,
        *requests: ToolCallRequest,
        status: ToolCallStatus = ToolCallStatus.SUCCESS,
    ) -> None:
        """Report ``requests`` terminal and settle them as one batch."""

        assert self.listener is not None
        for request in requests:
            await self.report(request, status)
        await self.listener.on_batch_settled([request.call_id for request in requests])


class ScriptedBackend:
    """Chat backend stub replaying one scripted event list per request."""

    def __init__(self, *scripts: Sequence[StreamEvent], error: BaseException | None = None) -> None:
        self._scripts = [list(script) for script in scripts]
        self._error = error
        self.requests: list[tuple[Any, str]] = []
        self.signals: list[CancellationSignal] = []
        self.history: list[Any] = []

    async def send_message_stream(
        self,
        request: Any,
        signal: CancellationSignal,
        prompt_id: str,
    ) -> AsyncIterator[StreamEvent]:
        self.requests.append((request, prompt_id))
        self.signals.append(signal)
        script = self._scripts.pop(0) if self._scripts else []
        for event in script:
            yield event
        if self._error is not None:
            error, self._error = self._error, None
            raise error

    def add_history(self, parts: Sequence[Mapping[str, Any]]) -> None:
        self.history.extend(parts)

    def get_history(self) -> list[dict[str, Any]]:
        return [dict(part) for part in self.history]


def make_request(call_id: str, name: str = "read_file", **args: Any) -> ToolCallRequest:
    return ToolCallRequest(call_id=call_id, name=name, args=args, prompt_id="session########1")


def make_response(request: ToolCallRequest, output: Mapping[str, Any]) -> ToolCallResponse:
    part = function_response_part(request.call_id, request.name, output)
    return ToolCallResponse(call_id=request.call_id, response_parts=(part,), result_display=str(output))


async def collect(stream: AsyncIterator[Any]) -> list[Any]:
    return [item async for item in stream]
