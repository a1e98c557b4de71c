"""Tests for the in-process tool scheduler."""

from __future__ import annotations

import asyncio
from typing import Any, Mapping, Sequence

import pytest

from turnwright.ai.orchestration.cancellation import CancellationSignal
from turnwright.ai.orchestration.scheduler import (
    CANCELLED_TOOL_MESSAGE,
    LocalToolScheduler,
    SchedulerConfig,
    ToolNotFoundError,
    ToolSpec,
)
from turnwright.ai.orchestration.types import ToolCallRequest, ToolCallResponse, ToolCallStatus


class _Listener:
    def __init__(self) -> None:
        self.updates: list[tuple[str, ToolCallStatus]] = []
        self.responses: dict[str, ToolCallResponse] = {}
        self.settled: list[list[str]] = []

    async def on_tool_update(
        self,
        call_id: str,
        status: ToolCallStatus,
        response: ToolCallResponse | None = None,
        *,
        description: str | None = None,
    ) -> None:
        self.updates.append((call_id, status))
        if response is not None:
            self.responses[call_id] = response

    async def on_batch_settled(self, call_ids: Sequence[str]) -> None:
        self.settled.append(list(call_ids))

    def statuses(self, call_id: str) -> list[ToolCallStatus]:
        return [status for update_id, status in self.updates if update_id == call_id]


def _request(call_id: str, name: str, **args: Any) -> ToolCallRequest:
    return ToolCallRequest(call_id=call_id, name=name, args=args)


def _echo(args: Mapping[str, Any]) -> str:
    return f"echo: {args['text']}"


_ECHO_SCHEMA = {"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]}


def _scheduler(*specs: ToolSpec, **kwargs: Any) -> tuple[LocalToolScheduler, _Listener]:
    scheduler = LocalToolScheduler(specs, **kwargs)
    listener = _Listener()
    scheduler.bind(listener)
    return scheduler, listener


@pytest.mark.asyncio
async def test_successful_call_reports_lifecycle_and_output() -> None:
    scheduler, listener = _scheduler(ToolSpec("echo", handler=_echo, parameters=_ECHO_SCHEMA))

    scheduler.schedule([_request("c1", "echo", text="hi")], CancellationSignal())
    await scheduler.wait_idle()

    assert listener.statuses("c1") == [ToolCallStatus.VALIDATING, ToolCallStatus.EXECUTING, ToolCallStatus.SUCCESS]
    response = listener.responses["c1"]
    assert response.result_display == "echo: hi"
    assert response.response_parts[0] == {
        "functionResponse": {"id": "c1", "name": "echo", "response": {"output": "echo: hi"}}
    }
    assert listener.settled == [["c1"]]


@pytest.mark.asyncio
async def test_async_handler_result_is_serialized() -> None:
    async def _lookup(args: Mapping[str, Any]) -> dict[str, Any]:
        return {"found": True, "key": args["key"]}

    scheduler, listener = _scheduler(ToolSpec("lookup", handler=_lookup))

    scheduler.schedule([_request("c1", "lookup", key="x")], CancellationSignal())
    await scheduler.wait_idle()

    assert listener.responses["c1"].result_display == '{"found": true, "key": "x"}'


@pytest.mark.asyncio
async def test_unknown_tool_and_invalid_arguments_are_errors() -> None:
    scheduler, listener = _scheduler(ToolSpec("echo", handler=_echo, parameters=_ECHO_SCHEMA))

    scheduler.schedule([_request("c1", "missing"), _request("c2", "echo", text=3)], CancellationSignal())
    await scheduler.wait_idle()

    assert listener.statuses("c1")[-1] is ToolCallStatus.ERROR
    assert listener.responses["c1"].error == "Tool 'missing' not found or disabled"
    assert listener.statuses("c2")[-1] is ToolCallStatus.ERROR
    assert "Invalid arguments for tool 'echo'" in (listener.responses["c2"].error or "")
    assert listener.settled == [["c1", "c2"]]


@pytest.mark.asyncio
async def test_handler_exception_becomes_error_response() -> None:
    def _fail(args: Mapping[str, Any]) -> str:
        raise OSError("disk on fire")

    scheduler, listener = _scheduler(ToolSpec("fail", handler=_fail))

    scheduler.schedule([_request("c1", "fail")], CancellationSignal())
    await scheduler.wait_idle()

    response = listener.responses["c1"]
    assert response.error == "disk on fire"
    assert response.response_parts[0]["functionResponse"]["response"] == {"error": "disk on fire"}


@pytest.mark.asyncio
async def test_timeout_is_reported_as_error() -> None:
    async def _slow(args: Mapping[str, Any]) -> str:
        await asyncio.sleep(5)
        return "late"

    scheduler, listener = _scheduler(ToolSpec("slow", handler=_slow, timeout=0.01))

    scheduler.schedule([_request("c1", "slow")], CancellationSignal())
    await scheduler.wait_idle()

    assert listener.responses["c1"].error == "Tool 'slow' timed out after 0.01s"


@pytest.mark.asyncio
async def test_cancellation_interrupts_running_tool() -> None:
    started = asyncio.Event()

    async def _wait_forever(args: Mapping[str, Any]) -> str:
        started.set()
        await asyncio.Event().wait()
        return "unreachable"

    scheduler, listener = _scheduler(ToolSpec("block", handler=_wait_forever), config=SchedulerConfig(default_timeout=None))
    signal = CancellationSignal()

    scheduler.schedule([_request("c1", "block")], signal)
    await started.wait()
    signal.cancel("user")
    await scheduler.wait_idle()

    assert listener.statuses("c1")[-1] is ToolCallStatus.CANCELLED
    assert listener.responses["c1"].error == CANCELLED_TOOL_MESSAGE


@pytest.mark.asyncio
async def test_already_cancelled_signal_skips_execution() -> None:
    calls: list[Mapping[str, Any]] = []
    scheduler, listener = _scheduler(ToolSpec("echo", handler=lambda args: calls.append(args)))
    signal = CancellationSignal()
    signal.cancel()

    scheduler.schedule([_request("c1", "echo")], signal)
    await scheduler.wait_idle()

    assert calls == []
    assert listener.statuses("c1") == [ToolCallStatus.VALIDATING, ToolCallStatus.CANCELLED]


@pytest.mark.asyncio
async def test_approval_gate() -> None:
    decisions = {"c1": True, "c2": False}

    async def _approve(request: ToolCallRequest) -> bool:
        return decisions[request.call_id]

    spec = ToolSpec("write", handler=lambda args: "written", requires_approval=True, description="Write a file")
    scheduler, listener = _scheduler(spec, approval_handler=_approve)

    scheduler.schedule([_request("c1", "write"), _request("c2", "write")], CancellationSignal())
    await scheduler.wait_idle()

    assert listener.statuses("c1") == [
        ToolCallStatus.VALIDATING,
        ToolCallStatus.AWAITING_APPROVAL,
        ToolCallStatus.EXECUTING,
        ToolCallStatus.SUCCESS,
    ]
    assert listener.statuses("c2")[-1] is ToolCallStatus.CANCELLED


def test_registry_and_declarations() -> None:
    scheduler = LocalToolScheduler([ToolSpec("echo", handler=_echo, description="Echo text", parameters=_ECHO_SCHEMA)])

    with pytest.raises(ValueError):
        scheduler.register(ToolSpec("echo", handler=_echo))
    assert scheduler.tool_names == ("echo",)
    assert scheduler.function_declarations() == [
        {
            "type": "function",
            "function": {"name": "echo", "description": "Echo text", "parameters": _ECHO_SCHEMA},
        }
    ]

    scheduler.unregister("echo")
    with pytest.raises(ToolNotFoundError):
        scheduler.unregister("echo")


@pytest.mark.asyncio
async def test_schedule_requires_bound_listener() -> None:
    scheduler = LocalToolScheduler()

    with pytest.raises(RuntimeError):
        scheduler.schedule([_request("c1", "echo")], CancellationSignal())
