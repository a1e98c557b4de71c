"""Tool scheduling: the scheduler protocol and an in-process implementation.

The orchestrator never runs tools itself. It hands requests to a
:class:`ToolScheduler`, which reports per-call status changes and finally
the settled batch back to its bound :class:`ToolSchedulerListener`.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Mapping, Protocol, Sequence, runtime_checkable

import jsonschema

from .cancellation import CancellationSignal
from .types import ToolCallRequest, ToolCallResponse, ToolCallStatus, function_response_part

__all__ = [
    "ToolScheduler",
    "ToolSchedulerListener",
    "ToolSpec",
    "SchedulerConfig",
    "LocalToolScheduler",
    "ToolNotFoundError",
    "CANCELLED_TOOL_MESSAGE",
]

LOGGER = logging.getLogger(__name__)

CANCELLED_TOOL_MESSAGE = "[Operation Cancelled] Reason: User cancelled tool execution."

ToolHandler = Callable[[Mapping[str, Any]], Any]
ApprovalHandler = Callable[[ToolCallRequest], Awaitable[bool]]


# -----------------------------------------------------------------------------
# Protocols
# -----------------------------------------------------------------------------


class ToolSchedulerListener(Protocol):
    """Receiver of status reports; implemented by the tool call tracker."""

    async def on_tool_update(
        self,
        call_id: str,
        status: ToolCallStatus,
        response: ToolCallResponse | None = None,
        *,
        description: str | None = None,
    ) -> None: ...

    async def on_batch_settled(self, call_ids: Sequence[str]) -> None: ...


@runtime_checkable
class ToolScheduler(Protocol):
    """Executes tool calls on behalf of the orchestrator."""

    def bind(self, listener: ToolSchedulerListener) -> None: ...

    def schedule(self, requests: Sequence[ToolCallRequest], signal: CancellationSignal) -> None: ...


class ToolNotFoundError(LookupError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Tool '{name}' not found or disabled")
        self.name = name


class _ToolCancelled(Exception):
    pass


# -----------------------------------------------------------------------------
# Tool specification
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """A tool the local scheduler can run.

    Attributes:
        name: Name the model uses to call the tool.
        handler: Callable receiving the argument mapping; may be sync or async.
        description: Human-readable description sent to the model.
        parameters: JSON Schema for the arguments; validated before running.
        requires_approval: Ask the approval handler before executing.
        timeout: Per-tool timeout override in seconds.
    """

    name: str
    handler: ToolHandler
    description: str = ""
    parameters: Mapping[str, Any] = field(default_factory=dict)
    requires_approval: bool = False
    timeout: float | None = None

    def to_openai_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.parameters) if self.parameters else {"type": "object", "properties": {}},
            },
        }


@dataclass(slots=True, frozen=True)
class SchedulerConfig:
    """Configuration for :class:`LocalToolScheduler`.

    Attributes:
        default_timeout: Timeout for a tool run in seconds; ``None`` disables it.
        log_arguments: Log tool arguments at DEBUG (may contain sensitive data).
    """

    default_timeout: float | None = 30.0
    log_arguments: bool = False


# -----------------------------------------------------------------------------
# Local scheduler
# -----------------------------------------------------------------------------


class LocalToolScheduler:
    """Run registered tools in-process, one asyncio task per scheduled batch.

    Example:
        scheduler = LocalToolScheduler([ToolSpec("echo", handler=lambda args: args["text"])])
        tracker = ToolCallTracker(scheduler, transcript)
    """

    def __init__(
        self,
        tools: Iterable[ToolSpec] = (),
        *,
        approval_handler: ApprovalHandler | None = None,
        config: SchedulerConfig | None = None,
    ) -> None:
        self._tools: dict[str, ToolSpec] = {}
        self._approval_handler = approval_handler
        self._config = config or SchedulerConfig()
        self._listener: ToolSchedulerListener | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        for spec in tools:
            self.register(spec)

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------
    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._tools:
            raise ValueError(f"Tool '{spec.name}' is already registered")
        self._tools[spec.name] = spec

    def unregister(self, name: str) -> None:
        if self._tools.pop(name, None) is None:
            raise ToolNotFoundError(name)

    @property
    def tool_names(self) -> tuple[str, ...]:
        return tuple(self._tools)

    def function_declarations(self) -> list[dict[str, Any]]:
        return [spec.to_openai_tool() for spec in self._tools.values()]

    # ------------------------------------------------------------------
    # ToolScheduler protocol
    # ------------------------------------------------------------------
    def bind(self, listener: ToolSchedulerListener) -> None:
        self._listener = listener

    def schedule(self, requests: Sequence[ToolCallRequest], signal: CancellationSignal) -> None:
        if self._listener is None:
            raise RuntimeError("LocalToolScheduler.schedule called before bind()")
        task = asyncio.get_running_loop().create_task(self._run_batch(list(requests), signal))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def wait_idle(self) -> None:
        """Wait until every scheduled batch, including follow-up batches, settled."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    async def _run_batch(self, requests: list[ToolCallRequest], signal: CancellationSignal) -> None:
        assert self._listener is not None
        await asyncio.gather(*(self._run_call(request, signal) for request in requests))
        await self._listener.on_batch_settled([request.call_id for request in requests])

    async def _run_call(self, request: ToolCallRequest, signal: CancellationSignal) -> None:
        listener = self._listener
        assert listener is not None
        call_id = request.call_id
        await listener.on_tool_update(call_id, ToolCallStatus.VALIDATING)

        spec = self._tools.get(request.name)
        if spec is None:
            message = f"Tool '{request.name}' not found or disabled"
            LOGGER.warning(message)
            await listener.on_tool_update(call_id, ToolCallStatus.ERROR, _error_response(request, message))
            return
        try:
            self._validate_args(spec, request.args)
        except jsonschema.ValidationError as exc:
            message = f"Invalid arguments for tool '{spec.name}': {exc.message}"
            await listener.on_tool_update(call_id, ToolCallStatus.ERROR, _error_response(request, message))
            return

        if signal.is_set:
            await listener.on_tool_update(call_id, ToolCallStatus.CANCELLED, _cancelled_response(request))
            return

        if spec.requires_approval and self._approval_handler is not None:
            await listener.on_tool_update(call_id, ToolCallStatus.AWAITING_APPROVAL, description=spec.description)
            try:
                approved = await self._race(self._approval_handler(request), signal, None)
            except _ToolCancelled:
                approved = False
            if not approved:
                await listener.on_tool_update(call_id, ToolCallStatus.CANCELLED, _cancelled_response(request))
                return

        await listener.on_tool_update(call_id, ToolCallStatus.EXECUTING)
        if self._config.log_arguments:
            LOGGER.debug("Executing tool %s (call_id=%s) with arguments: %s", spec.name, call_id, request.args)
        else:
            LOGGER.debug("Executing tool %s (call_id=%s)", spec.name, call_id)

        timeout = spec.timeout if spec.timeout is not None else self._config.default_timeout
        start_time = time.perf_counter()
        try:
            result = await self._race(self._invoke(spec, request.args), signal, timeout)
        except _ToolCancelled:
            LOGGER.debug("Tool %s cancelled", spec.name)
            await listener.on_tool_update(call_id, ToolCallStatus.CANCELLED, _cancelled_response(request))
            return
        except asyncio.TimeoutError:
            duration_ms = (time.perf_counter() - start_time) * 1000
            LOGGER.warning("Tool %s timed out after %.1fms (timeout=%.1fs)", spec.name, duration_ms, timeout)
            message = f"Tool '{spec.name}' timed out after {timeout}s"
            await listener.on_tool_update(call_id, ToolCallStatus.ERROR, _error_response(request, message))
            return
        except Exception as exc:
            duration_ms = (time.perf_counter() - start_time) * 1000
            LOGGER.warning("Tool %s failed after %.1fms: %s", spec.name, duration_ms, exc)
            await listener.on_tool_update(call_id, ToolCallStatus.ERROR, _error_response(request, str(exc)))
            return

        LOGGER.debug("Tool %s completed in %.1fms", spec.name, (time.perf_counter() - start_time) * 1000)
        await listener.on_tool_update(call_id, ToolCallStatus.SUCCESS, _success_response(request, result))

    @staticmethod
    def _validate_args(spec: ToolSpec, args: Mapping[str, Any]) -> None:
        if not spec.parameters:
            return
        validator_cls = jsonschema.validators.validator_for(spec.parameters)
        validator_cls(spec.parameters).validate(dict(args))

    @staticmethod
    async def _invoke(spec: ToolSpec, args: Mapping[str, Any]) -> Any:
        if inspect.iscoroutinefunction(spec.handler):
            return await spec.handler(args)
        result = await asyncio.to_thread(spec.handler, args)
        if inspect.isawaitable(result):
            return await result
        return result

    @staticmethod
    async def _race(awaitable: Awaitable[Any], signal: CancellationSignal, timeout: float | None) -> Any:
        """Await ``awaitable`` unless the signal fires or ``timeout`` elapses first."""

        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(signal.wait())
        try:
            done, _ = await asyncio.wait(
                {work, waiter},
                timeout=timeout if timeout and timeout > 0 else None,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            waiter.cancel()
        if work in done:
            return work.result()
        work.cancel()
        await asyncio.gather(work, return_exceptions=True)
        if signal.is_set:
            raise _ToolCancelled()
        raise asyncio.TimeoutError()


def _success_response(request: ToolCallRequest, result: Any) -> ToolCallResponse:
    display = result if isinstance(result, str) else _to_json(result)
    part = function_response_part(request.call_id, request.name, {"output": display})
    return ToolCallResponse(call_id=request.call_id, response_parts=(part,), result_display=display)


def _error_response(request: ToolCallRequest, message: str) -> ToolCallResponse:
    part = function_response_part(request.call_id, request.name, {"error": message})
    return ToolCallResponse(call_id=request.call_id, response_parts=(part,), result_display=message, error=message)


def _cancelled_response(request: ToolCallRequest) -> ToolCallResponse:
    part = function_response_part(request.call_id, request.name, {"error": CANCELLED_TOOL_MESSAGE})
    return ToolCallResponse(
        call_id=request.call_id,
        response_parts=(part,),
        result_display=CANCELLED_TOOL_MESSAGE,
        error=CANCELLED_TOOL_MESSAGE,
    )


def _to_json(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)
