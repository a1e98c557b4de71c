"""Lifecycle registry for the tool calls of the active turn."""

from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, Iterable, Sequence

from .cancellation import CancellationSignal
from .scheduler import ToolScheduler
from .transcript import Transcript, TranscriptEntry, map_to_display, mark_in_flight_cancelled
from .types import (
    StreamingState,
    ToolCallRequest,
    ToolCallResponse,
    ToolCallStatus,
    TrackedToolCall,
)

LOGGER = logging.getLogger(__name__)

__all__ = ["ToolCallTracker", "BatchHandler", "StatusObserver"]

BatchHandler = Callable[[list[TrackedToolCall]], Awaitable[None]]
StatusObserver = Callable[[TrackedToolCall], Awaitable[None]]


class ToolCallTracker:
    """Track tool calls from scheduling to submission.

    The tracker is the scheduler's listener. Status reports update the
    registry; a settled batch is shown in the transcript and then handed to
    the batch handler. Only one submission pass runs at a time. Batches that
    settle while a pass is running go into a single pending slot, where a
    newer batch replaces an older one, and the slot is drained once the pass
    completes.
    """

    def __init__(
        self,
        scheduler: ToolScheduler,
        transcript: Transcript,
        *,
        batch_handler: BatchHandler | None = None,
    ) -> None:
        self._scheduler = scheduler
        self._transcript = transcript
        self._batch_handler = batch_handler
        self._calls: dict[str, TrackedToolCall] = {}
        self._observers: list[StatusObserver] = []
        self._submitting = False
        self._pending_batch: list[TrackedToolCall] | None = None
        self._shown_cancelled: set[str] = set()
        scheduler.bind(self)

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------
    @property
    def calls(self) -> tuple[TrackedToolCall, ...]:
        return tuple(self._calls.values())

    @property
    def submission_in_progress(self) -> bool:
        return self._submitting

    def get(self, call_id: str) -> TrackedToolCall | None:
        return self._calls.get(call_id)

    def set_batch_handler(self, handler: BatchHandler | None) -> None:
        self._batch_handler = handler

    def add_observer(self, observer: StatusObserver) -> None:
        self._observers.append(observer)

    def schedule(self, requests: Sequence[ToolCallRequest], signal: CancellationSignal) -> None:
        """Register ``requests`` as scheduled calls and hand them to the scheduler."""

        if not requests:
            return
        self._drop_finished()
        fresh: list[ToolCallRequest] = []
        for request in requests:
            if request.call_id in self._calls:
                LOGGER.debug("Tool call %s already tracked; not scheduling again", request.call_id)
                continue
            self._calls[request.call_id] = TrackedToolCall(request=request)
            fresh.append(request)
        if fresh:
            self._scheduler.schedule(fresh, signal)

    def mark_submitted(self, call_ids: Iterable[str]) -> None:
        for call_id in call_ids:
            call = self._calls.get(call_id)
            if call is not None:
                call.response_submitted = True

    def reset(self) -> None:
        self._calls.clear()
        self._pending_batch = None
        self._shown_cancelled.clear()

    def pending_display(self) -> TranscriptEntry | None:
        """Tool-group entry for calls still running or awaiting submission."""

        active = [call for call in self._calls.values() if not call.is_terminal]
        if not active:
            return None
        return map_to_display(active)

    def cancelled_display(self) -> TranscriptEntry | None:
        """Tool-group entry for unfinished calls, shown as cancelled.

        Used when the user cancels a turn. The calls listed here are left out
        of the entry shown when their batch later settles.
        """

        entry = self.pending_display()
        if entry is None:
            return None
        self._shown_cancelled.update(tool.call_id for tool in entry.tools)
        return mark_in_flight_cancelled(entry)

    def streaming_state(self, is_responding: bool) -> StreamingState:
        calls = self._calls.values()
        if any(call.status is ToolCallStatus.AWAITING_APPROVAL for call in calls):
            return StreamingState.WAITING_FOR_CONFIRMATION
        if is_responding or any(not call.is_terminal or not call.response_submitted for call in calls):
            return StreamingState.RESPONDING
        return StreamingState.IDLE

    # ------------------------------------------------------------------
    # Scheduler listener
    # ------------------------------------------------------------------
    async def on_tool_update(
        self,
        call_id: str,
        status: ToolCallStatus,
        response: ToolCallResponse | None = None,
        *,
        description: str | None = None,
    ) -> None:
        call = self._calls.get(call_id)
        if call is None:
            LOGGER.debug("Status report for unknown tool call %s", call_id)
            return
        if call.is_terminal and not status.is_terminal:
            LOGGER.debug("Ignoring %s report for settled tool call %s", status.value, call_id)
            return
        call.status = status
        call.updated_at = time.time()
        if response is not None:
            call.response = response
        if description:
            call.description = description
        for observer in list(self._observers):
            try:
                await observer(call)
            except Exception:
                LOGGER.exception("Tool status observer failed for %s", call_id)

    async def on_batch_settled(self, call_ids: Sequence[str]) -> None:
        """Display a settled batch and run submission passes until none are queued."""

        batch = [self._calls[call_id] for call_id in call_ids if call_id in self._calls]
        if not batch:
            return
        shown = [call for call in batch if call.call_id not in self._shown_cancelled]
        if shown:
            self._transcript.add(map_to_display(shown))

        if self._submitting:
            if self._pending_batch is not None:
                LOGGER.debug("Replacing queued tool batch of %d call(s)", len(self._pending_batch))
            self._pending_batch = batch
            return

        self._submitting = True
        try:
            current: list[TrackedToolCall] | None = batch
            while current is not None:
                await self._run_pass(current)
                current, self._pending_batch = self._pending_batch, None
        finally:
            self._submitting = False

    async def _run_pass(self, batch: list[TrackedToolCall]) -> None:
        if self._batch_handler is None:
            return
        try:
            await self._batch_handler(batch)
        except Exception:
            LOGGER.exception("Tool batch submission failed")

    def _drop_finished(self) -> None:
        finished = [call_id for call_id, call in self._calls.items() if call.is_terminal and call.response_submitted]
        for call_id in finished:
            del self._calls[call_id]
            self._shown_cancelled.discard(call_id)
