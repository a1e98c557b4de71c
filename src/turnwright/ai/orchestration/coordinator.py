"""Turn coordinator: submits queries, drives streams and continues with tool results.

The coordinator owns the active :class:`~.types.Turn` and its cancellation
signal, the responding flag and the reasoning summary. It wires the query
preprocessor, the stream dispatcher, the tool call tracker and the optional
checkpoint recorder together.
"""

from __future__ import annotations

import inspect
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Protocol, Sequence, runtime_checkable

from ...utils.logging import prompt_scope
from ..errors import CancelledRequestError, QuotaExceededError, UnauthorizedError, format_api_error
from .cancellation import CancellationSignal
from .checkpoints import CheckpointRecorder
from .dispatcher import LOOP_DETECTED_MESSAGE, DispatcherConfig, StreamEventDispatcher, StreamStatus
from .events import StreamEvent
from .query import AtCommandHandler, Query, QueryPreprocessor, ShellCommandHandler, SlashCommandProcessor
from .reassembler import FragmentMode
from .scheduler import ToolScheduler
from .tool_tracker import ToolCallTracker
from .transcript import Transcript, TranscriptEntry
from .types import (
    StreamingState,
    ThoughtSummary,
    ToolCallStatus,
    TrackedToolCall,
    Turn,
    collect_response_parts,
)

LOGGER = logging.getLogger(__name__)

__all__ = [
    "ChatBackend",
    "CoordinatorConfig",
    "SessionStats",
    "TurnCoordinator",
    "REQUEST_CANCELLED_MESSAGE",
    "PROMPT_ID_SEPARATOR",
]

REQUEST_CANCELLED_MESSAGE = "Request cancelled."
PROMPT_ID_SEPARATOR = "########"
MEMORY_TOOL_NAME = "save_memory"


# -----------------------------------------------------------------------------
# Collaborators
# -----------------------------------------------------------------------------


@runtime_checkable
class ChatBackend(Protocol):
    """Model-facing session that owns the model-visible history."""

    def send_message_stream(
        self,
        request: Query,
        signal: CancellationSignal,
        prompt_id: str,
    ) -> AsyncIterator[StreamEvent]: ...

    def add_history(self, parts: Sequence[Mapping[str, Any]]) -> None: ...

    def get_history(self) -> list[dict[str, Any]]: ...


@dataclass(slots=True)
class SessionStats:
    """Per-session counters used to derive prompt ids."""

    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    prompt_count: int = 0
    started_at: float = field(default_factory=time.time)

    def start_new_prompt(self) -> int:
        self.prompt_count += 1
        return self.prompt_count

    def current_prompt_id(self) -> str:
        return f"{self.session_id}{PROMPT_ID_SEPARATOR}{self.prompt_count}"


@dataclass(slots=True, frozen=True)
class CoordinatorConfig:
    """Static coordinator options.

    Attributes:
        model_name: Model named in compression and rate-limit messages.
        fallback_model: Model suggested after rate limiting.
        max_session_turns: Limit quoted when the backend reports it was hit.
        fragment_mode: How the backend streams content fragments.
        shell_mode: Start with shell mode active.
    """

    model_name: str = ""
    fallback_model: str | None = None
    max_session_turns: int | None = None
    fragment_mode: FragmentMode = FragmentMode.AUTO
    shell_mode: bool = False

    def dispatcher_config(self) -> DispatcherConfig:
        return DispatcherConfig(
            model_name=self.model_name,
            fallback_model=self.fallback_model,
            max_session_turns=self.max_session_turns,
            fragment_mode=self.fragment_mode,
        )


Callback = Callable[[], Any]


# -----------------------------------------------------------------------------
# Coordinator
# -----------------------------------------------------------------------------


class TurnCoordinator:
    """Run turns against a chat backend and continue them with tool results.

    Args:
        session: Backend session used to stream responses.
        scheduler: Tool scheduler; the coordinator's tracker binds to it.
        config: Static options.
        transcript: Transcript to write to; a new one is created when omitted.
        stats: Session counters used for prompt ids.
        slash_commands: Optional slash command processor.
        shell_handler: Optional shell command handler.
        at_handler: Optional ``@`` reference handler.
        checkpoint_recorder: Optional recorder notified of tool status changes.
        on_auth_error: Called when the backend rejects the credentials.
        on_cancel_submit: Called after the user cancelled a request.
        on_debug_message: Receives short diagnostic strings for the host.
        on_memory_refresh: Called once per batch that saved new memory.
    """

    def __init__(
        self,
        session: ChatBackend,
        scheduler: ToolScheduler,
        *,
        config: CoordinatorConfig | None = None,
        transcript: Transcript | None = None,
        stats: SessionStats | None = None,
        slash_commands: SlashCommandProcessor | None = None,
        shell_handler: ShellCommandHandler | None = None,
        at_handler: AtCommandHandler | None = None,
        checkpoint_recorder: CheckpointRecorder | None = None,
        on_auth_error: Callback | None = None,
        on_cancel_submit: Callback | None = None,
        on_debug_message: Callable[[str], None] | None = None,
        on_memory_refresh: Callable[[], Awaitable[None] | None] | None = None,
    ) -> None:
        self._session = session
        self._config = config or CoordinatorConfig()
        self._transcript = transcript if transcript is not None else Transcript()
        self._stats = stats or SessionStats()
        self._on_auth_error = on_auth_error
        self._on_cancel_submit = on_cancel_submit
        self._on_debug_message = on_debug_message
        self._on_memory_refresh = on_memory_refresh

        self._tracker = ToolCallTracker(scheduler, self._transcript, batch_handler=self.handle_completed_tools)
        self._checkpoint_recorder = checkpoint_recorder
        if checkpoint_recorder is not None:
            self._tracker.add_observer(checkpoint_recorder.on_status_change)

        self.shell_mode = self._config.shell_mode
        self._preprocessor = QueryPreprocessor(
            self._transcript,
            self._tracker.schedule,
            slash_commands=slash_commands,
            shell_handler=shell_handler,
            at_handler=at_handler,
            shell_mode=lambda: self.shell_mode,
            on_debug_message=on_debug_message,
        )

        self._turn: Turn | None = None
        self._is_responding = False
        self._thought: ThoughtSummary | None = None
        self._session_turns_exhausted = False
        self._memory_call_ids: set[str] = set()
        self.model_switched_from_quota_error = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def transcript(self) -> Transcript:
        return self._transcript

    @property
    def tracker(self) -> ToolCallTracker:
        return self._tracker

    @property
    def stats(self) -> SessionStats:
        return self._stats

    @property
    def current_turn(self) -> Turn | None:
        return self._turn

    @property
    def is_responding(self) -> bool:
        return self._is_responding

    @property
    def thought(self) -> ThoughtSummary | None:
        return self._thought

    @property
    def streaming_state(self) -> StreamingState:
        return self._tracker.streaming_state(self._is_responding)

    def pending_items(self) -> list[TranscriptEntry]:
        """Entries still open: the pending assistant entry and running tool calls."""

        items = [self._transcript.pending, self._tracker.pending_display()]
        return [item for item in items if item is not None]

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------
    async def submit_query(
        self,
        query: Query,
        *,
        is_continuation: bool = False,
        prompt_id: str | None = None,
    ) -> None:
        """Run one turn for ``query``.

        Args:
            query: User text, or model-visible parts for a continuation.
            is_continuation: True when ``query`` carries tool results.
            prompt_id: Prompt id to reuse; derived from the session stats
                when omitted.
        """

        state = self.streaming_state
        if state in (StreamingState.RESPONDING, StreamingState.WAITING_FOR_CONFIRMATION) and not is_continuation:
            LOGGER.debug("Ignoring query while %s", state.value)
            return

        if not is_continuation:
            self.model_switched_from_quota_error = False
            self._session_turns_exhausted = False

        turn = Turn(
            prompt_id=prompt_id or self._stats.current_prompt_id(),
            is_continuation=is_continuation,
        )
        self._turn = turn
        with prompt_scope(turn.prompt_id):
            await self._run_turn(turn, query, is_continuation)

    async def _run_turn(self, turn: Turn, query: Query, is_continuation: bool) -> None:
        timestamp = turn.started_at

        prepared = await self._preprocessor.prepare(
            query,
            signal=turn.signal,
            prompt_id=turn.prompt_id,
            timestamp=timestamp,
        )
        if not prepared.should_proceed or prepared.query is None:
            return

        if not is_continuation:
            self._stats.start_new_prompt()
            self._set_thought(None)

        self._is_responding = True
        try:
            dispatcher = StreamEventDispatcher(
                self._transcript,
                turn,
                schedule_tools=self._tracker.schedule,
                on_thought=self._set_thought,
                cancelled_tools=self._tracker.cancelled_display,
                config=self._config.dispatcher_config(),
            )
            stream = self._session.send_message_stream(prepared.query, turn.signal, turn.prompt_id)
            outcome = await dispatcher.run(stream)
            if outcome.status is StreamStatus.USER_CANCELLED:
                return
            if outcome.max_session_turns_reached:
                self._session_turns_exhausted = True

            self._transcript.flush_pending(timestamp=timestamp)
            if outcome.loop_detected:
                self._transcript.add(TranscriptEntry.info(LOOP_DETECTED_MESSAGE), timestamp=timestamp)
        except UnauthorizedError:
            LOGGER.warning("Backend rejected credentials")
            self._transcript.flush_pending(timestamp=timestamp)
            if self._on_auth_error is not None:
                self._on_auth_error()
        except CancelledRequestError:
            LOGGER.debug("Request %s cancelled", turn.prompt_id)
        except QuotaExceededError as exc:
            self.model_switched_from_quota_error = True
            self._report_error(exc, timestamp)
        except Exception as exc:
            if turn.cancelled:
                LOGGER.debug("Ignoring error from cancelled request %s: %s", turn.prompt_id, exc)
            else:
                LOGGER.exception("Turn %s failed", turn.prompt_id)
                self._report_error(exc, timestamp)
        finally:
            self._is_responding = False

    def cancel_ongoing_request(self) -> bool:
        """Cancel the active turn. Returns False when there was nothing to cancel."""

        if self.streaming_state is not StreamingState.RESPONDING:
            return False
        turn = self._turn
        if turn is None or turn.cancelled:
            return False
        turn.signal.cancel("user")
        self._transcript.flush_pending()
        self._transcript.add(TranscriptEntry.info(REQUEST_CANCELLED_MESSAGE))
        if self._on_cancel_submit is not None:
            self._on_cancel_submit()
        self._is_responding = False
        LOGGER.info("Cancelled request %s", turn.prompt_id)
        return True

    # ------------------------------------------------------------------
    # Tool results
    # ------------------------------------------------------------------
    async def handle_completed_tools(self, calls: list[TrackedToolCall]) -> None:
        """Submit a settled batch of tool results, continuing the turn if needed."""

        completed = [call for call in calls if call.is_submittable]
        unusable = [call.call_id for call in calls if call.is_terminal and not call.is_submittable]
        if unusable:
            self._tracker.mark_submitted(unusable)
        if not completed:
            return

        client_calls = [call for call in completed if call.request.is_client_initiated]
        if client_calls:
            self._tracker.mark_submitted(call.call_id for call in client_calls)

        saved_memory = [
            call
            for call in completed
            if call.request.name == MEMORY_TOOL_NAME
            and call.status is ToolCallStatus.SUCCESS
            and call.call_id not in self._memory_call_ids
        ]
        if saved_memory:
            self._memory_call_ids.update(call.call_id for call in saved_memory)
            await self._refresh_memory()

        backend_calls = [call for call in completed if not call.request.is_client_initiated]
        if not backend_calls:
            return

        parts = collect_response_parts(backend_calls)
        call_ids = [call.call_id for call in backend_calls]
        all_cancelled = all(call.status is ToolCallStatus.CANCELLED for call in backend_calls)
        turn_cancelled = self._turn is not None and self._turn.cancelled

        if all_cancelled or turn_cancelled:
            self._session.add_history(parts)
            self._tracker.mark_submitted(call_ids)
            return

        self._tracker.mark_submitted(call_ids)
        if self.model_switched_from_quota_error or self._session_turns_exhausted:
            LOGGER.debug("Not continuing turn; tool results kept in history only")
            self._session.add_history(parts)
            return

        await self.submit_query(parts, is_continuation=True, prompt_id=backend_calls[0].request.prompt_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _set_thought(self, thought: ThoughtSummary | None) -> None:
        self._thought = thought

    def _report_error(self, exc: BaseException, timestamp: float) -> None:
        self._transcript.flush_pending(timestamp=timestamp)
        text = format_api_error(
            exc,
            model=self._config.model_name,
            fallback_model=self._config.fallback_model,
        )
        self._transcript.add(TranscriptEntry.error(text), timestamp=timestamp)
        self._set_thought(None)

    async def _refresh_memory(self) -> None:
        if self._on_memory_refresh is None:
            return
        try:
            result = self._on_memory_refresh()
            if inspect.isawaitable(result):
                await result
        except Exception:
            LOGGER.exception("Memory refresh failed")

    def shutdown(self) -> None:
        """Raise the active turn's signal so running tools and streams stop."""

        turn = self._turn
        if turn is not None:
            turn.signal.cancel("shutdown")
