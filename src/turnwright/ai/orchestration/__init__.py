"""Turn orchestration: stream dispatch, content reassembly and tool call tracking."""

from .cancellation import CancellationSignal
from .checkpoints import CheckpointRecorder, GitSnapshotService, SnapshotService

# Coordinator facade
from .coordinator import ChatBackend, CoordinatorConfig, SessionStats, TurnCoordinator
from .dispatcher import DispatcherConfig, StreamEventDispatcher, StreamOutcome, StreamStatus
from .events import (
    ChatCompressedEvent,
    ContentEvent,
    ErrorEvent,
    FinishedEvent,
    LoopDetectedEvent,
    MaxSessionTurnsEvent,
    StreamEvent,
    StreamEventType,
    ThoughtEvent,
    ToolCallConfirmationEvent,
    ToolCallRequestEvent,
    ToolCallResponseEvent,
    UserCancelledEvent,
)
from .query import (
    HandledCommand,
    QueryPreprocessor,
    ScheduleToolCommand,
    SlashCommandRouter,
    SubmitPromptCommand,
)
from .reassembler import ContentReassembler, FragmentMode, apply_fragment
from .scheduler import LocalToolScheduler, SchedulerConfig, ToolScheduler, ToolSpec
from .tool_tracker import ToolCallTracker
from .transcript import EntryType, Transcript, TranscriptEntry
from .types import (
    FinishReason,
    StreamingState,
    ToolCallRequest,
    ToolCallResponse,
    ToolCallStatus,
    TrackedToolCall,
    Turn,
)

__all__ = [
    "CancellationSignal",
    "CheckpointRecorder",
    "GitSnapshotService",
    "SnapshotService",
    "ChatBackend",
    "CoordinatorConfig",
    "SessionStats",
    "TurnCoordinator",
    "DispatcherConfig",
    "StreamEventDispatcher",
    "StreamOutcome",
    "StreamStatus",
    "StreamEvent",
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
    "HandledCommand",
    "QueryPreprocessor",
    "ScheduleToolCommand",
    "SlashCommandRouter",
    "SubmitPromptCommand",
    "ContentReassembler",
    "FragmentMode",
    "apply_fragment",
    "LocalToolScheduler",
    "SchedulerConfig",
    "ToolScheduler",
    "ToolSpec",
    "ToolCallTracker",
    "EntryType",
    "Transcript",
    "TranscriptEntry",
    "FinishReason",
    "StreamingState",
    "ToolCallRequest",
    "ToolCallResponse",
    "ToolCallStatus",
    "TrackedToolCall",
    "Turn",
]
