"""Restorable checkpoints for file-mutating tool calls.

Before a ``replace`` or ``write_file`` call is approved, the recorder asks a
:class:`SnapshotService` for a version id of the project and writes a JSON
record holding the transcript, the model-visible history, the pending tool
call and that id. A later restore can roll the files back and replay the
conversation from the record.
"""

from __future__ import annotations

import asyncio
import hashlib
import inspect
import json
import logging
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Mapping, Protocol, Sequence, Union, runtime_checkable

import jsonschema

from ..errors import TurnwrightError
from .types import ToolCallStatus, TrackedToolCall

LOGGER = logging.getLogger(__name__)

__all__ = [
    "RESTORABLE_TOOLS",
    "CHECKPOINT_SCHEMA",
    "CheckpointRecord",
    "CheckpointRecorder",
    "SnapshotService",
    "GitSnapshotService",
    "GitSnapshotError",
    "checkpoint_filename",
    "load_checkpoint",
    "list_checkpoints",
    "default_history_dir",
]

RESTORABLE_TOOLS = frozenset({"replace", "write_file"})

CHECKPOINT_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["history", "clientHistory", "toolCall", "commitHash", "filePath"],
    "properties": {
        "history": {"type": "array", "items": {"type": "object"}},
        "clientHistory": {"type": "array"},
        "toolCall": {
            "type": "object",
            "required": ["name", "args"],
            "properties": {
                "name": {"type": "string", "minLength": 1},
                "args": {"type": "object"},
            },
        },
        "commitHash": {"type": "string", "minLength": 1},
        "filePath": {"type": "string", "minLength": 1},
    },
}

_VALIDATOR = jsonschema.Draft7Validator(CHECKPOINT_SCHEMA)

HistoryProvider = Callable[[], Sequence[Mapping[str, Any]]]
ClientHistoryProvider = Callable[[], Union[Sequence[Any], Awaitable[Sequence[Any]]]]


class GitSnapshotError(TurnwrightError):
    """A git command used for snapshots failed."""


# -----------------------------------------------------------------------------
# Snapshot service
# -----------------------------------------------------------------------------


@runtime_checkable
class SnapshotService(Protocol):
    """Versioning collaborator that can snapshot the project."""

    async def create_file_snapshot(self, message: str) -> str | None: ...

    async def get_current_commit_hash(self) -> str | None: ...


def default_history_dir(project_root: Path | str, base_dir: Path | str) -> Path:
    """Shadow repository location for ``project_root`` under ``base_dir``."""

    digest = hashlib.sha256(str(Path(project_root).resolve()).encode("utf-8")).hexdigest()[:16]
    return Path(base_dir).expanduser() / "history" / digest


class GitSnapshotService:
    """Snapshot a project into a shadow git repository.

    The shadow repository lives outside the project (``history_dir``) and
    uses the project as its work tree, so the user's own repository, if any,
    is never touched.
    """

    _IDENTITY = ("-c", "user.name=turnwright", "-c", "user.email=turnwright@localhost", "-c", "commit.gpgsign=false")

    def __init__(self, project_root: Path | str, history_dir: Path | str, *, git_executable: str = "git") -> None:
        self._project_root = Path(project_root).expanduser().resolve()
        self._history_dir = Path(history_dir).expanduser()
        self._git_executable = git_executable
        self._initialized = False
        self._lock = asyncio.Lock()

    @property
    def history_dir(self) -> Path:
        return self._history_dir

    async def initialize(self) -> None:
        async with self._lock:
            if self._initialized:
                return
            self._history_dir.mkdir(parents=True, exist_ok=True)
            if not (self._history_dir / "HEAD").exists():
                await self._git("init", "--quiet")
                await self._git(*self._IDENTITY, "commit", "--allow-empty", "--no-verify", "-m", "Initial commit")
            self._initialized = True

    async def create_file_snapshot(self, message: str) -> str | None:
        await self.initialize()
        await self._git("add", "-A")
        await self._git(*self._IDENTITY, "commit", "--allow-empty", "--no-verify", "-m", message)
        return await self.get_current_commit_hash()

    async def get_current_commit_hash(self) -> str | None:
        try:
            await self.initialize()
            output = await self._git("rev-parse", "HEAD")
        except GitSnapshotError as exc:
            LOGGER.debug("Unable to read current snapshot commit: %s", exc)
            return None
        return output.strip() or None

    async def restore_project_from_snapshot(self, commit_hash: str) -> None:
        await self.initialize()
        await self._git("restore", "--source", commit_hash, ".")
        await self._git("clean", "-f", "-d")

    async def _git(self, *args: str) -> str:
        env = {
            **os.environ,
            "GIT_DIR": str(self._history_dir),
            "GIT_WORK_TREE": str(self._project_root),
        }
        command = [self._git_executable, *args]
        LOGGER.debug("Running %s", " ".join(command))
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=str(self._project_root),
            )
        except FileNotFoundError as exc:
            raise GitSnapshotError(f"git executable not found: {self._git_executable}") from exc
        except OSError as exc:
            raise GitSnapshotError(f"Failed to run git: {exc}") from exc
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            raise GitSnapshotError(f"git {args[0] if args else ''} failed ({process.returncode}): {detail}")
        return stdout.decode("utf-8", errors="replace")


# -----------------------------------------------------------------------------
# Records
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class CheckpointRecord:
    history: list[dict[str, Any]]
    client_history: list[Any]
    tool_name: str
    tool_args: dict[str, Any]
    commit_hash: str
    file_path: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "history": self.history,
            "clientHistory": self.client_history,
            "toolCall": {"name": self.tool_name, "args": self.tool_args},
            "commitHash": self.commit_hash,
            "filePath": self.file_path,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "CheckpointRecord":
        _VALIDATOR.validate(payload)
        tool_call = payload["toolCall"]
        return cls(
            history=list(payload["history"]),
            client_history=list(payload["clientHistory"]),
            tool_name=tool_call["name"],
            tool_args=dict(tool_call["args"]),
            commit_hash=payload["commitHash"],
            file_path=payload["filePath"],
        )


def checkpoint_filename(moment: datetime, file_path: str, tool_name: str) -> str:
    """``<ISO timestamp>-<basename>-<tool>.json`` with ``:`` and ``.`` made filename-safe."""

    if moment.tzinfo is not None:
        moment = moment.astimezone(UTC)
    stamp = moment.replace(tzinfo=None).isoformat(timespec="milliseconds") + "Z"
    stamp = stamp.replace(":", "-").replace(".", "_")
    return f"{stamp}-{os.path.basename(file_path)}-{tool_name}.json"


def load_checkpoint(path: Path | str) -> CheckpointRecord:
    """Read and validate a checkpoint file.

    Raises:
        jsonschema.ValidationError: When the record does not match the schema.
    """

    with Path(path).open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    return CheckpointRecord.from_payload(payload)


def list_checkpoints(checkpoint_dir: Path | str) -> list[Path]:
    """Checkpoint files in ``checkpoint_dir``, oldest first."""

    directory = Path(checkpoint_dir)
    if not directory.is_dir():
        return []
    return sorted(directory.glob("*.json"))


# -----------------------------------------------------------------------------
# Recorder
# -----------------------------------------------------------------------------


class CheckpointRecorder:
    """Write a checkpoint for each restorable tool call awaiting approval.

    Failures never propagate; they are reported through ``on_debug_message``
    and logged at DEBUG.
    """

    def __init__(
        self,
        checkpoint_dir: Path | str | None,
        snapshot_service: SnapshotService | None,
        *,
        history_provider: HistoryProvider,
        client_history_provider: ClientHistoryProvider,
        enabled: bool = True,
        on_debug_message: Callable[[str], None] | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._checkpoint_dir = Path(checkpoint_dir).expanduser() if checkpoint_dir else None
        self._snapshot_service = snapshot_service
        self._history_provider = history_provider
        self._client_history_provider = client_history_provider
        self._enabled = enabled
        self._on_debug_message = on_debug_message
        self._clock = clock
        self._recorded: set[str] = set()

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def checkpoint_dir(self) -> Path | None:
        return self._checkpoint_dir

    async def on_status_change(self, call: TrackedToolCall) -> None:
        """Tracker observer hook."""

        await self.record([call])

    async def record(self, calls: Iterable[TrackedToolCall]) -> list[Path]:
        if not self._enabled or self._checkpoint_dir is None:
            return []
        restorable = [
            call
            for call in calls
            if call.request.name in RESTORABLE_TOOLS
            and call.status is ToolCallStatus.AWAITING_APPROVAL
            and call.call_id not in self._recorded
        ]
        if not restorable:
            return []

        try:
            self._checkpoint_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            self._debug(f"Failed to create checkpoint directory: {exc}")
            return []

        written: list[Path] = []
        for call in restorable:
            path = await self._record_call(call)
            if path is not None:
                written.append(path)
        return written

    async def _record_call(self, call: TrackedToolCall) -> Path | None:
        name = call.request.name
        file_path = call.request.args.get("file_path")
        if not file_path or not isinstance(file_path, str):
            self._debug(f"Skipping restorable tool call due to missing file_path: {name}")
            return None
        if self._snapshot_service is None:
            self._debug(
                f"Checkpointing is enabled but no snapshot service is available. "
                f"Failed to create snapshot for {file_path}."
            )
            return None
        # Mark before awaiting so a concurrent status report cannot record twice.
        self._recorded.add(call.call_id)

        try:
            commit_hash = await self._snapshot(name)
            if not commit_hash:
                self._debug(
                    f"Failed to create snapshot for {file_path}. Checkpointing may not be working properly."
                )
                return None

            client_history = self._client_history_provider()
            if inspect.isawaitable(client_history):
                client_history = await client_history
            record = CheckpointRecord(
                history=[dict(entry) for entry in self._history_provider()],
                client_history=list(client_history),
                tool_name=name,
                tool_args=dict(call.request.args),
                commit_hash=commit_hash,
                file_path=file_path,
            )
            payload = record.to_payload()
            _VALIDATOR.validate(payload)

            assert self._checkpoint_dir is not None
            target = self._checkpoint_dir / checkpoint_filename(self._clock(), file_path, name)
            tmp_path = target.with_suffix(".json.tmp")
            tmp_path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
            tmp_path.replace(target)
        except Exception as exc:
            self._debug(f"Failed to write restorable tool call file: {exc}")
            return None

        LOGGER.info("Recorded checkpoint %s for %s", target.name, call.call_id)
        return target

    async def _snapshot(self, tool_name: str) -> str | None:
        assert self._snapshot_service is not None
        commit_hash: str | None = None
        try:
            commit_hash = await self._snapshot_service.create_file_snapshot(f"Snapshot for {tool_name}")
        except Exception as exc:
            self._debug(f"Failed to create new snapshot: {exc}. Attempting to use current commit.")
        if not commit_hash:
            commit_hash = await self._snapshot_service.get_current_commit_hash()
        return commit_hash

    def _debug(self, message: str) -> None:
        LOGGER.debug(message)
        if self._on_debug_message is not None:
            self._on_debug_message(message)
