"""Chat session: model-visible history and stream-event translation.

:class:`ChatSession` implements the coordinator's ``ChatBackend`` protocol on
top of :class:`~turnwright.ai.client.AIClient`. It keeps the OpenAI-style
message history, converts tool response parts into ``tool`` messages and
turns normalized client chunks into orchestration stream events.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Mapping, Sequence

from .client import AIClient, ToolCallDelta
from .errors import CancelledRequestError
from .orchestration.cancellation import CancellationSignal
from .orchestration.events import (
    ChatCompressedEvent,
    ContentEvent,
    FinishedEvent,
    LoopDetectedEvent,
    MaxSessionTurnsEvent,
    StreamEvent,
    ToolCallRequestEvent,
    UserCancelledEvent,
)
from .orchestration.query import Query
from .orchestration.reassembler import FragmentMode
from .orchestration.types import ChatCompressionInfo, FinishReason, ToolCallRequest

LOGGER = logging.getLogger(__name__)

__all__ = ["ChatSession", "ChatSessionConfig", "parts_to_messages"]

COMPRESSION_PROMPT = (
    "Summarize the conversation so far into a concise state snapshot. Keep every "
    "fact, decision, file path and open task needed to continue the work."
)
COMPRESSION_ACK = "Got it. Thanks for the additional context!"


@dataclass(slots=True, frozen=True)
class ChatSessionConfig:
    """Session limits.

    Attributes:
        system_prompt: Optional system message sent with every request.
        max_session_turns: Requests allowed per session; ``None`` or a
            negative value disables the limit.
        loop_threshold: Identical consecutive tool calls treated as a loop.
        compression_token_threshold: History size in tokens that triggers
            compression; ``None`` disables compression.
        compression_preserve_fraction: Share of recent messages kept verbatim.
    """

    system_prompt: str | None = None
    max_session_turns: int | None = None
    loop_threshold: int = 5
    compression_token_threshold: int | None = None
    compression_preserve_fraction: float = 0.3


def parts_to_messages(parts: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
    """Convert model-visible parts into OpenAI chat messages.

    ``functionResponse`` parts become ``tool`` messages keyed by call id; text
    parts are joined into one user message.
    """

    messages: list[dict[str, Any]] = []
    texts: list[str] = []
    for part in parts:
        response = part.get("functionResponse")
        if isinstance(response, Mapping):
            messages.append(
                {
                    "role": "tool",
                    "tool_call_id": str(response.get("id", "")),
                    "content": json.dumps(response.get("response", {}), ensure_ascii=False, default=str),
                }
            )
            continue
        text = part.get("text")
        if isinstance(text, str) and text:
            texts.append(text)
    if texts:
        messages.append({"role": "user", "content": "\n".join(texts)})
    return messages


class ChatSession:
    """Conversation state for one model session.

    Content events carry the whole message text received so far, so a
    repeated token never looks like a redelivered fragment.
    """

    fragment_mode = FragmentMode.SNAPSHOT


    def __init__(
        self,
        client: AIClient,
        *,
        config: ChatSessionConfig | None = None,
        tools: Callable[[], Sequence[Mapping[str, Any]]] | Sequence[Mapping[str, Any]] = (),
    ) -> None:
        self._client = client
        self._config = config or ChatSessionConfig()
        self._tools = tools
        self._history: list[dict[str, Any]] = []
        self._session_turns = 0
        self._last_tool_signature: str | None = None
        self._tool_repeat_count = 0

    @property
    def model(self) -> str:
        return self._client.model

    @property
    def session_turns(self) -> int:
        return self._session_turns

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------
    def get_history(self) -> list[dict[str, Any]]:
        return [dict(message) for message in self._history]

    def set_history(self, history: Sequence[Mapping[str, Any]]) -> None:
        self._history = [dict(message) for message in history]

    def clear_history(self) -> None:
        self._history.clear()
        self._session_turns = 0
        self._reset_loop_detection()

    def add_history(self, parts: Sequence[Mapping[str, Any]]) -> None:
        """Append tool results (or text parts) without starting a request."""

        self._history.extend(parts_to_messages(parts))

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------
    async def send_message_stream(
        self,
        request: Query,
        signal: CancellationSignal,
        prompt_id: str,
    ) -> AsyncIterator[StreamEvent]:
        """Send ``request`` and yield the resulting stream events.

        Raises:
            UnauthorizedError: The backend rejected the credentials.
            BackendError: The request failed.
        """

        self._session_turns += 1
        limit = self._config.max_session_turns
        if limit is not None and limit >= 0 and self._session_turns > limit:
            yield MaxSessionTurnsEvent()
            return

        if signal.is_set:
            yield UserCancelledEvent()
            return

        compression = await self._maybe_compress(prompt_id)
        if compression is not None:
            yield ChatCompressedEvent(compression)

        self._history.extend(self._to_messages(request))
        text_chunks: list[str] = []
        tool_calls: list[ToolCallDelta] = []
        finish_reason: FinishReason | None = None
        response_id: str | None = None

        try:
            async for chunk in self._client.generate_stream(
                self._request_messages(),
                tools=self._tool_declarations(),
                signal=signal,
                prompt_id=prompt_id,
            ):
                response_id = chunk.response_id or response_id
                if chunk.type == "content.delta" and chunk.content:
                    text_chunks.append(chunk.content)
                    yield ContentEvent("".join(text_chunks))
                elif chunk.type == "tool_call.done" and chunk.tool_call is not None:
                    tool_calls.append(chunk.tool_call)
                elif chunk.type == "finish":
                    finish_reason = chunk.finish_reason
        except CancelledRequestError:
            LOGGER.debug("Stream for prompt %s cancelled", prompt_id)
            self._record_assistant("".join(text_chunks), [])
            yield UserCancelledEvent()
            return

        requests, malformed = self._parse_tool_calls(tool_calls, prompt_id)
        if self._detect_loop(requests):
            self._record_assistant("".join(text_chunks), [])
            yield LoopDetectedEvent(event_id=response_id)
            return
        self._record_assistant("".join(text_chunks), [call for call in tool_calls if call.call_id not in malformed])

        for request in requests:
            yield ToolCallRequestEvent(request, event_id=f"{response_id}-{request.call_id}" if response_id else None)
        if malformed:
            finish_reason = FinishReason.MALFORMED_FUNCTION_CALL
        if finish_reason is not None:
            yield FinishedEvent(finish_reason, event_id=response_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _to_messages(self, request: Query) -> list[dict[str, Any]]:
        if isinstance(request, str):
            return [{"role": "user", "content": request}]
        return parts_to_messages(request)

    def _request_messages(self) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        if self._config.system_prompt:
            messages.append({"role": "system", "content": self._config.system_prompt})
        messages.extend(self._history)
        return messages

    def _tool_declarations(self) -> list[Mapping[str, Any]]:
        tools = self._tools() if callable(self._tools) else self._tools
        return list(tools)

    def _record_assistant(self, text: str, tool_calls: Sequence[ToolCallDelta]) -> None:
        if not text and not tool_calls:
            return
        message: dict[str, Any] = {"role": "assistant", "content": text or None}
        if tool_calls:
            message["tool_calls"] = [
                {
                    "id": call.call_id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments or "{}"},
                }
                for call in tool_calls
            ]
        self._history.append(message)

    @staticmethod
    def _parse_tool_calls(
        tool_calls: Sequence[ToolCallDelta],
        prompt_id: str,
    ) -> tuple[list[ToolCallRequest], set[str]]:
        requests: list[ToolCallRequest] = []
        malformed: set[str] = set()
        for call in tool_calls:
            if not call.name:
                malformed.add(call.call_id)
                continue
            try:
                args = json.loads(call.arguments) if call.arguments else {}
            except json.JSONDecodeError:
                LOGGER.warning("Malformed arguments for tool call %s (%s)", call.call_id, call.name)
                malformed.add(call.call_id)
                continue
            if not isinstance(args, dict):
                malformed.add(call.call_id)
                continue
            requests.append(ToolCallRequest(call_id=call.call_id, name=call.name, args=args, prompt_id=prompt_id))
        return requests, malformed

    def _detect_loop(self, requests: Sequence[ToolCallRequest]) -> bool:
        if not requests:
            return False
        for request in requests:
            signature = f"{request.name}:{json.dumps(dict(request.args), sort_keys=True, default=str)}"
            if signature == self._last_tool_signature:
                self._tool_repeat_count += 1
            else:
                self._last_tool_signature = signature
                self._tool_repeat_count = 1
            if self._tool_repeat_count >= self._config.loop_threshold:
                LOGGER.warning("Tool call %s repeated %d times; halting", request.name, self._tool_repeat_count)
                self._reset_loop_detection()
                return True
        return False

    def _reset_loop_detection(self) -> None:
        self._last_tool_signature = None
        self._tool_repeat_count = 0

    async def _maybe_compress(self, prompt_id: str) -> ChatCompressionInfo | None:
        threshold = self._config.compression_token_threshold
        if threshold is None or len(self._history) < 4:
            return None
        original = await self._client.count_tokens(self._history)
        if original < threshold:
            return None

        split = self._compression_split_index()
        if split <= 0:
            return None
        older, kept = self._history[:split], self._history[split:]
        summary = await self._client.generate(
            [*older, {"role": "user", "content": COMPRESSION_PROMPT}],
            prompt_id=prompt_id,
        )
        if not summary.text:
            LOGGER.debug("Compression produced no summary; keeping history")
            return None
        self._history = [
            {"role": "user", "content": summary.text},
            {"role": "assistant", "content": COMPRESSION_ACK},
            *kept,
        ]
        new = await self._client.count_tokens(self._history)
        LOGGER.info("Compressed chat history from %d to %d tokens", original, new)
        return ChatCompressionInfo(original_token_count=original, new_token_count=new)

    def _compression_split_index(self) -> int:
        """First kept message: a plain user message inside the preserved tail."""

        start = int(len(self._history) * (1 - self._config.compression_preserve_fraction))
        for index in range(max(1, start), len(self._history)):
            message = self._history[index]
            if message.get("role") == "user" and isinstance(message.get("content"), str):
                return index
        return 0

