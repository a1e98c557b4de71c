"""Async client for OpenAI-compatible chat, token counting and embedding endpoints."""

from __future__ import annotations

import inspect
import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Protocol, Sequence, cast

import httpx
import tiktoken
from openai import (
    APIConnectionError,
    APIStatusError,
    AsyncOpenAI,
    AuthenticationError,
    InternalServerError,
    PermissionDeniedError,
    RateLimitError,
)
from openai.types.chat import ChatCompletionMessageParam, ChatCompletionToolParam
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from .errors import BackendError, CancelledRequestError, QuotaExceededError, UnauthorizedError
from .orchestration.cancellation import CancellationSignal
from .orchestration.types import FinishReason

LOGGER = logging.getLogger(__name__)
_DEFAULT_BYTES_PER_TOKEN = 4
DEFAULT_EMBEDDING_MODEL = "text-embedding-ada-002"

_FINISH_REASONS = {
    "stop": FinishReason.STOP,
    "length": FinishReason.MAX_TOKENS,
    "tool_calls": FinishReason.STOP,
    "function_call": FinishReason.STOP,
    "content_filter": FinishReason.SAFETY,
}


def map_finish_reason(reason: str | None) -> FinishReason | None:
    """Translate an OpenAI finish reason; unknown values become ``OTHER``."""

    if not reason:
        return None
    return _FINISH_REASONS.get(reason, FinishReason.OTHER)


# -----------------------------------------------------------------------------
# Token counting
# -----------------------------------------------------------------------------


class TokenCounterProtocol(Protocol):
    model_name: str | None

    def count(self, text: str) -> int:
        """Return the precise token count for *text*."""
        ...

    def estimate(self, text: str) -> int:
        """Return a deterministic estimate used when precise counts fail."""
        ...


class ApproxByteCounter(TokenCounterProtocol):
    """Deterministic counter that estimates tokens via byte length."""

    def __init__(self, *, model_name: str | None = None, charset: str = "utf-8", bytes_per_token: int = _DEFAULT_BYTES_PER_TOKEN) -> None:
        self.model_name = model_name
        self._charset = charset
        self._bytes_per_token = max(1, int(bytes_per_token))

    def count(self, text: str) -> int:
        return self.estimate(text)

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        data = text.encode(self._charset, errors="ignore")
        return max(1, math.ceil(len(data) / self._bytes_per_token))


class TiktokenCounter(TokenCounterProtocol):
    """Token counter backed by OpenAI's tiktoken package."""

    def __init__(self, model_name: str, *, encoding_name: str | None = None) -> None:
        if not model_name:
            raise ValueError("model_name is required for TiktokenCounter")
        self.model_name = model_name
        self._encoding = self._load_encoding(model_name, encoding_name)
        self._fallback = ApproxByteCounter(model_name=model_name)

    def count(self, text: str) -> int:
        if not text:
            return 0
        try:
            return len(self._encoding.encode(text, disallowed_special=()))
        except Exception:  # pragma: no cover - unexpected tokenizer failure
            LOGGER.debug("tiktoken encode failed; falling back to approximation", exc_info=True)
            return self._fallback.estimate(text)

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    @staticmethod
    def _load_encoding(model_name: str, encoding_name: str | None) -> Any:
        try:
            if encoding_name:
                return tiktoken.get_encoding(encoding_name)
            return tiktoken.encoding_for_model(model_name)
        except (KeyError, ValueError):
            LOGGER.debug("Falling back to cl100k_base encoding for model %s", model_name)
            return tiktoken.get_encoding("cl100k_base")


class TokenCounterRegistry:
    """Tokenizer implementations per model, with a shared fallback."""

    _shared: TokenCounterRegistry | None = None

    def __init__(self, *, fallback: TokenCounterProtocol | None = None) -> None:
        self._fallback = fallback or ApproxByteCounter()
        self._counters: Dict[str, TokenCounterProtocol] = {}

    @classmethod
    def global_instance(cls) -> "TokenCounterRegistry":
        if cls._shared is None:
            cls._shared = TokenCounterRegistry()
        return cls._shared

    def register(self, model_name: str, counter: TokenCounterProtocol) -> None:
        key = self._normalize_key(model_name)
        if not key:
            raise ValueError("model_name is required for token counter registration")
        self._counters[key] = counter

    def has(self, model_name: str | None) -> bool:
        key = self._normalize_key(model_name)
        return bool(key and key in self._counters)

    def get(self, model_name: str | None = None) -> TokenCounterProtocol:
        key = self._normalize_key(model_name)
        if key and key in self._counters:
            return self._counters[key]
        return self._fallback

    @staticmethod
    def _normalize_key(model_name: str | None) -> str:
        return (model_name or "").strip().lower()


# -----------------------------------------------------------------------------
# Settings and normalized results
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    temperature: float | None = None
    max_output_tokens: int | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    metadata: Mapping[str, str] | None = None
    debug_logging: bool = False


@dataclass(slots=True)
class ToolCallDelta:
    """A fully accumulated tool call from a streamed response."""

    index: int
    call_id: str = ""
    name: str = ""
    arguments: str = ""


@dataclass(slots=True)
class AIStreamEvent:
    """Normalized representation of streaming output.

    ``type`` is one of ``content.delta``, ``tool_call.done`` or ``finish``.
    """

    type: str
    content: str | None = None
    tool_call: ToolCallDelta | None = None
    finish_reason: FinishReason | None = None
    response_id: str | None = None


@dataclass(slots=True)
class GenerateResult:
    text: str = ""
    tool_calls: List[ToolCallDelta] = field(default_factory=list)
    finish_reason: FinishReason | None = None
    response_id: str | None = None
    usage: Mapping[str, Any] | None = None


# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------


class _StreamInterrupted(Exception):
    """Stream failed after output was yielded; retrying would duplicate it."""


def _is_quota_error(exc: BaseException) -> bool:
    code = getattr(exc, "code", None)
    if code == "insufficient_quota":
        return True
    return "quota" in str(exc).lower()


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, RateLimitError):
        return not _is_quota_error(exc)
    return isinstance(exc, (APIConnectionError, InternalServerError, httpx.TimeoutException))


def translate_error(exc: BaseException) -> BaseException:
    """Map OpenAI and transport errors onto the turnwright hierarchy."""

    if isinstance(exc, (BackendError, CancelledRequestError)):
        return exc
    if isinstance(exc, (AuthenticationError, PermissionDeniedError)):
        return UnauthorizedError(exc.message, status_code=exc.status_code, cause=exc)
    if isinstance(exc, RateLimitError) and _is_quota_error(exc):
        return QuotaExceededError(exc.message, status_code=exc.status_code, cause=exc)
    if isinstance(exc, APIStatusError):
        return BackendError(exc.message, status_code=exc.status_code, cause=exc)
    if isinstance(exc, (APIConnectionError, httpx.HTTPError)):
        return BackendError(str(exc) or exc.__class__.__name__, cause=exc)
    return exc


# -----------------------------------------------------------------------------
# Client
# -----------------------------------------------------------------------------


class AIClient:
    """Async client providing chat, streaming, token and embedding helpers with retries."""

    def __init__(
        self,
        settings: ClientSettings,
        *,
        client: AsyncOpenAI | None = None,
        token_registry: TokenCounterRegistry | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)
        self._token_registry = token_registry or TokenCounterRegistry.global_instance()

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def model(self) -> str:
        return self._settings.model

    async def generate(
        self,
        messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam],
        *,
        tools: Iterable[ChatCompletionToolParam] | None = None,
        prompt_id: str | None = None,
        **extra_params: Any,
    ) -> GenerateResult:
        """Run one non-streamed chat completion."""

        payload = self._build_chat_payload(self._coerce_messages(messages), tools, extra_params)
        LOGGER.debug("Chat completion via %s (prompt %s)", self._settings.model, prompt_id)
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)
        try:
            async for attempt in self._retrying():
                with attempt:
                    response = await self._client.chat.completions.create(**payload)
        except Exception as exc:
            raise translate_error(exc) from exc

        choice = response.choices[0] if response.choices else None
        if choice is None:
            return GenerateResult(response_id=getattr(response, "id", None))
        message = choice.message
        tool_calls = [
            ToolCallDelta(
                index=index,
                call_id=call.id,
                name=call.function.name,
                arguments=call.function.arguments or "",
            )
            for index, call in enumerate(message.tool_calls or [])
        ]
        usage = getattr(response, "usage", None)
        return GenerateResult(
            text=message.content or "",
            tool_calls=tool_calls,
            finish_reason=map_finish_reason(choice.finish_reason),
            response_id=getattr(response, "id", None),
            usage=usage.model_dump() if usage is not None and hasattr(usage, "model_dump") else None,
        )

    async def generate_stream(
        self,
        messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam],
        *,
        tools: Iterable[ChatCompletionToolParam] | None = None,
        signal: CancellationSignal | None = None,
        prompt_id: str | None = None,
        **extra_params: Any,
    ) -> AsyncIterator[AIStreamEvent]:
        """Stream a chat completion as normalized events.

        Content is yielded as deltas. Tool calls are accumulated per index and
        yielded once the backend reports a finish reason, followed by a
        ``finish`` event. A failure before anything was yielded is retried.

        Raises:
            CancelledRequestError: ``signal`` was raised while streaming.
            UnauthorizedError: The backend rejected the credentials.
            BackendError: Any other backend failure.
        """

        payload = self._build_chat_payload(self._coerce_messages(messages), tools, extra_params)
        payload["stream"] = True
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s) (prompt %s)",
            self._settings.model,
            len(payload["messages"]),
            prompt_id,
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        yielded = False
        try:
            async for attempt in self._retrying():
                with attempt:
                    try:
                        async for event in self._stream_once(payload, signal):
                            yielded = True
                            yield event
                    except (CancelledRequestError, GeneratorExit):
                        raise
                    except Exception as exc:
                        if yielded:
                            raise _StreamInterrupted() from exc
                        raise
        except _StreamInterrupted as exc:
            cause = exc.__cause__ or exc
            raise translate_error(cause) from cause
        except CancelledRequestError:
            raise
        except Exception as exc:
            raise translate_error(exc) from exc

    async def _stream_once(self, payload: Mapping[str, Any], signal: CancellationSignal | None) -> AsyncIterator[AIStreamEvent]:
        self._raise_if_cancelled(signal)
        stream = await self._client.chat.completions.create(**payload)
        tool_calls: Dict[int, ToolCallDelta] = {}
        try:
            async for chunk in stream:
                self._raise_if_cancelled(signal)
                response_id = getattr(chunk, "id", None)
                choices = getattr(chunk, "choices", None) or []
                if not choices:
                    continue
                choice = choices[0]
                delta = getattr(choice, "delta", None)
                content = getattr(delta, "content", None) if delta is not None else None
                if content:
                    yield AIStreamEvent(type="content.delta", content=str(content), response_id=response_id)
                for fragment in getattr(delta, "tool_calls", None) or []:
                    self._accumulate_tool_call(tool_calls, fragment)
                finish_reason = getattr(choice, "finish_reason", None)
                if finish_reason:
                    for index in sorted(tool_calls):
                        yield AIStreamEvent(type="tool_call.done", tool_call=tool_calls[index], response_id=response_id)
                    tool_calls.clear()
                    yield AIStreamEvent(
                        type="finish",
                        finish_reason=map_finish_reason(finish_reason),
                        response_id=response_id,
                    )
        finally:
            await self._close_stream(stream)

    @staticmethod
    def _accumulate_tool_call(tool_calls: Dict[int, ToolCallDelta], fragment: Any) -> None:
        index = getattr(fragment, "index", None)
        if index is None:
            index = len(tool_calls)
        entry = tool_calls.get(index)
        if entry is None:
            entry = tool_calls[index] = ToolCallDelta(index=index)
        call_id = getattr(fragment, "id", None)
        if call_id:
            entry.call_id = call_id
        function = getattr(fragment, "function", None)
        if function is not None:
            if getattr(function, "name", None):
                entry.name += function.name
            if getattr(function, "arguments", None):
                entry.arguments += function.arguments

    async def count_tokens(self, contents: str | Sequence[Mapping[str, Any]], *, model: str | None = None) -> int:
        """Count tokens of text or of the textual content of chat messages."""

        counter = self.get_token_counter(model)
        texts = [contents] if isinstance(contents, str) else [_message_text(message) for message in contents]
        total = 0
        for text in texts:
            if not text:
                continue
            try:
                total += counter.count(text)
            except Exception:  # pragma: no cover - counter bugs fall back to estimates
                LOGGER.debug("count_tokens failed; falling back to estimate", exc_info=True)
                total += counter.estimate(text)
        return total

    async def embed(self, texts: str | Sequence[str], *, model: str | None = None) -> List[List[float]]:
        """Return one embedding vector per input text."""

        inputs = [texts] if isinstance(texts, str) else list(texts)
        if not inputs:
            return []
        try:
            async for attempt in self._retrying():
                with attempt:
                    response = await self._client.embeddings.create(
                        model=model or self._settings.embedding_model or DEFAULT_EMBEDDING_MODEL,
                        input=inputs,
                    )
        except Exception as exc:
            raise translate_error(exc) from exc
        return [list(item.embedding) for item in response.data]

    def get_token_counter(self, model: str | None = None) -> TokenCounterProtocol:
        model_name = model or self._settings.model
        self._ensure_token_counter(model_name)
        return self._token_registry.get(model_name)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
            max_retries=0,
        )

    def _ensure_token_counter(self, model_name: str | None) -> None:
        model_name = (model_name or "").strip()
        if not model_name or self._token_registry.has(model_name):
            return
        try:
            self._token_registry.register(model_name, TiktokenCounter(model_name))
        except Exception as exc:  # pragma: no cover - tokenizer download failures
            LOGGER.debug("Failed to initialize tiktoken counter for %s: %s", model_name, exc)
            self._token_registry.register(model_name, ApproxByteCounter(model_name=model_name))

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception(_is_transient),
        )

    @staticmethod
    def _raise_if_cancelled(signal: CancellationSignal | None) -> None:
        if signal is not None and signal.is_set:
            raise CancelledRequestError("Request cancelled")

    @staticmethod
    async def _close_stream(stream: Any) -> None:
        close = getattr(stream, "close", None)
        if close is None:
            return
        try:
            result = close()
            if inspect.isawaitable(result):
                await result
        except Exception as exc:  # pragma: no cover - close errors are not actionable
            LOGGER.debug("Closing completion stream failed: %s", exc)

    def _coerce_messages(
        self, messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam]
    ) -> List[ChatCompletionMessageParam]:
        normalized = [cast(ChatCompletionMessageParam, dict(message)) for message in messages]
        if not normalized:
            raise ValueError("At least one message is required to start a chat")
        return normalized

    def _build_chat_payload(
        self,
        messages: Sequence[ChatCompletionMessageParam],
        tools: Iterable[ChatCompletionToolParam] | None,
        extra_params: Mapping[str, Any],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": list(messages),
        }
        if self._settings.metadata:
            payload["metadata"] = dict(self._settings.metadata)
        tool_list = list(tools or [])
        if tool_list:
            payload["tools"] = tool_list
        if self._settings.temperature is not None:
            payload["temperature"] = self._settings.temperature
        if self._settings.max_output_tokens is not None:
            payload["max_tokens"] = self._settings.max_output_tokens
        if extra_params:
            payload.update(extra_params)
        return payload

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)


def _message_text(message: Mapping[str, Any]) -> str:
    content = message.get("content")
    if isinstance(content, str):
        text = content
    elif isinstance(content, list):
        text = "".join(str(part.get("text", "")) for part in content if isinstance(part, Mapping))
    else:
        text = ""
    for call in message.get("tool_calls") or []:
        function = call.get("function", {}) if isinstance(call, Mapping) else {}
        text += str(function.get("name", "")) + str(function.get("arguments", ""))
    return text
