"""Exception hierarchy and user-facing error formatting."""

from __future__ import annotations

import json
from typing import Any

__all__ = [
    "TurnwrightError",
    "BackendError",
    "UnauthorizedError",
    "QuotaExceededError",
    "CancelledRequestError",
    "format_api_error",
]

RATE_LIMIT_HINT = "Possible quota limitations in place or slow response times detected."


class TurnwrightError(Exception):
    """Base class for errors raised by turnwright."""


class BackendError(TurnwrightError):
    """The model backend rejected or failed a request."""

    def __init__(self, message: str, *, status_code: int | None = None, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.cause = cause


class UnauthorizedError(BackendError):
    """Credentials were missing, invalid or lacked permission."""


class QuotaExceededError(BackendError):
    """The account ran out of quota for the configured model."""


class CancelledRequestError(TurnwrightError):
    """A request was abandoned because its cancellation signal was raised."""


def format_api_error(
    error: Any,
    *,
    status_code: int | None = None,
    model: str | None = None,
    fallback_model: str | None = None,
) -> str:
    """Render ``error`` as a single user-facing message.

    Accepts exceptions, plain strings, or JSON error bodies such as
    ``{"error": {"message": ..., "code": ...}}``.

    Args:
        error: The error to describe.
        status_code: HTTP status when not carried by ``error`` itself.
        model: Model that produced the error; used in the rate-limit hint.
        fallback_model: Model the session may switch to after a rate limit.

    Returns:
        Text of the form ``[API Error: <message>]`` with an optional hint.
    """

    message, status = _extract_message(error)
    status = status_code if status_code is not None else status
    text = f"[API Error: {message}]"
    if status == 429 or isinstance(error, QuotaExceededError):
        text += f"\n{RATE_LIMIT_HINT}"
        if model and fallback_model and model != fallback_model:
            text += f" Consider switching from {model} to {fallback_model} for the rest of this session."
    return text


def _extract_message(error: Any) -> tuple[str, int | None]:
    if isinstance(error, BackendError):
        return _unwrap_json(error.message), error.status_code
    if isinstance(error, BaseException):
        status = getattr(error, "status_code", None)
        text = str(error) or error.__class__.__name__
        return _unwrap_json(text), status if isinstance(status, int) else None
    if error is None:
        return "An unknown error occurred.", None
    return _unwrap_json(str(error)), None


def _unwrap_json(text: str) -> str:
    """Pull ``error.message`` out of a JSON error body when there is one."""

    start = text.find("{")
    if start == -1:
        return text
    try:
        payload = json.loads(text[start:])
    except ValueError:
        return text
    if isinstance(payload, dict):
        inner = payload.get("error", payload)
        if isinstance(inner, dict) and isinstance(inner.get("message"), str):
            return inner["message"]
    return text
