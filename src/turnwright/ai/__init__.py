"""AI client, chat session and turn orchestration."""

from .chat import ChatSession, ChatSessionConfig
from .client import AIClient, ApproxByteCounter, ClientSettings, TokenCounterRegistry
from .errors import BackendError, CancelledRequestError, QuotaExceededError, TurnwrightError, UnauthorizedError

__all__ = [
    "AIClient",
    "ClientSettings",
    "TokenCounterRegistry",
    "ApproxByteCounter",
    "ChatSession",
    "ChatSessionConfig",
    "TurnwrightError",
    "BackendError",
    "UnauthorizedError",
    "QuotaExceededError",
    "CancelledRequestError",
]
