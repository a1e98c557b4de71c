"""Logging helpers for turnwright.

Every record carries the prompt id of the turn that produced it, so a log
file can be grepped for one request across the coordinator, the scheduler
and the HTTP client.
"""

from __future__ import annotations

import contextlib
import contextvars
import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import Iterator

__all__ = ["setup_logging", "get_logger", "get_log_path", "prompt_scope", "current_prompt_id", "PromptIdFilter"]

_LOG_DIR_ENV = "TURNWRIGHT_LOG_DIR"
_HOME_ENV = "TURNWRIGHT_HOME"
_LOG_FILE_NAME = "turnwright.log"
_NO_PROMPT = "-"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")
_CONFIGURED = False
_LOG_PATH: Path | None = None

_PROMPT_ID: contextvars.ContextVar[str] = contextvars.ContextVar("turnwright_prompt_id", default=_NO_PROMPT)


class PromptIdFilter(logging.Filter):
    """Stamp records with the prompt id bound by :func:`prompt_scope`."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "prompt_id"):
            record.prompt_id = _PROMPT_ID.get()
        return True


@contextlib.contextmanager
def prompt_scope(prompt_id: str) -> Iterator[None]:
    """Bind ``prompt_id`` to log records emitted inside the block.

    Tasks created inside the block inherit the binding.
    """

    token = _PROMPT_ID.set(prompt_id)
    try:
        yield
    finally:
        _PROMPT_ID.reset(token)


def current_prompt_id() -> str | None:
    value = _PROMPT_ID.get()
    return None if value == _NO_PROMPT else value


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Configure root logging with a rotating file and an optional stderr handler.

    The console handler never goes below WARNING because the REPL prints the
    transcript on stdout.

    Returns:
        Path of the log file in use.
    """

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    target_dir = _resolve_log_dir(log_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / _LOG_FILE_NAME

    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(prompt_id)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    prompt_filter = PromptIdFilter()

    handlers: list[logging.Handler] = []
    file_handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    file_handler.setLevel(level)
    handlers.append(file_handler)

    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(max(level, logging.WARNING))
        handlers.append(console_handler)

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(prompt_filter)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _tune_external_loggers(level)

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def get_log_path() -> Path | None:
    """Return the currently configured log file if available."""

    return _LOG_PATH


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    if log_dir:
        return Path(log_dir).expanduser()
    env_override = os.environ.get(_LOG_DIR_ENV)
    if env_override:
        return Path(env_override).expanduser()
    home = os.environ.get(_HOME_ENV)
    if home:
        return Path(home).expanduser() / "logs"
    return Path.home() / ".turnwright" / "logs"


def _tune_external_loggers(root_level: int) -> None:
    quiet_level = logging.WARNING if root_level < logging.WARNING else root_level
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)
