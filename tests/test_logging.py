"""Tests for logging setup."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator

import pytest

from turnwright.utils import logging as logging_utils


@pytest.fixture
def _restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def test_setup_logging_creates_rotating_file(tmp_path: Path, _restore_root_logger: None) -> None:
    log_dir = tmp_path / "logs"

    log_path = logging_utils.setup_logging(
        level=logging.INFO,
        log_dir=log_dir,
        console=False,
        force=True,
    )

    logger = logging_utils.get_logger("turnwright.tests")
    logger.info("Logging smoke test")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert log_path == log_dir / "turnwright.log"
    assert logging_utils.get_log_path() == log_path
    assert "Logging smoke test" in log_path.read_text(encoding="utf-8")


def test_setup_logging_is_idempotent_without_force(tmp_path: Path, _restore_root_logger: None) -> None:
    first = logging_utils.setup_logging(log_dir=tmp_path / "one", console=False, force=True)
    second = logging_utils.setup_logging(log_dir=tmp_path / "two", console=False)

    assert second == first
    assert not (tmp_path / "two").exists()


def test_log_dir_env_override(_isolated_home: Path, _restore_root_logger: None) -> None:
    log_path = logging_utils.setup_logging(console=False, force=True)

    assert log_path == _isolated_home / "logs" / "turnwright.log"
    assert logging.getLogger("httpx").level == logging.WARNING


def test_records_carry_the_bound_prompt_id(tmp_path: Path, _restore_root_logger: None) -> None:
    log_path = logging_utils.setup_logging(log_dir=tmp_path, console=False, force=True)
    logger = logging_utils.get_logger("turnwright.tests")

    logger.info("outside")
    with logging_utils.prompt_scope("s########3"):
        assert logging_utils.current_prompt_id() == "s########3"
        logger.info("inside")
    for handler in logging.getLogger().handlers:
        handler.flush()

    lines = log_path.read_text(encoding="utf-8").splitlines()
    assert logging_utils.current_prompt_id() is None
    assert any("| - | turnwright.tests | outside" in line for line in lines)
    assert any("| s########3 | turnwright.tests | inside" in line for line in lines)


def test_home_directory_is_the_fallback_log_location(
    monkeypatch: pytest.MonkeyPatch, _isolated_home: Path, _restore_root_logger: None
) -> None:
    monkeypatch.delenv("TURNWRIGHT_LOG_DIR")

    log_path = logging_utils.setup_logging(console=False, force=True)

    assert log_path == _isolated_home / "logs" / "turnwright.log"
