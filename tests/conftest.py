"""Shared pytest fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from turnwright.ai.orchestration.transcript import Transcript
from turnwright.ai.orchestration.types import Turn


@pytest.fixture(autouse=True)
def _isolated_home(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    """Keep settings, keys and logs out of the real home directory."""

    home = tmp_path / "turnwright-home"
    monkeypatch.setenv("TURNWRIGHT_HOME", str(home))
    monkeypatch.setenv("TURNWRIGHT_LOG_DIR", str(home / "logs"))
    for name in ("TURNWRIGHT_API_KEY", "TURNWRIGHT_MODEL", "TURNWRIGHT_BASE_URL", "OPENAI_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    return home


@pytest.fixture
def transcript() -> Transcript:
    return Transcript()


@pytest.fixture
def turn() -> Turn:
    return Turn(prompt_id="session########1")
