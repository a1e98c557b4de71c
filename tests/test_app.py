"""Tests covering the application bootstrap helpers."""

from __future__ import annotations

import io
import json
from pathlib import Path
from typing import Any, AsyncIterator, Mapping, Sequence, cast

import pytest

from turnwright import app
from turnwright.ai.client import AIClient, AIStreamEvent, ToolCallDelta
from turnwright.ai.orchestration.transcript import EntryType, ToolDisplay, ToolDisplayStatus, TranscriptEntry
from turnwright.ai.orchestration.types import FinishReason
from turnwright.services.settings import Settings, SettingsStore


class _ScriptedClient:
    model = "gpt-test"

    def __init__(self, *scripts: Sequence[AIStreamEvent]) -> None:
        self._scripts = list(scripts)
        self.requests: list[list[Mapping[str, Any]]] = []
        self.closed = False

    async def generate_stream(self, messages: Sequence[Mapping[str, Any]], **kwargs: Any) -> AsyncIterator[AIStreamEvent]:
        self.requests.append(list(messages))
        for event in self._scripts.pop(0):
            yield event

    async def count_tokens(self, contents: Any, **kwargs: Any) -> int:
        return 0

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(app, "configure_logging", lambda *args, **kwargs: None)


def _finish(reason: FinishReason = FinishReason.STOP) -> AIStreamEvent:
    return AIStreamEvent(type="finish", finish_reason=reason, response_id="r1")


def _runtime(tmp_path: Path, client: _ScriptedClient, output: io.StringIO) -> app.Runtime:
    settings = Settings(api_key="test", project_root=str(tmp_path))
    return app.build_runtime(settings, client=cast(AIClient, client), output=output)


def test_build_client_settings_copies_connection_options() -> None:
    settings = Settings(
        base_url="https://api.example.com/v1",
        api_key="test-key",
        model="gpt-4o",
        temperature=0.1,
        max_retries=5,
        default_headers={"X-Trace": "1"},
    )

    client_settings = app.build_client_settings(settings)

    assert client_settings.base_url == "https://api.example.com/v1"
    assert client_settings.model == "gpt-4o"
    assert client_settings.temperature == 0.1
    assert client_settings.max_retries == 5
    assert client_settings.default_headers == {"X-Trace": "1"}
    assert client_settings.metadata is None


def test_format_entry() -> None:
    group = TranscriptEntry(
        EntryType.TOOL_GROUP,
        tools=(ToolDisplay("c1", "read_file", "file_path='a.txt'", ToolDisplayStatus.SUCCESS, "contents"),),
    )

    assert app.format_entry(TranscriptEntry.user("hi")) == ""
    assert app.format_entry(TranscriptEntry.error("boom")) == "Error: boom"
    assert app.format_entry(TranscriptEntry.info("Request cancelled.")) == "Request cancelled."
    assert app.format_entry(group) == "[success] read_file file_path='a.txt'\ncontents"


def test_builtin_tools_stay_inside_project(tmp_path: Path) -> None:
    tools = {spec.name: spec for spec in app.builtin_tools(tmp_path)}

    assert tools["write_file"].requires_approval
    assert not tools["read_file"].requires_approval
    assert tools["write_file"].handler({"file_path": "docs/a.txt", "content": "hello"}) == (
        "Wrote 5 characters to docs/a.txt"
    )
    assert tools["read_file"].handler({"file_path": "docs/a.txt"}) == "hello"
    with pytest.raises(ValueError):
        tools["read_file"].handler({"file_path": "../outside.txt"})


@pytest.mark.asyncio
async def test_repl_runs_a_turn_with_a_tool_round_trip(tmp_path: Path) -> None:
    (tmp_path / "notes.txt").write_text("remember milk", encoding="utf-8")
    client = _ScriptedClient(
        [
            AIStreamEvent(
                type="tool_call.done",
                tool_call=ToolCallDelta(index=0, call_id="call_1", name="read_file", arguments='{"file_path": "notes.txt"}'),
                response_id="r1",
            ),
            _finish(),
        ],
        [AIStreamEvent(type="content.delta", content="You need milk.", response_id="r2"), _finish()],
    )
    output = io.StringIO()
    runtime = _runtime(tmp_path, client, output)

    assert await app.run_repl(runtime, input_stream=io.StringIO("what is in my notes?\n/quit\n")) == 0

    printed = output.getvalue()
    assert "[success] read_file file_path='notes.txt'" in printed
    assert "You need milk." in printed
    tool_message = client.requests[1][-1]
    assert tool_message["role"] == "tool" and "remember milk" in tool_message["content"]
    assert client.closed


@pytest.mark.asyncio
async def test_repl_slash_commands(tmp_path: Path) -> None:
    output = io.StringIO()
    runtime = _runtime(tmp_path, _ScriptedClient(), output)

    await app.run_repl(runtime, input_stream=io.StringIO("/shell\n/shell\n/clear\n"))

    assert output.getvalue().splitlines() == ["Shell mode on.", "Shell mode off.", "Conversation cleared."]


def test_coerce_cli_overrides() -> None:
    assert app._coerce_cli_overrides(["model=gpt-4o", "max_session_turns=3"]) == {
        "model": "gpt-4o",
        "max_session_turns": 3,
    }
    with pytest.raises(ValueError, match="Unknown setting 'colour'"):
        app._coerce_cli_overrides(["colour=blue"])


def test_dump_settings_redacts_api_key(tmp_path: Path) -> None:
    store = SettingsStore(tmp_path / "settings.json")
    stream = io.StringIO()

    app._dump_settings(Settings(api_key="sk-abcdef"), store, overrides={"model": "x"}, stream=stream)

    payload = json.loads(stream.getvalue())
    assert payload["settings"]["api_key"] == "sk*****ef"
    assert payload["meta"]["path"] == str(tmp_path / "settings.json")
    assert payload["meta"]["secret_backend"] == "fernet"
    assert payload["meta"]["cli_overrides"] == ["model"]
    assert "TURNWRIGHT_HOME" in payload["meta"]["environment_variables"]


def test_main_dump_settings(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = tmp_path / "settings.json"

    code = app.main(["--settings-path", str(path), "--set", "model=gpt-4.1", "--shell-mode", "--dump-settings"])

    payload = json.loads(capsys.readouterr().out)
    assert code == 0
    assert payload["settings"]["model"] == "gpt-4.1"
    assert payload["settings"]["shell_mode"] is True
    assert payload["meta"]["cli_overrides"] == ["model", "shell_mode"]


def test_main_rejects_invalid_override(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as excinfo:
        app.main(["--set", "model"])

    assert excinfo.value.code == 2
    assert "Invalid --set override" in capsys.readouterr().err


def test_main_reports_missing_api_key(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    monkeypatch.setattr("sys.stdin", io.StringIO(""))

    code = app.main(["--settings-path", str(tmp_path / "settings.json")])

    assert code == 1
    assert "API key not provided" in capsys.readouterr().err


def test_main_runs_repl(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    seen: dict[str, Any] = {}

    def _build(settings: Settings) -> Settings:
        seen["settings"] = settings
        return settings

    async def _run(runtime: Any) -> int:
        seen["runtime"] = runtime
        return 0

    monkeypatch.setattr(app, "build_runtime", _build)
    monkeypatch.setattr(app, "run_repl", _run)
    monkeypatch.setattr("sys.stdin", io.StringIO(""))

    code = app.main(["--settings-path", str(tmp_path / "settings.json"), "--set", "auth_method=none"])

    assert code == 0
    assert seen["runtime"] is seen["settings"]
    assert seen["settings"].auth_method == "none"


@pytest.mark.asyncio
async def test_repl_keeps_repeated_streamed_tokens(tmp_path: Path) -> None:
    deltas = [AIStreamEvent(type="content.delta", content=token, response_id="r1") for token in ("Go", " go", " go", "!")]
    client = _ScriptedClient([*deltas, _finish()])
    output = io.StringIO()
    runtime = _runtime(tmp_path, client, output)

    await app.run_repl(runtime, input_stream=io.StringIO("cheer\n/quit\n"))

    assert "Go go go!" in output.getvalue().splitlines()
