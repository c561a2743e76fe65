"""Tests covering the console entry point helpers."""

from __future__ import annotations

import io
import json
from pathlib import Path

import pytest

from turnkeeper import app
from turnkeeper.chat.message_model import ToolInvocation, ToolState, Transcript, TurnMeta, TurnRole
from turnkeeper.orchestration.chat_session import ChatSession
from turnkeeper.services.settings import Settings

from tests.helpers import FakeConnector, Router, make_api


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(app, "configure_logging", lambda debug=False, *, force=False: None)


def test_format_turn_renders_tools_and_meta() -> None:
    turn = Transcript().create(
        TurnRole.AGENT,
        visible_text="Done.",
        tools=[
            ToolInvocation(id="a-1", name="shell", state=ToolState.COMPLETED),
            ToolInvocation(id="b-2", name="fetch", state=ToolState.ERRORED),
        ],
        meta=TurnMeta(input_tokens=1, output_tokens=2),
    )

    assert app.format_turn(turn) == "[agent] Done.\n  * shell\n  ! fetch\n  (1 in / 2 out)"


def test_coerce_cli_overrides_uses_field_types() -> None:
    overrides = app._coerce_cli_overrides(
        [
            "debug_logging=yes",
            "max_retries=4",
            "watchdog_seconds=30",
            "agent_id=none",
            "base_url=http://host:1",
            'default_headers={"X-Key": 1}',
        ]
    )

    assert overrides == {
        "debug_logging": True,
        "max_retries": 4,
        "watchdog_seconds": 30.0,
        "agent_id": None,
        "base_url": "http://host:1",
        "default_headers": {"X-Key": "1"},
    }


@pytest.mark.parametrize("entry", ["novalue", "=x", "bogus=1", "debug_logging=maybe", "max_retries=many"])
def test_coerce_cli_overrides_rejects_bad_entries(entry: str) -> None:
    with pytest.raises(ValueError):
        app._coerce_cli_overrides([entry])


def test_main_dump_settings(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    settings_path = tmp_path / "settings.json"

    code = app.main(
        ["--settings-path", str(settings_path), "--agent", "helper", "--base-url", "https://h", "--dump-settings"]
    )

    assert code == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["settings"]["agent_id"] == "helper"
    assert payload["meta"]["ws_url"] == "wss://h"
    assert payload["meta"]["path"] == str(settings_path)
    assert payload["meta"]["cli_overrides"] == ["agent_id", "base_url"]


def test_main_requires_agent(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = app.main(["--settings-path", str(tmp_path / "settings.json")])

    assert code == 2
    assert "No agent configured" in capsys.readouterr().err


def test_main_rejects_invalid_override(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = app.main(["--settings-path", str(tmp_path / "s.json"), "--set", "max_retries=lots"])

    assert code == 2
    assert "Invalid --set override" in capsys.readouterr().err


def test_load_settings_falls_back_on_os_error(tmp_path: Path) -> None:
    class BrokenStore:
        path = tmp_path / "settings.json"

        def load(self, *, overrides=None):
            raise PermissionError("denied")

    assert app.load_settings(store=BrokenStore()) == Settings()


@pytest.mark.asyncio
async def test_run_console_prints_turns(monkeypatch: pytest.MonkeyPatch, router: Router) -> None:
    router.routes[("POST", "/api/agents/agent-1/message")] = {"response": "Hi there"}
    monkeypatch.setattr(
        app,
        "ChatSession",
        lambda settings: ChatSession(settings, api=make_api(router), connect=FakeConnector(fail=True)),
    )
    stdin = io.StringIO("hello\n/quit\nnever sent\n")
    stdout = io.StringIO()

    await app._run_console(Settings(base_url="http://agent.test", agent_id="agent-1"), stdin=stdin, stdout=stdout)

    assert stdout.getvalue().splitlines() == [
        "[you] hello",
        "[system] Using HTTP mode (no streaming)",
        "[agent] Hi there",
        "  (0 in / 0 out)",
    ]
    assert len(router.calls("POST", "/api/agents/agent-1/message")) == 1
