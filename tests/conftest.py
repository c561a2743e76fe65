"""Shared pytest fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from turnkeeper.chat.message_model import Transcript
from turnkeeper.orchestration.assembler import TurnAssembler
from turnkeeper.services.settings import Settings

from tests.helpers import TEST_BASE_URL, FakeConnector, Router


@pytest.fixture
def transcript() -> Transcript:
    return Transcript()


@pytest.fixture
def assembler(transcript: Transcript) -> TurnAssembler:
    return TurnAssembler(transcript)


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def router() -> Router:
    return Router()


@pytest.fixture
def settings() -> Settings:
    return Settings(base_url=TEST_BASE_URL, agent_id="agent-1", max_retries=1)


@pytest.fixture(autouse=True)
def _isolate_home(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TURNKEEPER_LOG_DIR", str(tmp_path / "logs"))
    for name in (
        "TURNKEEPER_BASE_URL",
        "TURNKEEPER_WS_URL",
        "TURNKEEPER_AGENT_ID",
        "TURNKEEPER_REQUEST_TIMEOUT",
        "TURNKEEPER_WATCHDOG_SECONDS",
        "TURNKEEPER_MAX_RETRIES",
        "TURNKEEPER_DEBUG_LOGGING",
        "TURNKEEPER_DEBUG_EVENT_LOGGING",
    ):
        monkeypatch.delenv(name, raising=False)
