"""Tests for tool invocation tracking."""

from __future__ import annotations

import json

from turnkeeper.chat.message_model import ToolState, Transcript, TurnLifecycle, TurnRole
from turnkeeper.orchestration.leak_sanitizer import LEAK_NOT_EXECUTED_RESULT
from turnkeeper.orchestration.tool_tracker import (
    ToolInvocationTracker,
    extract_side_payload,
    match_latest_running,
)


def _open_turn():
    return Transcript().create(TurnRole.AGENT, lifecycle=TurnLifecycle.STREAMING)


def test_result_attaches_to_latest_running_invocation() -> None:
    tracker = ToolInvocationTracker()
    turn = _open_turn()
    first = tracker.start(turn, "web_search")
    second = tracker.start(turn, "web_search")

    matched = tracker.record_result(turn, "web_search", "r1")

    assert matched is second
    assert second.result == "r1"
    assert second.state is ToolState.COMPLETED
    assert first.running


def test_completed_invocations_never_match() -> None:
    tracker = ToolInvocationTracker()
    turn = _open_turn()
    first = tracker.start(turn, "shell")
    tracker.record_result(turn, "shell", "ok")

    assert tracker.record_result(turn, "shell", "late") is None
    assert first.result == "ok"
    assert match_latest_running(turn.tools, "shell") is None


def test_record_input_sets_input_on_running_call() -> None:
    tracker = ToolInvocationTracker()
    turn = _open_turn()
    invocation = tracker.start(turn, "read_file")

    tracker.record_input(turn, "read_file", {"path": "a.txt"})

    assert invocation.input == {"path": "a.txt"}
    assert tracker.record_input(turn, "missing", {}) is None


def test_ids_are_unique_per_tracker() -> None:
    tracker = ToolInvocationTracker()
    turn = _open_turn()
    ids = {tracker.start(turn, "t").id for _ in range(3)}
    ids.add(tracker.add_text_detected(turn, "t", "{}").id)

    assert len(ids) == 4
    assert any("-txt-" in tool_id for tool_id in ids)


def test_custom_matcher_is_used() -> None:
    def first_running(tools, name):
        return next((tool for tool in tools if tool.name == name and tool.running), None)

    tracker = ToolInvocationTracker(matcher=first_running)
    turn = _open_turn()
    first = tracker.start(turn, "a")
    tracker.start(turn, "a")

    assert tracker.record_result(turn, "a", "r") is first


def test_settle_errors_unexecuted_text_calls_and_completes_others() -> None:
    tracker = ToolInvocationTracker()
    turn = _open_turn()
    real = tracker.start(turn, "shell")
    leaked = tracker.add_text_detected(turn, "foo", '{"x":1}')

    tracker.settle(turn.tools)

    assert real.state is ToolState.COMPLETED
    assert leaked.state is ToolState.ERRORED
    assert leaked.result == LEAK_NOT_EXECUTED_RESULT
    assert leaked.input == '{"x":1}'


def test_error_result_marks_invocation_errored() -> None:
    tracker = ToolInvocationTracker()
    turn = _open_turn()
    tracker.start(turn, "image_generate")

    invocation = tracker.record_result(turn, "image_generate", "quota exceeded", is_error=True)

    assert invocation is not None
    assert invocation.state is ToolState.ERRORED
    assert invocation.side_payload is None


def test_side_payload_for_image_and_audio_producers() -> None:
    images = extract_side_payload("image_generate", json.dumps({"image_urls": ["/a.png", "/b.png"]}))
    audio = extract_side_payload(
        "text_to_speech", json.dumps({"saved_to": "/tmp/x.mp3", "duration_estimate_ms": 1200})
    )

    assert images == {"image_urls": ["/a.png", "/b.png"]}
    assert audio == {"audio_file": "/tmp/x.mp3", "duration_ms": 1200}


def test_malformed_side_payload_is_ignored_and_raw_result_kept() -> None:
    tracker = ToolInvocationTracker()
    turn = _open_turn()
    tracker.start(turn, "browser_screenshot")

    invocation = tracker.record_result(turn, "browser_screenshot", '{"image_urls": [')

    assert invocation is not None
    assert invocation.side_payload is None
    assert invocation.result == '{"image_urls": ['
    assert extract_side_payload("web_search", '{"image_urls": ["x"]}') is None
