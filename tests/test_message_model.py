"""Tests for the turn data model."""

from __future__ import annotations

import pytest

from turnkeeper.chat.message_model import (
    ContextPressure,
    Submission,
    ThinkingMode,
    ToolInvocation,
    ToolState,
    Transcript,
    TurnFinalizedError,
    TurnLifecycle,
    TurnMeta,
    TurnRole,
)
from turnkeeper.utils.tokens import ApproxTokenCounter


def test_transcript_ids_stay_monotonic_across_clear() -> None:
    transcript = Transcript()
    first = transcript.create(TurnRole.USER, visible_text="hi")
    second = transcript.create(TurnRole.AGENT, visible_text="hello")
    transcript.clear()
    third = transcript.create(TurnRole.SYSTEM, visible_text="reset")

    assert (first.id, second.id, third.id) == (1, 2, 3)
    assert transcript.turns == (third,)


def test_transcript_remove_uses_identity() -> None:
    transcript = Transcript()
    a = transcript.create(TurnRole.AGENT, visible_text="same")
    b = transcript.create(TurnRole.AGENT, visible_text="same")

    assert transcript.remove(b) is True
    assert transcript.remove(b) is False
    assert list(transcript) == [a]
    assert b not in transcript


def test_transcript_search_matches_text_and_tool_names() -> None:
    transcript = Transcript()
    text_hit = transcript.create(TurnRole.AGENT, visible_text="The Weather is fine")
    tool_hit = transcript.create(
        TurnRole.AGENT,
        visible_text="done",
        tools=[ToolInvocation(id="weather_lookup-1", name="weather_lookup")],
    )
    transcript.create(TurnRole.USER, visible_text="unrelated")

    assert transcript.search("weather") == [text_hit, tool_hit]
    assert len(transcript.search("  ")) == 3


def test_finalized_turn_rejects_mutation() -> None:
    turn = Transcript().create(TurnRole.AGENT, visible_text="partial", lifecycle=TurnLifecycle.FINALIZED)

    assert turn.is_open is False
    with pytest.raises(TurnFinalizedError):
        turn.append_text("more")
    with pytest.raises(TurnFinalizedError):
        turn.truncate_text(0)


def test_begin_streaming_drops_placeholder() -> None:
    turn = Transcript().create(TurnRole.AGENT, lifecycle=TurnLifecycle.THINKING, status_text="Processing...")
    turn.visible_text = "<details>reasoning</details>"

    turn.begin_streaming()

    assert turn.lifecycle is TurnLifecycle.STREAMING
    assert turn.status_text == ""
    assert turn.visible_text == ""


def test_mark_leak_detected_is_one_shot() -> None:
    turn = Transcript().create(TurnRole.AGENT, lifecycle=TurnLifecycle.STREAMING)

    assert turn.mark_leak_detected() is True
    assert turn.mark_leak_detected() is False
    assert turn.text_detected_leak is True


def test_turn_meta_format_includes_optional_parts() -> None:
    meta = TurnMeta.from_payload(
        {"input_tokens": 12, "output_tokens": 40, "cost_usd": 0.0012, "iterations": 2, "fallback_model": "mini"}
    )

    assert meta.format() == "12 in / 40 out | $0.0012 | 2 iter | fallback: mini"
    assert TurnMeta.from_payload({}).format() == "0 in / 0 out"


def test_submission_build_lists_files_and_splits_images() -> None:
    attachments = [
        {"file_id": "f1", "filename": "notes.txt", "content_type": "text/plain"},
        {"file_id": "f2", "filename": "cat.png", "content_type": "image/png"},
    ]

    submission = Submission.build("look at these", attachments)

    assert submission.text == "look at these\n[File: notes.txt]\n[File: cat.png]"
    assert [ref["file_id"] for ref in submission.attachment_refs] == ["f1", "f2"]
    assert [ref["file_id"] for ref in submission.image_refs] == ["f2"]


def test_submission_build_with_only_attachments() -> None:
    submission = Submission.build("", [{"filename": "a.pdf"}])

    assert submission.text == "[File: a.pdf]"
    assert submission.image_refs == []


def test_thinking_mode_cycles_off_on_stream() -> None:
    assert ThinkingMode.OFF.cycle() is ThinkingMode.ON
    assert ThinkingMode.ON.cycle() is ThinkingMode.STREAM
    assert ThinkingMode.STREAM.cycle() is ThinkingMode.OFF


def test_context_pressure_parsing_and_order() -> None:
    assert ContextPressure.from_value("HIGH") is ContextPressure.HIGH
    assert ContextPressure.from_value(None) is None
    assert ContextPressure.from_value("overflowing") is None
    assert ContextPressure.LOW < ContextPressure.CRITICAL
    assert ContextPressure.HIGH > ContextPressure.MEDIUM
    assert ContextPressure.CRITICAL >= ContextPressure.LOW
    assert ContextPressure.LOW <= ContextPressure.LOW
    assert not ContextPressure.MEDIUM >= ContextPressure.HIGH
    assert sorted([ContextPressure.CRITICAL, ContextPressure.LOW, ContextPressure.HIGH]) == [
        ContextPressure.LOW,
        ContextPressure.HIGH,
        ContextPressure.CRITICAL,
    ]
    assert max(ContextPressure.MEDIUM, ContextPressure.HIGH) is ContextPressure.HIGH


def test_tool_invocation_resolve_and_serialize() -> None:
    tool = ToolInvocation(id="shell-1", name="shell", input={"cmd": "ls"})
    assert tool.running

    tool.resolve("boom", is_error=True)

    assert tool.state is ToolState.ERRORED
    assert tool.is_error
    assert tool.to_dict() == {
        "id": "shell-1",
        "name": "shell",
        "state": "errored",
        "input": {"cmd": "ls"},
        "result": "boom",
    }


def test_approx_token_counter_rounds_up_bytes() -> None:
    counter = ApproxTokenCounter()

    assert counter.count("") == 0
    assert counter.count("abc") == 1
    assert counter.count("abcdefgh") == 2
    assert counter.count("é" * 3) == 2
    assert counter.count_many(["abcd", None, "abcde"]) == 3
