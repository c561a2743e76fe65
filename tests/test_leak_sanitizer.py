"""Tests for leaked tool-call detection and sanitizing."""

from __future__ import annotations

from turnkeeper.orchestration.leak_sanitizer import (
    detect_leak,
    normalize_tool_marker_text,
    sanitize_text,
)


def test_detect_closing_marker_keeps_identifier_visible() -> None:
    leak = detect_leak('foo</function={"x":1}')

    assert leak is not None
    assert leak.index == 3
    assert leak.name == "foo"
    assert leak.input == '{"x":1}'


def test_detect_opening_marker_form() -> None:
    text = 'Sure. <function=web_search>{"query": "python"}</function>'

    leak = detect_leak(text)

    assert leak is not None
    assert text[: leak.index] == "Sure. "
    assert leak.name == "web_search"
    assert leak.input == '{"query": "python"}'


def test_detect_typed_object_form() -> None:
    leak = detect_leak('Checking shell{"type": "function", "cmd": "ls"}')

    assert leak is not None
    assert leak.name == "shell"
    assert leak.input.startswith('{"type": "function"')


def test_detect_tool_calls_block_reads_name_from_entry() -> None:
    text = "Answer<|tool_calls_begin|><|tool_call_begin|>read_file<|tool_sep|>{\"path\": \"a\"}"

    leak = detect_leak(text)

    assert leak is not None
    assert text[: leak.index] == "Answer"
    assert leak.name == "read_file"
    assert leak.input == '{"path": "a"}'


def test_detect_picks_earliest_marker() -> None:
    text = '<function=first>{}</function> then second</function={"a": 1}'

    leak = detect_leak(text)

    assert leak is not None
    assert leak.index == 0
    assert leak.name == "first"


def test_detect_returns_none_for_plain_text() -> None:
    assert detect_leak("Functions are first-class objects in Python.") is None
    assert detect_leak("") is None


def test_stylized_glyphs_are_normalized_without_shifting_offsets() -> None:
    text = "Hi＜｜tool▁calls▁begin｜＞"

    normalized = normalize_tool_marker_text(text)

    assert normalized == "Hi<|tool_calls_begin|>"
    assert len(normalized) == len(text)
    leak = detect_leak(text)
    assert leak is not None and leak.index == 2


def test_sanitize_removes_every_known_form() -> None:
    assert sanitize_text('Done.<function=x>{"a": 1}</function>') == "Done."
    assert sanitize_text('Result below\nsearch</function={"q": 1}') == "Result below"
    assert sanitize_text('Ok lookup{"type":"function","name":"lookup"}') == "Ok"
    assert sanitize_text("text</function> more") == "text more"
    assert sanitize_text("Hello<|im_end|>") == "Hello"
    assert (
        sanitize_text("A<|tool_calls_begin|><|tool_call_begin|>f<|tool_sep|>{}<|tool_call_end|><|tool_calls_end|>B")
        == "AB"
    )


def test_sanitize_handles_empty_values() -> None:
    assert sanitize_text(None) == ""
    assert sanitize_text("   plain   ") == "plain"
