"""Tool invocation tracking for the open turn."""

from __future__ import annotations

import itertools
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Mapping, Sequence

from ..chat.message_model import ToolInvocation, ToolState, Turn
from .leak_sanitizer import LEAK_NOT_EXECUTED_RESULT

LOGGER = logging.getLogger(__name__)

ToolMatcher = Callable[[Sequence[ToolInvocation], str], "ToolInvocation | None"]


def match_latest_running(tools: Sequence[ToolInvocation], name: str) -> ToolInvocation | None:
    """Return the most recently started invocation of ``name`` that is still running.

    The protocol carries no call id, so two concurrent calls of the same tool
    are attributed last-in-first-out. Completed invocations never match.
    """

    for tool in reversed(tools):
        if tool.name == name and tool.state is ToolState.RUNNING:
            return tool
    return None


def extract_side_payload(name: str, result: str, *, is_error: bool = False) -> dict[str, Any] | None:
    """Pull structured media references out of known producers' JSON results."""

    if is_error or not result:
        return None
    if name not in _IMAGE_PRODUCERS and name not in _AUDIO_PRODUCERS:
        return None
    try:
        parsed = json.loads(result)
    except (TypeError, ValueError):
        return None
    if not isinstance(parsed, Mapping):
        return None
    if name in _IMAGE_PRODUCERS:
        urls = parsed.get("image_urls")
        if isinstance(urls, list) and urls:
            return {"image_urls": [str(url) for url in urls]}
        return None
    saved_to = parsed.get("saved_to")
    if not saved_to:
        return None
    payload: dict[str, Any] = {"audio_file": str(saved_to)}
    duration = parsed.get("duration_estimate_ms")
    if duration is not None:
        payload["duration_ms"] = duration
    return payload


_IMAGE_PRODUCERS: frozenset[str] = frozenset({"image_generate", "browser_screenshot"})
_AUDIO_PRODUCERS: frozenset[str] = frozenset({"text_to_speech"})


@dataclass(slots=True)
class ToolInvocationTracker:
    """Applies tool lifecycle events to a turn's ordered tool list.

    Matching of end/result events is delegated to ``matcher`` so a protocol
    revision with explicit call ids only needs to swap that function.
    """

    matcher: ToolMatcher = match_latest_running
    _sequence: Iterator[int] = field(default_factory=lambda: itertools.count(1))

    def start(self, turn: Turn, name: str) -> ToolInvocation:
        invocation = ToolInvocation(id=f"{name}-{next(self._sequence)}", name=name)
        turn.tools.append(invocation)
        return invocation

    def record_input(self, turn: Turn, name: str, tool_input: Any) -> ToolInvocation | None:
        invocation = self.matcher(turn.tools, name)
        if invocation is None:
            LOGGER.debug("tool_end for %s has no running invocation", name)
            return None
        invocation.input = tool_input if tool_input is not None else ""
        return invocation

    def record_result(self, turn: Turn, name: str, result: str, *, is_error: bool = False) -> ToolInvocation | None:
        invocation = self.matcher(turn.tools, name)
        if invocation is None:
            LOGGER.debug("tool_result for %s has no running invocation", name)
            return None
        invocation.resolve(result or "", is_error=is_error)
        invocation.side_payload = extract_side_payload(name, invocation.result, is_error=is_error)
        return invocation

    def add_text_detected(self, turn: Turn, name: str, tool_input: str) -> ToolInvocation:
        """Record a call the model wrote as text; it stays running because nothing dispatched it."""

        invocation = ToolInvocation(
            id=f"{name}-txt-{next(self._sequence)}",
            name=name,
            input=tool_input,
            text_detected=True,
        )
        turn.tools.append(invocation)
        return invocation

    def settle(self, tools: Sequence[ToolInvocation]) -> None:
        """Close out invocations that never received a result before finalization."""

        for tool in tools:
            if tool.state is not ToolState.RUNNING:
                continue
            if tool.text_detected and not tool.result:
                tool.resolve(LEAK_NOT_EXECUTED_RESULT, is_error=True)
            else:
                tool.resolve(tool.result)


__all__ = [
    "ToolInvocationTracker",
    "ToolMatcher",
    "extract_side_payload",
    "match_latest_running",
]
