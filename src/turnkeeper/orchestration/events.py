"""Typed inbound events and outbound frames for the agent streaming protocol.

Inbound envelopes are JSON objects discriminated by ``type``. They are
validated against a Draft 7 schema and converted into one of the frozen
dataclasses collected in :data:`InboundEvent`, so consumers can dispatch
exhaustively instead of switching on raw strings.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from json import JSONDecodeError
from typing import Any, ClassVar, Dict, Mapping, Sequence, Union

from jsonschema import Draft7Validator, ValidationError

__all__ = [
    "AgentsUpdatedEvent",
    "CanvasEvent",
    "CommandFrame",
    "CommandResultEvent",
    "ConnectedEvent",
    "EVENT_SCHEMA",
    "ErrorEvent",
    "EventParseError",
    "InboundEvent",
    "MessageFrame",
    "PhaseEvent",
    "PongEvent",
    "ResponseEvent",
    "SilentCompleteEvent",
    "TextDeltaEvent",
    "ThinkingEvent",
    "ToolEndEvent",
    "ToolResultEvent",
    "ToolStartEvent",
    "TypingEvent",
    "parse_event",
]


class EventParseError(ValueError):
    """Raised when an inbound frame is not a valid protocol event."""


@dataclass(frozen=True, slots=True)
class ConnectedEvent:
    type: ClassVar[str] = "connected"


@dataclass(frozen=True, slots=True)
class ThinkingEvent:
    """Legacy typing indicator carrying an optional reasoning level."""

    type: ClassVar[str] = "thinking"
    level: str | None = None


@dataclass(frozen=True, slots=True)
class TypingEvent:
    type: ClassVar[str] = "typing"
    state: str = "start"
    tool: str | None = None


@dataclass(frozen=True, slots=True)
class PhaseEvent:
    type: ClassVar[str] = "phase"
    phase: str = ""
    detail: str | None = None


@dataclass(frozen=True, slots=True)
class TextDeltaEvent:
    type: ClassVar[str] = "text_delta"
    content: str = ""


@dataclass(frozen=True, slots=True)
class ToolStartEvent:
    type: ClassVar[str] = "tool_start"
    tool: str = ""


@dataclass(frozen=True, slots=True)
class ToolEndEvent:
    type: ClassVar[str] = "tool_end"
    tool: str = ""
    input: Any = None


@dataclass(frozen=True, slots=True)
class ToolResultEvent:
    type: ClassVar[str] = "tool_result"
    tool: str = ""
    result: str = ""
    is_error: bool = False


@dataclass(frozen=True, slots=True)
class ResponseEvent:
    """Terminal success event closing the in-flight turn."""

    type: ClassVar[str] = "response"
    content: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    cost_usd: float | None = None
    iterations: int | None = None
    fallback_model: str | None = None
    context_pressure: str | None = None

    def usage_fields(self) -> Dict[str, Any]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cost_usd": self.cost_usd,
            "iterations": self.iterations,
            "fallback_model": self.fallback_model,
        }


@dataclass(frozen=True, slots=True)
class SilentCompleteEvent:
    type: ClassVar[str] = "silent_complete"


@dataclass(frozen=True, slots=True)
class ErrorEvent:
    type: ClassVar[str] = "error"
    content: str = ""


@dataclass(frozen=True, slots=True)
class CommandResultEvent:
    """Reply to an out-of-band control frame."""

    type: ClassVar[str] = "command_result"
    message: str | None = None
    context_pressure: str | None = None


@dataclass(frozen=True, slots=True)
class CanvasEvent:
    type: ClassVar[str] = "canvas"
    html: str = ""
    title: str | None = None
    canvas_id: str | None = None


@dataclass(frozen=True, slots=True)
class PongEvent:
    type: ClassVar[str] = "pong"


@dataclass(frozen=True, slots=True)
class AgentsUpdatedEvent:
    type: ClassVar[str] = "agents_updated"
    agents: tuple[Mapping[str, Any], ...] = field(default_factory=tuple)


InboundEvent = Union[
    ConnectedEvent,
    ThinkingEvent,
    TypingEvent,
    PhaseEvent,
    TextDeltaEvent,
    ToolStartEvent,
    ToolEndEvent,
    ToolResultEvent,
    ResponseEvent,
    SilentCompleteEvent,
    ErrorEvent,
    CommandResultEvent,
    CanvasEvent,
    PongEvent,
    AgentsUpdatedEvent,
]

_EVENT_TYPES: Dict[str, type] = {
    cls.type: cls
    for cls in (
        ConnectedEvent,
        ThinkingEvent,
        TypingEvent,
        PhaseEvent,
        TextDeltaEvent,
        ToolStartEvent,
        ToolEndEvent,
        ToolResultEvent,
        ResponseEvent,
        SilentCompleteEvent,
        ErrorEvent,
        CommandResultEvent,
        CanvasEvent,
        PongEvent,
        AgentsUpdatedEvent,
    )
}

_OPTIONAL_STRING = {"type": ["string", "null"]}
_OPTIONAL_NUMBER = {"type": ["number", "null"]}


def _requires(event_type: str, required: Sequence[str], properties: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "if": {"properties": {"type": {"const": event_type}}},
        "then": {"required": list(required), "properties": dict(properties)},
    }


EVENT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["type"],
    "properties": {
        "type": {"type": "string", "enum": sorted(_EVENT_TYPES)},
    },
    "additionalProperties": True,
    "allOf": [
        _requires("thinking", [], {"level": _OPTIONAL_STRING}),
        _requires(
            "typing",
            ["state"],
            {"state": {"enum": ["start", "tool", "stop"]}, "tool": _OPTIONAL_STRING},
        ),
        _requires("phase", ["phase"], {"phase": {"type": "string"}, "detail": _OPTIONAL_STRING}),
        _requires("text_delta", ["content"], {"content": {"type": "string"}}),
        _requires("tool_start", ["tool"], {"tool": {"type": "string", "minLength": 1}}),
        _requires("tool_end", ["tool"], {"tool": {"type": "string", "minLength": 1}}),
        _requires(
            "tool_result",
            ["tool"],
            {"tool": {"type": "string", "minLength": 1}, "is_error": {"type": ["boolean", "null"]}},
        ),
        _requires(
            "response",
            [],
            {
                "content": _OPTIONAL_STRING,
                "input_tokens": _OPTIONAL_NUMBER,
                "output_tokens": _OPTIONAL_NUMBER,
                "cost_usd": _OPTIONAL_NUMBER,
                "iterations": _OPTIONAL_NUMBER,
                "fallback_model": _OPTIONAL_STRING,
                "context_pressure": _OPTIONAL_STRING,
            },
        ),
        _requires("error", ["content"], {"content": {"type": ["string", "null"]}}),
        _requires(
            "command_result",
            [],
            {"message": _OPTIONAL_STRING, "context_pressure": _OPTIONAL_STRING},
        ),
        _requires(
            "canvas",
            ["html"],
            {"html": {"type": "string"}, "title": _OPTIONAL_STRING, "canvas_id": _OPTIONAL_STRING},
        ),
        _requires("agents_updated", [], {"agents": {"type": ["array", "null"]}}),
    ],
}

_EVENT_VALIDATOR = Draft7Validator(EVENT_SCHEMA)


def parse_event(payload: Mapping[str, Any] | str | bytes) -> InboundEvent:
    """Validate ``payload`` and return the matching typed event."""

    mapping = _coerce_payload(payload)
    try:
        _EVENT_VALIDATOR.validate(mapping)
    except ValidationError as error:
        raise EventParseError(_format_validation_error(error)) from error

    event_type = mapping["type"]
    if event_type == "thinking":
        return ThinkingEvent(level=mapping.get("level") or None)
    if event_type == "typing":
        return TypingEvent(state=mapping["state"], tool=mapping.get("tool") or None)
    if event_type == "phase":
        return PhaseEvent(phase=mapping["phase"], detail=mapping.get("detail") or None)
    if event_type == "text_delta":
        return TextDeltaEvent(content=mapping["content"])
    if event_type == "tool_start":
        return ToolStartEvent(tool=mapping["tool"])
    if event_type == "tool_end":
        return ToolEndEvent(tool=mapping["tool"], input=mapping.get("input"))
    if event_type == "tool_result":
        return ToolResultEvent(
            tool=mapping["tool"],
            result=_stringify_result(mapping.get("result")),
            is_error=bool(mapping.get("is_error")),
        )
    if event_type == "response":
        return ResponseEvent(
            content=mapping.get("content"),
            input_tokens=_optional_int(mapping.get("input_tokens")),
            output_tokens=_optional_int(mapping.get("output_tokens")),
            cost_usd=_optional_float(mapping.get("cost_usd")),
            iterations=_optional_int(mapping.get("iterations")),
            fallback_model=mapping.get("fallback_model") or None,
            context_pressure=mapping.get("context_pressure") or None,
        )
    if event_type == "error":
        return ErrorEvent(content=str(mapping.get("content") or ""))
    if event_type == "command_result":
        return CommandResultEvent(
            message=mapping.get("message") or None,
            context_pressure=mapping.get("context_pressure") or None,
        )
    if event_type == "canvas":
        return CanvasEvent(
            html=mapping["html"],
            title=mapping.get("title") or None,
            canvas_id=mapping.get("canvas_id") or None,
        )
    if event_type == "agents_updated":
        agents = mapping.get("agents") or ()
        return AgentsUpdatedEvent(agents=tuple(dict(agent) for agent in agents if isinstance(agent, Mapping)))
    return _EVENT_TYPES[event_type]()


@dataclass(frozen=True, slots=True)
class MessageFrame:
    """Outbound frame carrying a user submission."""

    content: str
    attachments: tuple[Mapping[str, Any], ...] = ()

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": "message", "content": self.content}
        if self.attachments:
            payload["attachments"] = [dict(item) for item in self.attachments]
        return payload


@dataclass(frozen=True, slots=True)
class CommandFrame:
    """Outbound out-of-band control frame; bypasses the submission queue."""

    command: str
    args: str = ""

    def to_payload(self) -> Dict[str, Any]:
        return {"type": "command", "command": self.command, "args": self.args}


def _coerce_payload(payload: Mapping[str, Any] | str | bytes) -> Dict[str, Any]:
    if isinstance(payload, Mapping):
        return dict(payload)
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8", errors="replace")
    if not isinstance(payload, str):
        raise EventParseError(f"Unsupported frame type {type(payload).__name__}")
    try:
        parsed = json.loads(payload)
    except JSONDecodeError as exc:
        raise EventParseError(f"Frame is not valid JSON: {exc.msg}") from exc
    if not isinstance(parsed, dict):
        raise EventParseError("Frame must be a JSON object")
    return parsed


def _format_validation_error(error: ValidationError) -> str:
    path = ".".join(str(part) for part in error.path)
    if path:
        return f"{path}: {error.message}"
    return error.message


def _stringify_result(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    return int(value)


def _optional_float(value: Any) -> float | None:
    if value is None:
        return None
    return float(value)
