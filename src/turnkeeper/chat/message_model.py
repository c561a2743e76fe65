"""Turn, tool invocation and submission data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, Mapping, Optional, Sequence


def _utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""

    return datetime.now(timezone.utc)


class TurnRole(str, Enum):
    """Author of a reconstructed turn."""

    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


class TurnLifecycle(str, Enum):
    """Lifecycle of a turn; only ``FINALIZED`` turns are immutable."""

    THINKING = "thinking"
    STREAMING = "streaming"
    FINALIZED = "finalized"


class ToolState(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ERRORED = "errored"


class ThinkingMode(str, Enum):
    """Extended reasoning display mode requested by the user."""

    OFF = "off"
    ON = "on"
    STREAM = "stream"

    def cycle(self) -> "ThinkingMode":
        order = (ThinkingMode.OFF, ThinkingMode.ON, ThinkingMode.STREAM)
        return order[(order.index(self) + 1) % len(order)]


class ContextPressure(str, Enum):
    """Ordered, server-reported indicator of context window usage."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRESSURE_ORDER.index(self)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, ContextPressure):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, ContextPressure):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, ContextPressure):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, ContextPressure):
            return NotImplemented
        return self.rank >= other.rank

    @classmethod
    def from_value(cls, value: Any) -> "ContextPressure | None":
        """Return the matching level or ``None`` for absent/unknown values."""

        if isinstance(value, ContextPressure):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


_PRESSURE_ORDER = (
    ContextPressure.LOW,
    ContextPressure.MEDIUM,
    ContextPressure.HIGH,
    ContextPressure.CRITICAL,
)


class TurnFinalizedError(RuntimeError):
    """Raised when a finalized turn is mutated."""


@dataclass(slots=True)
class ToolInvocation:
    """A single tool call and its lifecycle within a turn."""

    id: str
    name: str
    state: ToolState = ToolState.RUNNING
    input: Any = ""
    result: str = ""
    side_payload: Dict[str, Any] | None = None
    text_detected: bool = False

    @property
    def running(self) -> bool:
        return self.state is ToolState.RUNNING

    @property
    def is_error(self) -> bool:
        return self.state is ToolState.ERRORED

    def resolve(self, result: str, *, is_error: bool = False) -> None:
        self.result = result
        self.state = ToolState.ERRORED if is_error else ToolState.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "state": self.state.value,
            "input": self.input,
            "result": self.result,
        }
        if self.side_payload:
            payload["side_payload"] = dict(self.side_payload)
        if self.text_detected:
            payload["text_detected"] = True
        return payload


@dataclass(slots=True)
class TurnMeta:
    """Usage summary attached to a finalized agent turn."""

    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float | None = None
    iterations: int | None = None
    fallback_model: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "TurnMeta":
        return cls(
            input_tokens=_as_int(payload.get("input_tokens")) or 0,
            output_tokens=_as_int(payload.get("output_tokens")) or 0,
            cost_usd=_as_float(payload.get("cost_usd")),
            iterations=_as_int(payload.get("iterations")),
            fallback_model=str(payload["fallback_model"]) if payload.get("fallback_model") else None,
        )

    def format(self) -> str:
        """Render the summary as ``"12 in / 40 out | $0.0012 | 2 iter"``."""

        parts = [f"{self.input_tokens} in / {self.output_tokens} out"]
        if self.cost_usd is not None:
            parts.append(f"${self.cost_usd:.4f}")
        if self.iterations:
            parts.append(f"{self.iterations} iter")
        if self.fallback_model:
            parts.append(f"fallback: {self.fallback_model}")
        return " | ".join(parts)


@dataclass(slots=True)
class Turn:
    """One reconstructed response cycle (or user submission) in the transcript.

    ``visible_text`` and ``reasoning_text`` only grow while the turn is open;
    :meth:`truncate_text` is reserved for the leak sanitizer. ``status_text``
    is the transient placeholder ("Processing...", "Using web_search...")
    shown before any text streams in.
    """

    id: int
    role: TurnRole
    lifecycle: TurnLifecycle = TurnLifecycle.FINALIZED
    visible_text: str = ""
    status_text: str = ""
    reasoning_text: str = ""
    tools: list[ToolInvocation] = field(default_factory=list)
    meta: TurnMeta | None = None
    text_detected_leak: bool = False
    images: list[Dict[str, Any]] = field(default_factory=list)
    canvas: Dict[str, Any] | None = None
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def is_open(self) -> bool:
        return self.lifecycle is not TurnLifecycle.FINALIZED

    def append_text(self, chunk: str) -> None:
        self._ensure_open()
        self.visible_text += chunk

    def append_reasoning(self, chunk: str) -> None:
        self._ensure_open()
        self.reasoning_text += chunk

    def truncate_text(self, index: int) -> None:
        self._ensure_open()
        self.visible_text = self.visible_text[:index].strip()

    def mark_leak_detected(self) -> bool:
        """Flag the turn as having leaked tool syntax; returns ``False`` when already flagged."""

        self._ensure_open()
        if self.text_detected_leak:
            return False
        self.text_detected_leak = True
        return True

    def begin_streaming(self) -> None:
        """Move from ``thinking`` to ``streaming``, dropping the placeholder."""

        self._ensure_open()
        if self.lifecycle is TurnLifecycle.THINKING:
            self.lifecycle = TurnLifecycle.STREAMING
            self.status_text = ""
            self.visible_text = ""

    def _ensure_open(self) -> None:
        if not self.is_open:
            raise TurnFinalizedError(f"Turn {self.id} is finalized")

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the turn for logs and renderers."""

        payload: Dict[str, Any] = {
            "id": self.id,
            "role": self.role.value,
            "lifecycle": self.lifecycle.value,
            "text": self.visible_text,
            "created_at": self.created_at.isoformat(),
            "tools": [tool.to_dict() for tool in self.tools],
        }
        if self.status_text:
            payload["status"] = self.status_text
        if self.reasoning_text:
            payload["reasoning"] = self.reasoning_text
        if self.meta is not None:
            payload["meta"] = self.meta.format()
        if self.images:
            payload["images"] = [dict(image) for image in self.images]
        if self.canvas is not None:
            payload["canvas"] = dict(self.canvas)
        return payload


@dataclass(slots=True)
class Submission:
    """A user message waiting for (or undergoing) dispatch."""

    text: str
    attachment_refs: list[Dict[str, Any]] = field(default_factory=list)
    image_refs: list[Dict[str, Any]] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def build(cls, text: str, attachments: Sequence[Mapping[str, Any]] | None = None) -> "Submission":
        """Compose the outbound text and split image descriptors from ``attachments``."""

        refs = [dict(item) for item in attachments or ()]
        lines = [f"[File: {ref.get('filename') or ref.get('file_id') or 'attachment'}]" for ref in refs]
        body = text.strip()
        if lines:
            body = "\n".join([body, *lines]) if body else "\n".join(lines)
        images = [ref for ref in refs if str(ref.get("content_type") or "").startswith("image/")]
        return cls(text=body, attachment_refs=refs, image_refs=images)


class Transcript:
    """Ordered turn list with a monotonic id allocator."""

    def __init__(self) -> None:
        self._turns: list[Turn] = []
        self._last_id = 0

    def __iter__(self) -> Iterator[Turn]:
        return iter(list(self._turns))

    def __len__(self) -> int:
        return len(self._turns)

    def __contains__(self, turn: object) -> bool:
        return any(existing is turn for existing in self._turns)

    @property
    def turns(self) -> tuple[Turn, ...]:
        return tuple(self._turns)

    def create(self, role: TurnRole, **fields: Any) -> Turn:
        """Allocate a new turn with the next id and append it."""

        self._last_id += 1
        turn = Turn(id=self._last_id, role=role, **fields)
        self._turns.append(turn)
        return turn

    def remove(self, turn: Turn) -> bool:
        for index, existing in enumerate(self._turns):
            if existing is turn:
                del self._turns[index]
                return True
        return False

    def clear(self) -> None:
        # Ids stay monotonic across clears.
        self._turns.clear()

    def last(self) -> Optional[Turn]:
        return self._turns[-1] if self._turns else None

    def search(self, query: str) -> list[Turn]:
        needle = (query or "").strip().lower()
        if not needle:
            return list(self._turns)
        return [
            turn
            for turn in self._turns
            if needle in turn.visible_text.lower()
            or any(needle in tool.name.lower() for tool in turn.tools)
        ]


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


__all__ = [
    "ContextPressure",
    "Submission",
    "ThinkingMode",
    "ToolInvocation",
    "ToolState",
    "Transcript",
    "Turn",
    "TurnFinalizedError",
    "TurnLifecycle",
    "TurnMeta",
    "TurnRole",
]
