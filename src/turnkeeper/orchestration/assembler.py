"""Streaming turn assembler: folds protocol events into transcript turns."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Mapping, Sequence, assert_never

from ..chat.message_model import (
    ContextPressure,
    Submission,
    ThinkingMode,
    Transcript,
    Turn,
    TurnLifecycle,
    TurnMeta,
    TurnRole,
)
from ..utils.tokens import ApproxTokenCounter
from .events import (
    AgentsUpdatedEvent,
    CanvasEvent,
    CommandResultEvent,
    ConnectedEvent,
    ErrorEvent,
    InboundEvent,
    PhaseEvent,
    PongEvent,
    ResponseEvent,
    SilentCompleteEvent,
    TextDeltaEvent,
    ThinkingEvent,
    ToolEndEvent,
    ToolResultEvent,
    ToolStartEvent,
    TypingEvent,
)
from .leak_sanitizer import detect_leak, sanitize_text
from .tool_tracker import ToolInvocationTracker
from .watchdog import DEFAULT_TIMEOUT_SECONDS, StuckTurnWatchdog

LOGGER = logging.getLogger(__name__)

PROCESSING_PLACEHOLDER = "Processing..."
_REASONING_TEMPLATE = "<details><summary>Reasoning...</summary>\n\n{reasoning}</details>"

TurnListener = Callable[[Turn], None]


class EventOutcome(str, Enum):
    """How an event affected the in-flight turn."""

    IGNORED = "ignored"
    PROGRESS = "progress"
    TERMINAL = "terminal"
    OUT_OF_BAND = "out_of_band"


class TurnAssembler:
    """Owns the single open turn of one connection session.

    Events are applied one at a time in arrival order. The open turn is held
    as an explicit reference; at most one turn is ever ``thinking`` or
    ``streaming``. Terminal events return :attr:`EventOutcome.TERMINAL`; the
    caller forwards that to the submission queue. Watchdog expiry discards the
    open turn and notifies ``on_stuck`` listeners instead.
    """

    def __init__(
        self,
        transcript: Transcript | None = None,
        *,
        tracker: ToolInvocationTracker | None = None,
        token_counter: ApproxTokenCounter | None = None,
        watchdog_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        thinking_mode: ThinkingMode = ThinkingMode.OFF,
    ) -> None:
        self.transcript = transcript if transcript is not None else Transcript()
        self.tracker = tracker or ToolInvocationTracker()
        self.thinking_mode = thinking_mode
        self.context_pressure = ContextPressure.LOW
        self.agents: list[Mapping[str, Any]] = []
        self.watchdog = StuckTurnWatchdog(self._on_watchdog_expired, timeout=watchdog_timeout)
        self._token_counter = token_counter or ApproxTokenCounter()
        self._open: Turn | None = None
        self._token_count = 0
        self._turn_listeners: list[TurnListener] = []
        self._stuck_listeners: list[Callable[[], None]] = []

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def open_turn(self) -> Turn | None:
        return self._open

    @property
    def token_count(self) -> int:
        """Approximate tokens streamed into the open turn so far."""

        return self._token_count

    def add_turn_listener(self, listener: TurnListener) -> None:
        """Register a callback invoked for every finalized turn appended to the transcript."""

        self._turn_listeners.append(listener)

    def add_stuck_listener(self, listener: Callable[[], None]) -> None:
        self._stuck_listeners.append(listener)

    # ------------------------------------------------------------------
    # Local turn creation
    # ------------------------------------------------------------------
    def begin_turn(self) -> Turn:
        """Open a thinking turn for a just-dispatched submission, reusing any open one."""

        if self._open is None:
            self._open = self.transcript.create(
                TurnRole.AGENT,
                lifecycle=TurnLifecycle.THINKING,
                status_text=PROCESSING_PLACEHOLDER,
            )
        self.watchdog.arm()
        return self._open

    def add_user_turn(self, submission: Submission) -> Turn:
        return self._emit(TurnRole.USER, submission.text, images=list(submission.image_refs))

    def add_system_turn(self, text: str) -> Turn:
        return self._emit(TurnRole.SYSTEM, text)

    def add_agent_turn(self, text: str, *, meta: TurnMeta | None = None) -> Turn:
        return self._emit(TurnRole.AGENT, sanitize_text(text), meta=meta)

    def discard_open_turn(self) -> Turn | None:
        """Drop the open turn without emitting anything; returns the discarded turn."""

        self.watchdog.disarm()
        turn, self._open = self._open, None
        if turn is not None:
            self.transcript.remove(turn)
        self._token_count = 0
        return turn

    def reset(self) -> None:
        """Forget the open turn and clear the transcript."""

        self.discard_open_turn()
        self.transcript.clear()

    # ------------------------------------------------------------------
    # Event dispatch
    # ------------------------------------------------------------------
    def handle(self, event: InboundEvent) -> EventOutcome:
        if isinstance(event, ThinkingEvent):
            return self._on_thinking(event)
        if isinstance(event, TypingEvent):
            return self._on_typing(event)
        if isinstance(event, PhaseEvent):
            return self._on_phase(event)
        if isinstance(event, TextDeltaEvent):
            return self._on_text_delta(event)
        if isinstance(event, ToolStartEvent):
            return self._on_tool_start(event)
        if isinstance(event, ToolEndEvent):
            return self._on_tool_end(event)
        if isinstance(event, ToolResultEvent):
            return self._on_tool_result(event)
        if isinstance(event, ResponseEvent):
            return self._on_response(event)
        if isinstance(event, SilentCompleteEvent):
            self._close_turn()
            return EventOutcome.TERMINAL
        if isinstance(event, ErrorEvent):
            self._close_turn()
            self.add_system_turn(f"Error: {event.content}")
            return EventOutcome.TERMINAL
        if isinstance(event, CommandResultEvent):
            self._apply_pressure(event.context_pressure)
            self.add_system_turn(event.message or "Command executed.")
            return EventOutcome.OUT_OF_BAND
        if isinstance(event, CanvasEvent):
            return self._on_canvas(event)
        if isinstance(event, AgentsUpdatedEvent):
            self.agents = [dict(agent) for agent in event.agents]
            return EventOutcome.OUT_OF_BAND
        if isinstance(event, (ConnectedEvent, PongEvent)):
            return EventOutcome.IGNORED
        assert_never(event)

    def _on_thinking(self, event: ThinkingEvent) -> EventOutcome:
        label = f"Thinking ({event.level})..." if event.level else PROCESSING_PLACEHOLDER
        if self._open is None:
            self._open_thinking(label)
        elif event.level and self._open.lifecycle is TurnLifecycle.THINKING:
            self._open.status_text = label
        self.watchdog.arm()
        return EventOutcome.PROGRESS

    def _on_typing(self, event: TypingEvent) -> EventOutcome:
        if event.state == "stop":
            self.watchdog.disarm()
            return EventOutcome.PROGRESS
        if event.state == "tool":
            if self._open is not None:
                self._open.status_text = f"Using {event.tool or 'tool'}..."
        elif self._open is None:
            self._open_thinking(PROCESSING_PLACEHOLDER)
        self.watchdog.arm()
        return EventOutcome.PROGRESS

    def _on_phase(self, event: PhaseEvent) -> EventOutcome:
        detail = event.detail or event.phase or "Working..."
        if event.phase == "context_warning":
            self.add_system_turn(detail)
            return EventOutcome.PROGRESS
        turn = self._open
        if turn is None:
            return EventOutcome.IGNORED
        if event.phase == "thinking" and self.thinking_mode is ThinkingMode.STREAM:
            turn.append_reasoning(f"{detail}\n")
            if turn.lifecycle is TurnLifecycle.THINKING:
                turn.visible_text = _REASONING_TEMPLATE.format(reasoning=turn.reasoning_text)
        else:
            turn.status_text = detail
        self.watchdog.arm()
        return EventOutcome.PROGRESS

    def _on_text_delta(self, event: TextDeltaEvent) -> EventOutcome:
        turn = self._open
        if turn is None:
            turn = self._open = self.transcript.create(TurnRole.AGENT, lifecycle=TurnLifecycle.STREAMING)
        elif turn.lifecycle is TurnLifecycle.THINKING:
            turn.begin_streaming()
        self.watchdog.arm()
        if turn.text_detected_leak:
            return EventOutcome.PROGRESS

        turn.append_text(event.content)
        leak = detect_leak(turn.visible_text)
        if leak is not None:
            turn.truncate_text(leak.index)
            turn.mark_leak_detected()
            if leak.name:
                self.tracker.add_text_detected(turn, leak.name, leak.input)
            LOGGER.debug("Leaked tool call %r detected in turn %s", leak.name, turn.id)
        self._token_count = self._token_counter.count(turn.visible_text)
        return EventOutcome.PROGRESS

    def _on_tool_start(self, event: ToolStartEvent) -> EventOutcome:
        turn = self._open or self._open_thinking(PROCESSING_PLACEHOLDER)
        self.tracker.start(turn, event.tool)
        self.watchdog.arm()
        return EventOutcome.PROGRESS

    def _on_tool_end(self, event: ToolEndEvent) -> EventOutcome:
        if self._open is None:
            return EventOutcome.IGNORED
        self.tracker.record_input(self._open, event.tool, event.input)
        self.watchdog.arm()
        return EventOutcome.PROGRESS

    def _on_tool_result(self, event: ToolResultEvent) -> EventOutcome:
        if self._open is None:
            return EventOutcome.IGNORED
        self.tracker.record_result(self._open, event.tool, event.result, is_error=event.is_error)
        self.watchdog.arm()
        return EventOutcome.PROGRESS

    def _on_response(self, event: ResponseEvent) -> EventOutcome:
        self._apply_pressure(event.context_pressure)
        open_turn = self._close_turn()
        streamed_text = ""
        tools: list = []
        reasoning = ""
        if open_turn is not None:
            if open_turn.lifecycle is TurnLifecycle.STREAMING:
                streamed_text = open_turn.visible_text
            tools = list(open_turn.tools)
            reasoning = open_turn.reasoning_text
        self.tracker.settle(tools)

        content = event.content or ""
        final_text = content if content.strip() else streamed_text
        self._emit(
            TurnRole.AGENT,
            sanitize_text(final_text),
            tools=tools,
            reasoning_text=reasoning,
            meta=TurnMeta.from_payload(event.usage_fields()),
        )
        return EventOutcome.TERMINAL

    def _on_canvas(self, event: CanvasEvent) -> EventOutcome:
        canvas = {"title": event.title or "Canvas", "canvas_id": event.canvas_id or "", "html": event.html}
        self._emit(TurnRole.AGENT, canvas["title"], canvas=canvas)
        return EventOutcome.OUT_OF_BAND

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _open_thinking(self, label: str) -> Turn:
        self._open = self.transcript.create(TurnRole.AGENT, lifecycle=TurnLifecycle.THINKING, status_text=label)
        return self._open

    def _close_turn(self) -> Turn | None:
        """Shared by every terminal event: stop the watchdog, drop the open turn, reset counters."""

        return self.discard_open_turn()

    def _apply_pressure(self, value: Any) -> None:
        level = ContextPressure.from_value(value)
        if level is not None:
            self.context_pressure = level

    def _emit(self, role: TurnRole, text: str, *, tools: Sequence = (), meta: TurnMeta | None = None, **fields: Any) -> Turn:
        turn = self.transcript.create(role, visible_text=text, tools=list(tools), meta=meta, **fields)
        for listener in list(self._turn_listeners):
            listener(turn)
        return turn

    def _on_watchdog_expired(self) -> None:
        turn = self.discard_open_turn()
        if turn is not None:
            LOGGER.info("Discarded stuck turn %s", turn.id)
        for listener in list(self._stuck_listeners):
            listener()


__all__ = ["EventOutcome", "PROCESSING_PLACEHOLDER", "TurnAssembler"]
