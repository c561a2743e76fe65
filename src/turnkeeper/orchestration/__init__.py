"""Turn reconstruction: events, assembler, tool tracking, sanitizing and backpressure."""

from .assembler import EventOutcome, TurnAssembler
from .event_log import ProtocolEventLogger
from .events import (
    CommandFrame,
    EventParseError,
    InboundEvent,
    MessageFrame,
    parse_event,
)
from .leak_sanitizer import LeakMatch, detect_leak, sanitize_text
from .submission_queue import SubmissionQueue
from .tool_tracker import ToolInvocationTracker, match_latest_running
from .watchdog import StuckTurnWatchdog

__all__ = [
    "CommandFrame",
    "EventOutcome",
    "EventParseError",
    "InboundEvent",
    "LeakMatch",
    "MessageFrame",
    "ProtocolEventLogger",
    "StuckTurnWatchdog",
    "SubmissionQueue",
    "ToolInvocationTracker",
    "TurnAssembler",
    "detect_leak",
    "match_latest_running",
    "parse_event",
    "sanitize_text",
]
