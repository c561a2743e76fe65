"""Chat session controller wiring the interpreter, queue, connection and assembler."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Mapping, Sequence

from ..chat.commands import CommandInterpreter, CommandOutcome
from ..chat.message_model import (
    ContextPressure,
    Submission,
    ThinkingMode,
    ToolInvocation,
    ToolState,
    Transcript,
    Turn,
    TurnMeta,
    TurnRole,
)
from ..services.api_client import AgentAPIClient, APIError, ClientSettings
from ..services.connection import ConnectFactory, ConnectionSession, ConnectionState
from ..services.settings import Settings
from .assembler import EventOutcome, TurnAssembler
from .event_log import ProtocolEventLogger
from .events import CommandFrame, InboundEvent, MessageFrame
from .leak_sanitizer import sanitize_text
from .submission_queue import SubmissionQueue

LOGGER = logging.getLogger(__name__)

HTTP_MODE_NOTICE = "Using HTTP mode (no streaming)"

_HISTORY_ROLES: Mapping[str, TurnRole] = {
    "User": TurnRole.USER,
    "System": TurnRole.SYSTEM,
}


class ChatSession:
    """One conversation with one agent.

    Input goes through the command interpreter, then the submission queue,
    which dispatches over the connection (or the HTTP fallback). Inbound
    events are applied by the assembler; terminal events release the queue.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        api: AgentAPIClient | None = None,
        connect: ConnectFactory | None = None,
        event_logger: ProtocolEventLogger | None = None,
        transcript: Transcript | None = None,
    ) -> None:
        self.settings = settings
        self.api = api or AgentAPIClient(
            ClientSettings(
                base_url=settings.base_url,
                request_timeout=settings.request_timeout,
                max_retries=settings.max_retries,
                retry_min_seconds=settings.retry_min_seconds,
                retry_max_seconds=settings.retry_max_seconds,
                default_headers=dict(settings.default_headers),
            )
        )
        self.assembler = TurnAssembler(
            transcript,
            watchdog_timeout=settings.watchdog_seconds,
            thinking_mode=settings.resolved_thinking_mode,
        )
        self.connection = ConnectionSession(
            settings.resolved_ws_url,
            on_event=self._on_event,
            connect=connect,
            event_logger=event_logger or ProtocolEventLogger(enabled=settings.debug_event_logging),
        )
        self.queue = SubmissionQueue(self._dispatch)
        self.commands = CommandInterpreter(self)
        self.agent_id: str | None = None
        self.sessions: List[Dict[str, Any]] = []
        self._http_notice_shown = False
        self._background: set[asyncio.Task[None]] = set()
        self.assembler.add_stuck_listener(self._on_stuck_turn)
        self.connection.add_state_listener(self._on_connection_state)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def transcript(self) -> Transcript:
        return self.assembler.transcript

    @property
    def thinking_mode(self) -> ThinkingMode:
        return self.assembler.thinking_mode

    @thinking_mode.setter
    def thinking_mode(self, mode: ThinkingMode) -> None:
        self.assembler.thinking_mode = ThinkingMode(mode)

    @property
    def context_pressure(self) -> ContextPressure:
        return self.assembler.context_pressure

    @property
    def token_count(self) -> int:
        return self.assembler.token_count

    @property
    def agents(self) -> List[Mapping[str, Any]]:
        return list(self.assembler.agents)

    @property
    def in_flight(self) -> bool:
        return self.queue.in_flight

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def select_agent(self, agent_id: str, *, load_history: bool = True) -> bool:
        """Bind this session to ``agent_id``; returns whether the stream is live."""

        if self.agent_id is not None and self.agent_id != agent_id:
            await self._teardown()
        self.agent_id = agent_id
        if load_history:
            await self.load_history()
        return await self.connection.bind(agent_id)

    async def exit(self) -> None:
        """Disconnect, forget the agent and clear the transcript."""

        await self._teardown()
        self.agent_id = None

    async def aclose(self) -> None:
        await self._teardown()
        for task in list(self._background):
            task.cancel()
        await self.api.aclose()

    async def _teardown(self) -> None:
        await self.connection.close()
        self.queue.clear()
        self.assembler.reset()

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------
    async def submit(self, text: str, attachments: Sequence[Mapping[str, Any]] | None = None) -> Turn | None:
        """Route user input; returns the user turn when it became a submission."""

        outcome = await self.commands.handle(text, attachments)
        if outcome is CommandOutcome.HANDLED:
            return None
        if not (text or "").strip() and not attachments:
            return None
        if not self.agent_id:
            self.add_system_turn("No agent selected.")
            return None
        submission = Submission.build(text, attachments)
        user_turn = self.assembler.add_user_turn(submission)
        await self.queue.submit(submission)
        return user_turn

    def add_system_turn(self, text: str) -> Turn:
        return self.assembler.add_system_turn(text)

    def clear_transcript(self) -> None:
        self.assembler.reset()

    async def send_control(self, command: str, args: str = "") -> bool:
        """Send an out-of-band control frame; it bypasses the submission queue."""

        if not self.connection.connected:
            return False
        return await self.connection.send(CommandFrame(command=command, args=args).to_payload())

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    async def _dispatch(self, submission: Submission) -> bool:
        self.assembler.begin_turn()
        frame = MessageFrame(content=submission.text, attachments=tuple(submission.attachment_refs))
        if await self.connection.send(frame.to_payload()):
            return True
        await self._send_over_http(submission)
        return False

    async def _send_over_http(self, submission: Submission) -> None:
        # The request itself bounds this turn; the watchdog must not release the queue mid-call.
        self.assembler.watchdog.disarm()
        if not self._http_notice_shown:
            LOGGER.info("Using HTTP mode (no streaming) for agent %s", self.agent_id)
            self.add_system_turn(HTTP_MODE_NOTICE)
            self._http_notice_shown = True
        try:
            result = await self.api.send_message(
                self.agent_id or "",
                submission.text,
                attachments=submission.attachment_refs,
            )
        except APIError as exc:
            self.assembler.discard_open_turn()
            self.add_system_turn(f"Error: {exc.detail}")
            return
        self.assembler.discard_open_turn()
        self.assembler.add_agent_turn(str(result.get("response") or ""), meta=TurnMeta.from_payload(result))

    async def _on_event(self, event: InboundEvent) -> None:
        outcome = self.assembler.handle(event)
        if outcome is EventOutcome.TERMINAL:
            await self.queue.turn_complete()

    def _on_stuck_turn(self) -> None:
        task = asyncio.get_running_loop().create_task(self.queue.turn_complete())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _on_connection_state(self, state: ConnectionState) -> None:
        if state is ConnectionState.CONNECTED:
            self._http_notice_shown = False

    # ------------------------------------------------------------------
    # History, sessions and catalogue
    # ------------------------------------------------------------------
    async def load_history(self) -> int:
        """Replace the transcript with the backend's stored session; returns turns loaded."""

        if not self.agent_id:
            return 0
        try:
            data = await self.api.get_session(self.agent_id)
        except APIError as exc:
            LOGGER.warning("Could not load history for %s: %s", self.agent_id, exc.detail)
            return 0
        messages = data.get("messages") or []
        self.assembler.reset()
        loaded = 0
        for entry in messages:
            if not isinstance(entry, Mapping):
                continue
            _append_history_turn(self.transcript, entry)
            loaded += 1
        return loaded

    async def list_sessions(self) -> List[Dict[str, Any]]:
        if not self.agent_id:
            return []
        try:
            self.sessions = await self.api.list_sessions(self.agent_id)
        except APIError as exc:
            LOGGER.warning("Could not list sessions for %s: %s", self.agent_id, exc.detail)
            self.sessions = []
        return list(self.sessions)

    async def create_session(self, label: str | None = None) -> Dict[str, Any]:
        agent_id = self._require_agent()
        created = await self.api.create_session(agent_id, label)
        await self.list_sessions()
        self.assembler.reset()
        await self.load_history()
        return created

    async def switch_session(self, session_id: str) -> bool:
        """Activate ``session_id`` and rebind the stream; returns whether it is live."""

        agent_id = self._require_agent()
        await self.api.switch_session(agent_id, session_id)
        await self._teardown()
        await self.load_history()
        await self.list_sessions()
        return await self.connection.bind(agent_id)

    async def refresh_commands(self) -> int:
        try:
            commands = await self.api.list_commands()
        except APIError as exc:
            LOGGER.debug("Server command catalogue unavailable: %s", exc.detail)
            return 0
        return self.commands.catalogue.merge_server(commands)

    def _require_agent(self) -> str:
        if not self.agent_id:
            raise RuntimeError("No agent selected")
        return self.agent_id


def _append_history_turn(transcript: Transcript, entry: Mapping[str, Any]) -> Turn:
    role = _HISTORY_ROLES.get(str(entry.get("role")), TurnRole.AGENT)
    content = entry.get("content")
    if content is None:
        text = ""
    elif isinstance(content, str):
        text = content
    else:
        text = json.dumps(content, ensure_ascii=False)
    tools: list[ToolInvocation] = []
    for index, raw in enumerate(entry.get("tools") or ()):
        if not isinstance(raw, Mapping):
            continue
        name = str(raw.get("name") or "unknown")
        tools.append(
            ToolInvocation(
                id=f"{name}-hist-{index}",
                name=name,
                state=ToolState.ERRORED if raw.get("is_error") else ToolState.COMPLETED,
                input=raw.get("input") or "",
                result=str(raw.get("result") or ""),
            )
        )
    return transcript.create(role, visible_text=sanitize_text(text), tools=tools)


__all__ = ["ChatSession", "HTTP_MODE_NOTICE"]
