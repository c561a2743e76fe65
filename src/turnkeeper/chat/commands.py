"""Slash-command parsing and the local command interpreter."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterator, Mapping, Protocol, Sequence

from ..services.api_client import AgentAPIClient, APIError
from ..utils.tokens import ApproxTokenCounter
from .message_model import ThinkingMode, Transcript, Turn, TurnRole

LOGGER = logging.getLogger(__name__)

_COMMAND_PREFIX = "/"
_NOT_CONNECTED = "Not connected."
_NO_AGENT = "No agent selected."
_SNIPPET_CHARS = 80


class CommandError(ValueError):
    """Raised for malformed command arguments; shown to the user as a system turn."""


class CommandShape(str, Enum):
    """How a command is executed."""

    LOCAL = "local"
    ONE_SHOT = "one_shot"
    OUT_OF_BAND = "out_of_band"


class CommandOutcome(str, Enum):
    HANDLED = "handled"
    PASS_THROUGH = "pass_through"


@dataclass(slots=True, frozen=True)
class CommandSpec:
    """Catalogue entry describing one slash command."""

    name: str
    description: str
    shape: CommandShape
    requires_agent: bool = True
    action: str = ""
    source: str = "builtin"


@dataclass(slots=True)
class CommandRequest:
    """Parsed representation of a slash-command string."""

    name: str
    args: str
    raw: str


BUILTIN_COMMANDS: tuple[CommandSpec, ...] = (
    CommandSpec("/help", "Show available commands", CommandShape.LOCAL, requires_agent=False),
    CommandSpec("/think", "Toggle extended thinking (on|off|stream)", CommandShape.LOCAL, requires_agent=False),
    CommandSpec("/usage", "Show session message and token usage", CommandShape.LOCAL),
    CommandSpec("/clear", "Clear the chat transcript", CommandShape.LOCAL, requires_agent=False),
    CommandSpec("/search", "Find messages containing text", CommandShape.LOCAL, requires_agent=False),
    CommandSpec("/exit", "Disconnect from the agent", CommandShape.LOCAL),
    CommandSpec("/new", "Reset the agent session", CommandShape.ONE_SHOT, action="Reset"),
    CommandSpec("/compact", "Compact the session history", CommandShape.ONE_SHOT, action="Compaction"),
    CommandSpec("/stop", "Cancel the current agent run", CommandShape.ONE_SHOT, action="Stop"),
    CommandSpec("/status", "Show system status", CommandShape.ONE_SHOT, requires_agent=False, action="Status"),
    CommandSpec("/model", "Show or switch the agent model", CommandShape.ONE_SHOT, action="Model switch"),
    CommandSpec("/budget", "Show spend against budget limits", CommandShape.ONE_SHOT, requires_agent=False, action="Budget"),
    CommandSpec("/peers", "Show peer network status", CommandShape.ONE_SHOT, requires_agent=False, action="Peers"),
    CommandSpec("/a2a", "List discovered external agents", CommandShape.ONE_SHOT, requires_agent=False, action="A2A lookup"),
    CommandSpec("/context", "Show context window usage", CommandShape.OUT_OF_BAND),
    CommandSpec("/verbose", "Set tool detail verbosity", CommandShape.OUT_OF_BAND),
    CommandSpec("/queue", "Show the backend run queue", CommandShape.OUT_OF_BAND),
)

_THINK_DESCRIPTIONS: Mapping[ThinkingMode, str] = {
    ThinkingMode.OFF: "Extended thinking **disabled**. Normal response mode.",
    ThinkingMode.ON: (
        "Extended thinking **enabled**. The agent will show its reasoning when supported by the model."
    ),
    ThinkingMode.STREAM: (
        "Extended thinking **enabled (streaming reasoning)**. Reasoning tokens will appear in a collapsible panel."
    ),
}


def parse_command(text: str) -> CommandRequest | None:
    """Split ``/name rest`` into a :class:`CommandRequest`; ``None`` for ordinary text."""

    normalized = (text or "").strip()
    if not normalized.startswith(_COMMAND_PREFIX) or len(normalized) == 1:
        return None
    token, _, remainder = normalized.partition(" ")
    if not token[1:] or token[1] == _COMMAND_PREFIX:
        return None
    return CommandRequest(name=token.lower(), args=remainder.strip(), raw=normalized)


class CommandCatalogue:
    """Ordered set of known commands: built-ins first, then server-advertised ones."""

    def __init__(self, specs: Sequence[CommandSpec] = BUILTIN_COMMANDS) -> None:
        self._specs: Dict[str, CommandSpec] = {spec.name: spec for spec in specs}

    def __iter__(self) -> Iterator[CommandSpec]:
        return iter(self._specs.values())

    def __len__(self) -> int:
        return len(self._specs)

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def get(self, name: str) -> CommandSpec | None:
        return self._specs.get(name.lower())

    def merge_server(self, commands: Sequence[Mapping[str, Any]]) -> int:
        """Add server commands not already known; returns how many were added."""

        added = 0
        for entry in commands:
            name = str(entry.get("cmd") or "").strip().lower()
            if not name.startswith(_COMMAND_PREFIX) or name in self._specs:
                continue
            self._specs[name] = CommandSpec(
                name=name,
                description=str(entry.get("desc") or ""),
                shape=CommandShape.OUT_OF_BAND,
                source=str(entry.get("source") or "server"),
            )
            added += 1
        return added

    def help_text(self) -> str:
        return "\n".join(f"`{spec.name}` - {spec.description}" for spec in self)


class CommandHost(Protocol):
    """Session surface the interpreter drives."""

    agent_id: str | None
    thinking_mode: ThinkingMode
    transcript: Transcript
    api: AgentAPIClient

    def add_system_turn(self, text: str) -> Turn: ...

    def clear_transcript(self) -> None: ...

    async def send_control(self, command: str, args: str = "") -> bool: ...

    async def exit(self) -> None: ...


Handler = Callable[[CommandRequest], Awaitable[None]]


class CommandInterpreter:
    """Intercepts slash commands before they become submissions.

    Known commands are executed to completion and never reach the submission
    queue. Input that carries attachments, or whose first token is not in the
    catalogue, passes through unchanged.
    """

    def __init__(
        self,
        host: CommandHost,
        *,
        catalogue: CommandCatalogue | None = None,
        token_counter: ApproxTokenCounter | None = None,
    ) -> None:
        self._host = host
        self.catalogue = catalogue or CommandCatalogue()
        self._token_counter = token_counter or ApproxTokenCounter()
        self._handlers: Dict[str, Handler] = {
            "/help": self._help,
            "/think": self._think,
            "/usage": self._usage,
            "/clear": self._clear,
            "/search": self._search,
            "/exit": self._exit,
            "/new": self._new,
            "/compact": self._compact,
            "/stop": self._stop,
            "/status": self._status,
            "/model": self._model,
            "/budget": self._budget,
            "/peers": self._peers,
            "/a2a": self._a2a,
        }

    async def handle(self, text: str, attachments: Sequence[Mapping[str, Any]] | None = None) -> CommandOutcome:
        if attachments:
            return CommandOutcome.PASS_THROUGH
        request = parse_command(text)
        if request is None:
            return CommandOutcome.PASS_THROUGH
        spec = self.catalogue.get(request.name)
        if spec is None:
            return CommandOutcome.PASS_THROUGH
        if spec.requires_agent and not self._host.agent_id:
            self._host.add_system_turn(_NO_AGENT)
            return CommandOutcome.HANDLED

        LOGGER.debug("Executing command %s", spec.name)
        try:
            handler = self._handlers.get(spec.name)
            if handler is not None:
                await handler(request)
            else:
                await self._forward(request)
        except CommandError as exc:
            self._host.add_system_turn(str(exc))
        except APIError as exc:
            LOGGER.warning("Command %s failed: %s", spec.name, exc.detail)
            self._host.add_system_turn(f"{spec.action or spec.name} failed: {exc.detail}")
        return CommandOutcome.HANDLED

    # ------------------------------------------------------------------
    # Local actions
    # ------------------------------------------------------------------
    async def _help(self, request: CommandRequest) -> None:
        self._host.add_system_turn(self.catalogue.help_text())

    async def _think(self, request: CommandRequest) -> None:
        choice = request.args.lower()
        if not choice:
            mode = self._host.thinking_mode.cycle()
        else:
            try:
                mode = ThinkingMode(choice)
            except ValueError as exc:
                raise CommandError("Usage: /think [on|off|stream]") from exc
        self._host.thinking_mode = mode
        self._host.add_system_turn(_THINK_DESCRIPTIONS[mode])

    async def _usage(self, request: CommandRequest) -> None:
        turns = self._host.transcript.turns
        approx = self._token_counter.count_many(turn.visible_text for turn in turns)
        self._host.add_system_turn(f"**Session Usage**\n- Messages: {len(turns)}\n- Approx tokens: ~{approx}")

    async def _clear(self, request: CommandRequest) -> None:
        self._host.clear_transcript()

    async def _search(self, request: CommandRequest) -> None:
        if not request.args:
            raise CommandError("Usage: /search <text>")
        # Earlier system replies (including past search results) are not searched.
        hits = [turn for turn in self._host.transcript.search(request.args) if turn.role is not TurnRole.SYSTEM]
        if not hits:
            self._host.add_system_turn(f"No messages match `{request.args}`.")
            return
        lines = [f"- #{turn.id} {turn.role.value}: {_snippet(turn.visible_text)}" for turn in hits]
        self._host.add_system_turn(f"**Search: {request.args}** ({len(hits)})\n" + "\n".join(lines))

    async def _exit(self, request: CommandRequest) -> None:
        await self._host.exit()

    # ------------------------------------------------------------------
    # One-shot requests
    # ------------------------------------------------------------------
    async def _new(self, request: CommandRequest) -> None:
        await self._host.api.reset_session(self._agent())
        self._host.clear_transcript()
        self._host.add_system_turn("Session reset")

    async def _compact(self, request: CommandRequest) -> None:
        self._host.add_system_turn("Compacting session...")
        result = await self._host.api.compact_session(self._agent())
        self._host.add_system_turn(str(result.get("message") or "Compaction complete"))

    async def _stop(self, request: CommandRequest) -> None:
        # The in-flight turn still ends through its terminal event or the watchdog.
        result = await self._host.api.stop_agent(self._agent())
        self._host.add_system_turn(str(result.get("message") or "Run cancelled"))

    async def _status(self, request: CommandRequest) -> None:
        status = await self._host.api.get_status()
        self._host.add_system_turn(
            "**System Status**\n"
            f"- Agents: {status.get('agent_count') or 0}\n"
            f"- Uptime: {status.get('uptime_seconds') or 0}s\n"
            f"- Version: {status.get('version') or '?'}"
        )

    async def _model(self, request: CommandRequest) -> None:
        agent_id = self._agent()
        if request.args:
            await self._host.api.set_model(agent_id, request.args)
            self._host.add_system_turn(f"Model set to: `{request.args}`")
            return
        agent = await self._host.api.get_agent(agent_id)
        self._host.add_system_turn(
            "**Current Model**\n"
            f"- Provider: `{agent.get('model_provider') or 'unknown'}`\n"
            f"- Model: `{agent.get('model_name') or 'unknown'}`"
        )

    async def _budget(self, request: CommandRequest) -> None:
        budget = await self._host.api.get_budget()
        lines = ["**Budget Status**"]
        for label, prefix in (("Hourly", "hourly"), ("Daily", "daily"), ("Monthly", "monthly")):
            spend = float(budget.get(f"{prefix}_spend") or 0.0)
            limit = float(budget.get(f"{prefix}_limit") or 0.0)
            limit_text = f"${limit:.2f}" if limit > 0 else "unlimited"
            lines.append(f"- {label}: ${spend:.4f} / {limit_text}")
        self._host.add_system_turn("\n".join(lines))

    async def _peers(self, request: CommandRequest) -> None:
        network = await self._host.api.get_network_status()
        state = "Enabled" if network.get("enabled") else "Disabled"
        self._host.add_system_turn(
            "**Peer Network**\n"
            f"- Status: {state}\n"
            f"- Connected peers: {network.get('connected_peers') or 0} / {network.get('total_peers') or 0}"
        )

    async def _a2a(self, request: CommandRequest) -> None:
        agents = await self._host.api.list_a2a_agents()
        if not agents:
            self._host.add_system_turn("No external A2A agents discovered.")
            return
        lines = [f"- **{agent.get('name', '?')}** ({agent.get('url', '')})" for agent in agents]
        self._host.add_system_turn(f"**A2A Agents ({len(agents)})**\n" + "\n".join(lines))

    # ------------------------------------------------------------------
    # Out-of-band control frames
    # ------------------------------------------------------------------
    async def _forward(self, request: CommandRequest) -> None:
        sent = await self._host.send_control(request.name[len(_COMMAND_PREFIX) :], request.args)
        if not sent:
            self._host.add_system_turn(_NOT_CONNECTED)

    def _agent(self) -> str:
        agent_id = self._host.agent_id
        if not agent_id:
            raise CommandError(_NO_AGENT)
        return agent_id



def _snippet(text: str) -> str:
    line = text.strip().splitlines()[0] if text.strip() else ""
    if len(line) > _SNIPPET_CHARS:
        return line[: _SNIPPET_CHARS - 3] + "..."
    return line

__all__ = [
    "BUILTIN_COMMANDS",
    "CommandCatalogue",
    "CommandError",
    "CommandHost",
    "CommandInterpreter",
    "CommandOutcome",
    "CommandRequest",
    "CommandShape",
    "CommandSpec",
    "parse_command",
]
