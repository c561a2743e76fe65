"""WebSocket connection session bound to one conversation target."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping
from urllib.parse import quote

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..orchestration.event_log import NullProtocolEventLog, ProtocolEventLogger
from ..orchestration.events import EventParseError, InboundEvent, parse_event
from ..utils.logging import set_log_target

LOGGER = logging.getLogger(__name__)

EventHandler = Callable[[InboundEvent], "Awaitable[None] | None"]
StateListener = Callable[["ConnectionState"], None]
ConnectFactory = Callable[[str], Awaitable[Any]]


class SessionBindingError(RuntimeError):
    """Raised when binding a session that is already bound to another target."""


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def agent_stream_url(ws_base_url: str, target: str) -> str:
    return f"{ws_base_url.rstrip('/')}/api/agents/{quote(target, safe='')}/ws"


class ConnectionSession:
    """Owns at most one live stream and delivers its events in arrival order.

    :meth:`bind` is idempotent for the current target: repeated calls while a
    stream is open or opening never create a second stream. Frames are parsed
    by a single reader task and handed to ``on_event`` one at a time; malformed
    frames are logged and dropped. This class is the only writer of
    :attr:`state`.
    """

    def __init__(
        self,
        ws_base_url: str,
        *,
        on_event: EventHandler,
        connect: ConnectFactory | None = None,
        event_logger: ProtocolEventLogger | None = None,
    ) -> None:
        self._ws_base_url = ws_base_url
        self._on_event = on_event
        self._connect = connect or websockets.connect
        self._event_logger = event_logger or ProtocolEventLogger(enabled=False)
        self._event_log: Any = NullProtocolEventLog()
        self._target: str | None = None
        self._ws: Any = None
        self._reader_task: asyncio.Task[None] | None = None
        self._state = ConnectionState.DISCONNECTED
        self._bind_lock = asyncio.Lock()
        self._state_listeners: list[StateListener] = []

    @property
    def target(self) -> str | None:
        return self._target

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    async def bind(self, target: str) -> bool:
        """Bind to ``target`` and open its stream; returns whether the stream is live.

        A connect failure leaves the session unbound and disconnected, so callers
        fall back to request/response until a later :meth:`bind` succeeds. A
        dropped stream also unbinds, after which any target may be bound.
        """

        if not target:
            raise ValueError("target must be a non-empty string")
        async with self._bind_lock:
            if self._target is not None and self._target != target:
                raise SessionBindingError(
                    f"Session already bound to {self._target!r}; close it before binding {target!r}"
                )
            if self._target == target and self._ws is not None:
                return self.connected
            self._target = target
            set_log_target(target)
            return await self._open_stream(target)

    async def send(self, payload: Mapping[str, Any]) -> bool:
        """Write one frame; ``False`` means the caller must use its fallback path."""

        ws = self._ws
        if ws is None or self._state is not ConnectionState.CONNECTED:
            return False
        try:
            await ws.send(json.dumps(dict(payload), ensure_ascii=False))
        except (ConnectionClosed, OSError) as exc:
            LOGGER.info("Send failed on %s: %s", self._target, exc)
            self._drop_stream(ws)
            return False
        self._event_log.log_sent(payload)
        return True

    async def close(self) -> None:
        """Tear down the stream and unbind; a later :meth:`bind` may pick any target."""

        ws, task = self._ws, self._reader_task
        self._ws = None
        self._reader_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if ws is not None:
            try:
                await ws.close()
            except (ConnectionClosed, OSError) as exc:
                LOGGER.debug("Error while closing stream: %s", exc)
        self._event_log.close(reason="closed")
        self._event_log = NullProtocolEventLog()
        self._unbind()
        self._set_state(ConnectionState.DISCONNECTED)

    async def _open_stream(self, target: str) -> bool:
        url = agent_stream_url(self._ws_base_url, target)
        self._set_state(ConnectionState.CONNECTING)
        try:
            ws = await self._connect(url)
        except (OSError, WebSocketException, asyncio.TimeoutError) as exc:
            LOGGER.info("Could not open stream for %s: %s", target, exc)
            self._unbind()
            self._set_state(ConnectionState.DISCONNECTED)
            return False
        self._ws = ws
        self._event_log.close(reason="rebound")
        self._event_log = self._event_logger.open(target, url=url)
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        self._set_state(ConnectionState.CONNECTED)
        LOGGER.debug("Stream open for %s at %s", target, url)
        return True

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                self._event_log.log_received(raw)
                try:
                    event = parse_event(raw)
                except EventParseError as exc:
                    LOGGER.warning("Dropping malformed frame: %s", exc)
                    continue
                try:
                    result = self._on_event(event)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    LOGGER.exception("Event handler failed for %s", event.type)
        except ConnectionClosed as exc:
            LOGGER.info("Stream for %s closed: %s", self._target, exc)
        finally:
            self._drop_stream(ws)

    def _drop_stream(self, ws: Any) -> None:
        if self._ws is not ws:
            return
        task = self._reader_task
        self._ws = None
        self._reader_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        self._event_log.close(reason="dropped")
        self._event_log = NullProtocolEventLog()
        self._unbind()
        self._set_state(ConnectionState.DISCONNECTED)

    def _unbind(self) -> None:
        self._target = None
        set_log_target(None)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        self._state = state
        for listener in list(self._state_listeners):
            listener(state)


__all__ = [
    "ConnectFactory",
    "ConnectionSession",
    "ConnectionState",
    "SessionBindingError",
    "agent_stream_url",
]
