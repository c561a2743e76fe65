"""Shared test helpers and stub classes.

Import from here instead of duplicating these fakes in individual test files.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Mapping

import httpx

from turnkeeper.services.api_client import AgentAPIClient, ClientSettings

TEST_BASE_URL = "http://agent.test"

_CLOSE = object()


class FakeWebSocket:
    """In-memory stand-in for a websockets client connection.

    Frames pushed with :meth:`feed` are yielded by ``async for``; frames the
    client sends are decoded into :attr:`sent`.
    """

    def __init__(self, url: str = "") -> None:
        self.url = url
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self.fail_sends = False
        self._incoming: asyncio.Queue[Any] = asyncio.Queue()

    def feed(self, *payloads: Mapping[str, Any] | str) -> None:
        for payload in payloads:
            frame = payload if isinstance(payload, str) else json.dumps(dict(payload))
            self._incoming.put_nowait(frame)

    def drop(self) -> None:
        """Simulate the server ending the stream."""

        self._incoming.put_nowait(_CLOSE)

    async def send(self, data: str) -> None:
        if self.closed or self.fail_sends:
            raise OSError("socket closed")
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(_CLOSE)

    def __aiter__(self) -> "FakeWebSocket":
        return self

    async def __anext__(self) -> Any:
        item = await self._incoming.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        return item


class FakeConnector:
    """Injectable ``connect`` factory that records every connection attempt."""

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.urls: list[str] = []
        self.sockets: list[FakeWebSocket] = []

    async def __call__(self, url: str) -> FakeWebSocket:
        self.urls.append(url)
        if self.fail:
            raise OSError("connection refused")
        ws = FakeWebSocket(url)
        self.sockets.append(ws)
        return ws

    @property
    def latest(self) -> FakeWebSocket:
        return self.sockets[-1]


class Router:
    """``httpx.MockTransport`` handler keyed by ``(method, path)``.

    A route value may be a JSON body (200), a ``(status, body)`` tuple or a
    callable receiving the request.
    """

    def __init__(self, routes: Mapping[tuple[str, str], Any] | None = None) -> None:
        self.routes: dict[tuple[str, str], Any] = dict(routes or {})
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        entry = self.routes.get((request.method, request.url.path))
        if entry is None:
            return httpx.Response(404, json={"error": "not found"})
        if callable(entry):
            return entry(request)
        if isinstance(entry, tuple):
            status, body = entry
            return httpx.Response(status, json=body)
        return httpx.Response(200, json=entry)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [req for req in self.requests if req.method == method and req.url.path == path]


def make_api(handler: Callable[[httpx.Request], httpx.Response], *, max_retries: int = 2) -> AgentAPIClient:
    client = httpx.AsyncClient(base_url=TEST_BASE_URL, transport=httpx.MockTransport(handler))
    settings = ClientSettings(
        base_url=TEST_BASE_URL,
        max_retries=max_retries,
        retry_min_seconds=0.0,
        retry_max_seconds=0.0,
    )
    return AgentAPIClient(settings, client=client)


async def flush(rounds: int = 20) -> None:
    """Yield to the loop so reader tasks process queued frames."""

    for _ in range(rounds):
        await asyncio.sleep(0)
