"""One-shot request/response client for the agent backend's REST API."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Sequence
from urllib.parse import quote

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

LOGGER = logging.getLogger(__name__)

_IDEMPOTENT_METHODS = frozenset({"GET", "PUT"})


class APIError(RuntimeError):
    """A one-shot call failed, after any retries; ``status`` is ``None`` for transport errors."""

    def __init__(self, detail: str, *, status: int | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.status = status


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the API client."""

    base_url: str
    request_timeout: float = 30.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] = field(default_factory=dict)


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, (httpx.TransportError, httpx.TimeoutException)):
        return True
    return isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code >= 500


class AgentAPIClient:
    """Async REST client for the agent backend.

    Idempotent requests (GET, PUT) are retried with exponential backoff on
    transport errors and 5xx responses. POSTs start turns or mutate sessions,
    so they are attempted exactly once unless a caller opts in with ``retry``.
    """

    def __init__(self, settings: ClientSettings, *, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._client = client or httpx.AsyncClient(
            base_url=settings.base_url.rstrip("/"),
            timeout=settings.request_timeout,
            headers=dict(settings.default_headers or {}),
        )

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "AgentAPIClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Agent turn fallback
    # ------------------------------------------------------------------
    async def send_message(
        self,
        agent_id: str,
        content: str,
        *,
        attachments: Sequence[Mapping[str, Any]] | None = None,
    ) -> Dict[str, Any]:
        """Run one full turn without streaming; returns ``response`` plus usage fields."""

        body: Dict[str, Any] = {"message": content}
        if attachments:
            body["attachments"] = [dict(item) for item in attachments]
        return await self._request("POST", f"{self._agent_path(agent_id)}/message", json=body)

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------
    async def get_session(self, agent_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"{self._agent_path(agent_id)}/session")

    async def reset_session(self, agent_id: str) -> Dict[str, Any]:
        return await self._request("POST", f"{self._agent_path(agent_id)}/session/reset", json={})

    async def compact_session(self, agent_id: str) -> Dict[str, Any]:
        return await self._request("POST", f"{self._agent_path(agent_id)}/session/compact", json={})

    async def list_sessions(self, agent_id: str) -> List[Dict[str, Any]]:
        data = await self._request("GET", f"{self._agent_path(agent_id)}/sessions")
        sessions = data.get("sessions") or []
        return [dict(item) for item in sessions if isinstance(item, Mapping)]

    async def create_session(self, agent_id: str, label: str | None = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {}
        if label and label.strip():
            body["label"] = label.strip()
        return await self._request("POST", f"{self._agent_path(agent_id)}/sessions", json=body)

    async def switch_session(self, agent_id: str, session_id: str) -> Dict[str, Any]:
        path = f"{self._agent_path(agent_id)}/sessions/{quote(session_id, safe='')}/switch"
        return await self._request("POST", path, json={})

    # ------------------------------------------------------------------
    # Agent control
    # ------------------------------------------------------------------
    async def stop_agent(self, agent_id: str) -> Dict[str, Any]:
        return await self._request("POST", f"{self._agent_path(agent_id)}/stop", json={})

    async def get_agent(self, agent_id: str) -> Dict[str, Any]:
        return await self._request("GET", self._agent_path(agent_id))

    async def set_model(self, agent_id: str, model: str) -> Dict[str, Any]:
        return await self._request("PUT", f"{self._agent_path(agent_id)}/model", json={"model": model})

    # ------------------------------------------------------------------
    # System information
    # ------------------------------------------------------------------
    async def get_status(self) -> Dict[str, Any]:
        return await self._request("GET", "/api/status")

    async def get_budget(self) -> Dict[str, Any]:
        return await self._request("GET", "/api/budget")

    async def get_network_status(self) -> Dict[str, Any]:
        return await self._request("GET", "/api/network/status")

    async def list_a2a_agents(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/api/a2a/agents")
        agents = data.get("agents") or []
        return [dict(item) for item in agents if isinstance(item, Mapping)]

    async def list_commands(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/api/commands")
        commands = data.get("commands") or []
        return [dict(item) for item in commands if isinstance(item, Mapping)]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    @staticmethod
    def _agent_path(agent_id: str) -> str:
        return f"/api/agents/{quote(agent_id, safe='')}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        retry: bool | None = None,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        if retry is None:
            retry = method in _IDEMPOTENT_METHODS
        attempts = max(1, self._settings.max_retries) if retry else 1
        LOGGER.debug("%s %s (attempts=%d)", method, path, attempts)
        try:
            async for attempt in self._retrying(attempts):
                with attempt:
                    response = await self._client.request(method, path, **kwargs)
                    response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise APIError(_error_detail(exc.response), status=exc.response.status_code) from exc
        except httpx.HTTPError as exc:
            raise APIError(str(exc) or exc.__class__.__name__) from exc
        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise APIError(f"Invalid JSON from {path}", status=response.status_code) from exc
        if not isinstance(payload, dict):
            return {"data": payload}
        return payload

    def _retrying(self, attempts: int) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception(_is_retryable),
        )


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, Mapping):
        for key in ("error", "message", "detail"):
            value = payload.get(key)
            if value:
                return str(value)
    text = response.text.strip()
    return text or f"HTTP {response.status_code}"


__all__ = ["APIError", "AgentAPIClient", "ClientSettings"]
