"""Tests for the one-shot agent REST client."""

from __future__ import annotations

import json

import httpx
import pytest

from turnkeeper.services.api_client import APIError

from tests.helpers import Router, make_api


@pytest.mark.asyncio
async def test_send_message_posts_body_with_attachments(router: Router) -> None:
    router.routes[("POST", "/api/agents/agent-1/message")] = {"response": "hi", "input_tokens": 3}
    api = make_api(router)

    data = await api.send_message("agent-1", "hello", attachments=[{"file_id": "f1"}])

    assert data == {"response": "hi", "input_tokens": 3}
    (request,) = router.calls("POST", "/api/agents/agent-1/message")
    assert json.loads(request.content) == {"message": "hello", "attachments": [{"file_id": "f1"}]}
    await api.aclose()


@pytest.mark.asyncio
async def test_agent_ids_are_path_quoted(router: Router) -> None:
    router.routes[("GET", "/api/agents/team/bot/session")] = {"messages": []}
    api = make_api(router)

    await api.get_session("team/bot")

    assert router.requests[0].url.raw_path == b"/api/agents/team%2Fbot/session"
    await api.aclose()


@pytest.mark.asyncio
async def test_server_errors_are_retried_until_success() -> None:
    attempts: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        if len(attempts) < 3:
            return httpx.Response(503, json={"error": "busy"})
        return httpx.Response(200, json={"agents": 2})

    api = make_api(handler, max_retries=3)

    assert await api.get_status() == {"agents": 2}
    assert len(attempts) == 3
    await api.aclose()


@pytest.mark.asyncio
async def test_server_error_surfaces_after_retries_exhausted() -> None:
    attempts: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        return httpx.Response(500, json={"message": "exploded"})

    api = make_api(handler, max_retries=2)

    with pytest.raises(APIError) as info:
        await api.get_budget()

    assert info.value.status == 500
    assert info.value.detail == "exploded"
    assert len(attempts) == 2
    await api.aclose()


@pytest.mark.asyncio
async def test_client_errors_are_not_retried(router: Router) -> None:
    router.routes[("PUT", "/api/agents/agent-1/model")] = (400, {"detail": "unknown model"})
    api = make_api(router, max_retries=3)

    with pytest.raises(APIError) as info:
        await api.set_model("agent-1", "nope")

    assert info.value.status == 400
    assert str(info.value) == "unknown model"
    assert len(router.requests) == 1
    await api.aclose()


@pytest.mark.asyncio
async def test_transport_errors_become_api_errors() -> None:
    attempts: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        raise httpx.ConnectError("refused", request=request)

    api = make_api(handler, max_retries=2)

    with pytest.raises(APIError) as info:
        await api.stop_agent("agent-1")

    assert info.value.status is None
    assert "refused" in info.value.detail
    assert len(attempts) == 1
    await api.aclose()


@pytest.mark.asyncio
async def test_message_post_is_not_retried_on_server_error(router: Router) -> None:
    router.routes[("POST", "/api/agents/agent-1/message")] = (503, {"error": "busy"})
    api = make_api(router, max_retries=3)

    with pytest.raises(APIError) as info:
        await api.send_message("agent-1", "hello")

    assert info.value.status == 503
    assert info.value.detail == "busy"
    assert len(router.calls("POST", "/api/agents/agent-1/message")) == 1
    await api.aclose()


@pytest.mark.asyncio
async def test_reads_retry_transport_errors() -> None:
    attempts: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        if len(attempts) == 1:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, json={"messages": []})

    api = make_api(handler, max_retries=2)

    assert await api.get_session("agent-1") == {"messages": []}
    assert len(attempts) == 2
    await api.aclose()


@pytest.mark.asyncio
async def test_plain_text_error_body_is_used_as_detail() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, text="no such agent")

    api = make_api(handler)

    with pytest.raises(APIError, match="no such agent"):
        await api.get_agent("ghost")
    await api.aclose()


@pytest.mark.asyncio
async def test_list_endpoints_unwrap_collections(router: Router) -> None:
    router.routes[("GET", "/api/agents/agent-1/sessions")] = {"sessions": [{"id": "s1"}, "junk"]}
    router.routes[("GET", "/api/a2a/agents")] = {"agents": [{"name": "peer", "url": "http://peer"}]}
    router.routes[("GET", "/api/commands")] = {"commands": [{"cmd": "/deploy", "desc": "Deploy"}]}
    router.routes[("GET", "/api/network/status")] = [1, 2]
    api = make_api(router)

    assert await api.list_sessions("agent-1") == [{"id": "s1"}]
    assert await api.list_a2a_agents() == [{"name": "peer", "url": "http://peer"}]
    assert await api.list_commands() == [{"cmd": "/deploy", "desc": "Deploy"}]
    assert await api.get_network_status() == {"data": [1, 2]}
    await api.aclose()


@pytest.mark.asyncio
async def test_session_mutations_hit_expected_routes(router: Router) -> None:
    router.routes[("POST", "/api/agents/agent-1/sessions")] = {"id": "s2"}
    router.routes[("POST", "/api/agents/agent-1/sessions/s2/switch")] = {}
    router.routes[("POST", "/api/agents/agent-1/session/reset")] = {"message": "Session reset"}
    router.routes[("POST", "/api/agents/agent-1/session/compact")] = {"message": "done"}
    api = make_api(router)

    assert await api.create_session("agent-1", "  work  ") == {"id": "s2"}
    assert json.loads(router.requests[-1].content) == {"label": "work"}
    assert await api.switch_session("agent-1", "s2") == {}
    assert (await api.reset_session("agent-1"))["message"] == "Session reset"
    assert (await api.compact_session("agent-1"))["message"] == "done"
    await api.aclose()
