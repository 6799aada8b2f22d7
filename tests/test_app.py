"""Tests for the FastAPI surface and the Bridge facade."""

from __future__ import annotations

import random
from typing import Any

import pytest
from fastapi.testclient import TestClient

from tongyi_bridge.api import create_app
from tongyi_bridge.bridge import Bridge
from tongyi_bridge.core.errors import AuthenticationError, FileReferenceError
from tongyi_bridge.core.logging_system import RequestLogger

from conftest import parse_frames

AUTH = {"Authorization": "Bearer ticket-a"}


class _FakeJanitor:
    def __init__(self) -> None:
        self.drained = False

    async def drain(self) -> None:
        self.drained = True


class _FakeOrchestrator:
    """Records calls and answers with canned results."""

    def __init__(self, *, error: Exception | None = None) -> None:
        self.calls: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []
        self.janitor = _FakeJanitor()
        self.error = error
        self.stream_closed = False

    async def create_completion(self, model, messages, ticket, **kwargs):
        self.calls.append(("completion", (model, messages, ticket), kwargs))
        if self.error is not None:
            raise self.error
        return {"id": "s-m", "object": "chat.completion", "model": model or "qwen"}

    async def create_completion_stream(self, model, messages, ticket, **kwargs):
        self.calls.append(("stream", (model, messages, ticket), kwargs))

        async def _frames():
            try:
                yield 'data: {"id": "", "choices": []}\n\n'
                yield "data: [DONE]\n\n"
            finally:
                self.stream_closed = True

        return _frames()

    async def generate_images(self, prompt, ticket):
        self.calls.append(("images", (prompt, ticket), {}))
        return ["https://img.example.com/1.png", "https://img.example.com/2.png"]


@pytest.fixture
def orchestrator() -> _FakeOrchestrator:
    return _FakeOrchestrator()


@pytest.fixture
def client(valves, orchestrator):
    with TestClient(create_app(Bridge(valves, orchestrator=orchestrator))) as test_client:
        yield test_client
    assert orchestrator.janitor.drained


class TestChatCompletionsRoute:
    def test_non_stream_returns_json(self, client, orchestrator):
        response = client.post(
            "/v1/chat/completions",
            json={"model": "qwen", "messages": [{"role": "user", "content": "hi"}], "temperature": 0.3},
            headers=AUTH,
        )
        assert response.status_code == 200
        assert response.json()["id"] == "s-m"
        kind, (model, messages, ticket), kwargs = orchestrator.calls[0]
        assert (kind, model, ticket) == ("completion", "qwen", "ticket-a")
        assert messages == [{"role": "user", "content": "hi"}]
        assert kwargs == {"conversation_id": None, "search_type": ""}

    def test_stream_returns_event_stream(self, client, orchestrator):
        response = client.post(
            "/v1/chat/completions",
            json={"messages": [{"role": "user", "content": "hi"}], "stream": True},
            headers=AUTH,
        )
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache"
        frames = [f"{block}\n\n" for block in response.text.split("\n\n") if block]
        assert parse_frames(frames)[-1] == "[DONE]"
        assert orchestrator.stream_closed

    def test_missing_authorization_is_401(self, client, orchestrator):
        response = client.post("/v1/chat/completions", json={"messages": [{"role": "user", "content": "hi"}]})
        assert response.status_code == 401
        assert response.json()["error"]["type"] == "AuthenticationError"
        assert orchestrator.calls == []

    def test_empty_messages_fail_validation(self, client):
        response = client.post("/v1/chat/completions", json={"messages": []}, headers=AUTH)
        assert response.status_code == 422

    def test_bridge_errors_map_to_status(self, valves):
        orchestrator = _FakeOrchestrator(error=FileReferenceError("oversize", "too big"))
        with TestClient(create_app(Bridge(valves, orchestrator=orchestrator))) as test_client:
            response = test_client.post(
                "/v1/chat/completions",
                json={"messages": [{"role": "user", "content": "hi"}]},
                headers=AUTH,
            )
        assert response.status_code == 400
        assert response.json() == {
            "error": {"message": "too big", "type": "FileReferenceError", "code": "oversize"}
        }


class TestOtherRoutes:
    def test_consultation_defaults_to_law(self, client, orchestrator):
        response = client.post(
            "/v1/agent/consultations",
            json={"messages": [{"role": "user", "content": "合同纠纷怎么办"}]},
            headers=AUTH,
        )
        assert response.status_code == 200
        assert orchestrator.calls[0][1][0] == "law"

    def test_images_response_shape(self, client, orchestrator):
        response = client.post("/v1/images/generations", json={"prompt": "一只猫"}, headers=AUTH)
        assert response.status_code == 200
        body = response.json()
        assert isinstance(body["created"], int)
        assert body["data"] == [
            {"url": "https://img.example.com/1.png"},
            {"url": "https://img.example.com/2.png"},
        ]
        assert orchestrator.calls[0] == ("images", ("一只猫", "ticket-a"), {})

    def test_images_require_prompt(self, client):
        assert client.post("/v1/images/generations", json={"prompt": ""}, headers=AUTH).status_code == 422


class TestBridge:
    def test_ticket_is_picked_from_all_tokens(self, valves, orchestrator):
        bridge = Bridge(valves, orchestrator=orchestrator, rng=random.Random(3))
        tickets = {bridge.ticket_for("Bearer a,b,c") for _ in range(30)}
        assert tickets <= {"a", "b", "c"}
        with pytest.raises(AuthenticationError):
            bridge.ticket_for("Bearer  ")

    @pytest.mark.asyncio
    async def test_stream_scope_is_released_after_frames(self, valves, orchestrator):
        bridge = Bridge(valves, orchestrator=orchestrator)
        frames = await bridge.chat_completion(
            model="qwen",
            messages=[{"role": "user", "content": "hi"}],
            authorization="Bearer t",
            stream=True,
        )
        collected = [frame async for frame in frames]
        assert collected[-1] == "data: [DONE]\n\n"
        assert orchestrator.stream_closed
        assert not any(
            "Chat completion" in event["message"]
            for rid in list(RequestLogger.logs)
            for event in RequestLogger.get_events(rid)
        )
