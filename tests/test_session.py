"""Tests for the transport session and conversation cleanup."""

from __future__ import annotations

import asyncio
import json
import logging

import aiohttp
import pytest
from aioresponses import aioresponses

from tongyi_bridge.core.errors import TransportError, UpstreamBusinessError, UpstreamProtocolError
from tongyi_bridge.requests.session import ConversationJanitor, VendorSession
from tongyi_bridge.streaming.transcoder import TranscodeOutcome

from conftest import _FakeResponse, _FakeSession, sse_bytes

URL = "https://vendor.example.com/dialog/conversation"
JSON_URL = "https://vendor.example.com/dialog/uploadToken"


def _session_with(valves, *responses) -> tuple[VendorSession, _FakeSession]:
    fake = _FakeSession(list(responses))
    return VendorSession(valves, session_factory=lambda: fake), fake


# -----------------------------------------------------------------------------
# Conversation stream
# -----------------------------------------------------------------------------

class TestConverse:
    @pytest.mark.asyncio
    async def test_returns_accepted_stream(self, valves):
        response = _FakeResponse([sse_bytes({"sessionId": "s"})])
        session, fake = _session_with(valves, response)
        async with session:
            assert await session.converse(URL, {"a": 1}, {"X": "1"}) is response
        assert fake.calls[0]["json"] == {"a": 1}
        assert fake.calls[0]["headers"] == {"X": "1"}
        assert fake.closed
        assert response.released

    @pytest.mark.asyncio
    async def test_http_error_status_raises_transport_error(self, valves):
        session, _ = _session_with(valves, _FakeResponse([], status=503, body="busy"))
        async with session:
            with pytest.raises(TransportError) as excinfo:
                await session.converse(URL, {}, {})
        assert excinfo.value.status == 503
        assert "busy" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_connection_failure_raises_transport_error(self, valves):
        session, _ = _session_with(valves, aiohttp.ClientConnectionError("refused"))
        async with session:
            with pytest.raises(TransportError):
                await session.converse(URL, {}, {})

    @pytest.mark.asyncio
    async def test_json_rejection_raises_business_error(self, valves):
        body = json.dumps({"success": False, "errorCode": "NOT_LOGIN", "errorMsg": "请登录"})
        session, _ = _session_with(valves, _FakeResponse([], content_type="application/json", body=body))
        async with session:
            with pytest.raises(UpstreamBusinessError) as excinfo:
                await session.converse(URL, {}, {})
        assert excinfo.value.error_code == "NOT_LOGIN"

    @pytest.mark.asyncio
    async def test_unexpected_json_raises_protocol_error(self, valves):
        session, _ = _session_with(
            valves, _FakeResponse([], content_type="application/json; charset=utf-8", body='{"hello": 1}')
        )
        async with session:
            with pytest.raises(UpstreamProtocolError):
                await session.converse(URL, {}, {})

    @pytest.mark.asyncio
    async def test_events_parse_body(self, valves):
        body = sse_bytes({"sessionId": "s1"}, {"sessionId": "s2"}, done=True)
        response = _FakeResponse([body[:10], body[10:]])
        session, _ = _session_with(valves, response)
        async with session:
            accepted = await session.converse(URL, {}, {})
            events = [event async for event in session.events(accepted)]
        assert [event.data for event in events] == ['{"sessionId": "s1"}', '{"sessionId": "s2"}', "[DONE]"]

    @pytest.mark.asyncio
    async def test_interrupted_body_raises_transport_error(self, valves):
        response = _FakeResponse(
            [sse_bytes({"sessionId": "s1"}), b"data: "],
            raise_after=1,
            exception=aiohttp.ClientPayloadError("truncated"),
        )
        session, _ = _session_with(valves, response)
        async with session:
            accepted = await session.converse(URL, {}, {})
            seen = []
            with pytest.raises(TransportError):
                async for event in session.events(accepted):
                    seen.append(event)
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_close_is_idempotent_and_final(self, valves):
        session, fake = _session_with(valves)
        session.open()
        await session.close()
        await session.close()
        assert fake.closed and session.closed
        with pytest.raises(RuntimeError):
            session.open()


# -----------------------------------------------------------------------------
# JSON and form endpoints
# -----------------------------------------------------------------------------

class TestJsonEndpoints:
    @pytest.mark.asyncio
    async def test_post_json_returns_data(self, valves):
        with aioresponses() as mocked:
            mocked.post(JSON_URL, payload={"success": True, "data": {"accessId": "k"}})
            async with VendorSession(valves) as session:
                assert await session.post_json(JSON_URL, {}, {}) == {"accessId": "k"}

    @pytest.mark.asyncio
    async def test_post_json_business_failure(self, valves):
        with aioresponses() as mocked:
            mocked.post(JSON_URL, payload={"success": False, "errorCode": "E", "errorMsg": "denied"})
            async with VendorSession(valves) as session:
                with pytest.raises(UpstreamBusinessError, match="请求失败: E-denied"):
                    await session.post_json(JSON_URL, {}, {})

    @pytest.mark.asyncio
    async def test_post_json_http_error_without_json(self, valves):
        with aioresponses() as mocked:
            mocked.post(JSON_URL, status=502, body="bad gateway")
            async with VendorSession(valves) as session:
                with pytest.raises(TransportError) as excinfo:
                    await session.post_json(JSON_URL, {}, {})
        assert excinfo.value.status == 502

    @pytest.mark.asyncio
    async def test_post_json_invalid_json(self, valves):
        with aioresponses() as mocked:
            mocked.post(JSON_URL, status=200, body="<html>")
            async with VendorSession(valves) as session:
                with pytest.raises(UpstreamProtocolError):
                    await session.post_json(JSON_URL, {}, {})

    @pytest.mark.asyncio
    async def test_post_json_connection_error(self, valves):
        with aioresponses() as mocked:
            mocked.post(JSON_URL, exception=aiohttp.ClientConnectionError("refused"))
            async with VendorSession(valves) as session:
                with pytest.raises(TransportError):
                    await session.post_json(JSON_URL, {}, {})

    @pytest.mark.asyncio
    async def test_post_form_rejects_error_status(self, valves):
        form = aiohttp.FormData()
        form.add_field("key", "value")
        with aioresponses() as mocked:
            mocked.post(valves.OSS_UPLOAD_URL, status=403, body="AccessDenied")
            async with VendorSession(valves) as session:
                with pytest.raises(TransportError) as excinfo:
                    await session.post_form(valves.OSS_UPLOAD_URL, form, {})
        assert excinfo.value.status == 403


# -----------------------------------------------------------------------------
# Conversation cleanup
# -----------------------------------------------------------------------------

class TestConversationJanitor:
    @pytest.mark.asyncio
    async def test_completed_outcome_schedules_deletion(self):
        deleted = []

        async def _delete(session_id, ticket):
            deleted.append((session_id, ticket))

        janitor = ConversationJanitor(_delete)
        outcome = asyncio.get_running_loop().create_future()
        janitor.observe(outcome, "ticket")
        outcome.set_result(TranscodeOutcome("s-m", "s", True))
        await asyncio.sleep(0)
        await janitor.drain()
        assert deleted == [("s", "ticket")]

    @pytest.mark.asyncio
    async def test_incomplete_outcome_is_not_deleted(self):
        deleted = []

        async def _delete(session_id, ticket):
            deleted.append(session_id)

        janitor = ConversationJanitor(_delete)
        outcome = asyncio.get_running_loop().create_future()
        janitor.observe(outcome, "ticket")
        outcome.set_result(TranscodeOutcome("s-m", "s", False))
        await asyncio.sleep(0)
        await janitor.drain()
        assert deleted == []
        assert janitor.pending == 0

    @pytest.mark.asyncio
    async def test_deletion_failure_is_logged_not_raised(self, caplog):
        async def _delete(session_id, ticket):
            raise UpstreamBusinessError("db error")

        janitor = ConversationJanitor(_delete)
        with caplog.at_level(logging.WARNING, logger="tongyi_bridge.requests.session"):
            task = janitor.schedule("s", "ticket")
            assert task is not None
            await janitor.drain()
        assert task.done() and task.exception() is None
        assert "cleanup failed" in caplog.text

    def test_missing_session_id_is_ignored(self):
        janitor = ConversationJanitor(lambda *_: None)
        assert janitor.schedule(None, "ticket") is None
