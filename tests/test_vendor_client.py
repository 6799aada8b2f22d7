"""Tests for the vendor JSON endpoint helpers."""

from __future__ import annotations

import json

import pytest
from aioresponses import aioresponses

from tongyi_bridge.core.config import AGENT_HOST, QWEN_HOST
from tongyi_bridge.core.errors import UpstreamBusinessError, UpstreamProtocolError
from tongyi_bridge.models.variants import DIGITAL_PEOPLE_MODEL, resolve_variant
from tongyi_bridge.requests.session import VendorSession
from tongyi_bridge.requests.vendor_client import VendorClient, remove_conversation

SUBMIT_URL = f"{AGENT_HOST}/dialog/workflow/task/submit"


def _only_call(mocked: aioresponses):
    (calls,) = mocked.requests.values()
    return calls[0]


class TestUploads:
    @pytest.mark.asyncio
    async def test_upload_params(self, valves):
        with aioresponses() as mocked:
            mocked.post(
                f"{QWEN_HOST}/dialog/uploadToken",
                payload={"success": True, "data": {"accessId": "a", "policy": "p", "signature": "s", "dir": "d/"}},
            )
            async with VendorSession(valves) as session:
                params = await VendorClient(valves, session, "t").acquire_upload_params()
        assert (params.access_id, params.policy, params.signature, params.dir) == ("a", "p", "s", "d/")

    @pytest.mark.asyncio
    async def test_upload_params_missing_field(self, valves):
        with aioresponses() as mocked:
            mocked.post(f"{QWEN_HOST}/dialog/uploadToken", payload={"success": True, "data": {"accessId": "a"}})
            async with VendorSession(valves) as session:
                with pytest.raises(UpstreamProtocolError):
                    await VendorClient(valves, session, "t").acquire_upload_params()

    @pytest.mark.asyncio
    async def test_image_link_without_url(self, valves):
        with aioresponses() as mocked:
            mocked.post(f"{QWEN_HOST}/dialog/downloadLink", payload={"success": True, "data": {}})
            async with VendorSession(valves) as session:
                with pytest.raises(UpstreamProtocolError):
                    await VendorClient(valves, session, "t").image_download_link("a.png", "d/")


class TestVideoTask:
    @pytest.mark.asyncio
    async def test_submit_returns_task_id(self, valves):
        variant = resolve_variant(DIGITAL_PEOPLE_MODEL)
        with aioresponses() as mocked:
            mocked.post(
                SUBMIT_URL,
                payload={"success": True, "data": {"contents": [{"content": json.dumps({"taskId": "t-9"})}]}},
            )
            async with VendorSession(valves) as session:
                client = VendorClient(valves, session, "t", variant)
                task_id = await client.submit_video_task(card_code="c", msg_id="m", session_id="s")
            call = _only_call(mocked)
        assert task_id == "t-9"
        assert call.kwargs["json"] == {
            "agentId": "A-DIGITAL-PEOPLE",
            "cardCode": "c",
            "msgId": "m",
            "sessionId": "s",
            "operationType": "create",
            "taskParam": {},
        }
        assert call.kwargs["headers"]["Accept"] == "application/json, text/plain, */*"
        assert call.kwargs["headers"]["Referer"].endswith("agentId=A-DIGITAL-PEOPLE")

    @pytest.mark.asyncio
    async def test_submit_without_contents(self, valves):
        variant = resolve_variant(DIGITAL_PEOPLE_MODEL)
        with aioresponses() as mocked:
            mocked.post(SUBMIT_URL, payload={"success": True, "data": {"contents": []}})
            async with VendorSession(valves) as session:
                client = VendorClient(valves, session, "t", variant)
                with pytest.raises(UpstreamBusinessError, match="Failed to submit"):
                    await client.submit_video_task(card_code="c", msg_id="m", session_id="s")

    @pytest.mark.asyncio
    async def test_submit_without_task_id(self, valves):
        variant = resolve_variant(DIGITAL_PEOPLE_MODEL)
        with aioresponses() as mocked:
            mocked.post(SUBMIT_URL, payload={"success": True, "data": {"contents": [{"content": "{}"}]}})
            async with VendorSession(valves) as session:
                client = VendorClient(valves, session, "t", variant)
                with pytest.raises(UpstreamProtocolError):
                    await client.submit_video_task(card_code="c", msg_id="m", session_id="s")


class TestConversationRemoval:
    @pytest.mark.asyncio
    async def test_delete_posts_session_id(self, valves):
        with aioresponses() as mocked:
            mocked.post(f"{QWEN_HOST}/dialog/session/delete", payload={"success": True, "data": None})
            await remove_conversation(valves, "s" * 32, "ticket")
            call = _only_call(mocked)
        assert call.kwargs["json"] == {"sessionId": "s" * 32}
        assert call.kwargs["headers"]["Cookie"].startswith("tongyi_sso_ticket=ticket;")
