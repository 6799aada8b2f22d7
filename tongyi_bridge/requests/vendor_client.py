"""JSON endpoints of the vendor web API.

Thin wrappers over ``VendorSession.post_json`` that know each endpoint's
path, body and answer shape. All answers pass through ``check_result`` so a
``success: false`` envelope surfaces as UpstreamBusinessError.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

import aiohttp

from ..core.config import CREATIVE_TASK_QUERY, Valves
from ..core.errors import UpstreamBusinessError, UpstreamProtocolError
from ..models.variants import DEFAULT_MODEL, VariantProfile, resolve_variant
from .session import SessionFactory, VendorSession

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class UploadParams:
    """Signed object-store upload policy."""

    access_id: str
    policy: str
    signature: str
    dir: str


class VendorClient:
    """Endpoint helpers bound to one session and one credential."""

    def __init__(
        self,
        valves: Valves,
        session: VendorSession,
        ticket: str,
        variant: Optional[VariantProfile] = None,
    ) -> None:
        self.valves = valves
        self.session = session
        self.ticket = ticket
        self.variant = variant or resolve_variant(DEFAULT_MODEL)
        self._qwen = resolve_variant(DEFAULT_MODEL)

    def _qwen_url(self, path: str) -> str:
        return f"{self._qwen.base_url(self.valves)}{path}"

    def _qwen_headers(self) -> dict[str, str]:
        return self._qwen.headers(self.valves, self.ticket)

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def delete_conversation(self, session_id: str) -> None:
        await self.session.post_json(
            self._qwen_url("/dialog/session/delete"),
            {"sessionId": session_id},
            self._qwen_headers(),
        )

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    async def acquire_upload_params(self) -> UploadParams:
        data = await self.session.post_json(self._qwen_url("/dialog/uploadToken"), {}, self._qwen_headers())
        if not isinstance(data, dict):
            raise UpstreamProtocolError("Upload token response has no data", raw=repr(data)[:300])
        try:
            return UploadParams(
                access_id=str(data["accessId"]),
                policy=str(data["policy"]),
                signature=str(data["signature"]),
                dir=str(data["dir"]),
            )
        except KeyError as exc:
            raise UpstreamProtocolError(f"Upload token response misses {exc}") from exc

    async def upload_to_object_store(
        self,
        params: UploadParams,
        *,
        filename: str,
        data: bytes,
        mime_type: str,
    ) -> None:
        form = aiohttp.FormData()
        form.add_field("OSSAccessKeyId", params.access_id)
        form.add_field("policy", params.policy)
        form.add_field("signature", params.signature)
        form.add_field("key", f"{params.dir}{filename}")
        form.add_field("dir", params.dir)
        form.add_field("success_action_status", "200")
        form.add_field("file", data, filename=filename, content_type=mime_type)
        headers = self._qwen.headers(self.valves, self.ticket)
        headers.pop("Content-Type", None)
        headers.pop("Cookie", None)
        headers["X-Requested-With"] = "XMLHttpRequest"
        await self.session.post_form(self.valves.OSS_UPLOAD_URL, form, headers)

    async def image_download_link(self, filename: str, directory: str) -> str:
        data = await self.session.post_json(
            self._qwen_url("/dialog/downloadLink"),
            {"fileKey": filename, "fileType": "image", "dir": directory},
            self._qwen_headers(),
        )
        url = data.get("url") if isinstance(data, dict) else None
        if not isinstance(url, str) or not url:
            raise UpstreamProtocolError("Download link response has no url", raw=repr(data)[:300])
        return url

    async def file_download_link(self, filename: str, directory: str) -> str:
        data = await self.session.post_json(
            self._qwen_url("/dialog/downloadLink/batch"),
            {"fileKeys": [filename], "fileType": "file", "dir": directory},
            self._qwen_headers(),
        )
        results = data.get("results") if isinstance(data, dict) else None
        first = results[0] if isinstance(results, list) and results and isinstance(results[0], dict) else None
        if not first or not first.get("url"):
            reason = (first or {}).get("errorMsg") or "未知错误"
            raise UpstreamBusinessError(f"文件上传失败：{reason}", error_msg=str(reason))
        return str(first["url"])

    async def scan_status(self, url: str) -> Any:
        return await self.session.post_json(
            self._qwen_url("/dialog/secResult/batch"),
            {"urls": [url]},
            self._qwen_headers(),
        )

    # ------------------------------------------------------------------
    # Video workflow
    # ------------------------------------------------------------------

    def _agent_headers(self) -> dict[str, str]:
        headers = self.variant.headers(self.valves, self.ticket)
        headers["Accept"] = "application/json, text/plain, */*"
        return headers

    async def submit_video_task(self, *, card_code: str, msg_id: str, session_id: str) -> str:
        """Submit the workflow card and return the creative task id."""
        data = await self.session.post_json(
            f"{self.variant.base_url(self.valves)}/dialog/workflow/task/submit",
            {
                "agentId": self.variant.resolve_agent_id(self.valves),
                "cardCode": card_code,
                "msgId": msg_id,
                "sessionId": session_id,
                "operationType": "create",
                "taskParam": {},
            },
            self._agent_headers(),
            timeout=30.0,
        )
        contents = data.get("contents") if isinstance(data, dict) else None
        if not isinstance(contents, list) or not contents or not isinstance(contents[0], dict):
            raise UpstreamBusinessError("Failed to submit digital people task")
        try:
            task_id = json.loads(contents[0].get("content") or "")["taskId"]
        except (ValueError, KeyError, TypeError) as exc:
            raise UpstreamProtocolError("Task submit answer carries no taskId", raw=repr(contents[0])[:300]) from exc
        return str(task_id)

    async def video_task_status(self, task_id: str) -> Any:
        return await self.session.post_json(
            f"{self.variant.base_url(self.valves)}/dialog/creative/task/get?{CREATIVE_TASK_QUERY}",
            {"taskIds": [task_id]},
            self._agent_headers(),
            timeout=30.0,
        )


async def remove_conversation(
    valves: Valves,
    session_id: str,
    ticket: str,
    *,
    session_factory: Optional[SessionFactory] = None,
) -> None:
    """Delete one conversation on its own short-lived session."""
    async with VendorSession(valves, session_factory=session_factory) as session:
        await VendorClient(valves, session, ticket).delete_conversation(session_id)
