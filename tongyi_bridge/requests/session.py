"""Transport session lifecycle.

- ``VendorSession``: owns exactly one ``aiohttp.ClientSession`` per logical
  request attempt. ``close`` is idempotent so the success path and the
  error path can both call it safely.
- ``ConversationJanitor``: best-effort, fire-and-forget deletion of finished
  server-side conversations. Failures are logged and never propagated.
"""

from __future__ import annotations

import asyncio
import contextlib
import contextvars
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import aiohttp

from ..core.config import Valves
from ..core.errors import TransportError, UpstreamProtocolError, check_result
from ..core.timing_logger import timed, timing_mark
from ..core.utils import _truncate
from ..streaming.sse_parser import VendorEvent, iter_sse_events
from ..streaming.transcoder import TranscodeOutcome

LOGGER = logging.getLogger(__name__)

CHUNK_SIZE = 4096

SessionFactory = Callable[[], aiohttp.ClientSession]


def create_http_session(valves: Valves) -> aiohttp.ClientSession:
    """Return a fresh ClientSession with per-request defaults."""
    connector = aiohttp.TCPConnector(
        limit=50,
        limit_per_host=10,
        keepalive_timeout=75,
        ttl_dns_cache=300,
    )
    timeout = aiohttp.ClientTimeout(
        total=float(valves.HTTP_TOTAL_TIMEOUT_SECONDS),
        connect=float(valves.HTTP_CONNECT_TIMEOUT_SECONDS),
        sock_read=float(valves.HTTP_SOCK_READ_SECONDS),
    )
    return aiohttp.ClientSession(
        connector=connector,
        timeout=timeout,
        json_serialize=json.dumps,
    )


class VendorSession:
    """One transport session, used for a single request attempt."""

    def __init__(self, valves: Valves, *, session_factory: Optional[SessionFactory] = None) -> None:
        self.valves = valves
        self._session_factory = session_factory or (lambda: create_http_session(valves))
        self._session: Optional[aiohttp.ClientSession] = None
        self._response: Optional[aiohttp.ClientResponse] = None
        self._closed = False

    async def __aenter__(self) -> "VendorSession":
        self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def open(self) -> aiohttp.ClientSession:
        if self._closed:
            raise RuntimeError("VendorSession already closed")
        if self._session is None:
            self._session = self._session_factory()
        return self._session

    async def close(self) -> None:
        """Release the response and the session. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        response, self._response = self._response, None
        if response is not None:
            response.release()
        session, self._session = self._session, None
        if session is not None:
            await session.close()

    # ------------------------------------------------------------------
    # Conversation stream
    # ------------------------------------------------------------------

    @timed
    async def converse(self, url: str, payload: dict[str, Any], headers: dict[str, str]) -> aiohttp.ClientResponse:
        """POST a conversation request and return the accepted streaming response.

        Raises TransportError on connection failures and HTTP status >= 400.
        """
        session = self.open()
        LOGGER.debug("Vendor request payload: %s", _truncate(json.dumps(payload, ensure_ascii=False), 1000))
        try:
            response = await session.post(url, json=payload, headers=headers)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(f"Vendor connection failed: {exc}") from exc
        self._response = response
        timing_mark("vendor_response_headers")
        if response.status >= 400:
            body = await self._read_error_body(response)
            raise TransportError(
                f"Vendor responded with HTTP {response.status}: {_truncate(body)}",
                status=response.status,
                detail=body,
            )
        content_type = (response.headers.get("Content-Type") or "").lower()
        if "application/json" in content_type:
            # Rejections arrive as a JSON envelope instead of an event stream.
            try:
                data = await response.json(content_type=None)
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
                raise UpstreamProtocolError(f"Invalid JSON rejection body: {exc}") from exc
            check_result(data, endpoint=url)
            raise UpstreamProtocolError(
                "Expected an event stream from the conversation endpoint",
                raw=_truncate(json.dumps(data, ensure_ascii=False)),
            )
        return response

    async def events(self, response: aiohttp.ClientResponse) -> AsyncIterator[VendorEvent]:
        """Parse the response body into SSE events."""
        body = self._iter_body(response)
        async with contextlib.aclosing(body), contextlib.aclosing(iter_sse_events(body)) as stream:
            async for event in stream:
                yield event

    @staticmethod
    async def _iter_body(response: aiohttp.ClientResponse) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                yield chunk
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(f"Vendor stream interrupted: {exc}") from exc

    @staticmethod
    async def _read_error_body(response: aiohttp.ClientResponse) -> str:
        try:
            return await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError, UnicodeDecodeError):
            return ""

    # ------------------------------------------------------------------
    # JSON endpoints
    # ------------------------------------------------------------------

    @timed
    async def post_json(
        self,
        url: str,
        payload: Any,
        headers: dict[str, str],
        *,
        timeout: float = 15.0,
    ) -> Any:
        """POST JSON and return the ``data`` member of the vendor envelope."""
        session = self.open()
        try:
            async with session.post(
                url,
                json=payload,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                text = await response.text()
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(f"Request to {url} failed: {exc}") from exc
        try:
            body = json.loads(text) if text else None
        except ValueError as exc:
            if status >= 400:
                raise TransportError(f"{url} responded with HTTP {status}", status=status, detail=text) from exc
            raise UpstreamProtocolError(f"Invalid JSON from {url}", raw=_truncate(text)) from exc
        if status >= 400 and not isinstance(body, dict):
            raise TransportError(f"{url} responded with HTTP {status}", status=status, detail=text)
        return check_result(body, endpoint=url)

    @timed
    async def post_form(
        self,
        url: str,
        form: aiohttp.FormData,
        headers: dict[str, str],
        *,
        timeout: float = 120.0,
    ) -> int:
        """POST a multipart form and return the response status."""
        session = self.open()
        try:
            async with session.post(
                url,
                data=form,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                status = response.status
                if status >= 400:
                    body = await self._read_error_body(response)
                    raise TransportError(
                        f"Upload to {url} failed with HTTP {status}: {_truncate(body)}",
                        status=status,
                        detail=body,
                    )
                return status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(f"Upload to {url} failed: {exc}") from exc


# -----------------------------------------------------------------------------
# Conversation cleanup
# -----------------------------------------------------------------------------

class ConversationJanitor:
    """Schedule best-effort deletion of finished conversations."""

    def __init__(self, delete: Callable[[str, str], Awaitable[Any]]) -> None:
        self._delete = delete
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule(self, session_id: Optional[str], ticket: str) -> Optional[asyncio.Task]:
        """Start deleting ``session_id`` in the background."""
        if not session_id:
            return None
        # Runs outside the request context.
        task = contextvars.Context().run(
            asyncio.create_task, self._run(session_id, ticket), name=f"delete-conversation-{session_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def observe(self, outcome: "asyncio.Future[TranscodeOutcome]", ticket: str) -> None:
        """Delete the conversation once ``outcome`` reports a completed turn."""

        def _on_done(future: "asyncio.Future[TranscodeOutcome]") -> None:
            if future.cancelled() or future.exception() is not None:
                return
            result = future.result()
            if result.completed:
                self.schedule(result.session_id, ticket)
            else:
                LOGGER.debug("Conversation %s not completed; skipping deletion", result.session_id)

        outcome.add_done_callback(_on_done)

    async def _run(self, session_id: str, ticket: str) -> None:
        try:
            await self._delete(session_id, ticket)
            LOGGER.debug("Deleted conversation %s", session_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning("Conversation %s cleanup failed: %s", session_id, exc)

    async def drain(self) -> None:
        """Wait for in-flight deletions (used at shutdown and in tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
