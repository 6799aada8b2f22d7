"""Shared fixtures and fakes for the bridge test suite."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Iterable

import pytest

from tongyi_bridge.core.config import Valves


# -----------------------------------------------------------------------------
# Vendor stream helpers
# -----------------------------------------------------------------------------

def sse_bytes(*records: Any, done: bool = False) -> bytes:
    """Encode records as one vendor event-stream body."""
    frames = []
    for record in records:
        data = record if isinstance(record, str) else json.dumps(record, ensure_ascii=False)
        frames.append(f"event: message\ndata: {data}\n\n")
    if done:
        frames.append("event: message\ndata: [DONE]\n\n")
    return "".join(frames).encode("utf-8")


def text_record(
    text: str,
    *,
    status: str = "generating",
    session_id: str = "s" * 32,
    msg_id: str = "m1",
    content_type: str | None = "text",
    **extra: Any,
) -> dict[str, Any]:
    """Build a cumulative vendor record carrying ``text``."""
    part: dict[str, Any] = {"role": "assistant", "content": text, "status": status}
    if content_type is not None:
        part["contentType"] = content_type
    record: dict[str, Any] = {
        "sessionId": session_id,
        "msgId": msg_id,
        "msgStatus": status,
        "contents": [part],
        "canShare": True,
    }
    if content_type is not None:
        record["contentType"] = content_type
    record.update(extra)
    return record


def parse_frames(frames: Iterable[str]) -> list[Any]:
    """Decode ``data:`` frames; the sentinel decodes to the string ``[DONE]``."""
    decoded = []
    for frame in frames:
        assert frame.startswith("data: ") and frame.endswith("\n\n")
        body = frame[len("data: "):-2]
        decoded.append(body if body == "[DONE]" else json.loads(body))
    return decoded


# -----------------------------------------------------------------------------
# aiohttp fakes
# -----------------------------------------------------------------------------

class _FakeContent:
    """Fake aiohttp response content with configurable chunk iteration."""

    def __init__(self, chunks: list[bytes], *, raise_after: int | None = None, exception: Exception | None = None) -> None:
        self._chunks = chunks
        self._raise_after = raise_after
        self._exception = exception or RuntimeError("Simulated stream error")

    async def iter_chunked(self, _size: int):
        for idx, chunk in enumerate(self._chunks):
            if self._raise_after is not None and idx >= self._raise_after:
                raise self._exception
            await asyncio.sleep(0)
            yield chunk
        if self._raise_after is not None and self._raise_after >= len(self._chunks):
            raise self._exception


class _FakeResponse:
    """Fake aiohttp streaming response."""

    def __init__(
        self,
        chunks: list[bytes],
        *,
        status: int = 200,
        content_type: str = "text/event-stream",
        raise_after: int | None = None,
        exception: Exception | None = None,
        body: str = "",
    ) -> None:
        self.status = status
        self.headers = {"Content-Type": content_type}
        self.content = _FakeContent(chunks, raise_after=raise_after, exception=exception)
        self._body = body
        self.released = False

    async def text(self) -> str:
        return self._body

    async def json(self, content_type: str | None = None) -> Any:
        return json.loads(self._body)

    def release(self) -> None:
        self.released = True


class _FakeSession:
    """Fake aiohttp.ClientSession returning queued responses from ``post``."""

    def __init__(self, responses: list[Any]) -> None:
        self._responses = list(responses)
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    async def post(self, url: str, **kwargs: Any) -> Any:
        self.calls.append({"url": url, **kwargs})
        response = self._responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response

    async def close(self) -> None:
        self.closed = True


# -----------------------------------------------------------------------------
# Timing and configuration
# -----------------------------------------------------------------------------

class RecordingSleep:
    """Injectable sleep that records requested delays without waiting."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def valves() -> Valves:
    return Valves(
        MAX_ATTEMPTS=3,
        RETRY_DELAY_SECONDS=5.0,
        SCAN_INITIAL_DELAY_SECONDS=0.5,
        SCAN_POLL_INTERVAL_SECONDS=1.0,
        SCAN_MAX_ATTEMPTS=5,
        VIDEO_INITIAL_DELAY_SECONDS=30.0,
        VIDEO_POLL_INTERVAL_SECONDS=5.0,
        VIDEO_MAX_ATTEMPTS=4,
        DIGITAL_PEOPLE_AGENT_ID="A-DIGITAL-PEOPLE",
        ENABLE_TIMING_LOG=False,
    )


@pytest.fixture(autouse=True)
def _propagate_package_logs():
    """Keep package records visible to caplog even after RequestLogger.install."""
    logger = logging.getLogger("tongyi_bridge")
    logger.propagate = True
    yield
    logger.propagate = True
