"""Server-Sent Events (SSE) parsing.

Turns an arbitrary sequence of byte chunks into ordered ``VendorEvent``
objects:
- Partial lines are buffered across chunk boundaries
- ``\\n``, ``\\r\\n`` and ``\\r`` line endings are accepted
- Multi-line ``data:`` fields are joined with ``\\n``
- Comment/heartbeat lines, ``id:``, ``retry:`` and unknown fields are skipped
- A trailing event without a blank-line delimiter is flushed at end of stream

Bytes are decoded only once a full line is available, so a multi-byte
character split across two chunks is reassembled before decoding.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, Optional

LOGGER = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
DEFAULT_EVENT_TYPE = "message"


@dataclass(frozen=True, slots=True)
class VendorEvent:
    """One dispatched SSE event."""

    type: str
    data: str

    @property
    def is_done(self) -> bool:
        return self.data.strip() == DONE_SENTINEL


class SSEEventParser:
    """Incremental SSE parser. Create one instance per stream."""

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._data_lines: list[str] = []
        self._event_type: Optional[str] = None

    def reset(self) -> None:
        """Drop all buffered state so the instance can parse a new stream."""
        self._buffer.clear()
        self._data_lines = []
        self._event_type = None

    def feed(self, chunk: bytes) -> list[VendorEvent]:
        """Consume ``chunk`` and return the events it completed, in order."""
        if not chunk:
            return []
        self._buffer.extend(chunk)
        events: list[VendorEvent] = []
        for line in self._drain_lines(final=False):
            event = self._process_line(line)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[VendorEvent]:
        """Finish the stream, dispatching any undelimited trailing event."""
        events: list[VendorEvent] = []
        for line in self._drain_lines(final=True):
            event = self._process_line(line)
            if event is not None:
                events.append(event)
        if self._buffer:
            event = self._process_line(self._decode(bytes(self._buffer)))
            self._buffer.clear()
            if event is not None:
                events.append(event)
        event = self._dispatch()
        if event is not None:
            events.append(event)
        return events

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _drain_lines(self, *, final: bool) -> list[str]:
        lines: list[str] = []
        buf = self._buffer
        start = 0
        size = len(buf)
        while start < size:
            newline = buf.find(b"\n", start)
            carriage = buf.find(b"\r", start)
            if newline == -1 and carriage == -1:
                break
            if carriage != -1 and (newline == -1 or carriage < newline):
                if carriage + 1 == size and not final:
                    # A following "\n" may arrive in the next chunk.
                    break
                end = carriage
                step = 2 if carriage + 1 < size and buf[carriage + 1] == 0x0A else 1
            else:
                end = newline
                step = 1
            lines.append(self._decode(bytes(buf[start:end])))
            start = end + step
        if start:
            del buf[:start]
        return lines

    @staticmethod
    def _decode(raw: bytes) -> str:
        return raw.decode("utf-8", errors="replace")

    def _process_line(self, line: str) -> Optional[VendorEvent]:
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return None
        field, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]
        if field == "data":
            self._data_lines.append(value)
        elif field == "event":
            self._event_type = value or None
        elif field in {"id", "retry"}:
            pass
        else:
            LOGGER.debug("Skipping unknown SSE field %r", field)
        return None

    def _dispatch(self) -> Optional[VendorEvent]:
        if not self._data_lines:
            self._event_type = None
            return None
        event = VendorEvent(
            type=self._event_type or DEFAULT_EVENT_TYPE,
            data="\n".join(self._data_lines),
        )
        self._data_lines = []
        self._event_type = None
        return event


async def iter_sse_events(chunks: AsyncIterable[bytes]) -> AsyncIterator[VendorEvent]:
    """Lazily parse an async byte-chunk stream into events."""
    parser = SSEEventParser()
    async for chunk in chunks:
        for event in parser.feed(chunk):
            yield event
    for event in parser.flush():
        yield event
