"""Vendor stream -> OpenAI chat-completion transcoding.

Two modes share one accumulator per stream:
- ``aggregate``: buffer every delta and return a ``chat.completion`` object
- ``stream``: yield ``chat.completion.chunk`` SSE frames and finish with the
  ``data: [DONE]`` sentinel, also when the vendor stream fails or closes early

Both resolve an optional completion future with a ``TranscodeOutcome`` so the
session lifecycle manager knows whether the conversation finished.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Optional

from ..core.config import DEFAULT_ERROR_SUFFIX_TEMPLATE, DEFAULT_MODERATION_NOTICE
from ..core.errors import TongyiBridgeError
from ..core.timing_logger import timing_mark
from ..core.utils import unix_timestamp
from ..models.variants import VariantProfile
from .accumulator import ContentAccumulator
from .events import decode_vendor_record
from .sse_parser import VendorEvent

LOGGER = logging.getLogger(__name__)

DONE_FRAME = "data: [DONE]\n\n"


def _usage() -> dict[str, int]:
    return {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2}


# -----------------------------------------------------------------------------
# Envelope builders
# -----------------------------------------------------------------------------

def sse_frame(payload: dict[str, Any]) -> str:
    """Serialize ``payload`` as one SSE ``data:`` frame."""
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def completion_chunk(
    *,
    chunk_id: str,
    model: str,
    delta: dict[str, Any],
    created: int,
    finish_reason: Optional[str] = None,
    usage: Optional[dict[str, int]] = None,
    extra: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    chunk: dict[str, Any] = {
        "id": chunk_id,
        "model": model,
        "object": "chat.completion.chunk",
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        "created": created,
    }
    if usage is not None:
        chunk["usage"] = usage
    if extra:
        chunk.update(extra)
    return chunk


def completion_envelope(
    *,
    completion_id: str,
    model: str,
    content: str,
    created: int,
    extra: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    envelope: dict[str, Any] = {
        "id": completion_id,
        "model": model,
        "object": "chat.completion",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
        "usage": _usage(),
        "created": created,
    }
    if extra:
        envelope.update(extra)
    return envelope


@dataclass(frozen=True, slots=True)
class TranscodeOutcome:
    """How a transcoded stream ended."""

    conversation_id: Optional[str]
    session_id: Optional[str]
    completed: bool


def _resolve(outcome: Optional[asyncio.Future], value: TranscodeOutcome) -> None:
    if outcome is not None and not outcome.done():
        outcome.set_result(value)


# -----------------------------------------------------------------------------
# Transcoder
# -----------------------------------------------------------------------------

class StreamTranscoder:
    """Translate one vendor event stream into chat-completion output."""

    def __init__(
        self,
        model: str,
        variant: Optional[VariantProfile] = None,
        *,
        moderation_notice: str = DEFAULT_MODERATION_NOTICE,
        error_suffix_template: str = DEFAULT_ERROR_SUFFIX_TEMPLATE,
    ) -> None:
        self.model = model
        self.accumulator = ContentAccumulator(
            variant,
            moderation_notice=moderation_notice,
            error_suffix_template=error_suffix_template,
        )

    def _outcome(self, completed: bool) -> TranscodeOutcome:
        state = self.accumulator.state
        return TranscodeOutcome(
            conversation_id=state.conversation_id,
            session_id=state.session_id,
            completed=completed,
        )

    async def aggregate(
        self,
        events: AsyncIterable[VendorEvent],
        outcome: Optional[asyncio.Future] = None,
    ) -> dict[str, Any]:
        """Consume ``events`` and return one ``chat.completion`` object.

        Transport and protocol errors propagate. A stream that closes without
        a terminal record yields the content received so far.
        """
        created = unix_timestamp()
        completed = False
        try:
            async for event in events:
                record = decode_vendor_record(event)
                if record is None:
                    continue
                step = self.accumulator.feed(record)
                if step.terminal:
                    completed = True
                    break
            if not completed:
                LOGGER.info(
                    "Vendor stream closed before the terminal record; returning %d chars",
                    len(self.accumulator.content),
                )
        finally:
            _resolve(outcome, self._outcome(completed))
        return completion_envelope(
            completion_id=self.accumulator.conversation_id or "",
            model=self.model,
            content=self.accumulator.content,
            created=created,
        )

    async def stream(
        self,
        events: AsyncIterable[VendorEvent],
        outcome: Optional[asyncio.Future] = None,
    ) -> AsyncIterator[str]:
        """Yield SSE frames for ``events``; the last frame is always ``[DONE]``."""
        created = unix_timestamp()
        completed = False
        try:
            yield sse_frame(
                completion_chunk(
                    chunk_id="",
                    model=self.model,
                    delta={"role": "assistant", "content": ""},
                    created=created,
                )
            )
            try:
                first = True
                async for event in events:
                    record = decode_vendor_record(event)
                    if record is None:
                        continue
                    step = self.accumulator.feed(record)
                    if step.terminal:
                        completed = True
                        yield sse_frame(
                            completion_chunk(
                                chunk_id=step.conversation_id or "",
                                model=self.model,
                                delta={"content": step.delta},
                                created=created,
                                finish_reason="stop",
                                usage=_usage(),
                            )
                        )
                        break
                    if not step.delta:
                        continue
                    if first:
                        timing_mark("transcoder_first_delta")
                        first = False
                    yield sse_frame(
                        completion_chunk(
                            chunk_id=step.conversation_id or "",
                            model=self.model,
                            delta={"content": step.delta},
                            created=created,
                        )
                    )
            except TongyiBridgeError as exc:
                LOGGER.warning("Vendor stream failed mid-transcode: %s", exc)
            if not completed:
                LOGGER.info("Vendor stream ended without a terminal record")
            yield DONE_FRAME
        finally:
            _resolve(outcome, self._outcome(completed))
