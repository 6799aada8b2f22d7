"""Streaming: SSE parsing, record decoding, delta accumulation and transcoding."""

from __future__ import annotations

from .accumulator import (
    ContentAccumulator,
    DeltaStep,
    StreamState,
    find_asset_urls,
    normalize_asset_url,
    strip_asset_url_queries,
)
from .events import ContentPart, ConversationRecord, decode_vendor_record
from .outbound import relay_frames
from .sse_parser import SSEEventParser, VendorEvent, iter_sse_events
from .transcoder import DONE_FRAME, StreamTranscoder, TranscodeOutcome

__all__ = [
    "ContentAccumulator",
    "DeltaStep",
    "StreamState",
    "find_asset_urls",
    "normalize_asset_url",
    "strip_asset_url_queries",
    "ContentPart",
    "ConversationRecord",
    "decode_vendor_record",
    "relay_frames",
    "SSEEventParser",
    "VendorEvent",
    "iter_sse_events",
    "DONE_FRAME",
    "StreamTranscoder",
    "TranscodeOutcome",
]
