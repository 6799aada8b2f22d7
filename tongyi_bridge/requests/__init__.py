"""Request handling subsystem.

This package talks to the vendor web API:
- session: transport session lifecycle and conversation cleanup
- vendor_client: JSON endpoints (uploads, scans, video tasks, deletion)
- retry: retry envelope around one logical request
- poller: bounded polling of asynchronous jobs
- messages: inbound message merging and reference extraction
- orchestrator: CompletionOrchestrator, the per-request entry points

NOTE: the orchestrator is not imported eagerly because it depends on the
storage package, which itself imports the poller and vendor client from
here. Import it from ``tongyi_bridge.requests.orchestrator``.
"""

from __future__ import annotations

from .messages import extract_ref_file_urls, merge_messages, messages_prepare, parse_conversation_ref
from .poller import PollResult, TaskHandle, classify_scan_status, classify_video_status, poll
from .retry import RetryContext, RetryEnvelope
from .session import ConversationJanitor, VendorSession, create_http_session
from .vendor_client import UploadParams, VendorClient, remove_conversation

__all__ = [
    "extract_ref_file_urls",
    "merge_messages",
    "messages_prepare",
    "parse_conversation_ref",
    "PollResult",
    "TaskHandle",
    "classify_scan_status",
    "classify_video_status",
    "poll",
    "RetryContext",
    "RetryEnvelope",
    "ConversationJanitor",
    "VendorSession",
    "create_http_session",
    "UploadParams",
    "VendorClient",
    "remove_conversation",
]
