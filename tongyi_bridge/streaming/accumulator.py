"""Content accumulation and delta extraction.

The vendor repeats the full answer in every record, may cut a multi-byte
character at a buffer boundary (leaving U+FFFD in the text) and may resend
the whole answer in the terminal record. ``ContentAccumulator`` turns that
into append-only deltas:

- Only the raw text beyond the consumed offset is emitted
- Text at and after a replacement marker is held back until a later record
  carries the repaired character
- Generated image URLs lose their signed query strings
- A non-incremental terminal record replaces the aggregate
- Moderation and error notices are appended to the terminal delta
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from ..core.config import DEFAULT_ERROR_SUFFIX_TEMPLATE, DEFAULT_MODERATION_NOTICE
from ..models.variants import VariantProfile
from .events import ConversationRecord

LOGGER = logging.getLogger(__name__)

REPLACEMENT_MARKER = "\ufffd"

CONTENT_TYPE_TEXT = "text"
CONTENT_TYPE_IMAGE = "text2image"
_ACCUMULATED_CONTENT_TYPES = frozenset({CONTENT_TYPE_TEXT, CONTENT_TYPE_IMAGE})

ASSET_URL_PATTERN = re.compile(
    r"https?://[-a-zA-Z0-9@:%._\+~#=]{2,256}\.[a-z]{2,6}\b([-a-zA-Z0-9@:%_\+.~#?&//=\,]*)",
    re.IGNORECASE,
)


# -----------------------------------------------------------------------------
# URL normalization
# -----------------------------------------------------------------------------

def normalize_asset_url(url: str) -> str:
    """Drop the query string of ``url``. Idempotent."""
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        return url
    return urlunsplit((parts.scheme, parts.netloc, parts.path or "/", "", parts.fragment))


def strip_asset_url_queries(text: str) -> str:
    """Normalize every absolute URL embedded in ``text``."""
    return ASSET_URL_PATTERN.sub(lambda match: normalize_asset_url(match.group(0)), text)


def find_asset_urls(text: str) -> list[str]:
    """Return normalized URLs found in ``text``, first occurrence order, deduplicated."""
    seen: list[str] = []
    for match in ASSET_URL_PATTERN.finditer(text):
        url = normalize_asset_url(match.group(0))
        if url not in seen:
            seen.append(url)
    return seen


# -----------------------------------------------------------------------------
# State
# -----------------------------------------------------------------------------

@dataclass(slots=True)
class StreamState:
    """Per-stream accumulation state; owned by a single transcoding operation."""

    content: str = ""
    consumed: int = 0
    content_type: Optional[str] = None
    pending_boundary: Optional[int] = None
    conversation_id: Optional[str] = None
    session_id: Optional[str] = None
    finished: bool = False


@dataclass(frozen=True, slots=True)
class DeltaStep:
    """Result of feeding one record."""

    delta: str
    terminal: bool = False
    conversation_id: Optional[str] = None
    replaced: bool = False


class ContentAccumulator:
    """Convert cumulative vendor records into append-only deltas."""

    def __init__(
        self,
        variant: Optional[VariantProfile] = None,
        *,
        moderation_notice: str = DEFAULT_MODERATION_NOTICE,
        error_suffix_template: str = DEFAULT_ERROR_SUFFIX_TEMPLATE,
    ) -> None:
        self.accept_untyped_content = bool(variant and variant.accept_untyped_content)
        self.image_streams_incrementally = bool(variant and variant.image_streams_incrementally)
        self.moderation_notice = moderation_notice
        self.error_suffix_template = error_suffix_template
        self.state = StreamState()

    @property
    def content(self) -> str:
        return self.state.content

    @property
    def conversation_id(self) -> Optional[str]:
        return self.state.conversation_id

    def feed(self, record: ConversationRecord) -> DeltaStep:
        """Fold ``record`` into the state and return the new delta."""
        state = self.state
        if state.finished:
            LOGGER.debug("Ignoring record received after the terminal record")
            return DeltaStep(delta="", terminal=True, conversation_id=state.conversation_id)
        if state.conversation_id is None and record.conversation_id:
            state.conversation_id = record.conversation_id
        if state.session_id is None and record.session_id:
            state.session_id = record.session_id
        if record.content_type:
            state.content_type = record.content_type

        text = self._visible_text(record)
        marker = text.find(REPLACEMENT_MARKER)
        safe_end = len(text) if marker == -1 else marker
        state.pending_boundary = None if marker == -1 else marker
        raw_chunk = text[state.consumed:safe_end] if safe_end > state.consumed else ""
        chunk = raw_chunk
        if chunk and record.content_type == CONTENT_TYPE_IMAGE:
            chunk = strip_asset_url_queries(chunk)

        if not record.is_terminal:
            if not chunk or not self._streams_before_terminal(record.content_type):
                return DeltaStep(delta="", conversation_id=state.conversation_id)
            state.content += chunk
            state.consumed = safe_end
            return DeltaStep(delta=chunk, conversation_id=state.conversation_id)

        replaced = False
        replacement = self._full_resend_text(record)
        if replacement:
            if replacement.startswith(state.content):
                delta = replacement[len(state.content):]
            else:
                LOGGER.debug(
                    "Terminal resend diverges from streamed content (%d vs %d chars)",
                    len(replacement),
                    len(state.content),
                )
                delta = replacement
            state.content = replacement
            replaced = True
        else:
            delta = chunk
            state.content += chunk
        state.consumed = max(state.consumed, safe_end)

        suffix = self._terminal_notices(record)
        state.content += suffix
        state.finished = True
        return DeltaStep(
            delta=delta + suffix,
            terminal=True,
            conversation_id=state.conversation_id,
            replaced=replaced,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _visible_text(record: ConversationRecord) -> str:
        pieces: list[str] = []
        for part in record.contents:
            if part.content_type not in _ACCUMULATED_CONTENT_TYPES:
                continue
            if part.text is None:
                continue
            pieces.append(part.text)
        return "".join(pieces)

    def _streams_before_terminal(self, content_type: Optional[str]) -> bool:
        if content_type == CONTENT_TYPE_TEXT:
            return True
        if content_type is None:
            return self.accept_untyped_content
        if content_type == CONTENT_TYPE_IMAGE:
            return self.image_streams_incrementally
        return False

    @staticmethod
    def _full_resend_text(record: ConversationRecord) -> str:
        if record.incremental is not False or not record.contents:
            return ""
        return "".join(
            part.text
            for part in record.contents
            if part.role == "assistant"
            and part.content_type == CONTENT_TYPE_TEXT
            and part.status == "finished"
            and part.text is not None
        )

    def _terminal_notices(self, record: ConversationRecord) -> str:
        suffix = ""
        if not record.can_share:
            suffix += self.moderation_notice
        if record.error_code:
            suffix += self.error_suffix_template.format(error_code=record.error_code)
        return suffix
