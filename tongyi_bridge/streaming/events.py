"""Typed vendor stream records.

The conversation endpoint sends one JSON object per SSE event. This module
decodes those objects into pydantic models at the parser boundary so the
accumulator never touches untyped dictionaries:
- ``ContentPart``: one entry of the ``contents`` array
- ``ConversationRecord``: the full event payload
- ``decode_vendor_record``: JSON -> record, skipping unknown shapes
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..core.errors import UpstreamProtocolError
from ..core.utils import _truncate
from .sse_parser import VendorEvent

LOGGER = logging.getLogger(__name__)

TERMINAL_STATUS = "finished"

# Keys that identify a conversation record; objects with none of them are skipped.
_RECORD_KEYS = frozenset({"sessionId", "msgId", "contents", "msgStatus", "errorCode"})


class ContentPart(BaseModel):
    """One part of a record's ``contents`` array."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    role: Optional[str] = None
    content_type: Optional[str] = Field(default=None, alias="contentType")
    content: Any = None
    status: Optional[str] = None
    card_code: Optional[str] = Field(default=None, alias="cardCode")

    @property
    def text(self) -> Optional[str]:
        return self.content if isinstance(self.content, str) else None


class ConversationRecord(BaseModel):
    """Decoded vendor conversation event."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    session_id: Optional[str] = Field(default=None, alias="sessionId")
    msg_id: Optional[str] = Field(default=None, alias="msgId")
    contents: list[ContentPart] = Field(default_factory=list)
    content_type: Optional[str] = Field(default=None, alias="contentType")
    content_from: Optional[str] = Field(default=None, alias="contentFrom")
    msg_status: Optional[str] = Field(default=None, alias="msgStatus")
    can_share: bool = Field(default=True, alias="canShare")
    error_code: Any = Field(default=None, alias="errorCode")
    error_msg: Optional[str] = Field(default=None, alias="errorMsg")
    incremental: Optional[bool] = None

    @field_validator("contents", mode="before")
    @classmethod
    def _drop_non_object_parts(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, list):
            return [part for part in value if isinstance(part, dict)]
        return value

    @field_validator("can_share", mode="before")
    @classmethod
    def _default_can_share(cls, value: Any) -> Any:
        return True if value is None else value

    @property
    def is_terminal(self) -> bool:
        return self.msg_status == TERMINAL_STATUS

    @property
    def conversation_id(self) -> Optional[str]:
        if self.session_id and self.msg_id:
            return f"{self.session_id}-{self.msg_id}"
        return None


def decode_vendor_record(event: VendorEvent) -> Optional[ConversationRecord]:
    """Decode one SSE event into a ConversationRecord.

    Returns None for the ``[DONE]`` sentinel and for JSON objects that do not
    look like conversation records. Raises UpstreamProtocolError when the
    payload is not valid JSON or a record has an invalid shape.
    """
    if event.is_done:
        return None
    try:
        payload = json.loads(event.data)
    except ValueError as exc:
        raise UpstreamProtocolError(
            f"Stream response invalid: {_truncate(event.data)}", raw=event.data
        ) from exc
    if not isinstance(payload, dict) or not (_RECORD_KEYS & payload.keys()):
        LOGGER.debug("Skipping non-conversation event: %s", _truncate(event.data))
        return None
    try:
        return ConversationRecord.model_validate(payload)
    except ValidationError as exc:
        raise UpstreamProtocolError(
            f"Stream record has an unexpected shape: {exc.error_count()} error(s)",
            raw=event.data,
        ) from exc
