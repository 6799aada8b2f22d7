"""Inbound message preparation.

The vendor reads a single user turn, so multi-turn histories are merged
into one ChatML-framed text (unless the request continues an existing
conversation). File and image parts of the last message become references
that are uploaded before the conversation request is sent.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Optional, Sequence

LOGGER = logging.getLogger(__name__)

_CONVERSATION_REF_PATTERN = re.compile(r"[0-9a-z]{32}")
_MARKDOWN_IMAGE_PATTERN = re.compile(r"!\[.*\]\(.+\)")


def _message_field(message: Any, name: str) -> Any:
    if isinstance(message, dict):
        return message.get(name)
    return getattr(message, name, None)


def _text_parts(content: Any) -> list[str]:
    if isinstance(content, list):
        return [
            str(part.get("text") or "")
            for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        ]
    return ["" if content is None else str(content)]


def extract_ref_file_urls(messages: Sequence[Any]) -> list[str]:
    """Return file/image URLs referenced by the last message, in order."""
    if not messages:
        return []
    content = _message_field(messages[-1], "content")
    urls: list[str] = []
    if isinstance(content, list):
        for part in content:
            if not isinstance(part, dict):
                continue
            kind = part.get("type")
            if kind == "file" and isinstance(part.get("file_url"), dict):
                url = part["file_url"].get("url")
            elif kind == "image_url" and isinstance(part.get("image_url"), dict):
                url = part["image_url"].get("url")
            else:
                continue
            if isinstance(url, str) and url:
                urls.append(url)
    LOGGER.info("Request references %d file(s)", len(urls))
    return urls


def merge_messages(messages: Sequence[Any], *, is_ref_conversation: bool = False) -> str:
    """Collapse the message history into the single text the vendor expects."""
    if is_ref_conversation or len(messages) < 2:
        merged = "".join(
            f"{text}\n"
            for message in messages
            for text in _text_parts(_message_field(message, "content"))
        )
        LOGGER.debug("Pass-through content: %s", merged)
        return merged
    merged = "".join(
        f"<|im_start|>{_message_field(message, 'role') or 'user'}\n{text}<|im_end|>\n"
        for message in messages
        for text in _text_parts(_message_field(message, "content"))
    )
    merged = _MARKDOWN_IMAGE_PATTERN.sub("", merged)
    LOGGER.debug("Merged conversation: %s", merged)
    return merged


def messages_prepare(
    messages: Sequence[Any],
    refs: Sequence[dict[str, Any]] = (),
    *,
    is_ref_conversation: bool = False,
    ext: Optional[dict[str, Any]] = None,
) -> list[dict[str, Any]]:
    """Build the vendor ``contents`` array: one user text part plus references."""
    head: dict[str, Any] = {
        "content": merge_messages(messages, is_ref_conversation=is_ref_conversation),
        "contentType": "text",
        "role": "user",
    }
    if ext is not None:
        head["ext"] = ext
    return [head, *refs]


def parse_conversation_ref(conversation_id: Optional[str]) -> tuple[str, str]:
    """Split ``sessionId-msgId`` into its parts; invalid references are ignored."""
    if not conversation_id or not _CONVERSATION_REF_PATTERN.search(conversation_id):
        return "", ""
    session_id, _, parent_msg_id = conversation_id.partition("-")
    return session_id, parent_msg_id
