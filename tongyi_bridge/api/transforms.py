"""Inbound request bodies of the HTTP surface."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..core.utils import unix_timestamp


# -----------------------------------------------------------------------------
# Pydantic Body Classes
# -----------------------------------------------------------------------------

class CompletionRequest(BaseModel):
    """
    Body of an OpenAI-style chat completion request.

    ``conversation_id`` continues an existing vendor conversation
    (``sessionId-msgId`` as returned in a previous completion id).
    """
    model: Optional[str] = None
    messages: List[Dict[str, Any]] = Field(min_length=1)
    stream: bool = False
    conversation_id: Optional[str] = None
    search_type: str = ""
    model_config = ConfigDict(extra="allow")  # tolerate unused OpenAI parameters


class ConsultationRequest(BaseModel):
    """Body of an agent consultation request (defaults to the legal agent)."""
    model: Optional[str] = None
    messages: List[Dict[str, Any]] = Field(min_length=1)
    stream: bool = False
    conversation_id: Optional[str] = None
    model_config = ConfigDict(extra="allow")


class ImageGenerationRequest(BaseModel):
    prompt: str = Field(min_length=1)
    model: Optional[str] = None
    model_config = ConfigDict(extra="allow")


def images_response(urls: List[str]) -> Dict[str, Any]:
    """Shape generated image URLs like OpenAI's images API."""
    return {"created": unix_timestamp(), "data": [{"url": url} for url in urls]}
