"""Model variant registry.

Each public model name maps to a ``VariantProfile`` describing where its
conversation requests go and how their payloads differ:
- ``qwen``: general chat on the qianwen host (default for unknown names)
- ``law``: legal consultation agent
- ``solve_txt`` / ``solve_pic``: problem solving agent
- ``Digital-people``: digital human video workflow (agent id from valves)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Optional

from ..core.config import FAKE_HEADERS, LAW_AGENT_ID, SOLVE_AGENT_ID, Valves
from ..core.utils import generate_cookie, new_uuid

VariantKind = Literal["chat", "video"]

DEFAULT_MODEL = "qwen"
DIGITAL_PEOPLE_MODEL = "Digital-people"

_AGENT_ORIGIN = "https://www.tongyi.com"
_AGENT_REFERER = "https://www.tongyi.com/discover/chat?agentId={agent_id}"

_AGENT_CONTENT_EXT: dict[str, Any] = {
    "searchType": "",
    "pptGenerate": False,
    "deepThink": False,
    "deepResearch": False,
}


@dataclass(frozen=True, slots=True)
class VariantProfile:
    """Per-model request shape and stream interpretation flags."""

    name: str
    host: Literal["qwen", "agent"]
    kind: VariantKind = "chat"
    agent_id: Optional[str] = None
    # Treat parts without a contentType as text while streaming.
    accept_untyped_content: bool = False
    # Emit text2image content before the terminal record.
    image_streams_incrementally: bool = False

    @property
    def is_agent(self) -> bool:
        return self.host == "agent"

    def resolve_agent_id(self, valves: Valves) -> str:
        if self.kind == "video":
            return valves.DIGITAL_PEOPLE_AGENT_ID
        return self.agent_id or ""

    def base_url(self, valves: Valves) -> str:
        base = valves.AGENT_BASE_URL if self.is_agent else valves.QWEN_BASE_URL
        return base.rstrip("/")

    def headers(self, valves: Valves, ticket: str, *, accept: Optional[str] = None) -> dict[str, str]:
        headers = dict(FAKE_HEADERS)
        headers["Cookie"] = generate_cookie(ticket)
        headers["Content-Type"] = "application/json"
        if accept:
            headers["Accept"] = accept
        if self.is_agent:
            headers["Origin"] = _AGENT_ORIGIN
            headers["Referer"] = _AGENT_REFERER.format(agent_id=self.resolve_agent_id(valves))
        return headers

    def build_params(self, valves: Valves, *, search_type: str = "") -> dict[str, Any]:
        if not self.is_agent:
            return {"fileUploadBatchId": new_uuid(), "searchType": search_type}
        return {
            "agentId": self.resolve_agent_id(valves),
            "searchType": "",
            "pptGenerate": False,
            "bizScene": "",
            "bizSceneInfo": {},
            "specifiedModel": "",
            "deepThink": False,
            "deepResearch": False,
        }

    def content_ext(self) -> Optional[dict[str, Any]]:
        return dict(_AGENT_CONTENT_EXT) if self.is_agent else None


VARIANTS: dict[str, VariantProfile] = {
    profile.name: profile
    for profile in (
        VariantProfile(name="qwen", host="qwen"),
        VariantProfile(
            name="law",
            host="agent",
            agent_id=LAW_AGENT_ID,
            accept_untyped_content=True,
        ),
        VariantProfile(
            name="solve_txt",
            host="agent",
            agent_id=SOLVE_AGENT_ID,
            accept_untyped_content=True,
        ),
        VariantProfile(
            name="solve_pic",
            host="agent",
            agent_id=SOLVE_AGENT_ID,
            accept_untyped_content=True,
        ),
        VariantProfile(
            name=DIGITAL_PEOPLE_MODEL,
            host="agent",
            kind="video",
        ),
    )
}


def resolve_variant(model: Optional[str]) -> VariantProfile:
    """Return the profile for ``model``; unknown names fall back to ``qwen``."""
    if model and model in VARIANTS:
        return VARIANTS[model]
    return VARIANTS[DEFAULT_MODEL]
