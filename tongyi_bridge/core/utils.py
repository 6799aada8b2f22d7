"""Small shared helpers: credentials, cookies, identifiers and text."""

from __future__ import annotations

import logging
import random
import time
import uuid
from typing import Optional, Sequence

from .config import ALIYUN_TICKET_MIN_LENGTH

LOGGER = logging.getLogger(__name__)


def token_split(authorization: Optional[str]) -> list[str]:
    """Split an ``Authorization: Bearer t1,t2`` header into its credentials."""
    if not authorization:
        return []
    raw = authorization.strip()
    if raw.lower().startswith("bearer "):
        raw = raw[len("bearer "):]
    return [token.strip() for token in raw.split(",") if token.strip()]


def pick_credential(tokens: Sequence[str], rng: Optional[random.Random] = None) -> str:
    """Return one credential chosen uniformly at random.

    Pure apart from the random source, so callers may pass a seeded ``rng``.
    """
    if not tokens:
        raise ValueError("no credentials supplied")
    chooser = rng or random
    return tokens[chooser.randrange(len(tokens))]


def generate_cookie(ticket: str) -> str:
    """Build the vendor cookie for a login ticket."""
    cookie_name = (
        "login_aliyunid_ticket" if len(ticket) > ALIYUN_TICKET_MIN_LENGTH else "tongyi_sso_ticket"
    )
    return "; ".join(
        [
            f"{cookie_name}={ticket}",
            "aliyun_choice=intl",
            "_samesite_flag_=true",
            f"t={uuid.uuid4().hex}",
        ]
    )


def new_uuid(separator: bool = True) -> str:
    value = str(uuid.uuid4())
    return value if separator else value.replace("-", "")


def unix_timestamp() -> int:
    return int(time.time())


def _truncate(text: str, limit: int = 300) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"... ({len(text) - limit} more chars)"
