"""Core infrastructure: configuration, errors, logging, timing and helpers."""

from __future__ import annotations

from .config import Valves
from .errors import (
    AuthenticationError,
    FileReferenceError,
    PollFailedError,
    PollTimeoutError,
    TongyiBridgeError,
    TransportError,
    UpstreamBusinessError,
    UpstreamProtocolError,
    check_result,
)
from .logging_system import RequestLogger
from .timing_logger import timed, timing_mark, timing_scope

__all__ = [
    "Valves",
    "TongyiBridgeError",
    "AuthenticationError",
    "TransportError",
    "UpstreamProtocolError",
    "UpstreamBusinessError",
    "FileReferenceError",
    "PollFailedError",
    "PollTimeoutError",
    "check_result",
    "RequestLogger",
    "timed",
    "timing_mark",
    "timing_scope",
]
