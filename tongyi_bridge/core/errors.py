"""Error hierarchy for the bridge.

Every failure surfaced by the bridge derives from ``TongyiBridgeError``:
- AuthenticationError: inbound request without credentials
- TransportError: connect/stream failures and HTTP status >= 400
- UpstreamProtocolError: malformed vendor payloads
- UpstreamBusinessError: well-formed payloads reporting failure
- FileReferenceError: file reference pipeline failures (typed by ``kind``)
- PollFailedError / PollTimeoutError: async job outcomes

Only TransportError and UpstreamProtocolError are retried by the envelope.
"""

from __future__ import annotations

import logging
from typing import Any, Literal, Optional

LOGGER = logging.getLogger(__name__)

FileReferenceErrorKind = Literal[
    "oversize",
    "unreachable",
    "upload_failed",
    "scan_failed",
    "scan_timeout",
]


class TongyiBridgeError(RuntimeError):
    """Base class for bridge failures."""

    status_hint: int = 502

    def __init__(self, message: str, *, detail: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_payload(self) -> dict[str, Any]:
        """Return an OpenAI-style error body for HTTP callers."""
        return {
            "error": {
                "message": self.message,
                "type": type(self).__name__,
            }
        }


class AuthenticationError(TongyiBridgeError):
    """Inbound request carries no usable vendor credential."""

    status_hint = 401


class TransportError(TongyiBridgeError):
    """Network failure or non-success HTTP status from the vendor."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        detail: Optional[Any] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.status = status


class UpstreamProtocolError(TongyiBridgeError):
    """Vendor payload could not be decoded."""

    def __init__(self, message: str, *, raw: Optional[str] = None) -> None:
        super().__init__(message, detail=raw)
        self.raw = raw


class UpstreamBusinessError(TongyiBridgeError):
    """Vendor answered with a well-formed payload that reports a failure."""

    def __init__(
        self,
        message: str,
        *,
        error_code: Optional[str] = None,
        error_msg: Optional[str] = None,
        detail: Optional[Any] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.error_code = error_code
        self.error_msg = error_msg


class FileReferenceError(TongyiBridgeError):
    """A referenced file could not be validated, uploaded or scanned."""

    status_hint = 400

    def __init__(
        self,
        kind: FileReferenceErrorKind,
        message: str,
        *,
        url: Optional[str] = None,
    ) -> None:
        super().__init__(message, detail=url)
        self.kind = kind
        self.url = url

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["error"]["code"] = self.kind
        return payload


class PollFailedError(TongyiBridgeError):
    """Provider reported the polled job as failed."""

    def __init__(self, job_id: str, reason: str) -> None:
        super().__init__(f"Job {job_id} failed: {reason}")
        self.job_id = job_id
        self.reason = reason


class PollTimeoutError(TongyiBridgeError):
    """Polled job did not reach a terminal state within the attempt budget."""

    status_hint = 504

    def __init__(self, job_id: str, attempts: int) -> None:
        super().__init__(f"Job {job_id} still pending after {attempts} status checks")
        self.job_id = job_id
        self.attempts = attempts


# -----------------------------------------------------------------------------
# Vendor envelope checks
# -----------------------------------------------------------------------------

def check_result(payload: Any, *, endpoint: str = "") -> Any:
    """Validate a vendor JSON envelope and return its ``data`` member.

    The vendor wraps JSON answers as ``{success, errorCode, errorMsg, data}``.
    A boolean ``success`` of False is a business failure. Payloads without a
    boolean ``success`` flag are returned unchanged.
    """
    if not isinstance(payload, dict):
        raise UpstreamProtocolError(
            f"Unexpected response body from {endpoint or 'vendor'}",
            raw=repr(payload)[:500],
        )
    success = payload.get("success")
    if not isinstance(success, bool):
        return payload
    if success:
        return payload.get("data")
    error_code = payload.get("errorCode")
    error_msg = payload.get("errorMsg")
    LOGGER.warning("Vendor rejected %s: %s-%s", endpoint or "request", error_code, error_msg)
    raise UpstreamBusinessError(
        f"请求失败: {error_code}-{error_msg}",
        error_code=str(error_code) if error_code is not None else None,
        error_msg=str(error_msg) if error_msg is not None else None,
    )
