"""Bounded polling of asynchronous vendor jobs.

Used for two kinds of jobs:
- content-safety scans of uploaded files (``classify_scan_status``)
- digital human video generation (``classify_video_status``)

``poll`` waits ``initial_delay`` once, then checks the job status up to
``max_attempts`` times, sleeping ``interval`` between pending checks.
A failed status request is retried on the next iteration unless it was the
last one. ``TimedOut`` is distinct from ``Failed`` so callers can report
them differently.
"""

from __future__ import annotations

import asyncio
import dataclasses
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal, Optional

from ..core.errors import (
    PollFailedError,
    PollTimeoutError,
    TransportError,
    UpstreamBusinessError,
    UpstreamProtocolError,
)
from ..streaming.accumulator import normalize_asset_url

LOGGER = logging.getLogger(__name__)

PollStatus = Literal["pending", "succeeded", "failed", "timed_out"]

StatusFn = Callable[[str], Awaitable[Any]]
SleepFn = Callable[[float], Awaitable[Any]]

# Status-check failures that count as a transient poll iteration.
_TRANSIENT_ERRORS = (TransportError, UpstreamProtocolError, UpstreamBusinessError)

# Provider status codes shared by the scan and creative task endpoints.
PROVIDER_STATUS_FAILED = 0
PROVIDER_STATUS_PENDING = 1
PROVIDER_STATUS_SUCCEEDED = 2


@dataclass(frozen=True, slots=True)
class TaskHandle:
    """Identifier of a submitted job."""

    task_id: str
    created_at: float = field(default_factory=time.time)


@dataclass(frozen=True, slots=True)
class PollResult:
    """Outcome of one status check or of a whole polling run."""

    status: PollStatus
    payload: Any = None
    reason: Optional[str] = None
    attempts: int = 0

    @classmethod
    def pending(cls, payload: Any = None) -> "PollResult":
        return cls(status="pending", payload=payload)

    @classmethod
    def succeeded(cls, payload: Any = None) -> "PollResult":
        return cls(status="succeeded", payload=payload)

    @classmethod
    def failed(cls, reason: str, payload: Any = None) -> "PollResult":
        return cls(status="failed", payload=payload, reason=reason)

    @classmethod
    def timed_out(cls, attempts: int) -> "PollResult":
        return cls(status="timed_out", attempts=attempts)

    @property
    def is_terminal(self) -> bool:
        return self.status != "pending"

    def with_attempts(self, attempts: int) -> "PollResult":
        return dataclasses.replace(self, attempts=attempts)

    def unwrap(self, job_id: str = "") -> Any:
        """Return the success payload or raise the matching poll error."""
        if self.status == "succeeded":
            return self.payload
        if self.status == "failed":
            raise PollFailedError(job_id, self.reason or "unknown error")
        if self.status == "timed_out":
            raise PollTimeoutError(job_id, self.attempts)
        raise ValueError("cannot unwrap a pending poll result")


async def poll(
    job_id: str,
    status_fn: StatusFn,
    classify: Callable[[Any], PollResult],
    *,
    initial_delay: float,
    interval: float,
    max_attempts: int,
    sleep: SleepFn = asyncio.sleep,
    on_pending: Optional[Callable[[PollResult, int], Any]] = None,
) -> PollResult:
    """Poll ``job_id`` until it succeeds, fails or exhausts ``max_attempts``.

    Args:
        job_id: Identifier passed to ``status_fn``.
        status_fn: Coroutine issuing one status request.
        classify: Maps a status payload to pending/succeeded/failed.
        initial_delay: Seconds slept once before the first check.
        interval: Seconds slept between consecutive checks.
        max_attempts: Maximum number of status checks.
        sleep: Injectable sleep coroutine.
        on_pending: Optional callback (sync or async) invoked after each
            pending check with the result and the 1-based attempt number.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    if initial_delay > 0:
        await sleep(initial_delay)

    for attempt in range(1, max_attempts + 1):
        try:
            payload = await status_fn(job_id)
            verdict = classify(payload)
        except _TRANSIENT_ERRORS as exc:
            if attempt == max_attempts:
                LOGGER.warning("Status check %d/%d for %s failed: %s", attempt, max_attempts, job_id, exc)
                return PollResult.failed(
                    f"status check failed after {attempt} attempts: {exc}"
                ).with_attempts(attempt)
            LOGGER.info("Status check %d/%d for %s failed, retrying: %s", attempt, max_attempts, job_id, exc)
            await sleep(interval)
            continue

        if verdict.is_terminal:
            LOGGER.debug("Job %s reached %s after %d check(s)", job_id, verdict.status, attempt)
            return verdict.with_attempts(attempt)

        if on_pending is not None:
            maybe_awaitable = on_pending(verdict, attempt)
            if inspect.isawaitable(maybe_awaitable):
                await maybe_awaitable
        if attempt < max_attempts:
            await sleep(interval)

    LOGGER.warning("Job %s still pending after %d checks", job_id, max_attempts)
    return PollResult.timed_out(max_attempts)


# -----------------------------------------------------------------------------
# Provider classifiers
# -----------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class VideoAsset:
    """Result of a finished video generation job."""

    video_url: str
    poster: Optional[str] = None


@dataclass(frozen=True, slots=True)
class VideoProgress:
    """Pending video job snapshot."""

    status: Any
    current_step: str


def classify_scan_status(data: Any) -> PollResult:
    """Classify a ``/dialog/secResult/batch`` answer for a single URL."""
    if not isinstance(data, dict):
        raise UpstreamProtocolError("Invalid scan status response", raw=repr(data)[:300])
    if not data.get("pollEndFlag"):
        return PollResult.pending(data)
    statuses = data.get("statusList") or []
    first = statuses[0] if statuses and isinstance(statuses[0], dict) else {}
    if first.get("status") == PROVIDER_STATUS_FAILED:
        return PollResult.failed(str(first.get("errorMsg") or "未知错误"), data)
    return PollResult.succeeded(data)


def classify_video_status(data: Any) -> PollResult:
    """Classify a ``/dialog/creative/task/get`` answer for a single task."""
    if not isinstance(data, list) or not data or not isinstance(data[0], dict):
        raise UpstreamProtocolError("Invalid task polling response", raw=repr(data)[:300])
    task = data[0]
    status = task.get("status")
    if status == PROVIDER_STATUS_SUCCEEDED:
        videos = task.get("videos") or []
        video = videos[0] if videos and isinstance(videos[0], dict) else {}
        url = video.get("url")
        if not isinstance(url, str) or not url:
            return PollResult.failed("Task completed but no video found", task)
        poster = video.get("poster")
        return PollResult.succeeded(
            VideoAsset(
                video_url=normalize_asset_url(url),
                poster=normalize_asset_url(poster) if isinstance(poster, str) and poster else None,
            )
        )
    if status == PROVIDER_STATUS_FAILED:
        return PollResult.failed(str(task.get("statusMessage") or "Unknown error"), task)
    step = task.get("step") if isinstance(task.get("step"), dict) else {}
    return PollResult.pending(VideoProgress(status=status, current_step=str(step.get("currentStep") or "unknown")))
