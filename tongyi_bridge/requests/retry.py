"""Retry envelope around one logical vendor request.

The envelope re-runs a whole unit of work (open session, send, transcode,
schedule cleanup) after a transport or protocol failure, sleeping a fixed
backoff between attempts. Business errors and file reference errors are
never retried. Exhausted attempts re-raise the last error.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from ..core.errors import TransportError, UpstreamProtocolError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (TransportError, UpstreamProtocolError)


@dataclass(frozen=True, slots=True)
class RetryContext:
    """Attempt bookkeeping handed to the unit of work."""

    attempt: int
    max_attempts: int
    backoff_delay: float

    @property
    def is_last(self) -> bool:
        return self.attempt >= self.max_attempts


class RetryEnvelope:
    """Run a unit of work up to ``max_attempts`` times with a fixed backoff."""

    def __init__(
        self,
        *,
        max_attempts: int = 4,
        backoff: float = 5.0,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        retry_on: tuple[type[BaseException], ...] = RETRYABLE_ERRORS,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.backoff = max(0.0, backoff)
        self._sleep = sleep or asyncio.sleep
        self.retry_on = retry_on

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        LOGGER.warning(
            "Attempt %d/%d failed (%s: %s); retrying in %.1fs",
            retry_state.attempt_number,
            self.max_attempts,
            type(exc).__name__ if exc else "unknown",
            exc,
            self.backoff,
        )

    async def run(self, unit: Callable[[RetryContext], Awaitable[T]], *, label: str = "request") -> T:
        """Execute ``unit`` until it succeeds or attempts run out."""
        retryer = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_fixed(self.backoff),
            retry=retry_if_exception_type(self.retry_on),
            reraise=True,
            sleep=self._sleep,
            before_sleep=self._log_retry,
        )
        async for attempt in retryer:
            with attempt:
                context = RetryContext(
                    attempt=attempt.retry_state.attempt_number,
                    max_attempts=self.max_attempts,
                    backoff_delay=self.backoff,
                )
                if context.attempt > 1:
                    LOGGER.info("Retrying %s (attempt %d/%d)", label, context.attempt, self.max_attempts)
                return await unit(context)
        raise RuntimeError("retry loop exited without a result")  # pragma: no cover
