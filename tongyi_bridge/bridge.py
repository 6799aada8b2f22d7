"""Bridge facade.

``Bridge`` is what the HTTP layer talks to. Per request it:
1. picks one vendor credential from the ``Authorization`` header
2. binds a request id for logging and timing
3. dispatches to the orchestrator (chat, agent consultation, images)

Streaming entry points return an async iterator of SSE frames; the request
scope stays bound while those frames are produced.
"""

from __future__ import annotations

import logging
import random
from typing import Any, AsyncIterator, Optional, Sequence, Union

from .core.config import Valves
from .core.errors import AuthenticationError
from .core.logging_system import RequestLogger
from .core.timing_logger import (
    clear_timing_context,
    clear_timing_events,
    close_timing_file,
    configure_timing_file,
    set_timing_context,
)
from .core.utils import pick_credential, token_split
from .models.variants import DEFAULT_MODEL
from .requests.orchestrator import CompletionOrchestrator

LOGGER = logging.getLogger(__name__)

CompletionResult = Union[dict[str, Any], AsyncIterator[str]]


class Bridge:
    """Translate OpenAI-style calls into vendor conversations."""

    def __init__(
        self,
        valves: Optional[Valves] = None,
        *,
        orchestrator: Optional[CompletionOrchestrator] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.valves = valves or Valves()
        self.orchestrator = orchestrator or CompletionOrchestrator(self.valves)
        self._rng = rng
        RequestLogger.install(self.valves.LOG_LEVEL)
        if self.valves.ENABLE_TIMING_LOG and not configure_timing_file(self.valves.TIMING_LOG_FILE):
            LOGGER.warning("Timing log file %s could not be opened", self.valves.TIMING_LOG_FILE)

    # ------------------------------------------------------------------
    # Request scope
    # ------------------------------------------------------------------

    def ticket_for(self, authorization: Optional[str]) -> str:
        """Return the credential to use for one request."""
        tokens = token_split(authorization)
        if not tokens:
            raise AuthenticationError("Missing vendor credentials in the Authorization header")
        return pick_credential(tokens, self._rng)

    def _enter_request(self, request_id: str) -> None:
        set_timing_context(request_id, self.valves.ENABLE_TIMING_LOG)

    def _leave_request(self, request_id: str) -> None:
        clear_timing_context()
        clear_timing_events(request_id)
        RequestLogger.cleanup(request_id)

    async def _scoped_frames(self, frames: AsyncIterator[str], request_id: str) -> AsyncIterator[str]:
        # Runs in the response task, so the ids are set without a reset token.
        RequestLogger.request_id.set(request_id)
        self._enter_request(request_id)
        try:
            async for frame in frames:
                yield frame
        finally:
            aclose = getattr(frames, "aclose", None)
            if aclose is not None:
                await aclose()
            self._leave_request(request_id)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def chat_completion(
        self,
        *,
        model: Optional[str],
        messages: Sequence[Any],
        authorization: Optional[str],
        stream: bool = False,
        conversation_id: Optional[str] = None,
        search_type: str = "",
    ) -> CompletionResult:
        """Run one chat completion; ``stream`` selects the result shape."""
        ticket = self.ticket_for(authorization)
        with RequestLogger.bind() as request_id:
            self._enter_request(request_id)
            LOGGER.info("Chat completion model=%s stream=%s messages=%d", model or DEFAULT_MODEL, stream, len(messages))
            if not stream:
                try:
                    return await self.orchestrator.create_completion(
                        model,
                        messages,
                        ticket,
                        conversation_id=conversation_id,
                        search_type=search_type,
                    )
                finally:
                    self._leave_request(request_id)
            try:
                frames = await self.orchestrator.create_completion_stream(
                    model,
                    messages,
                    ticket,
                    conversation_id=conversation_id,
                    search_type=search_type,
                )
            except BaseException:
                self._leave_request(request_id)
                raise
            clear_timing_context()
            return self._scoped_frames(frames, request_id)

    async def agent_consultation(
        self,
        *,
        model: Optional[str],
        messages: Sequence[Any],
        authorization: Optional[str],
        stream: bool = False,
        conversation_id: Optional[str] = None,
    ) -> CompletionResult:
        """Consult an agent variant; defaults to the legal agent."""
        return await self.chat_completion(
            model=model or "law",
            messages=messages,
            authorization=authorization,
            stream=stream,
            conversation_id=conversation_id,
        )

    async def generate_images(self, *, prompt: str, authorization: Optional[str]) -> list[str]:
        ticket = self.ticket_for(authorization)
        with RequestLogger.bind() as request_id:
            self._enter_request(request_id)
            try:
                return await self.orchestrator.generate_images(prompt, ticket)
            finally:
                self._leave_request(request_id)

    async def aclose(self) -> None:
        """Wait for pending conversation cleanup and release timing output."""
        await self.orchestrator.janitor.drain()
        close_timing_file()
