"""FastAPI application exposing the OpenAI-compatible routes.

Routes:
- POST /v1/chat/completions
- POST /v1/agent/consultations
- POST /v1/images/generations

Streaming responses are ``text/event-stream`` frames ending with
``data: [DONE]``. Bridge errors become ``{"error": {...}}`` bodies with the
status carried by the error class.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse, StreamingResponse

from ..bridge import Bridge, CompletionResult
from ..core.errors import TongyiBridgeError
from .transforms import CompletionRequest, ConsultationRequest, ImageGenerationRequest, images_response

LOGGER = logging.getLogger(__name__)

_SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


def _render(result: CompletionResult) -> Any:
    if isinstance(result, dict):
        return result
    return StreamingResponse(result, media_type="text/event-stream", headers=_SSE_HEADERS)


def create_app(bridge: Optional[Bridge] = None) -> FastAPI:
    """Build the application around ``bridge`` (a default one when omitted)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await app.state.bridge.aclose()

    app = FastAPI(title="tongyi-bridge", lifespan=lifespan)
    app.state.bridge = bridge or Bridge()

    @app.exception_handler(TongyiBridgeError)
    async def _bridge_error(request: Request, exc: TongyiBridgeError) -> JSONResponse:
        LOGGER.warning("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=exc.status_hint, content=exc.to_payload())

    @app.post("/v1/chat/completions")
    async def chat_completions(
        body: CompletionRequest,
        authorization: Optional[str] = Header(default=None),
    ) -> Any:
        result = await app.state.bridge.chat_completion(
            model=body.model,
            messages=body.messages,
            authorization=authorization,
            stream=body.stream,
            conversation_id=body.conversation_id,
            search_type=body.search_type,
        )
        return _render(result)

    @app.post("/v1/agent/consultations")
    async def agent_consultations(
        body: ConsultationRequest,
        authorization: Optional[str] = Header(default=None),
    ) -> Any:
        result = await app.state.bridge.agent_consultation(
            model=body.model,
            messages=body.messages,
            authorization=authorization,
            stream=body.stream,
            conversation_id=body.conversation_id,
        )
        return _render(result)

    @app.post("/v1/images/generations")
    async def images_generations(
        body: ImageGenerationRequest,
        authorization: Optional[str] = Header(default=None),
    ) -> Any:
        urls = await app.state.bridge.generate_images(prompt=body.prompt, authorization=authorization)
        return images_response(urls)

    return app
