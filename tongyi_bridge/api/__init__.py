"""HTTP surface.

- app: FastAPI application factory with the OpenAI-compatible routes
- transforms: pydantic request bodies and response shaping
"""

from __future__ import annotations

from .app import create_app
from .transforms import CompletionRequest, ConsultationRequest, ImageGenerationRequest

__all__ = [
    "create_app",
    "CompletionRequest",
    "ConsultationRequest",
    "ImageGenerationRequest",
]
