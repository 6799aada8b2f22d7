"""Tongyi web-chat bridge.

Translates OpenAI-style chat completion requests into vendor web-chat
conversations and the vendor's event stream back into ``chat.completion``
objects or ``chat.completion.chunk`` SSE frames.
"""

from __future__ import annotations

from .bridge import Bridge
from .core.config import Valves

__version__ = "0.3.0"

__all__ = ["Bridge", "Valves", "__version__"]
