"""Request-scoped logging.

This module handles logging for the bridge:
- RequestLogger: contextvars-based request/conversation tagging
- Console handler with a uniform format for all ``tongyi_bridge`` loggers
- Bounded in-memory buffer of structured events per request, readable
  with ``get_events`` until the request is cleaned up

Modules keep using ``logging.getLogger(__name__)``; ``RequestLogger.install``
attaches the filter and handlers to the package logger once at startup.
"""

from __future__ import annotations

import logging
import sys
import threading
import time
import traceback
import uuid
from collections import deque
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional

LOGGER = logging.getLogger(__name__)

PACKAGE_LOGGER_NAME = "tongyi_bridge"


class _RequestContextFilter(logging.Filter):
    """Attach the current request identifiers to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = RequestLogger.request_id.get() or "-"
        record.conversation_id = RequestLogger.conversation_id.get() or "-"
        return True


class _MemoryHandler(logging.Handler):
    """Store structured events in the per-request buffer."""

    def emit(self, record: logging.LogRecord) -> None:
        rid = getattr(record, "request_id", None)
        if not rid or rid == "-":
            return
        RequestLogger.append_event(rid, RequestLogger.build_event(record))


class RequestLogger:
    """Per-request logging context.

    The logger tracks two identifiers via contextvars:
    - request_id: unique id of one inbound completion request.
    - conversation_id: vendor ``sessionId-msgId`` once it becomes known.

    Buffers are released explicitly with ``cleanup`` when a request ends.
    """

    request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
    conversation_id: ContextVar[Optional[str]] = ContextVar("conversation_id", default=None)
    max_lines: int = 2000
    logs: Dict[str, deque[dict[str, Any]]] = {}
    _state_lock = threading.Lock()
    _installed = False
    _console_formatter = logging.Formatter(
        "%(asctime)s.%(msecs)03d | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d "
        "[req=%(request_id)s] - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    @classmethod
    def install(cls, level: str | int = logging.INFO, *, stream: Any = None) -> logging.Logger:
        """Wire console and memory handlers onto the package logger.

        Safe to call repeatedly; later calls only adjust the level.
        """
        logger = logging.getLogger(PACKAGE_LOGGER_NAME)
        logger.setLevel(level)
        with cls._state_lock:
            if cls._installed:
                return logger
            context_filter = _RequestContextFilter()
            console = logging.StreamHandler(stream or sys.stderr)
            console.setFormatter(cls._console_formatter)
            console.addFilter(context_filter)
            memory = _MemoryHandler()
            memory.addFilter(context_filter)
            logger.addHandler(console)
            logger.addHandler(memory)
            logger.propagate = False
            cls._installed = True
        return logger

    @classmethod
    def new_request_id(cls) -> str:
        return uuid.uuid4().hex[:16]

    @classmethod
    @contextmanager
    def bind(cls, request_id: Optional[str] = None) -> Iterator[str]:
        """Bind a request id for the duration of the block."""
        rid = request_id or cls.new_request_id()
        rid_token = cls.request_id.set(rid)
        conv_token = cls.conversation_id.set(None)
        try:
            yield rid
        finally:
            cls.conversation_id.reset(conv_token)
            cls.request_id.reset(rid_token)

    @classmethod
    def set_conversation(cls, conversation_id: Optional[str]) -> None:
        cls.conversation_id.set(conversation_id)

    @classmethod
    def build_event(cls, record: logging.LogRecord) -> dict[str, Any]:
        """Return a structured event extracted from a LogRecord."""
        event: dict[str, Any] = {
            "created": float(getattr(record, "created", time.time())),
            "level": record.levelname,
            "logger": record.name,
            "request_id": getattr(record, "request_id", None),
            "conversation_id": getattr(record, "conversation_id", None),
            "func": record.funcName,
            "lineno": record.lineno,
            "message": record.getMessage(),
        }
        if record.exc_info:
            event["exception"] = "".join(traceback.format_exception(*record.exc_info))
        return event

    @classmethod
    def append_event(cls, request_id: str, event: dict[str, Any]) -> None:
        with cls._state_lock:
            buffer = cls.logs.get(request_id)
            if buffer is None:
                buffer = cls.logs[request_id] = deque(maxlen=cls.max_lines)
            buffer.append(event)

    @classmethod
    def get_events(cls, request_id: str) -> list[dict[str, Any]]:
        with cls._state_lock:
            buffer = cls.logs.get(request_id)
            return list(buffer) if buffer else []

    @classmethod
    def cleanup(cls, request_id: str) -> None:
        with cls._state_lock:
            cls.logs.pop(request_id, None)
