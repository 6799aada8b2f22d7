"""Per-request timing events with optional JSONL output.

Provides:
- @timed decorator for coroutine and plain function entry/exit
- timing_scope() context manager for code blocks
- timing_mark() for single points (first vendor byte, first frame, ...)

Events are kept in memory per request id and, when a file is configured,
appended to it as one JSON object per line:

    {"ts": "...Z", "perf_ts": 12.5, "event": "exit", "label": "...", "request_id": "...", "elapsed_ms": 3.1}

Enable via valve: ENABLE_TIMING_LOG=True (output goes to TIMING_LOG_FILE).
"""

from __future__ import annotations

import datetime
import functools
import inspect
import json
import threading
import time
from collections import deque
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, TextIO, TypeVar

_PACKAGE_PREFIX = "tongyi_bridge."

MAX_TIMING_EVENTS = 5000

_timing_events: Dict[str, Deque[Dict[str, Any]]] = {}
_timing_lock = threading.Lock()

_timing_enabled: ContextVar[bool] = ContextVar("timing_enabled", default=False)
_timing_request_id: ContextVar[Optional[str]] = ContextVar("timing_request_id", default=None)


class _TimingSink:
    """Append-only JSONL destination shared by all requests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._handle: Optional[TextIO] = None

    def open(self, path: Path) -> bool:
        with self._lock:
            if self._handle is not None and self._path == path:
                return True
            self._release()
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                self._handle = open(path, "a", encoding="utf-8")
            except OSError:
                return False
            self._path = path
            return True

    def write(self, record: Dict[str, Any]) -> None:
        line = json.dumps(record, ensure_ascii=False, separators=(",", ":"))
        with self._lock:
            if self._handle is None:
                return
            try:
                self._handle.write(line + "\n")
                self._handle.flush()
            except OSError:
                self._release()

    def close(self) -> None:
        with self._lock:
            self._release()

    def _release(self) -> None:
        if self._handle is not None:
            self._handle.close()
        self._handle = None
        self._path = None


_sink = _TimingSink()


def configure_timing_file(file_path: str) -> bool:
    """Send timing events to ``file_path``; False when it cannot be opened."""
    return _sink.open(Path(file_path))


def close_timing_file() -> None:
    _sink.close()


# -----------------------------------------------------------------------------
# Request context and buffers
# -----------------------------------------------------------------------------

def set_timing_context(request_id: str, enabled: bool) -> None:
    """Bind timing to ``request_id`` for the current task."""
    _timing_request_id.set(request_id)
    _timing_enabled.set(enabled)


def clear_timing_context() -> None:
    _timing_request_id.set(None)
    _timing_enabled.set(False)


def get_timing_events(request_id: str) -> List[Dict[str, Any]]:
    with _timing_lock:
        return list(_timing_events.get(request_id, ()))


def clear_timing_events(request_id: str) -> None:
    with _timing_lock:
        _timing_events.pop(request_id, None)


def _utc_stamp() -> str:
    now = datetime.datetime.now(tz=datetime.timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _emit(event: str, label: str, perf_ts: float, elapsed_ms: Optional[float] = None) -> None:
    request_id = _timing_request_id.get()
    if not _timing_enabled.get() or not request_id:
        return
    record: Dict[str, Any] = {
        "ts": _utc_stamp(),
        "perf_ts": round(perf_ts, 6),
        "event": event,
        "label": label,
        "request_id": request_id,
    }
    if elapsed_ms is not None:
        record["elapsed_ms"] = round(elapsed_ms, 3)
    _sink.write(record)
    with _timing_lock:
        _timing_events.setdefault(request_id, deque(maxlen=MAX_TIMING_EVENTS)).append(record)


# -----------------------------------------------------------------------------
# Instrumentation
# -----------------------------------------------------------------------------

def timing_mark(label: str) -> None:
    """Record a point-in-time event."""
    _emit("mark", label, time.perf_counter())


@contextmanager
def timing_scope(label: str) -> Iterator[None]:
    """Record enter/exit events around a block, exit carrying the elapsed time."""
    if not _timing_enabled.get():
        yield
        return
    started = time.perf_counter()
    _emit("enter", label, started)
    try:
        yield
    finally:
        finished = time.perf_counter()
        _emit("exit", label, finished, (finished - started) * 1000)


F = TypeVar("F", bound=Callable[..., Any])


def _label_for(func: Callable[..., Any]) -> str:
    module = getattr(func, "__module__", "") or ""
    if module.startswith(_PACKAGE_PREFIX):
        module = module[len(_PACKAGE_PREFIX):]
    name = getattr(func, "__qualname__", None) or getattr(func, "__name__", "unknown")
    return f"{module}.{name}" if module else name


def timed(func: F) -> F:
    """Wrap ``func`` in a timing scope labelled with its module-relative name.

    Async generators are not supported; time their bodies with ``timing_scope``.
    """
    label = _label_for(func)

    if inspect.iscoroutinefunction(func):

        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            with timing_scope(label):
                return await func(*args, **kwargs)

        return async_wrapper  # type: ignore[return-value]

    @functools.wraps(func)
    def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
        with timing_scope(label):
            return func(*args, **kwargs)

    return sync_wrapper  # type: ignore[return-value]
