"""Bounded relay between the transcoder and the caller.

Frames produced by a transcoding stream are pushed through an
``asyncio.Queue`` with a fixed capacity. When the caller reads too slowly
for ``put_timeout`` seconds the relay gives up on it: the upstream exchange
is closed, frames still waiting in the queue are dropped and the ``[DONE]``
sentinel becomes the final frame. When the caller stops reading altogether
the producer task is cancelled, which closes the upstream exchange.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import AsyncGenerator, AsyncIterator

from .transcoder import DONE_FRAME

LOGGER = logging.getLogger(__name__)


def _drop_pending(queue: asyncio.Queue[str]) -> int:
    dropped = 0
    while True:
        try:
            queue.get_nowait()
        except asyncio.QueueEmpty:
            return dropped
        dropped += 1


async def relay_frames(
    source: AsyncGenerator[str, None],
    *,
    maxsize: int = 64,
    put_timeout: float = 30.0,
) -> AsyncIterator[str]:
    """Yield frames from ``source`` through a bounded queue.

    The relay stops after the ``[DONE]`` frame, which is always delivered.
    """
    queue: asyncio.Queue[str] = asyncio.Queue(maxsize=max(1, maxsize))

    async def _finish() -> None:
        try:
            await asyncio.wait_for(queue.put(DONE_FRAME), timeout=put_timeout)
        except asyncio.TimeoutError:
            _drop_pending(queue)
            queue.put_nowait(DONE_FRAME)

    async def _produce() -> None:
        try:
            async for frame in source:
                try:
                    await asyncio.wait_for(queue.put(frame), timeout=put_timeout)
                except asyncio.TimeoutError:
                    dropped = _drop_pending(queue)
                    LOGGER.warning(
                        "Caller stalled for %.1fs; aborting upstream and dropping %d queued frame(s)",
                        put_timeout,
                        dropped,
                    )
                    queue.put_nowait(DONE_FRAME)
                    return
                if frame == DONE_FRAME:
                    return
            LOGGER.debug("Frame source ended without a sentinel")
            await _finish()
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("Frame source failed; closing the stream")
            await _finish()
        finally:
            await source.aclose()

    producer = asyncio.create_task(_produce(), name="outbound-relay")
    try:
        while True:
            frame = await queue.get()
            yield frame
            if frame == DONE_FRAME:
                break
        await producer
    finally:
        if not producer.done():
            producer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await producer
