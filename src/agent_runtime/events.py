"""Streaming event bus: a bounded single-producer/single-consumer channel.

A provider adapter emits canonical StreamEvents into an ``EventStream`` while
the agent loop consumes them with ``async for``. The stream is completed
exactly once: the first ``resolve()`` or ``reject()`` wins and every later
completion attempt is ignored. A consumer that stops reading early calls
``discard()`` so the producer can finish without blocking on a full queue.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from .config import EVENT_QUEUE_SIZE
from .models import StreamEvent

logger = logging.getLogger(__name__)

_END = object()


class EventStream:
    """Bounded async channel of StreamEvents with a one-shot completion guard."""

    def __init__(self, maxsize: int = EVENT_QUEUE_SIZE) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._completed = False
        self._discarded = False
        self._exhausted = False
        self._error: BaseException | None = None

    @property
    def completed(self) -> bool:
        return self._completed

    @property
    def discarded(self) -> bool:
        return self._discarded

    async def emit(self, event: StreamEvent) -> None:
        """Queue one event; blocks while the consumer is behind."""
        if self._completed:
            raise RuntimeError("cannot emit on a completed stream")
        if self._discarded:
            return
        await self._queue.put(event)

    async def resolve(self) -> bool:
        return await self._complete(None)

    async def reject(self, error: BaseException) -> bool:
        return await self._complete(error)

    async def _complete(self, error: BaseException | None) -> bool:
        if self._completed:
            logger.debug("Ignoring repeated completion of event stream")
            return False
        self._completed = True
        self._error = error
        if not self._discarded:
            await self._queue.put(_END)
        return True

    def discard(self) -> None:
        """Drop buffered and future events; the consumer is no longer reading."""
        self._discarded = True
        while not self._queue.empty():
            self._queue.get_nowait()

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self

    async def __anext__(self) -> StreamEvent:
        if self._exhausted or self._discarded:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            self._exhausted = True
            if self._error is not None:
                raise self._error
            raise StopAsyncIteration
        return item


@dataclass
class ChatResponse:
    """Handle for one in-flight provider request."""

    stream: EventStream
    result: asyncio.Task[None]

    def __post_init__(self) -> None:
        self.result.add_done_callback(_retrieve_exception)

    def discard(self) -> None:
        """Stop consuming; the request keeps running but its output is dropped."""
        self.stream.discard()


def _retrieve_exception(task: asyncio.Task[None]) -> None:
    # The loop reads failures from the stream; mark the task's copy as seen.
    if not task.cancelled():
        task.exception()
