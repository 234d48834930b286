"""ExecutionChannel — hands claimed schedules from the dispatcher to the executor."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from taskclock.scheduler.models import Schedule

_CLOSED = object()


class ChannelClosedError(RuntimeError):
    """Raised when putting onto a closed channel."""


class ExecutionChannel:
    """Single-producer, multi-consumer queue with a completion signal.

    Consumers iterate with ``async for``; iteration ends once the channel is
    closed *and* everything enqueued before the close has been handed out.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        """Number of pending items (the close marker is not counted)."""
        return self._queue.qsize() - (1 if self._closed else 0)

    async def put(self, schedule: Schedule) -> None:
        if self._closed:
            msg = "Execution channel is closed"
            raise ChannelClosedError(msg)
        await self._queue.put(schedule)

    def close(self) -> None:
        """Signal that no more schedules will be put. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[Schedule]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Schedule]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                # Leave the marker for the other consumers.
                self._queue.put_nowait(_CLOSED)
                return
            yield item
