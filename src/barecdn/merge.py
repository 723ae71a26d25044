"""Fan-in of a growing set of async iterables into one stream."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterable, AsyncIterator, Generic, Set, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_PRODUCER_DONE = object()


class MergedAsyncIterables(Generic[T]):
    """Single-consumer, multi-producer merge of async iterables.

    Producers may be added at any time, including from inside a producer
    that is currently being drained. Iteration ends once every producer added
    so far has finished. Items from one producer keep their order; there is
    no ordering between producers.

    A producer that raises is logged and stops; the others keep running.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._outstanding = 0
        self._tasks: Set[asyncio.Task] = set()

    def add(self, iterable: AsyncIterable[T]) -> None:
        """Start draining ``iterable`` into the merged stream.

        Must be called with a running event loop.
        """
        self._outstanding += 1
        task = asyncio.ensure_future(self._drain(iterable))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _drain(self, iterable: AsyncIterable[T]) -> None:
        try:
            async for item in iterable:
                await self._queue.put(item)
        except Exception:  # pylint: disable=broad-exception-caught
            logger.exception("Merged producer failed")
        finally:
            # Marks the end of this producer; anything it added before this
            # point is already counted.
            self._queue.put_nowait(_PRODUCER_DONE)

    async def __aiter__(self) -> AsyncIterator[T]:
        while self._outstanding > 0:
            item = await self._queue.get()
            if item is _PRODUCER_DONE:
                self._outstanding -= 1
                continue
            yield item
