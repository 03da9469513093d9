from __future__ import annotations

import asyncio
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any

_END = object()


@dataclass(slots=True)
class _Failure:
    error: BaseException


class StreamController[T]:
    def __init__(self, queue: asyncio.Queue[Any]):
        self._queue = queue
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def desired_size(self) -> int:
        if self.closed:
            return 0
        return max(0, self._queue.maxsize - self._queue.qsize())

    async def emit(self, event: T) -> bool:
        if self.closed:
            return False
        await self._queue.put(event)
        return True

    def close(self) -> None:
        self._closed.set()


async def rewrite_stream[T](
    source: AsyncIterable[T],
    callback: Callable[[T, StreamController[T]], Awaitable[T | None]],
    *,
    max_buffer: int = 32,
) -> AsyncIterator[T]:
    queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=max(1, max_buffer))
    controller: StreamController[T] = StreamController(queue)

    async def pump() -> None:
        try:
            async for event in source:
                if controller.closed:
                    break
                result = await callback(event, controller)
                if result is not None:
                    await controller.emit(result)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await queue.put(_Failure(exc))
            return
        finally:
            aclose = getattr(source, "aclose", None)
            if aclose is not None:
                await aclose()
        await queue.put(_END)

    worker = asyncio.create_task(pump())
    try:
        while True:
            item = await queue.get()
            if item is _END:
                return
            if isinstance(item, _Failure):
                raise item.error
            yield item
    finally:
        controller.close()
        if not worker.done():
            worker.cancel()
        await asyncio.gather(worker, return_exceptions=True)
