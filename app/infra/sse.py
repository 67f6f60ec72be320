from __future__ import annotations
import asyncio
import logging
from typing import AsyncIterator, Callable, List

logger = logging.getLogger("infra.sse")


class TransportClosed(Exception):
    pass


class StreamTransport:
    """Bounded queue between the notification core and one streaming response.

    The core calls ``write``; the response generator drains ``stream()``.
    A full queue makes ``write`` wait, so a reader that stops consuming is
    eventually evicted by the core's write timeout.
    """

    def __init__(self, maxsize: int = 100) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = asyncio.Event()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def add_close_callback(self, cb: Callable[[], None]) -> None:
        if self.closed:
            cb()
            return
        self._callbacks.append(cb)

    async def write(self, chunk: str) -> None:
        if self.closed:
            raise TransportClosed("stream closed")
        await self._queue.put(chunk)

    def close(self) -> None:
        if self.closed:
            return
        self._closed.set()
        callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            try:
                cb()
            except Exception:
                logger.exception("close callback failed")

    async def stream(self) -> AsyncIterator[str]:
        closed_wait = asyncio.ensure_future(self._closed.wait())
        getter = None
        try:
            while True:
                # drain what is already queued before honouring close
                if not self._queue.empty():
                    yield self._queue.get_nowait()
                    continue
                if self.closed:
                    return
                getter = asyncio.ensure_future(self._queue.get())
                done, _ = await asyncio.wait(
                    {getter, closed_wait}, return_when=asyncio.FIRST_COMPLETED
                )
                if getter in done:
                    chunk, getter = getter.result(), None
                    yield chunk
                else:
                    getter.cancel()
                    getter = None
        finally:
            if getter is not None:
                getter.cancel()
            closed_wait.cancel()
