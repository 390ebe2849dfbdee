#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
CommandQueue -- Serializes code transmissions to one device.

Codes are sent strictly one at a time in enqueue order; the next code is not sent until the
previous one has been answered, has timed out, or has failed. A failure does not stop the queue.
"""

from __future__ import annotations

import asyncio
from asyncio import Future
from typing import TYPE_CHECKING

from .internal_types import *
from .pkg_logging import logger
from .exceptions import TransportError

if TYPE_CHECKING:
    from .session import DeviceSession, DeviceResponse

class CommandQueue:
    session: DeviceSession
    _queue: asyncio.Queue[Tuple[bytes, Future[DeviceResponse]]]
    _worker: Optional[asyncio.Task[None]] = None
    _closed: bool = False

    def __init__(self, session: DeviceSession):
        self.session = session
        self._queue = asyncio.Queue()

    def __str__(self) -> str:
        return f"CommandQueue({self.session})"

    def qsize(self) -> int:
        return self._queue.qsize()

    @property
    def closed(self) -> bool:
        return self._closed

    def enqueue(self, data: bytes) -> Future[DeviceResponse]:
        """Queues a code for transmission. Returns a future that completes with the device's response."""
        if self._closed:
            raise TransportError(f"{self} is closed")
        loop = asyncio.get_running_loop()
        future: Future[DeviceResponse] = loop.create_future()
        self._queue.put_nowait((bytes(data), future))
        if self._worker is None:
            self._worker = loop.create_task(self._run())
        return future

    async def join(self) -> None:
        """Waits until every queued code has been processed."""
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            data, future = await self._queue.get()
            try:
                if future.done():
                    # cancelled by the caller before its turn
                    continue
                logger.debug(f"{self}: Sending queued code ({len(data)} bytes), {self._queue.qsize()} remaining")
                try:
                    response = await self.session.send_data(data)
                except asyncio.CancelledError:
                    if not future.done():
                        future.set_exception(TransportError(f"{self} was closed"))
                    raise
                except Exception as e:
                    logger.warning(f"{self}: Queued code failed: {e}")
                    if not future.done():
                        future.set_exception(e)
                else:
                    if not future.done():
                        future.set_result(response)
            finally:
                self._queue.task_done()

    def close(self) -> None:
        """Stops the worker and fails every code that has not been sent."""
        if self._closed:
            return
        self._closed = True
        if self._worker is not None:
            self._worker.cancel()
        while True:
            try:
                _, future = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._queue.task_done()
            if not future.done():
                future.set_exception(TransportError(f"{self} was closed"))
