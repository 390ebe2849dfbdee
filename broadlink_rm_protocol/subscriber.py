#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Subscriber/Publisher -- A simple typed channel for delivering items (device events,
discovered devices) to any number of async consumers.

  The subscriber interface is an async context manager and async iterator that returns
  a sequence of items until the publisher ends the stream (typically when its socket
  is closed) or the subscriber context is exited.

  Usage:
      async with session.subscribe() as subscriber:
          async for event in subscriber:
              print(event)
"""

from __future__ import annotations

import asyncio
from asyncio import Future

from .internal_types import *
from .pkg_logging import logger

MAX_QUEUE_SIZE = 1000

_T = TypeVar('_T')

class Publisher(Generic[_T]):
    """A mixin that maintains a set of subscribers and publishes items to them."""

    subscribers: Set[Subscriber[_T]]
    """A set of subscribers that wish to receive published items."""

    def __init__(self):
        self.subscribers = set()

    async def add_subscriber(self, subscriber: Subscriber[_T]) -> None:
        self.subscribers.add(subscriber)

    async def remove_subscriber(self, subscriber: Subscriber[_T]) -> None:
        self.subscribers.discard(subscriber)

    def subscribe(self, max_queue_size: int=MAX_QUEUE_SIZE) -> Subscriber[_T]:
        """Returns a new subscriber. Items are only delivered once its context has been entered."""
        return Subscriber(self, max_queue_size=max_queue_size)

    def publish(self, item: _T) -> None:
        """Delivers an item to all current subscribers without blocking."""
        for subscriber in list(self.subscribers):
            try:
                subscriber.on_item(item)
            except Exception as e:
                logger.warning(f"Subscriber raised exception processing {item}: {e}")

    def end_subscribers(self, exc: Optional[Exception]=None) -> None:
        """Signals end of stream to all current subscribers."""
        for subscriber in list(self.subscribers):
            try:
                subscriber.on_end_of_stream(exc)
            except Exception as e:
                logger.warning(f"Subscriber raised exception processing end of stream: {e}")

class Subscriber(
        AsyncContextManager['Subscriber[_T]'],
        AsyncIterable[_T],
        Generic[_T],
      ):
    publisher: Publisher[_T]
    queue: asyncio.Queue[Optional[_T]]
    final_result: Future[None]
    eos: bool = False
    eos_exc: Optional[Exception] = None

    def __init__(self, publisher: Publisher[_T], max_queue_size: int=MAX_QUEUE_SIZE):
        self.publisher = publisher
        self.queue = asyncio.Queue(max_queue_size)
        self.final_result = asyncio.get_running_loop().create_future()

    async def __aenter__(self) -> Subscriber[_T]:
        await self.publisher.add_subscriber(self)
        return self

    async def __aexit__(
            self,
            exc_type: Optional[type[BaseException]],
            exc: Optional[BaseException],
            tb: Optional[TracebackType]
      ) -> bool:
        await self.publisher.remove_subscriber(self)
        self.set_final_result()
        try:
            # ensure that final_result has been awaited
            await self.final_result
        except BaseException:
            pass
        return False

    async def iter_items(self) -> AsyncIterator[_T]:
        while True:
            result = await self.receive()
            if result is None:
                break
            yield result

    def __aiter__(self) -> AsyncIterator[_T]:
        return self.iter_items()

    def _wake_waiters(self) -> None:
        try:
            self.queue.put_nowait(None)
        except asyncio.QueueFull:
            # queue is full so waiters will wake up soon
            pass

    def set_final_result(self) -> None:
        if not self.final_result.done():
            self.final_result.set_result(None)
            self._wake_waiters()
            self.eos = True
            self.eos_exc = None

    def set_final_exception(self, e: BaseException) -> None:
        if not self.final_result.done():
            self.final_result.set_exception(e)
            self._wake_waiters()
            self.eos = True
            self.eos_exc = None

    async def receive(self) -> Optional[_T]:
        """Waits for the next item. Returns None at end of stream, or raises
           the exception that ended the stream."""
        if self.final_result.done():
            await self.final_result
            return None
        if self.eos and self.queue.empty():
            if self.eos_exc is None:
                self.set_final_result()
            else:
                self.set_final_exception(self.eos_exc)
            await self.final_result
            return None
        try:
          result = await self.queue.get()
          self.queue.task_done()
          if result is None:
              if not self.final_result.done():
                  assert self.eos
                  if self.eos_exc is None:
                      self.set_final_result()
                  else:
                      self.set_final_exception(self.eos_exc)
              await self.final_result
              return None
        except asyncio.CancelledError:
            # a caller timing out or abandoning the wait does not end the stream
            raise
        except BaseException as e:
            self.set_final_exception(e)
            raise
        return result

    def on_item(self, item: _T) -> None:
        if not self.eos and not self.final_result.done():
            try:
                self.queue.put_nowait(item)
            except asyncio.QueueFull:
                logger.warning(f"Queue full, dropping {item}")

    def on_end_of_stream(self, exc: Optional[Exception]=None) -> None:
        if not self.eos and not self.final_result.done():
            self.eos = True
            self.eos_exc = exc
            # wake up any waiting tasks
            self._wake_waiters()
