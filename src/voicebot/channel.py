"""
Bounded channels and the shared shutdown signal.

Every link between two pipeline stages is a `Channel`. A call session owns one
`ShutdownSignal`; every suspension point in a stage goes through `receive()` or
`send()` (or `ShutdownSignal.guard()` for provider I/O) so that a fired signal
unblocks it.
"""

from __future__ import annotations

import asyncio
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Deque, Generic, Optional, TypeVar

import structlog

from src.voicebot.errors import ChannelClosed, SessionClosing

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class Overflow(str, Enum):
    """What `put` does when the channel is full."""
    BLOCK = "block"
    DROP_NEWEST = "drop_newest"
    DROP_OLDEST = "drop_oldest"


class Channel(Generic[T]):
    """
    Typed FIFO with an optional capacity.

    `maxsize <= 0` means unbounded. Closing wakes every blocked reader and
    writer: writers get `ChannelClosed`, readers drain what is buffered and
    then get `ChannelClosed`.
    """

    def __init__(
        self,
        name: str,
        maxsize: int = 0,
        overflow: Overflow = Overflow.BLOCK,
    ):
        self.name = name
        self.maxsize = maxsize
        self.overflow = overflow
        self.dropped = 0
        self._items: Deque[T] = deque()
        self._getters: Deque[asyncio.Future] = deque()
        self._putters: Deque[asyncio.Future] = deque()
        self._closed = False

    def __repr__(self) -> str:
        return (
            f"Channel({self.name!r}, size={len(self._items)}/{self.maxsize}, "
            f"closed={self._closed})"
        )

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return len(self._items)

    def empty(self) -> bool:
        return not self._items

    def full(self) -> bool:
        if self.maxsize <= 0:
            return False
        return len(self._items) >= self.maxsize

    @staticmethod
    def _wakeup_next(waiters: Deque[asyncio.Future]) -> None:
        while waiters:
            waiter = waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                break

    @staticmethod
    def _wakeup_all(waiters: Deque[asyncio.Future]) -> None:
        while waiters:
            waiter = waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)

    def _drop(self) -> None:
        self.dropped += 1
        if self.dropped == 1 or self.dropped % 50 == 0:
            logger.warning(
                "Channel overflow, dropping item",
                channel=self.name,
                policy=self.overflow.value,
                dropped=self.dropped,
            )

    async def put(self, item: T) -> bool:
        """
        Put an item, waiting for room when the policy is BLOCK.

        Returns False if the item was dropped by a DROP_NEWEST policy.
        Raises ChannelClosed if the channel is (or becomes) closed.
        """
        while True:
            if self._closed:
                raise ChannelClosed(self.name)
            if not self.full():
                break
            if self.overflow == Overflow.DROP_NEWEST:
                self._drop()
                return False
            if self.overflow == Overflow.DROP_OLDEST:
                self._items.popleft()
                self._drop()
                break

            putter = asyncio.get_running_loop().create_future()
            self._putters.append(putter)
            try:
                await putter
            except BaseException:
                putter.cancel()
                try:
                    self._putters.remove(putter)
                except ValueError:
                    pass
                if not self.full() and not putter.cancelled():
                    self._wakeup_next(self._putters)
                raise

        self._items.append(item)
        self._wakeup_next(self._getters)
        return True

    def put_nowait(self, item: T) -> bool:
        """Non-blocking put. A full BLOCK channel raises asyncio.QueueFull."""
        if self._closed:
            raise ChannelClosed(self.name)
        if self.full():
            if self.overflow == Overflow.BLOCK:
                raise asyncio.QueueFull
            if self.overflow == Overflow.DROP_NEWEST:
                self._drop()
                return False
            self._items.popleft()
            self._drop()
        self._items.append(item)
        self._wakeup_next(self._getters)
        return True

    async def get(self) -> T:
        """Remove and return the next item, waiting if necessary."""
        while not self._items:
            if self._closed:
                raise ChannelClosed(self.name)

            getter = asyncio.get_running_loop().create_future()
            self._getters.append(getter)
            try:
                await getter
            except BaseException:
                getter.cancel()
                try:
                    self._getters.remove(getter)
                except ValueError:
                    pass
                if self._items and not getter.cancelled():
                    self._wakeup_next(self._getters)
                raise

        item = self._items.popleft()
        self._wakeup_next(self._putters)
        return item

    def get_nowait(self) -> T:
        if not self._items:
            if self._closed:
                raise ChannelClosed(self.name)
            raise asyncio.QueueEmpty
        item = self._items.popleft()
        self._wakeup_next(self._putters)
        return item

    def close(self) -> bool:
        """
        Close the channel if it is still open.

        Returns True only for the call that actually closed it.
        """
        if self._closed:
            return False
        self._closed = True
        self._wakeup_all(self._getters)
        self._wakeup_all(self._putters)
        logger.debug("Channel closed", channel=self.name, pending=len(self._items))
        return True


class ShutdownSignal:
    """
    Fire-once broadcast shared by every stage of one call.

    The first `fire()` wins and records the reason; later calls are no-ops.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def fired(self) -> bool:
        return self._event.is_set()

    def fire(self, reason: str) -> bool:
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    async def wait(self) -> Optional[str]:
        await self._event.wait()
        return self.reason

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """
        Await `awaitable` unless the signal fires first.

        Raises SessionClosing when the signal wins; the pending operation is
        cancelled and awaited before returning.
        """
        if self.fired:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise SessionClosing(self.reason)

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            await asyncio.gather(task, waiter, return_exceptions=True)
            raise

        if task.done():
            waiter.cancel()
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise SessionClosing(self.reason)


async def receive(channel: Channel[T], signal: ShutdownSignal) -> T:
    """Receive from `channel`, giving up when `signal` fires."""
    return await signal.guard(channel.get())


async def send(channel: Channel[Any], item: Any, signal: ShutdownSignal) -> bool:
    """Send to `channel`, giving up when `signal` fires."""
    return await signal.guard(channel.put(item))
