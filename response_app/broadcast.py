"""
Change broadcaster
==================

Fans mutation events out to every connected observer.

Each subscription owns a bounded queue. ``publish`` snapshots the current
subscriber set and does a non-blocking put on each queue, so one slow
observer can neither stall the publisher nor delay the others. An observer
whose queue is full is disconnected; it can still drain what was buffered
before the overflow.
"""

import asyncio
import itertools
import logging
from typing import Dict, Optional

from .models import MutationEvent

logger = logging.getLogger(__name__)

DEFAULT_MAX_PENDING = 100


class SubscriptionClosed(Exception):
    pass


class Subscription:
    def __init__(self, sub_id: int, max_pending: int):
        self.id = sub_id
        self.overflowed = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def pending(self) -> int:
        return self._queue.qsize()

    def _offer(self, event: MutationEvent) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            return False

    def _close(self) -> None:
        self._closed.set()

    async def get(self) -> MutationEvent:
        """Next event in publish order; raises SubscriptionClosed once closed and drained."""
        if not self._queue.empty():
            return self._queue.get_nowait()
        if self.closed:
            raise SubscriptionClosed(f"subscription {self.id} closed")

        getter = asyncio.ensure_future(self._queue.get())
        closer = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait({getter, closer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closer.cancel()
            if not getter.done():
                getter.cancel()
        if getter.done() and not getter.cancelled():
            return getter.result()
        raise SubscriptionClosed(f"subscription {self.id} closed")

    def __aiter__(self):
        return self

    async def __anext__(self) -> MutationEvent:
        try:
            return await self.get()
        except SubscriptionClosed:
            raise StopAsyncIteration


def _check_bound(max_pending: int) -> int:
    # asyncio.Queue treats maxsize <= 0 as unbounded
    if max_pending <= 0:
        raise ValueError(f"max_pending must be a positive queue bound, got {max_pending}")
    return max_pending


class Broadcaster:
    def __init__(self, max_pending: int = DEFAULT_MAX_PENDING):
        self.max_pending = _check_bound(max_pending)
        self._subs: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)

    def subscribe(self, max_pending: Optional[int] = None) -> Subscription:
        bound = self.max_pending if max_pending is None else _check_bound(max_pending)
        sub = Subscription(next(self._ids), bound)
        self._subs[sub.id] = sub
        logger.info(f"[WS] observer {sub.id} subscribed; now {len(self._subs)} observer(s)")
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if self._subs.pop(sub.id, None) is not None:
            logger.info(f"[WS] observer {sub.id} unsubscribed; now {len(self._subs)} observer(s)")
        sub._close()

    def publish(self, event: MutationEvent) -> int:
        """Deliver to every current observer; returns how many accepted the event."""
        observers = list(self._subs.values())
        total = len(observers)
        if total == 0:
            logger.debug(f"[WS] 0 observers; dropping event type={event.type}")
            return 0

        delivered = 0
        for sub in observers:
            if sub._offer(event):
                delivered += 1
                continue
            if not sub.closed:
                sub.overflowed = True
                logger.warning(f"[WS] observer {sub.id} fell behind ({sub.pending()} pending); disconnecting")
            self.unsubscribe(sub)

        logger.info(f"[WS] delivered type={event.type} to {delivered}/{total} observers")
        return delivered

    async def close(self) -> None:
        for sub in list(self._subs.values()):
            self.unsubscribe(sub)

    def __len__(self) -> int:
        return len(self._subs)
