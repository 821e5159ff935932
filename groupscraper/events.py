from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Dict, Optional

from groupscraper.config import DEFAULT_EVENT_QUEUE_SIZE
from groupscraper.models import Event, is_terminal

logger = logging.getLogger(__name__)

_subscription_ids = itertools.count(1)


class Subscription:
    """Handle returned by `ProgressBus.subscribe`; owns one bounded queue."""

    def __init__(self, bus: "ProgressBus", maxsize: int) -> None:
        self.id = next(_subscription_ids)
        self._bus = bus
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)

    @property
    def active(self) -> bool:
        return self._bus.has_subscriber(self)

    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self) -> Event:
        return await self._queue.get()

    def get_nowait(self) -> Optional[Event]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def _offer(self, evt: Event) -> bool:
        try:
            self._queue.put_nowait(evt)
            return True
        except asyncio.QueueFull:
            pass

        if not is_terminal(evt):
            # drop business events under pressure
            return False

        # terminal events must get through: make room by evicting the oldest
        try:
            self._queue.get_nowait()
        except asyncio.QueueEmpty:
            pass
        self._queue.put_nowait(evt)
        return True

    def close(self) -> None:
        self._bus.unsubscribe(self)


class ProgressBus:
    """
    Single-producer, multi-consumer channel for one job's events.

    publish() never blocks: every active subscriber gets the event in publish
    order, or loses it if its queue is full. Subscribers joining late see only
    what is published after they join. After the first terminal event the bus
    is closed and later publishes are ignored.
    """

    def __init__(self, job_id: str, *, queue_size: int = DEFAULT_EVENT_QUEUE_SIZE) -> None:
        self.job_id = job_id
        self._queue_size = int(queue_size)
        self._subscribers: Dict[int, Subscription] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def has_subscriber(self, sub: Subscription) -> bool:
        return self._subscribers.get(sub.id) is sub

    def subscribe(self) -> Subscription:
        sub = Subscription(self, self._queue_size)
        self._subscribers[sub.id] = sub
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        self._subscribers.pop(sub.id, None)

    def publish(self, evt: Event) -> bool:
        """Returns False when the bus is already closed and the event was discarded."""
        if self._closed:
            logger.debug("job %s: bus closed, discarding %s event", self.job_id, evt.type)
            return False
        if is_terminal(evt):
            self._closed = True

        for sub in list(self._subscribers.values()):
            if not sub._offer(evt):
                logger.warning(
                    "job %s: subscriber %s queue full, dropped %s event",
                    self.job_id,
                    sub.id,
                    evt.type,
                )
        return True
