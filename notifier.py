"""Per client/year change fan-out for live budget updates.

Writers publish from whichever thread committed the change; every subscriber
owns a bounded queue bound to the event loop that created it, so delivery is
handed over with ``call_soon_threadsafe`` and never blocks the publisher.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

logger = logging.getLogger(__name__)

ChannelKey = tuple[str, int]

CHANGE_EVENT = "change"
PING_EVENT = "ping"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class BudgetEvent:
    event: str
    data: dict = field(default_factory=dict)

    def to_sse(self) -> str:
        return f"event: {self.event}\ndata: {json.dumps(self.data)}\n\n"


def ping_event() -> BudgetEvent:
    return BudgetEvent(PING_EVENT, {"ts": _now_ms()})


class Subscription:
    def __init__(
        self, key: ChannelKey, loop: asyncio.AbstractEventLoop, maxsize: int
    ) -> None:
        self.key = key
        self.loop = loop
        self.dropped = 0
        self._queue: asyncio.Queue[BudgetEvent] = asyncio.Queue(maxsize=maxsize)

    def offer(self, event: BudgetEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                f"notifier_drop: key={self.key[0]}:{self.key[1]} "
                f"event={event.event} dropped={self.dropped}"
            )

    async def get(self, timeout: Optional[float] = None) -> Optional[BudgetEvent]:
        if timeout is None:
            return await self._queue.get()
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    async def events(self, keepalive_secs: float) -> AsyncIterator[BudgetEvent]:
        """Yield published events, or a ping whenever the channel stays idle."""
        while True:
            event = await self.get(keepalive_secs)
            yield event if event is not None else ping_event()


class ChangeNotifier:
    def __init__(self, queue_size: int = 100) -> None:
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._channels: dict[ChannelKey, set[Subscription]] = {}

    def subscribe(self, client_id: str, year: int) -> Subscription:
        key = (client_id, year)
        sub = Subscription(key, asyncio.get_running_loop(), self.queue_size)
        with self._lock:
            self._channels.setdefault(key, set()).add(sub)
        logger.info(f"notifier_subscribe: key={client_id}:{year}")
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._channels.get(sub.key)
            if not subs:
                return
            subs.discard(sub)
            if not subs:
                del self._channels[sub.key]
        logger.info(f"notifier_unsubscribe: key={sub.key[0]}:{sub.key[1]}")

    @asynccontextmanager
    async def subscription(
        self, client_id: str, year: int
    ) -> AsyncIterator[Subscription]:
        sub = self.subscribe(client_id, year)
        try:
            yield sub
        finally:
            self.unsubscribe(sub)

    def publish(
        self,
        client_id: str,
        year: int,
        event: str = CHANGE_EVENT,
        data: Optional[dict] = None,
    ) -> int:
        with self._lock:
            subs = list(self._channels.get((client_id, year), ()))
        evt = BudgetEvent(event, data if data is not None else {"ts": _now_ms()})
        delivered = 0
        for sub in subs:
            try:
                sub.loop.call_soon_threadsafe(sub.offer, evt)
                delivered += 1
            except RuntimeError:
                # owning loop is gone, the listener can never read again
                self.unsubscribe(sub)
        return delivered

    def publish_change(self, client_id: str, year: int) -> int:
        return self.publish(client_id, year, CHANGE_EVENT, {"ts": _now_ms()})

    def subscriber_count(
        self, client_id: Optional[str] = None, year: Optional[int] = None
    ) -> int:
        with self._lock:
            if client_id is None:
                return sum(len(subs) for subs in self._channels.values())
            return len(self._channels.get((client_id, year), ()))

    def channel_count(self) -> int:
        with self._lock:
            return len(self._channels)
