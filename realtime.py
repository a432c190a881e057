"""In-process change feed for live request and mechanic updates.

Subscribers receive events as dicts: {"table", "type", "new"}. A filter is a
mapping of column -> value that the event's row must match.

Writers run in worker threads; an event for a subscriber created inside an
event loop is handed over to that loop with call_soon_threadsafe.
"""
import asyncio
import itertools
import logging
import threading
from typing import Dict, Optional

logger = logging.getLogger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class Subscription:
    def __init__(self, sub_id: int, table: str, filter: Optional[Dict] = None, maxsize: int = 100):
        self.id = sub_id
        self.table = table
        self.filter = dict(filter or {})
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.loop = _running_loop()

    def matches(self, event: dict) -> bool:
        if event["table"] != self.table:
            return False
        row = event.get("new") or {}
        return all(row.get(k) == v for k, v in self.filter.items())

    def push(self, event: dict):
        if self.loop is None or self.loop is _running_loop():
            self._deliver(event)
        elif not self.loop.is_closed():
            self.loop.call_soon_threadsafe(self._deliver, event)

    def _deliver(self, event: dict):
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            # slow consumer: drop the oldest event so the latest state gets through
            logger.warning("subscription %d queue full, dropping oldest event", self.id)
            self.queue.get_nowait()
            self.queue.put_nowait(event)

    async def get(self, timeout: Optional[float] = None) -> dict:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)


class ChangeFeed:
    def __init__(self):
        self._subs: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(self, table: str, filter: Optional[Dict] = None) -> Subscription:
        with self._lock:
            sub = Subscription(next(self._ids), table, filter)
            self._subs[sub.id] = sub
        logger.debug("subscription %d on %s %s", sub.id, table, sub.filter)
        return sub

    def unsubscribe(self, sub: Subscription):
        with self._lock:
            self._subs.pop(sub.id, None)
        logger.debug("subscription %d closed", sub.id)

    def publish(self, table: str, type_: str, row: dict) -> int:
        """Deliver an event to every matching subscriber. Returns the delivery count."""
        event = {"table": table, "type": type_, "new": row}
        with self._lock:
            targets = [s for s in self._subs.values() if s.matches(event)]
        for sub in targets:
            sub.push(event)
        return len(targets)

    def clear(self):
        with self._lock:
            self._subs.clear()

    def __len__(self):
        return len(self._subs)


feed = ChangeFeed()
