"""
Fan-out of photo tagging status changes.

The tagging worker publishes one StatusEvent per transition; the SSE route
subscribes per user. Slow subscribers drop events rather than block workers.

StatusFeed delivers inside one process, which is all the inline backend
needs. With Redis configured, RedisStatusFeed carries events over pub/sub so
transitions published by rq worker processes reach the API's subscribers.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional, Set

from redis import asyncio as aioredis
from redis.exceptions import RedisError

log = logging.getLogger("aquaforum.status")

STATUS_CHANNEL = "aquaforum:photo-status"
LISTEN_TIMEOUT = 1.0
RESUBSCRIBE_DELAY = 2.0


@dataclass
class StatusEvent:
    photo_id: str
    user_id: Optional[str]
    status: str
    error: Optional[str] = None
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "photo_id": self.photo_id,
            "user_id": self.user_id,
            "status": self.status,
            "error": self.error,
            "at": self.at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StatusEvent":
        event = cls(
            photo_id=str(data["photo_id"]),
            user_id=data.get("user_id"),
            status=str(data["status"]),
            error=data.get("error"),
        )
        if data.get("at"):
            event.at = datetime.fromisoformat(data["at"])
        return event


class Subscription:
    def __init__(self, user_id: Optional[str], maxsize: int):
        self.user_id = user_id
        self.queue: "asyncio.Queue[StatusEvent]" = asyncio.Queue(maxsize=maxsize)

    def wants(self, event: StatusEvent) -> bool:
        return self.user_id is None or self.user_id == event.user_id

    async def get(self, timeout: Optional[float] = None) -> Optional[StatusEvent]:
        try:
            return await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None


class StatusFeed:
    def __init__(self, maxsize: int = 100):
        self.maxsize = maxsize
        self._subscribers: Set[Subscription] = set()

    @classmethod
    def from_url(cls, url: Optional[str], maxsize: int = 100) -> "StatusFeed":
        if not url:
            return cls(maxsize)
        return RedisStatusFeed(aioredis.from_url(url, decode_responses=True), maxsize=maxsize)

    async def start(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def publish(self, event: StatusEvent) -> None:
        self._fan_out(event)

    def _fan_out(self, event: StatusEvent) -> None:
        for sub in list(self._subscribers):
            if not sub.wants(event):
                continue
            try:
                sub.queue.put_nowait(event)
            except asyncio.QueueFull:
                log.warning("Status subscriber for %s is full; dropping %s event", sub.user_id, event.status)

    @asynccontextmanager
    async def subscribe(self, user_id: Optional[str] = None) -> AsyncIterator[Subscription]:
        """``user_id=None`` receives every event."""
        sub = Subscription(user_id, self.maxsize)
        self._subscribers.add(sub)
        try:
            yield sub
        finally:
            self._subscribers.discard(sub)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


class RedisStatusFeed(StatusFeed):
    """
    Status events over a Redis pub/sub channel.

    Worker processes only publish. After ``start()`` the API process also
    listens on the channel and hands every message to its local subscribers,
    its own publications included.
    """

    def __init__(self, client: aioredis.Redis, channel: str = STATUS_CHANNEL, maxsize: int = 100):
        super().__init__(maxsize)
        self.client = client
        self.channel = channel
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._listener is not None:
            return
        self._pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        try:
            await self._pubsub.subscribe(self.channel)
        except RedisError as exc:
            log.warning("Status channel %s unavailable at startup: %s", self.channel, exc)
        self._listener = asyncio.create_task(self._listen())

    async def publish(self, event: StatusEvent) -> None:
        try:
            await self.client.publish(self.channel, json.dumps(event.to_dict()))
        except RedisError as exc:
            log.warning("Status publish for photo %s failed: %s", event.photo_id, exc)
            self._fan_out(event)

    def _receive(self, data: Any) -> None:
        try:
            event = StatusEvent.from_dict(json.loads(data))
        except (ValueError, KeyError, TypeError) as exc:
            log.warning("Ignoring malformed status message on %s: %s", self.channel, exc)
            return
        self._fan_out(event)

    async def _listen(self) -> None:
        while True:
            try:
                if not self._pubsub.subscribed:
                    await self._pubsub.subscribe(self.channel)
                message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=LISTEN_TIMEOUT)
            except RedisError as exc:
                log.warning("Status channel %s lost: %s; resubscribing in %ss", self.channel, exc, RESUBSCRIBE_DELAY)
                await asyncio.sleep(RESUBSCRIBE_DELAY)
                continue
            if message is not None and message.get("type") == "message":
                self._receive(message["data"])

    async def close(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            await asyncio.gather(self._listener, return_exceptions=True)
            self._listener = None
        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None
        await self.client.aclose()
