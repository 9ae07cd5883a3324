"""Broadcast channel for case data messages.

Subscriptions are per case id. Each subscription has its own queue and
worker task, so a subscriber sees messages in publish order and a slow or
failing handler never delays or breaks other subscribers.

The channel remembers the last data-carrying message (load / refresh) per
case and replays it to new subscribers; a consumer that mounts after the hub
published still receives data without another Aggregator run. A hub's
teardown message drops its remembered message, so nothing replays data on
behalf of a hub that is gone.

Two implementations:
- InMemoryBroadcastChannel: one process (tests, single-worker deployments)
- RedisBroadcastChannel: Redis pub/sub, last message kept in a Redis key
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, runtime_checkable

from pydantic import ValidationError
from redis.asyncio import Redis

from case_governor.models.page_data import BroadcastEventType, BroadcastMessage

logger = logging.getLogger(__name__)

Handler = Callable[[BroadcastMessage], Awaitable[None]]


class Subscription:
    """One handler registered for one case id."""

    def __init__(self, case_id: str, handler: Handler, on_close: Callable[["Subscription"], None]):
        self.case_id = case_id
        self._handler = handler
        self._on_close = on_close
        self._queue: asyncio.Queue = asyncio.Queue()
        self._pending = 0
        self.closed = False
        self._worker = asyncio.ensure_future(self._run())

    @property
    def pending(self) -> int:
        return self._pending

    def deliver(self, message: BroadcastMessage) -> None:
        if self.closed:
            return
        self._pending += 1
        self._queue.put_nowait(message)

    async def _run(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self._handler(message)
            except Exception:
                logger.exception(
                    f"[Channel] Subscriber for case {self.case_id} failed on {message.event_type.value}"
                )
            finally:
                self._pending -= 1
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every delivered message has been handled."""
        await self._queue.join()

    async def unsubscribe(self) -> None:
        """Stop delivery; idempotent. Safe to call from inside the handler."""
        if self.closed:
            return
        self.closed = True
        self._on_close(self)
        self._worker.cancel()
        if asyncio.current_task() is self._worker:
            return
        try:
            await self._worker
        except asyncio.CancelledError:
            pass


@runtime_checkable
class BroadcastChannel(Protocol):
    """Topic-based publish/subscribe for BroadcastMessages."""

    name: str

    async def publish(self, message: BroadcastMessage) -> None:
        ...

    async def subscribe(self, case_id: str, handler: Handler) -> Subscription:
        ...


class _LocalFanout:
    """Per-process subscriber registry shared by both channel implementations."""

    def __init__(self, name: str):
        self.name = name
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def _add(self, case_id: str, handler: Handler) -> Subscription:
        subscription = Subscription(case_id, handler, self._remove)
        self._subscriptions.setdefault(case_id, []).append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        subscribers = self._subscriptions.get(subscription.case_id, [])
        if subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            self._subscriptions.pop(subscription.case_id, None)

    def _dispatch(self, message: BroadcastMessage) -> None:
        for subscription in list(self._subscriptions.get(message.case_id, ())):
            subscription.deliver(message)

    def subscriber_count(self, case_id: str) -> int:
        return len(self._subscriptions.get(case_id, ()))

    async def drain(self) -> None:
        """Wait until no subscriber has undelivered messages, including ones published meanwhile."""
        while True:
            busy = [s for subs in self._subscriptions.values() for s in subs if s.pending]
            if not busy:
                return
            await asyncio.gather(*(s.drain() for s in busy))


class InMemoryBroadcastChannel(_LocalFanout):
    """
    Process-local channel.

    Usage:
        channel = InMemoryBroadcastChannel()
        subscription = await channel.subscribe("500A", handle_message)
        await channel.publish(message)
        await subscription.unsubscribe()
    """

    def __init__(self, name: str = "case-data-channel"):
        super().__init__(name)
        self._last: Dict[str, BroadcastMessage] = {}
        self.published: List[BroadcastMessage] = []

    async def publish(self, message: BroadcastMessage) -> None:
        self.published.append(message)
        if message.event_type.carries_page_data:
            self._last[message.case_id] = message
        elif message.event_type == BroadcastEventType.TEARDOWN:
            last = self._last.get(message.case_id)
            if last is not None and last.hub_id == message.hub_id:
                del self._last[message.case_id]
        logger.debug(f"[Channel:{self.name}] {message.event_type.value} for case {message.case_id}")
        self._dispatch(message)

    async def subscribe(self, case_id: str, handler: Handler) -> Subscription:
        subscription = self._add(case_id, handler)
        last = self._last.get(case_id)
        if last is not None:
            subscription.deliver(last)
        return subscription

    def last_message(self, case_id: str) -> Optional[BroadcastMessage]:
        return self._last.get(case_id)


class RedisBroadcastChannel(_LocalFanout):
    """
    Redis pub/sub channel.

    Every process subscribes once to the topic and fans messages out to its
    local subscribers by case id. The last data message per case is stored
    under ``<name>:last:<case_id>`` for replay.

    Usage:
        redis = await create_redis_client()
        channel = RedisBroadcastChannel(redis, name=settings.channel_name)
        await channel.subscribe("500A", handle_message)
        ...
        await channel.close()
    """

    def __init__(self, redis: Redis, name: str = "case-data-channel", last_message_ttl: int = 3600):
        super().__init__(name)
        self.redis = redis
        self.last_message_ttl = last_message_ttl
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None

    def last_key(self, case_id: str) -> str:
        return f"{self.name}:last:{case_id}"

    async def publish(self, message: BroadcastMessage) -> None:
        payload = message.model_dump_json()
        if message.event_type.carries_page_data:
            await self.redis.set(self.last_key(message.case_id), payload, ex=self.last_message_ttl)
        elif message.event_type == BroadcastEventType.TEARDOWN:
            await self._forget_last(message)
        await self.redis.publish(self.name, payload)

    async def subscribe(self, case_id: str, handler: Handler) -> Subscription:
        await self._ensure_listener()
        subscription = self._add(case_id, handler)

        raw = await self.redis.get(self.last_key(case_id))
        if raw:
            message = self._decode(raw)
            if message is not None:
                subscription.deliver(message)
        return subscription

    async def _forget_last(self, teardown: BroadcastMessage) -> None:
        key = self.last_key(teardown.case_id)
        raw = await self.redis.get(key)
        last = self._decode(raw) if raw else None
        if last is not None and last.hub_id == teardown.hub_id:
            await self.redis.delete(key)

    async def close(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(self.name)
            await self._pubsub.aclose()
            self._pubsub = None
        for subscribers in list(self._subscriptions.values()):
            for subscription in list(subscribers):
                await subscription.unsubscribe()
        logger.info(f"[Channel:{self.name}] Closed")

    async def _ensure_listener(self) -> None:
        if self._listener is not None:
            return
        self._pubsub = self.redis.pubsub()
        await self._pubsub.subscribe(self.name)
        self._listener = asyncio.ensure_future(self._listen())
        logger.info(f"[Channel:{self.name}] Listening on Redis topic")

    async def _listen(self) -> None:
        async for raw in self._pubsub.listen():
            if raw.get("type") != "message":
                continue
            message = self._decode(raw.get("data"))
            if message is not None:
                self._dispatch(message)

    def _decode(self, data) -> Optional[BroadcastMessage]:
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        try:
            return BroadcastMessage.model_validate_json(data)
        except ValidationError as e:
            logger.warning(f"[Channel:{self.name}] Ignoring malformed message: {e.error_count()} errors")
            return None
