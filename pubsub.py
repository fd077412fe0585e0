"""
Per-room topic transports used by the broadcaster and the WebSocket endpoint.

``LocalPubSub`` multiplexes topics inside one process. ``RedisPubSub`` goes
through Redis pub/sub so every instance behind a load balancer receives the
same updates and fans them out to its own WebSocket connections.
"""
import asyncio
import json
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import AsyncIterator, Dict, Optional, Set

import redis
from fastapi.concurrency import run_in_threadpool

from logging_config import get_logger

logger = get_logger(__name__)


class TopicSubscription(ABC):
    """Async iterator over the messages of one topic; call ``close()`` when done."""

    def __init__(self, topic: str):
        self.topic = topic

    def __aiter__(self) -> AsyncIterator[dict]:
        return self

    @abstractmethod
    async def __anext__(self) -> dict:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class LocalSubscription(TopicSubscription):
    def __init__(self, topic: str, broker: "LocalPubSub"):
        super().__init__(topic)
        self.queue: asyncio.Queue = asyncio.Queue()
        self._broker = broker

    async def __anext__(self) -> dict:
        return await self.queue.get()

    async def close(self) -> None:
        await self._broker._remove(self)


class LocalPubSub:
    """In-memory broker with one asyncio queue per subscriber."""

    name = "memory"

    def __init__(self) -> None:
        self._subscribers: Dict[str, Set[LocalSubscription]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, message: dict) -> int:
        async with self._lock:
            subscriptions = list(self._subscribers.get(topic, set()))
        for subscription in subscriptions:
            await subscription.queue.put(message)
        logger.debug(f"Published {message.get('type', 'unknown')} to {topic}, {len(subscriptions)} subscribers")
        return len(subscriptions)

    async def subscribe(self, topic: str) -> LocalSubscription:
        subscription = LocalSubscription(topic, self)
        async with self._lock:
            self._subscribers[topic].add(subscription)
        logger.debug(f"Subscribed to local topic {topic}")
        return subscription

    async def _remove(self, subscription: LocalSubscription) -> None:
        async with self._lock:
            subscribers = self._subscribers.get(subscription.topic)
            if subscribers and subscription in subscribers:
                subscribers.remove(subscription)
            if subscribers == set():
                self._subscribers.pop(subscription.topic, None)

    async def close(self) -> None:
        async with self._lock:
            self._subscribers.clear()


class RedisSubscription(TopicSubscription):
    """
    Reads one Redis channel from an executor thread.

    Iteration stops once the subscription is closed or Redis fails, so the
    consumer is never left waiting on a dead connection.
    """

    def __init__(self, topic: str, pubsub: redis.client.PubSub):
        super().__init__(topic)
        self.pubsub = pubsub
        self._closed = False

    async def __anext__(self) -> dict:
        loop = asyncio.get_running_loop()
        while not self._closed:
            try:
                message = await loop.run_in_executor(None, self._get_message)
            except redis.exceptions.RedisError as e:
                logger.error(f"Redis pub/sub failed for {self.topic}, ending subscription: {e}")
                raise StopAsyncIteration
            if message is None:
                # Timeout or control message, poll again
                continue
            try:
                return json.loads(message["data"])
            except (json.JSONDecodeError, TypeError) as e:
                logger.error(f"Error parsing message from Redis channel {self.topic}: {e}")
        raise StopAsyncIteration

    def _get_message(self) -> Optional[dict]:
        """Blocking call to get the next message from Redis pub/sub with timeout."""
        return self.pubsub.get_message(timeout=1.0, ignore_subscribe_messages=True)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await run_in_threadpool(self.pubsub.close)
            logger.debug(f"Closed pub/sub connection for {self.topic}")
        except redis.exceptions.RedisError as e:
            logger.error(f"Error closing pub/sub for {self.topic}: {e}")


class RedisPubSub:
    name = "redis"

    def __init__(self, redis_client: redis.Redis, pubsub_client: Optional[redis.Redis] = None):
        self.redis_client = redis_client
        # Separate connection for pub/sub (required by Redis)
        self.pubsub_client = pubsub_client or redis_client

    @classmethod
    def from_url(cls, redis_client: redis.Redis, redis_url: str) -> "RedisPubSub":
        pubsub_client = redis.Redis.from_url(redis_url, decode_responses=True)
        return cls(redis_client, pubsub_client)

    async def publish(self, topic: str, message: dict) -> int:
        subscribers = await run_in_threadpool(self.redis_client.publish, topic, json.dumps(message))
        logger.debug(f"Published {message.get('type', 'unknown')} to Redis channel {topic}, {subscribers} subscribers")
        return subscribers

    async def subscribe(self, topic: str) -> RedisSubscription:
        logger.debug(f"Subscribing to Redis channel {topic}")
        pubsub = self.pubsub_client.pubsub()
        await run_in_threadpool(pubsub.subscribe, topic)
        return RedisSubscription(topic, pubsub)

    async def close(self) -> None:
        if self.pubsub_client is not self.redis_client:
            await run_in_threadpool(self.pubsub_client.close)
