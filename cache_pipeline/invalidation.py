"""
Cross-instance cache invalidation over Redis pub/sub.

Messages on the invalidation channel are plain strings:

- ``"key:{scoped key}"``     remove one entry
- ``"prefix:{scoped prefix}"`` remove every entry under the prefix
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

from shared.logging import get_logger
from .stores.base import CacheStore

DEFAULT_CHANNEL = "cache:invalidation"
KEY_MESSAGE = "key"
PREFIX_MESSAGE = "prefix"


@dataclass(frozen=True)
class InvalidationMessage:
    kind: str
    target: str

    def encode(self) -> str:
        return f"{self.kind}:{self.target}"


def parse_invalidation_message(payload) -> Optional[InvalidationMessage]:
    """Decode a channel payload; ``None`` for anything malformed."""
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError:
            return None
    if not isinstance(payload, str):
        return None

    kind, sep, target = payload.partition(":")
    if not sep or not target or kind not in (KEY_MESSAGE, PREFIX_MESSAGE):
        return None
    return InvalidationMessage(kind, target)


class InvalidationPublisher:
    """Broadcasts invalidations of already-scoped keys to other instances."""

    async def publish(self, scoped_key: str) -> None:
        raise NotImplementedError

    async def publish_prefix(self, scoped_prefix: str) -> None:
        raise NotImplementedError


class RedisInvalidationPublisher(InvalidationPublisher):
    """Publishes on a Redis channel. Errors propagate to the caller."""

    def __init__(self, client, channel: str = DEFAULT_CHANNEL):
        self.redis = client
        self.channel = channel
        self.logger = get_logger("cache.invalidation.publisher")

    async def publish(self, scoped_key: str) -> None:
        receivers = await self.redis.publish(self.channel, InvalidationMessage(KEY_MESSAGE, scoped_key).encode())
        self.logger.debug("Published key invalidation", key=scoped_key, receivers=receivers)

    async def publish_prefix(self, scoped_prefix: str) -> None:
        receivers = await self.redis.publish(
            self.channel, InvalidationMessage(PREFIX_MESSAGE, scoped_prefix).encode()
        )
        self.logger.debug("Published prefix invalidation", prefix=scoped_prefix, receivers=receivers)


class InvalidationSubscriber:
    """Applies invalidations received on the channel to the local store."""

    def __init__(self, client, store: CacheStore, channel: str = DEFAULT_CHANNEL, poll_timeout: float = 1.0):
        self.redis = client
        self.store = store
        self.channel = channel
        self.poll_timeout = poll_timeout
        self.logger = get_logger("cache.invalidation.subscriber")
        self.running = False
        self._pubsub = None
        self._listen_task: Optional[asyncio.Task] = None

    async def start(self):
        """Subscribe and start the listen loop."""
        self._pubsub = self.redis.pubsub()
        await self._pubsub.subscribe(self.channel)
        self.running = True
        self._listen_task = asyncio.create_task(self._listen_loop())
        self.logger.info("Cache invalidation subscriber started", channel=self.channel)

    async def stop(self):
        """Stop listening and release the pub/sub connection."""
        self.running = False
        if self._listen_task:
            self._listen_task.cancel()
            try:
                await self._listen_task
            except asyncio.CancelledError:
                pass
            self._listen_task = None

        if self._pubsub is not None:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
            self._pubsub = None
        self.logger.info("Cache invalidation subscriber stopped", channel=self.channel)

    async def _listen_loop(self):
        while self.running:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=self.poll_timeout
                )
                if message is None:
                    continue
                await self.handle_message(message.get("data"))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error("Error in invalidation listen loop", error=str(e))
                await asyncio.sleep(self.poll_timeout)

    async def handle_message(self, payload) -> bool:
        """Apply one message; returns False when it was ignored."""
        message = parse_invalidation_message(payload)
        if message is None:
            self.logger.warning("Ignoring malformed invalidation message", payload=repr(payload))
            return False

        try:
            if message.kind == KEY_MESSAGE:
                await self.store.remove(message.target)
                self.logger.info("Invalidated cache key", key=message.target)
            else:
                removed = await self.store.remove_by_prefix(message.target)
                self.logger.info("Invalidated cache prefix", prefix=message.target, count=removed)
        except Exception as e:
            self.logger.error(
                "Failed to apply cache invalidation",
                kind=message.kind,
                target=message.target,
                error=str(e)
            )
            return False
        return True
