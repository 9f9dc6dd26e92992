"""
Change Feeds

Transports delivering raw change messages per scope. A feed makes no
ordering or de-duplication promises; consumers tolerate both.

Two implementations are provided:
    - InMemoryChangeFeed: in-process fan-out, used by tests and embedders
    - RedisChangeFeed: Redis pub/sub, one channel per scope
"""

from __future__ import annotations

import asyncio
import itertools
import json
from collections.abc import Callable
from typing import Any, Protocol

import redis.asyncio as aioredis
import redis.exceptions
import structlog

logger = structlog.get_logger(__name__)

MessageHandler = Callable[[Any], None]


class ChangeFeed(Protocol):
    """Source of raw change messages."""

    async def subscribe(self, scope: str, handler: MessageHandler) -> int:
        """Register ``handler`` for ``scope``; returns a registration token."""
        ...

    def unsubscribe(self, token: int) -> None:
        """Remove a registration. Takes effect immediately."""
        ...

    async def close(self) -> None:
        ...


def _deliver(handler: MessageHandler, scope: str, message: Any) -> None:
    try:
        handler(message)
    except Exception as e:
        logger.error(
            "change_feed_handler_error",
            scope=scope,
            error=str(e),
            error_type=type(e).__name__,
        )


class InMemoryChangeFeed:
    """In-process feed; ``publish`` delivers synchronously."""

    def __init__(self) -> None:
        self._tokens = itertools.count(1)
        self._handlers: dict[int, tuple[str, MessageHandler]] = {}

    async def subscribe(self, scope: str, handler: MessageHandler) -> int:
        token = next(self._tokens)
        self._handlers[token] = (scope, handler)
        return token

    def unsubscribe(self, token: int) -> None:
        self._handlers.pop(token, None)

    def publish(self, scope: str, message: Any) -> int:
        """
        Deliver ``message`` to every handler of ``scope``.

        Returns:
            Number of handlers the message was delivered to
        """
        targets = [h for s, h in list(self._handlers.values()) if s == scope]
        for handler in targets:
            _deliver(handler, scope, message)
        return len(targets)

    def subscriber_count(self, scope: str | None = None) -> int:
        if scope is None:
            return len(self._handlers)
        return sum(1 for s, _ in self._handlers.values() if s == scope)

    async def close(self) -> None:
        self._handlers.clear()


class RedisChangeFeed:
    """
    Change feed over Redis pub/sub.

    Each scope maps to the channel ``<prefix><scope>``. Messages are JSON;
    payloads that fail to decode are handed to the handlers as raw strings
    so the consumer can count and drop them.
    """

    def __init__(
        self,
        redis_url: str | None = None,
        client: aioredis.Redis | None = None,
        channel_prefix: str = "dashsync:changes:",
        poll_timeout: float = 1.0,
        reconnect_delay: float = 1.0,
    ) -> None:
        if client is None and redis_url is None:
            raise ValueError("RedisChangeFeed needs a redis_url or a client")

        self._owns_client = client is None
        self._client = client or aioredis.from_url(redis_url, decode_responses=True)
        self._prefix = channel_prefix
        self._poll_timeout = poll_timeout
        self._reconnect_delay = reconnect_delay

        self._pubsub: Any = None
        self._reader: asyncio.Task[None] | None = None
        self._tokens = itertools.count(1)
        self._handlers: dict[int, tuple[str, MessageHandler]] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self._closed = False

    def channel_for(self, scope: str) -> str:
        return f"{self._prefix}{scope}"

    def _channel_in_use(self, channel: str) -> bool:
        return any(self.channel_for(s) == channel for s, _ in self._handlers.values())

    async def subscribe(self, scope: str, handler: MessageHandler) -> int:
        if self._closed:
            raise RuntimeError("RedisChangeFeed is closed")

        channel = self.channel_for(scope)
        first = not self._channel_in_use(channel)

        token = next(self._tokens)
        self._handlers[token] = (scope, handler)

        if self._pubsub is None:
            self._pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        if first:
            try:
                await self._pubsub.subscribe(channel)
            except Exception:
                self._handlers.pop(token, None)
                raise
            logger.info("change_feed_subscribed", channel=channel)

        if self._reader is None or self._reader.done():
            self._reader = asyncio.ensure_future(self._listen())
        return token

    def unsubscribe(self, token: int) -> None:
        entry = self._handlers.pop(token, None)
        if entry is None:
            return

        channel = self.channel_for(entry[0])
        if self._pubsub is not None and not self._channel_in_use(channel):
            # Local handler is already gone; the remote side catches up
            task = asyncio.ensure_future(self._remote_unsubscribe(channel))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _remote_unsubscribe(self, channel: str) -> None:
        try:
            await self._pubsub.unsubscribe(channel)
            logger.info("change_feed_unsubscribed", channel=channel)
        except redis.exceptions.RedisError as e:
            logger.warning("change_feed_unsubscribe_failed", channel=channel, error=str(e))

    async def publish(self, scope: str, message: Any) -> int:
        """
        Publish a change message.

        Returns:
            Number of Redis clients that received it
        """
        return await self._client.publish(self.channel_for(scope), json.dumps(message))

    async def _listen(self) -> None:
        while not self._closed:
            if not self._pubsub.subscribed:
                await asyncio.sleep(self._poll_timeout)
                continue
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=self._poll_timeout
                )
            except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError) as e:
                logger.warning("change_feed_connection_lost", error=str(e))
                await asyncio.sleep(self._reconnect_delay)
                continue
            except Exception as e:
                # The reader must outlive any single bad read
                logger.error(
                    "change_feed_reader_error",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                await asyncio.sleep(self._reconnect_delay)
                continue

            if message is not None:
                self._handle_message(message)

    def _handle_message(self, message: dict[str, Any]) -> None:
        if message.get("type") != "message":
            return

        channel = message.get("channel")
        if isinstance(channel, bytes):
            channel = channel.decode()
        data = message.get("data")
        if isinstance(data, bytes):
            data = data.decode()

        try:
            decoded = json.loads(data)
        except (TypeError, ValueError):
            decoded = data

        for scope, handler in list(self._handlers.values()):
            if self.channel_for(scope) == channel:
                _deliver(handler, scope, decoded)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._handlers.clear()

        if self._reader is not None:
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
            self._reader = None

        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None
        if self._owns_client:
            await self._client.aclose()

        logger.info("change_feed_closed")
