"""Redis transport for cross-process signal delivery."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from pydantic import ValidationError

from ..contracts import SignalMessage
from .base import BaseTransport

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport[Tuple[str, str]]):
    """Redis list per topic, consumed with ``BRPOP``.

    Raw deliveries are ``(queue_name, message_json)`` pairs.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        key_prefix: str = "durastep",
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisTransport")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.key_prefix = key_prefix
        self._redis: Optional[Any] = None

    def _queue_name(self, topic: str) -> str:
        return f"{self.key_prefix}:{topic}"

    async def connect(self) -> None:
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, message: SignalMessage) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self._queue_name(topic), message.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, str], SignalMessage]]:
        if not self._redis:
            await self.connect()

        queue_name = self._queue_name(topic)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan is not None else None

        while deadline is None or loop.time() < deadline:
            result = await self._redis.brpop(queue_name, timeout=1)
            if not result:
                continue
            _, message_json = result
            try:
                message = SignalMessage.from_json(message_json)
            except ValidationError as e:
                logger.error(f"Dropping malformed signal on {queue_name}: {e}")
                continue
            yield (queue_name, message_json), message

    async def ack(self, raw_message: Tuple[str, str]) -> None:
        """No-op: ``BRPOP`` already removed the message."""
        pass

    async def nack(self, raw_message: Tuple[str, str], requeue: bool = True) -> None:
        if not requeue:
            return
        if not self._redis:
            await self.connect()
        queue_name, message_json = raw_message
        # BRPOP consumes from the tail, so the message is delivered next
        await self._redis.rpush(queue_name, message_json)
        logger.warning(f"Requeued signal on {queue_name}")
