"""In-process signal transport."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from ..contracts import SignalMessage
from .base import BaseTransport

# Topic the message was consumed from, and the message
RawSignal = Tuple[str, SignalMessage]


class InMemoryTransport(BaseTransport[RawSignal]):
    """Queue per topic inside one event loop; used by tests and single-process runs."""

    def __init__(self, poll_interval: float = 0.05) -> None:
        self._queues: Dict[str, Deque[RawSignal]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self._poll_interval = poll_interval
        self.acked: list[str] = []

    async def publish(self, topic: str, message: SignalMessage) -> None:
        raw = (topic, message)
        async with self._lock:
            self._queues[topic].append(raw)

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawSignal, SignalMessage]]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan is not None else None

        while deadline is None or loop.time() < deadline:
            async with self._lock:
                raw_message = (
                    self._queues[topic].popleft() if self._queues[topic] else None
                )
            if raw_message is not None:
                yield raw_message, raw_message[1]
                continue
            await asyncio.sleep(self._poll_interval)

    async def ack(self, raw_message: RawSignal) -> None:
        self.acked.append(raw_message[1].message_id)

    async def nack(self, raw_message: RawSignal, requeue: bool = True) -> None:
        if requeue:
            topic, _ = raw_message
            async with self._lock:
                self._queues[topic].appendleft(raw_message)

    def pending(self, topic: str) -> int:
        return len(self._queues[topic])
