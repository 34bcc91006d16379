"""Transport seam for callback signals."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import SignalMessage

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Carries ``SignalMessage`` envelopes from ``publish_signal`` to a ``SignalListener``.

    ``RawMessageT`` is whatever the transport needs to settle a delivery
    later through ``ack`` or ``nack``. Used as an async context manager, a
    transport releases its broker connection on exit.
    """

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    async def __aenter__(self) -> "BaseTransport[RawMessageT]":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect()

    @abc.abstractmethod
    async def publish(self, topic: str, message: SignalMessage) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, SignalMessage]]:
        """Yield ``(raw, message)`` pairs until ``lifespan`` seconds have passed.

        A ``lifespan`` of ``None`` listens until the consumer stops iterating.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Mark a delivery as handled."""
        raise NotImplementedError

    @abc.abstractmethod
    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Give a delivery back; with ``requeue`` it is the next one consumed."""
        raise NotImplementedError
