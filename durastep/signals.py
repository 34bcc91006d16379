"""Feeds callback signals arriving on a transport into an execution driver."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, List, Optional

from .constants import SIGNAL_TOPIC
from .contracts import SignalMessage, SignalResult
from .errors import FatalEngineError
from .transports import BaseTransport

if TYPE_CHECKING:
    from .driver import ExecutionDriver

logger = logging.getLogger(__name__)


async def publish_signal(
    transport: BaseTransport,
    callback_id: str,
    payload: Any = None,
    topic: str = SIGNAL_TOPIC,
) -> SignalMessage:
    """Publish a signal for ``callback_id`` and return the sent envelope."""
    message = SignalMessage(callback_id=callback_id, payload=payload)
    await transport.publish(topic, message)
    logger.info(f"Published signal {message.message_id} for callback {callback_id}")
    return message


class SignalListener:
    """Consumes ``SignalMessage`` envelopes and resolves their wait tokens.

    With ``resume=True`` the listener also runs the next attempt of each
    execution whose signal was accepted.
    """

    def __init__(
        self,
        transport: BaseTransport,
        driver: "ExecutionDriver",
        *,
        topic: str = SIGNAL_TOPIC,
        resume: bool = False,
    ) -> None:
        self._transport = transport
        self._driver = driver
        self._topic = topic
        self._resume = resume
        self.results: List[SignalResult] = []

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Listen on the signal topic until ``lifespan`` seconds have passed."""
        async with self._transport:
            async for raw_message, message in self._transport.subscribe(
                self._topic, lifespan=lifespan
            ):
                try:
                    await self.handle(message)
                except FatalEngineError:
                    await self._transport.nack(raw_message, requeue=True)
                    raise
                await self._transport.ack(raw_message)

    async def handle(self, message: SignalMessage) -> SignalResult:
        result = await self._driver.signal(message.callback_id, message.payload)
        self.results.append(result)
        if not result.accepted:
            logger.warning(
                f"Signal {message.message_id} for callback {message.callback_id} "
                f"not accepted: {result.reason}"
            )
            return result

        if self._resume and result.execution_id is not None:
            outcome = await self._driver.resume(result.execution_id)
            logger.info(
                f"Resumed execution {result.execution_id} after signal: {outcome.status.value}"
            )
        return result
