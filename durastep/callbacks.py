"""Collaborators that hand callback ids to external systems."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import httpx

from .errors import InvocationError
from .utils.calls import call_maybe_async

logger = logging.getLogger(__name__)


@runtime_checkable
class CallbackSubmitter(Protocol):
    """Delivers a callback id to whoever will later send the signal."""

    async def submit(self, callback_id: str, execution_id: str) -> Any:
        ...


class LoggingCallbackSubmitter:
    """Only logs the callback id; useful when signals are sent by hand."""

    async def submit(self, callback_id: str, execution_id: str) -> Dict[str, str]:
        logger.info(
            f"Callback ID {callback_id} issued for execution_id={execution_id}"
        )
        return {"callback_id": callback_id}


class HttpCallbackSubmitter:
    """POSTs the callback id to an external endpoint."""

    def __init__(
        self,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.headers = headers or {}
        self.timeout = timeout
        self._transport = transport

    async def submit(self, callback_id: str, execution_id: str) -> Any:
        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self._transport
        ) as client:
            response = await client.post(
                self.url,
                json={"callback_id": callback_id, "execution_id": execution_id},
                headers=self.headers,
            )
        if response.status_code >= 400:
            raise InvocationError(self.url, response.text, response.status_code)
        logger.info(f"Submitted callback {callback_id} to {self.url}")
        return response.json() if response.content else None


async def submit_callback(submitter: Any, callback_id: str, execution_id: str) -> Any:
    """Submit through a ``CallbackSubmitter`` or a plain ``fn(callback_id)``."""
    if isinstance(submitter, CallbackSubmitter):
        return await submitter.submit(callback_id, execution_id)
    return await call_maybe_async(submitter, callback_id)
