"""Bridge from a workflow to other units of work."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, Protocol

import httpx
from pydantic_core import to_jsonable_python

from .errors import InvocationError
from .utils.calls import call_maybe_async

logger = logging.getLogger(__name__)


class FunctionInvoker(Protocol):
    async def invoke(self, target: str, payload: Any) -> Any:
        """Run ``target`` with ``payload`` and return its result."""


class LocalInvoker:
    """Invokes callables registered in this process by name."""

    def __init__(self, targets: Optional[Dict[str, Callable[[Any], Any]]] = None) -> None:
        self._targets: Dict[str, Callable[[Any], Any]] = dict(targets or {})

    def register(self, name: str, fn: Callable[[Any], Any] | None = None):
        if fn is None:

            def decorator(func: Callable[[Any], Any]) -> Callable[[Any], Any]:
                self._targets[name] = func
                return func

            return decorator
        self._targets[name] = fn
        return fn

    async def invoke(self, target: str, payload: Any) -> Any:
        fn = self._targets.get(target)
        if fn is None:
            raise InvocationError(target, "no such target registered")
        logger.debug(f"Invoking local target {target}")
        return await call_maybe_async(fn, payload)


class HttpInvoker:
    """Invokes remote functions by POSTing JSON to ``target`` URLs."""

    def __init__(
        self,
        *,
        base_url: str = "",
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url
        self.headers = headers or {}
        self.timeout = timeout
        self._transport = transport

    async def invoke(self, target: str, payload: Any) -> Any:
        async with httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, transport=self._transport
        ) as client:
            try:
                response = await client.post(
                    target, json=to_jsonable_python(payload), headers=self.headers
                )
            except httpx.HTTPError as exc:
                raise InvocationError(target, str(exc)) from exc
        if response.status_code >= 400:
            logger.warning(f"Invocation of {target} returned {response.status_code}")
            raise InvocationError(target, response.text, response.status_code)
        return response.json() if response.content else None
