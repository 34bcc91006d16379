from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, TypeVar

from ..errors import DurableError, FatalEngineError

T = TypeVar("T")


async def call_maybe_async(fn: Callable[..., Any], *args: Any) -> Any:
    """Call ``fn`` and await the result when it is awaitable."""
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


async def guard_store(fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
    """Run a repository call, surfacing backend failures as ``FatalEngineError``."""
    try:
        return await fn(*args, **kwargs)
    except DurableError:
        raise
    except Exception as exc:
        raise FatalEngineError(f"History store failure in {fn.__name__}: {exc}") from exc
