"""Bounded concurrent branches with barrier semantics."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, List, Optional, Sequence

from .contracts import RetrySpec
from .errors import FanOutError, OperationError, SuspendExecution

if TYPE_CHECKING:
    from .context import DurableContext

logger = logging.getLogger(__name__)

Branch = Callable[["DurableContext"], Any]


@dataclass
class _Settled:
    index: int
    value: Any = None
    error: Optional[BaseException] = None
    suspension: Optional[SuspendExecution] = None


def earliest_wake(suspensions: Sequence[SuspendExecution]) -> Optional[datetime]:
    """Earliest timer among ``suspensions``; ``None`` if every one waits on a signal."""
    times = [s.wake_at for s in suspensions if s.wake_at is not None]
    return min(times) if times else None


async def run_branches(
    ctx: "DurableContext",
    name: str,
    branches: Sequence[Branch],
    *,
    retry: RetrySpec = None,
    max_concurrency: int,
) -> List[Any]:
    """Run every branch as child context ``<name>-<i>`` and return results in order.

    No branch is cancelled because a sibling failed or suspended. Once all
    have settled, any suspension suspends the caller; otherwise failed
    branches are reported together as a ``FanOutError``.
    """
    if max_concurrency < 1:
        raise ValueError("max_concurrency must be at least 1")
    if not branches:
        return []

    semaphore = asyncio.Semaphore(max_concurrency)

    async def _settle(index: int, branch: Branch) -> _Settled:
        async with semaphore:
            try:
                value = await ctx.run_in_child_context(
                    f"{name}-{index}", branch, retry=retry
                )
                return _Settled(index=index, value=value)
            except SuspendExecution as suspension:
                return _Settled(index=index, suspension=suspension)
            except Exception as exc:
                return _Settled(index=index, error=exc)

    settled = await asyncio.gather(
        *(_settle(index, branch) for index, branch in enumerate(branches))
    )

    engine_errors = [
        s.error for s in settled if s.error is not None and not isinstance(s.error, OperationError)
    ]
    if engine_errors:
        raise engine_errors[0]

    suspensions = [s.suspension for s in settled if s.suspension is not None]
    if suspensions:
        wake_at = earliest_wake(suspensions)
        logger.info(
            f"Fan-out '{name}' suspended on {len(suspensions)} of {len(settled)} branch(es)"
        )
        raise SuspendExecution(
            "fan-out",
            wake_at=wake_at,
            name=name,
            pending=[s.index for s in settled if s.suspension is not None],
        )

    failures = [(s.index, s.error) for s in settled if s.error is not None]
    if failures:
        logger.error(f"Fan-out '{name}' had {len(failures)} failed branch(es)")
        raise FanOutError(name, failures)

    return [s.value for s in settled]
