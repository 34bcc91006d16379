"""The handle through which workflow code reaches every durable primitive."""

from __future__ import annotations

import functools
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional, Sequence

from .clock import Clock, Duration
from .config import EngineConfig
from .constants import NAMESPACE_SEPARATOR, ROOT_NAMESPACE
from .contracts import RetrySpec, as_policies
from .errors import DurableError, OperationError
from .fanout import Branch, run_branches
from .invoke import FunctionInvoker
from .persistence.models import OperationKind
from .serde import ResultSerializer
from .steps import StepExecutor
from .utils.calls import call_maybe_async
from .utils.retry import retry_delay
from .waits import WaitCoordinator

workflow_logger = logging.getLogger("durastep.workflow")


def child_namespace(parent: str, label: str) -> str:
    if not label or NAMESPACE_SEPARATOR in label:
        raise ValueError(f"Invalid child context label: {label!r}")
    if parent == ROOT_NAMESPACE:
        return label
    return f"{parent}{NAMESPACE_SEPARATOR}{label}"


@dataclass
class ExecutionScope:
    """Collaborators shared by every context of one driver attempt."""

    execution_id: str
    executor: StepExecutor
    waits: WaitCoordinator
    invoker: FunctionInvoker
    clock: Clock
    engine: EngineConfig


class DurableContext:
    """Durable primitives scoped to one namespace of an execution.

    Every operation is identified by a name that must be unique within the
    namespace. Names omitted for waits are generated from per-kind counters
    that restart on each attempt, so they are stable as long as the workflow
    issues its waits in the same order.
    """

    def __init__(self, scope: ExecutionScope, namespace: str = ROOT_NAMESPACE) -> None:
        self._scope = scope
        self.namespace = namespace
        self._counters: Counter[str] = Counter()
        self.logger = logging.LoggerAdapter(
            workflow_logger,
            {"execution_id": scope.execution_id, "namespace": namespace},
        )

    @property
    def execution_id(self) -> str:
        return self._scope.execution_id

    @property
    def clock(self) -> Clock:
        return self._scope.clock

    def _auto_name(self, kind: str) -> str:
        index = self._counters[kind]
        self._counters[kind] += 1
        return f"{kind}-{index}"

    async def step(
        self,
        name: str,
        operation: Callable[[], Any],
        *,
        retry: RetrySpec = None,
        result_type: Optional[Any] = None,
    ) -> Any:
        """Run ``operation`` at most once per execution and return its committed result."""
        return await self._scope.executor.run(
            self.namespace, name, operation, retry=retry, result_type=result_type
        )

    async def wait(
        self,
        duration: Optional[Duration] = None,
        *,
        name: Optional[str] = None,
        callback_id: Optional[str] = None,
        timeout: Optional[Duration] = None,
    ) -> Any:
        """Sleep durably for ``duration``, or wait on ``callback_id`` when given."""
        if callback_id is not None:
            return await self.wait_for_callback(
                name, callback_id=callback_id, timeout=timeout
            )
        if duration is None:
            raise ValueError("wait() needs a duration or a callback_id")
        await self._scope.waits.timed_wait(
            self.namespace, name or self._auto_name("wait"), duration
        )
        return None

    async def wait_for_callback(
        self,
        name: Optional[str] = None,
        *,
        callback_id: Optional[str] = None,
        submitter: Any = None,
        timeout: Optional[Duration] = None,
        raise_on_timeout: bool = False,
    ) -> Any:
        return await self._scope.waits.callback(
            self.namespace,
            name or self._auto_name("callback"),
            callback_id=callback_id,
            submitter=submitter,
            timeout=timeout,
            raise_on_timeout=raise_on_timeout,
        )

    async def wait_for_condition(
        self,
        update: Callable[[Any], Any],
        initial_state: Any,
        continue_fn: Callable[[Any], Any],
        *,
        name: Optional[str] = None,
        max_iterations: Optional[int] = None,
        timeout: Optional[Duration] = None,
    ) -> Any:
        return await self._scope.waits.condition(
            self.namespace,
            name or self._auto_name("condition"),
            update,
            initial_state,
            continue_fn,
            max_iterations=max_iterations,
            timeout=timeout,
        )

    async def invoke(
        self, name: str, target: str, payload: Any = None, *, retry: RetrySpec = None
    ) -> Any:
        invoker = self._scope.invoker
        return await self._scope.executor.run(
            self.namespace,
            name,
            lambda: invoker.invoke(target, payload),
            kind=OperationKind.INVOKE,
            retry=retry,
        )

    async def run_in_child_context(
        self,
        label: str,
        fn: Callable[["DurableContext"], Any],
        *,
        retry: RetrySpec = None,
        result_type: Optional[Any] = None,
    ) -> Any:
        """Run ``fn`` against a context whose steps live in their own namespace.

        The child's outcome is checkpointed as one record named ``label`` in
        this namespace. A retried child starts over in ``<label>@<n>`` after
        a durable backoff timer named ``<label>#retry-<n>``, so a replay
        passes over earlier attempts without waiting again.
        """
        namespace = child_namespace(self.namespace, label)
        executor = self._scope.executor
        executor.claim(self.namespace, label)
        record = await executor.lookup(self.namespace, label)
        if record is not None:
            return executor.replay(record, result_type)

        policies = as_policies(retry)
        attempt = 0
        while True:
            attempt += 1
            target = namespace if attempt == 1 else f"{namespace}@{attempt}"
            try:
                value = await call_maybe_async(fn, DurableContext(self._scope, target))
                break
            except DurableError as exc:
                if not isinstance(exc, OperationError):
                    raise
                failure = exc
            except Exception as exc:
                failure = exc

            delay = retry_delay(policies, failure, attempt - 1)
            if delay is None:
                await executor.fail(
                    self.namespace, label, failure, kind=OperationKind.CHILD, attempts=attempt
                )
            timer = f"{label}#retry-{attempt}"
            if await executor.lookup(self.namespace, timer) is None:
                self.logger.warning(
                    f"Child context {namespace} failed on attempt {attempt}, "
                    f"retrying in {delay:.2f}s: {failure}"
                )
            await self._scope.waits.timed_wait(self.namespace, timer, delay)

        try:
            encoded = ResultSerializer.encode(value)
        except ValueError as exc:
            await executor.fail(
                self.namespace, label, exc, kind=OperationKind.CHILD, attempts=attempt
            )
        stored = await executor.commit(
            self.namespace, label, encoded, kind=OperationKind.CHILD, attempts=attempt
        )
        return ResultSerializer.decode(stored.result, result_type)

    async def map(
        self,
        items: Iterable[Any],
        branch: Callable[["DurableContext", Any, int], Any],
        *,
        name: str = "map",
        retry: RetrySpec = None,
        max_concurrency: Optional[int] = None,
    ) -> List[Any]:
        """Apply ``branch(ctx, item, index)`` to every item; results keep input order."""
        branches = [
            functools.partial(_map_branch, branch, item, index)
            for index, item in enumerate(items)
        ]
        return await run_branches(
            self,
            name,
            branches,
            retry=retry,
            max_concurrency=max_concurrency or self._scope.engine.max_concurrency,
        )

    async def parallel(
        self,
        branches: Sequence[Branch],
        *,
        name: str = "parallel",
        retry: RetrySpec = None,
        max_concurrency: Optional[int] = None,
    ) -> List[Any]:
        return await run_branches(
            self,
            name,
            list(branches),
            retry=retry,
            max_concurrency=max_concurrency or self._scope.engine.max_concurrency,
        )


async def _map_branch(
    branch: Callable[[DurableContext, Any, int], Any],
    item: Any,
    index: int,
    ctx: DurableContext,
) -> Any:
    return await call_maybe_async(branch, ctx, item, index)
