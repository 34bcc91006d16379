"""Runs workflow attempts until an execution reaches a terminal status."""

from __future__ import annotations

import asyncio
import logging
import uuid
import weakref
from typing import Any, Callable, Dict, Optional, Tuple, Union

from .callbacks import CallbackSubmitter, LoggingCallbackSubmitter
from .clock import Clock, SystemClock
from .config import DurastepConfig, load_config
from .context import DurableContext, ExecutionScope
from .contracts import ExecutionOutcome, SignalResult
from .errors import (
    ExecutionNotFoundError,
    FatalEngineError,
    OperationError,
    SuspendExecution,
    WorkflowNotFoundError,
    error_kind,
)
from .invoke import FunctionInvoker, LocalInvoker
from .persistence import get_repository
from .persistence.models import ErrorInfo, Execution, ExecutionStatus, WaitTokenStatus
from .persistence.repository import HistoryRepository
from .serde import ResultSerializer
from .steps import StepExecutor
from .utils.calls import call_maybe_async, guard_store
from .waits import WaitCoordinator

logger = logging.getLogger(__name__)

WorkflowFunc = Callable[[Any, DurableContext], Any]


class ExecutionDriver:
    """Starts, resumes and signals executions of registered workflows.

    Each attempt re-runs the workflow function from the top; the primitives on
    ``DurableContext`` fast-forward over committed history. Attempts of the
    same execution never overlap within one driver.
    """

    def __init__(
        self,
        repository: Optional[HistoryRepository] = None,
        *,
        clock: Optional[Clock] = None,
        invoker: Optional[FunctionInvoker] = None,
        submitter: Optional[CallbackSubmitter] = None,
        config: Optional[DurastepConfig] = None,
    ) -> None:
        self.config = config or load_config()
        self.repository = repository or get_repository(config=self.config)
        self.clock = clock or SystemClock()
        self.invoker = invoker or LocalInvoker()
        self.submitter = submitter or LoggingCallbackSubmitter()
        self._workflows: Dict[str, WorkflowFunc] = {}
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        # Only executions driven by run_until_complete have a wakeup event
        self._wakeups: Dict[str, asyncio.Event] = {}

    def register(self, fn: WorkflowFunc, name: Optional[str] = None) -> WorkflowFunc:
        workflow_name = name or fn.__name__
        existing = self._workflows.get(workflow_name)
        if existing is not None and existing is not fn:
            logger.warning(f"Replacing workflow registered as {workflow_name}")
        self._workflows[workflow_name] = fn
        return fn

    def workflow(self, name: Optional[str] = None) -> Callable[[WorkflowFunc], WorkflowFunc]:
        """Decorator form of ``register``."""

        def decorator(fn: WorkflowFunc) -> WorkflowFunc:
            return self.register(fn, name)

        return decorator

    def _resolve(self, workflow: Union[str, WorkflowFunc]) -> Tuple[str, WorkflowFunc]:
        if isinstance(workflow, str):
            fn = self._workflows.get(workflow)
            if fn is None:
                raise WorkflowNotFoundError(f"No workflow registered as '{workflow}'")
            return workflow, fn
        for name, fn in self._workflows.items():
            if fn is workflow:
                return name, fn
        self.register(workflow)
        return workflow.__name__, workflow

    async def start(
        self,
        workflow: Union[str, WorkflowFunc],
        event: Any = None,
        execution_id: Optional[str] = None,
    ) -> ExecutionOutcome:
        """Create an execution and run its first attempt.

        Starting an execution id that already exists runs an attempt on the
        stored execution instead of creating a second one.
        """
        name, _ = self._resolve(workflow)
        execution_id = execution_id or str(uuid.uuid4())
        existing = await guard_store(self.repository.get_execution, execution_id)
        if existing is None:
            await guard_store(
                self.repository.create_execution,
                Execution(
                    execution_id=execution_id,
                    workflow_name=name,
                    input=ResultSerializer.encode(event),
                    started_at=self.clock.now(),
                    updated_at=self.clock.now(),
                ),
            )
            logger.info(f"Started execution {execution_id} of workflow {name}")
        elif existing.workflow_name != name:
            logger.warning(
                f"Execution {execution_id} belongs to workflow {existing.workflow_name}, not {name}"
            )
        return await self._attempt(execution_id)

    async def resume(self, execution_id: str) -> ExecutionOutcome:
        """Run one more attempt of a non-terminal execution."""
        return await self._attempt(execution_id)

    async def get_outcome(self, execution_id: str) -> ExecutionOutcome:
        execution = await guard_store(self.repository.get_execution, execution_id)
        if execution is None:
            raise ExecutionNotFoundError(f"Execution {execution_id} not found")
        return self._outcome(execution)

    async def run_until_complete(
        self,
        workflow: Union[str, WorkflowFunc],
        event: Any = None,
        execution_id: Optional[str] = None,
    ) -> ExecutionOutcome:
        """Drive an execution through every wait until it completes or fails."""
        execution_id = execution_id or str(uuid.uuid4())
        wakeup = self._wakeups.setdefault(execution_id, asyncio.Event())
        try:
            outcome = await self.start(workflow, event, execution_id)
            while not outcome.is_terminal:
                await self._wait_for_wake(outcome, wakeup)
                outcome = await self.resume(execution_id)
            return outcome
        finally:
            if self._wakeups.get(execution_id) is wakeup:
                del self._wakeups[execution_id]

    async def signal(self, callback_id: str, payload: Any = None) -> SignalResult:
        """Deliver ``payload`` to the wait registered under ``callback_id``."""
        accepted = await guard_store(
            self.repository.resolve_wait_token,
            callback_id,
            ResultSerializer.encode(payload),
            self.clock.now(),
        )
        token = await guard_store(self.repository.get_wait_token, callback_id)
        execution_id = token.execution_id if token else None
        if not accepted:
            if token is None:
                reason = "unknown callback id"
            elif token.status == WaitTokenStatus.EXPIRED:
                reason = "callback expired"
            else:
                reason = "callback already resolved"
            logger.warning(f"Rejected signal for callback {callback_id}: {reason}")
            return SignalResult(accepted=False, execution_id=execution_id, reason=reason)

        logger.info(f"Accepted signal for callback {callback_id} (execution {execution_id})")
        wakeup = self._wakeups.get(execution_id)
        if wakeup is not None:
            wakeup.set()
        return SignalResult(accepted=True, execution_id=execution_id)

    async def _wait_for_wake(self, outcome: ExecutionOutcome, wakeup: asyncio.Event) -> None:
        if wakeup.is_set():
            wakeup.clear()
            return

        waiter = asyncio.ensure_future(wakeup.wait())
        pending = {waiter}
        if outcome.wake_at is not None:
            delay = (outcome.wake_at - self.clock.now()).total_seconds()
            pending.add(asyncio.ensure_future(self.clock.sleep(max(0.0, delay))))
        try:
            await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in pending:
                task.cancel()
        wakeup.clear()

    async def _attempt(self, execution_id: str) -> ExecutionOutcome:
        lock = self._locks.get(execution_id)
        if lock is None:
            lock = self._locks[execution_id] = asyncio.Lock()
        async with lock:
            execution = await guard_store(self.repository.get_execution, execution_id)
            if execution is None:
                raise ExecutionNotFoundError(f"Execution {execution_id} not found")
            if execution.status.is_terminal:
                return self._outcome(execution)

            fn = self._workflows.get(execution.workflow_name)
            if fn is None:
                raise WorkflowNotFoundError(
                    f"No workflow registered as '{execution.workflow_name}'"
                )

            if execution.status == ExecutionStatus.WAITING:
                await guard_store(
                    self.repository.update_execution,
                    execution_id,
                    ExecutionStatus.RUNNING,
                )

            executor = StepExecutor(execution_id, self.repository, self.clock)
            scope = ExecutionScope(
                execution_id=execution_id,
                executor=executor,
                waits=WaitCoordinator(
                    executor,
                    self.repository,
                    self.clock,
                    self.config.engine,
                    self.submitter,
                ),
                invoker=self.invoker,
                clock=self.clock,
                engine=self.config.engine,
            )

            try:
                result = await call_maybe_async(
                    fn, execution.input, DurableContext(scope)
                )
                encoded = ResultSerializer.encode(result)
            except SuspendExecution as suspension:
                await guard_store(
                    self.repository.update_execution,
                    execution_id,
                    ExecutionStatus.WAITING,
                    wake_at=suspension.wake_at,
                )
                wake = suspension.wake_at.isoformat() if suspension.wake_at else "signal"
                logger.info(
                    f"Execution {execution_id} suspended on {suspension.reason} until {wake}"
                )
            except FatalEngineError:
                logger.exception(f"Execution {execution_id} aborted by a store failure")
                raise
            except Exception as exc:
                message = exc.message if isinstance(exc, OperationError) else str(exc)
                error = ErrorInfo(kind=error_kind(exc), message=message)
                await guard_store(
                    self.repository.update_execution,
                    execution_id,
                    ExecutionStatus.FAILED,
                    error=error,
                )
                logger.error(f"Execution {execution_id} failed: {error.kind}: {error.message}")
            else:
                await guard_store(
                    self.repository.update_execution,
                    execution_id,
                    ExecutionStatus.COMPLETED,
                    result=encoded,
                )
                logger.info(f"Execution {execution_id} completed")

            refreshed = await guard_store(self.repository.get_execution, execution_id)
            return self._outcome(refreshed)

    @staticmethod
    def _outcome(execution: Execution) -> ExecutionOutcome:
        return ExecutionOutcome(
            execution_id=execution.execution_id,
            status=execution.status,
            result=execution.result,
            error=execution.error,
            wake_at=execution.wake_at,
            history=execution.history,
        )
