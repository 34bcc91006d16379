"""Memoized execution of named units of work."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable, Dict, NoReturn, Optional, Set

from .clock import Clock
from .contracts import RetrySpec, as_policies
from .errors import DuplicateStepNameError, DurableError, OperationError, error_kind
from .persistence.models import ErrorInfo, OperationKind, StepRecord, StepStatus
from .persistence.repository import HistoryRepository
from .serde import ResultSerializer
from .utils.calls import call_maybe_async, guard_store
from .utils.retry import retry_delay

logger = logging.getLogger(__name__)


class StepExecutor:
    """Runs named operations at most once per execution.

    A step name must be unique within its namespace for the lifetime of an
    execution. Reusing a name within one attempt raises
    ``DuplicateStepNameError``; reusing it across code changes for different
    work is a caller error that history cannot detect.
    """

    def __init__(
        self, execution_id: str, repository: HistoryRepository, clock: Clock
    ) -> None:
        self.execution_id = execution_id
        self._repository = repository
        self._clock = clock
        self._claimed: Dict[str, Set[str]] = defaultdict(set)

    def claim(self, namespace: str, name: str) -> None:
        """Reserve ``name`` for the current attempt."""
        if name in self._claimed[namespace]:
            raise DuplicateStepNameError(namespace, name)
        self._claimed[namespace].add(name)

    async def lookup(self, namespace: str, name: str) -> StepRecord | None:
        return await guard_store(
            self._repository.get_step, self.execution_id, namespace, name
        )

    async def commit(
        self,
        namespace: str,
        name: str,
        value: Any,
        *,
        kind: OperationKind = OperationKind.STEP,
        attempts: int = 1,
    ) -> StepRecord:
        """Append a succeeded record for ``value`` and return the stored record."""
        record = StepRecord(
            execution_id=self.execution_id,
            namespace=namespace,
            name=name,
            status=StepStatus.SUCCEEDED,
            kind=kind,
            result=ResultSerializer.encode(value),
            attempts=attempts,
        )
        return await guard_store(self._repository.append_step, record)

    async def _commit_failure(
        self,
        namespace: str,
        name: str,
        error: ErrorInfo,
        *,
        kind: OperationKind,
        attempts: int,
    ) -> StepRecord:
        record = StepRecord(
            execution_id=self.execution_id,
            namespace=namespace,
            name=name,
            status=StepStatus.FAILED,
            kind=kind,
            error=error,
            attempts=attempts,
        )
        return await guard_store(self._repository.append_step, record)

    @staticmethod
    def replay(record: StepRecord, result_type: Optional[Any] = None) -> Any:
        """Return or raise the outcome stored in ``record``."""
        if record.status == StepStatus.SUCCEEDED:
            return ResultSerializer.decode(record.result, result_type)
        error = record.error or ErrorInfo(kind="OperationError")
        raise OperationError(error.kind, error.message)

    async def fail(
        self,
        namespace: str,
        name: str,
        failure: BaseException,
        *,
        kind: OperationKind,
        attempts: int,
    ) -> NoReturn:
        """Record ``failure`` as the final outcome of ``name`` and raise it."""
        kind_name = error_kind(failure)
        message = failure.message if isinstance(failure, OperationError) else str(failure)
        await self._commit_failure(
            namespace,
            name,
            ErrorInfo(kind=kind_name, message=message),
            kind=kind,
            attempts=attempts,
        )
        logger.error(
            f"Step {namespace}/{name} failed after {attempts} attempt(s) "
            f"for execution_id={self.execution_id}: {kind_name}: {message}"
        )
        if isinstance(failure, OperationError):
            raise failure
        raise OperationError(kind_name, message) from failure

    async def run(
        self,
        namespace: str,
        name: str,
        operation: Callable[[], Any],
        *,
        kind: OperationKind = OperationKind.STEP,
        retry: RetrySpec = None,
        result_type: Optional[Any] = None,
    ) -> Any:
        """Return the memoized outcome of ``name`` or run ``operation`` once.

        Retries allowed by ``retry`` happen inside this call, so history
        holds a single record per step whatever the number of attempts.
        A result that cannot be serialized fails the step without a retry.
        """
        self.claim(namespace, name)
        record = await self.lookup(namespace, name)
        if record is not None:
            logger.debug(
                f"Replaying step {namespace}/{name} ({record.status.value}) for execution_id={self.execution_id}"
            )
            return self.replay(record, result_type)

        policies = as_policies(retry)
        attempts = 0
        while True:
            attempts += 1
            try:
                value = await call_maybe_async(operation)
                break
            except DurableError as exc:
                if not isinstance(exc, OperationError):
                    raise
                failure = exc
            except Exception as exc:
                failure = exc

            delay = retry_delay(policies, failure, attempts - 1)
            if delay is None:
                await self.fail(namespace, name, failure, kind=kind, attempts=attempts)

            logger.warning(
                f"Retrying step {namespace}/{name} in {delay:.2f}s "
                f"(attempt {attempts}) for execution_id={self.execution_id}: {failure}"
            )
            await self._clock.sleep(delay)

        try:
            encoded = ResultSerializer.encode(value)
        except ValueError as exc:
            await self.fail(namespace, name, exc, kind=kind, attempts=attempts)

        stored = await self.commit(
            namespace, name, encoded, kind=kind, attempts=attempts
        )
        logger.info(
            f"Committed step {namespace}/{name} #{stored.sequence} for execution_id={self.execution_id}"
        )
        return ResultSerializer.decode(stored.result, result_type)
