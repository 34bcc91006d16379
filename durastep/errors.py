"""Error taxonomy for durastep executions."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional, Tuple


class DurableError(Exception):
    """Base class for engine-level failures."""


class OperationError(DurableError):
    """A step operation failed.

    ``kind`` is the error kind matched by retry and catch policies. When the
    failure is replayed from history the original exception is gone, so only
    ``kind`` and ``message`` survive.
    """

    def __init__(self, kind: str, message: str) -> None:
        self.kind = kind
        self.message = message
        super().__init__(f"{kind}: {message}" if message else kind)


class FanOutError(OperationError):
    """One or more branches of a map/parallel call failed."""

    def __init__(self, name: str, errors: List[Tuple[int, OperationError]]) -> None:
        self.name = name
        self.errors = errors
        failed = ", ".join(str(index) for index, _ in errors)
        super().__init__(
            "FanOutError", f"{len(errors)} branch(es) of '{name}' failed: [{failed}]"
        )


class InvocationError(OperationError):
    """A remote unit of work returned an error."""

    def __init__(self, target: str, message: str, status_code: Optional[int] = None):
        self.target = target
        self.status_code = status_code
        super().__init__("InvocationError", f"{target}: {message}")


class WaitTimeoutError(DurableError):
    """A callback or condition wait exceeded its bound."""

    def __init__(self, name: str, message: str | None = None) -> None:
        self.name = name
        super().__init__(message or f"Wait '{name}' timed out")


class DuplicateStepNameError(DurableError):
    """A step name was reused for different work in the same namespace."""

    def __init__(self, namespace: str, name: str) -> None:
        self.namespace = namespace
        self.name = name
        where = f"namespace '{namespace}'" if namespace else "the root namespace"
        super().__init__(f"Step '{name}' already used in {where}")


class IterationCapExceededError(DurableError):
    """A condition wait polled more often than allowed."""

    def __init__(self, name: str, max_iterations: int) -> None:
        self.name = name
        self.max_iterations = max_iterations
        super().__init__(
            f"Condition wait '{name}' exceeded {max_iterations} iterations"
        )


class FatalEngineError(DurableError):
    """The history store is unavailable or returned corrupt data."""


class CallbackIdConflictError(DurableError):
    """A callback id is already bound to another wait."""


class WorkflowNotFoundError(DurableError):
    """No workflow function is registered under the requested name."""


class ExecutionNotFoundError(DurableError):
    """The requested execution does not exist."""


class ExecutionFailedError(DurableError):
    """Raised by ``ExecutionOutcome.raise_for_status`` for failed executions."""

    def __init__(self, execution_id: str, kind: str, message: str) -> None:
        self.execution_id = execution_id
        self.kind = kind
        self.message = message
        super().__init__(f"Execution {execution_id} failed: {kind}: {message}")


class DefinitionError(DurableError):
    """A state-machine definition is structurally invalid."""

    def __init__(self, problems: List[str]) -> None:
        self.problems = problems
        super().__init__("; ".join(problems))


class SuspendExecution(BaseException):
    """Unwinds the workflow function when a wait cannot complete yet.

    Derives from ``BaseException`` so ``except Exception`` blocks in workflow
    code never swallow a suspension.
    """

    def __init__(self, reason: str, wake_at: Optional[datetime] = None, **details: Any):
        self.reason = reason
        self.wake_at = wake_at
        self.details = details
        super().__init__(reason)


def error_kind(exc: BaseException) -> str:
    """Return the error kind used to match retry and catch policies."""
    if isinstance(exc, OperationError):
        return exc.kind
    return getattr(exc, "error_kind", None) or type(exc).__name__
