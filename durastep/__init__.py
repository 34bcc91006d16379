"""durastep: checkpointed workflow execution with deterministic replay."""

from .callbacks import CallbackSubmitter, HttpCallbackSubmitter, LoggingCallbackSubmitter
from .clock import ManualClock, SystemClock
from .config import DurastepConfig, load_config
from .context import DurableContext
from .contracts import (
    CALLBACK_TIMEOUT,
    CatchPolicy,
    ExecutionOutcome,
    RetryPolicy,
    SignalMessage,
    SignalResult,
    WaitDecision,
)
from .driver import ExecutionDriver
from .errors import (
    DurableError,
    FanOutError,
    InvocationError,
    IterationCapExceededError,
    OperationError,
    WaitTimeoutError,
)
from .invoke import FunctionInvoker, HttpInvoker, LocalInvoker
from .persistence import get_repository
from .persistence.models import ExecutionStatus
from .signals import SignalListener
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "CALLBACK_TIMEOUT",
    "CallbackSubmitter",
    "CatchPolicy",
    "DurableContext",
    "DurableError",
    "DurastepConfig",
    "ExecutionDriver",
    "ExecutionOutcome",
    "ExecutionStatus",
    "FanOutError",
    "FunctionInvoker",
    "HttpCallbackSubmitter",
    "HttpInvoker",
    "InvocationError",
    "IterationCapExceededError",
    "LocalInvoker",
    "LoggingCallbackSubmitter",
    "ManualClock",
    "OperationError",
    "RetryPolicy",
    "SignalListener",
    "SignalMessage",
    "SignalResult",
    "SystemClock",
    "WaitDecision",
    "WaitTimeoutError",
    "get_repository",
    "get_transport",
    "load_config",
]
