"""Timed, callback and condition waits built on checkpointed steps."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from .callbacks import CallbackSubmitter, submit_callback
from .clock import Clock, Duration, to_seconds
from .config import EngineConfig
from .contracts import CALLBACK_TIMEOUT, WaitDecision
from .errors import FatalEngineError, IterationCapExceededError, SuspendExecution, WaitTimeoutError
from .persistence.models import OperationKind, WaitToken, WaitTokenStatus
from .persistence.repository import HistoryRepository
from .serde import ResultSerializer
from .steps import StepExecutor
from .utils.calls import call_maybe_async, guard_store

logger = logging.getLogger(__name__)


class WaitCoordinator:
    """Suspends and resumes an execution on time, signals and polled state."""

    def __init__(
        self,
        executor: StepExecutor,
        repository: HistoryRepository,
        clock: Clock,
        config: EngineConfig,
        submitter: Optional[CallbackSubmitter] = None,
    ) -> None:
        self.executor = executor
        self.repository = repository
        self.clock = clock
        self.config = config
        self.submitter = submitter

    @property
    def execution_id(self) -> str:
        return self.executor.execution_id

    async def timed_wait(self, namespace: str, name: str, duration: Duration) -> None:
        seconds = to_seconds(duration)
        if seconds < 0:
            raise ValueError(f"Wait '{name}' needs a non-negative duration, got {seconds}")

        def _schedule() -> dict:
            resume_at = self.clock.now() + timedelta(seconds=seconds)
            return {"resume_at": resume_at.isoformat(), "seconds": seconds}

        record = await self.executor.run(namespace, name, _schedule, kind=OperationKind.WAIT)
        resume_at = datetime.fromisoformat(record["resume_at"])
        if self.clock.now() < resume_at:
            logger.info(
                f"Execution {self.execution_id} waiting on '{name}' until {resume_at.isoformat()}"
            )
            raise SuspendExecution("timer", wake_at=resume_at, name=name, namespace=namespace)

        resumed = await self.executor.run(
            namespace,
            f"{name}#resumed",
            lambda: {"resumed_at": self.clock.now().isoformat()},
            kind=OperationKind.WAIT,
        )
        logger.debug(
            f"Execution {self.execution_id} resumed '{name}' at {resumed['resumed_at']}"
        )

    async def callback(
        self,
        namespace: str,
        name: str,
        *,
        callback_id: Optional[str] = None,
        submitter: Any = None,
        timeout: Optional[Duration] = None,
        raise_on_timeout: bool = False,
    ) -> Any:
        """Wait for an external signal addressed to a callback id.

        Returns the signal payload, or ``CALLBACK_TIMEOUT`` when the wait
        expired first (``WaitTimeoutError`` with ``raise_on_timeout``).
        """
        self.executor.claim(namespace, name)
        settled = await self.executor.lookup(namespace, name)
        if settled is not None:
            return self._callback_result(name, self.executor.replay(settled), raise_on_timeout)

        if timeout is None and self.config.default_callback_timeout_seconds is not None:
            timeout = self.config.default_callback_timeout_seconds
        timeout_seconds = to_seconds(timeout) if timeout is not None else None

        async def _allocate() -> dict:
            token_id = callback_id or str(uuid.uuid4())
            now = self.clock.now()
            expires_at = (
                now + timedelta(seconds=timeout_seconds)
                if timeout_seconds is not None
                else None
            )
            await guard_store(
                self.repository.create_wait_token,
                WaitToken(
                    token=token_id,
                    execution_id=self.execution_id,
                    namespace=namespace,
                    name=name,
                    expires_at=expires_at,
                    created_at=now,
                ),
            )
            return {
                "callback_id": token_id,
                "expires_at": expires_at.isoformat() if expires_at else None,
            }

        allocation = await self.executor.run(
            namespace, f"{name}#token", _allocate, kind=OperationKind.CALLBACK
        )
        token_id = allocation["callback_id"]

        target = submitter or self.submitter
        if target is not None:
            await self.executor.run(
                namespace,
                f"{name}#submit",
                lambda: submit_callback(target, token_id, self.execution_id),
                kind=OperationKind.CALLBACK,
            )

        token = await guard_store(self.repository.get_wait_token, token_id)
        if token is None:
            raise FatalEngineError(f"Wait token {token_id} for '{name}' is missing")

        now = self.clock.now()
        if token.status == WaitTokenStatus.PENDING and token.is_expired(now):
            if await guard_store(self.repository.expire_wait_token, token_id, now):
                logger.info(f"Callback {token_id} for '{name}' expired at {now.isoformat()}")
            token = await guard_store(self.repository.get_wait_token, token_id)

        if token.status == WaitTokenStatus.RESOLVED:
            outcome = {"outcome": "signal", "payload": token.payload}
        elif token.status == WaitTokenStatus.EXPIRED:
            outcome = {"outcome": "timeout"}
        else:
            logger.info(
                f"Execution {self.execution_id} waiting for callback {token_id} ('{name}')"
            )
            raise SuspendExecution(
                "callback",
                wake_at=token.expires_at,
                name=name,
                namespace=namespace,
                callback_id=token_id,
            )

        stored = await self.executor.commit(
            namespace, name, outcome, kind=OperationKind.CALLBACK
        )
        return self._callback_result(
            name, ResultSerializer.decode(stored.result), raise_on_timeout
        )

    @staticmethod
    def _callback_result(name: str, outcome: dict, raise_on_timeout: bool) -> Any:
        if outcome.get("outcome") == "timeout":
            if raise_on_timeout:
                raise WaitTimeoutError(name, f"Callback wait '{name}' timed out")
            return CALLBACK_TIMEOUT
        return outcome.get("payload")

    async def condition(
        self,
        namespace: str,
        name: str,
        update: Callable[[Any], Any],
        initial_state: Any,
        continue_fn: Callable[[Any], Any],
        *,
        max_iterations: Optional[int] = None,
        timeout: Optional[Duration] = None,
    ) -> Any:
        """Poll ``update`` until ``continue_fn`` says stop and return the final state."""
        self.executor.claim(namespace, name)
        cap = (
            max_iterations
            if max_iterations is not None
            else self.config.max_condition_iterations
        )
        if cap < 1:
            raise ValueError(f"Condition wait '{name}' needs max_iterations >= 1, got {cap}")

        deadline: Optional[datetime] = None
        if timeout is not None:
            started = await self.executor.run(
                namespace,
                f"{name}#start",
                lambda: {"started_at": self.clock.now().isoformat()},
                kind=OperationKind.CONDITION,
            )
            deadline = datetime.fromisoformat(started["started_at"]) + timedelta(
                seconds=to_seconds(timeout)
            )

        state = ResultSerializer.encode(initial_state)
        for iteration in range(cap):
            current = state
            state = await self.executor.run(
                namespace,
                f"{name}#update-{iteration}",
                lambda: call_maybe_async(update, current),
                kind=OperationKind.CONDITION,
            )
            decision = WaitDecision.coerce(await call_maybe_async(continue_fn, state))
            if not decision.should_continue:
                logger.debug(
                    f"Condition '{name}' settled after {iteration + 1} update(s) "
                    f"for execution_id={self.execution_id}"
                )
                return state

            delay = decision.delay_seconds
            if delay is None:
                delay = self.config.default_condition_delay_seconds
            delay_name = f"{name}#delay-{iteration}"
            if deadline is not None:
                scheduled = await self.executor.lookup(namespace, delay_name)
                if scheduled is None:
                    remaining = (deadline - self.clock.now()).total_seconds()
                    if remaining <= 0:
                        raise WaitTimeoutError(name, f"Condition wait '{name}' timed out")
                    delay = min(delay, remaining)
            await self.timed_wait(namespace, delay_name, delay)

        raise IterationCapExceededError(name, cap)
