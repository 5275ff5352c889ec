"""Engine exceptions.

Operator-facing errors (raised by FlowEngine methods) derive from
EngineError. Job-handler signals derive from RetryableError so the
worker can map them to ledger outcomes.
"""

from __future__ import annotations

from datetime import timedelta

from pydrip.models.retry import RetryableError
from pydrip.models.status import Channel


class EngineError(Exception):
    """Request rejected by the engine."""

    pass


class ActiveExecutionError(EngineError):
    """The flow already has a non-terminal execution."""

    def __init__(self, flow_id: str, execution_id: str):
        super().__init__(f"Flow {flow_id} already has an active execution: {execution_id}")
        self.flow_id = flow_id
        self.execution_id = execution_id


class InvalidStateError(EngineError):
    """The execution or stage is not in a state that allows the operation."""

    pass


class ThrottledError(RetryableError):
    """A send was blocked by the rate limiter or an open circuit breaker.

    Not a failure: the job is deferred and counts against the channel's
    `max_retries`.
    """

    def __init__(self, channel: Channel, reason: str, retry_after: timedelta):
        super().__init__(f"{channel} throttled: {reason}")
        self.channel = channel
        self.reason = reason
        self.retry_after = retry_after


class DeferredError(RetryableError):
    """The job cannot run yet; re-queue it without consuming an attempt."""

    def __init__(self, message: str, retry_after: timedelta):
        super().__init__(message)
        self.retry_after = retry_after


class ExecutionPausedError(DeferredError):
    """The execution is paused; the job waits until it is resumed."""

    pass


class StageNotReadyError(DeferredError):
    """A condition's preceding send stage is still executing."""

    pass
