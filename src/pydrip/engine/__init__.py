"""
Engine module - the runtime that advances flow executions.

This module contains the execution components:
- scheduler: the tick that dispatches due executions
- progression: pointer moves, branch routing and completion
- evaluator: per-contact condition splits (VerifyConditionJob)
- dispatcher: rate-limited, circuit-broken sends (SendStageJob)
- ledger / worker: the job queue and the workers that drain it
- engine: the FlowEngine facade
"""

from pydrip.engine.dispatcher import StageDispatcher
from pydrip.engine.engine import CANCELLED_REASON, CostEstimate, FlowEngine
from pydrip.engine.errors import (
    ActiveExecutionError,
    DeferredError,
    EngineError,
    ExecutionPausedError,
    InvalidStateError,
    StageNotReadyError,
    ThrottledError,
)
from pydrip.engine.evaluator import (
    ConditionEvaluator,
    apply_operator,
    classify,
    metric_value,
    partition_contacts,
)
from pydrip.engine.ledger import JobLedger
from pydrip.engine.progression import ExecutionProgression, JobContext
from pydrip.engine.scheduler import ExecutionScheduler, TickSummary
from pydrip.engine.worker import Worker, WorkerError, WorkerHandle

__all__ = [
    # Facade
    "FlowEngine",
    "CostEstimate",
    "CANCELLED_REASON",
    # Tick and handlers
    "ExecutionScheduler",
    "TickSummary",
    "ExecutionProgression",
    "JobContext",
    "ConditionEvaluator",
    "StageDispatcher",
    # Condition helpers
    "apply_operator",
    "classify",
    "metric_value",
    "partition_contacts",
    # Jobs
    "JobLedger",
    "Worker",
    "WorkerHandle",
    "WorkerError",
    # Errors
    "EngineError",
    "ActiveExecutionError",
    "InvalidStateError",
    "ThrottledError",
    "DeferredError",
    "ExecutionPausedError",
    "StageNotReadyError",
]
