"""
pydrip: tick-driven outbound messaging flows for Python

A flow walks a population of contacts through a graph of email/SMS send
stages and engagement conditions, over days or weeks. Waiting is data
(`next_node_due_at`); a periodic `tick()` advances whatever is due and
hands the work to queue workers.

Design Pattern: Façade Pattern
This module re-exports the engine, its models and the storage and
counter adapters so applications only import from `pydrip`.

Example:
    ```python
    import asyncio
    from pydrip import (
        Channel, FakeChannelGateway, FlowDefinition, FlowEngine,
        InMemoryContactDirectory, InMemoryCounterStore,
        InMemoryEngagementStats, InMemoryFlowStore,
    )

    async def main():
        contacts = InMemoryContactDirectory.generate(3)
        engine = FlowEngine(
            InMemoryFlowStore(),
            InMemoryCounterStore(),
            gateways={Channel.EMAIL: FakeChannelGateway(Channel.EMAIL)},
            stats=InMemoryEngagementStats(),
            contacts=contacts,
        )
        await engine.register_flow(FlowDefinition.from_dict({
            "id": "welcome",
            "stages": [
                {"id": "hello", "type": "send", "channel": "email"},
                {"id": "done", "type": "end"},
            ],
            "branches": [{"source_id": "hello", "target_id": "done"}],
        }))
        execution_id = await engine.run_flow("welcome", contacts.ids())

        await engine.tick()
        await engine.worker("worker-1").drain()
        await engine.tick()
        print(await engine.get_progress(execution_id))

    asyncio.run(main())
    ```
"""

# Models
from pydrip.models import (
    BRANCH_NO,
    BRANCH_YES,
    END_OF_FLOW,
    Branch,
    Channel,
    ConditionEvaluation,
    ConditionNode,
    ConditionResult,
    DispatchedJob,
    Execution,
    ExecutionProgress,
    ExecutionStage,
    ExecutionState,
    FlowDefinition,
    FlowGraphError,
    JobKind,
    JobState,
    NodeKind,
    RetryableError,
    RetryPolicy,
    SendRecord,
    SendStageJob,
    StageNode,
    StageState,
    VerifyConditionJob,
)

# Configuration and time
from pydrip.clock import Clock, ManualClock, SystemClock
from pydrip.config import BreakerSettings, ChannelLimits, EngineConfig

# Channels (interfaces, fakes, throttling)
from pydrip.channels import (
    BreakerState,
    BreakerStatus,
    ChannelGateway,
    CircuitBreaker,
    Contact,
    ContactDirectory,
    EngagementStats,
    EngagementStatsProvider,
    FakeChannelGateway,
    InMemoryContactDirectory,
    InMemoryEngagementStats,
    MessageContent,
    RateDecision,
    RateLimiter,
    SendResult,
    StaticTemplateRenderer,
    TemplateRenderer,
)

# Storage and counters (Adapter pattern)
from pydrip.counters import CounterStore, InMemoryCounterStore
from pydrip.storage import FlowStore, InMemoryFlowStore, StorageError

# Engine
from pydrip.engine import (
    ActiveExecutionError,
    CostEstimate,
    EngineError,
    ExecutionPausedError,
    FlowEngine,
    InvalidStateError,
    StageNotReadyError,
    ThrottledError,
    TickSummary,
    Worker,
    WorkerError,
    WorkerHandle,
)


def __getattr__(name: str):
    """Lazy import for adapters with optional runtime requirements."""
    if name == "SqliteFlowStore":
        from pydrip.storage.sqlite import SqliteFlowStore

        return SqliteFlowStore
    elif name == "RedisCounterStore":
        from pydrip.counters.redis import RedisCounterStore

        return RedisCounterStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


# Version
__version__ = "0.1.0"

__all__ = [
    # Models
    "BRANCH_NO",
    "BRANCH_YES",
    "END_OF_FLOW",
    "Branch",
    "Channel",
    "ConditionEvaluation",
    "ConditionNode",
    "ConditionResult",
    "DispatchedJob",
    "Execution",
    "ExecutionProgress",
    "ExecutionStage",
    "ExecutionState",
    "FlowDefinition",
    "FlowGraphError",
    "JobKind",
    "JobState",
    "NodeKind",
    "RetryableError",
    "RetryPolicy",
    "SendRecord",
    "SendStageJob",
    "StageNode",
    "StageState",
    "VerifyConditionJob",

    # Configuration and time
    "Clock",
    "ManualClock",
    "SystemClock",
    "BreakerSettings",
    "ChannelLimits",
    "EngineConfig",

    # Channels
    "BreakerState",
    "BreakerStatus",
    "ChannelGateway",
    "CircuitBreaker",
    "Contact",
    "ContactDirectory",
    "EngagementStats",
    "EngagementStatsProvider",
    "FakeChannelGateway",
    "InMemoryContactDirectory",
    "InMemoryEngagementStats",
    "MessageContent",
    "RateDecision",
    "RateLimiter",
    "SendResult",
    "StaticTemplateRenderer",
    "TemplateRenderer",

    # Storage and counters
    "CounterStore",
    "InMemoryCounterStore",
    "RedisCounterStore",
    "FlowStore",
    "InMemoryFlowStore",
    "SqliteFlowStore",
    "StorageError",

    # Engine
    "ActiveExecutionError",
    "CostEstimate",
    "EngineError",
    "ExecutionPausedError",
    "FlowEngine",
    "InvalidStateError",
    "StageNotReadyError",
    "ThrottledError",
    "TickSummary",
    "Worker",
    "WorkerError",
    "WorkerHandle",
]
