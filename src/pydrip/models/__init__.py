"""Core data models for flow execution.

Defines the flow graph, execution records, job payloads and retry
behavior.

Design: Dependency-Free Models
These types do not import storage or engine modules, so every other
layer can depend on them without cycles.
"""

from pydrip.models.execution import (
    ConditionEvaluation,
    Execution,
    ExecutionProgress,
    ExecutionStage,
    SendRecord,
    new_id,
    utcnow,
)
from pydrip.models.graph import (
    BRANCH_NO,
    BRANCH_YES,
    END_OF_FLOW,
    Branch,
    ConditionNode,
    FlowDefinition,
    FlowGraphError,
    PlannedStage,
    StageNode,
)
from pydrip.models.jobs import (
    DispatchedJob,
    JobPayload,
    SendStageJob,
    VerifyConditionJob,
    payload_from_dict,
    payload_to_dict,
)
from pydrip.models.retry import RetryableError, RetryPolicy
from pydrip.models.status import (
    Channel,
    ConditionResult,
    ExecutionState,
    JobKind,
    JobState,
    NodeKind,
    StageState,
)

__all__ = [
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
    "JobPayload",
    "JobState",
    "NodeKind",
    "PlannedStage",
    "RetryPolicy",
    "RetryableError",
    "SendRecord",
    "SendStageJob",
    "StageNode",
    "StageState",
    "VerifyConditionJob",
    "new_id",
    "payload_from_dict",
    "payload_to_dict",
]
