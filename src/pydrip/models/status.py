"""Status enumerations for flow execution tracking.

Defines lifecycle states for executions, their per-node stages,
condition outcomes, and jobs in the background ledger.
"""

from enum import Enum


class Channel(Enum):
    """Outbound delivery channel for a send stage."""

    EMAIL = "email"
    SMS = "sms"

    def __str__(self) -> str:
        return self.value


class NodeKind(Enum):
    """Kind of a node in a flow graph."""

    SEND = "send"
    CONDITION = "condition"
    END = "end"

    def __str__(self) -> str:
        return self.value


class ExecutionState(Enum):
    """Status of one run of a flow over a contact set.

    Lifecycle:
        PENDING → IN_PROGRESS ⇄ PAUSED → COMPLETED/FAILED

    Terminal states are final. PAUSED and IN_PROGRESS are the only
    pair that may move back and forth.
    """

    PENDING = "pending"
    """Execution created with a start time in the future."""

    IN_PROGRESS = "in_progress"
    """Execution is eligible for advancement by the scheduler."""

    PAUSED = "paused"
    """Execution is held by an operator; not eligible until resumed."""

    COMPLETED = "completed"
    """Execution reached an end of flow."""

    FAILED = "failed"
    """Execution failed or was cancelled; `error` holds the reason."""

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (no more work will happen)."""
        return self in (ExecutionState.COMPLETED, ExecutionState.FAILED)

    @property
    def is_active(self) -> bool:
        """Check if this status blocks a new execution of the same flow."""
        return not self.is_terminal

    def __str__(self) -> str:
        return self.value


class StageState(Enum):
    """Status of one node instantiation within an execution.

    Lifecycle:
        PENDING → EXECUTING → COMPLETED/FAILED

    Transitions are monotonic. Once a stage is EXECUTING it is never
    dispatched again by the scheduler.
    """

    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal."""
        return self in (StageState.COMPLETED, StageState.FAILED)

    @property
    def is_claimed(self) -> bool:
        """Check if a dispatch already happened for this stage."""
        return self is not StageState.PENDING

    def can_transition_to(self, target: "StageState") -> bool:
        """Return True if moving from this state to `target` is allowed."""
        if self is StageState.PENDING:
            return target is StageState.EXECUTING
        if self is StageState.EXECUTING:
            return target.is_terminal
        return False

    def __str__(self) -> str:
        return self.value


class ConditionResult(Enum):
    """Overall outcome of a per-contact condition evaluation."""

    YES = "yes"
    NO = "no"
    MIXED = "mixed"

    def __str__(self) -> str:
        return self.value


class JobKind(Enum):
    """Closed set of background job types."""

    SEND_STAGE = "send-stage"
    VERIFY_CONDITION = "verify-condition"

    def __str__(self) -> str:
        return self.value


class JobState(Enum):
    """Status of a job in the ledger.

    Lifecycle:
        QUEUED → PROCESSING → COMPLETED/FAILED
        PROCESSING → RETRIED → PROCESSING (deferral or retry)
        FAILED → QUEUED (operator retry)
    """

    QUEUED = "queued"
    """Job is waiting for a worker."""

    PROCESSING = "processing"
    """Job has been claimed by a worker."""

    COMPLETED = "completed"
    """Job finished (including no-op skips)."""

    FAILED = "failed"
    """Job is parked for operator attention."""

    RETRIED = "retried"
    """Job was deferred or retried and waits for `available_at`."""

    @property
    def is_claimable(self) -> bool:
        """Check if a worker may pick this job up."""
        return self in (JobState.QUEUED, JobState.RETRIED)

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)

    def __str__(self) -> str:
        return self.value
