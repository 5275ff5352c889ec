"""Execution records: runs, stages, condition outcomes and send log.

Design: Value Objects
    Each dataclass is a snapshot of one stored row. Mutations go through
    the FlowStore, which applies them with state-guarded updates; callers
    re-read rather than mutate these objects in place.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime

from uuid_extensions import uuid7

from pydrip.models.status import Channel, ConditionResult, ExecutionState, StageState


def new_id() -> str:
    """Time-ordered unique id for any stored record."""
    return str(uuid7())


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class Execution:
    """One run of a flow over a fixed contact set."""

    flow_id: str
    """Flow definition this execution runs."""

    contact_ids: tuple[str, ...]
    """Full population, fixed at creation."""

    id: str = field(default_factory=new_id)

    state: ExecutionState = ExecutionState.IN_PROGRESS

    current_node: str | None = None
    """Node most recently dispatched by the scheduler."""

    next_node: str | None = None
    """Node the scheduler advances to once `next_node_due_at` passes."""

    next_node_due_at: datetime | None = None

    start_at: datetime | None = None
    """Requested start; a future value keeps the execution PENDING."""

    started_at: datetime | None = None
    finished_at: datetime | None = None

    error: str | None = None
    """Failure or cancellation reason."""

    emails_sent: int = 0
    sms_sent: int = 0
    total_cost: float = 0.0

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_due(self, now: datetime) -> bool:
        """Scheduler eligibility: in progress with a next node whose time has come."""
        return (
            self.state is ExecutionState.IN_PROGRESS
            and self.next_node is not None
            and self.next_node_due_at is not None
            and self.next_node_due_at <= now
        )

    def __repr__(self) -> str:
        return (
            f"Execution(id={self.id}, flow_id={self.flow_id}, state={self.state}, "
            f"next_node={self.next_node}, due={self.next_node_due_at})"
        )


@dataclass
class ExecutionStage:
    """One node instantiation within an execution.

    At most one row exists per (execution_id, node_id); that pair is the
    idempotency boundary for dispatch.
    """

    execution_id: str
    node_id: str

    id: str = field(default_factory=new_id)

    contact_ids: tuple[str, ...] | None = None
    """Subset this stage targets; None inherits from the preceding stage."""

    due_at: datetime | None = None
    state: StageState = StageState.PENDING

    job_id: str | None = None
    """Token of the job that owns the dispatch; set by the claiming update."""

    external_message_id: str | None = None
    """First provider message id produced by a send stage."""

    error: str | None = None
    sent_count: int = 0
    failed_count: int = 0

    late_contact_ids: tuple[str, ...] = ()
    """Contacts a converging branch routed here after the stage was claimed.

    They are not sent by this stage.
    """

    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def __repr__(self) -> str:
        size = None if self.contact_ids is None else len(self.contact_ids)
        return (
            f"ExecutionStage(id={self.id}, node_id={self.node_id}, state={self.state}, "
            f"contacts={size})"
        )


@dataclass
class ConditionEvaluation:
    """Per-contact outcome of one condition node in one execution.

    Written once and never updated.
    """

    execution_id: str
    stage_id: str
    node_id: str
    metric_param: str
    operator: str
    threshold: str
    yes_contacts: tuple[str, ...]
    no_contacts: tuple[str, ...]
    result: ConditionResult

    missing_count: int = 0
    """Contacts routed to "no" because no engagement fact was recorded."""

    id: str = field(default_factory=new_id)
    evaluated_at: datetime = field(default_factory=utcnow)

    @property
    def yes_count(self) -> int:
        return len(self.yes_contacts)

    @property
    def no_count(self) -> int:
        return len(self.no_contacts)

    @property
    def evaluated_count(self) -> int:
        return self.yes_count + self.no_count


@dataclass
class SendRecord:
    """Outcome of one message to one contact in one stage."""

    stage_id: str
    execution_id: str
    contact_id: str
    channel: Channel
    success: bool

    provider_message_id: str | None = None
    error: str | None = None
    cost: float = 0.0

    id: str = field(default_factory=new_id)
    sent_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class ExecutionProgress:
    """Read model summarizing where an execution stands."""

    execution_id: str
    state: ExecutionState
    total_stages: int
    pending: int
    executing: int
    completed: int
    failed: int
    current_node: str | None
    next_node: str | None
    next_node_due_at: datetime | None
    emails_sent: int
    sms_sent: int
    total_cost: float
    error: str | None = None
    late_contacts: int = 0
    """Contacts that reached an already claimed stage and were not sent it."""

    @property
    def percent_complete(self) -> float:
        if self.total_stages == 0:
            return 0.0
        return round(100.0 * (self.completed + self.failed) / self.total_stages, 2)
