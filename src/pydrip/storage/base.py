"""Abstract persistent store for flows, executions and the job ledger.

Design: Dependency Inversion
The engine depends on FlowStore; adapters (in-memory, SQLite) implement
it. Every state change that guards dispatch is a compare-and-set: the
adapter applies it only if the row is still in the expected state and
reports whether it did.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import datetime

from pydrip.models import (
    Channel,
    ConditionEvaluation,
    DispatchedJob,
    Execution,
    ExecutionStage,
    ExecutionState,
    FlowDefinition,
    JobState,
    SendRecord,
    StageState,
)


class StorageError(Exception):
    """Storage operation failed."""

    pass


class FlowStore(ABC):
    """Durable tables: flows, executions, stages, condition evaluations,
    send records and dispatched jobs."""

    # ------------------------------------------------------------------
    # Flow definitions
    # ------------------------------------------------------------------

    @abstractmethod
    async def save_flow(self, flow: FlowDefinition) -> None:
        """Insert or replace a flow definition."""
        pass

    @abstractmethod
    async def get_flow(self, flow_id: str) -> FlowDefinition | None:
        pass

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_execution(self, execution: Execution) -> None:
        """Insert a new execution.

        Raises:
            StorageError: If the flow already has a non-terminal execution
        """
        pass

    @abstractmethod
    async def get_execution(self, execution_id: str) -> Execution | None:
        pass

    @abstractmethod
    async def find_active_execution(self, flow_id: str) -> Execution | None:
        """Return the flow's non-terminal execution, if any."""
        pass

    @abstractmethod
    async def list_executions(self, flow_id: str | None = None) -> list[Execution]:
        pass

    @abstractmethod
    async def list_due_executions(self, now: datetime) -> list[Execution]:
        """In-progress executions with `next_node_due_at <= now`.

        Ordered by (next_node_due_at, id) so a tick's order is stable.
        """
        pass

    @abstractmethod
    async def list_startable_executions(self, now: datetime) -> list[Execution]:
        """Pending executions whose `start_at` has been reached."""
        pass

    @abstractmethod
    async def transition_execution(
        self,
        execution_id: str,
        from_states: Sequence[ExecutionState],
        to_state: ExecutionState,
        now: datetime,
        error: str | None = None,
    ) -> bool:
        """Move an execution to `to_state` if it is in one of `from_states`.

        Sets `started_at` when entering IN_PROGRESS for the first time and
        `finished_at` when entering a terminal state.

        Returns:
            True if the update was applied
        """
        pass

    @abstractmethod
    async def set_next_node(
        self,
        execution_id: str,
        node_id: str | None,
        due_at: datetime | None,
        now: datetime,
    ) -> None:
        """Point the execution at its next node (None clears the pointer)."""
        pass

    @abstractmethod
    async def set_current_node(self, execution_id: str, node_id: str, now: datetime) -> None:
        pass

    @abstractmethod
    async def add_send_totals(
        self, execution_id: str, channel: Channel, sent: int, cost: float, now: datetime
    ) -> None:
        """Accumulate successful sends and their cost on the execution."""
        pass

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_stage(self, stage: ExecutionStage) -> ExecutionStage:
        """Insert a stage unless one exists for (execution_id, node_id).

        Returns:
            The stored stage: `stage` itself, or the existing row
        """
        pass

    @abstractmethod
    async def get_stage(self, stage_id: str) -> ExecutionStage | None:
        pass

    @abstractmethod
    async def find_stage(self, execution_id: str, node_id: str) -> ExecutionStage | None:
        pass

    @abstractmethod
    async def list_stages(self, execution_id: str) -> list[ExecutionStage]:
        """Stages of an execution in creation order."""
        pass

    @abstractmethod
    async def assign_stage_contacts(self, stage_id: str, contact_ids: Sequence[str]) -> bool:
        """Set the contact subset of a PENDING stage.

        Returns:
            False if the stage is no longer pending
        """
        pass

    @abstractmethod
    async def add_late_contacts(
        self, stage_id: str, contact_ids: Sequence[str]
    ) -> tuple[str, ...]:
        """Append contacts to a stage's `late_contact_ids`, in any state.

        Returns:
            The ids actually added (those not already recorded)
        """
        pass

    @abstractmethod
    async def claim_stage(
        self,
        stage_id: str,
        job_id: str,
        now: datetime,
        contact_ids: Sequence[str] | None = None,
    ) -> bool:
        """Compare-and-set PENDING → EXECUTING, recording the owning job.

        Returns:
            True for exactly one caller per stage
        """
        pass

    @abstractmethod
    async def finish_stage(
        self,
        stage_id: str,
        state: StageState,
        now: datetime,
        *,
        error: str | None = None,
        external_message_id: str | None = None,
        sent_count: int = 0,
        failed_count: int = 0,
    ) -> bool:
        """Compare-and-set EXECUTING → COMPLETED/FAILED.

        Raises:
            ValueError: If `state` is not terminal
        """
        pass

    @abstractmethod
    async def reassign_stage_job(self, stage_id: str, job_id: str) -> bool:
        """Hand an EXECUTING stage to a new job (operator re-dispatch)."""
        pass

    @abstractmethod
    async def list_stuck_stages(self, started_before: datetime) -> list[ExecutionStage]:
        """EXECUTING stages whose `started_at` is older than `started_before`."""
        pass

    # ------------------------------------------------------------------
    # Condition evaluations
    # ------------------------------------------------------------------

    @abstractmethod
    async def record_condition_evaluation(
        self, evaluation: ConditionEvaluation
    ) -> ConditionEvaluation:
        """Insert once per (execution_id, node_id).

        Returns:
            The stored evaluation; an existing row wins over `evaluation`
        """
        pass

    @abstractmethod
    async def get_condition_evaluation(
        self, execution_id: str, node_id: str
    ) -> ConditionEvaluation | None:
        pass

    @abstractmethod
    async def list_condition_evaluations(self, execution_id: str) -> list[ConditionEvaluation]:
        pass

    # ------------------------------------------------------------------
    # Send records
    # ------------------------------------------------------------------

    @abstractmethod
    async def record_send(self, record: SendRecord) -> None:
        pass

    @abstractmethod
    async def list_sends(self, stage_id: str) -> list[SendRecord]:
        pass

    # ------------------------------------------------------------------
    # Job ledger
    # ------------------------------------------------------------------

    @abstractmethod
    async def enqueue_job(self, job: DispatchedJob) -> str:
        """Persist a QUEUED job and return its id."""
        pass

    @abstractmethod
    async def claim_job(self, worker_id: str, now: datetime) -> DispatchedJob | None:
        """Atomically take the oldest claimable job with `available_at <= now`.

        The claimed job is PROCESSING, locked by `worker_id`, with
        `attempts` incremented.
        """
        pass

    @abstractmethod
    async def get_job(self, job_id: str) -> DispatchedJob | None:
        pass

    @abstractmethod
    async def complete_job(self, job_id: str, now: datetime, note: str | None = None) -> None:
        pass

    @abstractmethod
    async def defer_job(
        self,
        job_id: str,
        error: str,
        available_at: datetime,
        now: datetime,
        release_attempt: bool = False,
    ) -> None:
        """Put a PROCESSING job back as RETRIED until `available_at`.

        `release_attempt` undoes the attempt counted by the claim.
        """
        pass

    @abstractmethod
    async def fail_job(self, job_id: str, error: str, now: datetime) -> None:
        pass

    @abstractmethod
    async def list_jobs(
        self, state: JobState | None = None, execution_id: str | None = None
    ) -> list[DispatchedJob]:
        pass

    @abstractmethod
    async def requeue_failed_jobs(
        self, now: datetime, job_ids: Sequence[str] | None = None
    ) -> int:
        """FAILED → QUEUED with attempts reset. Returns the number requeued."""
        pass

    @abstractmethod
    async def purge_failed_jobs(self, job_ids: Sequence[str] | None = None) -> int:
        """Delete FAILED jobs. Returns the number deleted."""
        pass

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @abstractmethod
    async def reset(self) -> None:
        """Clear all data (for testing)."""
        pass

    async def close(self) -> None:
        """Release resources. Default is a no-op."""
        return None
