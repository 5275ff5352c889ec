"""Moving an execution from one node to the next.

Shared by the scheduler, the condition evaluator and the stage
dispatcher, so the rules for pointers, branch continuations and
completion live in one place:

- The execution has a single pointer (`next_node`). The stage whose node
  the pointer names "owns" it and advances it when done.
- Branches that do not own the pointer continue through the job queue:
  their successor jobs are enqueued for the successor's due time.
- An execution completes once no branch has live work left: no pointer,
  no executing stage, no outstanding or parked job.

Design: Information Hiding (Parnas)
Handlers decide *what* happened; this module decides how the execution
moves because of it.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import timedelta

from pydrip.clock import Clock
from pydrip.engine.errors import ExecutionPausedError
from pydrip.engine.ledger import JobLedger
from pydrip.models import (
    DispatchedJob,
    Execution,
    ExecutionStage,
    ExecutionState,
    FlowDefinition,
    FlowGraphError,
    JobPayload,
    JobState,
    NodeKind,
    SendStageJob,
    StageState,
    VerifyConditionJob,
    new_id,
)
from pydrip.storage.base import FlowStore

logger = logging.getLogger(__name__)

_ACTIVE = (ExecutionState.PENDING, ExecutionState.IN_PROGRESS, ExecutionState.PAUSED)


@dataclass
class JobContext:
    """Everything a handler needs once it owns its stage."""

    execution: Execution
    stage: ExecutionStage
    flow: FlowDefinition
    contact_ids: tuple[str, ...]

    @property
    def owns_pointer(self) -> bool:
        return self.execution.next_node == self.stage.node_id


def payload_for(kind: NodeKind, execution_id: str, stage: ExecutionStage) -> JobPayload:
    if kind is NodeKind.SEND:
        return SendStageJob(execution_id=execution_id, stage_id=stage.id, node_id=stage.node_id)
    if kind is NodeKind.CONDITION:
        return VerifyConditionJob(
            execution_id=execution_id, stage_id=stage.id, node_id=stage.node_id
        )
    raise FlowGraphError(f"Node {stage.node_id!r} of kind {kind} has no job")


class ExecutionProgression:
    def __init__(
        self,
        store: FlowStore,
        ledger: JobLedger,
        clock: Clock,
        paused_recheck: timedelta = timedelta(seconds=60),
    ):
        self._store = store
        self._ledger = ledger
        self._clock = clock
        self._paused_recheck = paused_recheck

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    async def fail_execution(self, execution_id: str, reason: str) -> bool:
        failed = await self._store.transition_execution(
            execution_id, _ACTIVE, ExecutionState.FAILED, self._clock.now(), error=reason
        )
        if failed:
            logger.error(f"Execution {execution_id} failed: {reason}")
        return failed

    async def complete_execution(self, execution_id: str) -> bool:
        now = self._clock.now()
        completed = await self._store.transition_execution(
            execution_id,
            (ExecutionState.IN_PROGRESS, ExecutionState.PAUSED),
            ExecutionState.COMPLETED,
            now,
        )
        if completed:
            await self._store.set_next_node(execution_id, None, None, now)
            logger.info(f"Execution {execution_id} completed")
        return completed

    async def abort(self, job: DispatchedJob, reason: str) -> None:
        """Fail the job's stage (if still executing) and its execution."""
        now = self._clock.now()
        stage = await self._store.get_stage(job.payload.stage_id)
        if stage is not None and stage.state is StageState.EXECUTING:
            await self._store.finish_stage(stage.id, StageState.FAILED, now, error=reason)
        await self.fail_execution(job.execution_id, reason)

    async def settle(self, execution_id: str, exclude_stage_id: str | None = None) -> bool:
        """Complete the execution if no branch has live work left.

        `exclude_stage_id` is the stage of the job currently running,
        whose own ledger entry is still PROCESSING.
        """
        execution = await self._store.get_execution(execution_id)
        if execution is None or execution.state.is_terminal:
            return False
        if execution.next_node is not None:
            return False

        for stage in await self._store.list_stages(execution_id):
            if stage.state is StageState.EXECUTING and stage.id != exclude_stage_id:
                return False

        for job in await self._ledger.history(execution_id):
            if job.state is not JobState.COMPLETED and job.payload.stage_id != exclude_stage_id:
                return False

        return await self.complete_execution(execution_id)

    # ------------------------------------------------------------------
    # Contact subsets
    # ------------------------------------------------------------------

    async def resolve_contacts(
        self, execution: Execution, stage: ExecutionStage
    ) -> tuple[str, ...]:
        """Subset for a stage.

        Preference: the stage's own subset, then the subset recorded on
        the immediately preceding stage, then the full execution set.
        """
        if stage.contact_ids is not None:
            return stage.contact_ids
        if execution.current_node and execution.current_node != stage.node_id:
            previous = await self._store.find_stage(execution.id, execution.current_node)
            if previous is not None and previous.contact_ids is not None:
                return previous.contact_ids
        return execution.contact_ids

    # ------------------------------------------------------------------
    # Job ownership
    # ------------------------------------------------------------------

    async def prepare(self, job: DispatchedJob) -> JobContext | str:
        """Check the execution and take ownership of the job's stage.

        Returns:
            A JobContext when this job owns the stage, otherwise the
            reason the job is a no-op

        Raises:
            ExecutionPausedError: The execution is paused
            FlowGraphError: The flow or node no longer exists
        """
        payload = job.payload
        execution = await self._store.get_execution(payload.execution_id)
        if execution is None:
            return f"execution {payload.execution_id} not found"
        if execution.state.is_terminal:
            return f"execution {execution.id} is {execution.state}"
        if execution.state is not ExecutionState.IN_PROGRESS:
            raise ExecutionPausedError(
                f"Execution {execution.id} is {execution.state}", self._paused_recheck
            )

        stage = await self._store.get_stage(payload.stage_id)
        if stage is None:
            return f"stage {payload.stage_id} not found"

        flow = await self._store.get_flow(execution.flow_id)
        if flow is None:
            raise FlowGraphError(f"Flow {execution.flow_id} not found")

        contact_ids = await self.resolve_contacts(execution, stage)
        now = self._clock.now()

        if stage.state is StageState.PENDING:
            if await self._store.claim_stage(stage.id, job.job_id, now, contact_ids):
                if execution.next_node == stage.node_id:
                    await self._store.set_current_node(execution.id, stage.node_id, now)
                stage = await self._store.get_stage(stage.id)
            else:
                stage = await self._store.get_stage(stage.id)

        if stage.state is StageState.EXECUTING and stage.job_id == job.job_id:
            return JobContext(
                execution=execution,
                stage=stage,
                flow=flow,
                contact_ids=stage.contact_ids if stage.contact_ids is not None else contact_ids,
            )

        logger.debug(
            f"Skipping {job.kind} job {job.job_id}: stage {stage.id} ({stage.node_id}) "
            f"is {stage.state} under job {stage.job_id}"
        )
        return f"stage {stage.node_id} already dispatched ({stage.state})"

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    async def complete_end(
        self, execution_id: str, node_id: str, contact_ids: Sequence[str] | None
    ) -> ExecutionStage:
        """Record an end node as a completed stage."""
        now = self._clock.now()
        stage = await self._store.create_stage(
            ExecutionStage(
                execution_id=execution_id,
                node_id=node_id,
                contact_ids=None if contact_ids is None else tuple(contact_ids),
                due_at=now,
                created_at=now,
            )
        )
        if stage.state is StageState.PENDING:
            await self._store.claim_stage(stage.id, new_id(), now, contact_ids)
        await self._store.finish_stage(stage.id, StageState.COMPLETED, now)
        return stage

    async def route(
        self,
        execution: Execution,
        flow: FlowDefinition,
        target_id: str,
        contact_ids: Sequence[str],
        *,
        owns_pointer: bool,
        enqueue: bool,
    ) -> ExecutionStage | None:
        """Schedule `target_id` for `contact_ids`.

        Creates (or reuses) the target's stage row, moves the pointer
        when `owns_pointer`, and enqueues the target's job for its due
        time when `enqueue`. End targets are recorded as completed
        stages immediately.

        Returns:
            The target stage, or None if the execution is already terminal
        """
        current = await self._store.get_execution(execution.id)
        if current is None or current.state.is_terminal:
            logger.info(
                f"Not routing execution {execution.id} to {target_id}: execution is "
                f"{current.state if current else 'missing'}"
            )
            return None

        kind = flow.node_kind(target_id)
        now = self._clock.now()

        if kind is NodeKind.END:
            stage = await self.complete_end(execution.id, target_id, contact_ids)
            if owns_pointer:
                await self._store.set_next_node(execution.id, None, None, now)
            logger.info(f"Execution {execution.id} reached end node {target_id}")
            return stage

        due_at = now + flow.offset_of(target_id)
        subset = tuple(contact_ids)
        stage = await self._store.create_stage(
            ExecutionStage(
                execution_id=execution.id,
                node_id=target_id,
                contact_ids=subset,
                due_at=due_at,
                created_at=now,
            )
        )

        if stage.state is not StageState.PENDING:
            await self._arrive_late(execution, stage, subset, owns_pointer)
            return stage

        if stage.contact_ids != subset:
            merged = subset if stage.contact_ids is None else _union(stage.contact_ids, subset)
            await self._store.assign_stage_contacts(stage.id, merged)

        if owns_pointer:
            await self._store.set_next_node(execution.id, target_id, due_at, now)

        if enqueue:
            await self._ledger.dispatch(payload_for(kind, execution.id, stage), due_at)

        logger.info(
            f"Execution {execution.id} routed {len(subset)} contact(s) to {target_id} "
            f"due {due_at.isoformat()}"
        )
        return stage

    async def _arrive_late(
        self,
        execution: Execution,
        stage: ExecutionStage,
        subset: tuple[str, ...],
        owns_pointer: bool,
    ) -> None:
        """A converging branch reached a stage another branch already claimed.

        The stage is dispatched at most once, so contacts it does not
        already cover are recorded on it as late instead of being sent.
        The claimed stage's own job continues the flow, so a pointer
        owner arriving here gives the pointer up.
        """
        covered = set(stage.contact_ids or ())
        late = await self._store.add_late_contacts(
            stage.id, [cid for cid in subset if cid not in covered]
        )
        if late:
            logger.warning(
                f"Stage {stage.node_id} of execution {execution.id} already {stage.state}; "
                f"{len(late)} late contact(s) recorded and not sent: {', '.join(late)}"
            )
        if owns_pointer:
            await self._store.set_next_node(execution.id, None, None, self._clock.now())


def _union(first: Sequence[str], second: Sequence[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys((*first, *second)))
