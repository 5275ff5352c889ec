"""In-memory store implementation.

Design Pattern: Adapter Pattern
InMemoryFlowStore adapts dictionaries to the FlowStore interface.

One asyncio.Lock serializes every write, which is what makes the
compare-and-set methods atomic. Reads return copies so callers cannot
mutate stored rows.

Instance is immediately usable after __init__.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import replace
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
from pydrip.storage.base import FlowStore, StorageError


class InMemoryFlowStore(FlowStore):
    """In-memory store for tests and single-process runs.

    Can be substituted for SqliteFlowStore without changing client code.

    Usage:
        store = InMemoryFlowStore()
        await store.save_flow(definition)
    """

    def __init__(self):
        self._flows: dict[str, FlowDefinition] = {}
        self._executions: dict[str, Execution] = {}
        self._stages: dict[str, ExecutionStage] = {}
        # Index: {(execution_id, node_id): stage_id}
        self._stage_index: dict[tuple[str, str], str] = {}
        self._evaluations: dict[tuple[str, str], ConditionEvaluation] = {}
        self._sends: dict[str, list[SendRecord]] = {}
        self._jobs: dict[str, DispatchedJob] = {}
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return "InMemoryFlowStore"

    # ------------------------------------------------------------------
    # Flow definitions
    # ------------------------------------------------------------------

    async def save_flow(self, flow: FlowDefinition) -> None:
        async with self._lock:
            self._flows[flow.id] = flow

    async def get_flow(self, flow_id: str) -> FlowDefinition | None:
        return self._flows.get(flow_id)

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    async def create_execution(self, execution: Execution) -> None:
        async with self._lock:
            for existing in self._executions.values():
                if existing.flow_id == execution.flow_id and existing.state.is_active:
                    raise StorageError(
                        f"Flow {execution.flow_id} already has active execution {existing.id}"
                    )
            self._executions[execution.id] = replace(execution)

    async def get_execution(self, execution_id: str) -> Execution | None:
        execution = self._executions.get(execution_id)
        return replace(execution) if execution else None

    async def find_active_execution(self, flow_id: str) -> Execution | None:
        for execution in self._executions.values():
            if execution.flow_id == flow_id and execution.state.is_active:
                return replace(execution)
        return None

    async def list_executions(self, flow_id: str | None = None) -> list[Execution]:
        return [
            replace(e)
            for e in sorted(self._executions.values(), key=lambda e: (e.created_at, e.id))
            if flow_id is None or e.flow_id == flow_id
        ]

    async def list_due_executions(self, now: datetime) -> list[Execution]:
        due = [replace(e) for e in self._executions.values() if e.is_due(now)]
        due.sort(key=lambda e: (e.next_node_due_at, e.id))
        return due

    async def list_startable_executions(self, now: datetime) -> list[Execution]:
        return [
            replace(e)
            for e in self._executions.values()
            if e.state is ExecutionState.PENDING and (e.start_at is None or e.start_at <= now)
        ]

    def _require_execution(self, execution_id: str) -> Execution:
        execution = self._executions.get(execution_id)
        if execution is None:
            raise StorageError(f"Execution not found: {execution_id}")
        return execution

    async def transition_execution(
        self,
        execution_id: str,
        from_states: Sequence[ExecutionState],
        to_state: ExecutionState,
        now: datetime,
        error: str | None = None,
    ) -> bool:
        async with self._lock:
            execution = self._require_execution(execution_id)
            if execution.state not in from_states:
                return False
            execution.state = to_state
            execution.updated_at = now
            if error is not None:
                execution.error = error
            if to_state is ExecutionState.IN_PROGRESS and execution.started_at is None:
                execution.started_at = now
            if to_state.is_terminal:
                execution.finished_at = now
            return True

    async def set_next_node(
        self,
        execution_id: str,
        node_id: str | None,
        due_at: datetime | None,
        now: datetime,
    ) -> None:
        async with self._lock:
            execution = self._require_execution(execution_id)
            execution.next_node = node_id
            execution.next_node_due_at = due_at
            execution.updated_at = now

    async def set_current_node(self, execution_id: str, node_id: str, now: datetime) -> None:
        async with self._lock:
            execution = self._require_execution(execution_id)
            execution.current_node = node_id
            execution.updated_at = now

    async def add_send_totals(
        self, execution_id: str, channel: Channel, sent: int, cost: float, now: datetime
    ) -> None:
        async with self._lock:
            execution = self._require_execution(execution_id)
            if channel is Channel.EMAIL:
                execution.emails_sent += sent
            else:
                execution.sms_sent += sent
            execution.total_cost += cost
            execution.updated_at = now

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def create_stage(self, stage: ExecutionStage) -> ExecutionStage:
        async with self._lock:
            key = (stage.execution_id, stage.node_id)
            existing_id = self._stage_index.get(key)
            if existing_id is not None:
                return replace(self._stages[existing_id])
            self._stages[stage.id] = replace(stage)
            self._stage_index[key] = stage.id
            return replace(stage)

    async def get_stage(self, stage_id: str) -> ExecutionStage | None:
        stage = self._stages.get(stage_id)
        return replace(stage) if stage else None

    async def find_stage(self, execution_id: str, node_id: str) -> ExecutionStage | None:
        stage_id = self._stage_index.get((execution_id, node_id))
        return replace(self._stages[stage_id]) if stage_id else None

    async def list_stages(self, execution_id: str) -> list[ExecutionStage]:
        # dicts keep insertion order, which is creation order
        return [replace(s) for s in self._stages.values() if s.execution_id == execution_id]

    def _require_stage(self, stage_id: str) -> ExecutionStage:
        stage = self._stages.get(stage_id)
        if stage is None:
            raise StorageError(f"Stage not found: {stage_id}")
        return stage

    async def assign_stage_contacts(self, stage_id: str, contact_ids: Sequence[str]) -> bool:
        async with self._lock:
            stage = self._require_stage(stage_id)
            if stage.state is not StageState.PENDING:
                return False
            stage.contact_ids = tuple(contact_ids)
            return True

    async def add_late_contacts(
        self, stage_id: str, contact_ids: Sequence[str]
    ) -> tuple[str, ...]:
        async with self._lock:
            stage = self._require_stage(stage_id)
            added = tuple(
                cid for cid in dict.fromkeys(contact_ids) if cid not in stage.late_contact_ids
            )
            stage.late_contact_ids = (*stage.late_contact_ids, *added)
            return added

    async def claim_stage(
        self,
        stage_id: str,
        job_id: str,
        now: datetime,
        contact_ids: Sequence[str] | None = None,
    ) -> bool:
        async with self._lock:
            stage = self._require_stage(stage_id)
            if stage.state is not StageState.PENDING:
                return False
            stage.state = StageState.EXECUTING
            stage.job_id = job_id
            stage.started_at = now
            if contact_ids is not None:
                stage.contact_ids = tuple(contact_ids)
            return True

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
        if not state.is_terminal:
            raise ValueError(f"finish_stage needs a terminal state, got {state}")
        async with self._lock:
            stage = self._require_stage(stage_id)
            if stage.state is not StageState.EXECUTING:
                return False
            stage.state = state
            stage.finished_at = now
            stage.error = error
            stage.external_message_id = external_message_id
            stage.sent_count = sent_count
            stage.failed_count = failed_count
            return True

    async def reassign_stage_job(self, stage_id: str, job_id: str) -> bool:
        async with self._lock:
            stage = self._require_stage(stage_id)
            if stage.state is not StageState.EXECUTING:
                return False
            stage.job_id = job_id
            return True

    async def list_stuck_stages(self, started_before: datetime) -> list[ExecutionStage]:
        return [
            replace(s)
            for s in self._stages.values()
            if s.state is StageState.EXECUTING
            and s.started_at is not None
            and s.started_at < started_before
        ]

    # ------------------------------------------------------------------
    # Condition evaluations
    # ------------------------------------------------------------------

    async def record_condition_evaluation(
        self, evaluation: ConditionEvaluation
    ) -> ConditionEvaluation:
        async with self._lock:
            key = (evaluation.execution_id, evaluation.node_id)
            stored = self._evaluations.setdefault(key, evaluation)
            return stored

    async def get_condition_evaluation(
        self, execution_id: str, node_id: str
    ) -> ConditionEvaluation | None:
        return self._evaluations.get((execution_id, node_id))

    async def list_condition_evaluations(self, execution_id: str) -> list[ConditionEvaluation]:
        return [e for e in self._evaluations.values() if e.execution_id == execution_id]

    # ------------------------------------------------------------------
    # Send records
    # ------------------------------------------------------------------

    async def record_send(self, record: SendRecord) -> None:
        async with self._lock:
            self._sends.setdefault(record.stage_id, []).append(replace(record))

    async def list_sends(self, stage_id: str) -> list[SendRecord]:
        return [replace(r) for r in self._sends.get(stage_id, [])]

    # ------------------------------------------------------------------
    # Job ledger
    # ------------------------------------------------------------------

    async def enqueue_job(self, job: DispatchedJob) -> str:
        async with self._lock:
            if job.job_id in self._jobs:
                raise StorageError(f"Job already exists: {job.job_id}")
            self._jobs[job.job_id] = replace(job)
            return job.job_id

    async def claim_job(self, worker_id: str, now: datetime) -> DispatchedJob | None:
        async with self._lock:
            candidates = [
                j for j in self._jobs.values() if j.state.is_claimable and j.available_at <= now
            ]
            if not candidates:
                return None
            job = min(candidates, key=lambda j: (j.available_at, j.created_at, j.job_id))
            job.state = JobState.PROCESSING
            job.locked_by = worker_id
            job.attempts += 1
            job.updated_at = now
            return replace(job)

    async def get_job(self, job_id: str) -> DispatchedJob | None:
        job = self._jobs.get(job_id)
        return replace(job) if job else None

    def _require_job(self, job_id: str) -> DispatchedJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise StorageError(f"Job not found: {job_id}")
        return job

    async def complete_job(self, job_id: str, now: datetime, note: str | None = None) -> None:
        async with self._lock:
            job = self._require_job(job_id)
            job.state = JobState.COMPLETED
            job.locked_by = None
            job.error = note
            job.updated_at = now

    async def defer_job(
        self,
        job_id: str,
        error: str,
        available_at: datetime,
        now: datetime,
        release_attempt: bool = False,
    ) -> None:
        async with self._lock:
            job = self._require_job(job_id)
            job.state = JobState.RETRIED
            job.locked_by = None
            job.error = error
            job.available_at = available_at
            job.updated_at = now
            if release_attempt and job.attempts > 0:
                job.attempts -= 1

    async def fail_job(self, job_id: str, error: str, now: datetime) -> None:
        async with self._lock:
            job = self._require_job(job_id)
            job.state = JobState.FAILED
            job.locked_by = None
            job.error = error
            job.updated_at = now

    async def list_jobs(
        self, state: JobState | None = None, execution_id: str | None = None
    ) -> list[DispatchedJob]:
        jobs = [
            replace(j)
            for j in self._jobs.values()
            if (state is None or j.state is state)
            and (execution_id is None or j.execution_id == execution_id)
        ]
        jobs.sort(key=lambda j: (j.created_at, j.job_id))
        return jobs

    def _failed(self, job_ids: Sequence[str] | None) -> list[DispatchedJob]:
        wanted = None if job_ids is None else set(job_ids)
        return [
            j
            for j in self._jobs.values()
            if j.state is JobState.FAILED and (wanted is None or j.job_id in wanted)
        ]

    async def requeue_failed_jobs(
        self, now: datetime, job_ids: Sequence[str] | None = None
    ) -> int:
        async with self._lock:
            failed = self._failed(job_ids)
            for job in failed:
                job.state = JobState.QUEUED
                job.attempts = 0
                job.available_at = now
                job.updated_at = now
            return len(failed)

    async def purge_failed_jobs(self, job_ids: Sequence[str] | None = None) -> int:
        async with self._lock:
            failed = self._failed(job_ids)
            for job in failed:
                del self._jobs[job.job_id]
            return len(failed)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def reset(self) -> None:
        async with self._lock:
            self._flows.clear()
            self._executions.clear()
            self._stages.clear()
            self._stage_index.clear()
            self._evaluations.clear()
            self._sends.clear()
            self._jobs.clear()
