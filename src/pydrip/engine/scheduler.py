"""Execution scheduler: the tick that advances due executions.

Each call to `tick()` moves every eligible execution forward by at most
one node. Eligibility is data: `state = in_progress`, a `next_node`, and
`next_node_due_at <= now`. Nothing is pushed to the scheduler; an
execution that is not due is simply not selected.

The scheduler never sends anything itself. It claims the stage row for
the next node (compare-and-set PENDING -> EXECUTING, using the job id as
the token) and hands the work to the job ledger. A stage that is already
claimed is skipped, so calling `tick()` more often than needed is safe.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from pydrip.clock import Clock
from pydrip.engine.ledger import JobLedger
from pydrip.engine.progression import ExecutionProgression, payload_for
from pydrip.models import (
    Execution,
    ExecutionStage,
    ExecutionState,
    FlowGraphError,
    NodeKind,
)
from pydrip.storage.base import FlowStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TickSummary:
    """What one tick did."""

    activated: int = 0
    """Pending executions whose start time arrived."""

    advanced: int = 0
    """Executions whose next node was dispatched (or ended)."""

    skipped: int = 0
    """Due executions whose next stage was already claimed."""

    failed: int = 0
    """Executions failed by a flow-graph error."""

    errors: int = 0
    """Executions left for the next tick after an unexpected error."""

    @property
    def touched(self) -> int:
        return self.advanced + self.skipped + self.failed + self.errors


class ExecutionScheduler:
    """Selects due executions and dispatches their next node.

    Usage:
        scheduler = ExecutionScheduler(store, ledger, progression, clock)
        summary = await scheduler.tick()
    """

    def __init__(
        self,
        store: FlowStore,
        ledger: JobLedger,
        progression: ExecutionProgression,
        clock: Clock,
    ):
        self._store = store
        self._ledger = ledger
        self._progression = progression
        self._clock = clock

    async def tick(self) -> TickSummary:
        """Advance every due execution by one node.

        Executions are processed one after another in (due time, id)
        order. An error in one execution never stops the others.
        """
        now = self._clock.now()
        activated = await self._activate_pending()

        advanced = skipped = failed = errors = 0
        for execution in await self._store.list_due_executions(now):
            try:
                if await self._advance(execution):
                    advanced += 1
                else:
                    skipped += 1
            except FlowGraphError as e:
                await self._progression.fail_execution(execution.id, str(e))
                failed += 1
            except Exception as e:
                logger.error(
                    f"Tick failed for execution {execution.id} at {execution.next_node}: {e}"
                )
                errors += 1

        summary = TickSummary(
            activated=activated, advanced=advanced, skipped=skipped, failed=failed, errors=errors
        )
        if summary.touched or activated:
            logger.info(f"Tick at {now.isoformat()}: {summary}")
        else:
            logger.debug(f"Tick at {now.isoformat()}: nothing due")
        return summary

    async def _activate_pending(self) -> int:
        now = self._clock.now()
        activated = 0
        for execution in await self._store.list_startable_executions(now):
            if await self._store.transition_execution(
                execution.id, (ExecutionState.PENDING,), ExecutionState.IN_PROGRESS, now
            ):
                activated += 1
                logger.info(f"Execution {execution.id} of flow {execution.flow_id} started")
        return activated

    async def _advance(self, execution: Execution) -> bool:
        """Dispatch the execution's next node.

        Returns:
            False if the node's stage was already claimed

        Raises:
            FlowGraphError: The flow or the node is missing
        """
        flow = await self._store.get_flow(execution.flow_id)
        if flow is None:
            raise FlowGraphError(f"Flow {execution.flow_id} not found")

        node_id = execution.next_node
        kind = flow.node_kind(node_id)
        now = self._clock.now()

        stage = await self._store.find_stage(execution.id, node_id)
        if stage is not None and stage.state.is_claimed:
            logger.debug(
                f"Execution {execution.id}: stage {node_id} already {stage.state}, skipping"
            )
            return False

        if stage is None:
            stage = await self._store.create_stage(
                ExecutionStage(
                    execution_id=execution.id,
                    node_id=node_id,
                    due_at=execution.next_node_due_at,
                    created_at=now,
                )
            )
        contact_ids = await self._progression.resolve_contacts(execution, stage)

        if kind is NodeKind.END:
            await self._progression.complete_end(execution.id, node_id, contact_ids)
            await self._store.set_current_node(execution.id, node_id, now)
            await self._store.set_next_node(execution.id, None, None, now)
            logger.info(f"Execution {execution.id} reached end node {node_id}")
            await self._progression.settle(execution.id)
            return True

        job = self._ledger.new_job(payload_for(kind, execution.id, stage), now)
        if not await self._store.claim_stage(stage.id, job.job_id, now, contact_ids):
            logger.debug(f"Execution {execution.id}: lost claim on stage {node_id}, skipping")
            return False

        await self._store.set_current_node(execution.id, node_id, now)
        await self._ledger.enqueue(job)
        logger.info(
            f"Execution {execution.id} dispatched {kind} stage {node_id} "
            f"for {len(contact_ids)} contact(s) as job {job.job_id}"
        )
        return True
