"""FlowEngine: the operations the outside world calls.

Wires the store, counters and channel collaborators into the scheduler
and the job handlers, and exposes run/pause/resume/cancel, the tick,
read models and operator recovery.

Usage:
    engine = FlowEngine(
        store,
        counters,
        gateways={Channel.EMAIL: email_gateway},
        stats=tracking,
        contacts=directory,
    )
    await engine.register_flow(FlowDefinition.from_dict(payload))
    execution_id = await engine.run_flow("welcome", ["c1", "c2"])

    await engine.tick()                  # cron / HTTP trigger
    await engine.worker("w-1").drain()   # or a long-running worker
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta

from pydrip.channels.circuit_breaker import BreakerStatus, CircuitBreaker
from pydrip.channels.fake import StaticTemplateRenderer
from pydrip.channels.gateway import (
    ChannelGateway,
    ContactDirectory,
    EngagementStatsProvider,
    TemplateRenderer,
)
from pydrip.channels.rate_limiter import RateLimiter, WindowUsage
from pydrip.clock import Clock, SystemClock
from pydrip.config import EngineConfig
from pydrip.counters.base import CounterStore
from pydrip.engine.dispatcher import StageDispatcher
from pydrip.engine.errors import ActiveExecutionError, EngineError, InvalidStateError
from pydrip.engine.evaluator import ConditionEvaluator
from pydrip.engine.ledger import JobLedger
from pydrip.engine.progression import ExecutionProgression, payload_for
from pydrip.engine.scheduler import ExecutionScheduler, TickSummary
from pydrip.engine.worker import Worker
from pydrip.models import (
    Channel,
    ConditionEvaluation,
    DispatchedJob,
    Execution,
    ExecutionProgress,
    ExecutionStage,
    ExecutionState,
    FlowDefinition,
    FlowGraphError,
    JobKind,
    SendRecord,
    StageState,
)
from pydrip.storage.base import FlowStore, StorageError

logger = logging.getLogger(__name__)

CANCELLED_REASON = "Cancelled by operator"


@dataclass(frozen=True)
class CostEstimate:
    """Upper bound on what a run would cost: every contact reaches every send stage."""

    flow_id: str
    contact_count: int
    emails: int
    sms: int
    email_cost: float
    sms_cost: float

    @property
    def total_cost(self) -> float:
        return round(self.email_cost + self.sms_cost, 6)


class FlowEngine:
    """Facade over the scheduler, the job handlers and the store."""

    def __init__(
        self,
        store: FlowStore,
        counters: CounterStore,
        *,
        gateways: Mapping[Channel, ChannelGateway],
        stats: EngagementStatsProvider,
        contacts: ContactDirectory,
        renderer: TemplateRenderer | None = None,
        config: EngineConfig | None = None,
        clock: Clock | None = None,
    ):
        self._store = store
        self._counters = counters
        self._config = config or EngineConfig()
        self._clock = clock or SystemClock()

        self._ledger = JobLedger(store, self._clock)
        self._breaker = CircuitBreaker(
            counters, self._config.breaker, self._clock, key_prefix=self._config.key_prefix
        )
        self._limiter = RateLimiter(counters, self._config, self._clock)
        self._progression = ExecutionProgression(
            store, self._ledger, self._clock, self._config.paused_recheck
        )
        self._scheduler = ExecutionScheduler(store, self._ledger, self._progression, self._clock)
        self._evaluator = ConditionEvaluator(store, self._progression, stats, self._clock)
        self._dispatcher = StageDispatcher(
            store,
            self._progression,
            dict(gateways),
            contacts,
            renderer or StaticTemplateRenderer(),
            self._breaker,
            self._limiter,
            self._config,
            self._clock,
        )

    def __repr__(self) -> str:
        return f"FlowEngine(store={self._store!r}, clock={self._clock!r})"

    @property
    def store(self) -> FlowStore:
        return self._store

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def ledger(self) -> JobLedger:
        return self._ledger

    # ------------------------------------------------------------------
    # Flows and executions
    # ------------------------------------------------------------------

    async def register_flow(self, definition: FlowDefinition) -> None:
        await self._store.save_flow(definition)
        logger.info(
            f"Registered flow {definition.id} ({len(definition.stages)} stages, "
            f"{len(definition.conditions)} conditions)"
        )

    async def run_flow(
        self,
        flow_id: str,
        contact_ids: Iterable[str],
        start_at: datetime | None = None,
    ) -> str:
        """Start a new execution of `flow_id` over `contact_ids`.

        A `start_at` in the future creates the execution PENDING; the
        first tick after that time activates it.

        Returns:
            The new execution id

        Raises:
            ActiveExecutionError: The flow already has a non-terminal execution
            EngineError: No contacts, unknown flow, or a flow without nodes
        """
        ids = tuple(dict.fromkeys(contact_ids))
        if not ids:
            raise EngineError(f"Cannot run flow {flow_id} without contacts")

        flow = await self._store.get_flow(flow_id)
        if flow is None:
            raise EngineError(f"Flow {flow_id} not found")

        active = await self._store.find_active_execution(flow_id)
        if active is not None:
            raise ActiveExecutionError(flow_id, active.id)

        now = self._clock.now()
        start = start_at or now
        try:
            start_node = flow.start_node()
            due_at = start + flow.offset_of(start_node)
            plan = flow.linearize(start)
        except FlowGraphError as e:
            raise EngineError(f"Flow {flow_id} cannot start: {e}") from e

        deferred = start > now
        execution = Execution(
            flow_id=flow_id,
            contact_ids=ids,
            state=ExecutionState.PENDING if deferred else ExecutionState.IN_PROGRESS,
            next_node=start_node,
            next_node_due_at=due_at,
            start_at=start,
            started_at=None if deferred else now,
            created_at=now,
            updated_at=now,
        )
        try:
            await self._store.create_execution(execution)
        except StorageError as e:
            active = await self._store.find_active_execution(flow_id)
            if active is not None:
                raise ActiveExecutionError(flow_id, active.id) from e
            raise

        for index, planned in enumerate(plan):
            await self._store.create_stage(
                ExecutionStage(
                    execution_id=execution.id,
                    node_id=planned.node_id,
                    contact_ids=ids if index == 0 else None,
                    due_at=planned.due_at,
                    created_at=now,
                )
            )

        logger.info(
            f"Execution {execution.id} of flow {flow_id} created for {len(ids)} contact(s), "
            f"state={execution.state}, first node {start_node} due {due_at.isoformat()}"
        )
        return execution.id

    async def _require_execution(self, execution_id: str) -> Execution:
        execution = await self._store.get_execution(execution_id)
        if execution is None:
            raise EngineError(f"Execution {execution_id} not found")
        return execution

    async def _transition(
        self,
        execution_id: str,
        from_states: tuple[ExecutionState, ...],
        to_state: ExecutionState,
        error: str | None = None,
    ) -> None:
        execution = await self._require_execution(execution_id)
        applied = await self._store.transition_execution(
            execution_id, from_states, to_state, self._clock.now(), error=error
        )
        if not applied:
            current = await self._require_execution(execution_id)
            allowed = ", ".join(str(s) for s in from_states)
            raise InvalidStateError(
                f"Execution {execution_id} is {current.state}; "
                f"{to_state} requires one of: {allowed}"
            )
        logger.info(f"Execution {execution_id}: {execution.state} -> {to_state}")

    async def pause(self, execution_id: str) -> None:
        """Stop advancing an in-progress execution. Jobs already queued wait."""
        await self._transition(
            execution_id, (ExecutionState.IN_PROGRESS,), ExecutionState.PAUSED
        )

    async def resume(self, execution_id: str) -> None:
        await self._transition(
            execution_id, (ExecutionState.PAUSED,), ExecutionState.IN_PROGRESS
        )

    async def cancel(self, execution_id: str) -> None:
        """Fail a non-terminal execution. In-flight jobs are not recalled."""
        await self._transition(
            execution_id,
            (ExecutionState.PENDING, ExecutionState.IN_PROGRESS, ExecutionState.PAUSED),
            ExecutionState.FAILED,
            error=CANCELLED_REASON,
        )

    async def tick(self) -> TickSummary:
        return await self._scheduler.tick()

    def worker(self, worker_id: str) -> Worker:
        """A queue worker wired to this engine's job handlers."""
        return (
            Worker(self._ledger, worker_id, config=self._config, progression=self._progression)
            .register(JobKind.SEND_STAGE, self._dispatcher.handle)
            .register(JobKind.VERIFY_CONDITION, self._evaluator.handle)
        )

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    async def get_execution(self, execution_id: str) -> Execution | None:
        return await self._store.get_execution(execution_id)

    async def list_executions(self, flow_id: str | None = None) -> list[Execution]:
        return await self._store.list_executions(flow_id)

    async def get_progress(self, execution_id: str) -> ExecutionProgress:
        execution = await self._require_execution(execution_id)
        stages = await self._store.list_stages(execution_id)
        counts = {state: 0 for state in StageState}
        for stage in stages:
            counts[stage.state] += 1
        return ExecutionProgress(
            execution_id=execution.id,
            state=execution.state,
            total_stages=len(stages),
            pending=counts[StageState.PENDING],
            executing=counts[StageState.EXECUTING],
            completed=counts[StageState.COMPLETED],
            failed=counts[StageState.FAILED],
            current_node=execution.current_node,
            next_node=execution.next_node,
            next_node_due_at=execution.next_node_due_at,
            emails_sent=execution.emails_sent,
            sms_sent=execution.sms_sent,
            total_cost=execution.total_cost,
            error=execution.error,
            late_contacts=sum(len(s.late_contact_ids) for s in stages),
        )

    async def get_stage_history(self, execution_id: str) -> list[ExecutionStage]:
        return await self._store.list_stages(execution_id)

    async def get_condition_history(self, execution_id: str) -> list[ConditionEvaluation]:
        return await self._store.list_condition_evaluations(execution_id)

    async def get_send_records(self, stage_id: str) -> list[SendRecord]:
        return await self._store.list_sends(stage_id)

    async def estimate_cost(self, flow_id: str, contact_count: int) -> CostEstimate:
        flow = await self._store.get_flow(flow_id)
        if flow is None:
            raise EngineError(f"Flow {flow_id} not found")
        per_channel = {channel: 0 for channel in Channel}
        for stage in flow.send_stages():
            if stage.channel is not None:
                per_channel[stage.channel] += contact_count
        emails = per_channel[Channel.EMAIL]
        sms = per_channel[Channel.SMS]
        return CostEstimate(
            flow_id=flow_id,
            contact_count=contact_count,
            emails=emails,
            sms=sms,
            email_cost=emails * self._config.unit_cost(Channel.EMAIL),
            sms_cost=sms * self._config.unit_cost(Channel.SMS),
        )

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    async def breaker_status(self, channel: Channel) -> BreakerStatus:
        return await self._breaker.status(channel)

    async def reset_breaker(self, channel: Channel) -> None:
        await self._breaker.reset(channel)

    async def rate_limit_status(self, channel: Channel) -> dict[str, WindowUsage]:
        return await self._limiter.status(channel)

    # ------------------------------------------------------------------
    # Jobs and recovery
    # ------------------------------------------------------------------

    async def list_failed_jobs(self, execution_id: str | None = None) -> list[DispatchedJob]:
        return await self._ledger.failed_jobs(execution_id)

    async def retry_failed_jobs(self, job_ids: Iterable[str] | None = None) -> int:
        return await self._ledger.retry_failed(None if job_ids is None else list(job_ids))

    async def clear_failed_jobs(self, job_ids: Iterable[str] | None = None) -> int:
        return await self._ledger.clear_failed(None if job_ids is None else list(job_ids))

    async def find_stuck_stages(
        self, older_than: timedelta = timedelta(hours=1)
    ) -> list[ExecutionStage]:
        """Stages EXECUTING for longer than `older_than`.

        The scheduler never re-dispatches these; see force_redispatch().
        """
        return await self._store.list_stuck_stages(self._clock.now() - older_than)

    async def force_redispatch(self, stage_id: str) -> str:
        """Hand a stuck EXECUTING stage to a fresh job.

        The new job continues where the old one stopped: contacts that
        already have a send record are not sent again.

        Returns:
            The new job id

        Raises:
            EngineError: Unknown stage, execution or flow
            InvalidStateError: The stage is not EXECUTING
        """
        stage = await self._store.get_stage(stage_id)
        if stage is None:
            raise EngineError(f"Stage {stage_id} not found")
        if stage.state is not StageState.EXECUTING:
            raise InvalidStateError(f"Stage {stage_id} is {stage.state}, not executing")

        execution = await self._require_execution(stage.execution_id)
        flow = await self._store.get_flow(execution.flow_id)
        if flow is None:
            raise EngineError(f"Flow {execution.flow_id} not found")

        job = self._ledger.new_job(payload_for(flow.node_kind(stage.node_id), execution.id, stage))
        if not await self._store.reassign_stage_job(stage.id, job.job_id):
            raise InvalidStateError(f"Stage {stage_id} left EXECUTING during re-dispatch")

        # The replaced job must not hold the execution open.
        previous = await self._store.get_job(stage.job_id) if stage.job_id else None
        if previous is not None and not previous.state.is_terminal:
            await self._store.complete_job(
                previous.job_id, self._clock.now(), f"superseded by job {job.job_id}"
            )
        await self._ledger.enqueue(job)

        logger.warning(
            f"Force re-dispatch of stage {stage.node_id} ({stage_id}) in execution "
            f"{execution.id}: job {stage.job_id} replaced by {job.job_id}"
        )
        return job.job_id

    async def close(self) -> None:
        await self._store.close()
        await self._counters.close()
