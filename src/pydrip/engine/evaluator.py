"""Condition evaluator: per-contact branching on engagement metrics.

A condition node splits its stage's contacts into a "yes" and a "no"
subset. Each contact is judged on its own engagement with the message
the preceding send stage delivered to it, never on an aggregate.

Contacts without an engagement fact (no send record, a failed send, no
provider id, or no stats recorded for the message) land in "no".
"""

from __future__ import annotations

import logging
import operator as op
from collections.abc import Callable, Iterable, Mapping
from datetime import timedelta

from pydrip.channels.gateway import EngagementStats, EngagementStatsProvider
from pydrip.clock import Clock
from pydrip.engine.errors import StageNotReadyError
from pydrip.engine.progression import ExecutionProgression, JobContext
from pydrip.models import (
    BRANCH_NO,
    BRANCH_YES,
    ConditionEvaluation,
    ConditionNode,
    ConditionResult,
    DispatchedJob,
    ExecutionStage,
    FlowGraphError,
    NodeKind,
    SendRecord,
    StageState,
)
from pydrip.storage.base import FlowStore

logger = logging.getLogger(__name__)

NOT_READY_RECHECK = timedelta(seconds=30)
"""Wait before re-checking a condition whose send stage is still executing."""

_COMPARISONS: dict[str, Callable[[float, float], bool]] = {
    ">": op.gt,
    ">=": op.ge,
    "==": op.eq,
    "=": op.eq,
    "!=": op.ne,
    "<": op.lt,
    "<=": op.le,
}

_MEMBERSHIP = ("in", "not_in")


def metric_value(stats: EngagementStats, metric_param: str) -> int:
    """Read `metric_param` from one message's engagement stats.

    "views"-style metrics are binary (opened at all); the "total_*"
    metrics are raw counts.

    Raises:
        FlowGraphError: If the metric is not supported
    """
    metric = metric_param.strip().lower()
    if metric in ("views", "email_opened", "aperturas"):
        return 1 if stats.opens > 0 else 0
    if metric in ("opens", "total_opens"):
        return stats.opens
    if metric in ("clicks", "email_clicked"):
        return 1 if stats.clicks > 0 else 0
    if metric == "total_clicks":
        return stats.clicks
    if metric == "bounces":
        return stats.bounces
    if metric == "unsubscribes":
        return stats.unsubscribes
    raise FlowGraphError(f"Unsupported condition metric: {metric_param!r}")


def _number(raw: str) -> float | None:
    try:
        return float(raw)
    except ValueError:
        return None


def validate_operator(operator: str, threshold: str) -> None:
    """Raise FlowGraphError if `operator`/`threshold` cannot be applied."""
    operator = operator.strip().lower()
    if operator in _MEMBERSHIP:
        return
    if operator not in _COMPARISONS:
        raise FlowGraphError(f"Unsupported condition operator: {operator!r}")
    if _number(threshold.strip()) is None:
        raise FlowGraphError(f"Threshold {threshold!r} is not numeric for operator {operator!r}")


def apply_operator(actual: float, operator: str, threshold: str) -> bool:
    """Compare a metric value against the configured threshold.

    `in` / `not_in` take a comma-separated list, compared numerically
    when every item is a number and as strings otherwise.

    Raises:
        FlowGraphError: Unknown operator or non-numeric threshold
    """
    validate_operator(operator, threshold)
    operator = operator.strip().lower()

    if operator in _MEMBERSHIP:
        items = [item.strip() for item in threshold.split(",") if item.strip()]
        numbers = [_number(item) for item in items]
        if all(n is not None for n in numbers):
            found = float(actual) in numbers
        else:
            found = _format(actual) in items
        return found if operator == "in" else not found

    return _COMPARISONS[operator](float(actual), float(threshold))


def _format(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def partition_contacts(
    contact_ids: Iterable[str],
    message_ids: Mapping[str, str | None],
    stats: Mapping[str, EngagementStats | None],
    metric_param: str,
    operator: str,
    threshold: str,
) -> tuple[list[str], list[str], int]:
    """Split contacts on one condition.

    Args:
        contact_ids: Contacts reaching the condition
        message_ids: Provider message id per contact; absent or None
            when the contact was never successfully sent to
        stats: Engagement stats per provider message id
        metric_param, operator, threshold: The condition

    Returns:
        (yes, no, missing) where `missing` counts contacts sent to "no"
        for lack of any engagement fact. Every contact appears in
        exactly one of the two lists.
    """
    metric_value(EngagementStats(), metric_param)
    validate_operator(operator, threshold)

    yes: list[str] = []
    no: list[str] = []
    missing = 0
    for contact_id in contact_ids:
        message_id = message_ids.get(contact_id)
        facts = stats.get(message_id) if message_id else None
        if facts is None:
            no.append(contact_id)
            missing += 1
            continue
        if apply_operator(metric_value(facts, metric_param), operator, threshold):
            yes.append(contact_id)
        else:
            no.append(contact_id)
    return yes, no, missing


def classify(yes_count: int, no_count: int) -> ConditionResult:
    if no_count == 0:
        return ConditionResult.YES
    if yes_count == 0:
        return ConditionResult.NO
    return ConditionResult.MIXED


class ConditionEvaluator:
    """Handler for VerifyConditionJob."""

    def __init__(
        self,
        store: FlowStore,
        progression: ExecutionProgression,
        stats: EngagementStatsProvider,
        clock: Clock,
    ):
        self._store = store
        self._progression = progression
        self._stats = stats
        self._clock = clock

    async def handle(self, job: DispatchedJob) -> str | None:
        prepared = await self._progression.prepare(job)
        if isinstance(prepared, str):
            return prepared
        ctx = prepared

        node = ctx.flow.node(ctx.stage.node_id)
        if not isinstance(node, ConditionNode):
            raise FlowGraphError(
                f"Node {node.id!r} is a {node.kind} node, not a condition"
            )

        evaluation = await self._store.get_condition_evaluation(ctx.execution.id, node.id)
        if evaluation is None:
            evaluation = await self._evaluate(ctx, node)
        else:
            logger.debug(f"Reusing stored evaluation of {node.id} for execution {ctx.execution.id}")

        branches = {BRANCH_YES: evaluation.yes_contacts, BRANCH_NO: evaluation.no_contacts}
        try:
            targets: dict[str, list[str]] = {}
            for label, subset in branches.items():
                if subset:
                    target = ctx.flow.next_node(node.id, label)
                    targets.setdefault(target, []).extend(subset)
        except FlowGraphError:
            await self._store.finish_stage(ctx.stage.id, StageState.COMPLETED, self._clock.now())
            raise

        await self._route(ctx, targets)
        await self._store.finish_stage(ctx.stage.id, StageState.COMPLETED, self._clock.now())
        await self._progression.settle(ctx.execution.id, exclude_stage_id=ctx.stage.id)

        return (
            f"{node.id}: {evaluation.result} "
            f"(yes={evaluation.yes_count}, no={evaluation.no_count})"
        )

    async def _route(self, ctx: JobContext, targets: dict[str, list[str]]) -> None:
        owns = ctx.owns_pointer
        pointer_target = next(iter(targets), None) if owns else None

        for target, subset in targets.items():
            takes_pointer = target == pointer_target
            await self._progression.route(
                ctx.execution,
                ctx.flow,
                target,
                list(dict.fromkeys(subset)),
                owns_pointer=takes_pointer,
                enqueue=not takes_pointer,
            )

        if owns and pointer_target is None:
            await self._store.set_next_node(ctx.execution.id, None, None, self._clock.now())

    async def _evaluate(self, ctx: JobContext, node: ConditionNode) -> ConditionEvaluation:
        source = await self._source_stage(ctx)
        message_ids: dict[str, str | None] = {}
        if source is not None:
            message_ids = _message_ids(await self._store.list_sends(source.id))

        stats: dict[str, EngagementStats | None] = {}
        for contact_id in ctx.contact_ids:
            message_id = message_ids.get(contact_id)
            if message_id and message_id not in stats:
                stats[message_id] = await self._stats.get_stats(message_id)

        yes, no, missing = partition_contacts(
            ctx.contact_ids, message_ids, stats, node.metric_param, node.operator, node.threshold
        )
        if missing:
            logger.warning(
                f"Condition {node.id} of execution {ctx.execution.id}: {missing} contact(s) "
                f"without engagement data routed to '{BRANCH_NO}'"
            )

        result = classify(len(yes), len(no))
        stored = await self._store.record_condition_evaluation(
            ConditionEvaluation(
                execution_id=ctx.execution.id,
                stage_id=ctx.stage.id,
                node_id=node.id,
                metric_param=node.metric_param,
                operator=node.operator,
                threshold=node.threshold,
                yes_contacts=tuple(yes),
                no_contacts=tuple(no),
                result=result,
                missing_count=missing,
                evaluated_at=self._clock.now(),
            )
        )
        logger.info(
            f"Condition {node.id} ({node.metric_param} {node.operator} {node.threshold}) "
            f"for execution {ctx.execution.id}: {stored.result}, "
            f"yes={stored.yes_count}, no={stored.no_count}"
        )
        return stored

    async def _source_stage(self, ctx: JobContext) -> ExecutionStage | None:
        """The send stage whose messages this condition inspects.

        The most recently started of the condition's predecessors that
        has left PENDING; otherwise the most recently finished send stage
        of the execution.

        Raises:
            StageNotReadyError: The chosen predecessor is still executing
        """
        stages = [
            s
            for s in await self._store.list_stages(ctx.execution.id)
            if s.id != ctx.stage.id
            and ctx.flow.has_node(s.node_id)
            and ctx.flow.node_kind(s.node_id) is NodeKind.SEND
        ]

        predecessors = set(ctx.flow.predecessors(ctx.stage.node_id))
        candidates = [s for s in stages if s.node_id in predecessors and s.state.is_claimed]
        if candidates:
            source = max(candidates, key=lambda s: (s.started_at or s.created_at, s.id))
            if source.state is StageState.EXECUTING:
                raise StageNotReadyError(
                    f"Send stage {source.node_id} of execution {ctx.execution.id} "
                    f"is still executing",
                    NOT_READY_RECHECK,
                )
            return source

        finished = [s for s in stages if s.state.is_terminal and s.finished_at is not None]
        if not finished:
            return None
        return max(finished, key=lambda s: (s.finished_at, s.id))


def _message_ids(records: Iterable[SendRecord]) -> dict[str, str | None]:
    """Provider message id per contact, from successful sends only."""
    ids: dict[str, str | None] = {}
    for record in records:
        if record.success and record.provider_message_id:
            ids[record.contact_id] = record.provider_message_id
        else:
            ids.setdefault(record.contact_id, None)
    return ids
