"""Stage dispatcher: sends a stage's messages and advances past it.

Every send goes through the channel's circuit breaker and rate limiter.
A blocked send raises ThrottledError so the worker re-queues the job;
sends recorded before the block stay recorded and are skipped when the
job runs again, which also makes redelivery of the same job harmless.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from pydrip.channels.circuit_breaker import CircuitBreaker
from pydrip.channels.gateway import (
    ChannelGateway,
    Contact,
    ContactDirectory,
    SendResult,
    TemplateRenderer,
)
from pydrip.channels.rate_limiter import RateLimiter
from pydrip.clock import Clock
from pydrip.config import EngineConfig
from pydrip.engine.errors import ThrottledError
from pydrip.engine.progression import ExecutionProgression, JobContext
from pydrip.models import (
    Channel,
    DispatchedJob,
    FlowGraphError,
    NodeKind,
    SendRecord,
    StageNode,
    StageState,
)
from pydrip.storage.base import FlowStore

logger = logging.getLogger(__name__)


class StageDispatcher:
    """Handler for SendStageJob."""

    def __init__(
        self,
        store: FlowStore,
        progression: ExecutionProgression,
        gateways: Mapping[Channel, ChannelGateway],
        contacts: ContactDirectory,
        renderer: TemplateRenderer,
        breaker: CircuitBreaker,
        limiter: RateLimiter,
        config: EngineConfig,
        clock: Clock,
    ):
        self._store = store
        self._progression = progression
        self._gateways = gateways
        self._contacts = contacts
        self._renderer = renderer
        self._breaker = breaker
        self._limiter = limiter
        self._config = config
        self._clock = clock

    async def handle(self, job: DispatchedJob) -> str | None:
        prepared = await self._progression.prepare(job)
        if isinstance(prepared, str):
            return prepared
        ctx = prepared

        node = ctx.flow.node(ctx.stage.node_id)
        if not isinstance(node, StageNode) or node.kind is not NodeKind.SEND:
            raise FlowGraphError(f"Node {node.id!r} is a {node.kind} node, not a send stage")
        if node.channel is None:
            raise FlowGraphError(f"Send stage {node.id!r} has no channel")
        gateway = self._gateways.get(node.channel)
        if gateway is None:
            raise FlowGraphError(f"No gateway configured for channel {node.channel}")

        await self._send_batch(ctx, node, gateway)

        records = await self._store.list_sends(ctx.stage.id)
        sent = [r for r in records if r.success]
        failed = len(records) - len(sent)
        now = self._clock.now()

        if ctx.contact_ids and not sent:
            reason = f"all {len(records)} sends failed"
            await self._store.finish_stage(
                ctx.stage.id, StageState.FAILED, now, error=reason, failed_count=failed
            )
            await self._progression.fail_execution(
                ctx.execution.id, f"Stage {node.id}: {reason}"
            )
            return f"{node.id}: {reason}"

        first_message_id = next((r.provider_message_id for r in sent), None)
        try:
            target = ctx.flow.next_node(node.id)
        except FlowGraphError:
            await self._store.finish_stage(
                ctx.stage.id,
                StageState.COMPLETED,
                now,
                external_message_id=first_message_id,
                sent_count=len(sent),
                failed_count=failed,
            )
            raise

        await self._advance(ctx, target)
        await self._store.finish_stage(
            ctx.stage.id,
            StageState.COMPLETED,
            self._clock.now(),
            external_message_id=first_message_id,
            sent_count=len(sent),
            failed_count=failed,
        )
        await self._progression.settle(ctx.execution.id, exclude_stage_id=ctx.stage.id)
        return f"{node.id}: sent={len(sent)} failed={failed}"

    async def _advance(self, ctx: JobContext, target: str) -> None:
        owns = ctx.owns_pointer
        await self._progression.route(
            ctx.execution,
            ctx.flow,
            target,
            ctx.contact_ids,
            owns_pointer=owns,
            enqueue=not owns,
        )

    async def _send_batch(self, ctx: JobContext, node: StageNode, gateway: ChannelGateway) -> None:
        channel = node.channel
        done = {r.contact_id for r in await self._store.list_sends(ctx.stage.id)}
        remaining = [cid for cid in ctx.contact_ids if cid not in done]
        if done:
            logger.info(
                f"Stage {node.id} of execution {ctx.execution.id}: resuming, "
                f"{len(done)} already sent, {len(remaining)} remaining"
            )
        if not remaining:
            return

        directory = await self._contacts.get_contacts(remaining)
        unit_cost = self._config.unit_cost(channel)

        for contact_id in remaining:
            if not await self._breaker.allow(channel):
                retry_after = await self._breaker.retry_after(channel)
                logger.warning(
                    f"Stage {node.id}: {channel} circuit breaker open, "
                    f"deferring {len(remaining)} send(s)"
                )
                raise ThrottledError(channel, "circuit breaker open", retry_after)

            decision = await self._limiter.acquire(channel)
            if not decision.allowed:
                logger.warning(
                    f"Stage {node.id}: {channel} rate limit ({decision.window}) reached"
                )
                raise ThrottledError(
                    channel, f"rate limit per {decision.window}", decision.retry_after
                )

            contact = directory.get(contact_id)
            if contact is None or contact.destination(channel) is None:
                why = "contact not found" if contact is None else f"no {channel} destination"
                await self._record(ctx, contact_id, channel, SendResult(success=False, error=why))
                continue

            result = await self._deliver(node, gateway, contact)
            if result.success:
                await self._breaker.record_success(channel)
                await self._store.add_send_totals(
                    ctx.execution.id, channel, 1, unit_cost, self._clock.now()
                )
            else:
                await self._breaker.record_failure(channel)
            await self._record(ctx, contact_id, channel, result, unit_cost)

    async def _deliver(
        self, node: StageNode, gateway: ChannelGateway, contact: Contact
    ) -> SendResult:
        content = await self._renderer.render(node.template_ref, contact, node.channel)
        try:
            return await gateway.send(contact, content)
        except Exception as e:
            logger.warning(f"{node.channel} gateway error for contact {contact.id}: {e}")
            return SendResult(success=False, error=str(e))

    async def _record(
        self,
        ctx: JobContext,
        contact_id: str,
        channel: Channel,
        result: SendResult,
        unit_cost: float = 0.0,
    ) -> None:
        await self._store.record_send(
            SendRecord(
                stage_id=ctx.stage.id,
                execution_id=ctx.execution.id,
                contact_id=contact_id,
                channel=channel,
                success=result.success,
                provider_message_id=result.provider_message_id,
                error=result.error,
                cost=unit_cost if result.success else 0.0,
                sent_at=self._clock.now(),
            )
        )
