"""
Durability tests for pydrip - state that must survive a process restart.

Each test closes the SQLite store and opens a new one on the same file,
the way a redeployed scheduler or worker would.
"""

from datetime import timedelta

import pytest

from pydrip import (
    Channel,
    ConditionResult,
    DispatchedJob,
    ExecutionState,
    FlowEngine,
    InMemoryCounterStore,
    JobState,
    SendStageJob,
    StageState,
)
from pydrip.storage import SqliteFlowStore


@pytest.fixture
async def open_engine(
    temp_db_path, clock, email_gateway, sms_gateway, stats, contacts, base_config
):
    """Open a fresh engine over the same database file; each call is a "restart"."""
    opened = []

    async def open_() -> FlowEngine:
        store = SqliteFlowStore(str(temp_db_path))
        await store.connect()
        engine = FlowEngine(
            store,
            InMemoryCounterStore(clock.now),
            gateways={Channel.EMAIL: email_gateway, Channel.SMS: sms_gateway},
            stats=stats,
            contacts=contacts,
            config=base_config,
            clock=clock,
        )
        opened.append(engine)
        return engine

    yield open_

    # close() is idempotent
    for engine in opened:
        await engine.close()


async def restart(engine, open_engine) -> FlowEngine:
    await engine.close()
    return await open_engine()


# ==============================================================================
# TEST 1: Rows persist
# ==============================================================================


@pytest.mark.durability
@pytest.mark.asyncio
async def test_flow_and_execution_persist(open_engine, branching_flow, contacts, clock):
    """Flows, executions and placeholder stages survive a reopen."""
    engine = await open_engine()
    await engine.register_flow(branching_flow)
    execution_id = await engine.run_flow("nurture", contacts.ids())

    engine = await restart(engine, open_engine)
    assert await engine.store.get_flow("nurture") == branching_flow

    execution = await engine.get_execution(execution_id)
    assert execution.state is ExecutionState.IN_PROGRESS
    assert execution.contact_ids == tuple(contacts.ids())
    assert execution.next_node == "email1"
    assert execution.next_node_due_at == clock.now()

    stages = await engine.get_stage_history(execution_id)
    assert [s.node_id for s in stages] == ["email1", "opened"]
    assert stages[1].due_at == clock.now() + timedelta(days=1)


@pytest.mark.durability
@pytest.mark.asyncio
async def test_jobs_persist_with_payloads(temp_db_path, clock):
    """Queued and deferred jobs keep their payload, attempts and availability."""
    store = SqliteFlowStore(str(temp_db_path))
    await store.connect()
    job = DispatchedJob(
        payload=SendStageJob(execution_id="e1", stage_id="s1", node_id="welcome"),
        available_at=clock.now(),
        created_at=clock.now(),
    )
    await store.enqueue_job(job)
    claimed = await store.claim_job("w1", clock.now())
    await store.defer_job(
        claimed.job_id, "rate limited", clock.now() + timedelta(seconds=5), clock.now()
    )
    await store.close()

    reopened = SqliteFlowStore(str(temp_db_path))
    await reopened.connect()
    try:
        loaded = await reopened.get_job(job.job_id)
        assert loaded.payload == job.payload
        assert loaded.state is JobState.RETRIED
        assert loaded.attempts == 1
        assert loaded.error == "rate limited"
        assert loaded.available_at == clock.now() + timedelta(seconds=5)

        assert await reopened.claim_job("w2", clock.now()) is None
        clock.advance(seconds=5)
        assert (await reopened.claim_job("w2", clock.now())).job_id == job.job_id
    finally:
        await reopened.close()


# ==============================================================================
# TEST 2: Executions resume after a restart
# ==============================================================================


@pytest.mark.durability
@pytest.mark.asyncio
async def test_execution_resumes_after_restart(
    open_engine, linear_flow, contacts, clock, email_gateway, sms_gateway
):
    """A flow started by one process is finished by the next without resending."""
    engine = await open_engine()
    await engine.register_flow(linear_flow)
    execution_id = await engine.run_flow("onboarding", contacts.ids())
    await engine.tick()
    await engine.worker("w1").drain()

    engine = await restart(engine, open_engine)
    clock.advance(hours=2)
    await engine.tick()
    await engine.worker("w2").drain()

    execution = await engine.get_execution(execution_id)
    assert execution.state is ExecutionState.COMPLETED
    assert (execution.emails_sent, execution.sms_sent) == (5, 5)
    assert len(email_gateway.sent) == 5
    assert len(sms_gateway.sent) == 5


@pytest.mark.durability
@pytest.mark.asyncio
async def test_queued_job_survives_restart(open_engine, linear_flow, contacts, email_gateway):
    """A job queued by the tick is processed by a worker in another process."""
    engine = await open_engine()
    await engine.register_flow(linear_flow)
    execution_id = await engine.run_flow("onboarding", contacts.ids())
    await engine.tick()

    engine = await restart(engine, open_engine)
    # The stage stays claimed across the restart
    assert (await engine.tick()).skipped == 1
    assert await engine.worker("w1").drain() == 1
    assert sorted(email_gateway.recipients()) == contacts.ids()

    stage = await engine.store.find_stage(execution_id, "welcome")
    assert stage.state is StageState.COMPLETED


@pytest.mark.durability
@pytest.mark.asyncio
async def test_crashed_worker_recovered_by_force_redispatch(
    open_engine, linear_flow, contacts, clock, email_gateway
):
    """
    Durability Test: a worker dies mid-job.

    Its job stays PROCESSING and its stage EXECUTING across the restart;
    the operator re-dispatches the stuck stage and no contact is sent twice.
    """
    engine = await open_engine()
    await engine.register_flow(linear_flow)
    execution_id = await engine.run_flow("onboarding", contacts.ids())
    await engine.tick()

    # The worker claims the job and dies before running it.
    job = await engine.store.claim_job("doomed", clock.now())
    stage = await engine.store.find_stage(execution_id, "welcome")
    assert stage.job_id == job.job_id

    engine = await restart(engine, open_engine)
    clock.advance(hours=2)
    assert await engine.worker("w1").drain() == 0

    [stuck] = await engine.find_stuck_stages()
    assert stuck.id == stage.id
    await engine.force_redispatch(stuck.id)
    await engine.worker("w1").drain()

    assert sorted(email_gateway.recipients()) == contacts.ids()
    assert (await engine.store.get_job(job.job_id)).state is JobState.COMPLETED
    execution = await engine.get_execution(execution_id)
    assert execution.next_node == "follow_up"


@pytest.mark.durability
@pytest.mark.asyncio
async def test_condition_split_survives_restart(
    open_engine, branching_flow, contacts, clock, email_gateway, stats
):
    """The recorded split and both branches outlive the process that evaluated them."""
    engine = await open_engine()
    await engine.register_flow(branching_flow)
    execution_id = await engine.run_flow("nurture", contacts.ids())
    await engine.tick()
    await engine.worker("w1").drain()
    for message in email_gateway.sent:
        if message.contact.id == "c1":
            stats.record_open(message.provider_message_id)

    engine = await restart(engine, open_engine)
    clock.advance(days=1)
    await engine.tick()
    await engine.worker("w1").drain()

    engine = await restart(engine, open_engine)
    [evaluation] = await engine.get_condition_history(execution_id)
    assert evaluation.result is ConditionResult.MIXED
    assert evaluation.yes_contacts == ("c1",)
    assert evaluation.no_contacts == ("c2", "c3", "c4", "c5")

    clock.advance(hours=2)
    await engine.tick()
    await engine.worker("w1").drain()

    execution = await engine.get_execution(execution_id)
    assert execution.state is ExecutionState.COMPLETED
    assert execution.emails_sent == 10
