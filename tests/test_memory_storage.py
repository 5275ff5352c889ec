"""Tests for in-memory storage edge cases and error handling."""

from datetime import timedelta

import pytest

from pydrip import (
    DispatchedJob,
    Execution,
    ExecutionStage,
    InMemoryFlowStore,
    SendStageJob,
    StageState,
    StorageError,
)


@pytest.mark.asyncio
async def test_memory_reads_return_copies(in_memory_store, clock):
    """Mutating a returned row must not change the stored one."""
    execution = Execution(flow_id="f1", contact_ids=("c1",), created_at=clock.now())
    await in_memory_store.create_execution(execution)

    loaded = await in_memory_store.get_execution(execution.id)
    loaded.next_node = "tampered"
    loaded.emails_sent = 99

    again = await in_memory_store.get_execution(execution.id)
    assert again.next_node is None
    assert again.emails_sent == 0


@pytest.mark.asyncio
async def test_memory_create_copies_input(in_memory_store, clock):
    """The caller's object is not the stored row."""
    stage = ExecutionStage(execution_id="e1", node_id="n1", created_at=clock.now())
    await in_memory_store.create_stage(stage)

    stage.state = StageState.COMPLETED
    assert (await in_memory_store.get_stage(stage.id)).state is StageState.PENDING


@pytest.mark.asyncio
async def test_memory_missing_rows_raise(in_memory_store, clock):
    """Writes against unknown ids raise StorageError; reads return None."""
    assert await in_memory_store.get_execution("nope") is None
    assert await in_memory_store.get_stage("nope") is None
    assert await in_memory_store.get_job("nope") is None

    with pytest.raises(StorageError, match="Execution not found"):
        await in_memory_store.set_next_node("nope", "n1", clock.now(), clock.now())
    with pytest.raises(StorageError, match="Stage not found"):
        await in_memory_store.claim_stage("nope", "job-1", clock.now())
    with pytest.raises(StorageError, match="Job not found"):
        await in_memory_store.fail_job("nope", "boom", clock.now())


@pytest.mark.asyncio
async def test_memory_release_attempt_never_negative(in_memory_store, clock):
    """Releasing an attempt on a job that was never claimed keeps attempts at zero."""
    job = DispatchedJob(
        payload=SendStageJob(execution_id="e1", stage_id="s1", node_id="n1"),
        available_at=clock.now(),
        created_at=clock.now(),
    )
    await in_memory_store.enqueue_job(job)
    await in_memory_store.defer_job(
        job.job_id, "paused", clock.now() + timedelta(seconds=5), clock.now(),
        release_attempt=True,
    )
    assert (await in_memory_store.get_job(job.job_id)).attempts == 0


@pytest.mark.asyncio
async def test_memory_close_is_noop():
    """close() on the in-memory store keeps data."""
    store = InMemoryFlowStore()
    await store.enqueue_job(
        DispatchedJob(payload=SendStageJob(execution_id="e1", stage_id="s1", node_id="n1"))
    )
    await store.close()
    assert len(await store.list_jobs()) == 1
    assert repr(store) == "InMemoryFlowStore"
