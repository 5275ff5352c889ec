"""
Property-based tests for pydrip using Hypothesis.

These tests generate many cases to find edge cases in:
- Per-contact condition partitioning
- Stage and execution state transitions
- Retry policy calculations
- Rate limiter caps and circuit breaker thresholds
- Branch routing of a whole execution
"""

from datetime import timedelta

import pytest
from hypothesis import assume, given, settings
from hypothesis import strategies as st

from pydrip import (
    BreakerSettings,
    BreakerState,
    Channel,
    CircuitBreaker,
    ConditionResult,
    Contact,
    EngagementStats,
    EngineConfig,
    Execution,
    ExecutionStage,
    ExecutionState,
    FakeChannelGateway,
    FlowDefinition,
    FlowEngine,
    InMemoryContactDirectory,
    InMemoryCounterStore,
    InMemoryEngagementStats,
    InMemoryFlowStore,
    ManualClock,
    RateLimiter,
    RetryPolicy,
    StageState,
)
from pydrip.engine import classify, partition_contacts

contact_id_lists = st.lists(
    st.text(alphabet="abcdefghij0123456789", min_size=1, max_size=8),
    min_size=0,
    max_size=40,
    unique=True,
)


def unlimited() -> EngineConfig:
    config = EngineConfig()
    for channel in Channel:
        config = config.with_rate_limits(channel, per_second=None, per_minute=None, per_hour=None)
    return config


# ==============================================================================
# PROPERTY 1: Condition partitioning
# ==============================================================================


@pytest.mark.property
@given(
    contact_ids=contact_id_lists,
    data=st.data(),
)
def test_partition_is_exact_split(contact_ids, data):
    """
    Property: every contact lands in exactly one branch, in input order.

    Contacts whose opens exceed the threshold go "yes"; everything else,
    including contacts without a send or without stats, goes "no".
    """
    message_ids = {}
    stats = {}
    for cid in contact_ids:
        if data.draw(st.booleans(), label=f"sent:{cid}"):
            message_ids[cid] = f"m-{cid}"
            opens = data.draw(st.one_of(st.none(), st.integers(0, 5)), label=f"opens:{cid}")
            stats[f"m-{cid}"] = None if opens is None else EngagementStats(opens=opens)

    yes, no, missing = partition_contacts(contact_ids, message_ids, stats, "opens", ">", "0")

    # Property 1: the split is a partition preserving order
    assert sorted(yes + no) == sorted(contact_ids)
    assert [c for c in contact_ids if c in set(yes)] == yes
    assert [c for c in contact_ids if c in set(no)] == no

    # Property 2: "yes" is exactly the contacts with engagement
    expected_yes = [
        c for c in contact_ids if stats.get(message_ids.get(c, "")) is not None
        and stats[message_ids[c]].opens > 0
    ]
    assert yes == expected_yes

    # Property 3: missing data always routes to "no"
    assert missing == sum(
        1 for c in contact_ids if c not in message_ids or stats[message_ids[c]] is None
    )
    assert missing <= len(no)


@pytest.mark.property
@given(contact_ids=contact_id_lists)
def test_partition_without_data_routes_everyone_to_no(contact_ids):
    """Property: with no sends on record, nobody qualifies."""
    yes, no, missing = partition_contacts(contact_ids, {}, {}, "views", ">", "0")
    assert yes == []
    assert no == list(contact_ids)
    assert missing == len(contact_ids)


@pytest.mark.property
@given(yes=st.integers(0, 1000), no=st.integers(0, 1000))
def test_classify_matches_populated_branches(yes, no):
    """Property: MIXED exactly when both branches are populated."""
    result = classify(yes, no)
    if yes and no:
        assert result is ConditionResult.MIXED
    elif no:
        assert result is ConditionResult.NO
    else:
        assert result is ConditionResult.YES


# ==============================================================================
# PROPERTY 2: State transitions
# ==============================================================================

stage_operations = st.lists(
    st.sampled_from(["claim", "complete", "fail"]), min_size=1, max_size=12
)


@pytest.mark.property
@pytest.mark.asyncio
@given(operations=stage_operations)
@settings(max_examples=100, deadline=None)
async def test_stage_state_never_moves_backwards(operations):
    """
    Property: stage state only moves PENDING -> EXECUTING -> terminal.

    Whatever sequence of claims and finishes is attempted, each applied
    change is an allowed transition and a terminal stage stays terminal.
    """
    clock = ManualClock()
    store = InMemoryFlowStore()
    stage = await store.create_stage(
        ExecutionStage(execution_id="e1", node_id="n1", created_at=clock.now())
    )
    claims = 0

    for index, operation in enumerate(operations):
        before = (await store.get_stage(stage.id)).state
        if operation == "claim":
            applied = await store.claim_stage(stage.id, f"job-{index}", clock.now())
            claims += applied
        else:
            target = StageState.COMPLETED if operation == "complete" else StageState.FAILED
            applied = await store.finish_stage(stage.id, target, clock.now())
        after = (await store.get_stage(stage.id)).state

        if applied:
            assert before.can_transition_to(after)
        else:
            assert after is before
        if before.is_terminal:
            assert after is before

    # Property: a stage is claimed at most once
    assert claims <= 1


execution_states = st.sampled_from(list(ExecutionState))


@pytest.mark.property
@pytest.mark.asyncio
@given(
    moves=st.lists(
        st.tuples(st.lists(execution_states, min_size=1, max_size=3, unique=True),
                  execution_states),
        min_size=1,
        max_size=10,
    )
)
@settings(max_examples=100, deadline=None)
async def test_guarded_execution_transitions(moves):
    """Property: a transition applies only from one of its allowed states."""
    clock = ManualClock()
    store = InMemoryFlowStore()
    execution = Execution(flow_id="f1", contact_ids=("c1",), created_at=clock.now())
    await store.create_execution(execution)

    for from_states, to_state in moves:
        before = (await store.get_execution(execution.id)).state
        applied = await store.transition_execution(
            execution.id, tuple(from_states), to_state, clock.now()
        )
        after = (await store.get_execution(execution.id)).state
        assert applied == (before in from_states)
        assert after is (to_state if applied else before)


# ==============================================================================
# PROPERTY 3: Retry Policy Calculations
# ==============================================================================


@pytest.mark.property
@given(
    max_attempts=st.integers(min_value=1, max_value=20),
    initial_delay_ms=st.integers(min_value=1, max_value=10000),
    max_delay_ms=st.integers(min_value=100, max_value=60000),
    backoff_multiplier=st.floats(min_value=1.0, max_value=5.0),
    attempt=st.integers(min_value=1, max_value=30),
)
def test_retry_policy_delay_properties(
    max_attempts, initial_delay_ms, max_delay_ms, backoff_multiplier, attempt
):
    """
    Property: Retry delays follow exponential backoff with ceiling.

    1. Returns None once attempt reaches max_attempts
    2. Delay never exceeds max_delay
    3. Delay never shrinks as attempts grow
    """
    assume(max_delay_ms >= initial_delay_ms)

    policy = RetryPolicy(
        max_attempts=max_attempts,
        initial_delay_ms=initial_delay_ms,
        max_delay_ms=max_delay_ms,
        backoff_multiplier=backoff_multiplier,
    )
    delay = policy.delay_for_attempt(attempt)

    if attempt >= max_attempts:
        assert delay is None
        return

    assert delay is not None
    assert timedelta(0) <= delay <= timedelta(milliseconds=max_delay_ms)
    if attempt == 1:
        assert delay == timedelta(milliseconds=initial_delay_ms)

    following = policy.delay_for_attempt(attempt + 1)
    if following is not None:
        assert following >= delay


# ==============================================================================
# PROPERTY 4: Throttling
# ==============================================================================


@pytest.mark.property
@pytest.mark.asyncio
@given(cap=st.integers(min_value=1, max_value=10), requests=st.integers(min_value=0, max_value=30))
@settings(max_examples=50, deadline=None)
async def test_rate_limiter_never_exceeds_cap(cap, requests):
    """Property: within one bucket, exactly min(requests, cap) sends are allowed."""
    clock = ManualClock()
    config = unlimited().with_rate_limits(Channel.SMS, per_second=cap)
    limiter = RateLimiter(InMemoryCounterStore(clock.now), config, clock)

    decisions = [await limiter.acquire(Channel.SMS) for _ in range(requests)]

    allowed = [d for d in decisions if d.allowed]
    assert len(allowed) == min(requests, cap)
    # Once rejected, every later request in the bucket is rejected too
    assert all(d.allowed for d in decisions[: len(allowed)])
    assert all(d.retry_after > timedelta(0) for d in decisions[len(allowed):])


@pytest.mark.property
@pytest.mark.asyncio
@given(
    threshold=st.integers(min_value=1, max_value=10),
    failures=st.integers(min_value=0, max_value=20),
)
@settings(max_examples=50, deadline=None)
async def test_breaker_opens_exactly_at_threshold(threshold, failures):
    """Property: the breaker is OPEN iff recorded failures reached the threshold."""
    clock = ManualClock()
    breaker = CircuitBreaker(
        InMemoryCounterStore(clock.now), BreakerSettings(failure_threshold=threshold), clock
    )
    for _ in range(failures):
        await breaker.record_failure(Channel.EMAIL)

    state = await breaker.state(Channel.EMAIL)
    assert (state is BreakerState.OPEN) == (failures >= threshold)
    assert await breaker.allow(Channel.EMAIL) == (failures < threshold)


# ==============================================================================
# PROPERTY 5: Whole-execution routing
# ==============================================================================

NURTURE = {
    "id": "nurture",
    "stages": [
        {"id": "email1", "type": "send", "channel": "email"},
        {"id": "email2", "type": "send", "channel": "email", "wait_offset_hours": 2},
        {"id": "email3", "type": "send", "channel": "email"},
        {"id": "end", "type": "end"},
    ],
    "conditions": [
        {
            "id": "opened",
            "metric_param": "Views",
            "operator": ">",
            "threshold": "0",
            "eval_delay_days": 1,
        }
    ],
    "branches": [
        {"source_id": "email1", "target_id": "opened"},
        {"source_id": "opened", "target_id": "email2", "branch_label": "yes"},
        {"source_id": "opened", "target_id": "email3", "branch_label": "no"},
        {"source_id": "email2", "target_id": "end"},
        {"source_id": "email3", "target_id": "end"},
    ],
}


@pytest.mark.property
@pytest.mark.asyncio
@given(contact_ids=contact_id_lists, data=st.data())
@settings(max_examples=25, deadline=None)
async def test_every_contact_follows_exactly_one_branch(contact_ids, data):
    """
    Property: after a split, each contact receives exactly one follow-up.

    Openers get email2, everyone else gets email3, and the execution
    completes once both branches are done.
    """
    assume(contact_ids)
    openers = set(data.draw(st.sets(st.sampled_from(contact_ids)), label="openers"))

    clock = ManualClock()
    gateway = FakeChannelGateway(Channel.EMAIL)
    stats = InMemoryEngagementStats()
    engine = FlowEngine(
        InMemoryFlowStore(),
        InMemoryCounterStore(clock.now),
        gateways={Channel.EMAIL: gateway},
        stats=stats,
        contacts=InMemoryContactDirectory(
            Contact(id=cid, email=f"{cid}@example.com") for cid in contact_ids
        ),
        config=unlimited(),
        clock=clock,
    )
    await engine.register_flow(FlowDefinition.from_dict(NURTURE))
    execution_id = await engine.run_flow("nurture", contact_ids)
    worker = engine.worker("w1")

    await engine.tick()
    await worker.drain()
    for message in gateway.sent:
        if message.contact.id in openers:
            stats.record_open(message.provider_message_id)

    for delta in (timedelta(days=1), timedelta(hours=2)):
        clock.advance(delta)
        await engine.tick()
        await worker.drain()

    execution = await engine.get_execution(execution_id)
    assert execution.state is ExecutionState.COMPLETED
    assert execution.emails_sent == 2 * len(contact_ids)

    recipients = gateway.recipients()
    for cid in contact_ids:
        assert recipients.count(cid) == 2

    stages = {s.node_id: s for s in await engine.get_stage_history(execution_id)}
    yes_stage, no_stage = stages.get("email2"), stages.get("email3")
    assert set(yes_stage.contact_ids if yes_stage else ()) == openers
    assert set(no_stage.contact_ids if no_stage else ()) == set(contact_ids) - openers


@pytest.mark.property
@given(
    offsets=st.lists(st.integers(min_value=0, max_value=72), min_size=1, max_size=8),
)
def test_linearized_due_times_accumulate(offsets):
    """Property: a straight chain plans every node, with due times summing the offsets."""
    clock = ManualClock()
    stages = [
        {"id": f"s{i}", "type": "send", "channel": "sms", "wait_offset_hours": hours}
        for i, hours in enumerate(offsets)
    ]
    stages.append({"id": "end", "type": "end"})
    ids = [s["id"] for s in stages]
    flow = FlowDefinition.from_dict(
        {
            "id": "chain",
            "stages": stages,
            "branches": [
                {"source_id": a, "target_id": b} for a, b in zip(ids, ids[1:], strict=False)
            ],
        }
    )

    plan = flow.linearize(clock.now())

    assert [p.node_id for p in plan] == ids
    assert all(a.due_at <= b.due_at for a, b in zip(plan, plan[1:], strict=False))
    assert plan[-1].due_at == clock.now() + timedelta(hours=sum(offsets))


@pytest.mark.property
@pytest.mark.asyncio
@given(
    emails=st.integers(min_value=0, max_value=5),
    sms=st.integers(min_value=0, max_value=5),
    contacts=st.integers(min_value=0, max_value=10_000),
)
@settings(max_examples=50, deadline=None)
async def test_cost_estimate_scales_with_send_stages(emails, sms, contacts):
    """Property: the estimate charges every contact once per send stage."""
    stages = [{"id": f"e{i}", "type": "send", "channel": "email"} for i in range(emails)]
    stages += [{"id": f"t{i}", "type": "send", "channel": "sms"} for i in range(sms)]
    stages.append({"id": "end", "type": "end"})
    config = (
        EngineConfig()
        .with_unit_cost(Channel.EMAIL, 0.001)
        .with_unit_cost(Channel.SMS, 0.05)
    )
    clock = ManualClock()
    engine = FlowEngine(
        InMemoryFlowStore(),
        InMemoryCounterStore(clock.now),
        gateways={},
        stats=InMemoryEngagementStats(),
        contacts=InMemoryContactDirectory(),
        config=config,
        clock=clock,
    )

    await engine.register_flow(FlowDefinition.from_dict({"id": "costly", "stages": stages}))
    result = await engine.estimate_cost("costly", contacts)
    assert (result.emails, result.sms) == (emails * contacts, sms * contacts)
    assert result.total_cost == pytest.approx(emails * contacts * 0.001 + sms * contacts * 0.05)
