"""Tests for the per-channel circuit breaker."""

from datetime import timedelta

import pytest

from pydrip import BreakerState, Channel, CircuitBreaker
from pydrip.config import BreakerSettings


@pytest.fixture
def breaker(counters, clock):
    return CircuitBreaker(counters, BreakerSettings(failure_threshold=3), clock)


async def trip(breaker, channel=Channel.EMAIL, times=3):
    for _ in range(times):
        await breaker.record_failure(channel)


@pytest.mark.asyncio
async def test_starts_closed(breaker):
    assert await breaker.state(Channel.EMAIL) is BreakerState.CLOSED
    assert await breaker.allow(Channel.EMAIL)
    assert await breaker.retry_after(Channel.EMAIL) == timedelta(0)


@pytest.mark.asyncio
async def test_opens_at_threshold(breaker):
    await trip(breaker, times=2)
    assert await breaker.allow(Channel.EMAIL)

    await breaker.record_failure(Channel.EMAIL)
    assert await breaker.state(Channel.EMAIL) is BreakerState.OPEN
    assert not await breaker.allow(Channel.EMAIL)
    assert await breaker.retry_after(Channel.EMAIL) == timedelta(seconds=60)


@pytest.mark.asyncio
async def test_channels_are_independent(breaker):
    await trip(breaker, Channel.EMAIL)
    assert not await breaker.allow(Channel.EMAIL)
    assert await breaker.allow(Channel.SMS)


@pytest.mark.asyncio
async def test_recovery_time_moves_to_half_open(breaker, clock):
    await trip(breaker)

    clock.advance(seconds=59)
    assert not await breaker.allow(Channel.EMAIL)

    clock.advance(seconds=2)
    assert await breaker.state(Channel.EMAIL) is BreakerState.HALF_OPEN
    assert await breaker.allow(Channel.EMAIL)


@pytest.mark.asyncio
async def test_half_open_success_closes(breaker, clock):
    await trip(breaker)
    clock.advance(seconds=61)

    await breaker.record_success(Channel.EMAIL)

    status = await breaker.status(Channel.EMAIL)
    assert status.state is BreakerState.CLOSED
    assert status.failures == 0
    assert status.opened_at is None


@pytest.mark.asyncio
async def test_half_open_failure_reopens(breaker, clock):
    await trip(breaker)
    clock.advance(seconds=61)

    await breaker.record_failure(Channel.EMAIL)

    assert await breaker.state(Channel.EMAIL) is BreakerState.OPEN
    assert await breaker.retry_after(Channel.EMAIL) == timedelta(seconds=60)


@pytest.mark.asyncio
async def test_success_while_closed_keeps_failures(breaker):
    await trip(breaker, times=2)
    await breaker.record_success(Channel.EMAIL)
    assert (await breaker.status(Channel.EMAIL)).failures == 2


@pytest.mark.asyncio
async def test_failures_expire_with_window(breaker, clock):
    await trip(breaker, times=2)
    clock.advance(seconds=61)
    await breaker.record_failure(Channel.EMAIL)
    assert await breaker.state(Channel.EMAIL) is BreakerState.CLOSED


@pytest.mark.asyncio
async def test_manual_reset(breaker):
    await trip(breaker)
    await breaker.reset(Channel.EMAIL)
    assert await breaker.allow(Channel.EMAIL)
    assert (await breaker.status(Channel.EMAIL)).failures == 0


@pytest.mark.asyncio
async def test_status_while_open(breaker, clock):
    await trip(breaker)
    clock.advance(seconds=20)

    status = await breaker.status(Channel.EMAIL)
    assert status.is_open
    assert status.failures == 3
    assert status.threshold == 3
    assert status.opened_at == clock.now() - timedelta(seconds=20)
    assert status.seconds_until_recovery == pytest.approx(40.0)


@pytest.mark.asyncio
async def test_listeners_notified_on_open(breaker):
    seen = []

    async def async_listener(channel, failures):
        seen.append(("async", channel, failures))

    def broken_listener(channel, failures):
        raise RuntimeError("pager offline")

    breaker.add_listener(broken_listener)
    breaker.add_listener(async_listener)

    await trip(breaker)

    assert seen == [("async", Channel.EMAIL, 3)]
