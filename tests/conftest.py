"""
Pytest configuration and fixtures for pydrip tests.

Provides reusable fixtures for stores, the manual clock, channel fakes,
sample flow definitions and an engine builder.
"""

import shutil
import tempfile
from collections.abc import AsyncGenerator, Callable
from pathlib import Path

import pytest

from pydrip import (
    Channel,
    EngineConfig,
    FakeChannelGateway,
    FlowDefinition,
    FlowEngine,
    InMemoryContactDirectory,
    InMemoryCounterStore,
    InMemoryEngagementStats,
    ManualClock,
    StaticTemplateRenderer,
)
from pydrip.storage import FlowStore, InMemoryFlowStore, SqliteFlowStore


def pytest_sessionfinish(session, exitstatus):
    """Force cleanup after all tests complete to prevent CI hanging."""
    import os

    # In CI environments only, force exit to prevent hanging
    if os.getenv("CI") or os.getenv("GITHUB_ACTIONS"):
        os._exit(exitstatus)


# ==============================================================================
# Stores and time
# ==============================================================================


@pytest.fixture
def clock() -> ManualClock:
    """Manual clock starting at 2026-01-01 09:00 UTC."""
    return ManualClock()


@pytest.fixture
async def in_memory_store() -> AsyncGenerator[InMemoryFlowStore, None]:
    """Async in-memory store fixture with automatic cleanup."""
    store = InMemoryFlowStore()
    yield store
    await store.reset()


@pytest.fixture
async def sqlite_memory_store() -> AsyncGenerator[SqliteFlowStore, None]:
    """Async SQLite in-memory store fixture with automatic cleanup."""
    store = SqliteFlowStore(":memory:")
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
def temp_db_path():
    """Temporary database file path with automatic cleanup."""
    tmpdir = Path(tempfile.mkdtemp())
    db_path = tmpdir / "test.db"
    yield db_path
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture(params=["memory", "sqlite"])
async def store(request) -> AsyncGenerator[FlowStore, None]:
    """Every FlowStore implementation, for contract tests."""
    if request.param == "memory":
        backend: FlowStore = InMemoryFlowStore()
    else:
        backend = await SqliteFlowStore.in_memory()
    yield backend
    await backend.close()


@pytest.fixture
def counters(clock: ManualClock) -> InMemoryCounterStore:
    return InMemoryCounterStore(clock.now)


# ==============================================================================
# Channel fakes
# ==============================================================================


@pytest.fixture
def email_gateway() -> FakeChannelGateway:
    return FakeChannelGateway(Channel.EMAIL)


@pytest.fixture
def sms_gateway() -> FakeChannelGateway:
    return FakeChannelGateway(Channel.SMS)


@pytest.fixture
def stats() -> InMemoryEngagementStats:
    return InMemoryEngagementStats()


@pytest.fixture
def contacts() -> InMemoryContactDirectory:
    """Five reachable contacts: c1..c5."""
    return InMemoryContactDirectory.generate(5)


@pytest.fixture
def base_config() -> EngineConfig:
    """Default config without send caps, so tests control throttling explicitly."""
    config = EngineConfig()
    for channel in Channel:
        config = config.with_rate_limits(channel, per_second=None, per_minute=None, per_hour=None)
    return config


@pytest.fixture
def make_engine(
    in_memory_store, counters, clock, email_gateway, sms_gateway, stats, contacts, base_config
) -> Callable[..., FlowEngine]:
    """Build a FlowEngine over the shared fakes; keyword arguments override them."""

    def build(**overrides) -> FlowEngine:
        return FlowEngine(
            overrides.pop("store", in_memory_store),
            overrides.pop("counters", counters),
            gateways=overrides.pop(
                "gateways", {Channel.EMAIL: email_gateway, Channel.SMS: sms_gateway}
            ),
            stats=overrides.pop("stats", stats),
            contacts=overrides.pop("contacts", contacts),
            renderer=overrides.pop("renderer", StaticTemplateRenderer()),
            config=overrides.pop("config", base_config),
            clock=overrides.pop("clock", clock),
        )

    return build


@pytest.fixture
def engine(make_engine) -> FlowEngine:
    return make_engine()


# ==============================================================================
# Sample flows
# ==============================================================================


@pytest.fixture
def linear_flow() -> FlowDefinition:
    """welcome -> (2h) follow_up (sms) -> done."""
    return FlowDefinition.from_dict(
        {
            "id": "onboarding",
            "name": "Onboarding",
            "stages": [
                {"id": "welcome", "type": "send", "channel": "email", "template_ref": "Hi {name}"},
                {
                    "id": "follow_up",
                    "type": "send",
                    "channel": "sms",
                    "wait_offset_hours": 2,
                    "template_ref": "Still there, {name}?",
                },
                {"id": "done", "type": "end"},
            ],
            "branches": [
                {"source_id": "welcome", "target_id": "follow_up"},
                {"source_id": "follow_up", "target_id": "done"},
            ],
        }
    )


@pytest.fixture
def branching_flow() -> FlowDefinition:
    """email1 -> (1 day) opened? Views > 0 -> yes: email2 (2h) / no: email3 -> end."""
    return FlowDefinition.from_dict(
        {
            "id": "nurture",
            "name": "Nurture",
            "stages": [
                {"id": "email1", "type": "send", "channel": "email", "template_ref": "intro"},
                {
                    "id": "email2",
                    "type": "send",
                    "channel": "email",
                    "wait_offset_hours": 2,
                    "template_ref": "thanks-for-reading",
                },
                {"id": "email3", "type": "send", "channel": "email", "template_ref": "reminder"},
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
    )
