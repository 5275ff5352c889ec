"""Persistent stores for flows, executions and the job ledger.

Provides multiple implementations behind a common interface:
    - FlowStore: Abstract interface
    - InMemoryFlowStore: In-memory store for tests and single processes
    - SqliteFlowStore: SQLite-backed durable store

Design: Adapter Pattern + Dependency Inversion
    The engine depends on FlowStore only, so backends swap freely.
"""

from pydrip.storage.base import FlowStore, StorageError


def __getattr__(name: str):
    """Lazy import so aiosqlite is only loaded when the SQLite store is used."""
    if name == "InMemoryFlowStore":
        from pydrip.storage.memory import InMemoryFlowStore

        return InMemoryFlowStore
    elif name == "SqliteFlowStore":
        from pydrip.storage.sqlite import SqliteFlowStore

        return SqliteFlowStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "FlowStore",
    "StorageError",
    "InMemoryFlowStore",
    "SqliteFlowStore",
]
