"""SQLite-backed store implementation for pydrip.

Design Pattern: Adapter Pattern
SqliteFlowStore adapts an SQLite database to the FlowStore interface.

Implementation details:
- aiosqlite for async operations
- WAL mode for concurrent reads
- State-guarded UPDATEs (`... WHERE state = ?`) for compare-and-set
- A partial unique index enforces one active execution per flow
- INTEGER timestamps (UTC milliseconds)
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path

import aiosqlite

from pydrip.models import (
    Channel,
    ConditionEvaluation,
    ConditionResult,
    DispatchedJob,
    Execution,
    ExecutionStage,
    ExecutionState,
    FlowDefinition,
    JobKind,
    JobState,
    SendRecord,
    StageState,
    payload_from_dict,
    payload_to_dict,
)
from pydrip.storage.base import FlowStore, StorageError

_ACTIVE_STATES = ("pending", "in_progress", "paused")

_EXECUTION_COLUMNS = (
    "id, flow_id, contact_ids, state, current_node, next_node, next_node_due_at, "
    "start_at, started_at, finished_at, error, emails_sent, sms_sent, total_cost, "
    "created_at, updated_at"
)

_STAGE_COLUMNS = (
    "id, execution_id, node_id, contact_ids, due_at, state, job_id, external_message_id, "
    "error, sent_count, failed_count, created_at, started_at, finished_at, late_contact_ids"
)

_EVALUATION_COLUMNS = (
    "id, execution_id, stage_id, node_id, metric_param, operator, threshold, "
    "yes_contacts, no_contacts, missing_count, result, evaluated_at"
)

_SEND_COLUMNS = (
    "id, stage_id, execution_id, contact_id, channel, success, provider_message_id, "
    "error, cost, sent_at"
)

_JOB_COLUMNS = (
    "job_id, kind, payload, state, attempts, error, locked_by, available_at, "
    "created_at, updated_at"
)


def _ms(when: datetime | None) -> int | None:
    return None if when is None else int(when.timestamp() * 1000)


def _dt(ms: int | None) -> datetime | None:
    return None if ms is None else datetime.fromtimestamp(ms / 1000.0, tz=UTC)


def _ids(raw: str | None) -> tuple[str, ...] | None:
    return None if raw is None else tuple(json.loads(raw))


def _dump_ids(ids: Sequence[str] | None) -> str | None:
    return None if ids is None else json.dumps(list(ids))


class SqliteFlowStore(FlowStore):
    """SQLite-backed durable store.

    After __init__, the instance is not yet usable. Call connect() first.

    Usage:
        store = SqliteFlowStore("pydrip.db")
        await store.connect()
        try:
            await store.save_flow(definition)
        finally:
            await store.close()
    """

    def __init__(self, db_path: str):
        """Initialize the store (connection not opened yet).

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()  # Serialize writes on the shared connection

    @classmethod
    async def in_memory(cls) -> SqliteFlowStore:
        """Create and connect an in-memory store (for tests)."""
        instance = cls(":memory:")
        await instance.connect()
        return instance

    def __repr__(self) -> str:
        if self.db_path == ":memory:":
            return "SqliteFlowStore(in-memory)"
        return f"SqliteFlowStore({self.db_path})"

    async def connect(self) -> None:
        """Open the connection, enable WAL and create the schema."""
        if self._connection is not None:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(
            self.db_path,
            timeout=5.0,
            isolation_level=None,
        )

        # In-memory databases report "memory" and cannot use WAL
        cursor = await self._connection.execute("PRAGMA journal_mode=WAL")
        result = await cursor.fetchone()
        await cursor.close()
        if result and result[0].upper() not in ("WAL", "MEMORY"):
            raise StorageError(f"Failed to enable WAL mode, got: {result[0]}")

        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.execute("PRAGMA busy_timeout=5000")

        await self._create_schema()
        await self._connection.commit()

    async def _create_schema(self) -> None:
        """Create tables and indexes.

        Schema design:
        - lowercase state values matching the enum values
        - contact id lists stored as JSON text
        - one row per (execution_id, node_id) in stages and condition_evaluations
        """
        conn = self._connection
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS flows (
                id TEXT PRIMARY KEY,
                definition TEXT NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                flow_id TEXT NOT NULL,
                contact_ids TEXT NOT NULL,
                state TEXT CHECK( state IN (
                    'pending','in_progress','paused','completed','failed'
                ) ) NOT NULL,
                current_node TEXT,
                next_node TEXT,
                next_node_due_at INTEGER,
                start_at INTEGER,
                started_at INTEGER,
                finished_at INTEGER,
                error TEXT,
                emails_sent INTEGER NOT NULL DEFAULT 0,
                sms_sent INTEGER NOT NULL DEFAULT 0,
                total_cost REAL NOT NULL DEFAULT 0,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)

        await conn.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_executions_one_active
            ON executions(flow_id)
            WHERE state IN ('pending','in_progress','paused')
        """)

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_executions_due
            ON executions(state, next_node_due_at)
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS stages (
                id TEXT PRIMARY KEY,
                execution_id TEXT NOT NULL,
                node_id TEXT NOT NULL,
                contact_ids TEXT,
                due_at INTEGER,
                state TEXT CHECK( state IN (
                    'pending','executing','completed','failed'
                ) ) NOT NULL,
                job_id TEXT,
                external_message_id TEXT,
                error TEXT,
                sent_count INTEGER NOT NULL DEFAULT 0,
                failed_count INTEGER NOT NULL DEFAULT 0,
                created_at INTEGER NOT NULL,
                started_at INTEGER,
                finished_at INTEGER,
                late_contact_ids TEXT NOT NULL DEFAULT '[]',
                UNIQUE (execution_id, node_id)
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS condition_evaluations (
                id TEXT PRIMARY KEY,
                execution_id TEXT NOT NULL,
                stage_id TEXT NOT NULL,
                node_id TEXT NOT NULL,
                metric_param TEXT NOT NULL,
                operator TEXT NOT NULL,
                threshold TEXT NOT NULL,
                yes_contacts TEXT NOT NULL,
                no_contacts TEXT NOT NULL,
                missing_count INTEGER NOT NULL DEFAULT 0,
                result TEXT CHECK( result IN ('yes','no','mixed') ) NOT NULL,
                evaluated_at INTEGER NOT NULL,
                UNIQUE (execution_id, node_id)
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS send_records (
                id TEXT PRIMARY KEY,
                stage_id TEXT NOT NULL,
                execution_id TEXT NOT NULL,
                contact_id TEXT NOT NULL,
                channel TEXT NOT NULL,
                success INTEGER NOT NULL,
                provider_message_id TEXT,
                error TEXT,
                cost REAL NOT NULL DEFAULT 0,
                sent_at INTEGER NOT NULL
            )
        """)

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_send_records_stage
            ON send_records(stage_id)
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                job_id TEXT PRIMARY KEY,
                kind TEXT CHECK( kind IN ('send-stage','verify-condition') ) NOT NULL,
                payload TEXT NOT NULL,
                execution_id TEXT NOT NULL,
                state TEXT CHECK( state IN (
                    'queued','processing','completed','failed','retried'
                ) ) NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                error TEXT,
                locked_by TEXT,
                available_at INTEGER NOT NULL,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_claimable
            ON jobs(state, available_at)
        """)

    def _check_connected(self) -> None:
        if self._connection is None:
            raise StorageError("Not connected. Call connect() first.")

    async def _fetchone(self, sql: str, params: Sequence = ()) -> tuple | None:
        self._check_connected()
        async with self._connection.execute(sql, params) as cursor:
            return await cursor.fetchone()

    async def _fetchall(self, sql: str, params: Sequence = ()) -> list[tuple]:
        self._check_connected()
        async with self._connection.execute(sql, params) as cursor:
            return list(await cursor.fetchall())

    async def _write(self, sql: str, params: Sequence = ()) -> int:
        """Run one write under the lock and return the affected row count."""
        self._check_connected()
        async with self._lock:
            try:
                cursor = await self._connection.execute(sql, params)
                await self._connection.commit()
                return cursor.rowcount
            except sqlite3.Error as e:
                raise StorageError(f"Write failed: {e}") from e

    async def _require(self, table: str, key_column: str, key: str) -> None:
        row = await self._fetchone(f"SELECT 1 FROM {table} WHERE {key_column} = ?", (key,))
        if row is None:
            raise StorageError(f"{table} row not found: {key}")

    # ------------------------------------------------------------------
    # Flow definitions
    # ------------------------------------------------------------------

    async def save_flow(self, flow: FlowDefinition) -> None:
        await self._write(
            """
            INSERT INTO flows (id, definition, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                definition = excluded.definition,
                updated_at = excluded.updated_at
            """,
            (flow.id, json.dumps(flow.to_dict()), _ms(datetime.now(UTC))),
        )

    async def get_flow(self, flow_id: str) -> FlowDefinition | None:
        row = await self._fetchone("SELECT definition FROM flows WHERE id = ?", (flow_id,))
        return FlowDefinition.from_dict(json.loads(row[0])) if row else None

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_execution(row: tuple) -> Execution:
        return Execution(
            id=row[0],
            flow_id=row[1],
            contact_ids=_ids(row[2]) or (),
            state=ExecutionState(row[3]),
            current_node=row[4],
            next_node=row[5],
            next_node_due_at=_dt(row[6]),
            start_at=_dt(row[7]),
            started_at=_dt(row[8]),
            finished_at=_dt(row[9]),
            error=row[10],
            emails_sent=row[11],
            sms_sent=row[12],
            total_cost=row[13],
            created_at=_dt(row[14]),
            updated_at=_dt(row[15]),
        )

    async def create_execution(self, execution: Execution) -> None:
        self._check_connected()
        async with self._lock:
            try:
                await self._connection.execute(
                    f"INSERT INTO executions ({_EXECUTION_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        execution.id,
                        execution.flow_id,
                        _dump_ids(execution.contact_ids),
                        execution.state.value,
                        execution.current_node,
                        execution.next_node,
                        _ms(execution.next_node_due_at),
                        _ms(execution.start_at),
                        _ms(execution.started_at),
                        _ms(execution.finished_at),
                        execution.error,
                        execution.emails_sent,
                        execution.sms_sent,
                        execution.total_cost,
                        _ms(execution.created_at),
                        _ms(execution.updated_at),
                    ),
                )
                await self._connection.commit()
            except sqlite3.IntegrityError as e:
                raise StorageError(
                    f"Flow {execution.flow_id} already has an active execution: {e}"
                ) from e

    async def get_execution(self, execution_id: str) -> Execution | None:
        row = await self._fetchone(
            f"SELECT {_EXECUTION_COLUMNS} FROM executions WHERE id = ?", (execution_id,)
        )
        return self._row_to_execution(row) if row else None

    async def find_active_execution(self, flow_id: str) -> Execution | None:
        row = await self._fetchone(
            f"SELECT {_EXECUTION_COLUMNS} FROM executions "
            "WHERE flow_id = ? AND state IN (?, ?, ?)",
            (flow_id, *_ACTIVE_STATES),
        )
        return self._row_to_execution(row) if row else None

    async def list_executions(self, flow_id: str | None = None) -> list[Execution]:
        if flow_id is None:
            rows = await self._fetchall(
                f"SELECT {_EXECUTION_COLUMNS} FROM executions ORDER BY created_at, id"
            )
        else:
            rows = await self._fetchall(
                f"SELECT {_EXECUTION_COLUMNS} FROM executions WHERE flow_id = ? "
                "ORDER BY created_at, id",
                (flow_id,),
            )
        return [self._row_to_execution(r) for r in rows]

    async def list_due_executions(self, now: datetime) -> list[Execution]:
        rows = await self._fetchall(
            f"SELECT {_EXECUTION_COLUMNS} FROM executions "
            "WHERE state = 'in_progress' AND next_node IS NOT NULL "
            "AND next_node_due_at IS NOT NULL AND next_node_due_at <= ? "
            "ORDER BY next_node_due_at, id",
            (_ms(now),),
        )
        return [self._row_to_execution(r) for r in rows]

    async def list_startable_executions(self, now: datetime) -> list[Execution]:
        rows = await self._fetchall(
            f"SELECT {_EXECUTION_COLUMNS} FROM executions "
            "WHERE state = 'pending' AND (start_at IS NULL OR start_at <= ?) "
            "ORDER BY created_at, id",
            (_ms(now),),
        )
        return [self._row_to_execution(r) for r in rows]

    async def transition_execution(
        self,
        execution_id: str,
        from_states: Sequence[ExecutionState],
        to_state: ExecutionState,
        now: datetime,
        error: str | None = None,
    ) -> bool:
        if not from_states:
            return False
        now_ms = _ms(now)
        placeholders = ", ".join("?" for _ in from_states)
        rowcount = await self._write(
            f"""
            UPDATE executions
            SET state = ?,
                updated_at = ?,
                error = COALESCE(?, error),
                started_at = CASE
                    WHEN ? = 'in_progress' AND started_at IS NULL THEN ? ELSE started_at END,
                finished_at = CASE
                    WHEN ? IN ('completed', 'failed') THEN ? ELSE finished_at END
            WHERE id = ? AND state IN ({placeholders})
            """,
            (
                to_state.value,
                now_ms,
                error,
                to_state.value,
                now_ms,
                to_state.value,
                now_ms,
                execution_id,
                *(s.value for s in from_states),
            ),
        )
        if rowcount == 0:
            await self._require("executions", "id", execution_id)
        return rowcount > 0

    async def set_next_node(
        self,
        execution_id: str,
        node_id: str | None,
        due_at: datetime | None,
        now: datetime,
    ) -> None:
        rowcount = await self._write(
            "UPDATE executions SET next_node = ?, next_node_due_at = ?, updated_at = ? "
            "WHERE id = ?",
            (node_id, _ms(due_at), _ms(now), execution_id),
        )
        if rowcount == 0:
            raise StorageError(f"Execution not found: {execution_id}")

    async def set_current_node(self, execution_id: str, node_id: str, now: datetime) -> None:
        rowcount = await self._write(
            "UPDATE executions SET current_node = ?, updated_at = ? WHERE id = ?",
            (node_id, _ms(now), execution_id),
        )
        if rowcount == 0:
            raise StorageError(f"Execution not found: {execution_id}")

    async def add_send_totals(
        self, execution_id: str, channel: Channel, sent: int, cost: float, now: datetime
    ) -> None:
        column = "emails_sent" if channel is Channel.EMAIL else "sms_sent"
        rowcount = await self._write(
            f"UPDATE executions SET {column} = {column} + ?, total_cost = total_cost + ?, "
            "updated_at = ? WHERE id = ?",
            (sent, cost, _ms(now), execution_id),
        )
        if rowcount == 0:
            raise StorageError(f"Execution not found: {execution_id}")

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_stage(row: tuple) -> ExecutionStage:
        return ExecutionStage(
            id=row[0],
            execution_id=row[1],
            node_id=row[2],
            contact_ids=_ids(row[3]),
            due_at=_dt(row[4]),
            state=StageState(row[5]),
            job_id=row[6],
            external_message_id=row[7],
            error=row[8],
            sent_count=row[9],
            failed_count=row[10],
            created_at=_dt(row[11]),
            started_at=_dt(row[12]),
            finished_at=_dt(row[13]),
            late_contact_ids=_ids(row[14]) or (),
        )

    async def create_stage(self, stage: ExecutionStage) -> ExecutionStage:
        await self._write(
            f"INSERT INTO stages ({_STAGE_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(execution_id, node_id) DO NOTHING",
            (
                stage.id,
                stage.execution_id,
                stage.node_id,
                _dump_ids(stage.contact_ids),
                _ms(stage.due_at),
                stage.state.value,
                stage.job_id,
                stage.external_message_id,
                stage.error,
                stage.sent_count,
                stage.failed_count,
                _ms(stage.created_at),
                _ms(stage.started_at),
                _ms(stage.finished_at),
                _dump_ids(stage.late_contact_ids),
            ),
        )
        stored = await self.find_stage(stage.execution_id, stage.node_id)
        if stored is None:
            raise StorageError(f"Stage vanished after insert: {stage.node_id}")
        return stored

    async def get_stage(self, stage_id: str) -> ExecutionStage | None:
        row = await self._fetchone(f"SELECT {_STAGE_COLUMNS} FROM stages WHERE id = ?", (stage_id,))
        return self._row_to_stage(row) if row else None

    async def find_stage(self, execution_id: str, node_id: str) -> ExecutionStage | None:
        row = await self._fetchone(
            f"SELECT {_STAGE_COLUMNS} FROM stages WHERE execution_id = ? AND node_id = ?",
            (execution_id, node_id),
        )
        return self._row_to_stage(row) if row else None

    async def list_stages(self, execution_id: str) -> list[ExecutionStage]:
        rows = await self._fetchall(
            f"SELECT {_STAGE_COLUMNS} FROM stages WHERE execution_id = ? "
            "ORDER BY created_at, id",
            (execution_id,),
        )
        return [self._row_to_stage(r) for r in rows]

    async def assign_stage_contacts(self, stage_id: str, contact_ids: Sequence[str]) -> bool:
        rowcount = await self._write(
            "UPDATE stages SET contact_ids = ? WHERE id = ? AND state = 'pending'",
            (_dump_ids(contact_ids), stage_id),
        )
        if rowcount == 0:
            await self._require("stages", "id", stage_id)
        return rowcount > 0

    async def add_late_contacts(
        self, stage_id: str, contact_ids: Sequence[str]
    ) -> tuple[str, ...]:
        self._check_connected()
        async with self._lock:
            try:
                async with self._connection.execute(
                    "SELECT late_contact_ids FROM stages WHERE id = ?", (stage_id,)
                ) as cursor:
                    row = await cursor.fetchone()
                if row is None:
                    raise StorageError(f"stages row not found: {stage_id}")
                recorded = _ids(row[0]) or ()
                added = tuple(cid for cid in dict.fromkeys(contact_ids) if cid not in recorded)
                if added:
                    await self._connection.execute(
                        "UPDATE stages SET late_contact_ids = ? WHERE id = ?",
                        (_dump_ids((*recorded, *added)), stage_id),
                    )
                    await self._connection.commit()
                return added
            except sqlite3.Error as e:
                raise StorageError(f"Write failed: {e}") from e

    async def claim_stage(
        self,
        stage_id: str,
        job_id: str,
        now: datetime,
        contact_ids: Sequence[str] | None = None,
    ) -> bool:
        rowcount = await self._write(
            """
            UPDATE stages
            SET state = 'executing',
                job_id = ?,
                started_at = ?,
                contact_ids = COALESCE(?, contact_ids)
            WHERE id = ? AND state = 'pending'
            """,
            (job_id, _ms(now), _dump_ids(contact_ids), stage_id),
        )
        if rowcount == 0:
            await self._require("stages", "id", stage_id)
        return rowcount > 0

    async def finish_stage(
        self,
        stage_id: str,
        state: StageState,
        now: datetime,
        *,
        error: str | None = None,
        external_message_id: str | None = None,
        sent_count: int = 0,
        failed_count: int = 0,
    ) -> bool:
        if not state.is_terminal:
            raise ValueError(f"finish_stage needs a terminal state, got {state}")
        rowcount = await self._write(
            """
            UPDATE stages
            SET state = ?, finished_at = ?, error = ?, external_message_id = ?,
                sent_count = ?, failed_count = ?
            WHERE id = ? AND state = 'executing'
            """,
            (
                state.value,
                _ms(now),
                error,
                external_message_id,
                sent_count,
                failed_count,
                stage_id,
            ),
        )
        if rowcount == 0:
            await self._require("stages", "id", stage_id)
        return rowcount > 0

    async def reassign_stage_job(self, stage_id: str, job_id: str) -> bool:
        rowcount = await self._write(
            "UPDATE stages SET job_id = ? WHERE id = ? AND state = 'executing'",
            (job_id, stage_id),
        )
        return rowcount > 0

    async def list_stuck_stages(self, started_before: datetime) -> list[ExecutionStage]:
        rows = await self._fetchall(
            f"SELECT {_STAGE_COLUMNS} FROM stages "
            "WHERE state = 'executing' AND started_at < ? ORDER BY started_at, id",
            (_ms(started_before),),
        )
        return [self._row_to_stage(r) for r in rows]

    # ------------------------------------------------------------------
    # Condition evaluations
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_evaluation(row: tuple) -> ConditionEvaluation:
        return ConditionEvaluation(
            id=row[0],
            execution_id=row[1],
            stage_id=row[2],
            node_id=row[3],
            metric_param=row[4],
            operator=row[5],
            threshold=row[6],
            yes_contacts=_ids(row[7]) or (),
            no_contacts=_ids(row[8]) or (),
            missing_count=row[9],
            result=ConditionResult(row[10]),
            evaluated_at=_dt(row[11]),
        )

    async def record_condition_evaluation(
        self, evaluation: ConditionEvaluation
    ) -> ConditionEvaluation:
        await self._write(
            f"INSERT INTO condition_evaluations ({_EVALUATION_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(execution_id, node_id) DO NOTHING",
            (
                evaluation.id,
                evaluation.execution_id,
                evaluation.stage_id,
                evaluation.node_id,
                evaluation.metric_param,
                evaluation.operator,
                evaluation.threshold,
                _dump_ids(evaluation.yes_contacts),
                _dump_ids(evaluation.no_contacts),
                evaluation.missing_count,
                evaluation.result.value,
                _ms(evaluation.evaluated_at),
            ),
        )
        stored = await self.get_condition_evaluation(evaluation.execution_id, evaluation.node_id)
        if stored is None:
            raise StorageError(f"Condition evaluation vanished after insert: {evaluation.node_id}")
        return stored

    async def get_condition_evaluation(
        self, execution_id: str, node_id: str
    ) -> ConditionEvaluation | None:
        row = await self._fetchone(
            f"SELECT {_EVALUATION_COLUMNS} FROM condition_evaluations "
            "WHERE execution_id = ? AND node_id = ?",
            (execution_id, node_id),
        )
        return self._row_to_evaluation(row) if row else None

    async def list_condition_evaluations(self, execution_id: str) -> list[ConditionEvaluation]:
        rows = await self._fetchall(
            f"SELECT {_EVALUATION_COLUMNS} FROM condition_evaluations "
            "WHERE execution_id = ? ORDER BY evaluated_at, id",
            (execution_id,),
        )
        return [self._row_to_evaluation(r) for r in rows]

    # ------------------------------------------------------------------
    # Send records
    # ------------------------------------------------------------------

    async def record_send(self, record: SendRecord) -> None:
        await self._write(
            f"INSERT INTO send_records ({_SEND_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                record.id,
                record.stage_id,
                record.execution_id,
                record.contact_id,
                record.channel.value,
                int(record.success),
                record.provider_message_id,
                record.error,
                record.cost,
                _ms(record.sent_at),
            ),
        )

    async def list_sends(self, stage_id: str) -> list[SendRecord]:
        rows = await self._fetchall(
            f"SELECT {_SEND_COLUMNS} FROM send_records WHERE stage_id = ? ORDER BY sent_at, id",
            (stage_id,),
        )
        return [
            SendRecord(
                id=r[0],
                stage_id=r[1],
                execution_id=r[2],
                contact_id=r[3],
                channel=Channel(r[4]),
                success=bool(r[5]),
                provider_message_id=r[6],
                error=r[7],
                cost=r[8],
                sent_at=_dt(r[9]),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Job ledger
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_job(row: tuple) -> DispatchedJob:
        kind = JobKind(row[1])
        return DispatchedJob(
            job_id=row[0],
            payload=payload_from_dict(kind, json.loads(row[2])),
            state=JobState(row[3]),
            attempts=row[4],
            error=row[5],
            locked_by=row[6],
            available_at=_dt(row[7]),
            created_at=_dt(row[8]),
            updated_at=_dt(row[9]),
        )

    async def enqueue_job(self, job: DispatchedJob) -> str:
        self._check_connected()
        async with self._lock:
            try:
                await self._connection.execute(
                    f"INSERT INTO jobs ({_JOB_COLUMNS}, execution_id) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        job.job_id,
                        job.kind.value,
                        json.dumps(payload_to_dict(job.payload)),
                        job.state.value,
                        job.attempts,
                        job.error,
                        job.locked_by,
                        _ms(job.available_at),
                        _ms(job.created_at),
                        _ms(job.updated_at),
                        job.execution_id,
                    ),
                )
                await self._connection.commit()
            except sqlite3.IntegrityError as e:
                raise StorageError(f"Job already exists: {job.job_id}") from e
        return job.job_id

    async def claim_job(self, worker_id: str, now: datetime) -> DispatchedJob | None:
        """Claim the oldest available job.

        Design Pattern: Optimistic Concurrency Control
        The UPDATE only matches a row still in a claimable state, so two
        workers can never both claim it.
        """
        self._check_connected()
        now_ms = _ms(now)
        async with self._lock:
            try:
                cursor = await self._connection.execute(
                    f"""
                    UPDATE jobs
                    SET state = 'processing',
                        locked_by = ?,
                        attempts = attempts + 1,
                        updated_at = ?
                    WHERE job_id = (
                        SELECT job_id FROM jobs
                        WHERE state IN ('queued', 'retried') AND available_at <= ?
                        ORDER BY available_at, created_at, job_id
                        LIMIT 1
                    )
                    AND state IN ('queued', 'retried')
                    RETURNING {_JOB_COLUMNS}
                    """,
                    (worker_id, now_ms, now_ms),
                )
                row = await cursor.fetchone()
                await cursor.close()
                await self._connection.commit()
            except sqlite3.Error as e:
                raise StorageError(f"Failed to claim job: {e}") from e
        return self._row_to_job(row) if row else None

    async def get_job(self, job_id: str) -> DispatchedJob | None:
        row = await self._fetchone(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE job_id = ?", (job_id,))
        return self._row_to_job(row) if row else None

    async def complete_job(self, job_id: str, now: datetime, note: str | None = None) -> None:
        rowcount = await self._write(
            "UPDATE jobs SET state = 'completed', locked_by = NULL, error = ?, updated_at = ? "
            "WHERE job_id = ?",
            (note, _ms(now), job_id),
        )
        if rowcount == 0:
            raise StorageError(f"Job not found: {job_id}")

    async def defer_job(
        self,
        job_id: str,
        error: str,
        available_at: datetime,
        now: datetime,
        release_attempt: bool = False,
    ) -> None:
        rowcount = await self._write(
            """
            UPDATE jobs
            SET state = 'retried',
                locked_by = NULL,
                error = ?,
                available_at = ?,
                updated_at = ?,
                attempts = CASE WHEN ? AND attempts > 0 THEN attempts - 1 ELSE attempts END
            WHERE job_id = ?
            """,
            (error, _ms(available_at), _ms(now), int(release_attempt), job_id),
        )
        if rowcount == 0:
            raise StorageError(f"Job not found: {job_id}")

    async def fail_job(self, job_id: str, error: str, now: datetime) -> None:
        rowcount = await self._write(
            "UPDATE jobs SET state = 'failed', locked_by = NULL, error = ?, updated_at = ? "
            "WHERE job_id = ?",
            (error, _ms(now), job_id),
        )
        if rowcount == 0:
            raise StorageError(f"Job not found: {job_id}")

    async def list_jobs(
        self, state: JobState | None = None, execution_id: str | None = None
    ) -> list[DispatchedJob]:
        clauses = []
        params: list = []
        if state is not None:
            clauses.append("state = ?")
            params.append(state.value)
        if execution_id is not None:
            clauses.append("execution_id = ?")
            params.append(execution_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._fetchall(
            f"SELECT {_JOB_COLUMNS} FROM jobs {where} ORDER BY created_at, job_id", params
        )
        return [self._row_to_job(r) for r in rows]

    @staticmethod
    def _failed_filter(job_ids: Sequence[str] | None) -> tuple[str, list]:
        if job_ids is None:
            return "state = 'failed'", []
        ids = list(job_ids)
        if not ids:
            return "0", []
        placeholders = ", ".join("?" for _ in ids)
        return f"state = 'failed' AND job_id IN ({placeholders})", ids

    async def requeue_failed_jobs(
        self, now: datetime, job_ids: Sequence[str] | None = None
    ) -> int:
        where, params = self._failed_filter(job_ids)
        now_ms = _ms(now)
        return await self._write(
            "UPDATE jobs SET state = 'queued', attempts = 0, available_at = ?, updated_at = ? "
            f"WHERE {where}",
            (now_ms, now_ms, *params),
        )

    async def purge_failed_jobs(self, job_ids: Sequence[str] | None = None) -> int:
        where, params = self._failed_filter(job_ids)
        return await self._write(f"DELETE FROM jobs WHERE {where}", params)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def reset(self) -> None:
        """Clear all data (for testing/demos)."""
        self._check_connected()
        async with self._lock:
            for table in (
                "flows",
                "executions",
                "stages",
                "condition_evaluations",
                "send_records",
                "jobs",
            ):
                await self._connection.execute(f"DELETE FROM {table}")
            await self._connection.commit()

    async def close(self) -> None:
        """Close the connection."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
