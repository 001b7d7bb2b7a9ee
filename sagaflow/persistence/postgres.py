"""PostgreSQL implementation of the workflow state repository."""

from __future__ import annotations

from typing import Optional

import asyncpg

from .models import WAITING_STATUSES, WorkflowInstanceState, WorkflowStateInfo, WorkflowStatus
from .repository import WorkflowStateRepository, dump_state_json, load_state_json

_INFO_COLUMNS = (
    "workflow_instance_id, workflow_id, status, waiting_for_signal, "
    "signal_timeout_at, last_updated_at, context_type, definition_descriptor, version"
)


class PostgresWorkflowRepository(WorkflowStateRepository):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_instances (
                workflow_instance_id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                waiting_for_signal TEXT,
                signal_timeout_at TIMESTAMPTZ,
                last_updated_at TIMESTAMPTZ,
                context_type TEXT,
                definition_descriptor TEXT,
                version INTEGER NOT NULL DEFAULT 0,
                state JSONB NOT NULL
            )
            """
        )

    @staticmethod
    def _to_info(row: asyncpg.Record) -> WorkflowStateInfo:
        return WorkflowStateInfo(
            workflow_instance_id=row["workflow_instance_id"],
            workflow_id=row["workflow_id"],
            status=WorkflowStatus(row["status"]),
            waiting_for_signal=row["waiting_for_signal"],
            signal_timeout_at=row["signal_timeout_at"],
            last_updated_at=row["last_updated_at"],
            context_type=row["context_type"] or "",
            definition_descriptor=row["definition_descriptor"] or "",
            version=row["version"],
        )

    # ------------------------------------------------------------------
    async def save_workflow_state(self, state: WorkflowInstanceState) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO workflow_instances (
                    workflow_instance_id, workflow_id, status, waiting_for_signal,
                    signal_timeout_at, last_updated_at, context_type,
                    definition_descriptor, version, state
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb)
                """,
                state.workflow_instance_id,
                state.workflow_id,
                state.status.value,
                state.waiting_for_signal,
                state.signal_timeout_at,
                state.last_updated_at,
                state.context_type,
                state.definition_descriptor,
                state.version,
                dump_state_json(state),
            )
        finally:
            await conn.close()

    async def get_workflow_state(
        self, workflow_instance_id: str, context_type: Optional[type] = None
    ) -> WorkflowInstanceState | None:
        conn = await self._connect()
        try:
            raw = await conn.fetchval(
                "SELECT state::text FROM workflow_instances WHERE workflow_instance_id = $1",
                workflow_instance_id,
            )
        finally:
            await conn.close()
        if raw is None:
            return None
        return load_state_json(raw, context_type)

    async def update_workflow_state(
        self, state: WorkflowInstanceState, expected_version: int
    ) -> bool:
        conn = await self._connect()
        try:
            status = await conn.execute(
                """
                UPDATE workflow_instances
                SET workflow_id = $1, status = $2, waiting_for_signal = $3,
                    signal_timeout_at = $4, last_updated_at = $5, context_type = $6,
                    definition_descriptor = $7, version = $8, state = $9::jsonb
                WHERE workflow_instance_id = $10 AND version = $11
                """,
                state.workflow_id,
                state.status.value,
                state.waiting_for_signal,
                state.signal_timeout_at,
                state.last_updated_at,
                state.context_type,
                state.definition_descriptor,
                state.version,
                dump_state_json(state),
                state.workflow_instance_id,
                expected_version,
            )
        finally:
            await conn.close()
        return status == "UPDATE 1"

    async def delete_workflow_state(self, workflow_instance_id: str) -> bool:
        conn = await self._connect()
        try:
            status = await conn.execute(
                "DELETE FROM workflow_instances WHERE workflow_instance_id = $1",
                workflow_instance_id,
            )
        finally:
            await conn.close()
        return status == "DELETE 1"

    async def get_workflow_state_info(
        self, workflow_instance_id: str
    ) -> WorkflowStateInfo | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_INFO_COLUMNS} FROM workflow_instances WHERE workflow_instance_id = $1",
                workflow_instance_id,
            )
        finally:
            await conn.close()
        return self._to_info(row) if row else None

    async def get_waiting_workflows(
        self, signal_name: Optional[str] = None
    ) -> list[WorkflowStateInfo]:
        statuses = sorted(s.value for s in WAITING_STATUSES)
        conn = await self._connect()
        try:
            if signal_name is None:
                rows = await conn.fetch(
                    f"SELECT {_INFO_COLUMNS} FROM workflow_instances "
                    "WHERE status = ANY($1::text[]) ORDER BY signal_timeout_at",
                    statuses,
                )
            else:
                rows = await conn.fetch(
                    f"SELECT {_INFO_COLUMNS} FROM workflow_instances "
                    "WHERE status = ANY($1::text[]) AND waiting_for_signal = $2 "
                    "ORDER BY signal_timeout_at",
                    statuses,
                    signal_name,
                )
        finally:
            await conn.close()
        return [self._to_info(r) for r in rows]

    async def list_workflows(self) -> list[WorkflowStateInfo]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT {_INFO_COLUMNS} FROM workflow_instances ORDER BY last_updated_at"
            )
        finally:
            await conn.close()
        return [self._to_info(r) for r in rows]
