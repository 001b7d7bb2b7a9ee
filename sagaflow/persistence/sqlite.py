"""SQLite implementation of the workflow state repository."""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from .models import WAITING_STATUSES, WorkflowInstanceState, WorkflowStateInfo, WorkflowStatus
from .repository import WorkflowStateRepository, dump_state_json, load_state_json

_INFO_COLUMNS = (
    "workflow_instance_id, workflow_id, status, waiting_for_signal, "
    "signal_timeout_at, last_updated_at, context_type, definition_descriptor, version"
)


class SQLiteWorkflowRepository(WorkflowStateRepository):
    """Persist workflow state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = asyncio.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_instances (
                workflow_instance_id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                waiting_for_signal TEXT,
                signal_timeout_at TEXT,
                last_updated_at TEXT,
                context_type TEXT,
                definition_descriptor TEXT,
                version INTEGER NOT NULL DEFAULT 0,
                state TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE INDEX IF NOT EXISTS ix_workflow_instances_status
            ON workflow_instances (status)
            """
        )
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()
        return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    @staticmethod
    def _columns(state: WorkflowInstanceState) -> tuple:
        return (
            state.workflow_id,
            state.status.value,
            state.waiting_for_signal,
            state.signal_timeout_at.isoformat() if state.signal_timeout_at else None,
            state.last_updated_at.isoformat(),
            state.context_type,
            state.definition_descriptor,
            state.version,
            dump_state_json(state),
        )

    @staticmethod
    def _to_info(row: sqlite3.Row) -> WorkflowStateInfo:
        return WorkflowStateInfo(
            workflow_instance_id=row["workflow_instance_id"],
            workflow_id=row["workflow_id"],
            status=WorkflowStatus(row["status"]),
            waiting_for_signal=row["waiting_for_signal"],
            signal_timeout_at=(
                datetime.fromisoformat(row["signal_timeout_at"])
                if row["signal_timeout_at"]
                else None
            ),
            last_updated_at=(
                datetime.fromisoformat(row["last_updated_at"])
                if row["last_updated_at"]
                else None
            ),
            context_type=row["context_type"] or "",
            definition_descriptor=row["definition_descriptor"] or "",
            version=row["version"],
        )

    # ------------------------------------------------------------------
    # Repository API
    async def save_workflow_state(self, state: WorkflowInstanceState) -> None:
        async with self._lock:
            await asyncio.to_thread(
                self._execute,
                """
                INSERT INTO workflow_instances (
                    workflow_instance_id, workflow_id, status, waiting_for_signal,
                    signal_timeout_at, last_updated_at, context_type,
                    definition_descriptor, version, state
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                state.workflow_instance_id,
                *self._columns(state),
            )

    async def get_workflow_state(
        self, workflow_instance_id: str, context_type: Optional[type] = None
    ) -> WorkflowInstanceState | None:
        async with self._lock:
            row = await asyncio.to_thread(
                self._fetchone,
                "SELECT state FROM workflow_instances WHERE workflow_instance_id = ?",
                workflow_instance_id,
            )
        if not row:
            return None
        return load_state_json(row["state"], context_type)

    async def update_workflow_state(
        self, state: WorkflowInstanceState, expected_version: int
    ) -> bool:
        async with self._lock:
            updated = await asyncio.to_thread(
                self._execute,
                """
                UPDATE workflow_instances
                SET workflow_id = ?, status = ?, waiting_for_signal = ?,
                    signal_timeout_at = ?, last_updated_at = ?, context_type = ?,
                    definition_descriptor = ?, version = ?, state = ?
                WHERE workflow_instance_id = ? AND version = ?
                """,
                *self._columns(state),
                state.workflow_instance_id,
                expected_version,
            )
        return updated == 1

    async def delete_workflow_state(self, workflow_instance_id: str) -> bool:
        async with self._lock:
            deleted = await asyncio.to_thread(
                self._execute,
                "DELETE FROM workflow_instances WHERE workflow_instance_id = ?",
                workflow_instance_id,
            )
        return deleted == 1

    async def get_workflow_state_info(
        self, workflow_instance_id: str
    ) -> WorkflowStateInfo | None:
        async with self._lock:
            row = await asyncio.to_thread(
                self._fetchone,
                f"SELECT {_INFO_COLUMNS} FROM workflow_instances WHERE workflow_instance_id = ?",
                workflow_instance_id,
            )
        return self._to_info(row) if row else None

    async def get_waiting_workflows(
        self, signal_name: Optional[str] = None
    ) -> list[WorkflowStateInfo]:
        statuses = sorted(s.value for s in WAITING_STATUSES)
        query = (
            f"SELECT {_INFO_COLUMNS} FROM workflow_instances "
            f"WHERE status IN ({', '.join('?' for _ in statuses)})"
        )
        params: list[Any] = list(statuses)
        if signal_name is not None:
            query += " AND waiting_for_signal = ?"
            params.append(signal_name)
        async with self._lock:
            rows = await asyncio.to_thread(self._fetchall, query + " ORDER BY signal_timeout_at", *params)
        return [self._to_info(r) for r in rows]

    async def list_workflows(self) -> list[WorkflowStateInfo]:
        async with self._lock:
            rows = await asyncio.to_thread(
                self._fetchall,
                f"SELECT {_INFO_COLUMNS} FROM workflow_instances ORDER BY last_updated_at",
            )
        return [self._to_info(r) for r in rows]
