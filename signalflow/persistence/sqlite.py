"""SQLite implementation of the workflow store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from ..contracts import WorkflowSchema
from .models import (
    TRIGGER_STEP_INDEX,
    ExecutionRecord,
    ExecutionSummary,
    WorkflowRecord,
    utcnow,
)
from .repository import WorkflowStore


def _ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dump(value: Any) -> str | None:
    return None if value is None else json.dumps(value)


def _load(value: str | None) -> Any:
    return None if value is None else json.loads(value)


class SQLiteWorkflowStore(WorkflowStore):
    """Persist workflows, execution logs and states using SQLite."""

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
            CREATE TABLE IF NOT EXISTS workflows (
                key TEXT PRIMARY KEY,
                user_account_id TEXT NOT NULL,
                workspace_key TEXT,
                workflow TEXT NOT NULL,
                enabled INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                workflow_key TEXT NOT NULL,
                session_id TEXT,
                execution_id TEXT NOT NULL,
                step_index INTEGER NOT NULL,
                input TEXT,
                output TEXT,
                error TEXT,
                started_at TEXT NOT NULL,
                ended_at TEXT
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS executions_by_workflow "
            "ON executions (workflow_key, started_at)"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS executions_by_id "
            "ON executions (execution_id, step_index)"
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS states (
                workflow_key TEXT NOT NULL,
                step_index INTEGER NOT NULL,
                state_key TEXT NOT NULL,
                value TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (workflow_key, step_index, state_key)
            )
            """
        )
        self._conn.commit()

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

    def _delete_cascade(self, key: str) -> int:
        cur = self._conn.cursor()
        cur.execute("DELETE FROM executions WHERE workflow_key = ?", (key,))
        cur.execute("DELETE FROM states WHERE workflow_key = ?", (key,))
        cur.execute("DELETE FROM workflows WHERE key = ?", (key,))
        deleted = cur.rowcount
        self._conn.commit()
        return deleted

    async def _run(self, fn, *args: Any) -> Any:
        async with self._lock:
            return await asyncio.to_thread(fn, *args)

    @staticmethod
    def _workflow_from_row(row: sqlite3.Row) -> WorkflowRecord:
        return WorkflowRecord(
            key=row["key"],
            user_account_id=row["user_account_id"],
            workspace_key=row["workspace_key"],
            workflow=WorkflowSchema.model_validate(json.loads(row["workflow"])),
            enabled=bool(row["enabled"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    @staticmethod
    def _execution_from_row(row: sqlite3.Row) -> ExecutionRecord:
        return ExecutionRecord(
            workflow_key=row["workflow_key"],
            session_id=row["session_id"],
            execution_id=row["execution_id"],
            step_index=row["step_index"],
            input=_load(row["input"]),
            output=_load(row["output"]),
            error=row["error"],
            started_at=datetime.fromisoformat(row["started_at"]),
            ended_at=datetime.fromisoformat(row["ended_at"]) if row["ended_at"] else None,
        )

    # ------------------------------------------------------------------
    # Workflows
    async def create_workflow(self, record: WorkflowRecord) -> None:
        await self._run(
            self._execute,
            "INSERT INTO workflows (key, user_account_id, workspace_key, workflow, enabled, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            record.key,
            record.user_account_id,
            record.workspace_key,
            json.dumps(record.workflow.model_dump(mode="json", by_alias=True, exclude_none=True)),
            int(record.enabled),
            _ts(record.created_at),
            _ts(record.updated_at),
        )

    async def update_workflow(
        self, key: str, workflow: WorkflowSchema, enabled: bool
    ) -> None:
        await self._run(
            self._execute,
            "UPDATE workflows SET workflow = ?, enabled = ?, updated_at = ? WHERE key = ?",
            json.dumps(workflow.model_dump(mode="json", by_alias=True, exclude_none=True)),
            int(enabled),
            _ts(utcnow()),
            key,
        )

    async def get_workflow(self, key: str) -> WorkflowRecord | None:
        row = await self._run(
            self._fetchone, "SELECT * FROM workflows WHERE key = ?", key
        )
        return self._workflow_from_row(row) if row else None

    async def list_workflows(
        self,
        user_account_id: Optional[str] = None,
        workspace_key: Optional[str] = None,
        enabled: Optional[bool] = None,
    ) -> list[WorkflowRecord]:
        clauses: list[str] = []
        params: list[Any] = []
        if user_account_id is not None:
            clauses.append("user_account_id = ?")
            params.append(user_account_id)
        if workspace_key is not None:
            clauses.append("workspace_key = ?")
            params.append(workspace_key)
        if enabled is not None:
            clauses.append("enabled = ?")
            params.append(int(enabled))
        query = "SELECT * FROM workflows"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at"
        rows = await self._run(self._fetchall, query, *params)
        return [self._workflow_from_row(r) for r in rows]

    async def delete_workflow(self, key: str) -> bool:
        deleted = await self._run(self._delete_cascade, key)
        return deleted > 0

    # ------------------------------------------------------------------
    # Execution log
    async def insert_execution(self, record: ExecutionRecord) -> None:
        await self._run(
            self._execute,
            "INSERT INTO executions (workflow_key, session_id, execution_id, step_index, input, output, error, started_at, ended_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            record.workflow_key,
            record.session_id,
            record.execution_id,
            record.step_index,
            _dump(record.input),
            _dump(record.output),
            record.error,
            _ts(record.started_at),
            _ts(record.ended_at) if record.ended_at else None,
        )

    async def complete_execution_step(
        self,
        execution_id: str,
        step_index: int,
        output: Any = None,
        error: Optional[str] = None,
    ) -> None:
        await self._run(
            self._execute,
            """
            UPDATE executions
            SET output = ?, error = ?, ended_at = ?
            WHERE execution_id = ? AND step_index = ?
            """,
            _dump(output),
            error,
            _ts(utcnow()),
            execution_id,
            step_index,
        )

    async def list_executions(
        self,
        workflow_key: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[ExecutionSummary]:
        query = "SELECT execution_id, MIN(started_at) AS started_at FROM executions WHERE workflow_key = ?"
        params: list[Any] = [workflow_key]
        if since is not None:
            query += " AND started_at >= ?"
            params.append(_ts(since))
        if until is not None:
            query += " AND started_at <= ?"
            params.append(_ts(until))
        query += " GROUP BY execution_id ORDER BY started_at DESC LIMIT ?"
        params.append(limit)
        rows = await self._run(self._fetchall, query, *params)
        return [
            ExecutionSummary(
                execution_id=r["execution_id"],
                started_at=datetime.fromisoformat(r["started_at"]),
            )
            for r in rows
        ]

    async def get_execution_log(self, execution_id: str) -> list[ExecutionRecord]:
        rows = await self._run(
            self._fetchall,
            "SELECT * FROM executions WHERE execution_id = ? ORDER BY step_index, id",
            execution_id,
        )
        return [self._execution_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Trigger state
    async def get_states(
        self, workflow_key: str, step_index: int = TRIGGER_STEP_INDEX
    ) -> dict[str, Any]:
        rows = await self._run(
            self._fetchall,
            "SELECT state_key, value FROM states WHERE workflow_key = ? AND step_index = ?",
            workflow_key,
            step_index,
        )
        return {r["state_key"]: json.loads(r["value"]) for r in rows}

    async def get_state(
        self, workflow_key: str, state_key: str, step_index: int = TRIGGER_STEP_INDEX
    ) -> Any:
        row = await self._run(
            self._fetchone,
            "SELECT value FROM states WHERE workflow_key = ? AND step_index = ? AND state_key = ?",
            workflow_key,
            step_index,
            state_key,
        )
        return json.loads(row["value"]) if row else None

    async def set_state(
        self,
        workflow_key: str,
        state_key: str,
        value: Any,
        step_index: int = TRIGGER_STEP_INDEX,
    ) -> None:
        now = _ts(utcnow())
        await self._run(
            self._execute,
            """
            INSERT INTO states (workflow_key, step_index, state_key, value, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (workflow_key, step_index, state_key)
            DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """,
            workflow_key,
            step_index,
            state_key,
            json.dumps(value),
            now,
            now,
        )

    def close(self) -> None:
        self._conn.close()
