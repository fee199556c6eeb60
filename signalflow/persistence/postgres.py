"""PostgreSQL implementation of the workflow store."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

import asyncpg

from ..contracts import WorkflowSchema
from .models import (
    TRIGGER_STEP_INDEX,
    ExecutionRecord,
    ExecutionSummary,
    WorkflowRecord,
    utcnow,
)
from .repository import WorkflowStore


def _dump(value: Any) -> str | None:
    return None if value is None else json.dumps(value)


def _load(value: Any) -> Any:
    # asyncpg hands JSONB columns back as text unless a codec is installed
    return json.loads(value) if isinstance(value, str) else value


class PostgresWorkflowStore(WorkflowStore):
    """Persist workflows, execution logs and states using PostgreSQL."""

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
            CREATE TABLE IF NOT EXISTS workflows (
                key TEXT PRIMARY KEY,
                user_account_id TEXT NOT NULL,
                workspace_key TEXT,
                workflow JSONB NOT NULL,
                enabled BOOLEAN NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                id SERIAL PRIMARY KEY,
                workflow_key TEXT NOT NULL,
                session_id TEXT,
                execution_id TEXT NOT NULL,
                step_index INTEGER NOT NULL,
                input JSONB,
                output JSONB,
                error TEXT,
                started_at TIMESTAMPTZ NOT NULL,
                ended_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS executions_by_workflow ON executions (workflow_key, started_at)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS executions_by_id ON executions (execution_id, step_index)"
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS states (
                workflow_key TEXT NOT NULL,
                step_index INTEGER NOT NULL,
                state_key TEXT NOT NULL,
                value JSONB NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                PRIMARY KEY (workflow_key, step_index, state_key)
            )
            """
        )

    @staticmethod
    def _workflow_from_row(row: asyncpg.Record) -> WorkflowRecord:
        return WorkflowRecord(
            key=row["key"],
            user_account_id=row["user_account_id"],
            workspace_key=row["workspace_key"],
            workflow=WorkflowSchema.model_validate(_load(row["workflow"])),
            enabled=row["enabled"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # ------------------------------------------------------------------
    async def create_workflow(self, record: WorkflowRecord) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO workflows (key, user_account_id, workspace_key, workflow, enabled, created_at, updated_at) VALUES ($1, $2, $3, $4, $5, $6, $7)",
                record.key,
                record.user_account_id,
                record.workspace_key,
                json.dumps(record.workflow.model_dump(mode="json", by_alias=True, exclude_none=True)),
                record.enabled,
                record.created_at,
                record.updated_at,
            )
        finally:
            await conn.close()

    async def update_workflow(
        self, key: str, workflow: WorkflowSchema, enabled: bool
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE workflows SET workflow = $1, enabled = $2, updated_at = $3 WHERE key = $4",
                json.dumps(workflow.model_dump(mode="json", by_alias=True, exclude_none=True)),
                enabled,
                utcnow(),
                key,
            )
        finally:
            await conn.close()

    async def get_workflow(self, key: str) -> WorkflowRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT * FROM workflows WHERE key = $1", key)
        finally:
            await conn.close()
        return self._workflow_from_row(row) if row else None

    async def list_workflows(
        self,
        user_account_id: Optional[str] = None,
        workspace_key: Optional[str] = None,
        enabled: Optional[bool] = None,
    ) -> list[WorkflowRecord]:
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("user_account_id", user_account_id),
            ("workspace_key", workspace_key),
            ("enabled", enabled),
        ):
            if value is not None:
                params.append(value)
                clauses.append(f"{column} = ${len(params)}")
        query = "SELECT * FROM workflows"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at"
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [self._workflow_from_row(r) for r in rows]

    async def delete_workflow(self, key: str) -> bool:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute("DELETE FROM executions WHERE workflow_key = $1", key)
                await conn.execute("DELETE FROM states WHERE workflow_key = $1", key)
                status = await conn.execute("DELETE FROM workflows WHERE key = $1", key)
        finally:
            await conn.close()
        return status != "DELETE 0"

    # ------------------------------------------------------------------
    async def insert_execution(self, record: ExecutionRecord) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO executions (workflow_key, session_id, execution_id, step_index, input, output, error, started_at, ended_at) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)",
                record.workflow_key,
                record.session_id,
                record.execution_id,
                record.step_index,
                _dump(record.input),
                _dump(record.output),
                record.error,
                record.started_at,
                record.ended_at,
            )
        finally:
            await conn.close()

    async def complete_execution_step(
        self,
        execution_id: str,
        step_index: int,
        output: Any = None,
        error: Optional[str] = None,
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE executions
                SET output = $1, error = $2, ended_at = $3
                WHERE execution_id = $4 AND step_index = $5
                """,
                _dump(output),
                error,
                utcnow(),
                execution_id,
                step_index,
            )
        finally:
            await conn.close()

    async def list_executions(
        self,
        workflow_key: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[ExecutionSummary]:
        query = "SELECT execution_id, MIN(started_at) AS started_at FROM executions WHERE workflow_key = $1"
        params: list[Any] = [workflow_key]
        if since is not None:
            params.append(since)
            query += f" AND started_at >= ${len(params)}"
        if until is not None:
            params.append(until)
            query += f" AND started_at <= ${len(params)}"
        params.append(limit)
        query += f" GROUP BY execution_id ORDER BY started_at DESC LIMIT ${len(params)}"
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [
            ExecutionSummary(execution_id=r["execution_id"], started_at=r["started_at"])
            for r in rows
        ]

    async def get_execution_log(self, execution_id: str) -> list[ExecutionRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT * FROM executions WHERE execution_id = $1 ORDER BY step_index, id",
                execution_id,
            )
        finally:
            await conn.close()
        return [
            ExecutionRecord(
                workflow_key=r["workflow_key"],
                session_id=r["session_id"],
                execution_id=r["execution_id"],
                step_index=r["step_index"],
                input=_load(r["input"]),
                output=_load(r["output"]),
                error=r["error"],
                started_at=r["started_at"],
                ended_at=r["ended_at"],
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    async def get_states(
        self, workflow_key: str, step_index: int = TRIGGER_STEP_INDEX
    ) -> dict[str, Any]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT state_key, value FROM states WHERE workflow_key = $1 AND step_index = $2",
                workflow_key,
                step_index,
            )
        finally:
            await conn.close()
        return {r["state_key"]: _load(r["value"]) for r in rows}

    async def get_state(
        self, workflow_key: str, state_key: str, step_index: int = TRIGGER_STEP_INDEX
    ) -> Any:
        conn = await self._connect()
        try:
            value = await conn.fetchval(
                "SELECT value FROM states WHERE workflow_key = $1 AND step_index = $2 AND state_key = $3",
                workflow_key,
                step_index,
                state_key,
            )
        finally:
            await conn.close()
        return _load(value)

    async def set_state(
        self,
        workflow_key: str,
        state_key: str,
        value: Any,
        step_index: int = TRIGGER_STEP_INDEX,
    ) -> None:
        now = utcnow()
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO states (workflow_key, step_index, state_key, value, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $5)
                ON CONFLICT (workflow_key, step_index, state_key)
                DO UPDATE SET value = EXCLUDED.value, updated_at = EXCLUDED.updated_at
                """,
                workflow_key,
                step_index,
                state_key,
                json.dumps(value),
                now,
            )
        finally:
            await conn.close()
