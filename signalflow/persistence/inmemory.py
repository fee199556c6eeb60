"""In-memory implementation of the workflow store."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ..contracts import WorkflowSchema
from .models import (
    TRIGGER_STEP_INDEX,
    ExecutionRecord,
    ExecutionSummary,
    WorkflowRecord,
    WorkflowStateRecord,
    utcnow,
)
from .repository import WorkflowStore


class InMemoryWorkflowStore(WorkflowStore):
    """Store workflows, execution logs and states in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowRecord] = {}
        self._executions: List[ExecutionRecord] = []
        self._states: Dict[Tuple[str, int, str], WorkflowStateRecord] = {}

    # ------------------------------------------------------------------
    async def create_workflow(self, record: WorkflowRecord) -> None:
        if record.key in self._workflows:
            raise ValueError(f"Workflow already exists: {record.key}")
        self._workflows[record.key] = record.model_copy(deep=True)

    async def update_workflow(
        self, key: str, workflow: WorkflowSchema, enabled: bool
    ) -> None:
        wf = self._workflows.get(key)
        if wf:
            wf.workflow = workflow
            wf.enabled = enabled
            wf.updated_at = utcnow()

    async def get_workflow(self, key: str) -> WorkflowRecord | None:
        wf = self._workflows.get(key)
        return wf.model_copy(deep=True) if wf else None

    async def list_workflows(
        self,
        user_account_id: Optional[str] = None,
        workspace_key: Optional[str] = None,
        enabled: Optional[bool] = None,
    ) -> list[WorkflowRecord]:
        return [
            wf.model_copy(deep=True)
            for wf in self._workflows.values()
            if (user_account_id is None or wf.user_account_id == user_account_id)
            and (workspace_key is None or wf.workspace_key == workspace_key)
            and (enabled is None or wf.enabled == enabled)
        ]

    async def delete_workflow(self, key: str) -> bool:
        existed = self._workflows.pop(key, None) is not None
        self._executions = [r for r in self._executions if r.workflow_key != key]
        for state_key in [k for k in self._states if k[0] == key]:
            del self._states[state_key]
        return existed

    # ------------------------------------------------------------------
    async def insert_execution(self, record: ExecutionRecord) -> None:
        self._executions.append(record.model_copy(deep=True))

    async def complete_execution_step(
        self,
        execution_id: str,
        step_index: int,
        output: Any = None,
        error: Optional[str] = None,
    ) -> None:
        for record in self._executions:
            if record.execution_id == execution_id and record.step_index == step_index:
                record.output = output
                record.error = error
                record.ended_at = utcnow()
                break

    async def list_executions(
        self,
        workflow_key: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[ExecutionSummary]:
        first_seen: Dict[str, datetime] = {}
        for record in self._executions:
            if record.workflow_key != workflow_key:
                continue
            if since is not None and record.started_at < since:
                continue
            if until is not None and record.started_at > until:
                continue
            current = first_seen.get(record.execution_id)
            if current is None or record.started_at < current:
                first_seen[record.execution_id] = record.started_at
        summaries = [
            ExecutionSummary(execution_id=eid, started_at=started)
            for eid, started in first_seen.items()
        ]
        summaries.sort(key=lambda s: s.started_at, reverse=True)
        return summaries[:limit]

    async def get_execution_log(self, execution_id: str) -> list[ExecutionRecord]:
        records = [
            r.model_copy(deep=True)
            for r in self._executions
            if r.execution_id == execution_id
        ]
        records.sort(key=lambda r: r.step_index)
        return records

    # ------------------------------------------------------------------
    async def get_states(
        self, workflow_key: str, step_index: int = TRIGGER_STEP_INDEX
    ) -> dict[str, Any]:
        return {
            state.state_key: json.loads(state.value)
            for (wf_key, index, _), state in self._states.items()
            if wf_key == workflow_key and index == step_index
        }

    async def get_state(
        self, workflow_key: str, state_key: str, step_index: int = TRIGGER_STEP_INDEX
    ) -> Any:
        state = self._states.get((workflow_key, step_index, state_key))
        return json.loads(state.value) if state else None

    async def set_state(
        self,
        workflow_key: str,
        state_key: str,
        value: Any,
        step_index: int = TRIGGER_STEP_INDEX,
    ) -> None:
        key = (workflow_key, step_index, state_key)
        existing = self._states.get(key)
        if existing:
            existing.value = json.dumps(value)
            existing.updated_at = utcnow()
            return
        self._states[key] = WorkflowStateRecord(
            workflow_key=workflow_key,
            step_index=step_index,
            state_key=state_key,
            value=json.dumps(value),
        )
