"""Store abstraction over the workflows, executions and states collections."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Protocol

from ..contracts import WorkflowSchema
from .models import (
    TRIGGER_STEP_INDEX,
    ExecutionRecord,
    ExecutionSummary,
    WorkflowRecord,
)


class WorkflowStore(Protocol):
    """Protocol for workflow persistence backends."""

    async def create_workflow(self, record: WorkflowRecord) -> None:
        """Persist a new workflow."""

    async def update_workflow(
        self, key: str, workflow: WorkflowSchema, enabled: bool
    ) -> None:
        """Replace the definition of an existing workflow."""

    async def get_workflow(self, key: str) -> WorkflowRecord | None:
        """Retrieve a workflow by key."""

    async def list_workflows(
        self,
        user_account_id: Optional[str] = None,
        workspace_key: Optional[str] = None,
        enabled: Optional[bool] = None,
    ) -> list[WorkflowRecord]:
        """Return workflows matching all given filters."""

    async def delete_workflow(self, key: str) -> bool:
        """Delete a workflow with its execution log and state."""

    async def insert_execution(self, record: ExecutionRecord) -> None:
        """Append an execution log record."""

    async def complete_execution_step(
        self,
        execution_id: str,
        step_index: int,
        output: Any = None,
        error: Optional[str] = None,
    ) -> None:
        """Record the outcome of a step and stamp its end time."""

    async def list_executions(
        self,
        workflow_key: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[ExecutionSummary]:
        """Return executions of a workflow, newest first."""

    async def get_execution_log(self, execution_id: str) -> list[ExecutionRecord]:
        """Return all step records of an execution."""

    async def get_states(
        self, workflow_key: str, step_index: int = TRIGGER_STEP_INDEX
    ) -> dict[str, Any]:
        """Return all decoded state values of a workflow."""

    async def get_state(
        self, workflow_key: str, state_key: str, step_index: int = TRIGGER_STEP_INDEX
    ) -> Any:
        """Return one decoded state value, ``None`` when unset."""

    async def set_state(
        self,
        workflow_key: str,
        state_key: str,
        value: Any,
        step_index: int = TRIGGER_STEP_INDEX,
    ) -> None:
        """Insert or replace one state value."""
