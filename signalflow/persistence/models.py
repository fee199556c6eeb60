"""Data models for persisted workflows, execution logs and trigger state."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..contracts import WorkflowSchema

NIL_UUID = "00000000-0000-0000-0000-000000000000"
TRIGGER_STEP_INDEX = -1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowRecord(BaseModel):
    """A stored workflow definition and its ownership."""

    key: str
    user_account_id: str
    workspace_key: Optional[str] = None
    workflow: WorkflowSchema
    enabled: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ExecutionRecord(BaseModel):
    """One step of one workflow execution; step_index -1 is the trigger event."""

    workflow_key: str
    session_id: Optional[str] = None
    execution_id: str
    step_index: int
    input: Any = None
    output: Any = None
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None


class ExecutionSummary(BaseModel):
    execution_id: str
    started_at: datetime


class WorkflowStateRecord(BaseModel):
    """Opaque state persisted by a trigger connector."""

    workflow_key: str
    step_index: int = TRIGGER_STEP_INDEX
    state_key: str
    value: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
