"""Registry of live workflows and the operations exposed to API callers."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import re
from datetime import datetime
from typing import Any, Awaitable, Dict, List, Optional, Set, Union
from uuid import uuid4

from .auth import AccessClaims, AccessTokenSigner
from .config import SignalflowConfig
from .contracts import ConnectorOutput, OperationSchema, WorkflowSchema
from .errors import (
    InvalidParamsError,
    PermissionDeniedError,
    RequestTimeoutError,
    WorkflowNotFoundError,
)
from .persistence import (
    ExecutionRecord,
    ExecutionSummary,
    InMemoryWorkflowStore,
    WorkflowRecord,
    get_store,
)
from .runtime import RuntimeContext, RuntimeWorkflow, run_single_action
from .schema import ConnectorSchemaResolver
from .tracking import Tracker
from .transports import ChannelFactory

logger = logging.getLogger(__name__)

# https://github.com/ChainAgnostic/CAIPs/blob/master/CAIPs/caip-10.md
CAIP10_ACCOUNT_ID = re.compile(r"^[-a-z0-9]{3,8}:[-a-zA-Z0-9]{1,32}:[a-zA-Z0-9]{1,64}$")
STAGING_SOURCE_PREFIX = "urn:grindery-staging:"
STAGING_KEY_PREFIX = "staging-"


def verify_account_id(account_id: Optional[str]) -> str:
    if not isinstance(account_id, str) or not CAIP10_ACCOUNT_ID.match(account_id):
        raise InvalidParamsError("Invalid CAIP-10 account ID")
    return account_id


def workflow_environment(key: str) -> str:
    return "staging" if key.startswith(STAGING_KEY_PREFIX) else "production"


def _describe(workflow: WorkflowSchema) -> Dict[str, Any]:
    return {
        "source": workflow.source or "unknown",
        "title": workflow.title,
        "enabled": workflow.enabled,
        "triggers": [f"{workflow.trigger.connector}/{workflow.trigger.operation}"],
        "actions": [f"{a.connector}/{a.operation}" for a in workflow.actions],
    }


class WorkflowManager:
    """Own the ``RuntimeWorkflow`` of every enabled workflow.

    CRUD operations persist through the store and keep the live runtimes in
    step: an update replaces the runtime, turning a workflow off or deleting
    it stops the runtime.
    """

    def __init__(self, context: RuntimeContext) -> None:
        self.context = context
        self.store = context.store
        self._workflows: Dict[str, RuntimeWorkflow] = {}
        self._tasks: Set[asyncio.Task] = set()

    @classmethod
    def from_config(
        cls,
        config: SignalflowConfig,
        *,
        tracker: Optional[Tracker] = None,
        channel_factory: Optional[ChannelFactory] = None,
    ) -> "WorkflowManager":
        context = RuntimeContext(
            store=get_store(config.database_url, config=config),
            resolver=ConnectorSchemaResolver.from_config(config.schemas),
            signer=AccessTokenSigner(config.master_key) if config.master_key else None,
            tracker=tracker or Tracker(),
            settings=config.runtime,
            channel_factory=channel_factory,
        )
        return cls(context)

    # ------------------------------------------------------------------
    # Runtime registry
    def get_runtime(self, key: str) -> Optional[RuntimeWorkflow]:
        return self._workflows.get(key)

    @property
    def active_keys(self) -> List[str]:
        return list(self._workflows)

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Failed to start workflow: {exc}")
            self.context.error_sink(exc)

    def _load(
        self,
        key: str,
        workflow: WorkflowSchema,
        account_id: str,
        workspace_key: Optional[str],
    ) -> RuntimeWorkflow:
        self._stop(key)
        runtime = RuntimeWorkflow(
            key,
            workflow,
            account_id,
            workflow_environment(key),
            self.context,
            workspace=workspace_key,
        )
        self._workflows[key] = runtime
        self._spawn(runtime.start())
        return runtime

    def _stop(self, key: str) -> None:
        runtime = self._workflows.pop(key, None)
        if runtime is not None:
            runtime.stop()

    async def load_all(self) -> int:
        """Start a runtime for every enabled workflow in the store."""
        records = await self.store.list_workflows(enabled=True)
        for record in records:
            self._load(
                record.key, record.workflow, record.user_account_id, record.workspace_key
            )
        logger.info(f"Loaded {len(records)} workflows")
        return len(records)

    async def shutdown(self) -> None:
        runtimes = list(self._workflows.values())
        self._workflows.clear()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await asyncio.gather(*(r.aclose() for r in runtimes))

    # ------------------------------------------------------------------
    # Permissions
    @staticmethod
    def _check_workspace(user: AccessClaims, workspace_key: str) -> None:
        if user.workspace != workspace_key:
            raise PermissionDeniedError(f"No access to workspace: {workspace_key}")

    async def _fetch_with_permission(self, key: str, user: AccessClaims) -> WorkflowRecord:
        record = await self.store.get_workflow(key)
        if record is None:
            raise WorkflowNotFoundError(f"Workflow not found: {key}")
        if record.workspace_key:
            self._check_workspace(user, record.workspace_key)
        elif record.user_account_id != user.sub:
            raise PermissionDeniedError("User has no permission to change the workflow")
        return record

    # ------------------------------------------------------------------
    # Workflows
    async def create_workflow(
        self,
        user: AccessClaims,
        workflow: Union[WorkflowSchema, Dict[str, Any]],
        workspace_key: Optional[str] = None,
    ) -> str:
        account_id = verify_account_id(user.sub)
        workflow = WorkflowSchema.model_validate(workflow)
        if workspace_key:
            self._check_workspace(user, workspace_key)
        key = str(uuid4())
        if (workflow.source or "").startswith(STAGING_SOURCE_PREFIX):
            key = STAGING_KEY_PREFIX + key
        await self.store.create_workflow(
            WorkflowRecord(
                key=key,
                user_account_id=account_id,
                workspace_key=workspace_key or None,
                workflow=workflow,
                enabled=workflow.enabled,
            )
        )
        if workflow.enabled:
            self._load(key, workflow, account_id, workspace_key or None)
        self.context.tracker.track(
            account_id,
            "Create Workflow",
            {"workflow": key, "workspace": workspace_key, "role": user.role, **_describe(workflow)},
        )
        return key

    async def update_workflow(
        self,
        user: AccessClaims,
        key: str,
        workflow: Union[WorkflowSchema, Dict[str, Any]],
    ) -> str:
        account_id = verify_account_id(user.sub)
        if not key:
            raise InvalidParamsError("Missing key")
        workflow = WorkflowSchema.model_validate(workflow)
        existing = await self._fetch_with_permission(key, user)
        await self.store.update_workflow(key, workflow, workflow.enabled)
        if workflow.enabled:
            self._load(key, workflow, account_id, existing.workspace_key)
        else:
            self._stop(key)
        self.context.tracker.track(
            account_id,
            "Update Workflow",
            {
                "workflow": key,
                "workspace": existing.workspace_key,
                "role": user.role,
                **_describe(workflow),
            },
        )
        return key

    async def delete_workflow(self, user: AccessClaims, key: str) -> bool:
        account_id = verify_account_id(user.sub)
        existing = await self._fetch_with_permission(key, user)
        deleted = await self.store.delete_workflow(key)
        self._stop(key)
        self.context.tracker.track(
            account_id,
            "Delete Workflow",
            {
                "workflow": key,
                "workspace": existing.workspace_key,
                "role": user.role,
                "source": existing.workflow.source or "unknown",
            },
        )
        return deleted

    async def get_workflow(self, user: AccessClaims, key: str) -> WorkflowRecord:
        verify_account_id(user.sub)
        return await self._fetch_with_permission(key, user)

    async def list_workflows(
        self, user: AccessClaims, workspace_key: Optional[str] = None
    ) -> List[WorkflowRecord]:
        """Workflows of a workspace, or the caller's own workflows outside any workspace."""
        account_id = verify_account_id(user.sub)
        if workspace_key:
            self._check_workspace(user, workspace_key)
            return await self.store.list_workflows(workspace_key=workspace_key)
        records = await self.store.list_workflows(user_account_id=account_id)
        return [r for r in records if not r.workspace_key]

    # ------------------------------------------------------------------
    # Execution log
    async def get_workflow_executions(
        self,
        user: AccessClaims,
        workflow_key: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[ExecutionSummary]:
        verify_account_id(user.sub)
        if not workflow_key:
            raise InvalidParamsError("Missing workflowKey")
        await self._fetch_with_permission(workflow_key, user)
        return await self.store.list_executions(
            workflow_key, since=since, until=until, limit=limit or 100
        )

    async def get_execution_log(
        self, user: AccessClaims, execution_id: str
    ) -> List[ExecutionRecord]:
        verify_account_id(user.sub)
        if not execution_id:
            raise InvalidParamsError("Missing executionId")
        records = await self.store.get_execution_log(execution_id)
        if records:
            await self._fetch_with_permission(records[0].workflow_key, user)
        return records

    # ------------------------------------------------------------------
    # Interactive testing
    async def test_action(
        self,
        user: AccessClaims,
        step: Union[OperationSchema, Dict[str, Any]],
        input: Dict[str, Any],
        environment: Optional[str] = None,
    ) -> Any:
        """Run one action in dry-run mode and return its output."""
        account_id = verify_account_id(user.sub)
        step = OperationSchema.model_validate(step)
        self.context.tracker.track(
            account_id,
            "Test Action",
            {"connector": step.connector, "action": step.operation, "environment": environment},
        )
        return await run_single_action(
            self.context,
            step=step,
            input=input,
            environment=environment or "production",
            user=user,
            dry_run=True,
        )

    async def test_trigger(
        self,
        user: AccessClaims,
        trigger: Union[OperationSchema, Dict[str, Any]],
        environment: Optional[str] = None,
        timeout: float = 60.0,
    ) -> Any:
        """Subscribe to ``trigger`` and return the payload of the first signal.

        The subscription uses a scratch store so that no execution records or
        trigger state leak into the real one.
        """
        account_id = verify_account_id(user.sub)
        trigger = OperationSchema.model_validate(trigger)
        self.context.tracker.track(
            account_id,
            "Test Trigger",
            {"connector": trigger.connector, "trigger": trigger.operation, "environment": environment},
        )
        received: asyncio.Future = asyncio.get_running_loop().create_future()

        async def capture(_: RuntimeWorkflow, signal: ConnectorOutput) -> None:
            if not received.done():
                received.set_result(signal.payload)

        runtime = RuntimeWorkflow(
            f"test-{uuid4()}",
            WorkflowSchema(trigger=trigger),
            account_id,
            environment or "production",
            dataclasses.replace(self.context, store=InMemoryWorkflowStore()),
            workspace=user.workspace,
            on_signal=capture,
        )
        starter = asyncio.ensure_future(runtime.start())
        try:
            return await asyncio.wait_for(received, timeout)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(f"No signal received within {timeout}s") from None
        finally:
            starter.cancel()
            await asyncio.gather(starter, return_exceptions=True)
            await runtime.aclose()
