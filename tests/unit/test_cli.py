import asyncio
from datetime import datetime, timezone

from typer.testing import CliRunner

import signalflow.persistence as persistence
from signalflow.cli import app
from signalflow.contracts import WorkflowSchema
from signalflow.persistence import ExecutionRecord, InMemoryWorkflowStore, WorkflowRecord


def _setup_store() -> InMemoryWorkflowStore:
    store = InMemoryWorkflowStore()
    persistence._store_instance = store
    return store


def _record(key, title="Echo", enabled=True, account="eip155:1:0xabc", workspace=None):
    workflow = WorkflowSchema.model_validate(
        {
            "title": title,
            "trigger": {"connector": "demo", "operation": "tick"},
            "actions": [
                {"connector": "demo", "operation": "echo", "input": {"message": "{{trigger.x}}"}},
                {"connector": "demo", "operation": "count", "input": {"n": "1"}},
            ],
        }
    )
    return WorkflowRecord(
        key=key, user_account_id=account, workspace_key=workspace, workflow=workflow, enabled=enabled
    )


def test_workflow_list_command():
    store = _setup_store()
    asyncio.run(store.create_workflow(_record("wf-1", title="First")))
    asyncio.run(store.create_workflow(_record("wf-2", enabled=False, account="eip155:1:0xdef")))

    runner = CliRunner()
    result = runner.invoke(app, ["workflow", "list"])
    assert result.exit_code == 0, f"Command failed. Output: {result.stdout}"
    assert "wf-1\teip155:1:0xabc\ton\tFirst" in result.stdout
    assert "wf-2\teip155:1:0xdef\toff\tEcho" in result.stdout

    result = runner.invoke(app, ["workflow", "list", "--user", "eip155:1:0xdef"])
    assert "wf-2" in result.stdout
    assert "wf-1" not in result.stdout


def test_workflow_list_empty():
    _setup_store()
    result = CliRunner().invoke(app, ["workflow", "list"])
    assert result.exit_code == 0
    assert "No workflows found" in result.stdout


def test_workflow_show_command_and_missing():
    store = _setup_store()
    asyncio.run(store.create_workflow(_record("wf-1", workspace="ws-1")))

    runner = CliRunner()
    result = runner.invoke(app, ["workflow", "show", "wf-1"])
    assert result.exit_code == 0, f"Command failed. Output: {result.stdout}"
    assert "Workflow wf-1: on" in result.stdout
    assert "Workspace: ws-1" in result.stdout
    assert "Trigger: demo/tick" in result.stdout
    assert "- step0: demo/echo" in result.stdout
    assert "- step1: demo/count" in result.stdout

    result_missing = runner.invoke(app, ["workflow", "show", "missing-id"])
    assert result_missing.exit_code == 1
    assert "Workflow not found" in result_missing.stdout


def test_execution_commands():
    store = _setup_store()
    started = datetime(2024, 1, 1, tzinfo=timezone.utc)

    async def seed():
        await store.insert_execution(
            ExecutionRecord(
                workflow_key="wf-1",
                execution_id="ex-1",
                step_index=-1,
                output={"x": 1},
                started_at=started,
                ended_at=started,
            )
        )
        await store.insert_execution(
            ExecutionRecord(workflow_key="wf-1", execution_id="ex-1", step_index=0, input={})
        )
        await store.complete_execution_step("ex-1", 0, output={"ok": True})
        await store.insert_execution(
            ExecutionRecord(workflow_key="wf-1", execution_id="ex-1", step_index=1, input={})
        )
        await store.complete_execution_step("ex-1", 1, error="boom (code -32000)")

    asyncio.run(seed())
    runner = CliRunner()

    result = runner.invoke(app, ["execution", "list", "wf-1"])
    assert result.exit_code == 0, f"Command failed. Output: {result.stdout}"
    assert "ex-1\t2024-01-01T00:00:00+00:00" in result.stdout

    result = runner.invoke(app, ["execution", "log", "ex-1"])
    assert result.exit_code == 0, f"Command failed. Output: {result.stdout}"
    assert '- trigger: {"x": 1}' in result.stdout
    assert '- step0: {"ok": true}' in result.stdout
    assert "- step1: error: boom (code -32000)" in result.stdout

    assert "No executions found" in runner.invoke(app, ["execution", "list", "wf-2"]).stdout
    missing = runner.invoke(app, ["execution", "log", "ex-2"])
    assert missing.exit_code == 1
    assert "Execution not found" in missing.stdout
