"""Command line interface for the signalflow orchestrator."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

import typer

from signalflow import WorkflowManager, get_store, load_config

app = typer.Typer(help="CLI for signalflow workflows")

# Command groups
workflow_app = typer.Typer(help="Inspect stored workflows")
execution_app = typer.Typer(help="Inspect workflow execution logs")

app.add_typer(workflow_app, name="workflow")
app.add_typer(execution_app, name="execution")


@app.callback()
def main() -> None:
    """signalflow CLI entry point."""
    pass


async def _serve(manager: WorkflowManager, load_workflows: bool) -> None:
    if load_workflows:
        await manager.load_all()
    else:
        logging.getLogger(__name__).info("Workflow loading disabled, not starting any workflow")
    try:
        await asyncio.Event().wait()
    finally:
        await manager.shutdown()


@app.command("serve")
def serve(
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to config.yaml"),
    load_workflows: Optional[bool] = typer.Option(
        None, "--load/--no-load", help="Start every enabled workflow at boot"
    ),
) -> None:
    """
    Run the orchestrator until interrupted.

    Loads every enabled workflow from the configured store and keeps their
    trigger subscriptions alive.

    Example:
        signalflow serve --config ./config.yaml
    """
    config = load_config(config_path)
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    manager = WorkflowManager.from_config(config)
    typer.echo(f"Starting orchestrator (store: {type(manager.store).__name__})")
    try:
        asyncio.run(
            _serve(
                manager,
                config.load_workflows if load_workflows is None else load_workflows,
            )
        )
    except KeyboardInterrupt:
        typer.echo("Stopped")


@workflow_app.command("list")
def workflow_list(
    user: Optional[str] = typer.Option(None, help="Only workflows owned by this account"),
) -> None:
    """
    List stored workflows with their owner and state.

    Example:
        signalflow workflow list --user eip155:1:0xabc
        # Output: 3f0c...    eip155:1:0xabc    on    My workflow
    """
    store = get_store()
    workflows = asyncio.run(store.list_workflows(user_account_id=user))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        state = "on" if wf.enabled else "off"
        typer.echo(f"{wf.key}\t{wf.user_account_id}\t{state}\t{wf.workflow.title or ''}")


@workflow_app.command("show")
def workflow_show(key: str) -> None:
    """Show the definition of a stored workflow."""
    store = get_store()
    wf = asyncio.run(store.get_workflow(key))
    if wf is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {wf.key}: {'on' if wf.enabled else 'off'}")
    typer.echo(f"Owner: {wf.user_account_id}")
    if wf.workspace_key:
        typer.echo(f"Workspace: {wf.workspace_key}")
    trigger = wf.workflow.trigger
    typer.echo(f"Trigger: {trigger.connector}/{trigger.operation}")
    for index, step in enumerate(wf.workflow.actions):
        typer.echo(f"- step{index}: {step.connector}/{step.operation}")


@execution_app.command("list")
def execution_list(
    workflow_key: str,
    limit: int = typer.Option(100, help="Maximum number of executions to show"),
) -> None:
    """List executions of a workflow, newest first."""
    store = get_store()
    executions = asyncio.run(store.list_executions(workflow_key, limit=limit))
    if not executions:
        typer.echo("No executions found")
        return
    for execution in executions:
        typer.echo(f"{execution.execution_id}\t{execution.started_at.isoformat()}")


@execution_app.command("log")
def execution_log(execution_id: str) -> None:
    """Show every step record of one execution."""
    store = get_store()
    records = asyncio.run(store.get_execution_log(execution_id))
    if not records:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    for record in records:
        label = "trigger" if record.step_index < 0 else f"step{record.step_index}"
        if record.error:
            typer.secho(f"- {label}: error: {record.error}", fg=typer.colors.RED)
        elif record.ended_at is None:
            typer.echo(f"- {label}: running")
        else:
            typer.echo(f"- {label}: {json.dumps(record.output, default=str)}")
