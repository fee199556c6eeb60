"""Workflow runtime: trigger subscriptions and action execution."""

from .action import run_action, run_single_action
from .context import RuntimeContext
from .inputs import replace_tokens, sanitize_input
from .workflow import RuntimeWorkflow, SignalHandler, WorkflowStatus

__all__ = [
    "RuntimeContext",
    "RuntimeWorkflow",
    "SignalHandler",
    "WorkflowStatus",
    "replace_tokens",
    "run_action",
    "run_single_action",
    "sanitize_input",
]
