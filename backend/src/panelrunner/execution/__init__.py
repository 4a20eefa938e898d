"""
Job execution module.

Provides the executor contract, the built-in panel actions and the job runner.
"""

from panelrunner.execution.actions import (
    ActionExecutor,
    ActionResult,
    CancellationToken,
    ExecutorRegistry,
)
from panelrunner.execution.panel_actions import register_panel_actions
from panelrunner.execution.runner import JobRunner

__all__ = [
    "ActionExecutor",
    "ActionResult",
    "CancellationToken",
    "ExecutorRegistry",
    "JobRunner",
    "register_panel_actions",
]
