"""
Panel Runner.

Multi-tenant job queue that drives browser automation against operator
panels, with cached logged-in sessions, captcha-solving login and live
status streaming.
"""

__version__ = "0.1.0"

from panelrunner.config import PipelineConfig, load_pipeline_config
from panelrunner.errors import FailureReason, PanelRunnerError
from panelrunner.execution.actions import ActionResult, ExecutorRegistry
from panelrunner.orchestrator.models import Job, JobStatus, JobView
from panelrunner.orchestrator.orchestrator import JobOrchestrator

__all__ = [
    "ActionResult",
    "ExecutorRegistry",
    "FailureReason",
    "Job",
    "JobOrchestrator",
    "JobStatus",
    "JobView",
    "PanelRunnerError",
    "PipelineConfig",
    "__version__",
    "load_pipeline_config",
]
