"""
Job orchestration module.

Provides per-tenant queues, workers and the multi-tenant facade.
"""

from panelrunner.orchestrator.job_store import JobStore, MemoryJobStore, RedisJobStore
from panelrunner.orchestrator.models import Job, JobStatus, JobView
from panelrunner.orchestrator.orchestrator import JobOrchestrator
from panelrunner.orchestrator.queue import TenantJobQueue
from panelrunner.orchestrator.worker import TenantWorker

__all__ = [
    "Job",
    "JobOrchestrator",
    "JobStatus",
    "JobStore",
    "JobView",
    "MemoryJobStore",
    "RedisJobStore",
    "TenantJobQueue",
    "TenantWorker",
]
