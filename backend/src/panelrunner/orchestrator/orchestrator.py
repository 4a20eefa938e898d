"""
Multi-tenant job orchestration.

Entry point for submitting, polling and cancelling jobs. Each tenant gets
its own queue and worker on first use, so one tenant's backlog never delays
another's.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

import structlog

from panelrunner.errors import InvalidJobError
from panelrunner.orchestrator.job_store import JobStore, MemoryJobStore
from panelrunner.orchestrator.queue import TenantJobQueue
from panelrunner.orchestrator.worker import JobEvents, JobExecutor, TenantWorker

if TYPE_CHECKING:
    from panelrunner.config import PipelineConfig
    from panelrunner.orchestrator.models import Job, JobStatus, JobView

logger = structlog.get_logger(__name__)


class JobOrchestrator:
    """
    Routes jobs to per-tenant queues and workers.

    Features:
    - Lazy creation of tenant queues and workers
    - Shared backing store for job records
    - Status events published on every transition
    """

    def __init__(
        self,
        runner: JobExecutor,
        config: PipelineConfig,
        store: JobStore | None = None,
        events: JobEvents | None = None,
    ) -> None:
        self._runner = runner
        self._config = config
        self._store = store if store is not None else MemoryJobStore(config.job_store_max_records)
        self._events = events

        self._queues: dict[str, TenantJobQueue] = {}
        self._workers: dict[str, TenantWorker] = {}
        self._running = False
        self._log = logger.bind(component="orchestrator")

    @property
    def tenants(self) -> list[str]:
        return sorted(self._queues)

    def start(self) -> None:
        self._running = True
        for worker in self._workers.values():
            worker.start()
        self._log.info("Orchestrator started", tenants=len(self._workers))

    async def stop(self, grace_seconds: float = 5.0) -> None:
        self._running = False
        for worker in self._workers.values():
            await worker.stop(grace_seconds)
        self._log.info("Orchestrator stopped")

    async def submit(
        self,
        tenant_id: str,
        target_id: str,
        action_name: str,
        params: dict[str, Any] | None,
        requester_id: str,
        credential_ref: str,
    ) -> str:
        """
        Enqueue a job for a tenant.

        Returns:
            The new job id

        Raises:
            InvalidJobError: If a required field is absent
        """
        if tenant_id is None or not str(tenant_id).strip():
            raise InvalidJobError("Missing required fields: tenant_id", missing=["tenant_id"])

        queue = self._queue_for(str(tenant_id))
        job_id = await queue.submit(target_id, action_name, params, requester_id, credential_ref)

        job = queue.get_job(job_id)
        if job is not None:
            await self._publish(job)
        self._workers[queue.tenant_id].notify()
        return job_id

    async def get_status(self, job_id: str, tenant_id: str) -> JobView | None:
        """Return the job's status view, or None if the tenant has no such job."""
        queue = self._queues.get(tenant_id)
        if queue is not None:
            return await queue.get_status(job_id)

        job = await self._store.load(job_id)
        if job is None or job.tenant_id != tenant_id:
            return None
        return job.view()

    async def cancel(self, job_id: str, tenant_id: str) -> bool:
        """
        Cancel a waiting or active job.

        Returns:
            True if the job was waiting or active, False if it was unknown or finished
        """
        queue = self._queues.get(tenant_id)
        if queue is None:
            return False

        job = queue.get_job(job_id)
        if job is None:
            return False

        was_waiting = not job.is_terminal and job.started_at is None
        if not await queue.cancel(job_id):
            return False

        if was_waiting:
            await self._publish(job)
        else:
            self._workers[tenant_id].request_cancel(job_id)
        return True

    def list_group_jobs(
        self,
        tenant_id: str,
        target_id: str,
        status: JobStatus | str | Iterable[JobStatus | str] | None = None,
    ) -> list[Job]:
        queue = self._queues.get(tenant_id)
        if queue is None:
            return []
        return queue.list_group_jobs(target_id, status)

    def stats(self, tenant_id: str | None = None) -> dict[str, Any]:
        """Queue and worker counters for one tenant or all of them."""
        if tenant_id is not None:
            queue = self._queues.get(tenant_id)
            if queue is None:
                return {}
            return {**queue.stats(), "worker": self._workers[tenant_id].stats()}

        return {tid: self.stats(tid) for tid in sorted(self._queues)}

    def _queue_for(self, tenant_id: str) -> TenantJobQueue:
        queue = self._queues.get(tenant_id)
        if queue is not None:
            return queue

        queue = TenantJobQueue(
            tenant_id,
            store=self._store,
            completed_retention=self._config.completed_retention,
            failed_retention=self._config.failed_retention,
        )
        worker = TenantWorker(queue, self._runner, self._config, events=self._events)
        self._queues[tenant_id] = queue
        self._workers[tenant_id] = worker
        if self._running:
            worker.start()
        self._log.info("Tenant queue created", tenant_id=tenant_id)
        return queue

    async def _publish(self, job: Job) -> None:
        if self._events is None:
            return
        try:
            await self._events.publish_job_update(job)
        except Exception as e:
            self._log.warning("Failed to publish job update", job_id=job.id, error=str(e))
