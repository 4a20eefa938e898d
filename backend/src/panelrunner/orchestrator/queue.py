"""
Per-tenant job queue.

Waiting jobs are held in one FIFO per target account (the job's group) so
the worker can pick the oldest job whose group is idle without scanning
unrelated backlog.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Collection, Iterable
from datetime import UTC, datetime
from typing import Any

import structlog

from panelrunner.errors import FailureReason, InvalidJobError
from panelrunner.orchestrator.job_store import JobStore, MemoryJobStore
from panelrunner.orchestrator.models import (
    CANCELLED_MESSAGE,
    TERMINAL_STATUSES,
    Job,
    JobStatus,
    JobView,
    generate_job_id,
)

logger = structlog.get_logger(__name__)

REQUIRED_FIELDS = ("tenant_id", "target_id", "action_name", "requester_id", "credential_ref")


class TenantJobQueue:
    """
    Holding area for one tenant's jobs.

    Features:
    - FIFO ordering within each target group
    - Synchronous removal of waiting jobs on cancel
    - Cooperative cancel flag for active jobs
    - Bounded retention of finished records
    """

    def __init__(
        self,
        tenant_id: str,
        store: JobStore | None = None,
        completed_retention: int = 100,
        failed_retention: int = 50,
    ) -> None:
        self._tenant_id = tenant_id
        self._store = store if store is not None else MemoryJobStore()
        self._completed_retention = completed_retention
        self._failed_retention = failed_retention

        self._jobs: dict[str, Job] = {}
        self._groups: dict[str, deque[str]] = {}
        self._finished_ok: deque[str] = deque()
        self._finished_failed: deque[str] = deque()
        self._sequence = 0

        self._log = logger.bind(component="tenant_queue", tenant_id=tenant_id)

    @property
    def tenant_id(self) -> str:
        return self._tenant_id

    @property
    def waiting_count(self) -> int:
        return sum(len(group) for group in self._groups.values())

    async def submit(
        self,
        target_id: str,
        action_name: str,
        params: dict[str, Any] | None,
        requester_id: str,
        credential_ref: str,
    ) -> str:
        """
        Validate and enqueue a job under its target group.

        Returns:
            The new job id

        Raises:
            InvalidJobError: If a required field is absent
        """
        values = {
            "tenant_id": self._tenant_id,
            "target_id": target_id,
            "action_name": action_name,
            "requester_id": requester_id,
            "credential_ref": credential_ref,
        }
        missing = [name for name in REQUIRED_FIELDS if not _present(values[name])]
        if missing:
            raise InvalidJobError(
                f"Missing required fields: {', '.join(missing)}",
                missing=missing,
            )

        target_id = str(target_id)
        self._sequence += 1
        job = Job(
            id=generate_job_id(action_name, self._tenant_id, target_id),
            tenant_id=self._tenant_id,
            target_id=target_id,
            action_name=action_name,
            requester_id=str(requester_id),
            credential_ref=str(credential_ref),
            params=dict(params or {}),
            sequence=self._sequence,
        )

        self._jobs[job.id] = job
        self._groups.setdefault(target_id, deque()).append(job.id)
        await self._store.save(job)

        self._log.info(
            "Job submitted",
            job_id=job.id,
            target_id=target_id,
            action=action_name,
            group_depth=len(self._groups[target_id]),
        )
        return job.id

    def get_job(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    async def get_status(self, job_id: str) -> JobView | None:
        """Return the job's current view, falling back to the backing store."""
        job = self._jobs.get(job_id)
        if job is None:
            job = await self._store.load(job_id)
            if job is None or job.tenant_id != self._tenant_id:
                return None
        return job.view()

    async def cancel(self, job_id: str) -> bool:
        """
        Cancel a job.

        Waiting jobs are removed outright and never start. Active jobs only
        get their cancel flag set; the running action is not interrupted.

        Returns:
            True if the job was waiting or active, False otherwise
        """
        job = self._jobs.get(job_id)
        if job is None or job.status in TERMINAL_STATUSES:
            return False

        now = datetime.now(UTC)

        if job.status == JobStatus.WAITING:
            group = self._groups.get(job.target_id)
            if group is not None:
                group.remove(job.id)
                if not group:
                    del self._groups[job.target_id]
            job.status = JobStatus.CANCELLED
            job.cancelled = True
            job.cancelled_at = now
            job.finished_at = now
            job.message = CANCELLED_MESSAGE
            job.failure_reason = FailureReason.CANCELLED
            await self._store.save(job)
            self._retain(job)
            self._log.info("Waiting job cancelled", job_id=job_id)
            return True

        if not job.cancelled:
            job.cancelled = True
            job.cancelled_at = now
            await self._store.save(job)
            self._log.info("Cancel requested for active job", job_id=job_id)
        return True

    def take_next(self, busy_groups: Collection[str]) -> Job | None:
        """
        Pop the oldest waiting job whose group has nothing executing.

        The job is marked active before it is returned, so a concurrent
        cancel sees it as active rather than waiting.
        """
        best: tuple[int, str] | None = None
        for target_id, group in self._groups.items():
            if not group or target_id in busy_groups:
                continue
            head = self._jobs[group[0]]
            if best is None or head.sequence < best[0]:
                best = (head.sequence, target_id)

        if best is None:
            return None

        group = self._groups[best[1]]
        job = self._jobs[group.popleft()]
        if not group:
            del self._groups[best[1]]

        job.status = JobStatus.ACTIVE
        job.started_at = datetime.now(UTC)
        return job

    async def record(self, job: Job) -> None:
        """Persist the current state of a job owned by this queue."""
        await self._store.save(job)
        if job.is_terminal:
            self._retain(job)

    def list_group_jobs(
        self,
        target_id: str,
        status: JobStatus | str | Iterable[JobStatus | str] | None = None,
    ) -> list[Job]:
        """List a target's jobs in submission order, optionally filtered by status."""
        if status is None:
            wanted = None
        elif isinstance(status, str):
            wanted = {JobStatus(status)}
        else:
            wanted = {JobStatus(s) for s in status}

        jobs = [
            job for job in self._jobs.values()
            if job.target_id == target_id
            and (wanted is None or job.view().status in wanted)
        ]
        return sorted(jobs, key=lambda j: j.sequence)

    def stats(self) -> dict[str, int]:
        counts = {str(status): 0 for status in JobStatus}
        for job in self._jobs.values():
            counts[str(job.view().status)] += 1
        counts["groups"] = len(self._groups)
        return counts

    def _retain(self, job: Job) -> None:
        """Track a finished job and evict the oldest beyond the retention limit."""
        if job.status == JobStatus.COMPLETED:
            finished, limit = self._finished_ok, self._completed_retention
        else:
            finished, limit = self._finished_failed, self._failed_retention

        if job.id in finished:
            return
        finished.append(job.id)
        while len(finished) > limit:
            evicted = finished.popleft()
            self._jobs.pop(evicted, None)


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True
