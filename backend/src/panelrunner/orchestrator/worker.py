"""
Per-tenant dispatcher.

Pulls jobs from a tenant's queue and runs them with bounded concurrency,
never running two jobs of the same target group at once.
"""

from __future__ import annotations

import asyncio
import contextlib
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from panelrunner.errors import FailureReason
from panelrunner.execution.actions import CancellationToken
from panelrunner.orchestrator.models import Job, JobStatus

if TYPE_CHECKING:
    from panelrunner.config import PipelineConfig
    from panelrunner.execution.runner import JobPublisher
    from panelrunner.orchestrator.queue import TenantJobQueue

logger = structlog.get_logger(__name__)

SHUTDOWN_MESSAGE = "Job interrupted by shutdown"


class JobExecutor(Protocol):
    async def run(self, job: Job, token: CancellationToken, publish: JobPublisher) -> None: ...


class JobEvents(Protocol):
    async def publish_job_update(self, job: Job) -> None: ...


class TenantWorker:
    """
    Runs one tenant's jobs.

    Features:
    - Up to ``tenant_concurrency`` jobs in flight
    - At most one active job per target group
    - Oldest eligible job first
    - Cooperative cancel of running jobs
    """

    def __init__(
        self,
        queue: TenantJobQueue,
        runner: JobExecutor,
        config: PipelineConfig,
        events: JobEvents | None = None,
    ) -> None:
        self._queue = queue
        self._runner = runner
        self._config = config
        self._events = events

        self._active: dict[str, asyncio.Task[None]] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._busy_groups: set[str] = set()
        self._wakeup = asyncio.Event()
        self._dispatcher: asyncio.Task[None] | None = None
        self._running = False

        self._started = 0
        self._finished = 0
        self._peak = 0

        self._log = logger.bind(component="tenant_worker", tenant_id=queue.tenant_id)

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def busy_groups(self) -> frozenset[str]:
        return frozenset(self._busy_groups)

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._dispatcher = asyncio.create_task(
            self._dispatch_loop(),
            name=f"worker-{self._queue.tenant_id}",
        )
        self._log.info("Worker started", concurrency=self._config.tenant_concurrency)

    def notify(self) -> None:
        """Wake the dispatcher after new work was queued."""
        self._wakeup.set()

    def request_cancel(self, job_id: str) -> bool:
        """Signal a running job's token. Returns False if it is not running here."""
        token = self._tokens.get(job_id)
        if token is None:
            return False
        token.cancel()
        return True

    async def drain(self) -> None:
        """Wait until the queue is empty and nothing is running."""
        while self._running and (self._queue.waiting_count or self._active):
            if self._active:
                await asyncio.wait(list(self._active.values()))
            else:
                self.notify()
                await asyncio.sleep(0)

    async def stop(self, grace_seconds: float = 5.0) -> None:
        """
        Stop dispatching and wait for running jobs.

        Jobs still running after the grace period are cancelled and recorded
        as failed.
        """
        if not self._running:
            return
        self._running = False
        self._wakeup.set()

        if self._dispatcher is not None:
            self._dispatcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._dispatcher
            self._dispatcher = None

        tasks = list(self._active.values())
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=grace_seconds)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        self._log.info("Worker stopped", stats=self.stats())

    def stats(self) -> dict[str, Any]:
        return {
            "active": len(self._active),
            "busy_groups": sorted(self._busy_groups),
            "started": self._started,
            "finished": self._finished,
            "peak_concurrency": self._peak,
        }

    async def _dispatch_loop(self) -> None:
        while self._running:
            self._wakeup.clear()
            self._fill_slots()
            await self._wakeup.wait()

    def _fill_slots(self) -> None:
        while len(self._active) < self._config.tenant_concurrency:
            job = self._queue.take_next(self._busy_groups)
            if job is None:
                return
            self._start_job(job)

    def _start_job(self, job: Job) -> None:
        token = CancellationToken()
        if job.cancelled:
            token.cancel()

        self._busy_groups.add(job.target_id)
        self._tokens[job.id] = token
        self._active[job.id] = asyncio.create_task(
            self._run_job(job, token),
            name=f"job-{job.id}",
        )
        self._started += 1
        self._peak = max(self._peak, len(self._active))
        self._log.debug(
            "Job dispatched",
            job_id=job.id,
            target_id=job.target_id,
            active=len(self._active),
        )

    async def _run_job(self, job: Job, token: CancellationToken) -> None:
        try:
            await self._runner.run(job, token, self._publish)
        except asyncio.CancelledError:
            await self._interrupt(job)
            raise
        except Exception as e:
            self._log.error("Runner raised", job_id=job.id, error=str(e), exc_info=True)
            await self._interrupt(job, f"Unexpected error: {e}")
        finally:
            self._active.pop(job.id, None)
            self._tokens.pop(job.id, None)
            self._busy_groups.discard(job.target_id)
            self._finished += 1
            self._wakeup.set()

    async def _interrupt(self, job: Job, message: str = SHUTDOWN_MESSAGE) -> None:
        if job.is_terminal:
            return
        job.status = JobStatus.FAILED
        job.failure_reason = FailureReason.ACTION_FAILED
        job.message = message
        job.progress = 100
        job.finished_at = datetime.now(UTC)
        try:
            await self._publish(job)
        except Exception as e:
            self._log.warning("Failed to record interrupted job", job_id=job.id, error=str(e))

    async def _publish(self, job: Job) -> None:
        await self._queue.record(job)
        if self._events is None:
            return
        try:
            await self._events.publish_job_update(job)
        except Exception as e:
            self._log.warning("Failed to publish job update", job_id=job.id, error=str(e))
