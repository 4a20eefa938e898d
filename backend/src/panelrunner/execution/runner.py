"""
Execution of a single job.

Runs one job end to end: borrows the cached browser session, invokes the
executor under a hard deadline, re-authenticates once if the session has
expired, then records the outcome and writes the audit row.

Recovery is an explicit sequence::

    ATTEMPT_ACTION -> (needs_login) -> REAUTHENTICATE -> RETRY_ACTION_ONCE -> TERMINAL
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import StrEnum, auto
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from panelrunner.auth.login import LoginRequest
from panelrunner.errors import (
    ActionFailedError,
    BrowserSessionError,
    CaptchaExhaustedError,
    CredentialsMissingError,
    JobCancelledError,
    JobTimeoutError,
    LoginRejectedError,
    PanelRunnerError,
)
from panelrunner.execution.actions import (
    LOGIN_ACTION,
    ActionExecutor,
    ActionResult,
    CancellationToken,
    coerce_result,
)
from panelrunner.orchestrator.models import (
    CANCELLED_MESSAGE,
    COMPLETED_MESSAGE,
    FAILED_MESSAGE,
    Job,
    JobStatus,
)
from panelrunner.storage.interfaces import AuditEntry

if TYPE_CHECKING:
    from playwright.async_api import Page

    from panelrunner.auth.login import LoginStateMachine
    from panelrunner.auth.session_capture import SessionCapture
    from panelrunner.browser.screenshots import ScreenshotStreamer
    from panelrunner.browser.session_cache import BrowserSessionCache, SessionLease
    from panelrunner.config import PipelineConfig
    from panelrunner.execution.actions import ExecutorRegistry
    from panelrunner.storage.interfaces import AuditSink, CredentialSource, StoredCredential

logger = structlog.get_logger(__name__)

JobPublisher = Callable[[Job], Awaitable[None]]

SECRET_PARAM_MARKERS = ("password", "secret", "token")


class JobLogSink(Protocol):
    async def publish_log(self, job: Job, line: str) -> None: ...


class RecoveryStep(StrEnum):
    """Step of the action/re-login/retry sequence."""

    ATTEMPT_ACTION = auto()
    REAUTHENTICATE = auto()
    RETRY_ACTION_ONCE = auto()
    TERMINAL = auto()


class JobRunner:
    """
    Executes jobs handed over by a tenant worker.

    Every exception raised while running a job is turned into a terminal
    job state here; nothing escapes to the worker except cancellation of the
    worker itself.
    """

    def __init__(
        self,
        session_cache: BrowserSessionCache,
        registry: ExecutorRegistry,
        login: LoginStateMachine,
        credentials: CredentialSource,
        session_capture: SessionCapture,
        config: PipelineConfig,
        audit: AuditSink | None = None,
        screenshots: ScreenshotStreamer | None = None,
        log_sink: JobLogSink | None = None,
    ) -> None:
        self._cache = session_cache
        self._registry = registry
        self._login = login
        self._credentials = credentials
        self._capture = session_capture
        self._config = config
        self._audit = audit
        self._screenshots = screenshots
        self._log_sink = log_sink
        self._log = logger.bind(component="job_runner")

    async def run(self, job: Job, token: CancellationToken, publish: JobPublisher) -> None:
        """Run a job that the queue has already marked active."""
        log = self._log.bind(
            job_id=job.id,
            tenant_id=job.tenant_id,
            target_id=job.target_id,
            action=job.action_name,
        )
        job.progress = 10
        await publish(job)
        await self._emit(job, f"Starting {job.action_name}...", log)
        log.info("Job started")

        result: ActionResult | None = None
        error: PanelRunnerError | None = None
        page_broken = False
        timeout = self._config.job_timeout_seconds

        try:
            result = await asyncio.wait_for(
                self._attempt(job, token, publish, log),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            log.warning("Job timed out", timeout_seconds=timeout)
            error = JobTimeoutError(f"Job timed out after {timeout:g} seconds")
        except BrowserSessionError as e:
            log.warning("Browser session unusable", error=e.message)
            error = e
            page_broken = True
        except PanelRunnerError as e:
            error = e
        except Exception as e:
            log.error("Unexpected error during job", error=str(e), exc_info=True)
            error = ActionFailedError(f"Unexpected error: {e}")
            page_broken = True
        finally:
            if self._screenshots is not None:
                await self._screenshots.stop(job.id)

        if error is not None:
            await self._cache.release_attempt_resources(job.tenant_id, job.target_id)
            if page_broken:
                await self._cache.report_failure(job.tenant_id, job.target_id)

        self._finish(job, result, error)
        if job.status == JobStatus.COMPLETED:
            self._cache.report_success(job.tenant_id, job.target_id)

        await self._write_audit(job, log)
        await publish(job)
        await self._emit(job, job.message or "", log)
        log.info(
            "Job finished",
            status=job.status,
            reason=job.failure_reason,
            duration_ms=job.duration_ms,
        )

    async def _attempt(
        self,
        job: Job,
        token: CancellationToken,
        publish: JobPublisher,
        log: structlog.BoundLogger,
    ) -> ActionResult:
        executor = None
        if job.action_name != LOGIN_ACTION:
            executor = self._registry.resolve(job.target_id, job.action_name)

        async with self._cache.lease(job.tenant_id, job.target_id) as lease:
            job.progress = 20
            await publish(job)

            if self._screenshots is not None:
                self._screenshots.start(job, lease.page)

            if executor is None:
                return await self._login_job(job, lease)

            await self._emit(job, f"Processing {job.action_name}...", log)
            if lease.needs_reset:
                await self._prepare_page(job, lease, log)

            return await self._run_with_recovery(job, lease.page, executor, token, log)

    async def _run_with_recovery(
        self,
        job: Job,
        page: Page,
        executor: ActionExecutor,
        token: CancellationToken,
        log: structlog.BoundLogger,
    ) -> ActionResult:
        step = RecoveryStep.ATTEMPT_ACTION
        result = ActionResult(success=False, message=FAILED_MESSAGE)

        while step != RecoveryStep.TERMINAL:
            if token.cancelled:
                log.info("Cancellation observed", step=step)
                raise JobCancelledError(CANCELLED_MESSAGE)

            log.debug("Recovery step", step=step)

            if step == RecoveryStep.ATTEMPT_ACTION:
                result = await self._invoke(executor, page, job, token)
                step = RecoveryStep.REAUTHENTICATE if result.needs_login else RecoveryStep.TERMINAL

            elif step == RecoveryStep.REAUTHENTICATE:
                log.info("Session expired, logging in again")
                await self._emit(job, "Session expired, logging in...", log)
                await self._reauthenticate(job, page)
                await self._emit(job, f"Login successful, retrying {job.action_name}...", log)
                step = RecoveryStep.RETRY_ACTION_ONCE

            else:
                result = await self._invoke(executor, page, job, token)
                if result.needs_login:
                    result = result.model_copy(
                        update={
                            "success": False,
                            "message": "Session expired again after re-login",
                        }
                    )
                step = RecoveryStep.TERMINAL

        return result

    async def _invoke(
        self,
        executor: ActionExecutor,
        page: Page,
        job: Job,
        token: CancellationToken,
    ) -> ActionResult:
        return coerce_result(await executor.execute(page, dict(job.params), token))

    async def _reauthenticate(self, job: Job, page: Page) -> None:
        credential = await self._credentials.get(job.credential_ref)
        if credential is None or not credential.is_complete:
            name = credential.target_name if credential else job.target_id
            raise CredentialsMissingError(
                f"No saved credentials found for {name}. Please login manually first."
            )

        try:
            await self._login.login(page, self._login_request(job, credential))
        except CaptchaExhaustedError as e:
            raise CaptchaExhaustedError(
                f"Automatic login failed: {e.message}", attempts=e.attempts
            ) from e
        except LoginRejectedError as e:
            raise LoginRejectedError(f"Automatic login failed: {e.message}") from e

    async def _login_job(self, job: Job, lease: SessionLease) -> ActionResult:
        credential = await self._credentials.get(job.credential_ref)
        if credential is None:
            raise CredentialsMissingError(
                f"No credential found for reference {job.credential_ref}"
            )

        username = job.params.get("username") or credential.username
        password = job.params.get("password") or credential.password
        if not username or not password:
            raise CredentialsMissingError("Username and password are required for login")

        outcome = await self._login.login(
            lease.page,
            self._login_request(job, credential, username=username, password=password),
        )
        return ActionResult(
            success=True,
            message="Login successful",
            attempts=outcome.attempts,
            sessionExpiresAt=outcome.session_expires_at.isoformat(),
        )

    async def _prepare_page(
        self,
        job: Job,
        lease: SessionLease,
        log: structlog.BoundLogger,
    ) -> None:
        """Restore the stored session into a new page and open the dashboard."""
        restored = False
        if lease.fresh:
            restored = await self._capture.restore_into_context(
                lease.context, job.requester_id, job.credential_ref
            )

        credential = await self._credentials.get(job.credential_ref)
        if credential is None:
            return

        url = credential.dashboard_url if (restored or not lease.fresh) else None
        url = url or credential.login_url
        if url:
            log.debug("Opening start page", url=url, restored=restored)
            await lease.page.goto(url)
            await lease.page.wait_for_load_state("networkidle")

    @staticmethod
    def _login_request(
        job: Job,
        credential: StoredCredential,
        username: str | None = None,
        password: str | None = None,
    ) -> LoginRequest:
        return LoginRequest(
            user_id=job.requester_id,
            credential_id=job.credential_ref,
            username=username or credential.username,
            password=password or credential.password,
            login_url=credential.login_url,
            dashboard_url=credential.dashboard_url,
            target_name=credential.target_name,
        )

    @staticmethod
    def _finish(job: Job, result: ActionResult | None, error: PanelRunnerError | None) -> None:
        job.finished_at = datetime.now(UTC)
        job.progress = 100

        if error is not None or result is None:
            error = error or ActionFailedError(FAILED_MESSAGE)
            job.status = (
                JobStatus.CANCELLED if isinstance(error, JobCancelledError) else JobStatus.FAILED
            )
            job.failure_reason = error.reason
            job.message = error.message
            job.result = {
                "success": False,
                "message": error.message,
                "reason": str(error.reason),
            }
            return

        job.result = result.to_payload()
        if result.success:
            job.status = JobStatus.COMPLETED
            job.failure_reason = None
            job.message = result.message or COMPLETED_MESSAGE
        else:
            job.status = JobStatus.FAILED
            job.failure_reason = ActionFailedError.reason
            job.message = result.message or FAILED_MESSAGE

    async def _emit(self, job: Job, line: str, log: structlog.BoundLogger) -> None:
        """Send a progress line to viewers; failures only get logged."""
        if self._log_sink is None or not line:
            return
        try:
            await self._log_sink.publish_log(job, line)
        except Exception as e:
            log.warning("Failed to publish log line", error=str(e))

    async def _write_audit(self, job: Job, log: structlog.BoundLogger) -> None:
        if self._audit is None:
            return
        entry = AuditEntry(
            tenant_id=job.tenant_id,
            target_id=job.target_id,
            user_id=job.requester_id,
            job_id=job.id,
            action_name=job.action_name,
            success=job.status == JobStatus.COMPLETED,
            params=redact_params(job.params),
            duration_secs=(job.duration_ms or 0) / 1000,
            message=job.message or "",
            reason=str(job.failure_reason) if job.failure_reason else None,
        )
        try:
            await self._audit.record(entry)
        except Exception as e:
            log.error("Failed to write audit row", error=str(e))


def redact_params(params: dict[str, Any]) -> dict[str, Any]:
    """Copy params with secret-looking values masked."""
    return {
        key: "***" if any(marker in key.lower() for marker in SECRET_PARAM_MARKERS) else value
        for key, value in params.items()
    }
