"""
FastAPI application for the panel runner.

Provides job submission, status polling, cancellation and queue inspection
per tenant, plus the live viewer WebSocket.
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import structlog
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from panelrunner import __version__
from panelrunner.api.broadcaster import StatusBroadcaster
from panelrunner.auth.captcha import VisionCaptchaSolver
from panelrunner.auth.credential_cipher import CredentialCipher
from panelrunner.auth.login import LoginStateMachine
from panelrunner.auth.session_capture import SessionCapture
from panelrunner.browser.launcher import PlaywrightLauncher
from panelrunner.browser.screenshots import ScreenshotStreamer
from panelrunner.browser.session_cache import BrowserSessionCache
from panelrunner.config import PipelineConfig, load_pipeline_config
from panelrunner.errors import InvalidJobError
from panelrunner.execution.actions import ExecutorRegistry
from panelrunner.execution.panel_actions import register_panel_actions
from panelrunner.execution.runner import JobRunner
from panelrunner.logging_config import configure_logging
from panelrunner.orchestrator.job_store import JobStore, RedisJobStore
from panelrunner.orchestrator.models import JobStatus
from panelrunner.orchestrator.orchestrator import JobOrchestrator
from panelrunner.settings import ServiceSettings
from panelrunner.storage.database import DatabaseManager
from panelrunner.storage.repositories import (
    AuditRepository,
    CaptchaLogRepository,
    CredentialRepository,
    SessionRepository,
)

logger = structlog.get_logger(__name__)


class SubmitJobRequest(BaseModel):
    """Request to enqueue a job. Required fields are checked by the orchestrator."""

    model_config = ConfigDict(populate_by_name=True)

    target_id: str | None = Field(default=None, alias="targetId")
    action_name: str | None = Field(default=None, alias="actionName")
    params: dict[str, Any] = Field(default_factory=dict)
    requester_id: str | None = Field(default=None, alias="requesterId")
    credential_ref: str | None = Field(default=None, alias="credentialRef")


class SubmitJobResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(alias="jobId")


class CancelJobResponse(BaseModel):
    job_id: str = Field(alias="jobId")
    cancelled: bool

    model_config = ConfigDict(populate_by_name=True)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: datetime
    version: str
    tenants: int = 0
    viewers: int = 0


class AppState:
    """Application state container."""

    orchestrator: JobOrchestrator | None = None
    broadcaster: StatusBroadcaster | None = None
    session_cache: BrowserSessionCache | None = None
    screenshots: ScreenshotStreamer | None = None
    db_manager: DatabaseManager | None = None
    job_store: RedisJobStore | None = None
    solver: VisionCaptchaSolver | None = None
    audit: AuditRepository | None = None


state = AppState()


async def build_services(settings: ServiceSettings, config: PipelineConfig) -> None:
    """Construct every collaborator and store it on the app state."""
    db_manager = DatabaseManager(settings.database_url, echo=settings.sql_echo)
    await db_manager.create_tables()
    state.db_manager = db_manager

    cipher = CredentialCipher(settings.credential_key.get_secret_value() or None)
    credentials = CredentialRepository(db_manager, cipher)
    session_capture = SessionCapture(
        SessionRepository(db_manager),
        default_ttl_seconds=config.default_session_ttl_seconds,
    )

    job_store: JobStore | None = None
    if settings.redis_url:
        state.job_store = RedisJobStore(settings.redis_url, ttl_seconds=settings.job_record_ttl_seconds)
        await state.job_store.connect()
        job_store = state.job_store

    if settings.vision.is_configured:
        state.solver = VisionCaptchaSolver(settings.vision)
    else:
        logger.warning("No vision API key configured, captchas cannot be solved")

    broadcaster = StatusBroadcaster()
    broadcaster.start()
    state.broadcaster = broadcaster

    state.session_cache = BrowserSessionCache(
        PlaywrightLauncher(headless=config.headless),
        unusable_threshold=config.unusable_page_threshold,
    )
    state.screenshots = ScreenshotStreamer(broadcaster, config.screenshot_interval_seconds)
    state.audit = AuditRepository(db_manager)

    registry = ExecutorRegistry()
    register_panel_actions(registry)

    login = LoginStateMachine(
        session_capture,
        solver=state.solver,
        captcha_log=CaptchaLogRepository(db_manager),
        captcha_dir=settings.captcha_dir,
        max_attempts=config.captcha_max_attempts,
        backoff_seconds=config.captcha_backoff_seconds,
        settle_seconds=config.login_settle_seconds,
    )
    runner = JobRunner(
        state.session_cache,
        registry,
        login,
        credentials,
        session_capture,
        config,
        audit=state.audit,
        screenshots=state.screenshots,
        log_sink=broadcaster,
    )

    state.orchestrator = JobOrchestrator(runner, config, store=job_store, events=broadcaster)
    state.orchestrator.start()


async def shutdown_services() -> None:
    if state.orchestrator:
        await state.orchestrator.stop()
    if state.screenshots:
        await state.screenshots.stop_all()
    if state.session_cache:
        await state.session_cache.close_all()
    if state.broadcaster:
        await state.broadcaster.stop()
    if state.solver:
        await state.solver.close()
    if state.job_store:
        await state.job_store.disconnect()
    if state.db_manager:
        await state.db_manager.close()

    state.orchestrator = None
    state.broadcaster = None
    state.session_cache = None
    state.screenshots = None
    state.job_store = None
    state.solver = None
    state.audit = None
    state.db_manager = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan management."""
    log = logger.bind(component="api")
    log.info("Starting panel runner API server")

    await build_services(ServiceSettings(), load_pipeline_config())
    log.info("Panel runner API server started")

    yield

    log.info("Shutting down panel runner API server")
    await shutdown_services()


def _orchestrator() -> JobOrchestrator:
    if state.orchestrator is None:
        raise HTTPException(status_code=503, detail="Orchestrator not available")
    return state.orchestrator


def create_app(cors_origins: list[str] | None = None) -> FastAPI:
    """Create FastAPI application."""
    app = FastAPI(
        title="Panel Runner API",
        description="Multi-tenant browser automation job queue",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ServiceSettings().cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        """Health check endpoint."""
        return HealthResponse(
            status="healthy" if state.orchestrator is not None else "starting",
            timestamp=datetime.now(UTC),
            version=__version__,
            tenants=len(state.orchestrator.tenants) if state.orchestrator else 0,
            viewers=state.broadcaster.connection_count if state.broadcaster else 0,
        )

    @app.post("/api/tenants/{tenant_id}/jobs", response_model=SubmitJobResponse)
    async def submit_job(tenant_id: str, request: SubmitJobRequest) -> SubmitJobResponse:
        """Enqueue a job for one of the tenant's target accounts."""
        orchestrator = _orchestrator()
        try:
            job_id = await orchestrator.submit(
                tenant_id=tenant_id,
                target_id=request.target_id,
                action_name=request.action_name,
                params=request.params,
                requester_id=request.requester_id,
                credential_ref=request.credential_ref,
            )
        except InvalidJobError as e:
            raise HTTPException(status_code=400, detail=e.message) from e
        return SubmitJobResponse(job_id=job_id)

    @app.get("/api/tenants/{tenant_id}/jobs/{job_id}")
    async def get_job_status(tenant_id: str, job_id: str) -> dict[str, Any]:
        """Poll a job's status."""
        view = await _orchestrator().get_status(job_id, tenant_id)
        if view is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return view.to_dict()

    @app.delete(
        "/api/tenants/{tenant_id}/jobs/{job_id}",
        response_model=CancelJobResponse,
    )
    async def cancel_job(tenant_id: str, job_id: str) -> CancelJobResponse:
        """Cancel a waiting or active job."""
        cancelled = await _orchestrator().cancel(job_id, tenant_id)
        return CancelJobResponse(job_id=job_id, cancelled=cancelled)

    @app.get("/api/tenants/{tenant_id}/targets/{target_id}/jobs")
    async def list_target_jobs(
        tenant_id: str,
        target_id: str,
        status: list[str] | None = Query(default=None),
    ) -> dict[str, Any]:
        """List a target's jobs in submission order."""
        orchestrator = _orchestrator()
        try:
            wanted = [JobStatus(s) for s in status] if status else None
        except ValueError as e:
            raise HTTPException(status_code=400, detail=f"Invalid status filter: {status}") from e

        jobs = orchestrator.list_group_jobs(tenant_id, target_id, wanted)
        return {
            "tenantId": tenant_id,
            "targetId": target_id,
            "jobs": [job.view().to_dict() for job in jobs],
        }

    @app.get("/api/tenants/{tenant_id}/targets/{target_id}/logs")
    async def list_target_logs(
        tenant_id: str,
        target_id: str,
        limit: int = Query(default=50, ge=1, le=500),
    ) -> dict[str, Any]:
        """Audit history of a target, newest first."""
        if state.audit is None:
            raise HTTPException(status_code=503, detail="Audit log not available")
        logs = await state.audit.list_for_target(tenant_id, target_id, limit=limit)
        return {"tenantId": tenant_id, "targetId": target_id, "logs": logs}

    @app.get("/api/tenants/{tenant_id}/queue")
    async def queue_stats(tenant_id: str) -> dict[str, Any]:
        """Queue and worker counters for a tenant."""
        return {"tenantId": tenant_id, "stats": _orchestrator().stats(tenant_id)}

    @app.websocket("/ws")
    async def viewer_socket(websocket: WebSocket) -> None:
        if state.broadcaster is None:
            await websocket.close(code=1013)
            return
        await state.broadcaster.serve(websocket)

    return app


def run_server(host: str | None = None, port: int | None = None, reload: bool | None = None) -> None:
    """Run the API server."""
    import uvicorn

    settings = ServiceSettings()
    uvicorn.run(
        "panelrunner.api.main:create_app",
        host=host or settings.host,
        port=port or settings.port,
        factory=True,
        reload=reload if reload is not None else os.environ.get("DEBUG", "false").lower() == "true",
    )


def main() -> None:
    load_dotenv()
    settings = ServiceSettings()
    configure_logging(
        verbose=os.environ.get("DEBUG", "false").lower() == "true",
        json_output=settings.log_json,
    )
    run_server(settings.host, settings.port)


if __name__ == "__main__":
    main()
