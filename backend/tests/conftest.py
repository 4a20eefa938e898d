"""Pytest fixtures for panel runner tests."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from panelrunner.config import PipelineConfig
from panelrunner.execution.actions import ActionResult, CancellationToken
from panelrunner.orchestrator.models import Job, JobStatus
from panelrunner.storage.interfaces import StoredCredential


def make_page(url: str = "https://panel.example.com/dashboard") -> MagicMock:
    """Create a mock Playwright page."""
    page = MagicMock()
    page.url = url
    page.is_closed = MagicMock(return_value=False)
    page.goto = AsyncMock()
    page.reload = AsyncMock()
    page.wait_for_load_state = AsyncMock()
    page.screenshot = AsyncMock(return_value=b"\x89PNG")
    page.close = AsyncMock()
    return page


def make_context(page: MagicMock) -> MagicMock:
    """Create a mock browser context that serves a single page."""
    context = MagicMock()
    context.new_page = AsyncMock(return_value=page)
    context.close = AsyncMock()
    context.cookies = AsyncMock(return_value=[])
    context.add_cookies = AsyncMock()
    context.on = MagicMock()
    context.remove_listener = MagicMock()
    page.context = context
    return context


class FakeLauncher:
    """Launcher returning mock browsers whose contexts each get a fresh page."""

    def __init__(self) -> None:
        self.launch_count = 0
        self.stopped = False
        self.pages: list[MagicMock] = []
        self.browsers: list[MagicMock] = []

    async def launch(self) -> MagicMock:
        self.launch_count += 1
        browser = MagicMock()
        browser.is_connected = MagicMock(return_value=True)
        browser.close = AsyncMock()
        browser.new_context = AsyncMock(side_effect=self._new_context)
        self.browsers.append(browser)
        return browser

    async def _new_context(self, **options: Any) -> MagicMock:
        page = make_page()
        self.pages.append(page)
        return make_context(page)

    async def stop(self) -> None:
        self.stopped = True


class ScriptedExecutor:
    """Executor that returns queued results, optionally after a delay."""

    def __init__(self, *results: dict[str, Any] | ActionResult, delay: float = 0.0) -> None:
        self._results = list(results)
        self.delay = delay
        self.calls: list[dict[str, Any]] = []

    async def execute(
        self,
        page: Any,
        params: dict[str, Any],
        token: CancellationToken,
    ) -> dict[str, Any] | ActionResult:
        self.calls.append(params)
        if self.delay:
            await asyncio.sleep(self.delay)
        if len(self._results) > 1:
            return self._results.pop(0)
        return self._results[0]


class RecordingRunner:
    """Stand-in for JobRunner that tracks concurrency per tenant and group."""

    def __init__(self, delay: float = 0.05) -> None:
        self.delay = delay
        self.started: list[str] = []
        self.active: set[str] = set()
        self.active_groups: set[str] = set()
        self.peak = 0
        self.group_overlap = False

    async def run(self, job: Job, token: CancellationToken, publish: Any) -> None:
        if job.target_id in self.active_groups:
            self.group_overlap = True
        self.active_groups.add(job.target_id)
        self.active.add(job.id)
        self.peak = max(self.peak, len(self.active))
        self.started.append(job.id)

        job.progress = 10
        await publish(job)
        await asyncio.sleep(self.delay)

        job.status = JobStatus.COMPLETED
        job.progress = 100
        job.finished_at = datetime.now(UTC)
        job.result = {"success": True, "message": "done"}
        self.active.discard(job.id)
        self.active_groups.discard(job.target_id)
        await publish(job)


@pytest.fixture
def fast_config() -> PipelineConfig:
    """Pipeline config with no waits."""
    return PipelineConfig(
        job_timeout_seconds=2.0,
        captcha_backoff_seconds=0.0,
        login_settle_seconds=0.0,
        screenshot_interval_seconds=0.01,
    )


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def credential() -> StoredCredential:
    """Complete stored credential for target-1."""
    return StoredCredential(
        credential_ref="cred-1",
        target_id="target-1",
        target_name="Yolo Panel",
        username="operator",
        password="s3cret",
        login_url="https://panel.example.com/login",
        dashboard_url="https://panel.example.com/dashboard",
    )


@pytest.fixture
def mock_websocket() -> MagicMock:
    """Create a mock FastAPI WebSocket."""
    websocket = MagicMock()
    websocket.accept = AsyncMock()
    websocket.send_json = AsyncMock()
    websocket.close = AsyncMock()
    websocket.receive_text = AsyncMock()
    return websocket
