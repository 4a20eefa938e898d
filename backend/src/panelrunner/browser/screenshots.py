"""
Live screenshot streaming for running jobs.

Captures the job's page at a fixed interval and hands each frame to the
broadcaster. The first capture failure ends the stream for that job.
"""

from __future__ import annotations

import asyncio
import base64
import contextlib
from typing import TYPE_CHECKING, Protocol

import structlog

if TYPE_CHECKING:
    from playwright.async_api import Page

    from panelrunner.orchestrator.models import Job

logger = structlog.get_logger(__name__)


class ScreenshotSink(Protocol):
    async def publish_screenshot(self, job: Job, data: str) -> None: ...


class ScreenshotStreamer:
    """
    Manages one capture task per running job.

    Frames are base64-encoded PNG screenshots of the full page.
    """

    def __init__(self, sink: ScreenshotSink | None, interval_seconds: float = 0.5) -> None:
        self._sink = sink
        self._interval = interval_seconds
        self._streams: dict[str, asyncio.Task[None]] = {}
        self._log = logger.bind(component="screenshots")

    @property
    def active_streams(self) -> int:
        return len(self._streams)

    def start(self, job: Job, page: Page) -> None:
        """Begin streaming screenshots for a job; no-op without a sink."""
        if self._sink is None or job.id in self._streams:
            return
        self._streams[job.id] = asyncio.create_task(
            self._capture_loop(job, page, self._sink),
            name=f"screenshots-{job.id}",
        )
        self._log.debug("Screenshot stream started", job_id=job.id)

    async def stop(self, job_id: str) -> None:
        task = self._streams.pop(job_id, None)
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        self._log.debug("Screenshot stream stopped", job_id=job_id)

    async def stop_all(self) -> None:
        for job_id in list(self._streams):
            await self.stop(job_id)

    async def _capture_loop(self, job: Job, page: Page, sink: ScreenshotSink) -> None:
        while True:
            if page.is_closed() or job.is_terminal:
                break
            try:
                frame = await page.screenshot(full_page=True)
            except Exception as e:
                self._log.debug("Screenshot capture stopped", job_id=job.id, error=str(e))
                break

            await sink.publish_screenshot(job, base64.b64encode(frame).decode())
            await asyncio.sleep(self._interval)

        self._streams.pop(job.id, None)
