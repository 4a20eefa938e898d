"""Playwright browser launcher."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
from playwright.async_api import async_playwright

if TYPE_CHECKING:
    from playwright.async_api import Browser, Playwright

logger = structlog.get_logger(__name__)


class PlaywrightLauncher:
    """Starts Playwright once and launches browsers on demand."""

    def __init__(
        self,
        headless: bool = True,
        browser_type: str = "chromium",
        launch_args: list[str] | None = None,
        slow_mo_ms: float | None = None,
    ) -> None:
        self._headless = headless
        self._browser_type = browser_type
        self._launch_args = launch_args or []
        self._slow_mo = slow_mo_ms
        self._playwright: Playwright | None = None
        self._log = logger.bind(component="launcher", browser_type=browser_type)

    async def start(self) -> Playwright:
        if self._playwright is None:
            self._playwright = await async_playwright().start()
            self._log.info("Playwright started", headless=self._headless)
        return self._playwright

    async def launch(self) -> Browser:
        playwright = await self.start()
        options: dict[str, Any] = {"headless": self._headless, "args": self._launch_args}
        if self._slow_mo is not None:
            options["slow_mo"] = self._slow_mo
        browser = await getattr(playwright, self._browser_type).launch(**options)
        self._log.info("Browser launched")
        return browser

    async def stop(self) -> None:
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
            self._log.info("Playwright stopped")
