"""Browser launching, the per-target session cache and screenshot streaming."""

from panelrunner.browser.launcher import PlaywrightLauncher
from panelrunner.browser.screenshots import ScreenshotStreamer
from panelrunner.browser.session_cache import BrowserSessionCache, SessionLease

__all__ = ["BrowserSessionCache", "PlaywrightLauncher", "ScreenshotStreamer", "SessionLease"]
