"""
Cache of live browser pages per (tenant, target).

Provides:
- One browser per tenant, one context and page per target account
- Lease-style access so only the cache ever closes a session
- Lazy recreation of pages the browser reports closed
- Cleanup of pages left behind by abandoned (timed out) attempts
- Eviction after repeated failures and on shutdown
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass, field
from enum import StrEnum, auto
from typing import TYPE_CHECKING, Any, AsyncIterator, Protocol

import structlog

from panelrunner.errors import BrowserSessionError

if TYPE_CHECKING:
    from playwright.async_api import Browser, BrowserContext, Page

logger = structlog.get_logger(__name__)

SessionKey = tuple[str, str]


class BrowserLauncher(Protocol):
    async def launch(self) -> Browser: ...

    async def stop(self) -> None: ...


class SessionState(StrEnum):
    """State of a cached browser session."""

    IDLE = auto()
    """No job is using the page."""

    LEASED = auto()
    """A job currently holds the page."""


@dataclass
class BrowserSession:
    """
    Cached page for one target account of one tenant.

    Owned by the cache; workers borrow it through a lease.
    """

    tenant_id: str
    """Tenant the session belongs to."""

    target_id: str
    """Target account the page is logged in to."""

    context: BrowserContext
    """Browser context holding the target's cookies."""

    page: Page
    """The reused page."""

    state: SessionState = SessionState.IDLE
    """Whether a job currently holds the page."""

    created_at: float = field(default_factory=time.time)
    """Unix timestamp when the session was opened."""

    last_used_at: float = field(default_factory=time.time)
    """Unix timestamp of the last lease."""

    use_count: int = 0
    """Number of leases served."""

    failure_count: int = 0
    """Consecutive failed jobs on this page."""

    needs_reset: bool = False
    """Set after an abandoned attempt; the next user should re-navigate."""

    @property
    def key(self) -> SessionKey:
        return (self.tenant_id, self.target_id)

    @property
    def idle_seconds(self) -> float:
        return time.time() - self.last_used_at

    def touch(self) -> None:
        self.last_used_at = time.time()


@dataclass
class SessionLease:
    """A job's borrowed view of a cached session."""

    session: BrowserSession
    fresh: bool
    """True if the page was created for this lease."""

    needs_reset: bool = False
    """True if the page is new or was left mid-action by an abandoned attempt."""

    opened_pages: list[Page] = field(default_factory=list)
    """Popups and tabs opened in the context while the lease was held."""

    @property
    def page(self) -> Page:
        return self.session.page

    @property
    def context(self) -> BrowserContext:
        return self.session.context


class BrowserSessionCache:
    """
    Keyed pool of live browser pages.

    Exclusive use of a page is guaranteed by the scheduler running at most one
    job per target at a time, not by locking here.

    Usage:
        async with cache.lease("tenant-1", "target-9") as lease:
            await executor.execute(lease.page, params, token)
    """

    def __init__(
        self,
        launcher: BrowserLauncher,
        unusable_threshold: int = 2,
        context_options: dict[str, Any] | None = None,
    ) -> None:
        self._launcher = launcher
        self._unusable_threshold = unusable_threshold
        self._context_options = context_options or {"viewport": {"width": 1280, "height": 800}}

        self._browsers: dict[str, Browser] = {}
        self._sessions: dict[SessionKey, BrowserSession] = {}
        self._abandoned: dict[SessionKey, list[Page]] = {}
        self._key_locks: dict[SessionKey, asyncio.Lock] = {}
        self._tenant_locks: dict[str, asyncio.Lock] = {}
        self._closed = False

        self._log = logger.bind(component="session_cache")

        self._stats = {
            "browsers_launched": 0,
            "sessions_created": 0,
            "sessions_reused": 0,
            "sessions_evicted": 0,
            "pages_released": 0,
            "create_failures": 0,
        }

    def __len__(self) -> int:
        return len(self._sessions)

    @property
    def statistics(self) -> dict[str, Any]:
        return {
            **self._stats,
            "sessions": len(self._sessions),
            "leased": sum(1 for s in self._sessions.values() if s.state == SessionState.LEASED),
            "browsers": len(self._browsers),
        }

    def get(self, tenant_id: str, target_id: str) -> BrowserSession | None:
        return self._sessions.get((tenant_id, target_id))

    async def get_page(self, tenant_id: str, target_id: str) -> Page:
        """Return the cached live page for the pair, opening one if needed."""
        session, _ = await self._acquire(tenant_id, target_id)
        return session.page

    @contextlib.asynccontextmanager
    async def lease(self, tenant_id: str, target_id: str) -> AsyncIterator[SessionLease]:
        """
        Borrow the session for the duration of one job.

        Pages opened during a lease that ends normally are closed on exit. If
        the lease ends with an exception (including cancellation on timeout)
        they are kept for ``release_attempt_resources``.

        Raises:
            BrowserSessionError: If a browser or page cannot be opened
        """
        session, fresh = await self._acquire(tenant_id, target_id)
        lease = SessionLease(
            session=session,
            fresh=fresh,
            needs_reset=fresh or session.needs_reset,
        )
        session.needs_reset = False
        session.state = SessionState.LEASED
        session.use_count += 1

        def on_page(page: Page) -> None:
            lease.opened_pages.append(page)

        session.context.on("page", on_page)
        try:
            yield lease
        except BaseException:
            self._abandoned.setdefault(session.key, []).extend(lease.opened_pages)
            raise
        else:
            for page in lease.opened_pages:
                if page is not session.page and not page.is_closed():
                    await self._close_page(page)
        finally:
            session.context.remove_listener("page", on_page)
            session.state = SessionState.IDLE
            session.touch()

    async def release_attempt_resources(self, tenant_id: str, target_id: str) -> int:
        """
        Close pages an abandoned attempt left open and flag the session for reset.

        The cached page itself stays open so the next job can reuse the login.

        Returns:
            Number of pages closed
        """
        key = (tenant_id, target_id)
        closed = 0
        for page in self._abandoned.pop(key, []):
            if not page.is_closed():
                await self._close_page(page)
                closed += 1

        session = self._sessions.get(key)
        if session is not None:
            session.needs_reset = True

        self._stats["pages_released"] += closed
        self._log.info(
            "Released attempt resources",
            tenant_id=tenant_id,
            target_id=target_id,
            pages_closed=closed,
        )
        return closed

    def report_success(self, tenant_id: str, target_id: str) -> None:
        session = self._sessions.get((tenant_id, target_id))
        if session is not None:
            session.failure_count = 0

    async def report_failure(self, tenant_id: str, target_id: str) -> bool:
        """
        Count a failed job on the pair's page.

        Returns:
            True if the session reached the threshold and was evicted
        """
        session = self._sessions.get((tenant_id, target_id))
        if session is None:
            return False

        session.failure_count += 1
        if session.failure_count < self._unusable_threshold and not session.page.is_closed():
            return False

        self._log.warning(
            "Evicting unusable session",
            tenant_id=tenant_id,
            target_id=target_id,
            failures=session.failure_count,
        )
        await self._discard(session)
        return True

    async def evict(self, tenant_id: str, target_id: str) -> bool:
        session = self._sessions.get((tenant_id, target_id))
        if session is None:
            return False
        await self._discard(session)
        return True

    async def close_tenant(self, tenant_id: str) -> None:
        """Close every session and the browser of one tenant."""
        for session in [s for s in self._sessions.values() if s.tenant_id == tenant_id]:
            await self._discard(session)

        browser = self._browsers.pop(tenant_id, None)
        if browser is not None:
            await self._close_browser(tenant_id, browser)

    async def close_all(self) -> None:
        """Close all sessions and browsers and stop the launcher."""
        if self._closed:
            return
        self._closed = True
        self._log.info("Closing session cache", sessions=len(self._sessions))

        for session in list(self._sessions.values()):
            await self._discard(session)
        for tenant_id, browser in list(self._browsers.items()):
            await self._close_browser(tenant_id, browser)
        self._browsers.clear()
        self._abandoned.clear()

        await self._launcher.stop()
        self._log.info("Session cache closed", stats=self._stats)

    async def _acquire(self, tenant_id: str, target_id: str) -> tuple[BrowserSession, bool]:
        if self._closed:
            raise BrowserSessionError("Session cache is closed")

        key = (tenant_id, target_id)
        lock = self._key_locks.setdefault(key, asyncio.Lock())
        async with lock:
            session = self._sessions.get(key)
            if session is not None and not session.page.is_closed():
                session.touch()
                self._stats["sessions_reused"] += 1
                return session, False

            if session is not None:
                self._log.info(
                    "Cached page closed, recreating",
                    tenant_id=tenant_id,
                    target_id=target_id,
                )
                await self._discard(session)

            return await self._create(tenant_id, target_id), True

    async def _create(self, tenant_id: str, target_id: str) -> BrowserSession:
        browser = await self._browser_for(tenant_id)
        try:
            context = await browser.new_context(**self._context_options)
            page = await context.new_page()
        except Exception as e:
            self._stats["create_failures"] += 1
            self._log.error(
                "Failed to open browser session",
                tenant_id=tenant_id,
                target_id=target_id,
                error=str(e),
            )
            raise BrowserSessionError(f"Could not open browser session: {e}") from e

        session = BrowserSession(
            tenant_id=tenant_id,
            target_id=target_id,
            context=context,
            page=page,
        )
        self._sessions[session.key] = session
        self._stats["sessions_created"] += 1
        self._log.info("Browser session created", tenant_id=tenant_id, target_id=target_id)
        return session

    async def _browser_for(self, tenant_id: str) -> Browser:
        lock = self._tenant_locks.setdefault(tenant_id, asyncio.Lock())
        async with lock:
            browser = self._browsers.get(tenant_id)
            if browser is not None and browser.is_connected():
                return browser

            if browser is not None:
                self._log.warning("Browser disconnected, relaunching", tenant_id=tenant_id)
                for session in [s for s in self._sessions.values() if s.tenant_id == tenant_id]:
                    self._sessions.pop(session.key, None)

            try:
                browser = await self._launcher.launch()
            except Exception as e:
                self._stats["create_failures"] += 1
                raise BrowserSessionError(f"Could not launch browser: {e}") from e

            self._browsers[tenant_id] = browser
            self._stats["browsers_launched"] += 1
            return browser

    async def _discard(self, session: BrowserSession) -> None:
        self._sessions.pop(session.key, None)
        self._abandoned.pop(session.key, None)
        self._stats["sessions_evicted"] += 1
        try:
            await session.context.close()
        except Exception as e:
            self._log.debug(
                "Error closing context",
                tenant_id=session.tenant_id,
                target_id=session.target_id,
                error=str(e),
            )

    async def _close_page(self, page: Page) -> None:
        try:
            await page.close()
        except Exception as e:
            self._log.debug("Error closing page", error=str(e))

    async def _close_browser(self, tenant_id: str, browser: Browser) -> None:
        try:
            await browser.close()
        except Exception as e:
            self._log.debug("Error closing browser", tenant_id=tenant_id, error=str(e))
