"""
Browser session capture with cookie persistence.

Handles saving authenticated cookies after a login and restoring them into a
fresh browser context so later jobs can skip the login form.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from playwright.async_api import BrowserContext

    from panelrunner.storage.interfaces import SessionStore

logger = structlog.get_logger(__name__)


def earliest_cookie_expiry(cookies: list[dict[str, Any]]) -> datetime | None:
    """Return the earliest expiry among cookies that carry one (session cookies use -1)."""
    expirations = [
        float(cookie["expires"])
        for cookie in cookies
        if cookie.get("expires") not in (None, -1) and float(cookie["expires"]) > 0
    ]
    if not expirations:
        return None
    return datetime.fromtimestamp(min(expirations), tz=UTC)


class SessionCapture:
    """
    Moves authentication cookies between browser contexts and the session store.

    Features:
    - Cookie capture with earliest-expiry calculation
    - Fallback lifetime when every cookie is a session cookie
    - Restoration into a new context
    """

    def __init__(self, store: SessionStore, default_ttl_seconds: int = 86400) -> None:
        self._store = store
        self._default_ttl = timedelta(seconds=default_ttl_seconds)
        self._log = logger.bind(component="session_capture")

    async def save_from_context(
        self,
        context: BrowserContext,
        user_id: str,
        credential_id: str,
    ) -> datetime:
        """
        Persist the context's cookies as the current session.

        Returns:
            The expiry stored with the session
        """
        cookies = [dict(cookie) for cookie in await context.cookies()]
        earliest = earliest_cookie_expiry(cookies)
        expires_at = earliest or datetime.now(UTC) + self._default_ttl

        session_data = {
            "cookies": cookies,
            "earliestExpiration": earliest.timestamp() if earliest else None,
            "capturedAt": datetime.now(UTC).isoformat(),
        }
        await self._store.save_session(user_id, credential_id, session_data, expires_at)

        self._log.info(
            "Session captured",
            user_id=user_id,
            credential_id=credential_id,
            cookie_count=len(cookies),
            expires_at=expires_at.isoformat(),
            from_cookie=earliest is not None,
        )
        return expires_at

    async def restore_into_context(
        self,
        context: BrowserContext,
        user_id: str,
        credential_id: str,
    ) -> bool:
        """
        Add the current session's cookies to a context.

        Returns:
            True if an active session was found and restored
        """
        session = await self._store.get_active_session(user_id, credential_id)
        if session is None or not session.cookies:
            self._log.debug(
                "No active session to restore",
                user_id=user_id,
                credential_id=credential_id,
            )
            return False

        await context.add_cookies(session.cookies)
        self._log.info(
            "Session restored",
            user_id=user_id,
            credential_id=credential_id,
            cookie_count=len(session.cookies),
        )
        return True
