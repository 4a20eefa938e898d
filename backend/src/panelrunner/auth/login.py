"""
Login state machine with a bounded captcha loop.

Used both for explicit ``login`` jobs and for automatic re-authentication
when an action reports an expired session.

States::

    NAVIGATING_TO_LOGIN -> FILLING_CREDENTIALS -> [SOLVING_CAPTCHA] -> SUBMITTING
        -> CHECKING_OUTCOME -> SUCCESS | CAPTCHA_ERROR | FAILED

CAPTCHA_ERROR reloads the login page for a fresh captcha and returns to
FILLING_CREDENTIALS until the attempt limit is reached. FAILED is terminal.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum, auto
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

import aiofiles
import structlog

from panelrunner.auth import login_form
from panelrunner.errors import CaptchaExhaustedError, CaptchaSolverError, LoginRejectedError
from panelrunner.storage.interfaces import CaptchaStatus

if TYPE_CHECKING:
    from playwright.async_api import Page

    from panelrunner.auth.captcha import CaptchaSolver
    from panelrunner.auth.session_capture import SessionCapture
    from panelrunner.storage.interfaces import CaptchaLog

logger = structlog.get_logger(__name__)


class LoginState(StrEnum):
    """Step of a login attempt."""

    NAVIGATING_TO_LOGIN = auto()
    FILLING_CREDENTIALS = auto()
    SOLVING_CAPTCHA = auto()
    SUBMITTING = auto()
    CHECKING_OUTCOME = auto()
    SUCCESS = auto()
    CAPTCHA_ERROR = auto()
    FAILED = auto()


@dataclass(frozen=True)
class LoginRequest:
    """Everything needed to log in to one target account."""

    user_id: str
    credential_id: str
    username: str
    password: str
    login_url: str
    dashboard_url: str | None = None
    target_name: str = ""

    def __repr__(self) -> str:
        return (
            f"LoginRequest(credential_id={self.credential_id!r}, "
            f"username={self.username!r}, login_url={self.login_url!r})"
        )


@dataclass(frozen=True)
class LoginOutcome:
    """Result of a successful login."""

    attempts: int
    final_url: str
    session_expires_at: datetime


def matches_dashboard(url: str, dashboard_url: str) -> bool:
    """True when ``url`` is on the dashboard's host and under its path."""
    current = urlsplit(url)
    expected = urlsplit(dashboard_url)
    if (current.hostname or "").lower() != (expected.hostname or "").lower():
        return False
    if expected.port is not None and current.port != expected.port:
        return False

    prefix = expected.path.rstrip("/")
    path = current.path.rstrip("/")
    return path == prefix or path.startswith(prefix + "/") or not prefix


class LoginStateMachine:
    """
    Performs one login against a target, solving captchas as needed.

    Features:
    - Bounded captcha retries with fixed backoff
    - Dashboard URL check for success
    - Captcha attempt logging for observability
    - Session cookie capture on success
    """

    def __init__(
        self,
        session_capture: SessionCapture,
        solver: CaptchaSolver | None = None,
        captcha_log: CaptchaLog | None = None,
        captcha_dir: Path | None = None,
        max_attempts: int = 5,
        backoff_seconds: float = 3.0,
        settle_seconds: float = 3.0,
    ) -> None:
        self._capture = session_capture
        self._solver = solver
        self._captcha_log = captcha_log
        self._captcha_dir = captcha_dir
        self._max_attempts = max_attempts
        self._backoff = backoff_seconds
        self._settle = settle_seconds
        self._log = logger.bind(component="login")

    async def login(self, page: Page, request: LoginRequest) -> LoginOutcome:
        """
        Run the state machine to completion.

        Raises:
            CaptchaExhaustedError: If every allowed attempt hit a captcha error
            LoginRejectedError: If the login failed for another reason
        """
        log = self._log.bind(credential_id=request.credential_id, target=request.target_name)
        state = LoginState.NAVIGATING_TO_LOGIN
        attempt = 0
        captcha_record: int | None = None
        failure = "Login failed"

        while True:
            log.debug("Login state", state=state, attempt=attempt)

            if state == LoginState.NAVIGATING_TO_LOGIN:
                await page.goto(request.login_url)
                await page.wait_for_load_state("networkidle")
                state = LoginState.FILLING_CREDENTIALS

            elif state == LoginState.FILLING_CREDENTIALS:
                attempt += 1
                captcha_record = None
                log.info("Login attempt", attempt=attempt, max_attempts=self._max_attempts)
                if not await login_form.fill_credentials(page, request.username, request.password):
                    failure = "Login form not found on the login page"
                    state = LoginState.FAILED
                elif await login_form.find_captcha(page) is not None:
                    state = LoginState.SOLVING_CAPTCHA
                else:
                    state = LoginState.SUBMITTING

            elif state == LoginState.SOLVING_CAPTCHA:
                answered, captcha_record = await self._solve_captcha(page, log)
                state = LoginState.SUBMITTING if answered else LoginState.CAPTCHA_ERROR

            elif state == LoginState.SUBMITTING:
                if not await login_form.submit_login(page):
                    failure = "Login button not found"
                    state = LoginState.FAILED
                else:
                    await asyncio.sleep(self._settle)
                    state = LoginState.CHECKING_OUTCOME

            elif state == LoginState.CHECKING_OUTCOME:
                state, failure = await self._check_outcome(page, request)

            elif state == LoginState.CAPTCHA_ERROR:
                await self._mark_captcha(captcha_record, CaptchaStatus.FAIL)
                if attempt >= self._max_attempts:
                    log.warning("Captcha attempts exhausted", attempts=attempt)
                    raise CaptchaExhaustedError(
                        f"Captcha could not be solved after {attempt} attempts",
                        attempts=attempt,
                    )
                await asyncio.sleep(self._backoff)
                await page.reload()
                await page.wait_for_load_state("networkidle")
                state = LoginState.FILLING_CREDENTIALS

            elif state == LoginState.FAILED:
                await self._mark_captcha(captcha_record, CaptchaStatus.FAIL)
                log.warning("Login rejected", reason=failure, url=page.url)
                raise LoginRejectedError(failure)

            else:
                await self._mark_captcha(captcha_record, CaptchaStatus.SUCCESS)
                expires_at = await self._capture.save_from_context(
                    page.context, request.user_id, request.credential_id
                )
                log.info("Login successful", attempts=attempt, url=page.url)
                return LoginOutcome(
                    attempts=attempt,
                    final_url=page.url,
                    session_expires_at=expires_at,
                )

    async def _check_outcome(
        self,
        page: Page,
        request: LoginRequest,
    ) -> tuple[LoginState, str]:
        """Classify the page after submit as success, captcha error or failure."""
        for check in range(2):
            if await login_form.captcha_error_visible(page):
                return LoginState.CAPTCHA_ERROR, "Captcha rejected"

            if self._on_dashboard(page.url, request):
                if await login_form.password_field_visible(page):
                    return LoginState.FAILED, "Password field still visible after reaching the dashboard"
                return LoginState.SUCCESS, ""

            if check == 0:
                await asyncio.sleep(self._settle)

        return LoginState.FAILED, "Login rejected: dashboard not reached"

    @staticmethod
    def _on_dashboard(url: str, request: LoginRequest) -> bool:
        if request.dashboard_url:
            return matches_dashboard(url, request.dashboard_url)
        # Without a known dashboard, any navigation away from the login URL counts.
        return urlsplit(url)[:3] != urlsplit(request.login_url)[:3]

    async def _solve_captcha(self, page: Page, log: structlog.BoundLogger) -> tuple[bool, int | None]:
        """
        Read the captcha and type the answer.

        Returns:
            (answered, captcha log record id)
        """
        found = await login_form.find_captcha(page)
        if found is None:
            return True, None
        if self._solver is None:
            log.warning("Captcha present but no solver configured")
            return False, None

        captcha_input, image = found
        picture = await login_form.capture_captcha(page, captcha_input, image)
        image_path = await self._store_image(picture)

        try:
            solution = await self._solver.solve(picture)
        except CaptchaSolverError as e:
            log.warning("Captcha solver failed", error=str(e))
            record = await self._log_captcha(image_path, f"error: {e}")
            return False, record

        record = await self._log_captcha(image_path, solution.raw_response)
        if solution.text is None:
            log.info("Captcha unreadable")
            return False, record

        await captcha_input.fill(solution.text)
        return True, record

    async def _store_image(self, picture: bytes) -> str | None:
        if self._captcha_dir is None:
            return None
        self._captcha_dir.mkdir(parents=True, exist_ok=True)
        path = self._captcha_dir / f"captcha_{int(time.time() * 1000)}.png"
        async with aiofiles.open(path, "wb") as f:
            await f.write(picture)
        return str(path)

    async def _log_captcha(self, image_path: str | None, response: str) -> int | None:
        if self._captcha_log is None:
            return None
        try:
            return await self._captcha_log.create(image_path, response, CaptchaStatus.PENDING)
        except Exception as e:
            self._log.warning("Failed to log captcha attempt", error=str(e))
            return None

    async def _mark_captcha(self, record_id: int | None, status: CaptchaStatus) -> None:
        if self._captcha_log is None or record_id is None:
            return
        try:
            await self._captcha_log.update_status(record_id, status)
        except Exception as e:
            self._log.warning("Failed to update captcha log", record_id=record_id, error=str(e))
