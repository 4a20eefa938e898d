"""
Unit tests for the login state machine.

Form helpers are patched so each test scripts what the page shows after
submit.
"""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import make_context, make_page
from panelrunner.auth import login_form
from panelrunner.auth.captcha import CaptchaSolution
from panelrunner.auth.login import LoginRequest, LoginStateMachine, matches_dashboard
from panelrunner.errors import CaptchaExhaustedError, CaptchaSolverError, LoginRejectedError
from panelrunner.storage.interfaces import CaptchaStatus

LOGIN_URL = "https://panel.example.com/login"
DASHBOARD_URL = "https://panel.example.com/admin/dashboard"


@pytest.fixture
def request_() -> LoginRequest:
    return LoginRequest(
        user_id="user-1",
        credential_id="cred-1",
        username="operator",
        password="s3cret",
        login_url=LOGIN_URL,
        dashboard_url=DASHBOARD_URL,
        target_name="Yolo Panel",
    )


@pytest.fixture
def capture() -> MagicMock:
    capture = MagicMock()
    capture.save_from_context = AsyncMock(return_value=datetime(2030, 1, 1, tzinfo=UTC))
    return capture


@pytest.fixture
def captcha_input() -> MagicMock:
    field = MagicMock()
    field.fill = AsyncMock()
    return field


@pytest.fixture
def form(monkeypatch: pytest.MonkeyPatch, captcha_input: MagicMock) -> MagicMock:
    """Patch the form helpers with a login page that has a captcha."""
    helpers = MagicMock()
    helpers.fill_credentials = AsyncMock(return_value=True)
    helpers.find_captcha = AsyncMock(return_value=(captcha_input, None))
    helpers.capture_captcha = AsyncMock(return_value=b"captcha-png")
    helpers.submit_login = AsyncMock(return_value=True)
    helpers.captcha_error_visible = AsyncMock(return_value=False)
    helpers.password_field_visible = AsyncMock(return_value=False)

    for name in (
        "fill_credentials",
        "find_captcha",
        "capture_captcha",
        "submit_login",
        "captcha_error_visible",
        "password_field_visible",
    ):
        monkeypatch.setattr(login_form, name, getattr(helpers, name))
    return helpers


def make_solver(text: str | None = "4821") -> MagicMock:
    solver = MagicMock()
    solver.solve = AsyncMock(return_value=CaptchaSolution(text=text, raw_response=text or "ERROR"))
    return solver


def machine(capture: MagicMock, solver: MagicMock | None, **kwargs) -> LoginStateMachine:
    return LoginStateMachine(
        capture,
        solver=solver,
        max_attempts=kwargs.pop("max_attempts", 5),
        backoff_seconds=0,
        settle_seconds=0,
        **kwargs,
    )


class TestMatchesDashboard:
    """Tests for dashboard URL matching."""

    def test_same_path(self) -> None:
        """Test the dashboard URL itself matches."""
        assert matches_dashboard(DASHBOARD_URL, DASHBOARD_URL)

    def test_sub_path_and_query(self) -> None:
        """Test paths under the dashboard and query strings match."""
        assert matches_dashboard(DASHBOARD_URL + "/players?page=2", DASHBOARD_URL)

    def test_different_host(self) -> None:
        """Test another host never matches."""
        assert not matches_dashboard("https://evil.example.com/admin/dashboard", DASHBOARD_URL)

    def test_prefix_is_not_partial_segment(self) -> None:
        """Test a path that only shares a prefix does not match."""
        assert not matches_dashboard("https://panel.example.com/admin/dashboard-old", DASHBOARD_URL)

    def test_login_page_does_not_match(self) -> None:
        """Test the login page is not taken for the dashboard."""
        assert not matches_dashboard(LOGIN_URL, DASHBOARD_URL)


class TestLoginStateMachine:
    """Tests for LoginStateMachine.login."""

    @pytest.mark.asyncio
    async def test_success_on_dashboard(self, form, capture, captcha_input, request_) -> None:
        """Test reaching the dashboard succeeds and captures the session."""
        page = make_page(DASHBOARD_URL)
        make_context(page)
        solver = make_solver("4821")

        outcome = await machine(capture, solver).login(page, request_)

        assert outcome.attempts == 1
        assert outcome.final_url == DASHBOARD_URL
        captcha_input.fill.assert_awaited_once_with("4821")
        page.goto.assert_awaited_once_with(LOGIN_URL)
        capture.save_from_context.assert_awaited_once_with(page.context, "user-1", "cred-1")

    @pytest.mark.asyncio
    async def test_captcha_exhausted_after_five_rounds(self, form, capture, request_) -> None:
        """Test five captcha errors give up with CaptchaExhaustedError."""
        page = make_page(LOGIN_URL)
        solver = make_solver("1111")
        form.captcha_error_visible.return_value = True

        with pytest.raises(CaptchaExhaustedError) as exc_info:
            await machine(capture, solver).login(page, request_)

        assert exc_info.value.attempts == 5
        assert solver.solve.await_count == 5
        assert page.reload.await_count == 4
        capture.save_from_context.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_captcha_recovers_on_later_round(self, form, capture, request_) -> None:
        """Test a later captcha round can still succeed."""
        page = make_page(LOGIN_URL)
        solver = make_solver("1111")
        calls = {"n": 0}

        async def error_then_ok(_page) -> bool:
            calls["n"] += 1
            if calls["n"] == 1:
                return True
            page.url = DASHBOARD_URL
            return False

        form.captcha_error_visible.side_effect = error_then_ok

        outcome = await machine(capture, solver).login(page, request_)

        assert outcome.attempts == 2
        assert solver.solve.await_count == 2

    @pytest.mark.asyncio
    async def test_unreadable_captcha_counts_as_round(self, form, capture, request_) -> None:
        """Test an unreadable captcha uses up a round."""
        page = make_page(LOGIN_URL)
        solver = make_solver(None)

        with pytest.raises(CaptchaExhaustedError):
            await machine(capture, solver, max_attempts=3).login(page, request_)

        assert solver.solve.await_count == 3
        form.submit_login.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_solver_error_counts_as_round(self, form, capture, request_) -> None:
        """Test a solver failure uses up a round."""
        page = make_page(LOGIN_URL)
        solver = MagicMock()
        solver.solve = AsyncMock(side_effect=CaptchaSolverError("API error: 500", status_code=500))

        with pytest.raises(CaptchaExhaustedError):
            await machine(capture, solver, max_attempts=2).login(page, request_)

        assert solver.solve.await_count == 2

    @pytest.mark.asyncio
    async def test_password_field_on_dashboard_is_rejected(self, form, capture, request_) -> None:
        """Test a password field after navigation is a rejected login."""
        page = make_page(DASHBOARD_URL)
        form.password_field_visible.return_value = True

        with pytest.raises(LoginRejectedError, match="Password field still visible"):
            await machine(capture, make_solver()).login(page, request_)

    @pytest.mark.asyncio
    async def test_dashboard_not_reached_is_rejected_without_retry(self, form, capture, request_) -> None:
        """Test staying off the dashboard fails without another round."""
        page = make_page(LOGIN_URL)
        solver = make_solver()

        with pytest.raises(LoginRejectedError, match="dashboard not reached"):
            await machine(capture, solver).login(page, request_)

        assert solver.solve.await_count == 1
        page.reload.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_form_is_rejected(self, form, capture, request_) -> None:
        """Test a page without the login form is rejected."""
        form.fill_credentials.return_value = False

        with pytest.raises(LoginRejectedError, match="Login form not found"):
            await machine(capture, make_solver()).login(make_page(LOGIN_URL), request_)

    @pytest.mark.asyncio
    async def test_no_captcha_skips_solver(self, form, capture, request_) -> None:
        """Test the solver is not called when no captcha is shown."""
        form.find_captcha.return_value = None
        page = make_page(DASHBOARD_URL)
        solver = make_solver()

        await machine(capture, solver).login(page, request_)

        solver.solve.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_captcha_log_marked(self, form, capture, request_, tmp_path) -> None:
        """Test the captcha log row is marked with the outcome."""
        page = make_page(DASHBOARD_URL)
        captcha_log = MagicMock()
        captcha_log.create = AsyncMock(return_value=7)
        captcha_log.update_status = AsyncMock()

        await machine(
            capture,
            make_solver("4821"),
            captcha_log=captcha_log,
            captcha_dir=tmp_path,
        ).login(page, request_)

        image_path = captcha_log.create.await_args.args[0]
        assert image_path.startswith(str(tmp_path))
        assert (tmp_path / image_path.split("/")[-1]).read_bytes() == b"captcha-png"
        captcha_log.update_status.assert_awaited_once_with(7, CaptchaStatus.SUCCESS)

    @pytest.mark.asyncio
    async def test_without_dashboard_url_any_navigation_succeeds(self, form, capture) -> None:
        """Test leaving the login page counts as success when no dashboard URL is set."""
        request = LoginRequest(
            user_id="u",
            credential_id="c",
            username="a",
            password="b",
            login_url=LOGIN_URL,
        )
        page = make_page("https://panel.example.com/home")

        outcome = await machine(capture, make_solver()).login(page, request)
        assert outcome.final_url == "https://panel.example.com/home"
