"""
Unit tests for the player list actions.

Browser interaction is not exercised here; these cover parameter checks,
the expired-session check and executor registration.
"""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from playwright.async_api import Error as PlaywrightError

from conftest import make_page
from panelrunner.auth import login_form
from panelrunner.errors import BrowserSessionError
from panelrunner.execution.actions import CancellationToken, ExecutorRegistry
from panelrunner.execution.panel_actions import (
    NewAccountAction,
    RechargeAction,
    RedeemAction,
    parse_amount,
    register_panel_actions,
    target_username,
)


class TestParams:
    """Tests for parameter helpers."""

    def test_target_username_aliases(self) -> None:
        """Test every accepted username key is read and trimmed."""
        assert target_username({"targetUsername": " p1 "}) == "p1"
        assert target_username({"account_name": "p2"}) == "p2"
        assert target_username({}) == ""

    def test_parse_amount(self) -> None:
        """Test amounts parse to Decimal and junk is rejected."""
        assert parse_amount("10.50") == Decimal("10.50")
        assert parse_amount(5) == Decimal(5)
        assert parse_amount("abc") is None
        assert parse_amount(True) is None
        assert parse_amount("NaN") is None


class TestExecute:
    """Tests for PanelAction.execute."""

    @pytest.mark.asyncio
    async def test_rejects_non_positive_amount(self) -> None:
        """Test a zero amount fails validation without touching the page."""
        result = await RechargeAction().execute(
            make_page(), {"targetUsername": "p1", "amount": 0}, CancellationToken()
        )

        assert result.success is False
        assert result.message == "amount must be greater than 0"
        assert result.needs_login is False

    @pytest.mark.asyncio
    async def test_new_account_requires_password(self) -> None:
        """Test new_account needs a newPassword param."""
        result = await NewAccountAction().execute(
            make_page(), {"targetUsername": "p1"}, CancellationToken()
        )
        assert result.message == "newPassword is required"

    @pytest.mark.asyncio
    async def test_login_form_means_needs_login(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test a visible password field reports needs_login and skips the action."""
        monkeypatch.setattr(login_form, "password_field_visible", AsyncMock(return_value=True))
        action = RedeemAction()
        action.perform = AsyncMock()  # type: ignore[method-assign]

        result = await action.execute(
            make_page(), {"targetUsername": "p1", "amount": "5"}, CancellationToken()
        )

        assert result.needs_login is True
        assert result.message == "Session expired"
        action.perform.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_browser_error_becomes_failed_result(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test an element-level browser error becomes a failed result."""
        monkeypatch.setattr(login_form, "password_field_visible", AsyncMock(return_value=False))
        action = RechargeAction()
        action.perform = AsyncMock(side_effect=PlaywrightError("frame detached"))  # type: ignore[method-assign]

        result = await action.execute(
            make_page(), {"targetUsername": "p1", "amount": "5"}, CancellationToken()
        )

        assert result.success is False
        assert "frame detached" in result.message
        assert result.to_payload()["username"] == "p1"

    @pytest.mark.asyncio
    async def test_closed_target_raises_session_error(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test a closed page error is raised for the session cache instead of returned."""
        monkeypatch.setattr(login_form, "password_field_visible", AsyncMock(return_value=False))
        action = RechargeAction()
        action.perform = AsyncMock(  # type: ignore[method-assign]
            side_effect=PlaywrightError("Target page, context or browser has been closed")
        )

        with pytest.raises(BrowserSessionError) as exc_info:
            await action.execute(
                make_page(), {"targetUsername": "p1", "amount": "5"}, CancellationToken()
            )
        assert "Page lost during recharge" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_error_on_closed_page_raises_session_error(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test any browser error on a page reporting closed is treated as a lost page."""
        monkeypatch.setattr(login_form, "password_field_visible", AsyncMock(return_value=False))
        action = RedeemAction()
        action.perform = AsyncMock(side_effect=PlaywrightError("frame detached"))  # type: ignore[method-assign]
        page = make_page()
        page.is_closed.return_value = True

        with pytest.raises(BrowserSessionError):
            await action.execute(page, {"targetUsername": "p1", "amount": "5"}, CancellationToken())


class TestRegistration:
    """Tests for register_panel_actions."""

    def test_registers_for_any_target(self) -> None:
        """Test default registration serves every target."""
        registry = ExecutorRegistry()
        register_panel_actions(registry)

        assert ("target-9", "recharge") in registry
        assert isinstance(registry.resolve("target-9", "redeem"), RedeemAction)

    def test_registers_for_one_target(self) -> None:
        """Test registration can be limited to one target."""
        registry = ExecutorRegistry()
        register_panel_actions(registry, target_id="target-1")

        assert ("target-1", "new_account") in registry
        assert ("target-2", "new_account") not in registry
