"""
Executors for layui-style player management panels.

All four actions work inside the "Player List" tab, whose content is an
iframe. Results are read from the layer popup the panel shows after submit.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

import structlog
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from panelrunner.auth import login_form
from panelrunner.errors import BrowserSessionError
from panelrunner.execution.actions import ActionResult, CancellationToken

if TYPE_CHECKING:
    from playwright.async_api import FrameLocator, Page

    from panelrunner.execution.actions import ExecutorRegistry

logger = structlog.get_logger(__name__)

MENU_LINK = "Player Management"
LIST_LINK = "Player List"
POPUP_SELECTOR = ".layui-layer-content, .layui-layer-dialog, .layui-layer-msg"
NO_DATA_SELECTOR = "tbody > tr > td span.help-block"
DEAD_PAGE_MARKERS = ("target closed", "has been closed", "crashed")


@dataclass(frozen=True)
class Outcome:
    """Popup text fragment and the result it stands for."""

    keyword: str
    success: bool
    message: str


class PanelAction:
    """
    Base class for player list actions.

    Subclasses implement ``validate`` and ``perform``. The base class takes
    care of the expired-session check and turns browser errors into failed
    results. A page that was closed or crashed is reported as a
    ``BrowserSessionError`` so the session cache can evict it.
    """

    action_name = "panel_action"

    def __init__(self, popup_timeout_ms: float = 3000, table_timeout_ms: float = 10000) -> None:
        self._popup_timeout = popup_timeout_ms
        self._table_timeout = table_timeout_ms
        self._log = logger.bind(component="panel_action", action=self.action_name)

    async def execute(
        self,
        page: Page,
        params: dict[str, Any],
        token: CancellationToken,
    ) -> ActionResult:
        problem = self.validate(params)
        if problem:
            return ActionResult(success=False, message=problem)

        try:
            if await login_form.password_field_visible(page):
                self._log.info("Login form shown instead of panel")
                return ActionResult(success=False, message="Session expired", needs_login=True)
            return await self.perform(page, params, token)
        except PlaywrightError as e:
            if page_unusable(page, e):
                raise BrowserSessionError(f"Page lost during {self.action_name}: {e}") from e
            self._log.warning("Panel action failed", error=str(e))
            return ActionResult(
                success=False,
                message=f"Error during {self.action_name}: {e}",
                username=target_username(params),
            )

    def validate(self, params: dict[str, Any]) -> str | None:
        if not target_username(params):
            return "targetUsername is required"
        return None

    async def perform(
        self,
        page: Page,
        params: dict[str, Any],
        token: CancellationToken,
    ) -> ActionResult:
        raise NotImplementedError

    async def open_player_list(self, page: Page) -> FrameLocator:
        await page.reload()
        await page.wait_for_load_state("networkidle")
        await page.get_by_role("link", name=MENU_LINK).click()
        await page.get_by_role("link", name=LIST_LINK).click()
        await page.wait_for_load_state("networkidle")
        return page.get_by_role("tabpanel", name=LIST_LINK).frame_locator("iframe")

    async def find_account(self, frame: FrameLocator, username: str) -> str | None:
        """
        Search the player table for an exact account match.

        Returns:
            None when found, otherwise the failure message
        """
        await frame.get_by_role("textbox", name="Account").fill(username)
        await frame.get_by_role("button", name="Search").click()

        try:
            await frame.locator("tbody").wait_for(timeout=self._table_timeout)
        except PlaywrightTimeoutError:
            return "Table loading timeout"

        if await frame.locator(NO_DATA_SELECTOR).filter(has_text="No data.").count() > 0:
            return "No account found"

        first_row = frame.locator("tbody > tr").first
        try:
            await first_row.wait_for(timeout=self._table_timeout / 2)
        except PlaywrightTimeoutError:
            return "No account found"

        found = ((await first_row.locator("td").nth(2).text_content()) or "").strip()
        if found != username:
            return "No account found"
        return None

    async def open_row_menu(self, frame: FrameLocator, entry: str) -> None:
        await frame.get_by_role("button", name="editor").click()
        await frame.locator("a").filter(has_text=entry).click()

    async def read_outcome(
        self,
        frame: FrameLocator,
        outcomes: tuple[Outcome, ...],
        fallback: str = "Try again",
    ) -> tuple[bool, str]:
        """Wait for the result popup and match its text against known outcomes."""
        popup = frame.locator(POPUP_SELECTOR).first
        try:
            await popup.wait_for(state="visible", timeout=self._popup_timeout)
        except PlaywrightTimeoutError:
            return False, fallback

        text = ((await popup.text_content()) or "").strip()
        self._log.debug("Panel popup", text=text)
        lowered = text.lower()
        for outcome in outcomes:
            if outcome.keyword.lower() in lowered:
                return outcome.success, outcome.message
        return False, text or fallback


class NewAccountAction(PanelAction):
    action_name = "new_account"

    OUTCOMES = (
        Outcome("already been", False, "Account has already been created"),
        Outcome("success", True, "Account created successfully"),
    )

    def validate(self, params: dict[str, Any]) -> str | None:
        if not target_username(params):
            return "targetUsername is required"
        if not new_password(params):
            return "newPassword is required"
        return None

    async def perform(self, page, params, token) -> ActionResult:
        username = target_username(params)
        frame = await self.open_player_list(page)
        await frame.get_by_role("button", name="New").click()
        await frame.get_by_role("textbox", name="Input Account").fill(username)
        await frame.get_by_role("textbox", name="Input Password").fill(new_password(params))
        await frame.get_by_text("Submit").click()

        success, message = await self.read_outcome(frame, self.OUTCOMES)
        return ActionResult(success=success, message=message, username=username)


class PasswordResetAction(PanelAction):
    action_name = "password_reset"

    OUTCOMES = (
        Outcome("success", True, "Password reset successful"),
        Outcome("failed", False, "Old password cannot be the new password"),
    )

    def validate(self, params: dict[str, Any]) -> str | None:
        if not target_username(params):
            return "targetUsername is required"
        if not new_password(params):
            return "newPassword is required"
        return None

    async def perform(self, page, params, token) -> ActionResult:
        username = target_username(params)
        frame = await self.open_player_list(page)
        missing = await self.find_account(frame, username)
        if missing:
            return ActionResult(success=False, message=missing, username=username)

        if token.cancelled:
            return ActionResult(success=False, message="Cancelled before submit", username=username)

        await self.open_row_menu(frame, "Reset Password")
        await frame.get_by_role("textbox", name="Input Password").fill(new_password(params))
        await frame.get_by_role("button", name="Submit").click()

        success, message = await self.read_outcome(frame, self.OUTCOMES)
        return ActionResult(success=success, message=message, username=username)


class BalanceAction(PanelAction):
    """Shared flow for recharge and redeem: find the row, fill amount and remark."""

    menu_entry = ""
    OUTCOMES: tuple[Outcome, ...] = ()

    def validate(self, params: dict[str, Any]) -> str | None:
        if not target_username(params):
            return "targetUsername is required"
        amount = parse_amount(params.get("amount"))
        if amount is None or amount <= 0:
            return "amount must be greater than 0"
        return None

    async def perform(self, page, params, token) -> ActionResult:
        username = target_username(params)
        amount = parse_amount(params.get("amount")) or Decimal(0)

        frame = await self.open_player_list(page)
        missing = await self.find_account(frame, username)
        if missing:
            return ActionResult(success=False, message=missing, username=username, amount=float(amount))

        if token.cancelled:
            return ActionResult(
                success=False,
                message="Cancelled before submit",
                username=username,
                amount=float(amount),
            )

        await self.open_row_menu(frame, self.menu_entry)
        await frame.get_by_placeholder("Input score").fill(str(amount))
        await frame.get_by_role("textbox", name="Input remark").fill(str(params.get("remarks") or ""))
        await frame.get_by_role("button", name="Submit").click()

        success, message = await self.read_outcome(
            frame, self.OUTCOMES, fallback="Try again, maybe the amount is insufficient"
        )
        return ActionResult(success=success, message=message, username=username, amount=float(amount))


class RechargeAction(BalanceAction):
    action_name = "recharge"
    menu_entry = "Recharge"

    OUTCOMES = (
        Outcome("greater than 0", False, "Amount should be greater than 0"),
        Outcome("insufficient", False, "Amount is insufficient"),
        Outcome("success", True, "Recharge successful"),
    )


class RedeemAction(BalanceAction):
    action_name = "redeem"
    menu_entry = "Redeem"

    OUTCOMES = (
        Outcome("greater than 0", False, "Amount should be greater than 0"),
        Outcome("insufficient", False, "Balance is insufficient"),
        Outcome("success", True, "Redeem successful"),
    )


def target_username(params: dict[str, Any]) -> str:
    for key in ("targetUsername", "target_username", "accountName", "account_name"):
        value = params.get(key)
        if value:
            return str(value).strip()
    return ""


def page_unusable(page: Page, error: Exception) -> bool:
    """True if the error means the page itself is gone rather than an element."""
    if page.is_closed():
        return True
    text = str(error).lower()
    return any(marker in text for marker in DEAD_PAGE_MARKERS)


def new_password(params: dict[str, Any]) -> str:
    for key in ("newPassword", "new_password"):
        value = params.get(key)
        if value:
            return str(value)
    return ""


def parse_amount(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        return None
    return amount if amount.is_finite() else None


def register_panel_actions(registry: ExecutorRegistry, target_id: str | None = None) -> None:
    """Register the player list actions for one target or for every target."""
    for action in (NewAccountAction(), PasswordResetAction(), RechargeAction(), RedeemAction()):
        if target_id is None:
            registry.register(action.action_name, action)
        else:
            registry.register(action.action_name, action, target_id=target_id)
