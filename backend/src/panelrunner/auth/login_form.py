"""
Login form detection and filling for operator consoles.

Selector lists cover the Element UI, LayUI and ASP.NET login pages the
supported consoles use, with generic fallbacks.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from playwright.async_api import Locator, Page

logger = structlog.get_logger(__name__)

USERNAME_SELECTORS = (
    'input[placeholder*="username" i]',
    'input[placeholder*="account" i]',
    'input[name="username"]',
    'input[name="txtLoginName"]',
    'input#txtLoginName',
    'input[name*="user" i]',
    'input[type="email"]',
)

PASSWORD_SELECTORS = (
    'input[placeholder*="password" i]',
    'input[name="password"]',
    'input[name="txtLoginPass"]',
    'input[type="password"]',
)

CAPTCHA_INPUT_SELECTORS = (
    "div.el-input.loginCode input.el-input__inner",
    'input.el-input__inner[placeholder="Please enter the verification code"]',
    'input.layui-input[name="captcha"]',
    "input#txtVerifyCode",
    'input[name="captcha"]',
    'input[placeholder="Please enter the verification code"]',
    'input[placeholder="Captcha"]',
    'input[placeholder="Code"]',
    'input[name*="captcha" i]',
    'input[id*="captcha" i]',
    'input[placeholder*="captcha" i]',
    'input[placeholder*="code" i]',
    'input[placeholder*="verification" i]',
    'input[placeholder*="verify" i]',
)

CAPTCHA_IMAGE_SELECTORS = (
    "img.imgCode",
    "canvas",
    'img[src*="captcha" i]',
    'div[class*="captcha" i]',
    'span[class*="captcha" i]',
    'img[alt*="captcha" i]',
    'img[title*="captcha" i]',
)

REMEMBER_ME_SELECTORS = (
    'input[id="remember"]',
    'input[name="remember"]',
    "span.el-checkbox__inner",
    "span.vs-checkbox",
)

LOGIN_BUTTON_SELECTORS = (
    'button.el-button.el-button--primary span:has-text("Sign in")',
    "button.el-button.el-button--primary",
    'input[name="btnLogin"]',
    'input[id="btnLogin"]',
    "button.layui-btn.layui-block",
    "button.btn.btn-primary.login-btn",
    'button[type="submit"]',
    'input[type="submit"]',
    'button:has-text("Sign in")',
    'button:has-text("Login")',
    'button:has-text("Log in")',
    'input[value*="Login" i]',
    'input[value*="Sign In" i]',
    'button[class*="login" i]',
    'button[class*="signin" i]',
    'a[class*="login" i]',
    'a[class*="signin" i]',
)

ERROR_MESSAGE_SELECTORS = (
    "div.el-message.el-message--error",
    "div.el-message",
    'div[role="alert"]',
    "div#mb_msg",
    "div.layui-layer-content",
    "div.alert",
    "div.error",
    "span.error",
    'div[class*="error"]',
    'span[class*="error"]',
)

CAPTCHA_ERROR_KEYWORDS = (
    "verification code is incorrect",
    "validation code you filled in is incorrect",
    "please re_enter",
    "captcha is incorrect",
    "verification code error",
    "validation code error",
    "code is incorrect",
    "verification failed",
    "validation failed",
    "captcha error",
    "verification error",
    "validation error",
)


async def first_visible(page: Page, selectors: tuple[str, ...]) -> Locator | None:
    """Return the first visible element matched by any selector, in order."""
    for selector in selectors:
        locator = page.locator(selector).first
        try:
            if await locator.is_visible():
                return locator
        except Exception as e:
            logger.debug("Selector check failed", selector=selector, error=str(e))
    return None


async def fill_credentials(page: Page, username: str, password: str) -> bool:
    """
    Fill the username and password fields.

    Returns:
        False if either field could not be found
    """
    username_input = await first_visible(page, USERNAME_SELECTORS)
    password_input = await first_visible(page, PASSWORD_SELECTORS)
    if username_input is None or password_input is None:
        logger.info(
            "Login form fields not found",
            username_found=username_input is not None,
            password_found=password_input is not None,
        )
        return False

    await username_input.fill(username)
    await password_input.fill(password)

    remember = await first_visible(page, REMEMBER_ME_SELECTORS)
    if remember is not None:
        try:
            await remember.check()
        except Exception as e:
            logger.debug("Remember-me checkbox not toggled", error=str(e))

    return True


async def find_captcha(page: Page) -> tuple[Locator, Locator | None] | None:
    """
    Locate the captcha input and the element showing the captcha.

    Returns:
        (input, image) where image may be None, or None when the form has no captcha
    """
    captcha_input = await first_visible(page, CAPTCHA_INPUT_SELECTORS)
    if captcha_input is None:
        return None
    return captcha_input, await first_visible(page, CAPTCHA_IMAGE_SELECTORS)


async def capture_captcha(page: Page, captcha_input: Locator, image: Locator | None) -> bytes:
    """Screenshot the captcha, or the area around its input when no image is found."""
    if image is not None:
        return await image.screenshot()

    box = await captcha_input.bounding_box()
    if box is None:
        return await page.screenshot()
    return await page.screenshot(
        clip={
            "x": max(0.0, box["x"] - 200),
            "y": max(0.0, box["y"] - 100),
            "width": box["width"] + 400,
            "height": box["height"] + 200,
        }
    )


async def submit_login(page: Page) -> bool:
    """Click the login button; falls back to pressing Enter in the password field."""
    button = await first_visible(page, LOGIN_BUTTON_SELECTORS)
    if button is not None:
        await button.click()
        return True

    password_input = await first_visible(page, PASSWORD_SELECTORS)
    if password_input is not None:
        await password_input.press("Enter")
        return True
    return False


async def captcha_error_visible(page: Page) -> bool:
    """Check visible error banners for captcha-specific wording."""
    for selector in ERROR_MESSAGE_SELECTORS:
        try:
            elements = await page.locator(selector).all()
        except Exception as e:
            logger.debug("Error selector check failed", selector=selector, error=str(e))
            continue

        for element in elements:
            if not await element.is_visible():
                continue
            text = (await element.text_content() or "").lower()
            if any(keyword in text for keyword in CAPTCHA_ERROR_KEYWORDS):
                logger.info("Captcha error detected", text=text[:120])
                return True
    return False


async def password_field_visible(page: Page) -> bool:
    return await first_visible(page, PASSWORD_SELECTORS) is not None
