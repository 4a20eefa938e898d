"""
Captcha solving through an OpenAI-compatible vision endpoint.

Provides:
- CaptchaSolver protocol used by the login state machine
- Async httpx-based vision client
- Retry with exponential backoff on transient failures
"""

from __future__ import annotations

import asyncio
import base64
import random
import re
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
import structlog

from panelrunner.errors import CaptchaSolverError
from panelrunner.settings import VisionSettings

logger = structlog.get_logger(__name__)

CAPTCHA_PROMPT = (
    "Read the verification code in this image. The code contains only numbers. "
    "Reply with the digits only, without spaces or any other text. "
    "If you cannot read the code, reply with ERROR."
)

UNREADABLE = "ERROR"


@dataclass(frozen=True)
class CaptchaSolution:
    """Answer produced for one captcha image."""

    text: str | None
    """Digits to type, or None if the model could not read the image."""

    raw_response: str
    """Unmodified model output, kept for the captcha log."""

    @property
    def readable(self) -> bool:
        return bool(self.text)


class CaptchaSolver(Protocol):
    async def solve(self, image: bytes) -> CaptchaSolution: ...


def parse_captcha_answer(raw: str) -> str | None:
    """Extract the digits from a model reply; None for an unreadable captcha."""
    cleaned = raw.strip()
    if not cleaned or cleaned.upper().startswith(UNREADABLE):
        return None
    digits = re.sub(r"\D", "", cleaned)
    return digits or None


class VisionCaptchaSolver:
    """
    Reads numeric captchas with a vision-capable chat model.

    Features:
    - Base64 data-URI image upload
    - Retry on timeouts, connection errors and 5xx responses
    - No retry on authentication errors
    """

    def __init__(
        self,
        settings: VisionSettings,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._log = logger.bind(component="captcha_solver", model=settings.model)

        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.timeout_seconds),
        )

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> VisionCaptchaSolver:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    def _build_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        api_key = self._settings.api_key.get_secret_value()
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    def _build_request_body(self, image: bytes) -> dict[str, Any]:
        encoded = base64.b64encode(image).decode()
        return {
            "model": self._settings.model,
            "temperature": 0,
            "max_tokens": self._settings.max_tokens,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": CAPTCHA_PROMPT},
                        {
                            "type": "image_url",
                            "image_url": {"url": f"data:image/png;base64,{encoded}"},
                        },
                    ],
                }
            ],
        }

    async def solve(self, image: bytes) -> CaptchaSolution:
        """
        Ask the model to read a captcha image.

        Raises:
            CaptchaSolverError: If the endpoint keeps failing or rejects the key
        """
        url = f"{self._settings.base_url}/chat/completions"
        body = self._build_request_body(image)
        headers = self._build_headers()
        retries = self._settings.max_retries

        for attempt in range(retries + 1):
            try:
                response = await self._client.post(url, json=body, headers=headers)
            except (httpx.TimeoutException, httpx.ConnectError) as e:
                if attempt < retries:
                    await self._backoff(attempt, str(e))
                    continue
                raise CaptchaSolverError(f"Vision endpoint unreachable: {e}") from e

            if response.status_code == 200:
                raw = self._parse_content(response.json())
                solution = CaptchaSolution(text=parse_captcha_answer(raw), raw_response=raw)
                self._log.debug("Captcha read", readable=solution.readable)
                return solution

            if response.status_code == 401:
                raise CaptchaSolverError(
                    "Invalid API key or authentication failed",
                    status_code=401,
                )

            if (response.status_code >= 500 or response.status_code == 429) and attempt < retries:
                await self._backoff(attempt, f"status {response.status_code}")
                continue

            raise CaptchaSolverError(
                f"API error: {response.status_code}",
                status_code=response.status_code,
            )

        raise CaptchaSolverError("Captcha request failed after retries")

    async def _backoff(self, attempt: int, error: str) -> None:
        delay_ms = self._settings.initial_delay_ms * (2**attempt) * (0.5 + random.random())
        self._log.warning(
            "Captcha request failed, retrying",
            attempt=attempt + 1,
            max_retries=self._settings.max_retries,
            delay_ms=int(delay_ms),
            error=error,
        )
        await asyncio.sleep(delay_ms / 1000)

    @staticmethod
    def _parse_content(data: dict[str, Any]) -> str:
        choices = data.get("choices", [])
        if not choices:
            raise CaptchaSolverError("No choices in response")
        content = choices[0].get("message", {}).get("content") or ""
        if isinstance(content, list):
            content = "".join(part.get("text", "") for part in content if isinstance(part, dict))
        return str(content)
