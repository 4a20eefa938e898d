"""
Unit tests for the vision captcha solver.

HTTP traffic is served by httpx.MockTransport.
"""

from __future__ import annotations

import json

import httpx
import pytest

from panelrunner.auth.captcha import VisionCaptchaSolver, parse_captcha_answer
from panelrunner.errors import CaptchaSolverError
from panelrunner.settings import VisionSettings


def completion(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def make_solver(handler, **overrides) -> VisionCaptchaSolver:
    settings = VisionSettings(api_key="k", initial_delay_ms=0, **overrides)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return VisionCaptchaSolver(settings, http_client=client)


class TestParseCaptchaAnswer:
    """Tests for parse_captcha_answer."""

    def test_digits(self) -> None:
        """Test a plain digit reply is returned as is."""
        assert parse_captcha_answer("4821") == "4821"

    def test_whitespace_inside(self) -> None:
        """Test whitespace inside the reply is removed."""
        assert parse_captcha_answer(" 12 34 ") == "1234"

    def test_error_marker(self) -> None:
        """Test an ERROR reply means the captcha was unreadable."""
        assert parse_captcha_answer("ERROR") is None
        assert parse_captcha_answer("error: cannot read") is None

    def test_empty(self) -> None:
        """Test an empty or digitless reply means the captcha was unreadable."""
        assert parse_captcha_answer("") is None
        assert parse_captcha_answer("no digits here") is None


class TestVisionCaptchaSolver:
    """Tests for VisionCaptchaSolver.solve."""

    @pytest.mark.asyncio
    async def test_solve_sends_image_and_parses(self) -> None:
        """Test the request carries the image and the reply is parsed."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=completion("4821"))

        solver = make_solver(handler)
        solution = await solver.solve(b"png-bytes")

        assert solution.text == "4821"
        assert solution.readable
        assert solution.raw_response == "4821"

        request = seen[0]
        assert request.url.path.endswith("/chat/completions")
        assert request.headers["Authorization"] == "Bearer k"
        body = json.loads(request.content)
        image_part = body["messages"][0]["content"][1]
        assert image_part["image_url"]["url"].startswith("data:image/png;base64,")
        assert body["temperature"] == 0

    @pytest.mark.asyncio
    async def test_unreadable_reply(self) -> None:
        """Test an ERROR completion returns no answer."""
        solver = make_solver(lambda request: httpx.Response(200, json=completion("ERROR")))

        solution = await solver.solve(b"png")

        assert solution.text is None
        assert not solution.readable
        assert solution.raw_response == "ERROR"

    @pytest.mark.asyncio
    async def test_retries_server_error(self) -> None:
        """Test a 5xx response is retried."""
        responses = [httpx.Response(500), httpx.Response(200, json=completion("77"))]

        def handler(request: httpx.Request) -> httpx.Response:
            return responses.pop(0)

        solution = await make_solver(handler).solve(b"png")

        assert solution.text == "77"
        assert responses == []

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self) -> None:
        """Test repeated 5xx responses raise after the last retry."""
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            return httpx.Response(503)

        with pytest.raises(CaptchaSolverError) as exc_info:
            await make_solver(handler, max_retries=2).solve(b"png")

        assert calls["n"] == 3
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_auth_error_not_retried(self) -> None:
        """Test a 401 raises immediately."""
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            return httpx.Response(401)

        with pytest.raises(CaptchaSolverError) as exc_info:
            await make_solver(handler).solve(b"png")

        assert exc_info.value.status_code == 401
        assert calls["n"] == 1

    @pytest.mark.asyncio
    async def test_connect_error_raises_after_retries(self) -> None:
        """Test an unreachable endpoint raises a solver error."""
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(CaptchaSolverError, match="unreachable"):
            await make_solver(handler, max_retries=1).solve(b"png")

    @pytest.mark.asyncio
    async def test_empty_choices(self) -> None:
        """Test a completion with no choices is an error."""
        solver = make_solver(lambda request: httpx.Response(200, json={"choices": []}))

        with pytest.raises(CaptchaSolverError, match="No choices"):
            await solver.solve(b"png")
