"""Tests for the Playwright browser adapter with a mocked Playwright."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from playwright.async_api import Error as PlaywrightError

from autofix_loop.adapters.browser.playwright import PlaywrightBrowser
from autofix_loop.config.schema import BrowserConfig
from autofix_loop.models.browser import SessionHandle
from autofix_loop.utils.async_helpers import ValidationError


class FakePage:
    """Page stand-in that lets tests fire Playwright events."""

    def __init__(self) -> None:
        self.handlers: dict[str, Callable[[Any], Any]] = {}
        self.goto = AsyncMock()
        self.add_script_tag = AsyncMock()
        self.evaluate = AsyncMock(return_value=42)

    def on(self, event: str, handler: Callable[[Any], Any]) -> None:
        self.handlers[event] = handler

    def fire(self, event: str, payload: Any) -> None:
        self.handlers[event](payload)


@pytest.fixture
def pages() -> list[FakePage]:
    """Pages created so far, in order."""
    return []


@pytest.fixture
def playwright(pages: list[FakePage]) -> Iterator[MagicMock]:
    """Patch async_playwright with a fake Chromium."""

    async def new_context() -> MagicMock:
        page = FakePage()
        pages.append(page)
        context = MagicMock()
        context.new_page = AsyncMock(return_value=page)
        context.close = AsyncMock()
        return context

    browser = MagicMock()
    browser.new_context = AsyncMock(side_effect=new_context)
    browser.close = AsyncMock()
    instance = MagicMock()
    instance.chromium.launch = AsyncMock(return_value=browser)
    instance.stop = AsyncMock()
    starter = MagicMock()
    starter.start = AsyncMock(return_value=instance)

    with patch(
        "autofix_loop.adapters.browser.playwright.async_playwright", return_value=starter
    ):
        yield instance


@pytest.fixture
def browser() -> PlaywrightBrowser:
    """Return an adapter allowing one session at a time."""
    return PlaywrightBrowser(BrowserConfig(enabled=True, target_url="http://localhost:8080"))


def console(kind: str, text: str) -> MagicMock:
    message = MagicMock()
    message.type = kind
    message.text = text
    return message


class TestPlaywrightBrowser:
    """Tests for session lifecycle and observation."""

    def test_requires_url(self) -> None:
        """Test a target URL is mandatory."""
        with pytest.raises(ValueError, match="target_url"):
            PlaywrightBrowser(BrowserConfig())

    async def test_records_errors(self, browser, playwright, pages) -> None:
        """Test console errors, page errors and failed requests are observed."""
        session = await browser.open_session()
        page = pages[0]
        page.goto.assert_awaited_once()
        assert page.goto.call_args.args[0] == "http://localhost:8080"

        page.fire("console", console("log", "hello"))
        page.fire("console", console("error", "TypeError: x is undefined"))
        page.fire("pageerror", Exception("ReferenceError: foo is not defined"))
        request = MagicMock(method="GET", url="http://localhost:8080/a.png", failure="net::ERR")
        page.fire("requestfailed", request)

        observation = await browser.observe(session)

        assert observation.console_errors == (
            "TypeError: x is undefined",
            "ReferenceError: foo is not defined",
        )
        assert observation.network_failures == ("GET http://localhost:8080/a.png: net::ERR",)

    async def test_inject_and_evaluate(self, browser, playwright, pages) -> None:
        """Test code goes in as a script tag and expressions are evaluated."""
        session = await browser.open_session()

        await browser.inject(session, "window.fixed = true;")
        value = await browser.evaluate(session, "() => 42")

        pages[0].add_script_tag.assert_awaited_once_with(content="window.fixed = true;")
        assert value == 42

    async def test_injection_error(self, browser, playwright, pages) -> None:
        """Test Playwright failures surface as ValidationError."""
        session = await browser.open_session()
        pages[0].add_script_tag.side_effect = PlaywrightError("SyntaxError")

        with pytest.raises(ValidationError, match="Injection failed"):
            await browser.inject(session, "let = ;")

    async def test_failed_load_releases_slot(self, browser, playwright, pages) -> None:
        """Test a target that will not load frees its session slot."""
        original = playwright.chromium.launch.return_value.new_context.side_effect

        async def broken_context() -> MagicMock:
            context = await original()
            pages[-1].goto.side_effect = PlaywrightError("net::ERR_CONNECTION_REFUSED")
            return context

        playwright.chromium.launch.return_value.new_context.side_effect = broken_context
        with pytest.raises(ValidationError, match="Could not load target"):
            await browser.open_session()

        playwright.chromium.launch.return_value.new_context.side_effect = original
        session = await browser.open_session()
        assert session.id

    async def test_close_is_idempotent(self, browser, playwright) -> None:
        """Test closing twice is a no-op and the slot is reusable."""
        session = await browser.open_session()

        await browser.close_session(session)
        await browser.close_session(session)

        with pytest.raises(ValidationError, match="Unknown or closed"):
            await browser.observe(session)
        await browser.open_session()

    async def test_unknown_session(self, browser) -> None:
        """Test a handle the adapter never issued is refused."""
        with pytest.raises(ValidationError):
            await browser.evaluate(SessionHandle(id="nope"), "1")

    async def test_aclose(self, playwright, pages) -> None:
        """Test one browser is shared by sessions and shutdown closes them all."""
        browser = PlaywrightBrowser(
            BrowserConfig(enabled=True, target_url="http://localhost:8080", max_sessions=2)
        )
        first = await browser.open_session()
        await browser.open_session()

        await browser.aclose()

        assert len(pages) == 2
        with pytest.raises(ValidationError):
            await browser.observe(first)
        playwright.chromium.launch.assert_awaited_once()
        playwright.chromium.launch.return_value.close.assert_awaited_once()
        playwright.stop.assert_awaited_once()
