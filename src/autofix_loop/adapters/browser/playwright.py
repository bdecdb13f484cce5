"""Playwright-backed browser automation.

One Chromium process is shared; each session is an isolated browser context
with a single page loaded from the target URL. Console errors, uncaught page
exceptions and failed requests are recorded from the moment the page is
created so the replay check sees everything the target reports.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any

import structlog
from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from ...config.schema import BrowserConfig
from ...models.browser import Observation, SessionHandle
from ...utils.async_helpers import ValidationError

log = structlog.get_logger()


@dataclass
class _Session:
    context: BrowserContext
    page: Page
    console_errors: list[str] = field(default_factory=list)
    network_failures: list[str] = field(default_factory=list)


class PlaywrightBrowser:
    """BrowserAutomation implementation over Playwright's async API.

    Sessions are bounded by ``max_sessions``; ``open_session`` waits for a
    free slot and ``close_session`` returns it.

    Example:
        browser = PlaywrightBrowser(config.browser)
        session = await browser.open_session()
        try:
            await browser.inject(session, patched_source)
            print(await browser.observe(session))
        finally:
            await browser.close_session(session)
        await browser.aclose()
    """

    def __init__(self, config: BrowserConfig) -> None:
        if not config.target_url:
            raise ValueError("PlaywrightBrowser requires browser.target_url")
        self._config = config
        self._slots = asyncio.Semaphore(config.max_sessions)
        self._start_lock = asyncio.Lock()
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._sessions: dict[str, _Session] = {}

    async def _ensure_browser(self) -> Browser:
        async with self._start_lock:
            if self._browser is None:
                log.info("browser_starting", headless=self._config.headless)
                self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(
                    headless=self._config.headless
                )
            return self._browser

    def _get(self, session: SessionHandle) -> _Session:
        try:
            return self._sessions[session.id]
        except KeyError:
            raise ValidationError(f"Unknown or closed browser session: {session.id}") from None

    async def open_session(self) -> SessionHandle:
        await self._slots.acquire()
        try:
            browser = await self._ensure_browser()
            context = await browser.new_context()
            page = await context.new_page()
            state = _Session(context=context, page=page)

            page.on(
                "console",
                lambda msg: state.console_errors.append(msg.text) if msg.type == "error" else None,
            )
            page.on("pageerror", lambda exc: state.console_errors.append(str(exc)))
            page.on(
                "requestfailed",
                lambda req: state.network_failures.append(
                    f"{req.method} {req.url}: {req.failure or 'failed'}"
                ),
            )

            await page.goto(
                self._config.target_url or "",
                timeout=self._config.navigation_timeout * 1000,
                wait_until="load",
            )
        except PlaywrightError as e:
            self._slots.release()
            log.error("browser_session_open_failed", error=str(e))
            raise ValidationError(f"Could not load target: {e}") from e
        except BaseException:
            self._slots.release()
            raise

        handle = SessionHandle(id=uuid.uuid4().hex)
        self._sessions[handle.id] = state
        log.debug("browser_session_opened", session=handle.id)
        return handle

    async def inject(self, session: SessionHandle, code: str) -> None:
        state = self._get(session)
        try:
            await state.page.add_script_tag(content=code)
        except PlaywrightError as e:
            raise ValidationError(f"Injection failed: {e}") from e

    async def evaluate(self, session: SessionHandle, expression: str) -> Any:
        state = self._get(session)
        try:
            return await state.page.evaluate(expression)
        except PlaywrightError as e:
            raise ValidationError(f"Evaluation failed: {e}") from e

    async def observe(self, session: SessionHandle) -> Observation:
        state = self._get(session)
        return Observation(
            console_errors=tuple(state.console_errors),
            network_failures=tuple(state.network_failures),
        )

    async def close_session(self, session: SessionHandle) -> None:
        state = self._sessions.pop(session.id, None)
        if state is None:
            return
        try:
            await state.context.close()
        except PlaywrightError as e:
            log.warning("browser_session_close_failed", session=session.id, error=str(e))
        finally:
            self._slots.release()
            log.debug("browser_session_closed", session=session.id)

    async def aclose(self) -> None:
        """Close every session and stop the browser."""
        for session_id in list(self._sessions):
            await self.close_session(SessionHandle(id=session_id))
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        log.info("browser_stopped")
