from __future__ import annotations

import logging
from typing import Any

from playwright.async_api import (
    Browser,
    BrowserContext,
    Dialog,
    Error as PlaywrightError,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from ..config import settings
from .windows import WindowHierarchyTracker


class BrowserSession:
    def __init__(self, tracker: WindowHierarchyTracker, headless: bool | None = None) -> None:
        self.tracker = tracker
        self.headless = settings.headless if headless is None else headless
        self.browser: Browser | None = None
        self.context: BrowserContext | None = None
        self.page: Page | None = None
        self._playwright: Playwright | None = None

    async def start(self) -> Page:
        self._playwright = await async_playwright().start()
        self.browser = await self._playwright.chromium.launch(headless=self.headless, args=settings.browser_args)
        self.context = await self.browser.new_context(
            ignore_https_errors=True,
            bypass_csp=True,
            no_viewport=True,
        )
        self.context.set_default_timeout(settings.default_timeout_ms)
        self.context.set_default_navigation_timeout(settings.navigation_timeout_ms)
        self.context.on("page", self._prepare_page)
        self.tracker.watch_context(self.context)
        self.page = await self.context.new_page()
        self.tracker.register_root(self.page)
        logging.info("browser_started headless=%s", self.headless)
        return self.page

    async def close(self) -> None:
        try:
            if self.context:
                await self.context.close()
            if self.browser:
                await self.browser.close()
        except PlaywrightError as exc:
            logging.warning("browser_close_failed reason=%s", exc)
        finally:
            self.context = None
            self.browser = None
            self.page = None
            if self._playwright:
                await self._playwright.stop()
                self._playwright = None

    def _prepare_page(self, page: Page) -> None:
        page.on("dialog", self._accept_dialog)

    async def _accept_dialog(self, dialog: Dialog) -> None:
        logging.info("dialog_auto_accept type=%s message=%s", dialog.type, dialog.message)
        try:
            await dialog.accept()
        except PlaywrightError as exc:
            logging.warning("dialog_accept_failed reason=%s", exc)
            try:
                await dialog.dismiss()
            except PlaywrightError:
                logging.debug("dialog_dismiss_failed")

    async def goto(self, page: Any, url: str, wait_ms: int = 500) -> None:
        """Navigate and give the app a moment to hydrate."""
        await page.goto(url, wait_until="domcontentloaded", timeout=settings.navigation_timeout_ms)
        try:
            await page.wait_for_load_state("networkidle", timeout=5000)
        except PlaywrightTimeoutError:
            logging.info("networkidle wait timed out, continuing anyway")
        if wait_ms > 0:
            await page.wait_for_timeout(wait_ms)

    def __repr__(self) -> str:
        return f"BrowserSession(headless={self.headless})"
