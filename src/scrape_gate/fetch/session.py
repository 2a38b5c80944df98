"""Playwright browser scope for a single fetch run."""

from __future__ import annotations

from collections.abc import Callable
from contextlib import AbstractContextManager, ExitStack
from typing import Any

from scrape_gate.config import FetchConfig
from scrape_gate.errors import FetchError
from scrape_gate.logging import get_logger

logger = get_logger(__name__)

PlaywrightFactory = Callable[[], AbstractContextManager[Any]]


class PlaywrightBrowserSession:
    """Launch one browser context on enter and tear it all down on exit.

    Used as ``with PlaywrightBrowserSession(config) as session``. Pages share
    the context, so cookies set by one configured path are sent to the next.
    Teardown runs context, browser, then driver; every stage is attempted
    even when an earlier one fails.
    """

    def __init__(
        self,
        config: FetchConfig,
        *,
        playwright_factory: PlaywrightFactory | None = None,
    ) -> None:
        self.config = config
        self._playwright_factory = playwright_factory or _default_playwright_factory
        self._stack: ExitStack | None = None
        self._context: Any | None = None

    def __enter__(self) -> PlaywrightBrowserSession:
        stack = ExitStack()
        try:
            playwright = stack.enter_context(self._playwright_factory())
            launcher = getattr(playwright, self.config.engine, None)
            if launcher is None:
                raise FetchError(f"Unsupported browser engine '{self.config.engine}' for fetch.engine.")
            browser = launcher.launch(headless=self.config.headless)
            stack.callback(browser.close)
            context = browser.new_context(
                locale=self.config.locale,
                viewport={"width": self.config.viewport_width, "height": self.config.viewport_height},
            )
            stack.callback(context.close)
            context.set_default_timeout(self.config.action_timeout_ms)
        except Exception as exc:
            _unwind_quietly(stack)
            if isinstance(exc, FetchError):
                raise
            raise FetchError(f"Failed to open browser session: {exc}") from exc

        self._stack = stack
        self._context = context
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> bool:
        stack, self._stack, self._context = self._stack, None, None
        if stack is None:
            return False
        try:
            stack.close()
        except Exception as teardown_exc:
            if exc_type is None:
                raise FetchError(f"Browser session teardown failed: {teardown_exc}") from teardown_exc
            logger.warning("browser session teardown failed error=%s", teardown_exc)
        return False

    def new_page(self) -> Any:
        if self._context is None:
            raise FetchError("Browser session is not open.")
        try:
            page = self._context.new_page()
        except Exception as exc:
            raise FetchError(f"Failed to create browser page: {exc}") from exc
        page.set_default_navigation_timeout(self.config.navigation_timeout_ms)
        return page


def _unwind_quietly(stack: ExitStack) -> None:
    try:
        stack.close()
    except Exception as exc:
        logger.warning("browser session cleanup after failed open raised error=%s", exc)


def _default_playwright_factory() -> AbstractContextManager[Any]:
    try:
        from playwright.sync_api import sync_playwright
    except ModuleNotFoundError as exc:
        raise FetchError(
            "Playwright is not available. Install dependencies and run "
            "`python -m playwright install chromium`."
        ) from exc
    return sync_playwright()
