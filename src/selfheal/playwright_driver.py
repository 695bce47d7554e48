# playwright_driver.py
# BrowserDriver over a Playwright sync Page.
#
# Playwright's sync API is bound to the thread that started it, while the
# executor dispatches from its own worker. Every page call is therefore
# marshalled onto one dedicated browser thread owned by this driver.
#
# Playwright is an optional dependency (the `browser` extra) and is imported
# only when a browser is launched.

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable

from selfheal.errors import (
    AttemptTimeoutError,
    ConnectionResetToolError,
    ElementNotReadyError,
    InvalidArgumentError,
    PreconditionError,
    StaleElementError,
    ToolError,
)
from selfheal.models import PageSnapshot

logger = logging.getLogger(__name__)

DEFAULT_ACTION_TIMEOUT_MS = 10_000

# Message fragments Playwright uses, mapped onto our taxonomy. Checked in order.
_MESSAGE_MAP: list[tuple[tuple[str, ...], type[ToolError]]] = [
    (("not attached", "detached", "execution context was destroyed"), StaleElementError),
    (("err_connection_reset", "err_connection_refused", "err_network_changed",
      "target closed", "connection closed"), ConnectionResetToolError),
    (("not visible", "not enabled", "not stable", "intercepts pointer events",
      "element is outside of the viewport"), ElementNotReadyError),
    (("timeout",), AttemptTimeoutError),
    (("unexpected token", "is not a valid selector", "unknown engine",
      "cannot navigate to invalid url", "err_invalid_url"), InvalidArgumentError),
    (("err_name_not_resolved", "err_cert", "net::err_aborted"), PreconditionError),
]


def translate_error(exc: Exception) -> Exception:
    """
    Map a Playwright exception onto the selfheal error taxonomy.

    Playwright is not imported here: its TimeoutError is recognised by class
    name. Unrecognised errors are returned unchanged.
    """
    if isinstance(exc, ToolError):
        return exc
    message = str(exc)
    first_line = message.splitlines()[0] if message else type(exc).__name__
    if type(exc).__name__ == "TimeoutError":
        return AttemptTimeoutError(first_line)
    lowered = message.lower()
    for markers, error_cls in _MESSAGE_MAP:
        if any(marker in lowered for marker in markers):
            return error_cls(first_line)
    return exc


class PlaywrightDriver:
    """
    BrowserDriver backed by Playwright's sync API.

    Example:
        with PlaywrightDriver.launch(headless=True) as driver:
            executor = ToolExecutor(driver)
            ...
    """

    def __init__(self, page: Any = None, action_timeout_ms: int = DEFAULT_ACTION_TIMEOUT_MS) -> None:
        self._page = page
        self._action_timeout_ms = action_timeout_ms
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="selfheal-browser")
        self._playwright: Any = None
        self._browser: Any = None

    @classmethod
    def launch(cls, headless: bool = True, action_timeout_ms: int = DEFAULT_ACTION_TIMEOUT_MS) -> "PlaywrightDriver":
        driver = cls(action_timeout_ms=action_timeout_ms)
        driver._pool.submit(driver._start, headless).result()
        return driver

    def _start(self, headless: bool) -> None:
        from playwright.sync_api import sync_playwright

        self._playwright = sync_playwright().start()
        self._browser = self._playwright.chromium.launch(headless=headless)
        self._page = self._browser.new_page()
        self._page.set_default_timeout(self._action_timeout_ms)
        logger.info("Launched Chromium (headless=%s).", headless)

    def _stop(self) -> None:
        if self._browser is not None:
            self._browser.close()
        if self._playwright is not None:
            self._playwright.stop()
        self._browser = self._playwright = None

    def close(self) -> None:
        try:
            self._pool.submit(self._stop).result()
        finally:
            self._pool.shutdown(wait=False)

    def __enter__(self) -> "PlaywrightDriver":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Marshalling
    # ------------------------------------------------------------------

    def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        if self._page is None:
            raise PreconditionError("No browser page is open.")
        try:
            return self._pool.submit(fn, *args).result()
        except ToolError:
            raise
        except Exception as exc:
            translated = translate_error(exc)
            if translated is exc:
                raise
            raise translated from exc

    # ------------------------------------------------------------------
    # BrowserDriver
    # ------------------------------------------------------------------

    def navigate(self, url: str, wait_until: str = "load") -> None:
        self._call(lambda: self._page.goto(url, wait_until=wait_until))

    def click(self, selector: str, button: str = "left", click_count: int = 1, force: bool = False) -> None:
        self._call(lambda: self._page.click(selector, button=button, click_count=click_count, force=force))

    def type(self, selector: str, text: str, delay_ms: int = 0, clear_first: bool = False) -> None:
        """Key-by-key typing appended to the current value, optionally cleared first."""
        def _type() -> None:
            if clear_first:
                self._page.fill(selector, "")
            if text:
                self._page.locator(selector).press_sequentially(text, delay=delay_ms)

        self._call(_type)

    def read_text(self, selector: str) -> str:
        return self._call(lambda: self._page.inner_text(selector))

    def wait_for(self, selector: str, timeout: float) -> None:
        self._call(lambda: self._page.wait_for_selector(selector, timeout=timeout * 1000))

    def screenshot(self, full_page: bool = False) -> bytes:
        return self._call(lambda: self._page.screenshot(full_page=full_page))

    def page_state(self) -> PageSnapshot:
        return self._call(lambda: PageSnapshot(url=self._page.url, title=self._page.title()))
