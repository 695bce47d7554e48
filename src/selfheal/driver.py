# driver.py
# Browser driver contract and the static tool → driver-method map.
#
# The core never controls a browser itself. It calls whatever object
# satisfies BrowserDriver through TOOL_METHODS.

from typing import Any, Callable, Protocol

from selfheal.errors import ToolNotImplementedError
from selfheal.models import PageSnapshot


class BrowserDriver(Protocol):
    def navigate(self, url: str, wait_until: str = "load") -> None: ...

    def click(self, selector: str, button: str = "left", click_count: int = 1, force: bool = False) -> None: ...

    def type(self, selector: str, text: str, delay_ms: int = 0, clear_first: bool = False) -> None: ...

    def read_text(self, selector: str) -> str: ...

    def wait_for(self, selector: str, timeout: float) -> None: ...

    def screenshot(self, full_page: bool = False) -> bytes: ...

    def page_state(self) -> PageSnapshot: ...


# Optional parameters are filled from the schema defaults by
# registry.normalize_parameters before dispatch.

def _navigate(driver: BrowserDriver, params: dict) -> None:
    driver.navigate(params["url"], wait_until=params.get("wait_until", "load"))


def _click(driver: BrowserDriver, params: dict) -> None:
    driver.click(
        params["selector"],
        button=params.get("button", "left"),
        click_count=params.get("click_count", 1),
        force=params.get("force", False),
    )


def _type(driver: BrowserDriver, params: dict) -> None:
    driver.type(
        params["selector"],
        params["text"],
        delay_ms=params.get("delay_ms", 0),
        clear_first=params.get("clear_first", False),
    )


def _clear_input(driver: BrowserDriver, params: dict) -> None:
    driver.type(params["selector"], "", clear_first=True)


def _extract_text(driver: BrowserDriver, params: dict) -> str:
    return driver.read_text(params["selector"])


def _wait_for_element(driver: BrowserDriver, params: dict) -> None:
    driver.wait_for(params["selector"], params.get("timeout_ms", 30000) / 1000)


def _take_screenshot(driver: BrowserDriver, params: dict) -> bytes:
    return driver.screenshot(full_page=params.get("full_page", False))


def _get_page_state(driver: BrowserDriver, params: dict) -> dict:
    return driver.page_state().model_dump()


TOOL_METHODS: dict[str, Callable[[BrowserDriver, dict], Any]] = {
    "navigate":         _navigate,
    "click":            _click,
    "type":             _type,
    "clear_input":      _clear_input,
    "extract_text":     _extract_text,
    "get_text":         _extract_text,
    "wait_for_element": _wait_for_element,
    "take_screenshot":  _take_screenshot,
    "get_page_state":   _get_page_state,
}


def dispatch(driver: BrowserDriver, tool_name: str, params: dict) -> Any:
    method = TOOL_METHODS.get(tool_name.lower())
    if method is None:
        raise ToolNotImplementedError(f"Tool '{tool_name}' is not yet implemented.")
    return method(driver, params)
