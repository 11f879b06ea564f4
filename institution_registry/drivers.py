"""
Browser driver facade.

The extraction core only ever talks to `BrowserDriver`. Two backends are
provided:

    PlaywrightDriver   local headless Chromium (playwright.async_api)
    WebDriverSession   remote browser over the W3C WebDriver HTTP protocol (httpx)

Scripts passed to `run_script` are JavaScript function bodies that read their
parameters from `arguments`, so the same source runs on either backend.

Requirements:
    pip install playwright httpx
    playwright install chromium
"""

import asyncio
import base64
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from .errors import DriverError, StaleReferenceError, TransientRenderError, WaitTimeout
from .settings import DEFAULT_VIEWPORT, DEFAULT_WEBDRIVER_URL, POLL_INTERVAL

logger = logging.getLogger(__name__)

Predicate = Callable[[], Awaitable[Any]]


class BrowserDriver(ABC):
    """Capability set the extraction core depends on"""

    @abstractmethod
    async def navigate(self, url: str, timeout: float = 60.0) -> None: ...

    @abstractmethod
    async def find(self, selector: str, root: Any = None) -> list[Any]: ...

    @abstractmethod
    async def click(self, handle: Any) -> None: ...

    @abstractmethod
    async def get_text(self, handle: Any) -> str: ...

    @abstractmethod
    async def run_script(self, source: str, *args: Any) -> Any: ...

    @abstractmethod
    async def screenshot(self) -> bytes: ...

    @abstractmethod
    async def close(self) -> None: ...

    async def wait(self, predicate: Predicate, timeout: float, interval: float = POLL_INTERVAL) -> Any:
        """Poll `predicate` until it returns something truthy, or raise WaitTimeout."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            result = await predicate()
            if result:
                return result
            if loop.time() >= deadline:
                raise WaitTimeout(f"Condition not met within {timeout:.1f}s")
            await asyncio.sleep(interval)

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        try:
            await self.close()
        except DriverError as e:
            logger.warning(f"Error closing browser session: {e}")


# ---------------------------------------------------------------------------
# Playwright backend
# ---------------------------------------------------------------------------

@contextmanager
def _playwright_errors(action: str):
    try:
        yield
    except PlaywrightTimeoutError as e:
        raise WaitTimeout(f"{action}: {e}") from e
    except PlaywrightError as e:
        message = str(e)
        if "not attached" in message or "detached" in message:
            raise StaleReferenceError(f"{action}: {message}") from e
        if "intercepts pointer events" in message:
            raise TransientRenderError(f"{action}: {message}") from e
        raise DriverError(f"{action}: {message}") from e


class PlaywrightDriver(BrowserDriver):
    """Local Chromium session driven through Playwright"""

    def __init__(self, headless: bool = True, viewport: Optional[dict] = None,
                 action_timeout: float = 10.0):
        self.headless = headless
        self.viewport = viewport or DEFAULT_VIEWPORT
        self.action_timeout = action_timeout
        self._playwright = None
        self._browser = None
        self.page = None

    async def start(self) -> "PlaywrightDriver":
        logger.info("Launching Chromium...")
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(headless=self.headless)
        context = await self._browser.new_context(viewport=self.viewport)
        self.page = await context.new_page()
        return self

    async def __aenter__(self):
        return await self.start()

    async def navigate(self, url: str, timeout: float = 60.0) -> None:
        with _playwright_errors(f"navigate {url}"):
            await self.page.goto(url, wait_until="networkidle", timeout=timeout * 1000)

    async def find(self, selector: str, root: Any = None) -> list[Any]:
        scope = root if root is not None else self.page
        with _playwright_errors(f"find {selector}"):
            return await scope.query_selector_all(selector)

    async def click(self, handle: Any) -> None:
        with _playwright_errors("click"):
            await handle.click(timeout=self.action_timeout * 1000)

    async def get_text(self, handle: Any) -> str:
        with _playwright_errors("get_text"):
            return (await handle.inner_text()).strip()

    async def run_script(self, source: str, *args: Any) -> Any:
        wrapper = f"(args) => (function() {{ {source} }}).apply(null, args)"
        with _playwright_errors("run_script"):
            return await self.page.evaluate(wrapper, list(args))

    async def screenshot(self) -> bytes:
        with _playwright_errors("screenshot"):
            return await self.page.screenshot(full_page=False)

    async def close(self) -> None:
        try:
            if self._browser is not None:
                await self._browser.close()
            if self._playwright is not None:
                await self._playwright.stop()
        except PlaywrightError as e:
            raise DriverError(f"close: {e}") from e
        finally:
            self._browser = None
            self._playwright = None
            self.page = None


# ---------------------------------------------------------------------------
# W3C WebDriver backend
# ---------------------------------------------------------------------------

ELEMENT_KEY = "element-6066-11e4-a52e-4f735466cecf"

_STALE_CODES = {"stale element reference", "no such element", "detached shadow root"}
_TRANSIENT_CODES = {"element click intercepted", "element not interactable"}
_TIMEOUT_CODES = {"timeout", "script timeout"}


@dataclass(frozen=True)
class WebElement:
    """Remote element reference"""
    element_id: str

    def to_json(self) -> dict:
        return {ELEMENT_KEY: self.element_id}


def _webdriver_error(value: Any, status_code: int) -> DriverError:
    if not isinstance(value, dict):
        return DriverError(f"WebDriver HTTP {status_code}: {value!r}")
    code = value.get("error", "unknown error")
    message = f"{code}: {value.get('message', '')}".strip()
    if code in _STALE_CODES:
        return StaleReferenceError(message)
    if code in _TIMEOUT_CODES:
        return WaitTimeout(message)
    if code in _TRANSIENT_CODES:
        return TransientRenderError(message)
    return DriverError(message)


def _wrap(value: Any) -> Any:
    if isinstance(value, WebElement):
        return value.to_json()
    if isinstance(value, (list, tuple)):
        return [_wrap(v) for v in value]
    if isinstance(value, dict):
        return {k: _wrap(v) for k, v in value.items()}
    return value


def _unwrap(value: Any) -> Any:
    if isinstance(value, dict):
        if ELEMENT_KEY in value:
            return WebElement(value[ELEMENT_KEY])
        return {k: _unwrap(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_unwrap(v) for v in value]
    return value


class WebDriverSession(BrowserDriver):
    """Remote browser session (e.g. a Selenium server) spoken to over HTTP"""

    def __init__(
        self,
        base_url: str = DEFAULT_WEBDRIVER_URL,
        browser_name: str = "firefox",
        headless: bool = True,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.browser_name = browser_name
        self.headless = headless
        self.session_id: Optional[str] = None
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "User-Agent": "InstitutionRegistry/1.0",
                "Content-Type": "application/json; charset=utf-8",
            },
        )

    def _capabilities(self) -> dict:
        caps: dict[str, Any] = {"browserName": self.browser_name}
        if self.headless:
            if self.browser_name == "firefox":
                caps["moz:firefoxOptions"] = {"args": ["-headless"]}
            else:
                caps["goog:chromeOptions"] = {"args": ["--headless=new"]}
        return caps

    async def _request(self, method: str, path: str, payload: Optional[dict] = None,
                       scoped: bool = True) -> Any:
        if scoped:
            if self.session_id is None:
                raise DriverError("WebDriver session not started")
            path = f"/session/{self.session_id}{path}"
        try:
            response = await self.client.request(method, path, json=payload)
        except httpx.HTTPError as e:
            raise DriverError(f"{method} {path}: {e}") from e

        try:
            value = response.json().get("value")
        except ValueError:
            value = response.text
        if response.is_error or (isinstance(value, dict) and "error" in value):
            raise _webdriver_error(value, response.status_code)
        return value

    async def start(self) -> "WebDriverSession":
        logger.info(f"Opening WebDriver session at {self.base_url}...")
        value = await self._request(
            "POST", "/session",
            {"capabilities": {"alwaysMatch": self._capabilities()}},
            scoped=False,
        )
        self.session_id = value["sessionId"]
        logger.debug(f"WebDriver session id: {self.session_id}")
        return self

    async def __aenter__(self):
        return await self.start()

    async def navigate(self, url: str, timeout: float = 60.0) -> None:
        await self._request("POST", "/timeouts", {"pageLoad": int(timeout * 1000)})
        await self._request("POST", "/url", {"url": url})

    async def find(self, selector: str, root: Any = None) -> list[Any]:
        path = "/elements" if root is None else f"/element/{root.element_id}/elements"
        value = await self._request("POST", path, {"using": "css selector", "value": selector})
        return [WebElement(item[ELEMENT_KEY]) for item in value or []]

    async def click(self, handle: WebElement) -> None:
        await self._request("POST", f"/element/{handle.element_id}/click", {})

    async def get_text(self, handle: WebElement) -> str:
        return (await self._request("GET", f"/element/{handle.element_id}/text") or "").strip()

    async def run_script(self, source: str, *args: Any) -> Any:
        value = await self._request(
            "POST", "/execute/sync", {"script": source, "args": _wrap(list(args))}
        )
        return _unwrap(value)

    async def screenshot(self) -> bytes:
        encoded = await self._request("GET", "/screenshot")
        return base64.b64decode(encoded)

    async def close(self) -> None:
        try:
            if self.session_id is not None:
                await self._request("DELETE", "")
        finally:
            self.session_id = None
            await self.client.aclose()
