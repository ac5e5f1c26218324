"""
Browser Session Controller

Owns exactly one Chromium process per operation. Adapters never touch
Playwright directly; they drive the BrowserSession primitives below, which
keeps site code short and lets tests substitute a scripted fake.

Two lifecycles are supported:
    with_session(config)  scoped: the process is closed on every exit path
    open_session(config)  keep-alive: the caller owns the handle and must close()
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from playwright.async_api import (
    Error as PlaywrightError,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)
from playwright_stealth import Stealth

from KitchenCart.exceptions import ScrapingError
from KitchenCart.utils.config import BrowserSettings

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)

ANALYTICS_HOSTS = (
    "google-analytics.com",
    "googletagmanager.com",
    "doubleclick.net",
    "facebook.net",
    "hotjar.com",
    "segment.io",
    "newrelic.com",
    "nr-data.net",
    "fullstory.com",
)

WEBGL_SCRIPT = """
(() => {
    const patch = (proto) => {
        const getParameter = proto.getParameter;
        proto.getParameter = function(param) {
            if (param === 37445) return "__VENDOR__";
            if (param === 37446) return "__RENDERER__";
            return getParameter.apply(this, arguments);
        };
    };
    patch(WebGLRenderingContext.prototype);
    if (typeof WebGL2RenderingContext !== 'undefined') patch(WebGL2RenderingContext.prototype);
})();
"""

WEBDRIVER_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => false });
window.chrome = window.chrome || { runtime: {}, app: { isInstalled: false } };
"""

VISIBLE_JS = """
(el) => {
    const style = window.getComputedStyle(el);
    const rect = el.getBoundingClientRect();
    return style.display !== 'none' && style.visibility !== 'hidden'
        && style.opacity !== '0' && rect.width > 0 && rect.height > 0;
}
"""

CLICK_BY_TEXT_JS = """
([text, last]) => {
    const wanted = text.trim().toLowerCase();
    const nodes = Array.from(document.querySelectorAll("button, a, [role='button'], input[type='submit']"))
        .filter(el => ((el.innerText || el.value || '').trim().toLowerCase()).includes(wanted))
        .filter(el => !el.disabled);
    if (!nodes.length) return false;
    (last ? nodes[nodes.length - 1] : nodes[0]).click();
    return true;
}
"""

SET_VALUE_JS = """
([el, value]) => {
    const proto = el instanceof HTMLTextAreaElement ? HTMLTextAreaElement.prototype : HTMLInputElement.prototype;
    const setter = Object.getOwnPropertyDescriptor(proto, 'value').set;
    setter.call(el, value);
    el.dispatchEvent(new Event('input', { bubbles: true }));
    el.dispatchEvent(new Event('change', { bubbles: true }));
}
"""

READ_STORAGE_JS = """
(kind) => {
    const store = window[kind + 'Storage'];
    const out = {};
    for (let i = 0; i < store.length; i++) {
        const key = store.key(i);
        out[key] = store.getItem(key);
    }
    return out;
}
"""

WRITE_STORAGE_JS = """
([kind, data]) => {
    const store = window[kind + 'Storage'];
    Object.entries(data).forEach(([k, v]) => store.setItem(k, v));
    return Object.keys(data).length;
}
"""


@dataclass
class StealthProfile:
    """Fingerprint masking and network filtering applied to every new context."""

    user_agent: str = DEFAULT_USER_AGENT
    languages: Tuple[str, ...] = ("en-US", "en")
    platform: str = "Win32"
    vendor: str = "Google Inc."
    webgl_vendor: str = "Intel Inc."
    webgl_renderer: str = "Intel Iris OpenGL Engine"
    block_resource_types: Tuple[str, ...] = ("image", "font", "media")
    blocked_url_patterns: Tuple[str, ...] = ANALYTICS_HOSTS

    @classmethod
    def default(cls) -> "StealthProfile":
        return cls()

    @classmethod
    def hardened(cls) -> "StealthProfile":
        """For WAF-fronted sites that score missing images and fonts as bot traffic."""
        return cls(
            webgl_vendor="Google Inc. (NVIDIA)",
            webgl_renderer="ANGLE (NVIDIA, NVIDIA GeForce GTX 1650 Direct3D11 vs_5_0 ps_5_0, D3D11)",
            block_resource_types=("media",),
        )

    def stealth(self) -> Stealth:
        return Stealth(
            navigator_languages_override=self.languages[:2],
            navigator_platform_override=self.platform,
            navigator_user_agent_override=self.user_agent,
            navigator_vendor_override=self.vendor,
        )

    def init_scripts(self) -> List[str]:
        webgl = WEBGL_SCRIPT.replace("__VENDOR__", self.webgl_vendor).replace("__RENDERER__", self.webgl_renderer)
        return [WEBDRIVER_SCRIPT, webgl]

    def should_block(self, resource_type: str, url: str) -> bool:
        if resource_type in self.block_resource_types:
            return True
        return any(pattern in url for pattern in self.blocked_url_patterns)

    async def apply(self, context) -> None:
        await self.stealth().apply_stealth_async(context)
        for script in self.init_scripts():
            await context.add_init_script(script)

        async def handle_route(route):
            request = route.request
            if self.should_block(request.resource_type, request.url):
                await route.abort()
            else:
                await route.continue_()

        await context.route("**/*", handle_route)


@dataclass
class BrowserConfig:
    headless: bool = True
    timeout_seconds: int = 30
    navigation_timeout_seconds: int = 30
    idle_timeout_seconds: Optional[int] = None
    window_size: Tuple[int, int] = (1920, 1080)
    executable_path: Optional[str] = None
    stealth: Optional[StealthProfile] = field(default_factory=StealthProfile.default)
    extra_args: List[str] = field(default_factory=list)

    def __post_init__(self):
        if self.idle_timeout_seconds is None:
            self.idle_timeout_seconds = self.timeout_seconds

    @classmethod
    def from_settings(cls, settings: Optional[BrowserSettings] = None,
                      stealth: Optional[StealthProfile] = None) -> "BrowserConfig":
        settings = settings or BrowserSettings.from_env()
        profile = (stealth or StealthProfile.default()) if settings.stealth else None
        return cls(
            headless=settings.headless,
            timeout_seconds=settings.timeout_seconds,
            navigation_timeout_seconds=settings.navigation_timeout_seconds,
            executable_path=settings.executable_path,
            stealth=profile,
            extra_args=list(settings.extra_args),
        )

    def with_idle_timeout(self, seconds: int) -> "BrowserConfig":
        """Copy whose idle timeout is at least `seconds`."""
        return replace(self, idle_timeout_seconds=max(self.idle_timeout_seconds or 0, seconds))

    def launch_kwargs(self) -> Dict[str, Any]:
        width, height = self.window_size
        args = [
            "--disable-blink-features=AutomationControlled",
            "--disable-dev-shm-usage",
            "--no-sandbox",
            "--disable-gpu",
            f"--window-size={width},{height}",
            *self.extra_args,
        ]
        kwargs: Dict[str, Any] = {"headless": self.headless, "args": args}
        if self.executable_path:
            kwargs["executable_path"] = self.executable_path
        return kwargs


class BrowserSession:
    """A live page plus the process that owns it."""

    def __init__(self, page, context, browser, playwright, config: BrowserConfig):
        self.page = page
        self.context = context
        self.browser = browser
        self.playwright = playwright
        self.config = config
        self.idle_expired = False
        self._closed = False
        self._last_activity = time.monotonic()
        self._watchdog: Optional[asyncio.Task] = None

    # Lifecycle

    @property
    def is_closed(self) -> bool:
        return self._closed

    def touch(self):
        self._last_activity = time.monotonic()

    def start_watchdog(self):
        if self._watchdog is None and self.config.idle_timeout_seconds:
            self._watchdog = asyncio.create_task(self._watch_idle())

    async def _watch_idle(self):
        idle = self.config.idle_timeout_seconds
        while not self._closed:
            await asyncio.sleep(min(5, idle))
            if time.monotonic() - self._last_activity > idle:
                logger.warning(f"Closing browser after {idle}s without activity")
                self.idle_expired = True
                await self.close()
                return

    async def close(self):
        if self._closed:
            return
        self._closed = True

        if self._watchdog is not None and self._watchdog is not asyncio.current_task():
            self._watchdog.cancel()

        for label, closer in (("context", self.context), ("browser", self.browser)):
            if closer is None:
                continue
            try:
                await closer.close()
            except PlaywrightError as e:
                logger.debug(f"Ignoring error while closing {label}: {e}")
        if self.playwright is not None:
            await self.playwright.stop()

    def _activity(self):
        if self._closed:
            reason = "after idle timeout" if self.idle_expired else "already"
            raise ScrapingError(f"Browser session closed {reason}")
        self.touch()

    # Navigation

    async def goto(self, url: str):
        self._activity()
        logger.debug(f"Navigating to: {url}")
        try:
            await self.page.goto(
                url, wait_until="domcontentloaded", timeout=self.config.navigation_timeout_seconds * 1000
            )
        except PlaywrightTimeoutError:
            logger.warning(f"Navigation to {url} timed out; continuing with partial page")

    async def reload(self):
        self._activity()
        await self.page.reload(wait_until="domcontentloaded")

    @property
    def current_url(self) -> str:
        return self.page.url

    async def title(self) -> str:
        self._activity()
        return await self.page.title()

    async def wait_for_idle(self, seconds: float = 5):
        self._activity()
        try:
            await self.page.wait_for_load_state("networkidle", timeout=seconds * 1000)
        except PlaywrightTimeoutError:
            logger.debug(f"Page not idle after {seconds}s")

    # Queries

    async def exists(self, selector: str) -> bool:
        self._activity()
        return await self.page.query_selector(selector) is not None

    async def first_visible(self, selector: str):
        """First visible match across a comma-separated selector list, else the first match."""
        self._activity()
        fallback = None
        for sel in [s.strip() for s in selector.split(",") if s.strip()]:
            try:
                elements = await self.page.query_selector_all(sel)
            except PlaywrightError:
                continue
            for element in elements:
                if fallback is None:
                    fallback = element
                if await element.evaluate(VISIBLE_JS):
                    return element
        return fallback

    async def text_of(self, selector: str) -> Optional[str]:
        element = await self.first_visible(selector)
        if element is None:
            return None
        text = await element.inner_text()
        return text.strip() if text else None

    async def texts_of(self, selector: str) -> List[str]:
        self._activity()
        elements = await self.page.query_selector_all(selector)
        texts = []
        for element in elements:
            text = (await element.inner_text() or "").strip()
            if text:
                texts.append(text)
        return texts

    async def attribute_of(self, selector: str, name: str) -> Optional[str]:
        element = await self.first_visible(selector)
        if element is None:
            return None
        return await element.get_attribute(name)

    async def body_text(self, limit: Optional[int] = None) -> str:
        self._activity()
        text = await self.page.evaluate("() => document.body ? document.body.innerText : ''") or ""
        return text[:limit] if limit else text

    async def wait_for_any(self, selectors: Sequence[str], timeout: float = 10) -> str:
        """Poll until one selector matches; returns it or raises ScrapingError."""
        deadline = time.monotonic() + timeout
        while True:
            for selector in selectors:
                if await self.exists(selector):
                    return selector
            if time.monotonic() > deadline:
                raise ScrapingError(f"Timeout waiting for any of: {', '.join(selectors)}")
            await asyncio.sleep(0.1)

    # Interaction

    async def fill(self, selector: str, value: str) -> bool:
        element = await self.first_visible(selector)
        if element is None:
            return False

        try:
            await element.focus()
            await element.fill(value)
            return True
        except PlaywrightError as e:
            logger.debug(f"focus failed for '{selector}', trying click: {e}")

        try:
            await element.click()
            await element.fill(value)
            return True
        except PlaywrightError as e:
            logger.debug(f"click+fill failed for '{selector}', using JS: {e}")

        await self.page.evaluate(SET_VALUE_JS, [element, value])
        return True

    async def click(self, selector: str) -> bool:
        element = await self.first_visible(selector)
        if element is None:
            return False

        try:
            await element.click(timeout=self.config.timeout_seconds * 1000)
        except PlaywrightError as e:
            logger.debug(f"click failed for '{selector}', using JS: {e}")
            await element.evaluate("(el) => el.click()")
        return True

    async def click_button_by_text(self, text: str, last: bool = False) -> bool:
        self._activity()
        return bool(await self.page.evaluate(CLICK_BY_TEXT_JS, [text, last]))

    async def press(self, key: str):
        self._activity()
        await self.page.keyboard.press(key)

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        self._activity()
        if arg is None:
            return await self.page.evaluate(script)
        return await self.page.evaluate(script, arg)

    # Session state

    async def cookies(self) -> List[Dict[str, Any]]:
        self._activity()
        return await self.context.cookies()

    async def add_cookies(self, cookies: List[Dict[str, Any]]):
        self._activity()
        if cookies:
            await self.context.add_cookies(cookies)

    async def read_storage(self, kind: str) -> Dict[str, str]:
        """kind is "local" or "session"; storage is origin-scoped so navigate first."""
        self._activity()
        return await self.page.evaluate(READ_STORAGE_JS, kind) or {}

    async def write_storage(self, kind: str, data: Dict[str, str]) -> int:
        self._activity()
        if not data:
            return 0
        return await self.page.evaluate(WRITE_STORAGE_JS, [kind, data])


BrowserFactory = Callable[[BrowserConfig], Awaitable[BrowserSession]]


async def open_session(config: BrowserConfig) -> BrowserSession:
    """Launch a browser and return the open handle. Caller must close() it."""
    playwright = await async_playwright().start()
    browser = None
    try:
        browser = await playwright.chromium.launch(**config.launch_kwargs())
        width, height = config.window_size
        context_kwargs: Dict[str, Any] = {"viewport": {"width": width, "height": height}, "locale": "en-US"}
        if config.stealth:
            context_kwargs["user_agent"] = config.stealth.user_agent
        context = await browser.new_context(**context_kwargs)
        context.set_default_timeout(config.timeout_seconds * 1000)
        context.set_default_navigation_timeout(config.navigation_timeout_seconds * 1000)
        if config.stealth:
            await config.stealth.apply(context)
        page = await context.new_page()
    except BaseException:
        if browser is not None:
            await browser.close()
        await playwright.stop()
        raise

    session = BrowserSession(page, context, browser, playwright, config)
    session.start_watchdog()
    logger.debug(f"Browser launched (headless={config.headless}, idle timeout={config.idle_timeout_seconds}s)")
    return session


@asynccontextmanager
async def with_session(config: BrowserConfig, factory: Optional[BrowserFactory] = None):
    """Scoped browser: yields a session and closes the process however the block exits."""
    session = await (factory or open_session)(config)
    try:
        yield session
    finally:
        await session.close()
