"""Playwright-backed browser session used by the messaging actions.

A :class:`BrowserSession` wraps one persistent Chromium context living in a
throw-away profile directory.  It is handed explicitly to every helper that
needs the page; nothing holds a reference to it once the owning
:func:`open_browser_session` block exits.
"""

from __future__ import annotations

import asyncio
import logging
import random
import shutil
import tempfile
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence

from playwright.async_api import BrowserContext, ElementHandle, FilePayload, Frame, Page, Playwright, async_playwright

from .config import MessagingConfig
from .deadline import CancellationToken
from .faults import ErrorCode, FaultKind, MessagingError, build_details, wrap_fault
from .models import DeviceProfile, Proxy
from .page_scripts import DEFAULT_MAX_DEPTH, platform_init_script
from .proxy_forwarder import ProxyForwarder, needs_forwarder

log = logging.getLogger(__name__)

LAUNCH_TIMEOUT_MS = 120_000
CLICK_TIMEOUT_MS = 4_000
PROFILE_PREFIX = "kl-profile-"
LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--lang=de-DE",
    "--disable-dev-shm-usage",
    "--disable-gpu",
]


def browser_proxy_settings(
    proxy: Optional[Proxy], forwarder: Optional[ProxyForwarder] = None
) -> Optional[Dict[str, str]]:
    """Translate an account proxy into Playwright launch settings.

    Authenticated SOCKS proxies are only reachable through a running ``forwarder``.
    """

    if proxy is None:
        return None
    if forwarder is not None:
        return {"server": forwarder.server}
    if needs_forwarder(proxy):
        # Chromium cannot authenticate against SOCKS proxies.
        raise MessagingError(
            ErrorCode.PROXY_TUNNEL_CONNECTION_FAILED,
            kind=FaultKind.PROXY_TUNNEL,
            details=build_details("browser-proxy", "authenticated SOCKS proxy needs a running forwarder"),
        )
    settings = {"server": proxy.server(for_browser=True)}
    if proxy.has_credentials:
        settings["username"] = proxy.username
        settings["password"] = proxy.password
    return settings


class BrowserSession:
    """Navigate, evaluate, find, click and type on one page."""

    def __init__(
        self,
        context: BrowserContext,
        page: Page,
        *,
        playwright: Optional[Playwright] = None,
        max_depth: int = DEFAULT_MAX_DEPTH,
        close_timeout_ms: int = 4500,
        kill_wait_ms: int = 800,
    ) -> None:
        self.context = context
        self.page = page
        self.max_depth = max_depth
        self._playwright = playwright
        self._close_timeout_ms = close_timeout_ms
        self._kill_wait_ms = kill_wait_ms
        self._close_task: Optional[asyncio.Task[None]] = None

    @property
    def url(self) -> str:
        try:
            return self.page.url
        except Exception:
            return ""

    @property
    def is_closed(self) -> bool:
        return self._close_task is not None or self.page.is_closed()

    # navigation -------------------------------------------------------------

    async def navigate(
        self,
        url: str,
        *,
        wait_until: str = "domcontentloaded",
        timeout_ms: int = 30_000,
        context: str = "navigate",
    ) -> None:
        try:
            response = await self.page.goto(url, wait_until=wait_until, timeout=timeout_ms)
        except Exception as exc:
            raise wrap_fault(exc, f"{context}:{url}") from exc
        if response is not None and response.status == 407:
            raise MessagingError(
                ErrorCode.PROXY_TUNNEL_CONNECTION_FAILED,
                kind=FaultKind.PROXY_TUNNEL,
                details=build_details(context, url, "Proxy authentication required"),
                status=407,
            )

    async def reload(self, *, timeout_ms: int = 30_000, context: str = "reload") -> None:
        try:
            await self.page.reload(wait_until="domcontentloaded", timeout=timeout_ms)
        except Exception as exc:
            raise wrap_fault(exc, context) from exc

    async def add_cookies(self, cookies: Sequence[Dict[str, Any]]) -> None:
        if cookies:
            await self.context.add_cookies(list(cookies))

    # queries ----------------------------------------------------------------

    def frames(self) -> List[Frame]:
        """Main frame plus nested frames, breadth-first, up to ``max_depth``."""

        found: List[Frame] = []
        queue = deque([(self.page.main_frame, 0)])
        while queue:
            frame, depth = queue.popleft()
            if frame.is_detached():
                continue
            found.append(frame)
            if depth < self.max_depth:
                queue.extend((child, depth + 1) for child in frame.child_frames)
        return found

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        """Evaluate in the main frame; query failures yield ``None``."""

        try:
            return await self.page.evaluate(script, arg)
        except Exception as exc:
            log.debug("Page evaluate failed: %s", exc)
            return None

    async def evaluate_all(self, script: str, arg: Any = None) -> List[Any]:
        """Evaluate in every reachable frame, skipping frames that fail."""

        results: List[Any] = []
        for frame in self.frames():
            try:
                results.append(await frame.evaluate(script, arg))
            except Exception as exc:
                log.debug("Frame evaluate failed (%s): %s", frame.url, exc)
        return results

    async def evaluate_first(self, script: str, arg: Any = None, *, accept: Callable[[Any], bool] = bool) -> Any:
        """Evaluate frame by frame and stop at the first result ``accept`` approves."""

        for frame in self.frames():
            try:
                result = await frame.evaluate(script, arg)
            except Exception as exc:
                log.debug("Frame evaluate failed (%s): %s", frame.url, exc)
                continue
            if accept(result):
                return result
        return None

    async def find_elements(
        self,
        selectors: Sequence[str],
        *,
        require_visible: bool = False,
        deep: bool = True,
    ) -> List[ElementHandle]:
        # CSS engine pierces open shadow roots; nested documents come from frames().
        frames = self.frames() if deep else [self.page.main_frame]
        handles: List[ElementHandle] = []
        for frame in frames:
            for selector in selectors:
                try:
                    matches = await frame.query_selector_all(selector)
                except Exception:
                    continue
                for handle in matches:
                    if require_visible:
                        try:
                            if not await handle.is_visible():
                                continue
                        except Exception:
                            continue
                    handles.append(handle)
        return handles

    # interactions -----------------------------------------------------------

    async def dispatch_click(self, handle: ElementHandle) -> bool:
        """Click like a user: pointer travel to the element, then fall back to forced and DOM clicks."""

        try:
            await handle.scroll_into_view_if_needed(timeout=CLICK_TIMEOUT_MS)
            box = await handle.bounding_box()
            if box:
                x = box["x"] + box["width"] / 2 + random.uniform(-2, 2)
                y = box["y"] + box["height"] / 2 + random.uniform(-2, 2)
                await self.page.mouse.move(x, y, steps=random.randint(6, 14))
                await asyncio.sleep(random.uniform(0.06, 0.14))
                await self.page.mouse.click(x, y, delay=random.randint(40, 90))
                return True
            await handle.click(timeout=CLICK_TIMEOUT_MS)
            return True
        except Exception as exc:
            log.warning("Click retry with force due to: %s", exc)
        try:
            await handle.click(timeout=CLICK_TIMEOUT_MS, force=True)
            return True
        except Exception as force_error:
            log.debug("Forced click failed: %s", force_error)
        try:
            await handle.evaluate("el => el.click()")
            return True
        except Exception as js_error:
            log.warning("Click failed on all strategies: %s", js_error)
            return False

    async def type_text(self, handle: ElementHandle, text: str, *, humanized: bool = True) -> None:
        """Replace the content of ``handle`` with ``text``."""

        await handle.click(timeout=CLICK_TIMEOUT_MS)
        await self.page.keyboard.press("Control+A")
        await self.page.keyboard.press("Backspace")
        if not text:
            return
        if not humanized:
            await handle.fill(text)
            return
        for char in text:
            await self.page.keyboard.type(char, delay=random.randint(35, 90))

    async def press(self, key: str) -> None:
        await self.page.keyboard.press(key)

    async def set_input_files(self, handle: ElementHandle, files: Sequence[FilePayload]) -> None:
        await handle.set_input_files(list(files))

    async def upload_via_chooser(self, trigger: ElementHandle, files: Sequence[FilePayload], *, timeout_ms: int) -> bool:
        """Click ``trigger`` and answer the file chooser it opens."""

        try:
            async with self.page.expect_file_chooser(timeout=timeout_ms) as chooser_info:
                if not await self.dispatch_click(trigger):
                    return False
            chooser = await chooser_info.value
            await chooser.set_files(list(files))
            return True
        except Exception as exc:
            log.info("File chooser upload failed: %s", exc)
            return False

    # events -----------------------------------------------------------------

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self.page.on(event, handler)

    def off(self, event: str, handler: Callable[..., Any]) -> None:
        self.page.remove_listener(event, handler)

    # teardown ---------------------------------------------------------------

    def request_close(self) -> "asyncio.Task[None]":
        """Start tearing the session down without waiting; used by abort callbacks."""

        if self._close_task is None:
            self._close_task = asyncio.ensure_future(self._shutdown())
        return self._close_task

    async def close(self) -> None:
        await self.request_close()

    async def _shutdown(self) -> None:
        try:
            await asyncio.wait_for(self.context.close(), timeout=self._close_timeout_ms / 1000)
        except Exception as exc:
            log.warning("Graceful browser close failed, forcing shutdown: %s", exc)
        if self._playwright is None:
            return
        try:
            await asyncio.wait_for(self._playwright.stop(), timeout=self._kill_wait_ms / 1000)
        except Exception as exc:
            log.warning("Forced browser shutdown did not finish cleanly: %s", exc)


@asynccontextmanager
async def open_browser_session(
    *,
    proxy: Optional[Proxy],
    device: DeviceProfile,
    config: MessagingConfig,
    cancel: Optional[CancellationToken] = None,
) -> AsyncIterator[BrowserSession]:
    """Launch a browser on an ephemeral profile and always tear both down.

    A proxy forwarder needed for the account's proxy shares the same lifetime.
    """

    forwarder = ProxyForwarder(proxy) if needs_forwarder(proxy) else None
    profile_dir = tempfile.mkdtemp(prefix=PROFILE_PREFIX)
    playwright: Optional[Playwright] = None
    session: Optional[BrowserSession] = None
    try:
        try:
            if forwarder is not None:
                await forwarder.start()
            proxy_settings = browser_proxy_settings(proxy, forwarder)
            playwright = await async_playwright().start()
            launch: Dict[str, Any] = {
                "headless": config.headless,
                "args": LAUNCH_ARGS,
                "user_agent": device.user_agent,
                "viewport": {"width": device.viewport_width, "height": device.viewport_height},
                "locale": device.browser_locale,
                "timezone_id": device.timezone,
                "extra_http_headers": {"Accept-Language": device.locale},
                "timeout": LAUNCH_TIMEOUT_MS,
            }
            if proxy_settings:
                launch["proxy"] = proxy_settings
            if device.geolocation is not None:
                launch["geolocation"] = device.geolocation.model_dump()
                launch["permissions"] = ["geolocation"]
            context = await playwright.chromium.launch_persistent_context(profile_dir, **launch)
            await context.add_init_script(platform_init_script(device.platform))
            page = context.pages[0] if context.pages else await context.new_page()
            page.set_default_navigation_timeout(config.navigation_timeout_ms)
        except Exception as exc:
            raise wrap_fault(exc, "browser-launch") from exc

        session = BrowserSession(
            context,
            page,
            playwright=playwright,
            close_timeout_ms=config.browser_close_timeout_ms,
            kill_wait_ms=config.browser_kill_wait_ms,
        )
        if cancel is not None:
            cancel.add_callback(session.request_close)
        yield session
    finally:
        if cancel is not None and session is not None:
            cancel.remove_callback(session.request_close)
        if session is not None:
            await session.close()
        elif playwright is not None:
            await playwright.stop()
        if forwarder is not None:
            await forwarder.close()
        shutil.rmtree(profile_dir, ignore_errors=True)


class BrowserSessionFactory:
    """Creates one scoped session per action invocation."""

    def __init__(self, config: MessagingConfig) -> None:
        self.config = config

    def open(
        self,
        *,
        proxy: Optional[Proxy],
        device: DeviceProfile,
        cancel: Optional[CancellationToken] = None,
    ):
        return open_browser_session(proxy=proxy, device=device, config=self.config, cancel=cancel)
