"""Playwright-driven capture: one browser, one context, one tab per request."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncContextManager, AsyncIterator, Awaitable, Callable, List, Optional, get_args
from urllib.parse import urlparse

from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Route,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from webshot import capture_warnings as codes
from webshot.blocklist import (
    BlocklistConfig,
    apply_hide_css,
    default_blocklist,
    hide_selectors_css,
    should_block_fonts,
)
from webshot.capture_warnings import CaptureWarningEntry, WarningCollector
from webshot.element_detection import (
    DetectedElement,
    ElementDetector,
    NullElementDetector,
    filter_elements,
)
from webshot.schemas import CaptureRequest, ElementType, ScrollDirective, Viewport, WebshotError
from webshot.settings import BrowserSettings, Settings, get_settings
from webshot.stealth import install_stealth

LOGGER = logging.getLogger(__name__)

ALL_ELEMENT_TYPES: tuple[str, ...] = get_args(ElementType)
PDF_OPTIONS: dict[str, Any] = {
    "format": "A4",
    "print_background": True,
    "margin": {"top": "1cm", "right": "1cm", "bottom": "1cm", "left": "1cm"},
}

_HIDE_ELEMENTS_SCRIPT = """
(selectors) => {
    let hidden = 0;
    for (const selector of selectors) {
        let nodes = [];
        try {
            nodes = document.querySelectorAll(selector);
        } catch (err) {
            continue;
        }
        nodes.forEach((node) => {
            if (node instanceof HTMLElement) {
                node.style.setProperty('display', 'none', 'important');
                hidden += 1;
            }
        });
    }
    return hidden;
}
"""
_SCROLL_EXTENT_SCRIPT = """
(horizontal) => {
    const root = document.scrollingElement || document.documentElement;
    return horizontal
        ? Math.max(0, root.scrollWidth - window.innerWidth)
        : Math.max(0, root.scrollHeight - window.innerHeight);
}
"""
_SCROLL_BY_SCRIPT = "([dx, dy]) => window.scrollBy(dx, dy)"
_SCROLL_HOME_SCRIPT = "() => window.scrollTo(0, 0)"
_SCROLL_OFFSET_SCRIPT = "() => [window.scrollX, window.scrollY]"


class CaptureError(WebshotError):
    """Fatal capture failure; no artifact is produced."""


class BrowserLaunchError(CaptureError):
    """Chromium, its context or the tab could not be created."""


class NavigationError(CaptureError):
    """The target URL could not be loaded."""


class NavigationTimeoutError(NavigationError):
    """Navigation did not finish within the fixed navigation timeout."""


class ElementNotFoundError(CaptureError):
    """The requested element selector matched nothing visible."""

    def __init__(self, selector: str, reason: str | None = None) -> None:
        message = f'Element with selector "{selector}" not found'
        super().__init__(f"{message}: {reason}" if reason else message)
        self.selector = selector


@dataclass(slots=True)
class RawCapture:
    """Artifact bytes straight from the browser plus what happened on the way."""

    content: bytes
    content_type: str
    viewport: Viewport
    warnings: List[CaptureWarningEntry] = field(default_factory=list)
    removed_elements: List[DetectedElement] = field(default_factory=list)
    blocked_requests: dict[str, int] = field(default_factory=dict)
    capture_ms: int = 0


BrowserLauncher = Callable[[BrowserSettings], AsyncContextManager[Browser]]


_CHANNEL_ALIASES = {
    "cft": "chrome",
    "chrome-for-testing": "chrome",
}


@asynccontextmanager
async def launch_chromium(settings: BrowserSettings) -> AsyncIterator[Browser]:
    """Start Playwright + Chromium and guarantee both are shut down."""

    async with async_playwright() as playwright:
        browser = await _launch_browser(playwright, settings)
        try:
            yield browser
        finally:
            await _close_quietly(browser, "browser")


async def _launch_browser(playwright, settings: BrowserSettings) -> Browser:
    channel = _normalize_channel(settings.playwright_channel)
    if channel != settings.playwright_channel:
        LOGGER.debug("Normalized playwright channel '%s' -> '%s'", settings.playwright_channel, channel)
    LOGGER.debug("launching chromium", extra={"channel": channel})
    options: dict[str, Any] = {"headless": settings.headless, "args": list(settings.launch_args)}
    if channel != "chromium":
        options["channel"] = channel
    return await playwright.chromium.launch(**options)


def _normalize_channel(channel: str) -> str:
    if not channel:
        return "chromium"
    lowered = channel.strip().lower()
    return _CHANNEL_ALIASES.get(lowered, lowered)


async def capture_artifact(
    request: CaptureRequest,
    *,
    settings: Settings | None = None,
    detector: ElementDetector | None = None,
    blocklist: BlocklistConfig | None = None,
    launcher: BrowserLauncher | None = None,
    mockup_device: str | None = None,
) -> RawCapture:
    """Drive one tab through the full page-mutation sequence and return raw bytes.

    Raster captures are always taken as PNG; lossy encodings happen in
    post-processing so mockup compositing never works on recompressed input.
    The tab, context and browser are closed on every exit path, including
    task cancellation.
    """

    settings = settings or get_settings()
    browser_settings = settings.browser
    detector = detector or NullElementDetector()
    blocklist = blocklist or default_blocklist()
    launcher = launcher or launch_chromium
    viewport = request.resolve_viewport(mockup_device)
    warnings = WarningCollector()
    start = time.perf_counter()

    async with AsyncExitStack() as stack:
        # Acquire
        try:
            browser = await stack.enter_async_context(launcher(browser_settings))
            context = await _new_context(browser, request, viewport, browser_settings, warnings)
            stack.push_async_callback(_close_quietly, context, "context")
            page = await context.new_page()
            stack.push_async_callback(_close_quietly, page, "page")
        except PlaywrightError as exc:
            raise BrowserLaunchError(f"Failed to launch browser: {exc}") from exc

        blocked = await _configure_interception(page, request, blocklist)
        await _configure_identity(context, request)
        await page.set_viewport_size({"width": viewport.width, "height": viewport.height})
        await _configure_emulation(context, page, request, warnings)
        await _configure_session(context, page, request)

        await _navigate(page, request, browser_settings)
        removed = await _mutate_page(page, request, browser_settings, blocklist, detector, warnings)

        content, content_type = await _take_capture(page, request)

    capture_ms = int((time.perf_counter() - start) * 1000)
    LOGGER.info(
        "Captured %s as %s in %sms (%s bytes, %s warnings)",
        request.url,
        content_type,
        capture_ms,
        len(content),
        len(warnings),
    )
    return RawCapture(
        content=content,
        content_type=content_type,
        viewport=viewport,
        warnings=warnings.entries,
        removed_elements=removed,
        blocked_requests=dict(blocked),
        capture_ms=capture_ms,
    )


async def _new_context(
    browser: Browser,
    request: CaptureRequest,
    viewport: Viewport,
    settings: BrowserSettings,
    warnings: WarningCollector,
) -> BrowserContext:
    options: dict[str, Any] = {
        "viewport": {"width": viewport.width, "height": viewport.height},
        "device_scale_factor": request.device_scale_factor,
        "locale": "en-US",
    }
    user_agent = resolve_user_agent(request, settings)
    if user_agent:
        options["user_agent"] = user_agent
    if not request.timezone:
        return await browser.new_context(**options)
    try:
        return await browser.new_context(**options, timezone_id=request.timezone)
    except PlaywrightError as exc:
        LOGGER.warning("Timezone override %s rejected: %s", request.timezone, exc)
        warnings.add(codes.EMULATION_FAILED, "timezone", exc)
        return await browser.new_context(**options)


def resolve_user_agent(request: CaptureRequest, settings: BrowserSettings) -> str | None:
    """Explicit override, then the stealth default, then whatever Chromium reports."""

    if request.user_agent:
        return request.user_agent
    if request.stealth:
        return settings.stealth_user_agent
    return None


RouteHandler = Callable[[Route], Awaitable[None]]


def build_route_handler(
    request: CaptureRequest,
    blocklist: BlocklistConfig,
    counters: dict[str, int] | None = None,
) -> RouteHandler:
    """Return the request filter installed before navigation."""

    block_fonts = should_block_fonts(request)
    stats = counters if counters is not None else {}

    async def _handle(route: Route) -> None:
        outgoing = route.request
        resource_type = outgoing.resource_type
        reason: Optional[str] = None
        if request.block_ads and blocklist.is_blocked_domain(outgoing.url):
            reason = "ad-domain"
        elif blocklist.is_blocked_resource_type(resource_type):
            reason = resource_type
        elif block_fonts and resource_type == "font":
            reason = "font"

        if reason is None:
            await route.continue_()
            return
        stats[reason] = stats.get(reason, 0) + 1
        await route.abort()

    return _handle


async def _configure_interception(
    page: Page,
    request: CaptureRequest,
    blocklist: BlocklistConfig,
) -> dict[str, int]:
    counters: dict[str, int] = {}
    await page.route("**/*", build_route_handler(request, blocklist, counters))
    return counters


async def _configure_identity(context: BrowserContext, request: CaptureRequest) -> None:
    if request.stealth:
        await install_stealth(context)


async def _configure_emulation(
    context: BrowserContext,
    page: Page,
    request: CaptureRequest,
    warnings: WarningCollector,
) -> None:
    if request.geolocation:
        try:
            await context.grant_permissions(["geolocation"], origin=_origin(request.url))
            await context.set_geolocation(
                {"latitude": request.geolocation.latitude, "longitude": request.geolocation.longitude}
            )
        except PlaywrightError as exc:
            LOGGER.warning("Geolocation override failed for %s: %s", request.url, exc)
            warnings.add(codes.EMULATION_FAILED, "geolocation", exc)
    if request.dark_mode:
        try:
            await page.emulate_media(color_scheme="dark")
        except PlaywrightError as exc:
            LOGGER.warning("Dark mode emulation failed for %s: %s", request.url, exc)
            warnings.add(codes.EMULATION_FAILED, "dark-mode", exc)


async def _configure_session(context: BrowserContext, page: Page, request: CaptureRequest) -> None:
    try:
        if request.cookies:
            await context.add_cookies(build_cookies(request))
        if request.headers:
            await page.set_extra_http_headers(dict(request.headers))
    except PlaywrightError as exc:
        raise CaptureError(f"Failed to apply cookies or headers: {exc}") from exc


def build_cookies(request: CaptureRequest) -> list[dict[str, Any]]:
    """Cookie payloads defaulting to the target host, path ``/`` and scheme-derived ``secure``."""

    parsed = urlparse(request.url)
    host = parsed.hostname or ""
    secure_default = parsed.scheme == "https"
    cookies: list[dict[str, Any]] = []
    for cookie in request.cookies or ():
        payload: dict[str, Any] = {
            "name": cookie.name,
            "value": cookie.value,
            "domain": cookie.domain or host,
            "path": cookie.path or "/",
            "secure": secure_default if cookie.secure is None else cookie.secure,
        }
        if cookie.http_only is not None:
            payload["httpOnly"] = cookie.http_only
        cookies.append(payload)
    return cookies


async def _navigate(page: Page, request: CaptureRequest, settings: BrowserSettings) -> None:
    wait_until = "networkidle" if request.wait_for_network_idle else "domcontentloaded"
    try:
        await page.goto(request.url, wait_until=wait_until, timeout=settings.navigation_timeout_ms)
    except PlaywrightTimeoutError as exc:
        raise NavigationTimeoutError(
            f"Navigation to {request.url} timed out after {settings.navigation_timeout_ms}ms"
        ) from exc
    except PlaywrightError as exc:
        raise NavigationError(f"Navigation to {request.url} failed: {exc}") from exc


async def _mutate_page(
    page: Page,
    request: CaptureRequest,
    settings: BrowserSettings,
    blocklist: BlocklistConfig,
    detector: ElementDetector,
    warnings: WarningCollector,
) -> List[DetectedElement]:
    if request.block_ads:
        await apply_hide_css(page, blocklist.hide_css)

    if request.wait_for_selector:
        try:
            await page.wait_for_selector(request.wait_for_selector, timeout=settings.selector_timeout_ms)
        except PlaywrightError as exc:
            LOGGER.warning("Selector %s did not appear: %s", request.wait_for_selector, exc)
            warnings.add(codes.SELECTOR_WAIT_TIMEOUT, "wait-for-selector", exc)

    if request.javascript:
        try:
            await page.evaluate(request.javascript)
        except PlaywrightError as exc:
            LOGGER.warning("Custom script failed on %s: %s", request.url, exc)
            warnings.add(codes.SCRIPT_FAILED, "javascript", exc)
        await page.wait_for_timeout(settings.script_settle_ms)

    delay = min(request.delay, settings.max_delay_ms)
    if delay > 0:
        await page.wait_for_timeout(delay)

    if request.hide_selectors:
        await apply_hide_css(page, hide_selectors_css(request.hide_selectors))

    removed: List[DetectedElement] = []
    if request.ai_removal.enabled:
        removed = await remove_detected_elements(page, request, detector, settings, warnings)

    if request.scroll and request.scroll.enabled:
        try:
            await scroll_through(page, request.scroll, settings)
        except PlaywrightError as exc:
            LOGGER.warning("Scroll capture failed on %s: %s", request.url, exc)
            warnings.add(codes.SCROLL_FAILED, "scroll", exc)

    return removed


async def remove_detected_elements(
    page: Page,
    request: CaptureRequest,
    detector: ElementDetector,
    settings: BrowserSettings,
    warnings: WarningCollector,
) -> List[DetectedElement]:
    """Hide classifier hits; any failure means nothing is hidden."""

    threshold = request.effective_confidence
    if threshold is None:
        return []
    types = request.ai_removal.types or ALL_ELEMENT_TYPES
    try:
        html = await page.content()
        detected = await detector.detect(html)
        matched = filter_elements(detected, types, threshold)
        if matched:
            await page.evaluate(_HIDE_ELEMENTS_SCRIPT, [element.selector for element in matched])
            await page.wait_for_timeout(settings.ai_settle_ms)
    except Exception as exc:  # noqa: BLE001 - classifier is a black box
        LOGGER.warning("AI element removal failed for %s: %s", request.url, exc)
        warnings.add(codes.AI_REMOVAL_FAILED, "ai-removal", exc)
        return []
    LOGGER.debug("AI removal hid %s elements", len(matched), extra={"url": request.url})
    return matched


def scroll_step_delay_ms(speed_px_per_s: int, step_px: int) -> int:
    return max(1, round(step_px / speed_px_per_s * 1000))


async def scroll_through(page: Page, scroll: ScrollDirective, settings: BrowserSettings) -> int:
    """Scroll in fixed steps to wake lazy content, then return to the origin.

    Returns the number of steps taken.
    """

    horizontal = scroll.direction == "horizontal"
    distance = scroll.distance
    if distance is None:
        distance = int(await page.evaluate(_SCROLL_EXTENT_SCRIPT, horizontal))
    step_px = settings.scroll_step_px
    step_delay = scroll_step_delay_ms(scroll.speed, step_px)

    travelled = 0
    steps = 0
    while travelled < distance:
        delta = min(step_px, distance - travelled)
        await page.evaluate(_SCROLL_BY_SCRIPT, [delta, 0] if horizontal else [0, delta])
        travelled += delta
        steps += 1
        await page.wait_for_timeout(step_delay)

    await page.evaluate(_SCROLL_HOME_SCRIPT)
    await page.wait_for_timeout(settings.scroll_settle_ms)
    return steps


async def _take_capture(page: Page, request: CaptureRequest) -> tuple[bytes, str]:
    if request.format == "pdf":
        try:
            return await page.pdf(**PDF_OPTIONS), "application/pdf"
        except PlaywrightError as exc:
            raise CaptureError(f"PDF rendering failed: {exc}") from exc

    options: dict[str, Any] = {"type": "png", "full_page": request.full_page}
    clip = await _resolve_clip(page, request)
    if clip is not None:
        # Clip rectangles are document coordinates.
        options["clip"] = clip
        options["full_page"] = True
    try:
        return await page.screenshot(**options), "image/png"
    except PlaywrightError as exc:
        raise CaptureError(f"Screenshot failed: {exc}") from exc


async def _resolve_clip(page: Page, request: CaptureRequest) -> dict[str, float] | None:
    if request.clip is not None:
        return request.clip.model_dump()
    if not request.selector:
        return None
    try:
        handle = await page.query_selector(request.selector)
        box = await handle.bounding_box() if handle is not None else None
        # bounding_box() is viewport-relative; shift by the current scroll offset.
        scroll_x, scroll_y = await page.evaluate(_SCROLL_OFFSET_SCRIPT) if box else (0, 0)
    except PlaywrightError as exc:
        raise ElementNotFoundError(request.selector, str(exc)) from exc
    if not box:
        raise ElementNotFoundError(request.selector)
    return {
        "x": box["x"] + scroll_x,
        "y": box["y"] + scroll_y,
        "width": box["width"],
        "height": box["height"],
    }


async def _close_quietly(target: Any, label: str) -> None:
    try:
        await target.close()
    except asyncio.CancelledError:
        raise
    except Exception as exc:  # noqa: BLE001 - never mask the primary result
        LOGGER.warning("Failed to close %s: %s", label, exc)


def _origin(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"
