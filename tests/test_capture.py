from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import List

import pytest
from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError

import webshot.capture as capture_module
from webshot import capture_warnings as codes
from webshot.blocklist import BlocklistConfig
from webshot.capture import (
    BrowserLaunchError,
    CaptureError,
    ElementNotFoundError,
    NavigationError,
    NavigationTimeoutError,
    build_cookies,
    build_route_handler,
    capture_artifact,
    resolve_user_agent,
    scroll_step_delay_ms,
    scroll_through,
)
from webshot.element_detection import DetectedElement
from webshot.schemas import CaptureRequest, ScrollDirective
from webshot.settings import get_settings

from playwright_fakes import FakeBrowser, FakePage, FakeRoute, failing_launcher, fake_launcher

BLOCKLIST = BlocklistConfig(
    version="test",
    domains=frozenset({"doubleclick.net", "taboola.com"}),
    resource_types=frozenset({"media", "websocket"}),
    hide_selectors=(".ad-slot",),
)


class _ExplodingDetector:
    def __init__(self) -> None:
        self.calls = 0

    async def detect(self, html: str) -> List[DetectedElement]:  # noqa: ARG002
        self.calls += 1
        raise RuntimeError("classifier offline")


class _StaticDetector:
    def __init__(self, elements: List[DetectedElement]) -> None:
        self.elements = elements
        self.seen_html: List[str] = []

    async def detect(self, html: str) -> List[DetectedElement]:
        self.seen_html.append(html)
        return self.elements


async def _capture(request: CaptureRequest, browser: FakeBrowser, **kwargs):
    return await capture_artifact(
        request,
        settings=get_settings(),
        blocklist=BLOCKLIST,
        launcher=fake_launcher(browser),
        **kwargs,
    )


@pytest.mark.asyncio()
async def test_capture_png_uses_device_viewport_and_releases_everything() -> None:
    browser = FakeBrowser()
    request = CaptureRequest(url="https://example.com", device="mobile")

    raw = await _capture(request, browser)

    assert raw.content_type == "image/png"
    assert (raw.viewport.width, raw.viewport.height) == (375, 812)
    assert browser.context.options["viewport"] == {"width": 375, "height": 812}
    assert browser.page.viewport == {"width": 375, "height": 812}
    assert browser.page.screenshot_kwargs == {"type": "png", "full_page": False}
    assert browser.page.goto_calls[0][1]["wait_until"] == "domcontentloaded"
    assert browser.page.goto_calls[0][1]["timeout"] == 30_000
    assert browser.page.closed and browser.context.closed and browser.closed
    assert raw.warnings == []


@pytest.mark.asyncio()
async def test_capture_pdf_uses_a4_with_margins() -> None:
    browser = FakeBrowser()
    request = CaptureRequest(url="https://example.com", format="pdf", wait_for_network_idle=True)

    raw = await _capture(request, browser)

    assert raw.content_type == "application/pdf"
    assert raw.content.startswith(b"%PDF")
    assert browser.page.pdf_kwargs is not None
    assert browser.page.pdf_kwargs["format"] == "A4"
    assert browser.page.pdf_kwargs["print_background"] is True
    assert browser.page.pdf_kwargs["margin"]["top"] == "1cm"
    assert browser.page.screenshot_kwargs is None
    assert browser.page.goto_calls[0][1]["wait_until"] == "networkidle"


@pytest.mark.asyncio()
async def test_ai_removal_failure_degrades_to_warning() -> None:
    browser = FakeBrowser()
    detector = _ExplodingDetector()
    request = CaptureRequest(url="https://example.com", ai_removal={"enabled": True, "types": ["cookie-banner"]})

    raw = await _capture(request, browser, detector=detector)

    assert detector.calls == 1
    assert raw.content
    assert raw.removed_elements == []
    assert [entry.code for entry in raw.warnings] == [codes.AI_REMOVAL_FAILED]
    assert all("setProperty('display', 'none'" not in script for script, _ in browser.page.evaluations)


@pytest.mark.asyncio()
async def test_ai_removal_hides_only_confident_requested_types() -> None:
    browser = FakeBrowser()
    detector = _StaticDetector(
        [
            DetectedElement(".cookie", "cookie-banner", 0.95),
            DetectedElement(".ad", "ad", 0.5),
            DetectedElement(".chat", "chat-widget", 0.99),
        ]
    )
    request = CaptureRequest(
        url="https://example.com",
        ai_removal={"enabled": True, "types": ["cookie-banner", "ad"], "confidence": 0.8},
    )

    raw = await _capture(request, browser, detector=detector)

    assert [element.selector for element in raw.removed_elements] == [".cookie"]
    hide_calls = [arg for script, arg in browser.page.evaluations if script == capture_module._HIDE_ELEMENTS_SCRIPT]
    assert hide_calls == [[".cookie"]]
    assert get_settings().browser.ai_settle_ms in browser.page.waits
    assert "cookies!" in detector.seen_html[0]


@pytest.mark.asyncio()
async def test_navigation_timeout_is_typed_and_still_releases() -> None:
    page = FakePage(goto_error=PlaywrightTimeoutError("Timeout 30000ms exceeded"))
    browser = FakeBrowser(page)

    with pytest.raises(NavigationTimeoutError):
        await _capture(CaptureRequest(url="https://slow.example"), browser)

    assert page.closed and browser.context.closed and browser.closed


@pytest.mark.asyncio()
async def test_navigation_failure_is_typed() -> None:
    browser = FakeBrowser(FakePage(goto_error=PlaywrightError("net::ERR_NAME_NOT_RESOLVED")))

    with pytest.raises(NavigationError) as excinfo:
        await _capture(CaptureRequest(url="https://nowhere.invalid"), browser)

    assert not isinstance(excinfo.value, NavigationTimeoutError)


@pytest.mark.asyncio()
async def test_launch_failure_maps_to_browser_launch_error() -> None:
    with pytest.raises(BrowserLaunchError):
        await capture_artifact(
            CaptureRequest(url="https://example.com"),
            settings=get_settings(),
            blocklist=BLOCKLIST,
            launcher=failing_launcher(),
        )


@pytest.mark.asyncio()
async def test_close_failure_does_not_mask_result() -> None:
    browser = FakeBrowser(context_close_error=PlaywrightError("Target closed"))

    raw = await _capture(CaptureRequest(url="https://example.com"), browser)

    assert raw.content
    assert browser.closed


@pytest.mark.asyncio()
async def test_cancellation_during_navigation_releases_browser() -> None:
    blocker = asyncio.Event()
    page = FakePage(goto_blocker=blocker)
    browser = FakeBrowser(page)

    task = asyncio.create_task(_capture(CaptureRequest(url="https://example.com"), browser))
    await asyncio.wait_for(page.goto_started.wait(), timeout=1)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert page.closed and browser.context.closed and browser.closed
    assert page.screenshot_kwargs is None


@pytest.mark.asyncio()
async def test_selector_clip_uses_bounding_box() -> None:
    box = {"x": 10.0, "y": 20.0, "width": 300.0, "height": 150.0}
    browser = FakeBrowser(FakePage(present_selectors={"#hero": box}))

    await _capture(CaptureRequest(url="https://example.com", selector="#hero"), browser)

    assert browser.page.screenshot_kwargs is not None
    assert browser.page.screenshot_kwargs["clip"] == box
    assert browser.page.screenshot_kwargs["full_page"] is True


@pytest.mark.asyncio()
async def test_explicit_clip_beats_selector() -> None:
    browser = FakeBrowser(FakePage(present_selectors={"#hero": {"x": 1, "y": 1, "width": 5, "height": 5}}))
    request = CaptureRequest(
        url="https://example.com",
        selector="#hero",
        clip={"x": 0, "y": 0, "width": 640, "height": 480},
    )

    await _capture(request, browser)

    assert browser.page.screenshot_kwargs is not None
    assert browser.page.screenshot_kwargs["clip"] == {"x": 0.0, "y": 0.0, "width": 640.0, "height": 480.0}


@pytest.mark.asyncio()
async def test_missing_selector_raises_element_not_found_and_releases() -> None:
    browser = FakeBrowser()

    with pytest.raises(ElementNotFoundError) as excinfo:
        await _capture(CaptureRequest(url="https://example.com", selector="#missing"), browser)

    assert excinfo.value.selector == "#missing"
    assert browser.page.closed and browser.closed


@pytest.mark.asyncio()
async def test_malformed_selector_raises_element_not_found_and_releases() -> None:
    page = FakePage(selector_error=PlaywrightError("SyntaxError: 'div[' is not a valid selector"))
    browser = FakeBrowser(page)

    with pytest.raises(ElementNotFoundError) as excinfo:
        await _capture(CaptureRequest(url="https://example.com", selector="div["), browser)

    assert excinfo.value.selector == "div["
    assert "not a valid selector" in str(excinfo.value)
    assert page.closed and browser.context.closed and browser.closed


@pytest.mark.asyncio()
async def test_selector_clip_is_shifted_by_scroll_offset() -> None:
    box = {"x": 10.0, "y": 20.0, "width": 300.0, "height": 150.0}
    browser = FakeBrowser(FakePage(present_selectors={"#hero": box}, scroll_offset=(5, 400)))

    await _capture(CaptureRequest(url="https://example.com", selector="#hero"), browser)

    assert browser.page.screenshot_kwargs is not None
    assert browser.page.screenshot_kwargs["clip"] == {"x": 15.0, "y": 420.0, "width": 300.0, "height": 150.0}


@pytest.mark.asyncio()
async def test_screenshot_failure_is_a_capture_error() -> None:
    page = FakePage(screenshot_error=PlaywrightError("Target page, context or browser has been closed"))
    browser = FakeBrowser(page)

    with pytest.raises(CaptureError, match="Screenshot failed"):
        await _capture(CaptureRequest(url="https://example.com"), browser)

    assert page.closed and browser.closed


@pytest.mark.asyncio()
async def test_cookie_rejection_is_a_capture_error() -> None:
    browser = FakeBrowser(FakePage(), cookie_error=PlaywrightError("Cookie should have a url or a domain/path pair"))
    request = CaptureRequest(url="https://example.com", cookies=[{"name": "sid", "value": "1"}])

    with pytest.raises(CaptureError, match="cookies or headers"):
        await _capture(request, browser)

    assert browser.page.goto_calls == []
    assert browser.page.closed


@pytest.mark.asyncio()
async def test_degraded_stages_collect_warnings_in_order() -> None:
    page = FakePage(
        script_error=PlaywrightError("ReferenceError: foo is not defined"),
        emulate_error=PlaywrightError("emulation unsupported"),
    )
    browser = FakeBrowser(page, reject_timezone=True)
    request = CaptureRequest(
        url="https://example.com",
        timezone="Mars/Olympus",
        dark_mode=True,
        wait_for_selector="#never",
        javascript="foo()",
    )

    raw = await _capture(request, browser)

    assert [entry.code for entry in raw.warnings] == [
        codes.EMULATION_FAILED,
        codes.EMULATION_FAILED,
        codes.SELECTOR_WAIT_TIMEOUT,
        codes.SCRIPT_FAILED,
    ]
    assert [entry.stage for entry in raw.warnings][:2] == ["timezone", "dark-mode"]
    assert "timezone_id" not in browser.context.options
    assert raw.content


@pytest.mark.asyncio()
async def test_mutation_sequence_applies_css_delay_and_geolocation() -> None:
    browser = FakeBrowser()
    request = CaptureRequest(
        url="https://example.com/page",
        block_ads=True,
        delay=25_000,
        hide_selectors=["#promo", ".banner"],
        geolocation={"latitude": 52.52, "longitude": 13.405},
        timezone="Europe/Berlin",
        headers={"X-Trace": "1"},
    )

    await _capture(request, browser)

    page = browser.page
    assert ".ad-slot" in page.styles[0]
    assert page.styles[1].startswith("#promo, .banner {")
    assert 10_000 in page.waits
    assert browser.context.options["timezone_id"] == "Europe/Berlin"
    assert browser.context.permissions == [(["geolocation"], "https://example.com")]
    assert browser.context.geolocation == {"latitude": 52.52, "longitude": 13.405}
    assert page.extra_headers == {"X-Trace": "1"}


@pytest.mark.asyncio()
async def test_stealth_installs_init_script_and_default_user_agent() -> None:
    browser = FakeBrowser()

    await _capture(CaptureRequest(url="https://example.com", stealth=True), browser)

    assert len(browser.context.init_scripts) == 1
    assert "webdriver" in browser.context.init_scripts[0]
    assert browser.context.options["user_agent"] == get_settings().browser.stealth_user_agent


def test_user_agent_precedence() -> None:
    settings = replace(get_settings().browser, stealth_user_agent="Stealthy/1.0")

    explicit = CaptureRequest(url="https://example.com", user_agent="Custom/2.0", stealth=True)
    stealth = CaptureRequest(url="https://example.com", stealth=True)
    plain = CaptureRequest(url="https://example.com")

    assert resolve_user_agent(explicit, settings) == "Custom/2.0"
    assert resolve_user_agent(stealth, settings) == "Stealthy/1.0"
    assert resolve_user_agent(plain, settings) is None


def test_build_cookies_defaults_from_target_url() -> None:
    request = CaptureRequest(
        url="https://shop.example.com/cart",
        cookies=[
            {"name": "session", "value": "abc"},
            {"name": "pref", "value": "dark", "domain": ".example.com", "path": "/app", "secure": False, "httpOnly": True},
        ],
    )

    cookies = build_cookies(request)

    assert cookies[0] == {"name": "session", "value": "abc", "domain": "shop.example.com", "path": "/", "secure": True}
    assert cookies[1]["domain"] == ".example.com"
    assert cookies[1]["path"] == "/app"
    assert cookies[1]["secure"] is False
    assert cookies[1]["httpOnly"] is True


def test_build_cookies_plain_http_is_not_secure() -> None:
    request = CaptureRequest(url="http://example.com", cookies=[{"name": "a", "value": "b"}])

    assert build_cookies(request)[0]["secure"] is False


@pytest.mark.asyncio()
async def test_route_handler_blocks_ads_media_and_fonts() -> None:
    counters: dict[str, int] = {}
    handler = build_route_handler(CaptureRequest(url="https://example.com", block_ads=True), BLOCKLIST, counters)

    ad = FakeRoute("https://securepubads.g.doubleclick.net/tag.js", "script")
    video = FakeRoute("https://example.com/intro.mp4", "media")
    font = FakeRoute("https://fonts.example.com/inter.woff2", "font")
    doc = FakeRoute("https://example.com/", "document")
    for route in (ad, video, font, doc):
        await handler(route)

    assert (ad.outcome, video.outcome, font.outcome, doc.outcome) == ("aborted", "aborted", "aborted", "continued")
    assert counters == {"ad-domain": 1, "media": 1, "font": 1}


@pytest.mark.asyncio()
async def test_route_handler_lets_ads_and_fonts_through_for_full_page() -> None:
    handler = build_route_handler(CaptureRequest(url="https://example.com", full_page=True), BLOCKLIST)

    ad = FakeRoute("https://ad.doubleclick.net/x", "script")
    font = FakeRoute("https://example.com/font.woff2", "font")
    socket = FakeRoute("wss://example.com/live", "websocket")
    for route in (ad, font, socket):
        await handler(route)

    assert (ad.outcome, font.outcome, socket.outcome) == ("continued", "continued", "aborted")


@pytest.mark.asyncio()
async def test_scroll_through_steps_and_returns_home() -> None:
    page = FakePage()
    settings = get_settings().browser

    steps = await scroll_through(page, ScrollDirective(enabled=True, distance=250, speed=500), settings)

    assert steps == 3
    scroll_args = [arg for script, arg in page.evaluations if "scrollBy" in script]
    assert scroll_args == [[0, 100], [0, 100], [0, 50]]
    assert "scrollTo(0, 0)" in page.evaluations[-1][0]
    assert page.waits == [200, 200, 200, settings.scroll_settle_ms]


@pytest.mark.asyncio()
async def test_scroll_defaults_to_document_extent_horizontally() -> None:
    page = FakePage(scroll_extent=200)

    steps = await scroll_through(page, ScrollDirective(enabled=True, direction="horizontal"), get_settings().browser)

    assert steps == 2
    scroll_args = [arg for script, arg in page.evaluations if "scrollBy" in script]
    assert scroll_args == [[100, 0], [100, 0]]


def test_scroll_step_delay() -> None:
    assert scroll_step_delay_ms(500, 100) == 200
    assert scroll_step_delay_ms(5_000, 100) == 20
    assert scroll_step_delay_ms(300, 100) == 333
