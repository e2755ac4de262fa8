"""Ad/tracker request blocking and overlay-hiding CSS used during capture."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Iterable
from urllib.parse import urlparse

from playwright.async_api import Page

from webshot.schemas import CaptureRequest
from webshot.settings import get_settings

LOGGER = logging.getLogger(__name__)

BUILTIN_DOMAINS = (
    "doubleclick.net",
    "googlesyndication.com",
    "googleadservices.com",
    "google-analytics.com",
    "googletagmanager.com",
    "amazon-adsystem.com",
    "adnxs.com",
    "taboola.com",
    "outbrain.com",
    "criteo.com",
)
BUILTIN_RESOURCE_TYPES = ("media", "websocket")
BUILTIN_HIDE_SELECTORS = (
    ".adsbygoogle",
    "[class*=\"ad-\"]",
    "[id*=\"ad-\"]",
    "[class*=\"cookie-banner\"]",
    "[class*=\"cookie-consent\"]",
    "#onetrust-banner-sdk",
    "[class*=\"newsletter-popup\"]",
    "[id*=\"intercom-container\"]",
)

_HIDE_DECLARATIONS = (
    "display: none !important;"
    " visibility: hidden !important;"
    " opacity: 0 !important;"
    " pointer-events: none !important;"
    " height: 0 !important;"
    " overflow: hidden !important;"
)


@dataclass(frozen=True)
class BlocklistConfig:
    """Parsed domain, resource-type and overlay-selector lists."""

    version: str
    domains: frozenset[str]
    resource_types: frozenset[str]
    hide_selectors: tuple[str, ...]

    def is_blocked_domain(self, url: str) -> bool:
        """Exact host or any subdomain of a listed domain; unparsable URLs are allowed."""

        try:
            host = urlparse(url).hostname
        except ValueError:
            return False
        if not host:
            return False
        host = host.lower().rstrip(".")
        if host in self.domains:
            return True
        parts = host.split(".")
        return any(".".join(parts[i:]) in self.domains for i in range(1, len(parts) - 1))

    def is_blocked_resource_type(self, resource_type: str) -> bool:
        return resource_type.lower() in self.resource_types

    @property
    def hide_css(self) -> str:
        return hide_selectors_css(self.hide_selectors)


def should_block_fonts(request: CaptureRequest) -> bool:
    """Font policy: explicit ``block_fonts`` wins, otherwise fonts load only for full-page captures."""

    if request.block_fonts is not None:
        return request.block_fonts
    return not request.full_page


def hide_selectors_css(selectors: Iterable[str]) -> str:
    """Render one CSS rule that hides every given selector."""

    cleaned = [selector.strip() for selector in selectors if selector and selector.strip()]
    if not cleaned:
        return ""
    return f"{', '.join(cleaned)} {{ {_HIDE_DECLARATIONS} }}"


async def apply_hide_css(page: Page, css: str) -> None:
    if css:
        await page.add_style_tag(content=css)


def load_blocklist(path: Path) -> BlocklistConfig:
    """Parse the JSON blocklist file."""

    data = json.loads(path.read_text("utf-8"))
    return BlocklistConfig(
        version=data.get("version", "unknown"),
        domains=frozenset(domain.lower() for domain in data.get("domains", [])),
        resource_types=frozenset(kind.lower() for kind in data.get("resource_types", ["media", "websocket"])),
        hide_selectors=tuple(data.get("hide_selectors", [])),
    )


@lru_cache(maxsize=1)
def cached_blocklist(path: str) -> BlocklistConfig:
    """Memoized blocklist loader; a missing file yields the built-in lists."""

    resolved = Path(path)
    if not resolved.is_file():
        LOGGER.warning("Blocklist %s not found, using built-in defaults", resolved)
        return builtin_blocklist()
    return load_blocklist(resolved)


def builtin_blocklist() -> BlocklistConfig:
    return BlocklistConfig(
        version="builtin",
        domains=frozenset(BUILTIN_DOMAINS),
        resource_types=frozenset(BUILTIN_RESOURCE_TYPES),
        hide_selectors=BUILTIN_HIDE_SELECTORS,
    )


def default_blocklist() -> BlocklistConfig:
    return cached_blocklist(str(get_settings().browser.blocklist_path))


def is_blocked_domain(url: str) -> bool:
    return default_blocklist().is_blocked_domain(url)


def is_blocked_resource_type(resource_type: str) -> bool:
    return default_blocklist().is_blocked_resource_type(resource_type)
