"""Pydantic DTOs describing one capture request and its nested directives."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

DeviceName = Literal["desktop", "laptop", "tablet", "mobile"]
OutputFormat = Literal["png", "jpeg", "webp", "pdf"]
ElementType = Literal["cookie-banner", "newsletter", "chat-widget", "social-overlay", "ad"]

MAX_DELAY_MS = 10_000
DEFAULT_LOSSY_QUALITY = 90

CONTENT_TYPES: dict[str, str] = {
    "png": "image/png",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "pdf": "application/pdf",
}


class WebshotError(Exception):
    """Base class for every error raised by the capture pipeline."""


class ConfigurationError(WebshotError):
    """Raised before any browser work when a required setting is missing."""


@dataclass(frozen=True, slots=True)
class Viewport:
    width: int
    height: int


DEVICE_VIEWPORTS: dict[str, Viewport] = {
    "desktop": Viewport(1920, 1080),
    "laptop": Viewport(1366, 768),
    "tablet": Viewport(768, 1024),
    "mobile": Viewport(375, 812),
}
DEFAULT_VIEWPORT = DEVICE_VIEWPORTS["desktop"]


class _Directive(BaseModel):
    """Shared config: frozen, camelCase aliases accepted alongside field names."""

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        extra="forbid",
    )


class ClipRegion(_Directive):
    x: float = Field(ge=0)
    y: float = Field(ge=0)
    width: float = Field(ge=1)
    height: float = Field(ge=1)


class AIRemovalDirective(_Directive):
    """Which classifier-detected elements to hide and how sure the classifier must be."""

    enabled: bool = False
    types: tuple[ElementType, ...] = ()
    confidence: float = Field(default=0.8, ge=0, le=1)


class CookieSpec(_Directive):
    name: str
    value: str
    domain: str | None = None
    path: str = "/"
    http_only: bool | None = None
    secure: bool | None = None


class GeolocationDirective(_Directive):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    country: str | None = Field(default=None, min_length=2, max_length=2)


class ScrollDirective(_Directive):
    """Stepped scroll used to trigger lazy-loaded content before capture."""

    enabled: bool = False
    direction: Literal["vertical", "horizontal"] = "vertical"
    distance: int | None = Field(default=None, ge=100, le=50_000, description="Pixels to scroll")
    speed: int = Field(default=500, ge=100, le=5_000, description="Pixels per second")


class StorageDirective(_Directive):
    enabled: bool = False
    bucket: str | None = None
    path: str | None = None
    filename: str | None = None
    acl: Literal["private", "public-read"] = "private"


class WebhookDirective(_Directive):
    url: str
    method: Literal["POST", "PUT"] = "POST"
    headers: dict[str, str] | None = None
    secret: str | None = None

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        return _require_http_url(value)


class CaptureRequest(_Directive):
    """Validated, defaulted configuration for a single capture."""

    url: str = Field(description="Absolute http(s) URL to capture")
    device: DeviceName | None = None
    width: int | None = Field(default=None, ge=320, le=3840)
    height: int | None = Field(default=None, ge=240, le=3840)
    full_page: bool = False
    format: OutputFormat = "png"
    quality: int | None = Field(default=None, ge=0, le=100)
    delay: int = Field(default=0, description="Milliseconds to wait before capture, clamped to 10s")
    selector: str | None = None
    clip: ClipRegion | None = None
    mockup: str | None = None

    ai_removal: AIRemovalDirective = Field(default_factory=AIRemovalDirective)

    block_ads: bool = False
    block_fonts: bool | None = None
    stealth: bool = False
    user_agent: str | None = None
    headers: dict[str, str] | None = None
    cookies: tuple[CookieSpec, ...] | None = None

    timezone: str | None = None
    geolocation: GeolocationDirective | None = None
    dark_mode: bool = False
    device_scale_factor: float = Field(default=1, ge=1, le=3)

    wait_for_selector: str | None = None
    wait_for_network_idle: bool = False
    javascript: str | None = Field(default=None, max_length=5_000)
    hide_selectors: tuple[str, ...] | None = None
    scroll: ScrollDirective | None = None

    cache: bool = False
    cache_ttl: int = Field(default=3_600, ge=60, le=86_400)
    storage: StorageDirective | None = None
    webhook: WebhookDirective | None = None

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        return _require_http_url(value)

    @field_validator("delay", mode="before")
    @classmethod
    def _clamp_delay(cls, value: object) -> int:
        try:
            delay = int(value or 0)  # type: ignore[arg-type]
        except (TypeError, ValueError) as exc:
            msg = "delay must be an integer number of milliseconds"
            raise ValueError(msg) from exc
        return max(0, min(delay, MAX_DELAY_MS))

    def resolve_viewport(self, mockup_device: str | None = None) -> Viewport:
        """Explicit dimensions beat a named device, which beats the mockup's device convention."""

        if self.width and self.height:
            return Viewport(self.width, self.height)
        if self.device:
            return DEVICE_VIEWPORTS[self.device]
        if self.wants_mockup and mockup_device in DEVICE_VIEWPORTS:
            return DEVICE_VIEWPORTS[mockup_device]
        return DEFAULT_VIEWPORT

    @property
    def is_lossy(self) -> bool:
        return self.format in {"jpeg", "webp"}

    @property
    def effective_quality(self) -> int | None:
        if not self.is_lossy:
            return None
        return DEFAULT_LOSSY_QUALITY if self.quality is None else self.quality

    @property
    def wants_mockup(self) -> bool:
        return bool(self.mockup) and self.format != "pdf"

    @property
    def effective_confidence(self) -> float | None:
        if not self.ai_removal.enabled:
            return None
        return self.ai_removal.confidence

    @property
    def content_type(self) -> str:
        return CONTENT_TYPES[self.format]

    @property
    def wants_storage(self) -> bool:
        return self.storage is not None and self.storage.enabled


def _require_http_url(value: str) -> str:
    parsed = urlparse(value.strip())
    if parsed.scheme not in {"http", "https"} or not parsed.hostname:
        msg = "must be an absolute http(s) URL"
        raise ValueError(msg)
    return value.strip()
