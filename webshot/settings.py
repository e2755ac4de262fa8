"""Typed configuration objects backed by python-decouple settings."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from decouple import Config as DecoupleConfig, RepositoryEmpty, RepositoryEnv

__all__ = [
    "AISettings",
    "BrowserSettings",
    "CacheSettings",
    "MockupSettings",
    "StorageSettings",
    "TelemetrySettings",
    "Settings",
    "load_config",
    "get_settings",
]

PROJECT_ROOT = Path(__file__).resolve().parent.parent

DEFAULT_STEALTH_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/130.0.0.0 Safari/537.36"
)
_DEFAULT_LAUNCH_ARGS = "--no-sandbox,--disable-setuid-sandbox,--disable-dev-shm-usage,--disable-gpu"


@dataclass(frozen=True, slots=True)
class BrowserSettings:
    """Chromium launch options and the fixed waits used by the page pipeline."""

    playwright_channel: str
    headless: bool
    launch_args: tuple[str, ...]
    navigation_timeout_ms: int
    selector_timeout_ms: int
    script_settle_ms: int
    ai_settle_ms: int
    scroll_settle_ms: int
    scroll_step_px: int
    max_delay_ms: int
    stealth_user_agent: str
    blocklist_path: Path


@dataclass(frozen=True, slots=True)
class CacheSettings:
    """Remote (redis) cache wiring plus the in-process fallback bounds."""

    redis_url: str | None
    memory_max_entries: int
    max_payload_bytes: int
    key_prefix: str
    key_length: int


@dataclass(frozen=True, slots=True)
class StorageSettings:
    """Credentials for Cloudflare R2 (preferred) and classic S3."""

    r2_endpoint: str | None
    r2_access_key_id: str | None
    r2_secret_access_key: str | None
    r2_bucket: str | None
    r2_public_url: str | None
    aws_access_key_id: str | None
    aws_secret_access_key: str | None
    aws_region: str
    s3_bucket: str | None
    default_path: str
    timeout_seconds: float


@dataclass(frozen=True, slots=True)
class AISettings:
    """OpenAI-compatible endpoint used for element classification."""

    api_key: str | None
    base_url: str
    model: str
    timeout_seconds: float
    max_html_chars: int


@dataclass(frozen=True, slots=True)
class MockupSettings:
    """Where the static mockup catalog and its frame images live."""

    catalog_path: Path
    asset_root: Path


@dataclass(frozen=True, slots=True)
class TelemetrySettings:
    """Prometheus exporter port and log verbosity."""

    prometheus_port: int
    log_level: str


@dataclass(frozen=True, slots=True)
class Settings:
    """Top-level immutable configuration container."""

    env_path: str
    browser: BrowserSettings
    cache: CacheSettings
    storage: StorageSettings
    ai: AISettings
    mockups: MockupSettings
    telemetry: TelemetrySettings
    capture_timeout_seconds: float


def load_config(env_path: str = ".env") -> DecoupleConfig:
    """Return a python-decouple config anchored to the repository .env file.

    Falls back to process environment variables only when the file is absent.
    """

    if Path(env_path).is_file():
        return DecoupleConfig(RepositoryEnv(env_path))
    return DecoupleConfig(RepositoryEmpty())


def _int(cfg: DecoupleConfig, key: str, *, default: int) -> int:
    return cfg(key, cast=int, default=default)


def _float(cfg: DecoupleConfig, key: str, *, default: float) -> float:
    return cfg(key, cast=float, default=default)


def _bool(cfg: DecoupleConfig, key: str, *, default: bool) -> bool:
    return cfg(key, cast=bool, default=default)


def _optional(cfg: DecoupleConfig, key: str) -> str | None:
    raw = cfg(key, default="")
    # Strip quotes some dashboards leave around pasted connection strings.
    value = raw.strip().strip("'\"")
    return value or None


def _csv_tuple(cfg: DecoupleConfig, key: str, *, default: str = "") -> tuple[str, ...]:
    raw = cfg(key, default=default)
    if not raw:
        return tuple()
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@lru_cache(maxsize=1)
def get_settings(env_path: str = ".env") -> Settings:
    """Load and memoize structured settings for the current process."""

    cfg = load_config(env_path)

    browser = BrowserSettings(
        playwright_channel=cfg("PLAYWRIGHT_CHANNEL", default="chromium"),
        headless=_bool(cfg, "BROWSER_HEADLESS", default=True),
        launch_args=_csv_tuple(cfg, "BROWSER_LAUNCH_ARGS", default=_DEFAULT_LAUNCH_ARGS),
        navigation_timeout_ms=_int(cfg, "NAVIGATION_TIMEOUT_MS", default=30_000),
        selector_timeout_ms=_int(cfg, "SELECTOR_TIMEOUT_MS", default=5_000),
        script_settle_ms=_int(cfg, "SCRIPT_SETTLE_MS", default=500),
        ai_settle_ms=_int(cfg, "AI_SETTLE_MS", default=200),
        scroll_settle_ms=_int(cfg, "SCROLL_SETTLE_MS", default=500),
        scroll_step_px=_int(cfg, "SCROLL_STEP_PX", default=100),
        max_delay_ms=_int(cfg, "MAX_CAPTURE_DELAY_MS", default=10_000),
        stealth_user_agent=cfg("STEALTH_USER_AGENT", default=DEFAULT_STEALTH_USER_AGENT),
        blocklist_path=Path(cfg("BLOCKLIST_PATH", default=str(PROJECT_ROOT / "config" / "blocklist.json"))),
    )
    cache = CacheSettings(
        redis_url=_optional(cfg, "REDIS_URL"),
        memory_max_entries=_int(cfg, "MEMORY_CACHE_MAX_ENTRIES", default=100),
        max_payload_bytes=_int(cfg, "CACHE_MAX_PAYLOAD_BYTES", default=5 * 1024 * 1024),
        key_prefix=cfg("CACHE_KEY_PREFIX", default="screenshot:cache:"),
        key_length=_int(cfg, "CACHE_KEY_LENGTH", default=16),
    )
    if cache.memory_max_entries < 1:
        msg = "MEMORY_CACHE_MAX_ENTRIES must be >= 1"
        raise ValueError(msg)

    storage = StorageSettings(
        r2_endpoint=_optional(cfg, "CLOUDFLARE_R2_ENDPOINT"),
        r2_access_key_id=_optional(cfg, "CLOUDFLARE_R2_ACCESS_KEY_ID"),
        r2_secret_access_key=_optional(cfg, "CLOUDFLARE_R2_SECRET_ACCESS_KEY"),
        r2_bucket=_optional(cfg, "CLOUDFLARE_R2_BUCKET"),
        r2_public_url=_optional(cfg, "CLOUDFLARE_R2_PUBLIC_URL"),
        aws_access_key_id=_optional(cfg, "AWS_ACCESS_KEY_ID"),
        aws_secret_access_key=_optional(cfg, "AWS_SECRET_ACCESS_KEY"),
        aws_region=cfg("AWS_REGION", default="us-east-1"),
        s3_bucket=_optional(cfg, "S3_BUCKET"),
        default_path=cfg("STORAGE_DEFAULT_PATH", default="screenshots"),
        timeout_seconds=_float(cfg, "STORAGE_TIMEOUT_SECONDS", default=30.0),
    )
    ai = AISettings(
        api_key=_optional(cfg, "OPENAI_API_KEY"),
        base_url=cfg("OPENAI_BASE_URL", default="https://api.openai.com/v1"),
        model=cfg("AI_MODEL", default="gpt-4o-mini"),
        timeout_seconds=_float(cfg, "AI_TIMEOUT_SECONDS", default=15.0),
        max_html_chars=_int(cfg, "AI_MAX_HTML_CHARS", default=60_000),
    )
    mockups = MockupSettings(
        catalog_path=Path(cfg("MOCKUP_CATALOG_PATH", default=str(PROJECT_ROOT / "config" / "mockups.json"))),
        asset_root=Path(cfg("MOCKUP_ASSET_ROOT", default=str(PROJECT_ROOT / "assets"))),
    )
    telemetry = TelemetrySettings(
        prometheus_port=_int(cfg, "PROMETHEUS_PORT", default=0),
        log_level=cfg("LOG_LEVEL", default="INFO"),
    )

    return Settings(
        env_path=env_path,
        browser=browser,
        cache=cache,
        storage=storage,
        ai=ai,
        mockups=mockups,
        telemetry=telemetry,
        capture_timeout_seconds=_float(cfg, "CAPTURE_TIMEOUT_SECONDS", default=90.0),
    )
