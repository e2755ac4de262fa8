"""End-to-end capture orchestration: cache, browser, post-processing, delivery."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, List, Set

import httpx

from webshot import capture_warnings as codes
from webshot import metrics
from webshot.blocklist import BlocklistConfig, cached_blocklist
from webshot.cache import CaptureCache, build_cache
from webshot.capture import BrowserLauncher, CaptureError, RawCapture, capture_artifact, launch_chromium
from webshot.capture_warnings import CaptureWarningEntry, WarningCollector
from webshot.element_detection import ElementDetector, build_detector
from webshot.imaging import MockupAssetError, composite, transcode
from webshot.mockups import MockupRegistry, MockupTemplate, cached_registry
from webshot.schemas import CaptureRequest
from webshot.settings import Settings, get_settings
from webshot.storage import UploadOptions, UploadResult, resolve_target, upload
from webshot.webhooks import EVENT_COMPLETED, EVENT_FAILED, build_payload, dispatch_webhook

LOGGER = logging.getLogger(__name__)

_BACKGROUND_TASKS: Set[asyncio.Task[Any]] = set()


class CaptureTimeoutError(CaptureError):
    """The whole capture exceeded ``CAPTURE_TIMEOUT_SECONDS``."""


@dataclass(frozen=True, slots=True)
class CaptureOutcome:
    content: bytes
    content_type: str
    cache_key: str
    cache_hit: bool
    warnings: List[CaptureWarningEntry] = field(default_factory=list)
    upload: UploadResult | None = None
    duration_ms: int = 0

    @property
    def warning_codes(self) -> List[str]:
        return [entry.code for entry in self.warnings]


@dataclass(slots=True)
class PipelineDeps:
    """Collaborators for one process; swapped out wholesale in tests."""

    settings: Settings
    cache: CaptureCache
    detector: ElementDetector
    registry: MockupRegistry
    blocklist: BlocklistConfig
    launcher: BrowserLauncher = launch_chromium
    http_client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> PipelineDeps:
        settings = settings or get_settings()
        return cls(
            settings=settings,
            cache=build_cache(settings.cache),
            detector=build_detector(settings.ai),
            registry=cached_registry(str(settings.mockups.catalog_path), str(settings.mockups.asset_root)),
            blocklist=cached_blocklist(str(settings.browser.blocklist_path)),
        )

    async def aclose(self) -> None:
        await self.cache.aclose()


@lru_cache(maxsize=1)
def default_deps() -> PipelineDeps:
    return PipelineDeps.from_settings()


async def capture(request: CaptureRequest, *, deps: PipelineDeps | None = None) -> CaptureOutcome:
    """Produce the artifact for ``request``, delivering it to storage when asked.

    Configuration problems (unknown mockup, missing storage credentials)
    raise before any browser work. Cancelling the calling task aborts the
    run and still releases the browser.
    """

    deps = deps or default_deps()
    settings = deps.settings
    template = deps.registry.require(request.mockup) if request.wants_mockup and request.mockup else None
    if request.wants_storage and request.storage is not None:
        resolve_target(settings.storage, request.storage.bucket)

    start = time.perf_counter()
    try:
        async with asyncio.timeout(settings.capture_timeout_seconds):
            outcome = await _run(request, deps, template, start)
    except TimeoutError as exc:
        metrics.record_capture(request.format, "timeout", time.perf_counter() - start)
        error = CaptureTimeoutError(f"Capture exceeded {settings.capture_timeout_seconds}s")
        _notify(request, deps, EVENT_FAILED, {"url": request.url, "error": str(error)})
        raise error from exc
    except asyncio.CancelledError:
        metrics.record_capture(request.format, "cancelled")
        LOGGER.info("Capture of %s cancelled", request.url)
        raise
    except Exception as exc:
        metrics.record_capture(request.format, "error", time.perf_counter() - start)
        _notify(request, deps, EVENT_FAILED, {"url": request.url, "error": str(exc)})
        raise

    metrics.record_capture(request.format, "hit" if outcome.cache_hit else "ok", time.perf_counter() - start)
    _notify(request, deps, EVENT_COMPLETED, _completed_payload(request, outcome))
    return outcome


async def _run(
    request: CaptureRequest,
    deps: PipelineDeps,
    template: MockupTemplate | None,
    start: float,
) -> CaptureOutcome:
    cache_key = deps.cache.key_for(request)
    warnings = WarningCollector()
    content: bytes | None = None
    if request.cache:
        content = await deps.cache.get(cache_key)
    cache_hit = content is not None

    if content is None:
        raw = await capture_artifact(
            request,
            settings=deps.settings,
            detector=deps.detector,
            blocklist=deps.blocklist,
            launcher=deps.launcher,
            mockup_device=template.device if template else None,
        )
        warnings.extend(raw.warnings)
        LOGGER.debug(
            "Raw capture of %s: %s requests blocked, %s elements removed",
            request.url,
            sum(raw.blocked_requests.values()),
            len(raw.removed_elements),
            extra={"blocked": raw.blocked_requests},
        )
        content = await post_process(raw, request, template, warnings)
        if request.cache:
            await deps.cache.put(cache_key, content, request.cache_ttl)

    for code in warnings.codes:
        metrics.record_degraded(code)

    upload_result: UploadResult | None = None
    if request.wants_storage and request.storage is not None:
        upload_result = await upload(
            content,
            UploadOptions(
                content_type=request.content_type,
                bucket=request.storage.bucket,
                path=request.storage.path,
                filename=request.storage.filename,
                acl=request.storage.acl,
            ),
            settings=deps.settings.storage,
            client=deps.http_client,
        )

    return CaptureOutcome(
        content=content,
        content_type=request.content_type,
        cache_key=cache_key,
        cache_hit=cache_hit,
        warnings=warnings.entries,
        upload=upload_result,
        duration_ms=int((time.perf_counter() - start) * 1000),
    )


async def post_process(
    raw: RawCapture,
    request: CaptureRequest,
    template: MockupTemplate | None,
    warnings: WarningCollector,
) -> bytes:
    """Composite into the mockup (if any) and encode to the requested format.

    A broken mockup asset falls back to the plain capture with a warning;
    undecodable capture bytes are fatal.
    """

    if request.format == "pdf":
        return raw.content

    image = raw.content
    if template is not None:
        try:
            image = await composite(image, template)
        except MockupAssetError as exc:
            LOGGER.warning("Mockup %s unavailable, returning plain capture: %s", template.id, exc)
            warnings.add(codes.MOCKUP_FAILED, "mockup", exc)
    return await transcode(image, request.format, request.effective_quality)


def _completed_payload(request: CaptureRequest, outcome: CaptureOutcome) -> dict[str, Any]:
    data: dict[str, Any] = {
        "url": request.url,
        "format": request.format,
        "content_type": outcome.content_type,
        "size": len(outcome.content),
        "cache_hit": outcome.cache_hit,
        "duration_ms": outcome.duration_ms,
        "warnings": [entry.to_dict() for entry in outcome.warnings],
    }
    if outcome.upload is not None:
        data["upload"] = outcome.upload.to_dict()
    return data


def _notify(request: CaptureRequest, deps: PipelineDeps, event: str, data: dict[str, Any]) -> None:
    if request.webhook is None:
        return
    task = asyncio.get_running_loop().create_task(
        dispatch_webhook(request.webhook, build_payload(event, data), client=deps.http_client)
    )
    _BACKGROUND_TASKS.add(task)
    task.add_done_callback(_BACKGROUND_TASKS.discard)
